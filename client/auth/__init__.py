"""
Authentication package for the Session Auth Client.

This package contains the session state machine and the token stores it
persists sessions through.
"""
