"""
Qt client package for the Session Auth Client.

This package bridges the session controller to Qt signals for desktop
applications.
"""

from .session_bridge import AsyncWorker, SessionBridge, create_session_bridge

__all__ = ['AsyncWorker', 'SessionBridge', 'create_session_bridge']
