"""
Command-line entry point for the Session Auth Client.

This module drives the session controller from the terminal: log in,
show the stored session status, or log out.
"""

import sys
import json
import asyncio
import getpass
import argparse
import logging
from typing import Optional

from client.auth.session_controller import SessionController, create_session_controller
from client.config import ClientConfiguration
from shared.exceptions import SessionError
from shared.logging_config import LogFormat, setup_logging
from shared.models import (
    Credentials, SessionState, Initial, Authenticated, Failed,
    Submit, Reset, CheckStoredSession, describe_state
)

logger = logging.getLogger(__name__)


def parse_arguments(argv: Optional[list] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="session-auth",
        description="Session Auth Client",
        epilog="""
Examples:
  %(prog)s login --username alice   # Log in (prompts for the password)
  %(prog)s status                   # Show the stored session
  %(prog)s status --json            # Show the stored session as JSON
  %(prog)s logout                   # Remove the stored session

Exit Codes:
  0   - Authenticated (login, status) or logged out (logout)
  1   - Not authenticated or operation failed
  130 - Cancelled by user (Ctrl+C)
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    login_parser = subparsers.add_parser("login", help="Log in and store the session")
    login_parser.add_argument("--username", "-u", type=str, help="Username (prompted if omitted)")
    login_parser.add_argument("--password-stdin", action="store_true",
                              help="Read the password from standard input")

    subparsers.add_parser("status", help="Show the stored session status")
    subparsers.add_parser("logout", help="Log out and clear the stored session")

    # Configuration options
    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument("--config", type=str, metavar="FILE",
                              help="Path to configuration file")
    config_group.add_argument("--server-url", type=str, metavar="URL",
                              help="Override server URL")

    # Output format options
    output_group = parser.add_argument_group('Output')
    output_group.add_argument("--json", action="store_true",
                              help="Output the session state as JSON")
    output_group.add_argument("--debug", action="store_true",
                              help="Enable debug logging")
    output_group.add_argument("--log-file", type=str, metavar="FILE",
                              help="Write logs to file")

    return parser.parse_args(argv)


def configure_logging(args, config: ClientConfiguration) -> None:
    """Configure logging from configuration and command line arguments."""
    level_name = 'DEBUG' if args.debug else config.get_log_level()
    if not isinstance(logging.getLevelName(level_name), int):
        level_name = 'WARNING'

    log_file = args.log_file or config.get_log_file()

    setup_logging(
        log_level=level_name,
        log_format=LogFormat.JSON if config.get_structured_logging() else LogFormat.STANDARD,
        log_file=log_file,
        # Console logs stay off when writing to a file, unless debugging
        enable_console=args.debug or not log_file,
        audit_file=config.get_audit_file()
    )


def read_credentials(args) -> Credentials:
    """Prompt for (or read) the login credentials."""
    username = args.username or input("Username: ").strip()
    if args.password_stdin:
        password = sys.stdin.readline().rstrip('\n')
    else:
        password = getpass.getpass("Password: ")
    return Credentials(username=username, password=password)


async def run_command(args, controller: SessionController) -> SessionState:
    """
    Run one CLI command against the controller.

    Args:
        args: Parsed command line arguments
        controller: Controller to drive

    Returns:
        Final session state
    """
    def on_warning(error: SessionError) -> None:
        print(f"Warning: {error.message}", file=sys.stderr)

    controller.add_warning_listener(on_warning)

    try:
        async with controller:
            controller.dispatch(CheckStoredSession())
            await controller.wait_idle()

            if args.command == "login" and not controller.is_authenticated:
                credentials = await asyncio.to_thread(read_credentials, args)
                controller.dispatch(Submit(credentials))
                await controller.wait_idle()

            elif args.command == "logout" and controller.is_authenticated:
                controller.dispatch(Reset())
                await controller.wait_idle()

            return controller.current_state
    finally:
        await controller.auth_client.close()


def print_state(state: SessionState, as_json: bool) -> None:
    """Print the session state."""
    if as_json:
        print(json.dumps(describe_state(state)))
        return

    if isinstance(state, Authenticated):
        expires_at = state.token.expires_at
        suffix = f" (expires {expires_at.isoformat()})" if expires_at else ""
        print(f"Logged in{suffix}")
    elif isinstance(state, Failed):
        print(f"Login failed: {state.detail}", file=sys.stderr)
    elif isinstance(state, Initial):
        print("Not logged in")
    else:
        print(f"Session state: {state.name}")


def exit_code_for(command: str, state: SessionState) -> int:
    """Get the exit code for a command's final state."""
    if command == "logout":
        return 0 if isinstance(state, Initial) else 1
    return 0 if isinstance(state, Authenticated) else 1


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the client."""
    args = parse_arguments(argv)

    try:
        config = ClientConfiguration(args.config)
        if args.server_url:
            config.set_override('server.url', args.server_url)

        configure_logging(args, config)

        controller = create_session_controller(config)
        state = asyncio.run(run_command(args, controller))

    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return 130
    except Exception as e:
        print(f"Fatal error: {str(e)}", file=sys.stderr)
        logger.exception("Fatal error in main")
        return 1

    print_state(state, args.json)
    return exit_code_for(args.command, state)


if __name__ == "__main__":
    sys.exit(main())
