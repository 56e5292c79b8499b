"""
Session Controller for the Session Auth Client.

This module implements the login lifecycle state machine. Intent events
from the UI are processed one at a time from a single queue; logins run in
the background and report back through the same queue, so results that
arrive after a reset never overwrite newer state.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Callable, List, AsyncIterator, Union

from shared.exceptions import ErrorKind, SessionError, handle_exception
from shared.interfaces import IAuthClient, ITokenStore
from shared.logging_config import AuditLogger, log_structured_error
from shared.models import (
    AuthToken, Credentials, SessionState, SessionEvent,
    Initial, Loading, Authenticated, Failed,
    Submit, Reset, CheckStoredSession, utc_now
)

logger = logging.getLogger(__name__)

StateListener = Callable[[SessionState], None]
WarningListener = Callable[[SessionError], None]


@dataclass(frozen=True)
class _LoginFinished:
    """Outcome of a background login attempt, queued like any other event."""
    attempt: int
    username: str
    token: Optional[AuthToken] = None
    error: Optional[SessionError] = None


class SessionController:
    """
    Owns the session state and drives it from intent events.

    States move between Initial, Loading, Authenticated and Failed. At
    most one login is in flight at a time. Every published state reaches
    state listeners and ``states()`` iterators in emission order.
    """

    def __init__(
        self,
        auth_client: IAuthClient,
        token_store: ITokenStore,
        clock: Optional[Callable[[], datetime]] = None,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.auth_client = auth_client
        self.token_store = token_store
        self._clock = clock or utc_now
        self._audit = audit_logger or AuditLogger()

        self._state: SessionState = Initial()

        # Event processing
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._consumer_task: Optional[asyncio.Task] = None

        # In-flight login tracking
        self._login_task: Optional[asyncio.Task] = None
        self._attempt = 0

        # Queued events plus running handlers and logins
        self._pending = 0
        self._idle: Optional[asyncio.Event] = None

        # Publication
        self._state_listeners: List[StateListener] = []
        self._warning_listeners: List[WarningListener] = []
        self._subscribers: List[asyncio.Queue] = []

        logger.info("Session controller initialized")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    @property
    def current_state(self) -> SessionState:
        """The most recently published state."""
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return isinstance(self._state, Authenticated)

    @property
    def is_running(self) -> bool:
        return self._consumer_task is not None and not self._consumer_task.done()

    def add_state_listener(self, listener: StateListener) -> None:
        """
        Add callback for session state changes.

        Args:
            listener: Function called with every published state
        """
        self._state_listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        if listener in self._state_listeners:
            self._state_listeners.remove(listener)

    def add_warning_listener(self, listener: WarningListener) -> None:
        """
        Add callback for non-fatal diagnostics such as failed token writes.

        Args:
            listener: Function called with the SessionError
        """
        self._warning_listeners.append(listener)

    def remove_warning_listener(self, listener: WarningListener) -> None:
        if listener in self._warning_listeners:
            self._warning_listeners.remove(listener)

    def states(self) -> AsyncIterator[SessionState]:
        """
        Subscribe to published states.

        The subscription starts immediately, so no state published after
        this call is missed. Iteration ends when the controller stops.
        """
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return self._iterate_states(queue)

    async def _iterate_states(self, queue: asyncio.Queue) -> AsyncIterator[SessionState]:
        try:
            while True:
                state = await queue.get()
                if state is None:
                    return
                yield state
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    async def start(self) -> None:
        """Start processing events on the running loop."""
        if self.is_running:
            return

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._idle = asyncio.Event()
        self._idle.set()
        self._pending = 0
        self._consumer_task = asyncio.create_task(self._consume())
        logger.info("Session controller started")

    async def stop(self) -> None:
        """Stop processing events and abandon any in-flight login."""
        if self._consumer_task is None:
            return

        tasks = [self._consumer_task]
        if self._login_task is not None:
            tasks.append(self._login_task)
        self._cancel_login()
        self._consumer_task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._consumer_task = None

        for queue in list(self._subscribers):
            queue.put_nowait(None)

        logger.info("Session controller stopped")

    def dispatch(self, event: SessionEvent) -> None:
        """
        Queue an intent event. Must be called on the controller's loop.

        Raises:
            RuntimeError: If the controller is not running
        """
        if not self.is_running:
            raise RuntimeError("Session controller is not running")
        logger.debug(f"Event queued: {type(event).__name__}")
        self._enqueue(event)

    def dispatch_threadsafe(self, event: SessionEvent) -> None:
        """Queue an intent event from any thread."""
        if self._loop is None or not self.is_running:
            raise RuntimeError("Session controller is not running")
        self._loop.call_soon_threadsafe(self.dispatch, event)

    async def wait_idle(self) -> None:
        """Wait until no event is queued or being handled and no login is in flight."""
        if self._idle is not None:
            await self._idle.wait()

    def _enqueue(self, item: Union[SessionEvent, _LoginFinished]) -> None:
        self._pending += 1
        self._idle.clear()
        self._queue.put_nowait(item)

    def _settle(self) -> None:
        self._pending -= 1
        if self._pending == 0:
            self._idle.set()

    async def _consume(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._handle(item)
            except Exception as e:
                logger.error(f"Error handling {type(item).__name__}: {e}", exc_info=True)
            finally:
                self._settle()

    async def _handle(self, item: Union[SessionEvent, _LoginFinished]) -> None:
        if isinstance(item, _LoginFinished):
            await self._on_login_finished(item)
        elif isinstance(item, Submit):
            self._on_submit(item)
        elif isinstance(item, Reset):
            await self._on_reset()
        elif isinstance(item, CheckStoredSession):
            await self._on_check_stored_session()
        else:
            logger.warning(f"Ignoring unknown event: {item!r}")

    def _on_submit(self, event: Submit) -> None:
        if not isinstance(self._state, (Initial, Failed)):
            logger.debug(f"Ignoring Submit in state {self._state.name}")
            return

        self._publish(Loading())
        self._begin_login(event.credentials)

    def _begin_login(self, credentials: Credentials) -> None:
        self._attempt += 1
        attempt = self._attempt

        self._pending += 1
        task = asyncio.create_task(self._run_login(attempt, credentials))
        # Runs even when the task is cancelled before it starts
        task.add_done_callback(lambda _: self._settle())
        self._login_task = task
        logger.debug(f"Login attempt {attempt} started")

    async def _run_login(self, attempt: int, credentials: Credentials) -> None:
        try:
            token = await self.auth_client.login(credentials)
        except SessionError as e:
            outcome = _LoginFinished(attempt, credentials.username, error=e)
        except Exception as e:
            outcome = _LoginFinished(attempt, credentials.username, error=handle_exception(e))
        else:
            outcome = _LoginFinished(attempt, credentials.username, token=token)
        self._enqueue(outcome)

    def _cancel_login(self) -> None:
        # Any outcome already queued for the old attempt becomes stale
        self._attempt += 1
        if self._login_task is not None and not self._login_task.done():
            self._login_task.cancel()
        self._login_task = None

    async def _on_login_finished(self, outcome: _LoginFinished) -> None:
        if outcome.attempt != self._attempt or not isinstance(self._state, Loading):
            logger.debug(f"Discarding stale result of login attempt {outcome.attempt}")
            return

        self._login_task = None

        if outcome.error is not None:
            error = outcome.error
            log_structured_error(logger, error, logging.WARNING)
            self._audit.log_authentication(
                outcome.username, success=False, failure_reason=error.kind.value
            )
            self._publish(Failed(reason=error.kind, detail=error.user_message))
            return

        token = outcome.token
        try:
            await self._call_store(self.token_store.write, token)
        except SessionError as e:
            self._warn(e)

        self._audit.log_authentication(outcome.username, success=True)
        self._publish(Authenticated(token))

    async def _on_reset(self) -> None:
        state = self._state
        if isinstance(state, Initial):
            logger.debug("Ignoring Reset in state initial")
            return

        if isinstance(state, Loading):
            self._cancel_login()
            logger.info("In-flight login abandoned")
        elif isinstance(state, Authenticated):
            try:
                await self._call_store(self.token_store.clear)
            except SessionError as e:
                self._warn(e)
            self._audit.log_session_event("logout")

        self._publish(Initial())

    async def _on_check_stored_session(self) -> None:
        if not isinstance(self._state, Initial):
            logger.debug(f"Ignoring CheckStoredSession in state {self._state.name}")
            return

        self._publish(Loading())

        try:
            token = await self._call_store(self.token_store.read)
        except SessionError as e:
            logger.warning("Failed to read stored token, treating session as logged out")
            self._warn(e)
            token = None

        if token is not None and not token.is_expired(self._clock()):
            self._audit.log_session_event("restore")
            self._publish(Authenticated(token))
            return

        if token is not None:
            logger.info("Stored token has expired")

        try:
            await self._call_store(self.token_store.clear)
        except SessionError as e:
            self._warn(e)

        self._publish(Initial())

    async def _call_store(self, method, *args):
        """Run a blocking store call off the loop, normalising failures to STORE_ERROR."""
        try:
            return await asyncio.to_thread(method, *args)
        except SessionError:
            raise
        except Exception as e:
            raise SessionError(
                ErrorKind.STORE_ERROR,
                f"Token store {method.__name__} failed: {e}",
                cause=e
            )

    def _publish(self, state: SessionState) -> None:
        previous = self._state
        self._state = state
        logger.info(f"Session state: {previous.name} -> {state.name}")

        for queue in list(self._subscribers):
            queue.put_nowait(state)

        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Error in state listener: {e}")

    def _warn(self, error: SessionError) -> None:
        log_structured_error(logger, error, logging.WARNING)
        self._audit.log_error(error)
        for listener in list(self._warning_listeners):
            try:
                listener(error)
            except Exception as e:
                logger.error(f"Error in warning listener: {e}")


def create_session_controller(config) -> SessionController:
    """
    Wire a session controller from configuration.

    Args:
        config: ClientConfiguration providing server and storage settings

    Returns:
        Controller using the configured auth server and token store
    """
    # Imported here so the controller itself only depends on the interfaces
    from client.api_client import SessionAPIClient
    from client.auth.token_storage import create_token_store

    auth_client = SessionAPIClient(
        config.get_server_url(),
        timeout=config.get_server_timeout(),
        login_path=config.get_login_path()
    )
    return SessionController(auth_client, create_token_store(config))
