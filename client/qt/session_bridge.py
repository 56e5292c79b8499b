"""
Qt integration for the session controller.

This module runs the session controller on an asyncio loop inside a worker
thread and re-emits its published states and warnings as Qt signals, so
widgets can drive and observe the session from the GUI thread.
"""

import asyncio
import logging
import threading
from typing import Optional, List

from PyQt6.QtCore import QObject, QThread, pyqtSignal

from client.auth.session_controller import SessionController, create_session_controller
from shared.exceptions import SessionError
from shared.models import (
    Credentials, SessionEvent, SessionState, Initial, Authenticated,
    Submit, Reset, CheckStoredSession
)

logger = logging.getLogger(__name__)


class AsyncWorker(QThread):
    """Worker thread hosting the event loop the controller runs on."""

    # Signals for communication with main thread
    state_published = pyqtSignal(object)  # SessionState
    warning_published = pyqtSignal(object)  # SessionError

    def __init__(self, controller: SessionController, parent=None):
        super().__init__(parent)
        self.controller = controller

        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._accepting = False
        self._stopping = False
        self._backlog: List[SessionEvent] = []

    def run(self):
        """Run the async event loop in the worker thread."""
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

        try:
            loop.run_until_complete(self._serve())
        except Exception as e:
            logger.error(f"Worker thread error: {e}")
        finally:
            with self._lock:
                self._loop = None
                self._stop_event = None
                self._accepting = False
            loop.close()

    async def _serve(self):
        with self._lock:
            if self._stopping:
                return
            self._loop = asyncio.get_running_loop()
            self._stop_event = asyncio.Event()

        on_state = self.state_published.emit
        on_warning = self.warning_published.emit
        self.controller.add_state_listener(on_state)
        self.controller.add_warning_listener(on_warning)

        try:
            async with self.controller:
                with self._lock:
                    self._accepting = True
                    backlog, self._backlog = self._backlog, []
                for event in backlog:
                    self.controller.dispatch(event)

                await self._stop_event.wait()
        finally:
            self.controller.remove_state_listener(on_state)
            self.controller.remove_warning_listener(on_warning)
            await self.controller.auth_client.close()

    def dispatch(self, event: SessionEvent) -> None:
        """Queue an intent event from the GUI thread."""
        with self._lock:
            if self._stopping:
                logger.debug(f"Worker stopping, dropping {type(event).__name__}")
                return
            if not self._accepting:
                # Delivered once the controller is running
                self._backlog.append(event)
                return
        self.controller.dispatch_threadsafe(event)

    def stop(self, timeout_ms: int = 5000) -> bool:
        """
        Stop the controller and wait for the thread to finish.

        Returns:
            True if the thread finished within the timeout
        """
        with self._lock:
            self._stopping = True
            self._accepting = False
            loop, stop_event = self._loop, self._stop_event

        if loop is not None and stop_event is not None:
            loop.call_soon_threadsafe(stop_event.set)

        return self.wait(timeout_ms)


class SessionBridge(QObject):
    """
    GUI-thread facade over a session controller.

    Intent methods queue events on the controller; published states come
    back through ``state_changed`` in emission order.
    """

    state_changed = pyqtSignal(object)  # SessionState
    authentication_changed = pyqtSignal(bool)
    warning_raised = pyqtSignal(str)

    def __init__(self, controller: SessionController, check_on_start: bool = False, parent=None):
        super().__init__(parent)
        self._state: SessionState = Initial()

        self._worker = AsyncWorker(controller, self)
        self._worker.state_published.connect(self._on_state_published)
        self._worker.warning_published.connect(self._on_warning_published)

        if check_on_start:
            self._worker.dispatch(CheckStoredSession())

    @property
    def current_state(self) -> SessionState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return isinstance(self._state, Authenticated)

    def start(self) -> None:
        """Start the worker thread."""
        self._worker.start()
        logger.info("Session bridge started")

    def stop(self) -> None:
        """Stop the worker thread."""
        if not self._worker.stop():
            logger.warning("Session worker did not stop in time")
        logger.info("Session bridge stopped")

    def submit(self, username: str, password: str) -> None:
        """Log in with the given credentials."""
        self._worker.dispatch(Submit(Credentials(username, password)))

    def reset(self) -> None:
        """Return to the initial state, logging out if authenticated."""
        self._worker.dispatch(Reset())

    def check_stored_session(self) -> None:
        """Restore a stored session if one is still valid."""
        self._worker.dispatch(CheckStoredSession())

    def _on_state_published(self, state: SessionState) -> None:
        was_authenticated = self.is_authenticated
        self._state = state
        self.state_changed.emit(state)

        if self.is_authenticated != was_authenticated:
            self.authentication_changed.emit(self.is_authenticated)

    def _on_warning_published(self, error: SessionError) -> None:
        self.warning_raised.emit(error.message)


def create_session_bridge(config, parent: Optional[QObject] = None) -> SessionBridge:
    """
    Wire a Qt session bridge from configuration.

    A stored session is restored on start when ``session.check_on_start``
    is enabled.
    """
    return SessionBridge(
        create_session_controller(config),
        check_on_start=config.should_check_on_start(),
        parent=parent
    )
