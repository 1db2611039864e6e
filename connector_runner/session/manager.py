"""Session lifecycle management.

The SessionManager owns the registry of live sessions keyed by run
identifier. Each run executes in its own asyncio task:

    load connector -> open browser context -> attach capture ->
    navigate to start URL (RUNNING) -> execute connector ->
    result + COMPLETE | error + ERROR | STOPPED

Every session is released exactly once, whichever way it ends.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from ..capture.browser_factory import BrowserFactory, BrowserHandle
from ..capture.network_capture import NetworkCaptureEngine
from ..exceptions import DuplicateSessionError, NavigationError, ResourceAcquisitionError
from ..protocol.emitter import EventEmitter
from ..protocol.models import RunCommand, SessionStatus
from .capability import CapabilityAPI
from .models import Session
from .sandbox import ConnectorSandbox

logger = logging.getLogger(__name__)

SessionCallback = Callable[[Session], None]


class SessionManager:
    """Creates, tracks and tears down connector sessions."""

    def __init__(
        self,
        emitter: EventEmitter,
        browser_factory: BrowserFactory,
        sandbox: Optional[ConnectorSandbox] = None,
        capture_enabled: bool = True,
        wait_until: str = "domcontentloaded",
        completion_linger_ms: int = 2000,
        shutdown_timeout_s: float = 10.0,
        prompt_poll_interval_ms: int = 2000,
        on_session_finished: Optional[SessionCallback] = None,
    ):
        """Initialize the session manager.

        Args:
            emitter: Event sink shared by all sessions
            browser_factory: Source of browser contexts
            sandbox: Connector loader (default entry point ``run``)
            capture_enabled: Attach the capture engine to session pages
            wait_until: Load state awaited by navigations
            completion_linger_ms: Keep the browser open this long after COMPLETE
            shutdown_timeout_s: Wait this long for session tasks during shutdown
            prompt_poll_interval_ms: Default poll interval for prompt_user
            on_session_finished: Called once per session after it is released
        """
        self.emitter = emitter
        self.browser_factory = browser_factory
        self.sandbox = sandbox or ConnectorSandbox()
        self.capture_enabled = capture_enabled
        self.wait_until = wait_until
        self.completion_linger_ms = completion_linger_ms
        self.shutdown_timeout_s = shutdown_timeout_s
        self.prompt_poll_interval_ms = prompt_poll_interval_ms
        self.on_session_finished = on_session_finished

        self.sessions: Dict[str, Session] = {}
        self._acquiring: set = set()
        self._tasks: set = set()
        self._closing = False

    # Registry

    def get(self, run_id: str) -> Optional[Session]:
        return self.sessions.get(run_id)

    def __contains__(self, run_id: str) -> bool:
        return run_id in self.sessions

    def __len__(self) -> int:
        return len(self.sessions)

    @property
    def active_run_ids(self) -> List[str]:
        return [run_id for run_id, session in self.sessions.items() if not session.is_terminal]

    # Commands

    async def start_run(self, command: RunCommand) -> Optional[Session]:
        """Create a session and start its task without waiting for it.

        A run identifier with a live session is rejected with an ``error``
        event. A session that already ended but is still lingering is
        released so the identifier can be reused.

        Returns:
            The new session, or None if the run was rejected
        """
        if self._closing:
            logger.warning(f"Ignoring run {command.run_id}: runner is shutting down")
            return None

        existing = self.sessions.get(command.run_id)
        if existing is not None:
            if not existing.is_terminal:
                error = DuplicateSessionError(command.run_id)
                logger.warning(error.message)
                self.emitter.error(command.run_id, error.message)
                return None
            await self._release(existing)
            self._cancel_task(existing)

        session = Session(
            run_id=command.run_id,
            connector_path=command.connector_path,
            start_url=command.url,
            headless=command.headless,
        )
        self.sessions[session.run_id] = session

        logger.info(f"Starting run {session.run_id} with connector {session.connector_path}")
        task = asyncio.create_task(self._execute(session), name=f"run-{session.run_id}")
        session.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return session

    async def stop(self, run_id: str) -> bool:
        """Stop a session by tearing down its browser.

        In-flight browser calls fail once the context is closed; the
        session's outcome is STOPPED regardless of that failure.

        Returns:
            False if no session has this identifier
        """
        session = self.sessions.get(run_id)
        if session is None:
            logger.debug(f"Stop for unknown run {run_id} ignored")
            return False

        logger.info(f"Stopping run {run_id}")
        if not session.is_terminal:
            self._set_status(session, SessionStatus.STOPPED)

        await self._release(session)

        # A task still inside browser launch closes the late handle itself.
        if run_id not in self._acquiring:
            self._cancel_task(session)
        return True

    async def shutdown(self) -> None:
        """Stop every session, release resources and stop the browser factory.

        Teardown failures are logged and never retried.
        """
        self._closing = True
        sessions = list(self.sessions.values())
        logger.info(f"Shutting down {len(sessions)} session(s)")

        for session in sessions:
            if not session.is_terminal:
                self._set_status(session, SessionStatus.STOPPED)

        results = await asyncio.gather(
            *(self._release(session) for session in sessions),
            return_exceptions=True
        )
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.warning(f"Error releasing run {session.run_id}: {result}")

        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            done, still_pending = await asyncio.wait(pending, timeout=self.shutdown_timeout_s)
            if still_pending:
                logger.warning(f"{len(still_pending)} session task(s) did not finish within {self.shutdown_timeout_s}s")

        try:
            await self.browser_factory.stop()
        except Exception as e:
            logger.warning(f"Error stopping browser factory: {e}")

        logger.info("Session manager shut down")

    # Session task

    async def _execute(self, session: Session) -> None:
        run_id = session.run_id
        try:
            connector = self.sandbox.load(session.connector_path)

            handle = await self._acquire(session, connector.name)
            if session.released or session.is_terminal:
                logger.info(f"Run {run_id} ended during browser launch, closing late context")
                await self._close_handle(run_id, handle)
                return
            session.handle = handle
            self._watch_disconnect(session, handle)

            capture = NetworkCaptureEngine(run_id, self.emitter)
            session.capture = capture
            if self.capture_enabled:
                capture.attach(handle.page)

            api = CapabilityAPI(
                session,
                self.emitter,
                capture,
                browser_factory=self.browser_factory,
                wait_until=self.wait_until,
                default_poll_interval_ms=self.prompt_poll_interval_ms,
            )

            await self._navigate_start(session)
            self._set_status(session, SessionStatus.RUNNING)

            result = await self.sandbox.execute(connector, api)
            if session.is_terminal:
                logger.debug(f"Run {run_id} finished after reaching {session.status.value}, result dropped")
                return

            self.emitter.result(run_id, result)
            self._set_status(session, SessionStatus.COMPLETE)
            logger.info(f"Run {run_id} complete")
            capture.detach()

            if self.completion_linger_ms > 0 and not session.browser_closed:
                await asyncio.sleep(self.completion_linger_ms / 1000.0)

        except asyncio.CancelledError:
            if not session.is_terminal:
                self._set_status(session, SessionStatus.STOPPED)
            raise

        except Exception as e:
            if session.is_terminal:
                logger.debug(f"Run {run_id} failed after reaching {session.status.value}: {e}")
            else:
                message = str(e) or type(e).__name__
                session.error = message
                logger.error(f"Run {run_id} failed: {message}")
                self.emitter.error(run_id, message)
                self._set_status(session, SessionStatus.ERROR)

        finally:
            await self._release(session)
            self._log_finished(session)
            self._notify_finished(session)

    async def _acquire(self, session: Session, profile_name: str) -> BrowserHandle:
        self._acquiring.add(session.run_id)
        try:
            return await self.browser_factory.open(profile_name=profile_name, headless=session.headless)
        except Exception as e:
            raise ResourceAcquisitionError(f"Failed to launch browser: {e}", run_id=session.run_id) from e
        finally:
            self._acquiring.discard(session.run_id)

    async def _navigate_start(self, session: Session) -> None:
        self.emitter.log(f"Navigating to: {session.start_url}", run_id=session.run_id)
        page = session.page
        if page is None:
            raise NavigationError(session.start_url, "Browser closed before navigation", run_id=session.run_id)
        try:
            await page.goto(session.start_url, wait_until=self.wait_until)
        except Exception as e:
            raise NavigationError(session.start_url, str(e) or type(e).__name__, run_id=session.run_id) from e

    def _watch_disconnect(self, session: Session, handle: BrowserHandle) -> None:
        def on_close(*_args) -> None:
            if session.released or session.browser_closed or session.is_terminal:
                return
            logger.info(f"Browser for run {session.run_id} was closed")
            session.browser_closed = True
            if session.capture is not None:
                session.capture.detach()
            self._set_status(session, SessionStatus.STOPPED)
            self._cancel_task(session)

        handle.context.on("close", on_close)

    async def _release(self, session: Session) -> None:
        """Free a session's resources; later calls are no-ops."""
        if session.released:
            return
        session.released = True

        if session.capture is not None:
            session.capture.detach()

        handle, session.handle = session.handle, None
        if handle is not None:
            await self._close_handle(session.run_id, handle)
        session.browser_closed = True

        if self.sessions.get(session.run_id) is session:
            del self.sessions[session.run_id]
        logger.debug(f"Released run {session.run_id}")

    async def _close_handle(self, run_id: str, handle: BrowserHandle) -> None:
        try:
            await self.browser_factory.close(handle)
        except Exception as e:
            logger.warning(f"Error closing browser for run {run_id}: {e}")

    def _set_status(self, session: Session, status: SessionStatus) -> None:
        if not session.can_transition(status):
            logger.debug(f"Run {session.run_id}: ignoring {session.status.value} -> {status.value}")
            return
        session.transition(status)
        self.emitter.status(session.run_id, status)

    def _cancel_task(self, session: Session) -> None:
        task = session.task
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    def _log_finished(self, session: Session) -> None:
        duration = session.duration_s
        summary = f"Run {session.run_id} finished with {session.status.value}"
        if duration is not None:
            summary += f" after {duration:.1f}s"
        if session.error:
            summary += f": {session.error}"
        logger.info(summary)

    def _notify_finished(self, session: Session) -> None:
        if self.on_session_finished is None:
            return
        try:
            self.on_session_finished(session)
        except Exception as e:
            logger.error(f"Session finished callback failed for run {session.run_id}: {e}")

    def __repr__(self) -> str:
        return f"SessionManager(sessions={len(self.sessions)}, active={len(self.active_run_ids)})"
