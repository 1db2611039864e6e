"""Session state for connector runs."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..capture.browser_factory import BrowserHandle
from ..capture.network_capture import NetworkCaptureEngine
from ..exceptions import SessionStateError
from ..protocol.models import SessionStatus


ALLOWED_TRANSITIONS = {
    SessionStatus.CREATED: {SessionStatus.RUNNING, SessionStatus.ERROR, SessionStatus.STOPPED},
    SessionStatus.RUNNING: {
        SessionStatus.WAITING_FOR_USER,
        SessionStatus.COMPLETE,
        SessionStatus.ERROR,
        SessionStatus.STOPPED,
    },
    SessionStatus.WAITING_FOR_USER: {
        SessionStatus.RUNNING,
        SessionStatus.COMPLETE,
        SessionStatus.ERROR,
        SessionStatus.STOPPED,
    },
    SessionStatus.COMPLETE: set(),
    SessionStatus.ERROR: set(),
    SessionStatus.STOPPED: set(),
}


@dataclass
class Session:
    """Live resources and state of one run."""

    run_id: str
    connector_path: str
    start_url: str
    headless: bool = True
    status: SessionStatus = SessionStatus.CREATED
    handle: Optional[BrowserHandle] = None
    capture: Optional[NetworkCaptureEngine] = None
    task: Optional[asyncio.Task] = None
    created_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None
    error: Optional[str] = None

    # Set once the browser context is gone, by teardown or close_browser().
    browser_closed: bool = False
    released: bool = False

    # Cookies kept after close_browser() for http_fetch().
    cookies: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def page(self):
        if self.handle is None or self.browser_closed:
            return None
        return self.handle.page

    @property
    def context(self):
        if self.handle is None or self.browser_closed:
            return None
        return self.handle.context

    def can_transition(self, status: SessionStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]

    def transition(self, status: SessionStatus) -> None:
        """Move to a new status.

        Raises:
            SessionStateError: If the transition is not allowed
        """
        if not self.can_transition(status):
            raise SessionStateError(self.run_id, self.status.value, status.value)
        self.status = status
        if status.is_terminal:
            self.ended_at = time.time()

    @property
    def duration_s(self) -> Optional[float]:
        if self.ended_at is None:
            return None
        return self.ended_at - self.created_at

    def __repr__(self) -> str:
        return (
            f"Session(run_id={self.run_id!r}, status={self.status.value}, "
            f"browser_closed={self.browser_closed}, released={self.released})"
        )
