"""Capability API handed to connector entry functions.

A connector receives exactly one CapabilityAPI instance bound to its own
session. Every operation is scoped to that session: navigation and
evaluation go to the session's page, reported data is tagged with its run
identifier, and captures live in its own capture engine.
"""

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union
from urllib.parse import urlparse

import httpx

from ..capture.browser_factory import BrowserFactory
from ..capture.network_capture import CapturedResponse, NetworkCaptureEngine
from ..exceptions import NavigationError, SessionClosedError
from ..protocol.emitter import EventEmitter
from ..protocol.models import SessionStatus
from .models import Session

logger = logging.getLogger(__name__)

STATUS_KEY = "status"
ERROR_KEY = "error"

# Marks an omitted evaluate() argument, so None can still be passed.
NO_ARG = object()

Condition = Callable[[], Union[Any, Awaitable[Any]]]


class CapabilityAPI:
    """Operations a connector may perform against its session."""

    def __init__(
        self,
        session: Session,
        emitter: EventEmitter,
        capture: NetworkCaptureEngine,
        browser_factory: Optional[BrowserFactory] = None,
        wait_until: str = "domcontentloaded",
        default_poll_interval_ms: int = 2000,
    ):
        self._session = session
        self._emitter = emitter
        self._capture = capture
        self._browser_factory = browser_factory
        self._wait_until = wait_until
        self._default_poll_interval_ms = default_poll_interval_ms

    @property
    def run_id(self) -> str:
        return self._session.run_id

    @property
    def browser_closed(self) -> bool:
        return self._session.browser_closed

    def _require_live(self) -> None:
        if self._session.released or self._session.is_terminal:
            raise SessionClosedError(self.run_id, f"Run {self.run_id} is no longer active")

    def _require_page(self):
        self._require_live()
        page = self._session.page
        if page is None:
            raise SessionClosedError(
                self.run_id,
                "Browser is closed. Use page.http_fetch() for HTTP requests."
            )
        return page

    # Browser operations

    async def navigate(self, url: str) -> None:
        """Navigate the session page to a URL.

        Raises:
            NavigationError: If the browser fails to load the URL
            SessionClosedError: If the session's browser is gone
        """
        page = self._require_page()
        logger.info(f"[{self.run_id}] navigate called with: {url}")
        self._emitter.log(f"Navigating to: {url}", run_id=self.run_id)
        try:
            await page.goto(url, wait_until=self._wait_until)
        except Exception as e:
            if self._session.browser_closed or self._session.released:
                raise SessionClosedError(self.run_id, f"Browser closed while navigating to {url}") from e
            logger.info(f"[{self.run_id}] navigate error: {e}")
            raise NavigationError(url, str(e) or type(e).__name__, run_id=self.run_id) from e
        logger.debug(f"[{self.run_id}] navigate completed")

    async def goto(self, url: str) -> None:
        await self.navigate(url)

    async def evaluate(self, expression: str, arg: Any = NO_ARG) -> Any:
        """Evaluate a JavaScript expression or function source in the page.

        ``arg`` is passed to the page function when given, including None.
        """
        page = self._require_page()
        if arg is NO_ARG:
            return await page.evaluate(expression)
        return await page.evaluate(expression, arg)

    async def sleep(self, duration_ms: float) -> None:
        """Suspend this connector only."""
        self._require_live()
        await asyncio.sleep(max(0.0, float(duration_ms)) / 1000.0)
        self._require_live()

    async def close_browser(self) -> None:
        """Close the browser early while the run continues.

        Cookies are kept so http_fetch() can act on behalf of the user.
        """
        self._require_live()
        if self._session.browser_closed:
            logger.info(f"[{self.run_id}] Browser already closed")
            return

        logger.info(f"[{self.run_id}] Closing browser (connector requested close_browser)")
        handle = self._session.handle
        if handle is not None:
            try:
                self._session.cookies = await handle.context.cookies()
                logger.info(f"[{self.run_id}] Extracted {len(self._session.cookies)} cookies for background HTTP requests")
            except Exception as e:
                logger.warning(f"[{self.run_id}] Could not extract cookies: {e}")
                self._session.cookies = []

        self._session.browser_closed = True
        self._capture.detach()
        self._session.handle = None

        if handle is not None:
            try:
                if self._browser_factory is not None:
                    await self._browser_factory.close(handle)
                else:
                    await handle.context.close()
            except Exception as e:
                logger.warning(f"[{self.run_id}] Error closing context: {e}")

        self._emitter.log("Browser closed, continuing in background...", run_id=self.run_id)

    # Reporting

    def log(self, *parts: Any) -> None:
        """Emit a log event for this run."""
        self._require_live()
        message = " ".join(str(part) for part in parts)
        self._emitter.log(message, run_id=self.run_id)

    async def set_data(self, key: str, value: Any) -> None:
        """Report a key/value pair to the parent.

        The ``status`` key is also surfaced as a log line.
        """
        self._require_live()
        if key == STATUS_KEY:
            self._emitter.log(str(value), run_id=self.run_id)
            logger.info(f"[{self.run_id}] [status] {value}")
        elif key == ERROR_KEY:
            logger.warning(f"[{self.run_id}] [error] {value}")
        self._emitter.data(self.run_id, key, value)

    async def set_progress(
        self,
        phase: Any = None,
        message: Optional[str] = None,
        count: Optional[int] = None
    ) -> None:
        """Report structured progress without changing the session status."""
        self._require_live()
        self._emitter.progress(self.run_id, message=message, phase=phase, count=count)
        if message:
            logger.info(f"[{self.run_id}] [progress] {message}")

    async def prompt_user(
        self,
        message: str,
        condition: Condition,
        poll_interval_ms: Optional[int] = None
    ) -> bool:
        """Ask the user to act in the browser and wait until ``condition`` holds.

        Polls forever; a timeout, if wanted, belongs inside ``condition``.
        Errors raised by ``condition`` are treated as "not yet".

        Raises:
            SessionClosedError: If the run is stopped while waiting
        """
        self._require_live()
        interval_ms = self._default_poll_interval_ms if poll_interval_ms is None else poll_interval_ms

        self._emitter.log(message, run_id=self.run_id)
        self._set_status(SessionStatus.WAITING_FOR_USER)

        while True:
            await asyncio.sleep(max(0, interval_ms) / 1000.0)
            self._require_live()
            try:
                satisfied = condition()
                if inspect.isawaitable(satisfied):
                    satisfied = await satisfied
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug(f"[{self.run_id}] prompt condition raised, still waiting: {e}")
                continue

            if satisfied:
                self._emitter.log("User action completed", run_id=self.run_id)
                self._set_status(SessionStatus.RUNNING)
                return True

    def _set_status(self, status: SessionStatus) -> None:
        if self._session.status == status or not self._session.can_transition(status):
            return
        self._session.transition(status)
        self._emitter.status(self.run_id, status)

    # Network capture

    async def capture_network(self, key: str, url_pattern: str = "", body_pattern: Optional[str] = None) -> None:
        """Register a capture for the first response matching the patterns."""
        self._require_live()
        self._capture.register(key, url_pattern, body_pattern)
        logger.info(f"[{self.run_id}] Registered network capture: {key}")

    async def get_captured_response(self, key: str) -> Optional[Dict[str, Any]]:
        """Stored capture for ``key`` as ``{url, data, timestamp}``, or None."""
        self._require_live()
        captured: Optional[CapturedResponse] = self._capture.get_captured(key)
        return captured.model_dump() if captured is not None else None

    def has_captured_response(self, key: str) -> bool:
        self._require_live()
        return self._capture.has_captured(key)

    async def clear_network_captures(self) -> None:
        self._require_live()
        self._capture.clear()

    # HTTP outside the browser

    async def http_fetch(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout_ms: int = 30000
    ) -> Dict[str, Any]:
        """Send an HTTP request with the session's cookies.

        Never raises for HTTP or transport failures; the returned dict has
        ``ok``, ``status``, ``headers``, ``text``, ``json`` and ``error``.
        """
        self._require_live()
        request_headers = dict(headers or {})

        cookie_header = await self._cookie_header(url)
        if cookie_header and not any(name.lower() == "cookie" for name in request_headers):
            request_headers["cookie"] = cookie_header

        content = None
        if body is not None:
            if isinstance(body, (dict, list)):
                content = json.dumps(body)
                request_headers.setdefault("content-type", "application/json")
            else:
                content = body

        try:
            async with httpx.AsyncClient(timeout=timeout_ms / 1000.0, follow_redirects=True) as client:
                response = await client.request(method.upper(), url, headers=request_headers, content=content)
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            logger.info(f"[{self.run_id}] [http_fetch] {type(e).__name__} for {url[:100]}: {e}")
            return {"ok": False, "status": 0, "headers": {}, "text": "", "json": None, "error": str(e) or type(e).__name__}

        text = response.text
        try:
            parsed = response.json()
        except ValueError:
            parsed = None

        if not response.is_success:
            logger.info(f"[{self.run_id}] [http_fetch] {response.status_code} {response.reason_phrase} for {url[:100]}")
            logger.debug(f"[{self.run_id}] [http_fetch] Response body (first 200 chars): {text[:200]}")

        return {
            "ok": response.is_success,
            "status": response.status_code,
            "headers": dict(response.headers),
            "text": text,
            "json": parsed,
            "error": None,
        }

    async def _cookie_header(self, url: str) -> str:
        context = self._session.context
        if context is not None:
            try:
                cookies = await context.cookies(url)
            except Exception as e:
                logger.debug(f"[{self.run_id}] Could not read browser cookies: {e}")
                cookies = []
        else:
            host = urlparse(url).hostname or ""
            cookies = [c for c in self._session.cookies if _cookie_matches_host(c, host)]

        return "; ".join(f"{c['name']}={c['value']}" for c in cookies if c.get("name"))


def _cookie_matches_host(cookie: Dict[str, Any], host: str) -> bool:
    domain = str(cookie.get("domain") or "")
    if domain.startswith("."):
        domain = domain[1:]
    if not domain or not host:
        return False
    return host == domain or host.endswith("." + domain)
