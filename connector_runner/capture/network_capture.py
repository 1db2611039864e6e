"""Network capture engine for connector sessions.

This module provides the NetworkCaptureEngine class that hooks into
Playwright response events and keeps, for every registered capture key,
the first response whose URL and request body match the key's patterns.
"""

import asyncio
import collections
import json
import logging
import time
from typing import Any, Deque, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from ..protocol.emitter import EventEmitter

logger = logging.getLogger(__name__)

BODY_PATTERN_SEPARATOR = "|"


class CaptureRegistration(BaseModel):
    """Pattern set tracked under a capture key."""

    key: str = Field(description="Capture key")
    url_pattern: str = Field(default="", description="Substring the response URL must contain")
    body_pattern: Optional[str] = Field(
        default=None,
        description="'|'-separated substrings, one of which the request body must contain"
    )

    @property
    def body_alternatives(self) -> List[str]:
        """Alternative substrings encoded in ``body_pattern``."""
        if not self.body_pattern:
            return []
        return self.body_pattern.split(BODY_PATTERN_SEPARATOR)

    def matches_url(self, url: str) -> bool:
        """Check the URL against the pattern (an empty pattern matches all)."""
        return not self.url_pattern or self.url_pattern in url

    def matches_body(self, request_body: Optional[str]) -> bool:
        """Check the outgoing request body against any of the alternatives."""
        alternatives = self.body_alternatives
        if not alternatives:
            return True
        body = request_body or ""
        return any(alternative in body for alternative in alternatives)

    def matches(self, url: str, request_body: Optional[str]) -> bool:
        return self.matches_url(url) and self.matches_body(request_body)


class CapturedResponse(BaseModel):
    """A response stored under a capture key."""

    url: str = Field(description="Response URL")
    data: Any = Field(description="Decoded JSON body")
    timestamp: int = Field(
        default_factory=lambda: int(time.time() * 1000),
        description="Capture time in milliseconds since the epoch"
    )


class PendingResponse:
    """A matching response whose body may still be in flight.

    Responses are queued per key in delivery order; a key is only ever
    filled from the head of its queue, so a slow body read keeps later
    responses for the same key waiting behind it.
    """

    __slots__ = ("url", "request_body", "keys", "done", "data", "stored")

    def __init__(self, url: str, request_body: Optional[str], keys: List[str]):
        self.url = url
        self.request_body = request_body
        self.keys = keys
        self.done = False
        self.data: Any = None
        self.stored: List[str] = []


class NetworkCaptureEngine:
    """Per-session registry of capture requests and their first matches."""

    def __init__(self, run_id: str, emitter: EventEmitter):
        """Initialize capture engine for a session.

        Args:
            run_id: Run identifier the captures belong to
            emitter: Event emitter used to announce captures
        """
        self.run_id = run_id
        self.emitter = emitter
        self.registrations: Dict[str, CaptureRegistration] = {}
        self.results: Dict[str, CapturedResponse] = {}
        self._queues: Dict[str, Deque[PendingResponse]] = {}
        self._pending: Set[asyncio.Task] = set()
        self._page = None

    # Registry operations

    def register(self, key: str, url_pattern: str = "", body_pattern: Optional[str] = None) -> CaptureRegistration:
        """Register or overwrite the patterns for a capture key.

        An already stored result for the key is kept.
        """
        registration = CaptureRegistration(
            key=key,
            url_pattern=url_pattern or "",
            body_pattern=body_pattern or None,
        )
        self.registrations[key] = registration
        logger.debug(f"[{self.run_id}] Registered network capture: {key}")
        return registration

    def get_captured(self, key: str) -> Optional[CapturedResponse]:
        return self.results.get(key)

    def has_captured(self, key: str) -> bool:
        return key in self.results

    def clear(self) -> None:
        """Empty the registrations, the stored results and the delivery queues."""
        self.registrations.clear()
        self.results.clear()
        self._queues.clear()
        logger.debug(f"[{self.run_id}] Network captures cleared")

    # Matching

    def candidates(self, url: str, request_body: Optional[str]) -> List[CaptureRegistration]:
        """Registrations still waiting for a response that this request satisfies."""
        return [
            registration for registration in self.registrations.values()
            if registration.key not in self.results and registration.matches(url, request_body)
        ]

    def ingest(self, url: str, request_body: Optional[str], response_text: Optional[str]) -> List[str]:
        """Offer one observed request/response pair with its body already read.

        Args:
            url: Response URL
            request_body: Outgoing request body, if any
            response_text: Raw response body text

        Returns:
            Keys populated by this response (none while an earlier
            response for the same key is still being read)
        """
        pending = self._enqueue(url, request_body)
        if pending is None:
            return []
        self._complete(pending, response_text)
        return pending.stored

    def _enqueue(self, url: str, request_body: Optional[str]) -> Optional[PendingResponse]:
        """Take a delivery slot in the queue of every key the request matches."""
        keys = [registration.key for registration in self.candidates(url, request_body)]
        if not keys:
            return None

        pending = PendingResponse(url, request_body, keys)
        for key in keys:
            self._queues.setdefault(key, collections.deque()).append(pending)
        return pending

    def _complete(self, pending: PendingResponse, response_text: Optional[str]) -> None:
        """Record the body outcome and fill keys whose earlier responses are settled."""
        try:
            pending.data = json.loads(response_text) if response_text else None
        except (ValueError, TypeError) as e:
            logger.debug(f"[{self.run_id}] Ignoring undecodable response from {pending.url}: {e}")
            pending.data = None
        pending.done = True

        for key in pending.keys:
            self._drain(key)

    def _drain(self, key: str) -> None:
        queue = self._queues.get(key)
        while queue and queue[0].done:
            head = queue.popleft()
            if self._accepts(key, head):
                self._store(key, head)
                queue.clear()

        if not queue:
            self._queues.pop(key, None)

    def _accepts(self, key: str, pending: PendingResponse) -> bool:
        # The key may have been filled, cleared or re-registered while the body was read.
        registration = self.registrations.get(key)
        return (
            pending.data is not None
            and key not in self.results
            and registration is not None
            and registration.matches(pending.url, pending.request_body)
        )

    def _store(self, key: str, pending: PendingResponse) -> None:
        self.results[key] = CapturedResponse(url=pending.url, data=pending.data)
        pending.stored.append(key)

        self.emitter.network_captured(self.run_id, key, pending.url)
        logger.debug(f"[{self.run_id}] Captured {key} from {pending.url}")

    # Playwright wiring

    def attach(self, page) -> None:
        """Subscribe to the page's response notifications."""
        if self._page is page:
            return
        if self._page is not None:
            self.detach()
        self._page = page
        page.on("response", self._on_response)
        logger.debug(f"[{self.run_id}] Network capture listener attached")

    def detach(self) -> None:
        """Unsubscribe from the page and drop pending response processing."""
        page, self._page = self._page, None
        if page is not None:
            try:
                page.remove_listener("response", self._on_response)
            except Exception as e:
                logger.debug(f"[{self.run_id}] Failed to remove response listener: {e}")

        for task in list(self._pending):
            task.cancel()
        self._pending.clear()
        self._queues.clear()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _on_response(self, response) -> None:
        """Handle response event from Playwright.

        The delivery slot is taken here, synchronously, so capture order
        follows notification order rather than body read completion.

        Args:
            response: Playwright response object
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"[{self.run_id}] No running loop for response {getattr(response, 'url', '?')}")
            return

        pending = self._enqueue_response(response)
        if pending is None:
            return

        task = loop.create_task(self._read_body(pending, response))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def process_response(self, response) -> List[str]:
        """Read a Playwright response and offer it to the registry.

        Returns:
            Keys populated by this response
        """
        pending = self._enqueue_response(response)
        if pending is None:
            return []
        await self._read_body(pending, response)
        return pending.stored

    def _enqueue_response(self, response) -> Optional[PendingResponse]:
        url = response.url
        try:
            request_body = response.request.post_data
        except Exception as e:
            logger.debug(f"[{self.run_id}] Failed to extract request body: {e}")
            request_body = None
        return self._enqueue(url, request_body)

    async def _read_body(self, pending: PendingResponse, response) -> None:
        response_text = None
        try:
            response_text = await response.text()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Redirects, aborted requests and closed pages have no body.
            logger.debug(f"[{self.run_id}] Failed to read response body: {e}")
        finally:
            # A failed or cancelled read must not hold up later responses.
            self._complete(pending, response_text)

    def __repr__(self) -> str:
        return (
            f"NetworkCaptureEngine(run_id={self.run_id!r}, "
            f"registered={len(self.registrations)}, "
            f"captured={len(self.results)}, "
            f"pending={len(self._pending)})"
        )
