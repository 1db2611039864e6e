"""In-memory doubles for the Playwright objects the runner touches."""

import asyncio
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from connector_runner.capture.browser_factory import BrowserHandle
from connector_runner.protocol.emitter import EventEmitter

CLOSED_MESSAGE = "Target page, context or browser has been closed"


class FakeRequest:
    def __init__(self, post_data: Optional[str] = None):
        self.post_data = post_data


class FakeResponse:
    """Stand-in for a Playwright response."""

    def __init__(
        self,
        url: str,
        body: str = "",
        post_data: Optional[str] = None,
        gate: Optional[asyncio.Event] = None,
        body_error: Optional[Exception] = None,
    ):
        self.url = url
        self.request = FakeRequest(post_data)
        self._body = body
        # text() blocks until the gate is set, to model a slow body.
        self.gate = gate
        self.body_error = body_error

    async def text(self) -> str:
        if self.gate is not None:
            await self.gate.wait()
        if self.body_error is not None:
            raise self.body_error
        return self._body


class FakePage:
    """Records goto/evaluate calls and fires response notifications."""

    def __init__(self, context: "FakeContext"):
        self.context = context
        self.url = "about:blank"
        self.listeners: Dict[str, List[Callable]] = defaultdict(list)
        self.goto_calls: List[str] = []
        self.evaluate_calls: List[Any] = []
        self.evaluate_result: Any = None
        self.goto_error: Optional[Exception] = None
        self.goto_block: Optional[asyncio.Event] = None
        self.responses_on_goto: Dict[str, List[FakeResponse]] = {}
        self.closed = False

    def on(self, event: str, handler: Callable) -> None:
        self.listeners[event].append(handler)

    def remove_listener(self, event: str, handler: Callable) -> None:
        if handler in self.listeners[event]:
            self.listeners[event].remove(handler)

    def fire_response(self, response: FakeResponse) -> None:
        for handler in list(self.listeners["response"]):
            handler(response)

    async def goto(self, url: str, wait_until: Optional[str] = None, **kwargs):
        self.goto_calls.append(url)
        if self.goto_block is not None:
            await self.goto_block.wait()
        if self.closed:
            raise Exception(CLOSED_MESSAGE)
        if self.goto_error is not None:
            raise self.goto_error
        self.url = url
        for response in self.responses_on_goto.get(url, []):
            self.fire_response(response)

    async def evaluate(self, expression: str, *args: Any):
        self.evaluate_calls.append((expression,) + args)
        if self.closed:
            raise Exception(CLOSED_MESSAGE)
        return self.evaluate_result


class FakeContext:
    """Stand-in for a Playwright browser context with a single page."""

    def __init__(self):
        self.page = FakePage(self)
        self.pages = [self.page]
        self.listeners: Dict[str, List[Callable]] = defaultdict(list)
        self.cookie_jar: List[Dict[str, Any]] = []
        self.navigation_timeout: Optional[float] = None
        self.closed = False
        self.close_calls = 0

    def on(self, event: str, handler: Callable) -> None:
        self.listeners[event].append(handler)

    def set_default_navigation_timeout(self, timeout: float) -> None:
        self.navigation_timeout = timeout

    async def new_page(self) -> FakePage:
        return self.page

    async def cookies(self, urls=None) -> List[Dict[str, Any]]:
        if self.closed:
            raise Exception(CLOSED_MESSAGE)
        return list(self.cookie_jar)

    async def close(self) -> None:
        self.close_calls += 1
        self.simulate_disconnect()

    def simulate_disconnect(self) -> None:
        """Close as if the user quit the browser window."""
        if self.closed:
            return
        self.closed = True
        self.page.closed = True
        if self.page.goto_block is not None:
            self.page.goto_block.set()
        for handler in list(self.listeners["close"]):
            handler(self)


class FakeBrowserFactory:
    """BrowserFactory double handing out FakeContext handles."""

    def __init__(self):
        self.handles: List[BrowserHandle] = []
        self.open_calls: List[tuple] = []
        self.closed_handles: List[BrowserHandle] = []
        self.open_error: Optional[Exception] = None
        self.open_block: Optional[asyncio.Event] = None
        self.page_setup: Optional[Callable[[FakePage], None]] = None
        self.stopped = False

    async def open(self, profile_name: Optional[str] = None, headless: Optional[bool] = None) -> BrowserHandle:
        self.open_calls.append((profile_name, headless))
        if self.open_block is not None:
            await self.open_block.wait()
        if self.open_error is not None:
            raise self.open_error

        context = FakeContext()
        if self.page_setup is not None:
            self.page_setup(context.page)
        handle = BrowserHandle(context=context, page=context.page, persistent=False)
        self.handles.append(handle)
        return handle

    async def close(self, handle: Optional[BrowserHandle]) -> None:
        if handle is None:
            return
        self.closed_handles.append(handle)
        await handle.context.close()

    async def stop(self) -> None:
        self.stopped = True

    @property
    def open_contexts(self) -> int:
        return sum(1 for handle in self.handles if not handle.context.closed)


# ---------------------------------------------------------------------------
# Event recording
# ---------------------------------------------------------------------------

class EventRecorder:
    """Collects emitted events in wire form."""

    def __init__(self, emitter: EventEmitter):
        self.events: List[Dict[str, Any]] = []
        emitter.add_listener(lambda event: self.events.append(event.to_wire()))

    def for_run(self, run_id: str) -> List[Dict[str, Any]]:
        return [event for event in self.events if event.get("runId") == run_id]

    def of_type(self, event_type: str, run_id: Optional[str] = None) -> List[Dict[str, Any]]:
        events = self.events if run_id is None else self.for_run(run_id)
        return [event for event in events if event["type"] == event_type]

    def statuses(self, run_id: str) -> List[Any]:
        return [event["status"] for event in self.of_type("status", run_id)]

    def has_status(self, run_id: str, status: str) -> bool:
        return status in self.statuses(run_id)

    async def wait_for(self, predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError(f"Timed out waiting; events so far: {self.events}")
            await asyncio.sleep(0.005)

    async def wait_for_status(self, run_id: str, status: str, timeout: float = 2.0) -> None:
        await self.wait_for(lambda: self.has_status(run_id, status), timeout)


