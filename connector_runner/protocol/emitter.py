"""Event emitter writing protocol records to the output stream."""

import json
import logging
import math
import sys
from typing import Any, Callable, Dict, List, Optional, Set, TextIO

from .models import (
    DataEvent,
    ErrorEvent,
    Event,
    LogEvent,
    NetworkCapturedEvent,
    ProgressStatus,
    ReadyEvent,
    ResultEvent,
    SessionStatus,
    StatusEvent,
    TestResultEvent,
)

logger = logging.getLogger(__name__)

CIRCULAR_PLACEHOLDER = "<circular>"


def _dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, default=str, allow_nan=False, separators=(",", ":"))


def json_safe(value: Any, _path: Optional[Set[int]] = None) -> Any:
    """Copy ``value`` into a form strict JSON encoding accepts.

    Mapping keys become strings, non-finite floats become None, sequences
    and sets become lists, reference cycles become a placeholder and any
    other object is rendered with ``str()``.
    """
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None

    if not isinstance(value, (dict, list, tuple, set, frozenset)):
        return str(value)

    path = _path if _path is not None else set()
    if id(value) in path:
        return CIRCULAR_PLACEHOLDER
    path.add(id(value))
    try:
        if isinstance(value, dict):
            return {
                key if isinstance(key, str) else str(key): json_safe(item, path)
                for key, item in value.items()
            }
        return [json_safe(item, path) for item in value]
    finally:
        path.discard(id(value))


class EventEmitter:
    """Serializes events as single-line JSON records.

    All writes happen on the event loop thread, so records for one session
    appear in the order their operations completed.
    """

    def __init__(self, stream: Optional[TextIO] = None):
        """Initialize the emitter.

        Args:
            stream: Text stream to write to (defaults to stdout)
        """
        self.stream = stream if stream is not None else sys.stdout
        self._broken = False
        self._listeners: List[Callable[[Event], None]] = []

    def add_listener(self, listener: Callable[[Event], None]) -> None:
        """Register a callback invoked with every emitted event."""
        self._listeners.append(listener)

    def emit(self, event: Event) -> None:
        """Write one event to the output stream.

        Never raises: unencodable events are logged and dropped, and a
        closed stream turns later writes into no-ops.
        """
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Error in event listener: {e}")

        if self._broken:
            return

        try:
            line = self.encode(event)
        except Exception as e:
            logger.error(f"Dropping {event.type} event that cannot be encoded: {e}")
            return

        try:
            self.stream.write(line + "\n")
            self.stream.flush()
        except (BrokenPipeError, ValueError, OSError) as e:
            # ValueError: write to a closed file
            self._broken = True
            logger.warning(f"Output stream unavailable, dropping further events: {e}")

    @staticmethod
    def encode(event: Event) -> str:
        """Encode an event as a single strict JSON line.

        Values ``json`` rejects (non-string keys, NaN and infinities,
        reference cycles) are replaced by a sanitized copy.
        """
        payload = event.to_wire()
        try:
            return _dumps(payload)
        except (TypeError, ValueError, RecursionError) as e:
            logger.debug(f"Sanitizing {event.type} event for JSON output: {e}")
            return _dumps(json_safe(payload))

    # Convenience helpers, one per event kind

    def ready(self) -> None:
        self.emit(ReadyEvent())

    def log(self, message: str, run_id: Optional[str] = None) -> None:
        self.emit(LogEvent(run_id=run_id, message=str(message)))

    def status(self, run_id: str, status: SessionStatus) -> None:
        self.emit(StatusEvent(run_id=run_id, status=status))

    def progress(
        self,
        run_id: str,
        message: Optional[str] = None,
        phase: Any = None,
        count: Optional[int] = None
    ) -> None:
        self.emit(StatusEvent(
            run_id=run_id,
            status=ProgressStatus(message=message, phase=phase, count=count)
        ))

    def data(self, run_id: str, key: str, value: Any) -> None:
        self.emit(DataEvent(run_id=run_id, key=key, value=value))

    def network_captured(self, run_id: str, key: str, url: str) -> None:
        self.emit(NetworkCapturedEvent(run_id=run_id, key=key, url=url))

    def result(self, run_id: str, data: Any) -> None:
        self.emit(ResultEvent(run_id=run_id, data=data))

    def error(self, run_id: str, message: str) -> None:
        self.emit(ErrorEvent(run_id=run_id, message=message))

    def test_result(self, data: Dict[str, Any]) -> None:
        self.emit(TestResultEvent(data=data))
