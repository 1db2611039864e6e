"""Wire protocol between the runner and its parent controller.

Commands (stdin):
- run, stop, quit, test

Events (stdout):
- ready, log, status, data, network-captured, result, error, test-result
"""

from .models import (
    Command,
    RunCommand,
    StopCommand,
    QuitCommand,
    TestCommand,
    Event,
    ReadyEvent,
    LogEvent,
    StatusEvent,
    ProgressStatus,
    DataEvent,
    NetworkCapturedEvent,
    ResultEvent,
    ErrorEvent,
    TestResultEvent,
    SessionStatus,
    parse_command,
)
from .emitter import EventEmitter

__all__ = [
    # Commands
    "Command",
    "RunCommand",
    "StopCommand",
    "QuitCommand",
    "TestCommand",
    "parse_command",

    # Events
    "Event",
    "ReadyEvent",
    "LogEvent",
    "StatusEvent",
    "ProgressStatus",
    "DataEvent",
    "NetworkCapturedEvent",
    "ResultEvent",
    "ErrorEvent",
    "TestResultEvent",
    "SessionStatus",

    "EventEmitter",
]
