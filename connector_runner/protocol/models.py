"""Pydantic models for the runner's line-oriented wire protocol.

Commands arrive on stdin and events leave on stdout, one JSON object per
line. Field names follow Python conventions; the wire names (``runId``,
``connectorPath``) are carried as aliases.
"""

import json
from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..exceptions import ProtocolError, UnknownCommandError


class SessionStatus(str, Enum):
    """Lifecycle status of an automation session."""
    CREATED = "CREATED"
    RUNNING = "RUNNING"
    WAITING_FOR_USER = "WAITING_FOR_USER"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"
    STOPPED = "STOPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETE, SessionStatus.ERROR, SessionStatus.STOPPED)


class WireModel(BaseModel):
    """Base model for protocol records."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

class RunCommand(WireModel):
    """Start a connector run in a new session."""
    type: Literal["run"] = "run"
    run_id: str = Field(alias="runId", min_length=1, description="Caller-supplied run identifier")
    connector_path: str = Field(alias="connectorPath", min_length=1, description="Path to the connector file")
    url: str = Field(min_length=1, description="Initial URL to open before the connector runs")
    headless: bool = Field(default=True, description="Launch the session browser without a window")


class StopCommand(WireModel):
    """Stop a live session."""
    type: Literal["stop"] = "stop"
    run_id: str = Field(alias="runId", min_length=1)


class QuitCommand(WireModel):
    """Tear down every session and exit."""
    type: Literal["quit"] = "quit"


class TestCommand(WireModel):
    """Runtime self-check answered with a ``test-result`` event."""
    __test__ = False

    type: Literal["test"] = "test"


Command = Union[RunCommand, StopCommand, QuitCommand, TestCommand]

_COMMAND_MODELS: Dict[str, type] = {
    "run": RunCommand,
    "stop": StopCommand,
    "quit": QuitCommand,
    "test": TestCommand,
}


def parse_command(line: str) -> Command:
    """Decode one input record into a command.

    Args:
        line: A single line read from the input stream

    Returns:
        The decoded command model

    Raises:
        UnknownCommandError: If the record's ``type`` is not a known command
        ProtocolError: If the record is not a valid command object
    """
    try:
        payload = json.loads(line)
    except (json.JSONDecodeError, TypeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}", line=line)

    if not isinstance(payload, dict):
        raise ProtocolError("Command record must be a JSON object", line=line)

    command_type = payload.get("type")
    model = _COMMAND_MODELS.get(command_type) if isinstance(command_type, str) else None
    if model is None:
        raise UnknownCommandError(command_type, line=line)

    try:
        return model.model_validate(payload)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'record'}: {err['msg']}"
            for err in e.errors()
        )
        raise ProtocolError(f"Invalid {command_type} command: {problems}", line=line)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

class Event(WireModel):
    """Base class for outbound events."""

    type: str

    def to_wire(self) -> Dict[str, Any]:
        """Dictionary form of the event using wire field names."""
        return self.model_dump(by_alias=True)


class ReadyEvent(Event):
    type: Literal["ready"] = "ready"


class LogEvent(Event):
    type: Literal["log"] = "log"
    run_id: Optional[str] = Field(default=None, alias="runId")
    message: str

    def to_wire(self) -> Dict[str, Any]:
        # Process-wide log lines carry no runId at all.
        return self.model_dump(by_alias=True, exclude_none=True)


class ProgressStatus(WireModel):
    """Structured progress payload carried in a ``status`` event."""
    type: Literal["COLLECTING"] = "COLLECTING"
    message: Optional[str] = None
    phase: Optional[Any] = None
    count: Optional[int] = None


class StatusEvent(Event):
    type: Literal["status"] = "status"
    run_id: str = Field(alias="runId")
    status: Union[SessionStatus, ProgressStatus]

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        """CREATED is internal and never reported."""
        if v == SessionStatus.CREATED:
            raise ValueError("CREATED is not a reportable status")
        return v

    def to_wire(self) -> Dict[str, Any]:
        if isinstance(self.status, ProgressStatus):
            status: Any = self.status.model_dump(exclude_none=True)
        else:
            status = self.status.value
        return {"type": self.type, "runId": self.run_id, "status": status}


class DataEvent(Event):
    type: Literal["data"] = "data"
    run_id: str = Field(alias="runId")
    key: str
    value: Any = None


class NetworkCapturedEvent(Event):
    type: Literal["network-captured"] = "network-captured"
    run_id: str = Field(alias="runId")
    key: str
    url: str


class ResultEvent(Event):
    type: Literal["result"] = "result"
    run_id: str = Field(alias="runId")
    data: Any = None


class ErrorEvent(Event):
    type: Literal["error"] = "error"
    run_id: str = Field(alias="runId")
    message: str


class TestResultEvent(Event):
    __test__ = False

    type: Literal["test-result"] = "test-result"
    data: Dict[str, Any] = Field(default_factory=dict)
