"""Exceptions raised by the connector runner.

Protocol errors are recovered by the dispatcher and never end the read
loop. Session and connector errors are fatal to the owning session only
and are reported to the parent as ``error`` events.
"""

from typing import Optional


class RunnerError(Exception):
    """Base error for the connector runner."""

    def __init__(
        self,
        message: str = "Connector runner error",
        error_code: str = "runner_error",
        details: Optional[dict] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class ProtocolError(RunnerError):
    """Raised when an input record cannot be decoded into a command."""

    def __init__(
        self,
        message: str = "Malformed command record",
        line: Optional[str] = None
    ):
        super().__init__(
            message=message,
            error_code="protocol_error",
            details={"line": line} if line is not None else {}
        )


class UnknownCommandError(ProtocolError):
    """Raised when a record names a command type the runner does not know."""

    def __init__(self, command_type: Optional[str], line: Optional[str] = None):
        super().__init__(message=f"Unknown command: {command_type}", line=line)
        self.error_code = "unknown_command"
        self.command_type = command_type


class SessionError(RunnerError):
    """Base error for failures scoped to a single run."""

    def __init__(
        self,
        message: str = "Session error",
        run_id: Optional[str] = None,
        error_code: str = "session_error",
        details: Optional[dict] = None
    ):
        super().__init__(message=message, error_code=error_code, details=details)
        self.run_id = run_id


class DuplicateSessionError(SessionError):
    """Raised when a run is requested for an identifier that is still live."""

    def __init__(self, run_id: str):
        super().__init__(
            message=f"Run {run_id} is already active",
            run_id=run_id,
            error_code="duplicate_session"
        )


class SessionClosedError(SessionError):
    """Raised by capability calls after the session's browser is gone."""

    def __init__(self, run_id: Optional[str] = None, message: str = "Session is closed"):
        super().__init__(message=message, run_id=run_id, error_code="session_closed")


class SessionStateError(SessionError):
    """Raised on an illegal session status transition."""

    def __init__(self, run_id: str, current: str, requested: str):
        super().__init__(
            message=f"Run {run_id} cannot move from {current} to {requested}",
            run_id=run_id,
            error_code="invalid_transition",
            details={"current": current, "requested": requested}
        )


class ResourceAcquisitionError(SessionError):
    """Raised when a browser or context cannot be obtained for a session."""

    def __init__(self, message: str, run_id: Optional[str] = None):
        super().__init__(message=message, run_id=run_id, error_code="resource_acquisition")


class NavigationError(SessionError):
    """Raised when the browser fails to navigate."""

    def __init__(self, url: str, reason: str, run_id: Optional[str] = None):
        super().__init__(
            message=reason,
            run_id=run_id,
            error_code="navigation_failed",
            details={"url": url}
        )
        self.url = url


class ConnectorError(RunnerError):
    """Base error for connector loading and execution."""

    def __init__(
        self,
        message: str = "Connector error",
        connector_path: Optional[str] = None,
        error_code: str = "connector_error"
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            details={"connector_path": connector_path} if connector_path else {}
        )
        self.connector_path = connector_path


class ConnectorLoadError(ConnectorError):
    """Raised when a connector file cannot be imported or lacks its entry point."""

    def __init__(self, message: str, connector_path: Optional[str] = None):
        super().__init__(message=message, connector_path=connector_path, error_code="connector_load_failed")


class ConnectorExecutionError(ConnectorError):
    """Raised when a connector's entry function fails."""

    def __init__(self, message: str, connector_path: Optional[str] = None):
        super().__init__(message=message, connector_path=connector_path, error_code="connector_failed")


class ConfigurationError(RunnerError):
    """Raised when runner configuration cannot be loaded or is invalid."""

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="configuration_error",
            details={"source": source} if source else {}
        )
