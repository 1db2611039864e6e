"""Connector sessions: lifecycle, capability surface and connector loading."""

from .capability import CapabilityAPI
from .manager import SessionManager
from .models import ALLOWED_TRANSITIONS, Session
from .sandbox import Connector, ConnectorSandbox

__all__ = [
    "ALLOWED_TRANSITIONS",
    "CapabilityAPI",
    "Connector",
    "ConnectorSandbox",
    "Session",
    "SessionManager",
]
