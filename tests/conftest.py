"""Shared test fixtures and configuration for connector runner tests."""

import io
import sys
import textwrap
from pathlib import Path

import pytest

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from connector_runner.protocol.emitter import EventEmitter
from connector_runner.session.manager import SessionManager
from tests.fakes import EventRecorder, FakeBrowserFactory


@pytest.fixture
def output_stream():
    """In-memory protocol output stream."""
    return io.StringIO()


@pytest.fixture
def emitter(output_stream):
    """Event emitter writing to an in-memory stream."""
    return EventEmitter(stream=output_stream)


@pytest.fixture
def recorder(emitter):
    """Recorder of every event the emitter sends."""
    return EventRecorder(emitter)


@pytest.fixture
def fake_factory():
    """Browser factory double."""
    return FakeBrowserFactory()


@pytest.fixture
def manager(emitter, fake_factory):
    """Session manager over the fake browser engine with no completion linger."""
    return SessionManager(
        emitter,
        fake_factory,
        completion_linger_ms=0,
        shutdown_timeout_s=1.0,
        prompt_poll_interval_ms=10,
    )


@pytest.fixture
def write_connector(tmp_path):
    """Write a connector module to tmp_path and return its path."""
    def _write(source: str, name: str = "connector") -> str:
        path = tmp_path / f"{name}.py"
        path.write_text(textwrap.dedent(source), encoding="utf-8")
        return str(path)
    return _write


@pytest.fixture
def returning_connector(write_connector):
    """Connector whose entry returns 42."""
    return write_connector(
        """
        async def run(page):
            return 42
        """,
        name="answer",
    )
