"""Command intake for the runner.

Reads newline-delimited JSON commands from stdin, decodes them and routes
them to the SessionManager. Session work never blocks intake: ``run`` and
``stop`` return immediately, ``quit`` waits for a full shutdown.
"""

import asyncio
import logging
import os
import platform
import socket
import sys
from enum import IntEnum
from importlib import metadata
from typing import Any, Dict, Optional

import psutil

from . import __version__
from .exceptions import ProtocolError, UnknownCommandError
from .protocol.emitter import EventEmitter
from .protocol.models import (
    QuitCommand,
    RunCommand,
    SessionStatus,
    StopCommand,
    TestCommand,
    parse_command,
)
from .session.manager import SessionManager
from .session.models import Session

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    """Process exit codes."""
    SUCCESS = 0
    RUN_FAILED = 1        # termination policy ended on ERROR
    CONFIG_ERROR = 2


async def open_stdin_reader(stream=None) -> asyncio.StreamReader:
    """Attach an asyncio StreamReader to stdin (or the given pipe)."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, stream or sys.stdin)
    return reader


def runtime_info() -> Dict[str, Any]:
    """Describe the runtime for the ``test`` command."""
    try:
        playwright_version = metadata.version("playwright")
    except metadata.PackageNotFoundError:
        playwright_version = None

    return {
        "python": platform.python_version(),
        "platform": sys.platform,
        "arch": platform.machine(),
        "hostname": socket.gethostname(),
        "cpus": os.cpu_count(),
        "memory": psutil.virtual_memory().total,
        "playwright": playwright_version,
        "runner": __version__,
        "pid": os.getpid(),
    }


class CommandDispatcher:
    """Routes decoded commands to the session manager."""

    def __init__(self, manager: SessionManager, emitter: EventEmitter, exit_after_run: bool = False):
        """Initialize the dispatcher.

        Args:
            manager: Session manager receiving run/stop/quit
            emitter: Event sink (``ready``, ``test-result``)
            exit_after_run: End the process once the first session finishes
        """
        self.manager = manager
        self.emitter = emitter
        self.exit_after_run = exit_after_run

        self.exit_code = ExitCode.SUCCESS
        self._exit_requested: Optional[asyncio.Event] = None
        self._pending: set = set()
        self._quit = False
        self._stats = {"lines": 0, "commands": 0, "protocol_errors": 0}

        if exit_after_run:
            manager.on_session_finished = self._on_session_finished

    @property
    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def _exit_event(self) -> asyncio.Event:
        if self._exit_requested is None:
            self._exit_requested = asyncio.Event()
        return self._exit_requested

    def request_exit(self, code: int = ExitCode.SUCCESS) -> None:
        """Ask the read loop to shut down and end with ``code``."""
        logger.info(f"Exit requested with code {code}")
        self.exit_code = ExitCode(code)
        self._exit_event().set()

    def _on_session_finished(self, session: Session) -> None:
        code = ExitCode.RUN_FAILED if session.status == SessionStatus.ERROR else ExitCode.SUCCESS
        logger.info(f"Run {session.run_id} finished with {session.status.value}, exiting")
        self.request_exit(code)

    async def handle_line(self, line: str) -> bool:
        """Decode and route one input record.

        Returns:
            False once a ``quit`` has been processed
        """
        self._stats["lines"] += 1
        line = line.strip()
        if not line:
            return True

        try:
            command = parse_command(line)
        except UnknownCommandError as e:
            self._stats["protocol_errors"] += 1
            logger.warning(f"Ignoring unknown command type: {e.command_type!r}")
            return True
        except ProtocolError as e:
            self._stats["protocol_errors"] += 1
            logger.warning(f"Ignoring malformed command: {e.message}")
            return True

        self._stats["commands"] += 1
        return await self.dispatch(command)

    async def dispatch(self, command) -> bool:
        if isinstance(command, RunCommand):
            await self.manager.start_run(command)
        elif isinstance(command, StopCommand):
            self._track(self.manager.stop(command.run_id))
        elif isinstance(command, TestCommand):
            self.emitter.test_result(runtime_info())
        elif isinstance(command, QuitCommand):
            logger.info("Quit received")
            await self.shutdown()
            return False
        return True

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Command task failed: {task.exception()}")

    async def read_loop(self, reader) -> None:
        """Consume records until end of input or ``quit``."""
        while True:
            line_bytes = await reader.readline()
            if not line_bytes:
                logger.info("Input closed, shutting down")
                break

            try:
                line = line_bytes.decode("utf-8")
            except UnicodeDecodeError as e:
                self._stats["protocol_errors"] += 1
                logger.warning(f"Ignoring undecodable input record: {e}")
                continue

            if not await self.handle_line(line):
                return

        await self.shutdown()

    async def shutdown(self) -> None:
        if self._quit:
            return
        self._quit = True

        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        await self.manager.shutdown()

    async def run(self, reader=None) -> ExitCode:
        """Emit ``ready``, serve commands, and return the exit code."""
        if reader is None:
            reader = await open_stdin_reader()

        self.emitter.ready()
        logger.info("Runner ready")

        read_task = asyncio.ensure_future(self.read_loop(reader))
        exit_task = asyncio.ensure_future(self._exit_event().wait())
        try:
            done, _ = await asyncio.wait({read_task, exit_task}, return_when=asyncio.FIRST_COMPLETED)
            if read_task in done:
                read_task.result()
            elif self._quit:
                await asyncio.gather(read_task, return_exceptions=True)
            else:
                read_task.cancel()
                await asyncio.gather(read_task, return_exceptions=True)
                await self.shutdown()
        finally:
            exit_task.cancel()

        logger.info(f"Runner exiting with code {self.exit_code} ({self._stats['commands']} commands)")
        return self.exit_code
