"""Connector loading and execution.

A connector is a Python file exposing one entry function (``run`` by
default) that receives the session's CapabilityAPI and returns, or
resolves to, the run's result:

    async def run(page):
        await page.capture_network("profile", url_pattern="api/me")
        await page.navigate("https://example.test/settings")
        return await page.get_captured_response("profile")
"""

import hashlib
import importlib.util
import inspect
import itertools
import logging
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Any, Callable

from ..exceptions import ConnectorExecutionError, ConnectorLoadError

logger = logging.getLogger(__name__)

DEFAULT_ENTRY_POINT = "run"

_load_counter = itertools.count(1)


@dataclass
class Connector:
    """A loaded connector module and its entry function."""
    name: str
    path: Path
    entry: Callable[[Any], Any]
    module: ModuleType


class ConnectorSandbox:
    """Loads connector modules and invokes their entry function."""

    def __init__(self, entry_point: str = DEFAULT_ENTRY_POINT, unwrap_results: bool = True):
        """Initialize the sandbox.

        Args:
            entry_point: Name of the function every connector must expose
            unwrap_results: Report ``{"success": true, "data": X}`` results as ``X``
        """
        self.entry_point = entry_point
        self.unwrap_results = unwrap_results

    def load(self, connector_path: str) -> Connector:
        """Import a connector file in isolation.

        Args:
            connector_path: Path to the connector's Python source

        Returns:
            Loaded connector

        Raises:
            ConnectorLoadError: If the file is missing, fails to import, or
                lacks a callable entry function
        """
        path = Path(connector_path).expanduser()
        if not path.is_file():
            raise ConnectorLoadError(f"Connector not found: {path}", connector_path=str(path))

        # Unique per load so two runs of one connector never share globals.
        digest = hashlib.sha1(f"{path.resolve()}:{next(_load_counter)}".encode()).hexdigest()[:12]
        module_name = f"_connector_{path.stem.replace('-', '_')}_{digest}"

        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise ConnectorLoadError(f"Cannot load connector from {path}", connector_path=str(path))

        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except SyntaxError as e:
            raise ConnectorLoadError(f"Syntax error in connector {path.name}: {e}", connector_path=str(path)) from e
        except Exception as e:
            raise ConnectorLoadError(
                f"Connector {path.name} failed to import: {type(e).__name__}: {e}",
                connector_path=str(path)
            ) from e

        entry = getattr(module, self.entry_point, None)
        if entry is None:
            raise ConnectorLoadError(
                f"Connector {path.name} does not define '{self.entry_point}'",
                connector_path=str(path)
            )
        if not callable(entry):
            raise ConnectorLoadError(
                f"Connector {path.name} entry '{self.entry_point}' is not callable",
                connector_path=str(path)
            )

        logger.debug(f"Loaded connector {path.stem} from {path}")
        return Connector(name=path.stem, path=path, entry=entry, module=module)

    async def execute(self, connector: Connector, api: Any) -> Any:
        """Call the connector's entry function with the capability API.

        Returns:
            The connector's result value

        Raises:
            ConnectorExecutionError: If connector code raises
        """
        logger.info(f"Starting connector execution: {connector.name}")
        try:
            result = connector.entry(api)
            if inspect.isawaitable(result):
                result = await result
        except (Exception, SystemExit) as e:
            message = str(e) or type(e).__name__
            raise ConnectorExecutionError(message, connector_path=str(connector.path)) from e

        logger.info(f"Connector {connector.name} completed with result: {'has result' if result is not None else 'None'}")
        return self.unwrap(result) if self.unwrap_results else result

    @staticmethod
    def unwrap(result: Any) -> Any:
        """Strip a ``{"success": true, "data": X}`` envelope."""
        if isinstance(result, dict) and result.get("success") and result.get("data"):
            return result["data"]
        return result
