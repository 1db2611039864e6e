"""Unit tests for connector loading and execution."""

import pytest

from connector_runner.exceptions import ConnectorExecutionError, ConnectorLoadError
from connector_runner.session.sandbox import ConnectorSandbox


class TestConnectorLoading:
    """Tests for ConnectorSandbox.load."""

    @pytest.fixture
    def sandbox(self):
        return ConnectorSandbox()

    def test_load_async_entry(self, sandbox, returning_connector):
        connector = sandbox.load(returning_connector)

        assert connector.name == "answer"
        assert callable(connector.entry)

    def test_missing_file(self, sandbox, tmp_path):
        with pytest.raises(ConnectorLoadError) as exc_info:
            sandbox.load(str(tmp_path / "nope.py"))

        assert "Connector not found" in exc_info.value.message
        assert exc_info.value.error_code == "connector_load_failed"

    def test_syntax_error(self, sandbox, write_connector):
        path = write_connector("def run(page:\n    return 1\n", name="broken")

        with pytest.raises(ConnectorLoadError) as exc_info:
            sandbox.load(path)

        assert "Syntax error" in exc_info.value.message

    def test_import_error(self, sandbox, write_connector):
        path = write_connector("import not_a_real_module_xyz\n\ndef run(page):\n    return 1\n")

        with pytest.raises(ConnectorLoadError) as exc_info:
            sandbox.load(path)

        assert "failed to import" in exc_info.value.message

    def test_missing_entry(self, sandbox, write_connector):
        path = write_connector("def main(page):\n    return 1\n")

        with pytest.raises(ConnectorLoadError) as exc_info:
            sandbox.load(path)

        assert "does not define 'run'" in exc_info.value.message

    def test_entry_not_callable(self, sandbox, write_connector):
        path = write_connector("run = 42\n")

        with pytest.raises(ConnectorLoadError):
            sandbox.load(path)

    def test_custom_entry_point(self, write_connector):
        path = write_connector("def collect(page):\n    return 'ok'\n")

        connector = ConnectorSandbox(entry_point="collect").load(path)

        assert connector.entry(None) == "ok"

    def test_loads_do_not_share_globals(self, sandbox, write_connector):
        """Test each load gets a fresh module."""
        path = write_connector(
            """
            calls = []

            def run(page):
                calls.append(1)
                return len(calls)
            """
        )

        first = sandbox.load(path)
        second = sandbox.load(path)

        assert first.entry(None) == 1
        assert first.entry(None) == 2
        assert second.entry(None) == 1


class TestConnectorExecution:
    """Tests for ConnectorSandbox.execute."""

    @pytest.fixture
    def sandbox(self):
        return ConnectorSandbox()

    @pytest.mark.asyncio
    async def test_async_result(self, sandbox, returning_connector):
        connector = sandbox.load(returning_connector)
        assert await sandbox.execute(connector, object()) == 42

    @pytest.mark.asyncio
    async def test_sync_result(self, sandbox, write_connector):
        connector = sandbox.load(write_connector("def run(page):\n    return {'n': 1}\n"))
        assert await sandbox.execute(connector, object()) == {"n": 1}

    @pytest.mark.asyncio
    async def test_api_is_passed(self, sandbox, write_connector):
        connector = sandbox.load(write_connector("async def run(page):\n    return page.run_id\n"))

        class Api:
            run_id = "r7"

        assert await sandbox.execute(connector, Api()) == "r7"

    @pytest.mark.asyncio
    async def test_failure_wrapped(self, sandbox, write_connector):
        """Test connector exceptions become ConnectorExecutionError."""
        connector = sandbox.load(write_connector(
            """
            async def run(page):
                raise ValueError("login required")
            """
        ))

        with pytest.raises(ConnectorExecutionError) as exc_info:
            await sandbox.execute(connector, object())

        assert exc_info.value.message == "login required"
        assert isinstance(exc_info.value.__cause__, ValueError)

    @pytest.mark.asyncio
    async def test_failure_without_message(self, sandbox, write_connector):
        connector = sandbox.load(write_connector("def run(page):\n    raise KeyError()\n"))

        with pytest.raises(ConnectorExecutionError) as exc_info:
            await sandbox.execute(connector, object())

        assert exc_info.value.message == "KeyError"

    @pytest.mark.asyncio
    async def test_sys_exit_contained(self, sandbox, write_connector):
        connector = sandbox.load(write_connector("import sys\n\ndef run(page):\n    sys.exit(3)\n"))

        with pytest.raises(ConnectorExecutionError):
            await sandbox.execute(connector, object())

    @pytest.mark.asyncio
    async def test_success_envelope_unwrapped(self, sandbox, write_connector):
        connector = sandbox.load(write_connector(
            "def run(page):\n    return {'success': True, 'data': {'items': [1]}}\n"
        ))

        assert await sandbox.execute(connector, object()) == {"items": [1]}

    @pytest.mark.asyncio
    async def test_unwrap_disabled(self, write_connector):
        sandbox = ConnectorSandbox(unwrap_results=False)
        connector = sandbox.load(write_connector(
            "def run(page):\n    return {'success': True, 'data': 1}\n"
        ))

        assert await sandbox.execute(connector, object()) == {"success": True, "data": 1}

    @pytest.mark.parametrize("result", [
        {"success": False, "data": 1},
        {"success": True},
        {"success": True, "data": None},
        [1, 2],
        None,
    ])
    def test_unwrap_leaves_other_values(self, result):
        assert ConnectorSandbox.unwrap(result) == result
