"""Unit tests for configuration loading."""

import json
import logging
import os
import sys

import pytest
import yaml

from connector_runner.config import (
    ConfigurationLoader,
    RunnerConfiguration,
    load_configuration,
    print_configuration,
    setup_logging,
)
from connector_runner.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep CONNECTOR_RUNNER_* variables from the host out of tests."""
    for name in list(os.environ):
        if name.startswith(ConfigurationLoader.ENV_PREFIX):
            monkeypatch.delenv(name)


class TestDefaults:
    """Tests for default configuration values."""

    def test_defaults(self, tmp_path):
        config = load_configuration(search_paths=[tmp_path])

        assert config.browser.persistent_profiles is True
        assert config.browser.headful is False
        assert config.browser.viewport == {"width": 1280, "height": 800}
        assert config.browser.navigation_timeout_ms == 30000
        assert config.browser.wait_until == "domcontentloaded"
        assert config.session.exit_after_run is False
        assert config.session.completion_linger_ms == 2000
        assert config.session.shutdown_timeout_s == 10.0
        assert config.session.prompt_poll_interval_ms == 2000
        assert config.sandbox.entry_point == "run"
        assert config.capture.enabled is True
        assert config.logging.level == "INFO"
        assert config.loaded_from == ["defaults"]

    def test_browser_config_conversion(self, tmp_path):
        config = RunnerConfiguration()
        config.browser.headful = True
        config.browser.profiles_dir = tmp_path

        browser_config = config.browser.to_browser_config()

        assert browser_config.headless is False
        assert browser_config.profiles_dir == tmp_path
        assert browser_config.navigation_timeout_ms == 30000


class TestConfigurationSources:
    """Tests for source precedence."""

    def test_yaml_file(self, tmp_path):
        config_file = tmp_path / "runner.yaml"
        config_file.write_text(yaml.safe_dump({
            "session": {"exit_after_run": True, "completion_linger_ms": 0},
            "logging": {"level": "debug"},
        }))

        config = load_configuration(config_file=config_file)

        assert config.session.exit_after_run is True
        assert config.session.completion_linger_ms == 0
        assert config.logging.level == "DEBUG"
        assert config.config_file_path == config_file
        assert f"config file: {config_file}" in config.loaded_from

    def test_json_file(self, tmp_path):
        config_file = tmp_path / "runner.json"
        config_file.write_text(json.dumps({"sandbox": {"entry_point": "collect"}}))

        config = load_configuration(config_file=config_file)

        assert config.sandbox.entry_point == "collect"

    def test_auto_discovery(self, tmp_path):
        (tmp_path / "connector-runner.yml").write_text("capture:\n  enabled: false\n")

        config = load_configuration(search_paths=[tmp_path])

        assert config.capture.enabled is False
        assert any(source.startswith("auto-discovered") for source in config.loaded_from)

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        config_file = tmp_path / "runner.yaml"
        config_file.write_text("session:\n  completion_linger_ms: 500\n")
        monkeypatch.setenv("CONNECTOR_RUNNER_COMPLETION_LINGER_MS", "100")
        monkeypatch.setenv("CONNECTOR_RUNNER_EXIT_AFTER_RUN", "yes")
        monkeypatch.setenv("CONNECTOR_RUNNER_PROFILES_DIR", str(tmp_path / "profiles"))

        config = load_configuration(config_file=config_file)

        assert config.session.completion_linger_ms == 100
        assert config.session.exit_after_run is True
        assert config.browser.profiles_dir == tmp_path / "profiles"
        assert "environment variables" in config.loaded_from

    def test_cli_overrides_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CONNECTOR_RUNNER_EXIT_AFTER_RUN", "true")

        config = load_configuration(
            cli_overrides={"session": {"exit_after_run": False}},
            search_paths=[tmp_path]
        )

        assert config.session.exit_after_run is False
        assert config.loaded_from[-1] == "CLI flags"

    def test_nested_merge_keeps_siblings(self):
        loader = ConfigurationLoader()

        merged = loader._merge_config(
            {"session": {"exit_after_run": True, "completion_linger_ms": 5}},
            {"session": {"completion_linger_ms": 0}}
        )

        assert merged == {"session": {"exit_after_run": True, "completion_linger_ms": 0}}


class TestConfigurationErrors:
    """Tests for invalid configuration."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError) as exc_info:
            load_configuration(config_file=tmp_path / "missing.yaml")
        assert "not found" in exc_info.value.message

    def test_unsupported_format(self, tmp_path):
        config_file = tmp_path / "runner.toml"
        config_file.write_text("x = 1")

        with pytest.raises(ConfigurationError):
            load_configuration(config_file=config_file)

    def test_invalid_yaml(self, tmp_path):
        config_file = tmp_path / "runner.yaml"
        config_file.write_text("session: [unclosed")

        with pytest.raises(ConfigurationError) as exc_info:
            load_configuration(config_file=config_file)
        assert "Invalid YAML" in exc_info.value.message

    def test_non_mapping_file(self, tmp_path):
        config_file = tmp_path / "runner.json"
        config_file.write_text("[1, 2]")

        with pytest.raises(ConfigurationError):
            load_configuration(config_file=config_file)

    @pytest.mark.parametrize("overrides", [
        {"browser": {"wait_until": "eventually"}},
        {"browser": {"navigation_timeout_ms": 10}},
        {"browser": {"viewport": {"width": 800}}},
        {"session": {"completion_linger_ms": -1}},
        {"sandbox": {"entry_point": "not valid"}},
        {"logging": {"level": "LOUD"}},
    ])
    def test_validation_errors(self, tmp_path, overrides):
        with pytest.raises(ConfigurationError) as exc_info:
            load_configuration(cli_overrides=overrides, search_paths=[tmp_path])
        assert "Invalid configuration" in exc_info.value.message

    def test_bad_numeric_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CONNECTOR_RUNNER_SHUTDOWN_TIMEOUT_S", "soon")

        with pytest.raises(ConfigurationError):
            load_configuration(search_paths=[tmp_path])


class TestOutput:
    """Tests for configuration rendering and logging setup."""

    def test_print_yaml(self):
        rendered = yaml.safe_load(print_configuration(RunnerConfiguration()))

        assert rendered["session"]["completion_linger_ms"] == 2000
        assert "loaded_from" not in rendered

    def test_print_json(self):
        rendered = json.loads(print_configuration(RunnerConfiguration(), "json"))
        assert rendered["sandbox"]["entry_point"] == "run"

    def test_logging_goes_to_stderr(self):
        config = RunnerConfiguration()
        config.logging.level = "DEBUG"

        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            setup_logging(config)

            assert root.level == logging.DEBUG
            assert any(getattr(handler, "stream", None) is sys.stderr for handler in root.handlers)
        finally:
            for handler in list(root.handlers):
                root.removeHandler(handler)
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)
