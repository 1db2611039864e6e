"""Configuration system for the connector runner with precedence handling.

Sources, highest precedence first:
CLI flags > environment variables > config file > auto-discovered file > defaults
"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .capture.browser_factory import (
    DEFAULT_ARGS,
    DEFAULT_USER_AGENT,
    DEFAULT_VIEWPORT,
    BrowserConfig,
)
from .exceptions import ConfigurationError

WAIT_STATES = ("load", "domcontentloaded", "networkidle", "commit")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class BrowserSettings(BaseModel):
    """Browser launch options."""
    executable_path: Optional[str] = Field(default=None, description="Explicit browser executable")
    browsers_cache_dir: Optional[Path] = Field(default=None, description="Directory of downloaded Chromium builds")
    profiles_dir: Optional[Path] = Field(default=None, description="Root of per-connector browser profiles")
    persistent_profiles: bool = Field(default=True, description="Keep a browser profile per connector")
    headful: bool = Field(default=False, description="Force every session to open a visible window")
    viewport: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_VIEWPORT))
    user_agent: Optional[str] = Field(default=DEFAULT_USER_AGENT)
    args: List[str] = Field(default_factory=lambda: list(DEFAULT_ARGS))
    navigation_timeout_ms: int = Field(default=30000, ge=1000, le=600000)
    wait_until: str = Field(default="domcontentloaded", description="Load state navigation waits for")

    @field_validator('wait_until')
    @classmethod
    def validate_wait_until(cls, v):
        if v not in WAIT_STATES:
            raise ValueError(f"wait_until must be one of: {', '.join(WAIT_STATES)}")
        return v

    @field_validator('viewport')
    @classmethod
    def validate_viewport(cls, v):
        if set(v) != {'width', 'height'}:
            raise ValueError("viewport must have exactly 'width' and 'height'")
        return v

    def to_browser_config(self) -> BrowserConfig:
        return BrowserConfig(
            headless=not self.headful,
            executable_path=self.executable_path,
            browsers_cache_dir=self.browsers_cache_dir,
            profiles_dir=self.profiles_dir,
            persistent_profiles=self.persistent_profiles,
            viewport=self.viewport,
            user_agent=self.user_agent,
            args=self.args,
            navigation_timeout_ms=self.navigation_timeout_ms,
        )


class SessionSettings(BaseModel):
    """Session lifecycle options."""
    exit_after_run: bool = Field(default=False, description="Exit once the first run reaches a terminal state")
    completion_linger_ms: int = Field(default=2000, ge=0, description="Keep the browser open after COMPLETE")
    shutdown_timeout_s: float = Field(default=10.0, ge=0.0, description="Wait for session tasks during quit")
    prompt_poll_interval_ms: int = Field(default=2000, ge=0, description="Default prompt_user poll interval")


class SandboxSettings(BaseModel):
    """Connector loading options."""
    entry_point: str = Field(default="run", min_length=1, description="Connector entry function name")
    unwrap_results: bool = Field(default=True, description="Unwrap {success, data} result envelopes")

    @field_validator('entry_point')
    @classmethod
    def validate_entry_point(cls, v):
        if not v.isidentifier():
            raise ValueError("entry_point must be a valid Python identifier")
        return v


class CaptureSettings(BaseModel):
    """Network capture options."""
    enabled: bool = Field(default=True, description="Attach the capture engine to session pages")


class LoggingSettings(BaseModel):
    """Diagnostic logging options (stderr)."""
    level: str = Field(default="INFO")

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        v = str(v).upper()
        if v not in LOG_LEVELS:
            raise ValueError(f"level must be one of: {', '.join(LOG_LEVELS)}")
        return v


class RunnerConfiguration(BaseModel):
    """Complete runner configuration with all sections."""

    browser: BrowserSettings = Field(default_factory=BrowserSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)
    capture: CaptureSettings = Field(default_factory=CaptureSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    # Metadata
    config_file_path: Optional[Path] = Field(default=None, description="Source config file")
    loaded_from: List[str] = Field(default_factory=list, description="Configuration sources")


class ConfigurationLoader:
    """Loads configuration from multiple sources with precedence."""

    DEFAULT_CONFIG_FILES = [
        "connector-runner.yaml",
        "connector-runner.yml",
        "connector-runner.json",
    ]

    ENV_PREFIX = "CONNECTOR_RUNNER_"

    ENV_MAPPING = {
        "EXECUTABLE_PATH": "browser.executable_path",
        "BROWSERS_CACHE_DIR": "browser.browsers_cache_dir",
        "PROFILES_DIR": "browser.profiles_dir",
        "PERSISTENT_PROFILES": "browser.persistent_profiles",
        "HEADFUL": "browser.headful",
        "NAVIGATION_TIMEOUT_MS": "browser.navigation_timeout_ms",
        "WAIT_UNTIL": "browser.wait_until",
        "EXIT_AFTER_RUN": "session.exit_after_run",
        "COMPLETION_LINGER_MS": "session.completion_linger_ms",
        "SHUTDOWN_TIMEOUT_S": "session.shutdown_timeout_s",
        "PROMPT_POLL_INTERVAL_MS": "session.prompt_poll_interval_ms",
        "ENTRY_POINT": "sandbox.entry_point",
        "CAPTURE_ENABLED": "capture.enabled",
        "LOG_LEVEL": "logging.level",
    }

    BOOLEAN_PATHS = (
        "browser.persistent_profiles",
        "browser.headful",
        "session.exit_after_run",
        "capture.enabled",
    )
    INTEGER_PATHS = (
        "browser.navigation_timeout_ms",
        "session.completion_linger_ms",
        "session.prompt_poll_interval_ms",
    )
    FLOAT_PATHS = ("session.shutdown_timeout_s",)

    def __init__(self):
        self.loaded_sources: List[str] = []

    def load_configuration(
        self,
        config_file: Optional[Path] = None,
        cli_overrides: Optional[Dict[str, Any]] = None,
        search_paths: Optional[List[Path]] = None
    ) -> RunnerConfiguration:
        """Load configuration from all sources with proper precedence.

        Args:
            config_file: Explicitly specified config file
            cli_overrides: CLI flag overrides (nested dict)
            search_paths: Paths to search for config files

        Returns:
            Merged configuration

        Raises:
            ConfigurationError: If a source cannot be read or the result is invalid
        """
        self.loaded_sources = []

        config_data: Dict[str, Any] = {}
        self.loaded_sources.append("defaults")

        if not config_file:
            discovered_config = self._discover_config_file(search_paths or [Path.cwd()])
            if discovered_config:
                source = discovered_config.pop("_source_file")
                config_data = self._merge_config(config_data, discovered_config)
                self.loaded_sources.append(f"auto-discovered: {source}")

        if config_file:
            config_file = Path(config_file)
            if not config_file.exists():
                raise ConfigurationError(f"Configuration file not found: {config_file}", source=str(config_file))

            file_config = self._load_config_file(config_file)
            config_data = self._merge_config(config_data, file_config)
            self.loaded_sources.append(f"config file: {config_file}")

        env_config = self._load_environment_variables()
        if env_config:
            config_data = self._merge_config(config_data, env_config)
            self.loaded_sources.append("environment variables")

        if cli_overrides:
            config_data = self._merge_config(config_data, cli_overrides)
            self.loaded_sources.append("CLI flags")

        config_data["loaded_from"] = self.loaded_sources
        if config_file:
            config_data["config_file_path"] = config_file

        try:
            return RunnerConfiguration(**config_data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    def _discover_config_file(self, search_paths: List[Path]) -> Optional[Dict[str, Any]]:
        """Discover configuration file in search paths."""
        for search_path in search_paths:
            for config_filename in self.DEFAULT_CONFIG_FILES:
                config_path = Path(search_path) / config_filename
                if config_path.exists() and config_path.is_file():
                    config_data = self._load_config_file(config_path)
                    config_data["_source_file"] = str(config_path)
                    return config_data
        return None

    def _load_config_file(self, config_path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML or JSON file."""
        suffix = config_path.suffix.lower()
        if suffix not in ('.yaml', '.yml', '.json'):
            raise ConfigurationError(f"Unsupported config file format: {config_path.suffix}", source=str(config_path))

        try:
            content = config_path.read_text(encoding='utf-8')
            if suffix == '.json':
                data = json.loads(content)
            else:
                data = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {config_path}: {e}", source=str(config_path))
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in config file {config_path}: {e}", source=str(config_path))
        except OSError as e:
            raise ConfigurationError(f"Error reading config file {config_path}: {e}", source=str(config_path))

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping", source=str(config_path))
        return data

    def _load_environment_variables(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        config: Dict[str, Any] = {}

        for suffix, config_path in self.ENV_MAPPING.items():
            env_value = os.getenv(f"{self.ENV_PREFIX}{suffix}")
            if env_value is not None:
                converted_value = self._convert_env_value(env_value, config_path)
                self._set_nested_value(config, config_path, converted_value)

        return config

    def _convert_env_value(self, value: str, config_path: str) -> Any:
        """Convert environment variable string to appropriate type."""
        if config_path in self.BOOLEAN_PATHS:
            return value.lower() in ('true', '1', 'yes', 'on')

        try:
            if config_path in self.INTEGER_PATHS:
                return int(value)
            if config_path in self.FLOAT_PATHS:
                return float(value)
        except ValueError:
            raise ConfigurationError(f"Invalid numeric value for {config_path}: {value!r}", source="environment")

        if config_path.endswith(('_dir',)):
            return Path(value) if value else None

        return value

    def _set_nested_value(self, config: Dict[str, Any], path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = path.split('.')
        current = config

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Merge configuration dictionaries, with override taking precedence."""
        if not override:
            return base

        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result


def load_configuration(
    config_file: Optional[Path] = None,
    cli_overrides: Optional[Dict[str, Any]] = None,
    search_paths: Optional[List[Path]] = None
) -> RunnerConfiguration:
    """Convenience function to load configuration.

    Args:
        config_file: Path to configuration file
        cli_overrides: CLI flag overrides
        search_paths: Paths to search for config files

    Returns:
        Loaded and merged configuration
    """
    loader = ConfigurationLoader()
    return loader.load_configuration(config_file, cli_overrides, search_paths)


def print_configuration(config: RunnerConfiguration, format: str = "yaml") -> str:
    """Render configuration in the given format for debugging.

    Args:
        config: Configuration to print
        format: Output format (yaml, json)

    Returns:
        Formatted configuration string
    """
    config_dict = config.model_dump(
        mode="json",
        exclude={'loaded_from', 'config_file_path'},
        exclude_none=False
    )

    if format.lower() == "json":
        return json.dumps(config_dict, indent=2, default=str)
    return yaml.safe_dump(config_dict, default_flow_style=False, sort_keys=True)


def setup_logging(config: RunnerConfiguration) -> None:
    """Send diagnostic logging to stderr; stdout carries the protocol."""
    logging.basicConfig(
        level=getattr(logging, config.logging.level),
        format="[connector-runner] %(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )
