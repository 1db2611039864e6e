"""Command-line interface for the connector runner."""

from .main import app, build_dispatcher, cli_main

__all__ = [
    'app',
    'build_dispatcher',
    'cli_main',
]
