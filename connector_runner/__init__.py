"""Connector Runner - browser automation sidecar for data connectors.

A parent process writes JSON-line commands to stdin; the runner executes
connector modules against Playwright browser sessions and reports their
progress and results as JSON-line events on stdout.
"""

__version__ = "1.0.0"
