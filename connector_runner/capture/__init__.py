"""Browser resources and network capture for connector sessions.

Main Components:
- Browser Factory: Playwright startup, executable discovery, per-session contexts
- Network Capture Engine: first-match-wins capture of JSON responses by key

Usage:
    from connector_runner.capture import BrowserFactory, NetworkCaptureEngine

    factory = BrowserFactory(BrowserConfig(headless=True))
    handle = await factory.open(profile_name="chatgpt")
    engine = NetworkCaptureEngine(run_id, emitter)
    engine.attach(handle.page)
"""

from .browser_factory import (
    BrowserConfig,
    BrowserFactory,
    BrowserHandle,
    downloaded_chromium_path,
    is_system_chrome,
    system_chrome_path,
)
from .network_capture import (
    CaptureRegistration,
    CapturedResponse,
    NetworkCaptureEngine,
)

__all__ = [
    # Browser
    "BrowserConfig",
    "BrowserFactory",
    "BrowserHandle",
    "downloaded_chromium_path",
    "is_system_chrome",
    "system_chrome_path",

    # Capture
    "CaptureRegistration",
    "CapturedResponse",
    "NetworkCaptureEngine",
]
