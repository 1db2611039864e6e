"""Browser factory for creating and releasing Playwright browser contexts.

This module provides the BrowserFactory class that handles Playwright
startup, browser executable discovery, per-connector persistent profiles
and per-session context creation and cleanup.
"""

import asyncio
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    async_playwright,
)

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_VIEWPORT = {"width": 1280, "height": 800}
DEFAULT_ARGS = ["--disable-blink-features=AutomationControlled"]

SYSTEM_CHROME_PATHS = {
    "darwin": "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "win32": "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    "linux": "/usr/bin/google-chrome",
}


def _home_dir() -> Path:
    return Path(os.environ.get("HOME") or os.environ.get("USERPROFILE") or Path.home())


def default_browsers_cache_dir() -> Path:
    return _home_dir() / ".databridge" / "browsers"


def default_profiles_dir() -> Path:
    return _home_dir() / ".dataconnect" / "browser-profiles"


def system_chrome_path(platform: Optional[str] = None) -> Optional[str]:
    """Locate an installed Chrome (or Edge on Windows).

    Args:
        platform: Platform name as in ``sys.platform`` (defaults to current)

    Returns:
        Executable path or None if no system browser is installed
    """
    platform = platform or sys.platform
    candidates = []
    if SYSTEM_CHROME_PATHS.get(platform):
        candidates.append(SYSTEM_CHROME_PATHS[platform])

    if platform == "win32":
        candidates.extend([
            "C:\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe",
            os.path.join(os.environ.get("LOCALAPPDATA", ""), "Google\\Chrome\\Application\\chrome.exe"),
            "C:\\Program Files (x86)\\Microsoft\\Edge\\Application\\msedge.exe",
        ])

    for candidate in candidates:
        if os.path.exists(candidate):
            return candidate
    return None


def downloaded_chromium_path(cache_dir: Path, platform: Optional[str] = None) -> Optional[str]:
    """Locate a Chromium previously downloaded into the browsers cache.

    Args:
        cache_dir: Directory holding ``chromium-*`` downloads
        platform: Platform name as in ``sys.platform`` (defaults to current)

    Returns:
        Executable path or None if nothing usable was found
    """
    platform = platform or sys.platform
    cache_dir = Path(cache_dir)
    if not cache_dir.is_dir():
        return None

    chromium_dirs = sorted(
        entry for entry in cache_dir.iterdir()
        if entry.name.startswith("chromium-") and "headless" not in entry.name
    )
    if not chromium_dirs:
        return None
    chromium_dir = chromium_dirs[0]

    if platform == "darwin":
        relative_paths = [
            ("chrome-mac-arm64", "Google Chrome for Testing.app", "Contents", "MacOS", "Google Chrome for Testing"),
            ("chrome-mac", "Google Chrome for Testing.app", "Contents", "MacOS", "Google Chrome for Testing"),
            ("chrome-mac-arm64", "Chromium.app", "Contents", "MacOS", "Chromium"),
            ("chrome-mac", "Chromium.app", "Contents", "MacOS", "Chromium"),
        ]
    elif platform == "win32":
        relative_paths = [
            ("chrome-win", "chrome.exe"),
            ("chrome-win64", "chrome.exe"),
        ]
    else:
        relative_paths = [
            ("chrome-linux", "chrome"),
            ("chrome-linux64", "chrome"),
        ]

    for parts in relative_paths:
        candidate = chromium_dir.joinpath(*parts)
        if candidate.exists():
            return str(candidate)
    return None


def is_system_chrome(executable_path: Optional[str]) -> bool:
    """Whether an executable is a user-installed Chrome rather than a Playwright Chromium."""
    if not executable_path:
        return False
    lower = executable_path.lower()
    return not any(marker in lower for marker in (".databridge", "chromium", "chrome for testing"))


class BrowserConfig:
    """Configuration for browser launch and context setup."""

    def __init__(
        self,
        headless: bool = True,
        executable_path: Optional[str] = None,
        browsers_cache_dir: Optional[Path] = None,
        profiles_dir: Optional[Path] = None,
        persistent_profiles: bool = True,
        viewport: Optional[Dict[str, int]] = None,
        user_agent: Optional[str] = DEFAULT_USER_AGENT,
        args: Optional[List[str]] = None,
        navigation_timeout_ms: int = 30000,
        slow_mo: int = 0,
        **kwargs
    ):
        """Initialize browser configuration.

        Args:
            headless: Default headless mode when a run does not specify one
            executable_path: Explicit browser executable (skips discovery)
            browsers_cache_dir: Where previously downloaded Chromium builds live
            profiles_dir: Root directory for per-connector persistent profiles
            persistent_profiles: Keep a user-data directory per connector
            viewport: Viewport size dict with 'width' and 'height'
            user_agent: Custom User-Agent string
            args: Extra browser command line arguments
            navigation_timeout_ms: Default navigation timeout
            slow_mo: Slow down operations by specified milliseconds
        """
        self.headless = headless
        self.executable_path = executable_path
        self.browsers_cache_dir = Path(browsers_cache_dir) if browsers_cache_dir else default_browsers_cache_dir()
        self.profiles_dir = Path(profiles_dir) if profiles_dir else default_profiles_dir()
        self.persistent_profiles = persistent_profiles
        self.viewport = viewport or dict(DEFAULT_VIEWPORT)
        self.user_agent = user_agent
        self.args = list(args) if args is not None else list(DEFAULT_ARGS)
        self.navigation_timeout_ms = navigation_timeout_ms
        self.slow_mo = slow_mo
        self.extra_options = kwargs

    def to_browser_options(self, headless: bool, executable_path: Optional[str]) -> Dict[str, Any]:
        """Convert to Playwright browser launch options."""
        options: Dict[str, Any] = {
            'headless': headless,
            'args': list(self.args),
        }

        if self.slow_mo:
            options['slow_mo'] = self.slow_mo

        if executable_path:
            options['executable_path'] = executable_path

        # A system Chrome must use the real keychain to read its own profile.
        if is_system_chrome(executable_path):
            options['ignore_default_args'] = ['--use-mock-keychain']

        options.update(self.extra_options)
        return options

    def to_context_options(self) -> Dict[str, Any]:
        """Convert to Playwright browser context options."""
        options: Dict[str, Any] = {}

        if self.viewport:
            options['viewport'] = self.viewport

        if self.user_agent:
            options['user_agent'] = self.user_agent

        return options


@dataclass
class BrowserHandle:
    """Browser resources owned by one session."""
    context: BrowserContext
    page: Page
    persistent: bool = False
    profile_dir: Optional[Path] = None
    executable_path: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class BrowserFactory:
    """Factory for Playwright browser contexts used by sessions."""

    def __init__(self, config: Optional[BrowserConfig] = None):
        """Initialize browser factory with configuration.

        Args:
            config: Browser configuration object
        """
        self.config = config or BrowserConfig()
        self.playwright: Optional[Playwright] = None
        self._starting: Optional[asyncio.Task] = None
        self._browsers: Dict[bool, Browser] = {}
        self._launching: Dict[bool, asyncio.Task] = {}
        self._profiles_in_use: Set[str] = set()
        self._executable_path: Optional[str] = None
        self._executable_resolved = False
        self._context_count = 0

    def resolve_executable(self) -> Optional[str]:
        """Pick the browser executable, caching the outcome.

        Order: configured path, system Chrome, previously downloaded
        Chromium, then Playwright's bundled Chromium (None).
        """
        if self._executable_resolved:
            return self._executable_path

        path = self.config.executable_path
        if path:
            logger.info(f"Using configured browser: {path}")
        else:
            path = system_chrome_path()
            if path:
                logger.info(f"Using system browser: {path}")
            else:
                path = downloaded_chromium_path(self.config.browsers_cache_dir)
                if path:
                    logger.info(f"Using downloaded Chromium: {path}")
                else:
                    logger.info("Using Playwright bundled Chromium")

        self._executable_path = path
        self._executable_resolved = True
        return path

    async def start(self) -> None:
        """Start Playwright."""
        if self.playwright is not None:
            return

        if self._starting is None:
            self._starting = asyncio.ensure_future(async_playwright().start())

        try:
            self.playwright = await self._starting
            logger.info("Playwright started")
        except Exception as e:
            logger.error(f"Failed to start Playwright: {e}")
            self._starting = None
            raise

    async def stop(self) -> None:
        """Close shared browsers and stop Playwright."""
        logger.info("Stopping browser factory")

        for headless, browser in list(self._browsers.items()):
            try:
                await browser.close()
            except Exception as e:
                logger.warning(f"Error closing browser (headless={headless}): {e}")
        self._browsers.clear()
        self._launching.clear()

        if self.playwright is not None:
            try:
                await self.playwright.stop()
            except Exception as e:
                logger.warning(f"Error stopping Playwright: {e}")
            self.playwright = None
        self._starting = None
        self._context_count = 0

    async def open(self, profile_name: Optional[str] = None, headless: Optional[bool] = None) -> BrowserHandle:
        """Open a browser context and page for a session.

        Args:
            profile_name: Persistent profile name (the connector's file stem)
            headless: Headless mode for this session (defaults to config); a
                headed configuration wins over a headless request

        Returns:
            Handle owning the context and page
        """
        await self.start()
        headless = self.config.headless if headless is None else (headless and self.config.headless)
        executable_path = self.resolve_executable()

        profile_dir = None
        if self.config.persistent_profiles and profile_name:
            profile_dir = self.config.profiles_dir / profile_name
            if str(profile_dir) in self._profiles_in_use:
                logger.warning(
                    f"Profile {profile_dir} is held by another session, using an ephemeral context"
                )
                profile_dir = None

        if profile_dir is not None:
            context = await self._launch_persistent(profile_dir, headless, executable_path)
            self._profiles_in_use.add(str(profile_dir))
        else:
            browser = await self._shared_browser(headless, executable_path)
            context = await browser.new_context(**self.config.to_context_options())

        try:
            context.set_default_navigation_timeout(float(self.config.navigation_timeout_ms))
            page = context.pages[0] if context.pages else await context.new_page()
        except Exception:
            if profile_dir is not None:
                self._profiles_in_use.discard(str(profile_dir))
            await context.close()
            raise

        self._context_count += 1
        logger.debug(f"Opened browser context #{self._context_count} (persistent={profile_dir is not None})")
        return BrowserHandle(
            context=context,
            page=page,
            persistent=profile_dir is not None,
            profile_dir=profile_dir,
            executable_path=executable_path,
        )

    async def close(self, handle: Optional[BrowserHandle]) -> None:
        """Close a session's context and free its profile."""
        if handle is None:
            return
        if handle.profile_dir is not None:
            self._profiles_in_use.discard(str(handle.profile_dir))
        self._context_count = max(0, self._context_count - 1)
        await handle.context.close()

    async def _launch_persistent(self, profile_dir: Path, headless: bool, executable_path: Optional[str]) -> BrowserContext:
        profile_dir.mkdir(parents=True, exist_ok=True)
        options = self.config.to_browser_options(headless, executable_path)
        options.update(self.config.to_context_options())

        logger.info(f"Launching {'headless' if headless else 'headed'} browser with profile: {profile_dir}")
        context = await self.playwright.chromium.launch_persistent_context(str(profile_dir), **options)
        logger.info("Browser launched successfully")
        return context

    async def _shared_browser(self, headless: bool, executable_path: Optional[str]) -> Browser:
        browser = self._browsers.get(headless)
        if browser is not None and browser.is_connected():
            return browser

        if headless not in self._launching:
            options = self.config.to_browser_options(headless, executable_path)
            logger.info(f"Launching {'headless' if headless else 'headed'} shared browser")
            self._launching[headless] = asyncio.ensure_future(self.playwright.chromium.launch(**options))

        try:
            browser = await self._launching[headless]
        except Exception:
            self._launching.pop(headless, None)
            raise

        self._launching.pop(headless, None)
        self._browsers[headless] = browser
        return browser

    @property
    def is_running(self) -> bool:
        return self.playwright is not None

    @property
    def context_count(self) -> int:
        """Get current number of open contexts."""
        return self._context_count

    def __repr__(self) -> str:
        return (
            f"BrowserFactory(headless={self.config.headless}, "
            f"persistent_profiles={self.config.persistent_profiles}, "
            f"running={self.is_running}, "
            f"contexts={self.context_count})"
        )
