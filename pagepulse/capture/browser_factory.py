"""Browser factory wrapping the Playwright driver.

This module provides the BrowserFactory class that owns the Playwright driver
process and launches browser processes for the session pool. The pool decides
when a browser is needed; the factory only knows how to start and stop one.
"""

import asyncio
import logging
from typing import Dict, Optional, Any, List

from playwright.async_api import (
    Browser,
    Playwright,
    async_playwright,
)

logger = logging.getLogger(__name__)


DEFAULT_CHROMIUM_ARGS = [
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--disable-dev-shm-usage',
    '--disable-gpu',
    '--disable-extensions',
    '--disable-background-networking',
    '--disable-background-timer-throttling',
    '--disable-renderer-backgrounding',
    '--disable-backgrounding-occluded-windows',
    '--disable-features=TranslateUI',
    '--disable-sync',
    '--no-first-run',
    '--no-default-browser-check',
    '--mute-audio',
]


class BrowserEngineType:
    """Supported browser engine types."""
    CHROMIUM = "chromium"
    FIREFOX = "firefox"
    WEBKIT = "webkit"


class BrowserConfig:
    """Configuration for browser process launch."""

    def __init__(
        self,
        engine: str = BrowserEngineType.CHROMIUM,
        headless: bool = True,
        args: Optional[List[str]] = None,
        launch_timeout_ms: int = 30000,
        slow_mo: int = 0,
        executable_path: Optional[str] = None,
        **kwargs
    ):
        """Initialize browser configuration.

        Args:
            engine: Browser engine to use (chromium, firefox, webkit)
            headless: Run browser in headless mode
            args: Extra command line switches; defaults to a hardened set for chromium
            launch_timeout_ms: Maximum time to wait for the browser process to start
            slow_mo: Slow down operations by specified milliseconds
            executable_path: Custom browser binary
        """
        if engine not in (BrowserEngineType.CHROMIUM, BrowserEngineType.FIREFOX,
                          BrowserEngineType.WEBKIT):
            raise ValueError(f"Unsupported browser engine: {engine}")
        self.engine = engine
        self.headless = headless
        if args is None:
            args = list(DEFAULT_CHROMIUM_ARGS) if engine == BrowserEngineType.CHROMIUM else []
        self.args = args
        self.launch_timeout_ms = launch_timeout_ms
        self.slow_mo = slow_mo
        self.executable_path = executable_path
        self.extra_options = kwargs

    def to_browser_options(self) -> Dict[str, Any]:
        """Convert to Playwright browser launch options."""
        options = {
            'headless': self.headless,
            'timeout': self.launch_timeout_ms,
        }

        if self.args:
            options['args'] = list(self.args)

        if self.slow_mo:
            options['slow_mo'] = self.slow_mo

        if self.executable_path:
            options['executable_path'] = self.executable_path

        options.update(self.extra_options)

        return options


class BrowserFactory:
    """Launches browser processes on a lazily started Playwright driver."""

    def __init__(self, config: Optional[BrowserConfig] = None):
        """Initialize browser factory with configuration.

        Args:
            config: Browser configuration object
        """
        self.config = config or BrowserConfig()
        self.playwright: Optional[Playwright] = None
        self._start_lock = asyncio.Lock()
        self._launch_count = 0

    async def start(self) -> None:
        """Start the Playwright driver if it is not running."""
        async with self._start_lock:
            if self.playwright is not None:
                return
            logger.info(f"Starting Playwright driver for engine: {self.config.engine}")
            self.playwright = await async_playwright().start()

    async def launch_browser(self) -> Browser:
        """Launch a new browser process.

        Returns:
            Connected browser

        Raises:
            Exception: Whatever Playwright raises when the launch fails
        """
        await self.start()

        if self.config.engine == BrowserEngineType.FIREFOX:
            browser_type = self.playwright.firefox
        elif self.config.engine == BrowserEngineType.WEBKIT:
            browser_type = self.playwright.webkit
        else:
            browser_type = self.playwright.chromium

        browser = await browser_type.launch(**self.config.to_browser_options())
        self._launch_count += 1
        logger.info(
            f"Browser launched (engine={self.config.engine}, headless={self.config.headless}, "
            f"launch #{self._launch_count})"
        )
        return browser

    async def stop(self) -> None:
        """Stop the Playwright driver."""
        if self.playwright is None:
            return
        try:
            await self.playwright.stop()
            logger.info("Playwright driver stopped")
        except Exception as e:
            logger.warning(f"Error stopping Playwright driver: {e}")
        finally:
            self.playwright = None

    @property
    def launch_count(self) -> int:
        return self._launch_count

    @property
    def is_started(self) -> bool:
        return self.playwright is not None

    def __repr__(self) -> str:
        status = "started" if self.is_started else "stopped"
        return f"BrowserFactory(engine={self.config.engine}, status={status}, launches={self._launch_count})"


def create_browser_factory(
    engine: str = BrowserEngineType.CHROMIUM,
    headless: bool = True,
    **kwargs
) -> BrowserFactory:
    """Create a browser factory with common settings."""
    return BrowserFactory(BrowserConfig(engine=engine, headless=headless, **kwargs))
