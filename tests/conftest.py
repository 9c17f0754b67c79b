"""Shared test fixtures and browser fakes for PagePulse tests."""

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pagepulse.capture.capabilities.base import Capability
from pagepulse.capture.timeouts import TimeoutConfig, TimeoutEngine, OperationType
from pagepulse.models.events import CapabilityEvent


class FakeElement:
    """Stand-in for a Playwright ElementHandle."""

    def __init__(self, text: str = "", visible: bool = True):
        self.text = text
        self.visible = visible
        self.clicked = False

    async def is_visible(self) -> bool:
        return self.visible

    async def inner_text(self) -> str:
        return self.text

    async def click(self, **kwargs) -> None:
        self.clicked = True


class FakePage:
    """Stand-in for a Playwright Page with just the calls PagePulse makes."""

    def __init__(self, goto_error: Optional[Exception] = None, goto_delay: float = 0.0):
        self.url = "about:blank"
        self.goto_error = goto_error
        self.goto_delay = goto_delay
        self.goto_calls: List[Dict[str, Any]] = []
        self.close_calls = 0
        self.viewport: Optional[Dict[str, int]] = None
        self.headers: Dict[str, str] = {}
        self.routes: List[Any] = []
        self.unroute_behavior: Optional[str] = None
        self.listeners: Dict[str, List[Any]] = {}
        self.elements: Dict[str, FakeElement] = {}
        self.evaluate_result: Dict[str, Any] = {'navigation': {'ttfb': 12.0}}
        self.screenshot_calls = 0
        self._closed = False

    def is_closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        self.close_calls += 1
        self._closed = True

    async def goto(self, url: str, wait_until: str = "load", timeout: float = 0) -> None:
        self.goto_calls.append({'url': url, 'wait_until': wait_until, 'timeout': timeout})
        if self.goto_delay:
            await asyncio.sleep(self.goto_delay)
        if self.goto_error is not None:
            raise self.goto_error
        self.url = url

    async def wait_for_load_state(self, state: str = "load", timeout: float = 0) -> None:
        return None

    async def evaluate(self, script: str) -> Any:
        return dict(self.evaluate_result)

    async def unroute_all(self, behavior: Optional[str] = None) -> None:
        self.unroute_behavior = behavior
        self.routes.clear()

    async def route(self, pattern: str, handler) -> None:
        self.routes.append((pattern, handler))

    async def unroute(self, pattern: str, handler) -> None:
        self.routes.remove((pattern, handler))

    async def set_viewport_size(self, viewport: Dict[str, int]) -> None:
        self.viewport = viewport

    async def set_extra_http_headers(self, headers: Dict[str, str]) -> None:
        self.headers.update(headers)

    def on(self, event: str, handler) -> None:
        self.listeners.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler) -> None:
        self.listeners[event].remove(handler)

    def emit(self, event: str, payload: Any) -> None:
        for handler in list(self.listeners.get(event, [])):
            handler(payload)

    async def screenshot(self, **options) -> bytes:
        self.screenshot_calls += 1
        return b"\xff\xd8jpeg-frame"

    async def query_selector(self, selector: str) -> Optional[FakeElement]:
        return self.elements.get(selector)


class FakeBrowser:
    """Stand-in for a Playwright Browser."""

    def __init__(self, page_options: Optional[Dict[str, Any]] = None):
        self.connected = True
        self.pages: List[FakePage] = []
        self.listeners: Dict[str, List[Any]] = {}
        self.page_options = page_options or {}
        self.close_calls = 0

    def is_connected(self) -> bool:
        return self.connected

    async def new_page(self) -> FakePage:
        page = FakePage(**self.page_options)
        self.pages.append(page)
        return page

    def on(self, event: str, handler) -> None:
        self.listeners.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler) -> None:
        self.listeners[event].remove(handler)

    async def close(self) -> None:
        self.close_calls += 1
        self.connected = False

    def disconnect(self) -> None:
        """Simulate a crashed browser process."""
        self.connected = False
        for handler in list(self.listeners.get("disconnected", [])):
            handler(self)


class FakeBrowserFactory:
    """Stand-in for BrowserFactory that hands out FakeBrowser instances."""

    def __init__(self, fail_times: int = 0, launch_delay: float = 0.0,
                 page_options: Optional[Dict[str, Any]] = None):
        self.fail_times = fail_times
        self.launch_delay = launch_delay
        self.page_options = page_options or {}
        self.browsers: List[FakeBrowser] = []
        self.launch_attempts = 0
        self.stopped = False

    @property
    def launch_count(self) -> int:
        return len(self.browsers)

    async def launch_browser(self) -> FakeBrowser:
        self.launch_attempts += 1
        if self.launch_delay:
            await asyncio.sleep(self.launch_delay)
        if self.launch_attempts <= self.fail_times:
            raise RuntimeError("Executable doesn't exist")
        browser = FakeBrowser(self.page_options)
        self.browsers.append(browser)
        return browser

    async def stop(self) -> None:
        self.stopped = True


class StubCapability(Capability):
    """Capability that replays a fixed script of events."""

    def __init__(self, name: str, slot: str, payload: Optional[Dict[str, Any]] = None,
                 delay: float = 0.0, error: Optional[Exception] = None, progress_events: int = 1):
        self.name = name
        self.slot = slot
        self.payload = payload if payload is not None else {'ok': True}
        self.delay = delay
        self.error = error
        self.progress_events = progress_events
        self.calls = 0

    async def run(self, page, run_id: str):
        self.calls += 1
        for i in range(self.progress_events):
            yield self.progress(f"{self.name} step {i + 1}")
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        yield self.complete(dict(self.payload))


class ErrorEventCapability(Capability):
    """Capability that reports failure through an error event."""

    def __init__(self, name: str, slot: str):
        self.name = name
        self.slot = slot

    async def run(self, page, run_id: str):
        yield CapabilityEvent.error(self.name, "selector engine unavailable")


FAST_BUDGETS_MS = {
    OperationType.NAVIGATION: [50, 100, 200],
    OperationType.PAGE_LOAD: [50, 100, 200],
    OperationType.COOKIE_DETECTION: [50, 100, 200],
    OperationType.SCREENSHOT: [50, 100, 200],
    OperationType.PAGE_CLOSE: [50, 100, 200],
}


@pytest.fixture
def fast_timeouts():
    """Timeout engine with short budgets for every operation used in tests."""
    return TimeoutEngine(TimeoutConfig(base_timeouts_ms=dict(FAST_BUDGETS_MS)))


@pytest.fixture
def browser_factory():
    return FakeBrowserFactory()


@pytest.fixture
def fake_page():
    return FakePage()
