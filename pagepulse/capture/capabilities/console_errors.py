"""Console error capability.

Listens for console error messages and uncaught page errors for a short
observation window after navigation.
"""

import asyncio
import logging
from datetime import datetime
from typing import AsyncIterator, Dict, List, Any

from playwright.async_api import Page, ConsoleMessage, Error as PlaywrightError

from ...models.events import CapabilityEvent
from .base import Capability, CapabilityName, ResultSlot

logger = logging.getLogger(__name__)


NOISE_PATTERNS = [
    "chrome-extension://",
    "moz-extension://",
    "DevTools failed to load",
    "favicon.ico",
    "ResizeObserver loop limit exceeded",
    "[HMR]",
]


class ConsoleErrorsCapability(Capability):
    """Collects console errors and uncaught exceptions."""

    name = CapabilityName.CONSOLE_ERRORS
    slot = ResultSlot.CONSOLE_ERRORS

    def __init__(self, observation_ms: int = 3000, poll_ms: int = 1000,
                 filter_noise: bool = True, max_errors: int = 100):
        self.observation_ms = observation_ms
        self.poll_ms = poll_ms
        self.filter_noise = filter_noise
        self.max_errors = max_errors

    def _is_noise(self, text: str) -> bool:
        return self.filter_noise and any(p in text for p in NOISE_PATTERNS)

    async def run(self, page: Page, run_id: str) -> AsyncIterator[CapabilityEvent]:
        errors: List[Dict[str, Any]] = []

        def on_console(message: ConsoleMessage) -> None:
            if message.type != "error" or self._is_noise(message.text):
                return
            if len(errors) < self.max_errors:
                location = message.location or {}
                errors.append({
                    'type': 'console',
                    'text': message.text,
                    'url': location.get('url'),
                    'line': location.get('lineNumber'),
                    'timestamp': datetime.utcnow().isoformat(),
                })

        def on_page_error(error: PlaywrightError) -> None:
            if len(errors) < self.max_errors:
                errors.append({
                    'type': 'pageerror',
                    'text': str(error),
                    'timestamp': datetime.utcnow().isoformat(),
                })

        page.on("console", on_console)
        page.on("pageerror", on_page_error)
        try:
            yield self.progress("Observing console output", window_ms=self.observation_ms)
            waited = 0
            while waited < self.observation_ms:
                step = min(self.poll_ms, self.observation_ms - waited)
                await asyncio.sleep(step / 1000)
                waited += step
                yield self.progress("Console errors so far", count=len(errors))
        finally:
            for event, handler in (("console", on_console), ("pageerror", on_page_error)):
                try:
                    page.remove_listener(event, handler)
                except Exception as e:
                    logger.debug(f"[{run_id}] failed to remove {event} listener: {e}")

        yield self.complete(
            {'count': len(errors), 'errors': errors, 'truncated': len(errors) >= self.max_errors},
            message=f"Captured {len(errors)} console errors",
        )
