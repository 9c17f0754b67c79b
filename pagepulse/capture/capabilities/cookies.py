"""Cookie consent banner detection and handling.

Looks for the banners of common consent management platforms and, in handle
mode, clicks their accept button. Detection runs under the cookie-detection
budgets, so a page without any banner costs at most the slow-tier budget.
"""

import logging
from typing import AsyncIterator, Dict, List, Optional, Any, Tuple

from playwright.async_api import Page

from ..timeouts import TimeoutEngine, OperationType
from ...models.events import CapabilityEvent
from .base import Capability, CapabilityName, ResultSlot

logger = logging.getLogger(__name__)


class CookieMode:
    """What to do with a detected banner."""
    DETECT = "detect"
    HANDLE = "handle"


BANNER_SELECTORS: Dict[str, List[str]] = {
    'onetrust': ['#onetrust-banner-sdk', '#onetrust-consent-sdk', '.ot-sdk-container'],
    'cookiebot': ['#CybotCookiebotDialog', '#CybotCookiebotDialogBody'],
    'trustarc': ['#truste-consent-track', '.trustarc-banner'],
    'quantcast': ['.qc-cmp2-container', '#qc-cmp2-ui'],
    'consentmanager': ['#cmpbox', '.cmpbox'],
    'didomi': ['#didomi-host', '#didomi-notice'],
    'generic': ['[id*="cookie-banner"]', '[class*="cookie-consent"]', '[aria-label*="cookie" i]'],
}

ACCEPT_SELECTORS: Dict[str, List[str]] = {
    'onetrust': ['#onetrust-accept-btn-handler'],
    'cookiebot': [
        '#CybotCookiebotDialogBodyLevelButtonLevelOptinAllowAll',
        '#CybotCookiebotDialogBodyButtonAccept',
    ],
    'trustarc': ['#truste-consent-button'],
    'quantcast': ['.qc-cmp2-summary-buttons button[mode="primary"]'],
    'consentmanager': ['.cmpboxbtnyes'],
    'didomi': ['#didomi-notice-agree-button'],
    'generic': [
        'button:has-text("Accept all")',
        'button:has-text("Accept")',
        'button:has-text("I agree")',
        'button:has-text("Allow all")',
    ],
}


class CookieConsentCapability(Capability):
    """Detects a consent banner and optionally accepts it."""

    slot = ResultSlot.COOKIE_HANDLING

    def __init__(self, timeouts: TimeoutEngine, mode: str = CookieMode.HANDLE):
        if mode not in (CookieMode.DETECT, CookieMode.HANDLE):
            raise ValueError(f"Unknown cookie mode: {mode}")
        self.timeouts = timeouts
        self.mode = mode
        self.name = (
            CapabilityName.COOKIE_DETECTION if mode == CookieMode.DETECT
            else CapabilityName.COOKIE_HANDLING
        )

    async def _find_banner(self, page: Page) -> Optional[Tuple[str, str]]:
        for platform, selectors in BANNER_SELECTORS.items():
            for selector in selectors:
                element = await page.query_selector(selector)
                if element is not None and await element.is_visible():
                    return platform, selector
        return None

    async def _click_accept(self, page: Page, platform: str) -> Optional[Dict[str, Any]]:
        candidates = ACCEPT_SELECTORS.get(platform, []) + ACCEPT_SELECTORS['generic']
        for selector in candidates:
            element = await page.query_selector(selector)
            if element is None or not await element.is_visible():
                continue
            text = (await element.inner_text()).strip()
            await element.click(timeout=0)
            return {'selector': selector, 'text': text}
        return None

    async def run(self, page: Page, run_id: str) -> AsyncIterator[CapabilityEvent]:
        yield self.progress("Looking for a cookie consent banner", mode=self.mode)

        detection = await self.timeouts.run_with_budget(
            OperationType.COOKIE_DETECTION,
            lambda: self._find_banner(page),
            context=run_id,
        )
        if not detection.success:
            yield self.complete(
                {'success': False, 'status': 'not_found', 'method': None,
                 'message': f"Detection did not finish: {detection.error}"},
                message="Cookie banner detection timed out",
            )
            return

        if detection.value is None:
            yield self.complete(
                {'success': True, 'status': 'not_found', 'method': None,
                 'message': "No cookie consent banner found"},
                message="No cookie banner",
            )
            return

        platform, selector = detection.value
        yield self.progress("Cookie banner detected", platform=platform, selector=selector)

        if self.mode == CookieMode.DETECT:
            yield self.complete(
                {'success': True, 'status': 'detected', 'method': platform,
                 'selector': selector, 'message': f"Detected {platform} banner"},
                message="Cookie banner detected",
            )
            return

        clicked = await self._click_accept(page, platform)
        if clicked is None:
            logger.debug(f"[{run_id}] no accept button for {platform} banner")
            yield self.complete(
                {'success': False, 'status': 'detected', 'method': platform,
                 'selector': selector, 'message': "Banner found but no accept button matched"},
                message="Cookie banner not handled",
            )
            return

        yield self.complete(
            {'success': True, 'status': 'handled', 'method': platform,
             'text': clicked['text'], 'selector': clicked['selector'],
             'message': f"Accepted {platform} banner"},
            message="Cookie banner handled",
        )
