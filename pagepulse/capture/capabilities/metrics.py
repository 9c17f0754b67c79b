"""Page performance metrics capability.

Waits for the load event under the page-load budgets, then reads navigation
timing, paint timing and resource totals from the Performance API.
"""

import logging
from typing import AsyncIterator, Dict, Any

from playwright.async_api import Page

from ..timeouts import TimeoutEngine
from ...models.events import CapabilityEvent
from .base import Capability, CapabilityName, ResultSlot

logger = logging.getLogger(__name__)


METRICS_SCRIPT = """() => {
    const nav = performance.getEntriesByType('navigation')[0];
    const paints = {};
    for (const entry of performance.getEntriesByType('paint')) {
        paints[entry.name] = entry.startTime;
    }
    const lcpEntries = performance.getEntriesByType('largest-contentful-paint');
    const resources = performance.getEntriesByType('resource');
    let transferSize = 0;
    for (const r of resources) { transferSize += r.transferSize || 0; }
    return {
        navigation: nav ? {
            dns_lookup: nav.domainLookupEnd - nav.domainLookupStart,
            connect_time: nav.connectEnd - nav.connectStart,
            ttfb: nav.responseStart - nav.requestStart,
            response_time: nav.responseEnd - nav.responseStart,
            dom_interactive: nav.domInteractive,
            dom_content_loaded: nav.domContentLoadedEventEnd,
            dom_complete: nav.domComplete,
            load_event: nav.loadEventEnd,
            transfer_size: nav.transferSize || 0,
        } : {},
        paint: {
            first_paint: paints['first-paint'] ?? null,
            first_contentful_paint: paints['first-contentful-paint'] ?? null,
            largest_contentful_paint: lcpEntries.length ? lcpEntries[lcpEntries.length - 1].startTime : null,
        },
        resources: {
            count: resources.length,
            transfer_size: transferSize,
        },
    };
}"""


class MetricsCapability(Capability):
    """Collects performance timings for the navigated page."""

    name = CapabilityName.METRICS
    slot = ResultSlot.METRICS

    def __init__(self, timeouts: TimeoutEngine):
        self.timeouts = timeouts

    async def run(self, page: Page, run_id: str) -> AsyncIterator[CapabilityEvent]:
        yield self.progress("Waiting for load event")
        load = await self.timeouts.wait_for_load_state(page, "load")
        if not load.success:
            logger.debug(f"[{run_id}] load event not reached: {load.error}")
        yield self.progress("Load state settled", load_state=load.to_dict())

        metrics: Dict[str, Any] = await page.evaluate(METRICS_SCRIPT)
        metrics['load_state'] = load.to_dict()
        metrics['url'] = page.url

        yield self.complete(metrics, message="Performance metrics collected")
