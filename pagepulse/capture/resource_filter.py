"""Request filter that drops heavy resources in low-resource environments."""

import logging
from typing import Set

from playwright.async_api import Page, Route

logger = logging.getLogger(__name__)


BLOCKED_RESOURCE_TYPES = {"image", "font", "media"}
BLOCKED_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif")
ROUTE_PATTERN = "**/*"


class ResourceFilter:
    """Aborts image, font and media requests on one page."""

    def __init__(self, blocked_types: Set[str] = None):
        self.blocked_types = set(blocked_types or BLOCKED_RESOURCE_TYPES)
        self.blocked = 0
        self.allowed = 0
        self._installed_on = None

    def should_block(self, resource_type: str, url: str) -> bool:
        if resource_type in self.blocked_types:
            return True
        path = url.split("?", 1)[0].lower()
        return path.endswith(BLOCKED_EXTENSIONS)

    async def _handle(self, route: Route) -> None:
        request = route.request
        if self.should_block(request.resource_type, request.url):
            self.blocked += 1
            await route.abort()
        else:
            self.allowed += 1
            await route.continue_()

    async def install(self, page: Page) -> None:
        await page.route(ROUTE_PATTERN, self._handle)
        self._installed_on = page
        logger.debug("Resource filter installed")

    async def remove(self) -> None:
        """Detach from the page it was installed on. No-op if not installed."""
        page, self._installed_on = self._installed_on, None
        if page is None or page.is_closed():
            return
        await page.unroute(ROUTE_PATTERN, self._handle)
        logger.debug(f"Resource filter removed (blocked={self.blocked}, allowed={self.allowed})")

    @property
    def is_installed(self) -> bool:
        return self._installed_on is not None
