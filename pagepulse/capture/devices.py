"""Device profiles applied to a session before navigation.

A profile fixes the viewport and the User-Agent header. Pages come from a
shared pool, so the profile is applied to the page itself rather than to a
dedicated browser context.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from playwright.async_api import Page

logger = logging.getLogger(__name__)


USER_AGENTS = {
    'desktop': (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    ),
    'mobile': (
        "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1"
    ),
    'tablet': (
        "Mozilla/5.0 (iPad; CPU OS 17_4 like Mac OS X) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1"
    ),
}


@dataclass(frozen=True)
class DeviceProfile:
    """Viewport and identity of an emulated device."""
    name: str
    width: int
    height: int
    device_scale_factor: float
    user_agent: str
    is_mobile: bool = False

    @property
    def viewport(self) -> Dict[str, int]:
        return {'width': self.width, 'height': self.height}


DEFAULT_PROFILE = "desktop"

DEVICE_PROFILES: Dict[str, DeviceProfile] = {
    'desktop': DeviceProfile('desktop', 1920, 1080, 1, USER_AGENTS['desktop']),
    'desktop-hd': DeviceProfile('desktop-hd', 2560, 1440, 1, USER_AGENTS['desktop']),
    'mobile': DeviceProfile('mobile', 375, 667, 2, USER_AGENTS['mobile'], is_mobile=True),
    'tablet': DeviceProfile('tablet', 768, 1024, 2, USER_AGENTS['tablet'], is_mobile=True),
}


class DeviceConfigurator:
    """Applies device profiles to pages."""

    def __init__(self, profiles: Optional[Dict[str, DeviceProfile]] = None):
        self.profiles = dict(profiles or DEVICE_PROFILES)

    def resolve(self, name: str) -> DeviceProfile:
        """Look up a profile, falling back to desktop for unknown names."""
        profile = self.profiles.get(name)
        if profile is None:
            logger.warning(f"Unknown device profile '{name}', using {DEFAULT_PROFILE}")
            profile = self.profiles[DEFAULT_PROFILE]
        return profile

    def available(self) -> List[str]:
        return sorted(self.profiles)

    async def configure(self, page: Page, name: str) -> DeviceProfile:
        """Apply a profile's viewport and User-Agent to a page.

        Raises:
            Exception: Whatever Playwright raises if the page is unusable
        """
        profile = self.resolve(name)
        await page.set_viewport_size(profile.viewport)
        await page.set_extra_http_headers({'User-Agent': profile.user_agent})
        logger.debug(f"Applied device profile {profile.name} ({profile.width}x{profile.height})")
        return profile
