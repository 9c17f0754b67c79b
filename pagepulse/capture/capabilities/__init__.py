"""Measurement capabilities run concurrently after navigation.

Usage:
    from pagepulse.capture.capabilities import create_default_capabilities

    capabilities = create_default_capabilities(timeouts, artifacts_dir="./artifacts")
"""

from pathlib import Path
from typing import Dict, Optional, Union

from ..timeouts import TimeoutEngine
from .base import Capability, CapabilityName, ResultSlot
from .metrics import MetricsCapability
from .cookies import CookieConsentCapability, CookieMode
from .console_errors import ConsoleErrorsCapability
from .screenshots import ScreenshotsCapability

__all__ = [
    "Capability",
    "CapabilityName",
    "ResultSlot",
    "MetricsCapability",
    "CookieConsentCapability",
    "CookieMode",
    "ConsoleErrorsCapability",
    "ScreenshotsCapability",
    "create_default_capabilities",
]


def create_default_capabilities(
    timeouts: TimeoutEngine,
    artifacts_dir: Optional[Union[str, Path]] = None,
) -> Dict[str, Capability]:
    """Build the standard capability registry keyed by CapabilityName."""
    return {
        CapabilityName.METRICS: MetricsCapability(timeouts),
        CapabilityName.COOKIE_DETECTION: CookieConsentCapability(timeouts, mode=CookieMode.DETECT),
        CapabilityName.COOKIE_HANDLING: CookieConsentCapability(timeouts, mode=CookieMode.HANDLE),
        CapabilityName.CONSOLE_ERRORS: ConsoleErrorsCapability(),
        CapabilityName.SCREENSHOTS: ScreenshotsCapability(timeouts, output_dir=artifacts_dir),
    }
