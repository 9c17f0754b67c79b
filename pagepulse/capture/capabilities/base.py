"""Capability interface shared by all measurement collectors.

A capability observes a navigated page and yields a finite sequence of
CapabilityEvent values: any number of progress events followed by one
completion event whose payload fills the capability's result slot. Errors may
be reported either by raising or by yielding an error event; the orchestrator
treats both the same way. A sequence is not restartable: a retry needs a
fresh call to run().
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, Any, Optional

from playwright.async_api import Page

from ...models.events import CapabilityEvent


class CapabilityName:
    """Registry keys used to select capabilities for a run."""
    METRICS = "metrics"
    COOKIE_DETECTION = "cookie_detection"
    COOKIE_HANDLING = "cookie_handling"
    CONSOLE_ERRORS = "console_errors"
    SCREENSHOTS = "screenshots"


class ResultSlot:
    """Result bag slots a completion event can fill."""
    METRICS = "metrics"
    COOKIE_HANDLING = "cookie_handling"
    CONSOLE_ERRORS = "console_errors"
    SCREENSHOTS = "screenshots"


class Capability(ABC):
    """Base class for measurement collectors."""

    name: str = "capability"
    slot: str = ""

    @abstractmethod
    def run(self, page: Page, run_id: str) -> AsyncIterator[CapabilityEvent]:
        """Observe the page and yield tagged events.

        Args:
            page: Page that has already been navigated
            run_id: Identifier of the run being measured

        Returns:
            Async iterator ending with one completion event
        """

    def progress(self, message: str, **data: Any) -> CapabilityEvent:
        return CapabilityEvent.progress(self.name, message, **data)

    def complete(self, payload: Dict[str, Any], message: Optional[str] = None) -> CapabilityEvent:
        return CapabilityEvent.complete(self.name, self.slot, payload, message=message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name}, slot={self.slot})"
