"""Browser capture engine for PagePulse.

Main Components:
- Timeout Engine: progressive fast/normal/slow budgets (timeouts.py)
- Browser Factory: Playwright driver and browser launch (browser_factory.py)
- Session Pool: bounded, FIFO-fair page leasing (session_pool.py)
- Device Profiles: viewport and User-Agent presets (devices.py)
- Resource Filter: heavy resource blocking for constrained hosts (resource_filter.py)
- Capabilities: metrics, cookies, console errors, screenshots (capabilities/)
- Capture Orchestrator: one run from lease to persistence (orchestrator.py)
- Batch Coordinator: sequential and chunked batches (batch.py)

Usage:
    from pagepulse.capture import CaptureOrchestrator, SessionPool, TimeoutEngine

    timeouts = TimeoutEngine()
    pool = SessionPool(BrowserFactory(), timeouts)
    orchestrator = CaptureOrchestrator(pool, timeouts, create_default_capabilities(timeouts))
    record = await orchestrator.run(CaptureSpec(url="https://example.com"))
"""

__all__ = [
    # Timeouts
    "TimeoutEngine",
    "TimeoutConfig",
    "TimeoutResult",
    "OperationType",
    "Tier",

    # Browser and pool
    "BrowserFactory",
    "BrowserConfig",
    "SessionPool",
    "PoolConfig",
    "Session",
    "PoolExhaustedError",
    "PoolClosedError",
    "BrowserLaunchError",

    # Collaborators
    "DeviceConfigurator",
    "DeviceProfile",
    "ResourceFilter",
    "create_default_capabilities",

    # Runs and batches
    "CaptureOrchestrator",
    "OrchestratorConfig",
    "NavigationError",
    "OrchestratorClosedError",
    "BatchCoordinator",
    "BatchConfig",
]

from .timeouts import TimeoutEngine, TimeoutConfig, TimeoutResult, OperationType, Tier
from .browser_factory import BrowserFactory, BrowserConfig
from .session_pool import (
    SessionPool,
    PoolConfig,
    Session,
    PoolExhaustedError,
    PoolClosedError,
    BrowserLaunchError,
)
from .devices import DeviceConfigurator, DeviceProfile
from .resource_filter import ResourceFilter
from .capabilities import create_default_capabilities
from .orchestrator import (
    CaptureOrchestrator,
    OrchestratorConfig,
    NavigationError,
    OrchestratorClosedError,
)
from .batch import BatchCoordinator, BatchConfig
