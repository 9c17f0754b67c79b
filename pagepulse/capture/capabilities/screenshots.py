"""Screenshot sequence capability.

Takes JPEG frames at a fixed interval until either the frame or the duration
limit is reached. Frames are written under an artifacts directory when one is
configured; otherwise only their sizes are reported.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Any, Union

import aiofiles
from playwright.async_api import Page

from ..timeouts import TimeoutEngine
from ...models.events import CapabilityEvent
from .base import Capability, CapabilityName, ResultSlot

logger = logging.getLogger(__name__)


class ScreenshotsCapability(Capability):
    """Captures a short frame sequence of the loading page."""

    name = CapabilityName.SCREENSHOTS
    slot = ResultSlot.SCREENSHOTS

    def __init__(
        self,
        timeouts: TimeoutEngine,
        interval_ms: int = 300,
        max_duration_ms: int = 6000,
        max_frames: int = 10,
        quality: int = 75,
        output_dir: Optional[Union[str, Path]] = None,
    ):
        self.timeouts = timeouts
        self.interval_ms = interval_ms
        self.max_duration_ms = max_duration_ms
        self.max_frames = max_frames
        self.quality = quality
        self.output_dir = Path(output_dir) if output_dir else None

    async def _store(self, run_id: str, index: int, image: bytes) -> Optional[str]:
        if self.output_dir is None:
            return None
        run_dir = self.output_dir / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        path = run_dir / f"frame_{index:02d}.jpg"
        async with aiofiles.open(path, 'wb') as f:
            await f.write(image)
        return str(path)

    async def run(self, page: Page, run_id: str) -> AsyncIterator[CapabilityEvent]:
        frames: List[Dict[str, Any]] = []
        failures = 0
        started = time.monotonic()

        yield self.progress("Capturing screenshots", max_frames=self.max_frames)

        while len(frames) < self.max_frames:
            elapsed_ms = (time.monotonic() - started) * 1000
            if elapsed_ms >= self.max_duration_ms:
                break

            shot = await self.timeouts.screenshot(page, type="jpeg", quality=self.quality)
            if shot.success:
                index = len(frames)
                path = await self._store(run_id, index, shot.value)
                frames.append({
                    'index': index,
                    'elapsed_ms': round(elapsed_ms),
                    'size': len(shot.value),
                    'path': path,
                })
                yield self.progress("Frame captured", frame=index)
            else:
                failures += 1
                logger.debug(f"[{run_id}] screenshot failed: {shot.error}")

            await asyncio.sleep(self.interval_ms / 1000)

        yield self.complete(
            {
                'frame_count': len(frames),
                'failed_frames': failures,
                'frames': frames,
                'message': f"Captured {len(frames)} frames",
            },
            message="Screenshot sequence complete",
        )
