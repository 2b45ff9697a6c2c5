"""
Camera scan loop.

Frames are processed one at a time on the event loop. There is no frame
queue: LatestFrameSource keeps only the newest frame, so frames that arrive
while one is being scanned are dropped. The loop checks its cancellation
token at the top of every iteration and ends on a successful decode, on
stop(), or when its owner tears it down.
"""
import asyncio
import logging
from typing import Optional, Protocol

import numpy as np

from qr_extractor import QRExtractor

logger = logging.getLogger(__name__)


class FrameSource(Protocol):
    async def read(self) -> Optional[np.ndarray]:
        """Next frame, or None if nothing new is available yet."""


class LatestFrameSource:
    """Single-slot frame holder fed by the camera callback."""

    def __init__(self):
        self._frame: Optional[np.ndarray] = None
        self._ready = asyncio.Event()
        self.dropped = 0

    def push(self, frame: np.ndarray) -> None:
        if self._frame is not None:
            self.dropped += 1
        self._frame = frame
        self._ready.set()

    async def read(self) -> Optional[np.ndarray]:
        await self._ready.wait()
        frame, self._frame = self._frame, None
        self._ready.clear()
        return frame


class CancellationToken:
    def __init__(self):
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ScanLoop:
    def __init__(self, source: FrameSource, extractor: QRExtractor, idle_delay: float = 0.03):
        self.source = source
        self.extractor = extractor
        self.idle_delay = idle_delay
        self.token = CancellationToken()
        self.frames_scanned = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self.run())
        return self._task

    async def run(self) -> Optional[str]:
        """Scan frames until one decodes (returns its text) or the loop is stopped (None)."""
        while not self.token.cancelled:
            frame = await self.source.read()
            if self.token.cancelled:
                break
            if frame is None:
                await asyncio.sleep(self.idle_delay)
                continue

            self.frames_scanned += 1
            text = self.extractor.extract(frame)
            if text is not None:
                logger.info("Scan loop decoded a QR code after %d frame(s)", self.frames_scanned)
                self.token.cancel()
                return text
            # Yield so the camera callback can replace the pending frame.
            await asyncio.sleep(0)

        logger.debug("Scan loop stopped after %d frame(s)", self.frames_scanned)
        return None

    async def stop(self) -> None:
        self.token.cancel()
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
