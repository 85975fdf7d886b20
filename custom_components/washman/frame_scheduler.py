"""
FrameScheduler: cancellable per-frame callbacks for position interpolation.

This is a pure asyncio scheduling primitive with no HA or network dependencies.
"""
from __future__ import annotations

import asyncio
from typing import Callable, Protocol

from .const import FRAME_INTERVAL


class FrameHandle(Protocol):
    def cancel(self) -> None: ...


class FrameScheduler:
    """
    Runs one callback per frame on the running event loop.

    Each request() schedules a single frame; callers that animate request the
    next frame from inside the callback.  The returned handle cancels the
    frame if it has not fired yet.
    """

    def __init__(self, interval: float = FRAME_INTERVAL) -> None:
        self.interval = interval

    def request(self, callback: Callable[[], None]) -> FrameHandle:
        """Schedule callback for the next frame and return its handle."""
        return asyncio.get_running_loop().call_later(self.interval, callback)
