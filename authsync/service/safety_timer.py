from __future__ import annotations

import asyncio
from typing import Callable, Optional

from authsync.logging import get_logger

logger = get_logger(__name__)


class SafetyTimer:
    """One-shot timer bounding a single initialize() call.

    The callback receives the generation the timer was started for, so the
    owner can ignore a fire that belongs to an abandoned attempt.
    """

    def __init__(self, timeout_seconds: float, on_fire: Callable[[int], None]) -> None:
        self.timeout_seconds = timeout_seconds
        self._on_fire = on_fire
        self._handle: Optional[asyncio.TimerHandle] = None
        self._generation: Optional[int] = None
        self.fired = False

    @property
    def active(self) -> bool:
        return self._handle is not None

    def start(self, generation: int) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._generation = generation
        self.fired = False
        self._handle = loop.call_later(self.timeout_seconds, self._fire, generation)

    def _fire(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._handle = None
        self.fired = True
        logger.warning(
            "safety_timer_fired", generation=generation, timeout_seconds=self.timeout_seconds
        )
        self._on_fire(generation)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._generation = None
