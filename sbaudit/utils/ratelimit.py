"""
Minimum-interval pacing of requests per remote host
"""

import asyncio
import logging
import time
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """Enforces a minimum delay between consecutive requests to the same host."""

    def __init__(self, delay_ms: int = 0):
        """
        Initialize the rate limiter.

        Args:
            delay_ms: Minimum interval in milliseconds. Zero disables pacing.
        """
        if delay_ms < 0:
            raise ValueError("delay_ms must be >= 0")
        self.delay_ms = delay_ms
        self.wait_count = 0
        self.total_waited = 0.0
        self._last_return: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def enabled(self) -> bool:
        return self.delay_ms > 0

    async def wait_turn(self, host: Optional[str] = None):
        """
        Block until the configured interval has elapsed since the previous
        call for `host` returned.
        """
        if not self.enabled:
            return

        key = host or ''
        lock = self._locks.setdefault(key, asyncio.Lock())

        # Held across the sleep so concurrent workers queue up per host
        async with lock:
            last = self._last_return.get(key)
            if last is not None:
                remaining = self.delay_ms / 1000.0 - (time.monotonic() - last)
                if remaining > 0:
                    logger.debug(f"Rate limiting {key or '<default>'} for {remaining:.3f}s")
                    self.wait_count += 1
                    self.total_waited += remaining
                    await self._sleep(remaining)
            self._last_return[key] = time.monotonic()

    async def _sleep(self, seconds: float):
        await asyncio.sleep(seconds)
