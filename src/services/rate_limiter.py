"""Global request admission with a minimum inter-request interval"""

import asyncio
import math
import time


class RateLimiter:
    """Admit one embedding request at a time, spaced by 60000 / rpm milliseconds"""

    def __init__(self, requests_per_minute: int = 0):
        self._lock = asyncio.Lock()
        self._last_request_time = 0.0
        self.set_rate(requests_per_minute)

    def set_rate(self, requests_per_minute: int) -> None:
        self.requests_per_minute = max(0, requests_per_minute)
        if self.requests_per_minute > 0:
            self.min_interval_ms = max(1, math.ceil(60000 / self.requests_per_minute))
        else:
            self.min_interval_ms = 0

    async def acquire(self) -> None:
        """Enforce rate limiting delay between requests"""
        if self.min_interval_ms <= 0:
            return

        async with self._lock:
            delay_seconds = self.min_interval_ms / 1000.0
            elapsed = time.monotonic() - self._last_request_time
            if self._last_request_time and elapsed < delay_seconds:
                await asyncio.sleep(delay_seconds - elapsed)
            self._last_request_time = time.monotonic()
