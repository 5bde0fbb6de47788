from __future__ import annotations

import time
from collections import defaultdict
from typing import Callable


class RateLimiter:
    """In-memory sliding-window limiter keyed by client address.

    Per process only; put a shared limiter in front when running several
    workers.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: dict[str, list[float]] = defaultdict(list)

    def is_allowed(self, key: str) -> bool:
        now = self._clock()
        cutoff = now - self.window_seconds
        recent = [t for t in self._requests[key] if t > cutoff]
        if len(recent) >= self.max_requests:
            self._requests[key] = recent
            return False
        recent.append(now)
        self._requests[key] = recent
        return True

    def cleanup(self) -> None:
        cutoff = self._clock() - self.window_seconds
        for key in list(self._requests):
            self._requests[key] = [t for t in self._requests[key] if t > cutoff]
            if not self._requests[key]:
                del self._requests[key]
