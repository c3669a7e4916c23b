from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable


@dataclass
class TokenBucket:
    rate_per_sec: float
    burst: int = 1
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self) -> None:
        self.capacity = float(self.burst)
        self.tokens = float(self.burst)
        self.last = self.clock()

    def acquire(self, tokens: float = 1.0) -> None:
        while True:
            now = self.clock()
            elapsed = now - self.last
            self.last = now
            self.tokens = min(self.capacity, self.tokens + elapsed * self.rate_per_sec)
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            sleep_for = (tokens - self.tokens) / max(self.rate_per_sec, 1e-9)
            self.sleep(min(max(sleep_for, 0.01), 2.0))
