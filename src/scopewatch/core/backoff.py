"""
Capped exponential backoff shared by HTTP retries and push reconnection.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """
    Delay before retry ``attempt`` (1-based) is
    ``initial_delay * multiplier ** (attempt - 1)`` capped at ``max_delay``,
    scaled by a random factor in ``[1 - jitter, 1 + jitter]``.

    ``max_attempts=None`` retries forever.
    """

    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1
    max_attempts: int | None = None

    def __post_init__(self) -> None:
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("backoff delays must not be negative")
        if self.multiplier < 1.0:
            raise ValueError("backoff multiplier must be >= 1")
        if not 0.0 <= self.jitter < 1.0:
            raise ValueError("backoff jitter must be in [0, 1)")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be positive or None")

    def delay(self, attempt: int) -> float:
        exponent = max(0, attempt - 1)
        if self.initial_delay == 0 or self.max_delay == 0:
            base = 0.0
        elif exponent * math.log(self.multiplier) >= math.log(self.max_delay / self.initial_delay):
            # Compared in log space so large attempt counts cannot overflow.
            base = self.max_delay
        else:
            base = self.initial_delay * (self.multiplier**exponent)
        if self.jitter:
            base *= 1.0 + random.uniform(-self.jitter, self.jitter)  # nosec B311
        return max(0.0, base)

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt >= self.max_attempts


__all__ = ["BackoffPolicy"]
