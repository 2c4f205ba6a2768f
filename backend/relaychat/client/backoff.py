"""Reconnect backoff policy.

delay(n) = min(base * 2**n, cap), optionally spread by uniform jitter of
up to +/-20% so that clients do not reconnect in lockstep after a server
restart. With jitter disabled (the default) the policy is a pure function.
"""
import random
from dataclasses import dataclass, field
from typing import Optional

MAX_JITTER = 0.2


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with a ceiling.

    Attributes:
        base_ms: Delay for attempt 0.
        cap_ms: Upper bound for any delay.
        jitter: Fraction in [0, 0.2] of random spread around the delay.
    """
    base_ms: float = 1000.0
    cap_ms: float = 30000.0
    jitter: float = 0.0
    rng: Optional[random.Random] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.base_ms < 0 or self.cap_ms < 0:
            raise ValueError("backoff delays must be non-negative")
        if not 0.0 <= self.jitter <= MAX_JITTER:
            raise ValueError(f"jitter must be within [0, {MAX_JITTER}]")

    def delay(self, attempt: int) -> float:
        """Return the delay in milliseconds before retry number ``attempt``."""
        if attempt < 0:
            raise ValueError("attempt must be non-negative")
        # 2**attempt grows without bound; stop doubling once past the cap
        delay = self.base_ms
        for _ in range(attempt):
            if delay >= self.cap_ms or delay == 0:
                break
            delay *= 2
        delay = min(delay, self.cap_ms)
        if self.jitter:
            rng = self.rng or random
            delay *= 1.0 + rng.uniform(-self.jitter, self.jitter)
        return delay

    def delay_seconds(self, attempt: int) -> float:
        return self.delay(attempt) / 1000.0
