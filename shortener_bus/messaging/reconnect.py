# shortener_bus/messaging/reconnect.py

import random
from dataclasses import dataclass

from shortener_bus import config


@dataclass(frozen=True)
class ReconnectPolicy:
    """Exponential backoff with jitter and a ceiling for broker reconnects."""
    initial_delay: float = config.RECONNECT_INITIAL_DELAY
    max_delay: float = config.RECONNECT_MAX_DELAY
    multiplier: float = config.RECONNECT_MULTIPLIER
    jitter: float = config.RECONNECT_JITTER

    def __post_init__(self):
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("Reconnect delays must not be negative")
        if self.multiplier < 1:
            raise ValueError("Reconnect multiplier must be at least 1")
        if not 0 <= self.jitter <= 1:
            raise ValueError("Reconnect jitter must be between 0 and 1")

    def base_delay(self, attempt: int) -> float:
        # The exponent is capped so endless retries cannot overflow a float.
        return min(self.max_delay, self.initial_delay * self.multiplier ** min(attempt, 32))

    def delay_for(self, attempt: int) -> float:
        # Jitter only shortens the wait, so the base delay is an upper bound.
        delay = self.base_delay(attempt)
        return delay - delay * self.jitter * random.random()
