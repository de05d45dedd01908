"""Consecutive-failure breaker for the dependencies a turn can live without.

The semantic and generative cascade tiers each own one, as does the
store client. While a breaker is open its dependency is skipped outright
and the turn falls through to whatever answers without it.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    label: str = "service"
    failure_threshold: int = 3
    cooldown_seconds: float = 60.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    failures: int = field(default=0, init=False)
    tripped_at: Optional[float] = field(default=None, init=False, repr=False)

    @property
    def state(self) -> str:
        if self.tripped_at is None:
            return CLOSED
        if self.clock() - self.tripped_at >= self.cooldown_seconds:
            return HALF_OPEN
        return OPEN

    @property
    def is_open(self) -> bool:
        return self.state == OPEN

    def allow(self) -> bool:
        """False while tripped; one trial call is let through once the cooldown ends."""
        return self.state != OPEN

    def succeeded(self) -> None:
        if self.tripped_at is not None:
            logger.info("%s recovered after %d failure(s), breaker closed", self.label, self.failures)
        self.failures = 0
        self.tripped_at = None

    def failed(self) -> None:
        self.failures += 1
        if self.tripped_at is not None:
            # the trial call failed too; wait out another cooldown
            self.tripped_at = self.clock()
            return
        if self.failures >= self.failure_threshold:
            self.tripped_at = self.clock()
            logger.warning("%s failed %d times in a row, breaker open for %.0fs",
                           self.label, self.failures, self.cooldown_seconds)
