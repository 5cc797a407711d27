"""
health.py — Portal Health Tracking
====================================
Read-mostly health state shared by every operation a client runs.

Each portal has its own state guarded by its own lock, so recording an
outcome for one slow portal never blocks transfers against another.
A portal that fails `failure_threshold` times in a row is benched for
`cooldown` seconds: it stays usable, but is ranked after healthy portals.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Sequence

from skyclient.services.portal import Outcome

logger = logging.getLogger(__name__)

# Weight of the newest latency sample in the moving average
LATENCY_ALPHA = 0.3


@dataclass
class PortalState:
    """Mutable health counters for one portal."""

    consecutive_failures: int = 0
    total_attempts: int = 0
    total_failures: int = 0
    benched_until: float = 0.0
    latency: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


class PortalHealth:
    """Per-portal failure counters and cooldowns."""

    def __init__(
        self,
        failure_threshold: int = 3,
        cooldown: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock
        self._states: Dict[str, PortalState] = {}

    def state(self, portal: str) -> PortalState:
        state = self._states.get(portal)
        if state is None:
            state = self._states[portal] = PortalState()
        return state

    async def record(self, portal: str, outcome: Outcome, elapsed: float) -> None:
        """Fold one attempt's outcome into the portal's counters."""
        state = self.state(portal)
        async with state.lock:
            state.total_attempts += 1
            if state.latency:
                state.latency = LATENCY_ALPHA * elapsed + (1 - LATENCY_ALPHA) * state.latency
            else:
                state.latency = elapsed

            if outcome is Outcome.SUCCESS:
                state.consecutive_failures = 0
                state.benched_until = 0.0
                return

            state.total_failures += 1
            state.consecutive_failures += 1
            if outcome is Outcome.INTEGRITY_VIOLATION:
                # A dishonest answer benches the portal straight away
                state.consecutive_failures = max(
                    state.consecutive_failures, self.failure_threshold
                )
            if state.consecutive_failures >= self.failure_threshold:
                state.benched_until = self._clock() + self.cooldown
                logger.warning(
                    "Portal %s benched for %.1fs after %d consecutive failures",
                    portal,
                    self.cooldown,
                    state.consecutive_failures,
                )

    def is_available(self, portal: str) -> bool:
        return self.state(portal).benched_until <= self._clock()

    def rank(self, portals: Sequence[str]) -> List[str]:
        """
        Order portals for an operation.

        Available portals keep their configured priority; benched ones
        follow, also in priority order.
        """
        available = [p for p in portals if self.is_available(p)]
        benched = [p for p in portals if not self.is_available(p)]
        return available + benched

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        return {
            portal: {
                "consecutive_failures": state.consecutive_failures,
                "total_attempts": state.total_attempts,
                "total_failures": state.total_failures,
                "latency": state.latency,
                "available": self.is_available(portal),
            }
            for portal, state in self._states.items()
        }
