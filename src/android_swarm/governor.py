from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Callable, Protocol

from .errors import ResourceLimitExceeded
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


class BudgetCounters(Protocol):
    """Anything exposing the running counters of a task (context or TaskRecord)."""

    api_call_count: int
    total_tokens: int
    start_time: datetime


@dataclass(frozen=True)
class ResourceGovernor:
    """Pre-flight budget guard run immediately before every producer call.

    The three budgets are independent; breaching any one is fatal and is
    never handed to the step retry loop.
    """

    api_call_limit: int = 80
    token_limit: int = 200_000
    wall_clock_limit: timedelta = timedelta(minutes=90)
    clock: Callable[[], datetime] = lambda: datetime.now(UTC)

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "ResourceGovernor":
        return cls(
            api_call_limit=settings.api_call_limit,
            token_limit=settings.token_limit,
            wall_clock_limit=settings.wall_clock_limit,
        )

    def check(self, counters: BudgetCounters) -> None:
        """Raise ``ResourceLimitExceeded`` if any budget is already spent."""
        if counters.api_call_count >= self.api_call_limit:
            raise ResourceLimitExceeded(
                "api_calls",
                f"API call limit exceeded ({counters.api_call_count}/{self.api_call_limit})",
            )
        if counters.total_tokens >= self.token_limit:
            raise ResourceLimitExceeded(
                "tokens",
                f"Token limit exceeded ({counters.total_tokens}/{self.token_limit})",
            )
        elapsed = self.clock() - counters.start_time
        if elapsed >= self.wall_clock_limit:
            raise ResourceLimitExceeded(
                "wall_clock",
                f"Wall-clock timeout ({int(elapsed.total_seconds())}s elapsed, "
                f"limit {int(self.wall_clock_limit.total_seconds())}s)",
            )
        logger.debug(
            "Budget check passed: calls=%d/%d tokens=%d/%d",
            counters.api_call_count,
            self.api_call_limit,
            counters.total_tokens,
            self.token_limit,
        )
