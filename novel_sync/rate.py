from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from .const import DEFAULT_DAILY_LIMIT, RATE_WINDOW_SECONDS
from .errors import RateLimitExceeded
from .models import RateWindow


class RateTracker:
    """Count outbound remote calls against a rolling daily quota.

    Only calls routed through this tracker are counted; requests made by other
    clients sharing the same account are invisible to it.
    """

    def __init__(
        self,
        daily_limit: int = DEFAULT_DAILY_LIMIT,
        *,
        window: timedelta = timedelta(seconds=RATE_WINDOW_SECONDS),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._window = window
        self._daily_limit = daily_limit
        self._count = 0
        self._window_start = self._clock()

    def _roll(self, now: datetime) -> None:
        if now - self._window_start >= self._window:
            self._count = 0
            self._window_start = now

    def record_call(self) -> None:
        self._roll(self._clock())
        self._count += 1

    def check_quota(self) -> RateWindow:
        """Return a snapshot of the current window, rolling it first if it expired."""

        self._roll(self._clock())
        return RateWindow(
            request_count=self._count,
            window_start=self._window_start,
            daily_limit=self._daily_limit,
            window_length=self._window,
        )

    def acquire(self) -> None:
        """Reserve one call; raises :class:`RateLimitExceeded` when the quota is spent."""

        quota = self.check_quota()
        if quota.exhausted:
            reset_in = quota.time_until_reset(self._clock())
            raise RateLimitExceeded(
                f"daily request limit of {quota.daily_limit} reached; resets in {int(reset_in.total_seconds())}s",
                reason="quota_exhausted",
            )
        self.record_call()

    def reset(self) -> None:
        self._count = 0
        self._window_start = self._clock()


__all__ = ["RateTracker"]
