"""Daily request quota accounting with lazy UTC day rollover."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterator

from clawbot.memory.conversation_store import UserId, check_state_key, is_state_key

logger = logging.getLogger(__name__)

DEFAULT_DAILY_LIMIT = 1000
DEFAULT_AMPLE_ABOVE = 200
DEFAULT_LOW_ABOVE = 50


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


class QuotaTier(str, Enum):
    AMPLE = "ample"
    LOW = "low"
    EXHAUSTED = "exhausted"

    @property
    def indicator(self) -> str:
        return {"ample": "🟢", "low": "🟡", "exhausted": "🔴"}[self.value]


@dataclass(frozen=True)
class QuotaConfig:
    daily_limit: int = DEFAULT_DAILY_LIMIT
    ample_above: int = DEFAULT_AMPLE_ABOVE
    low_above: int = DEFAULT_LOW_ABOVE

    def __post_init__(self) -> None:
        if self.daily_limit < 1:
            raise ValueError("daily_limit must be positive")
        if self.low_above < 0 or self.ample_above < self.low_above:
            raise ValueError("quota thresholds must satisfy 0 <= low_above <= ample_above")

    def tier_for(self, remaining: int) -> QuotaTier:
        if remaining > self.ample_above:
            return QuotaTier.AMPLE
        if remaining > self.low_above:
            return QuotaTier.LOW
        return QuotaTier.EXHAUSTED


@dataclass
class DailyQuota:
    day: date
    request_count: int = 0
    unique_users: set[UserId] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "requestCount": self.request_count,
            "uniqueUsers": list(self.unique_users),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "DailyQuota":
        if not isinstance(raw, dict):
            raise ValueError("dailyStats must be a mapping")
        count = raw.get("requestCount", 0)
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise ValueError("dailyStats.requestCount must be a non-negative integer")
        users = raw.get("uniqueUsers", [])
        if not isinstance(users, list):
            raise ValueError("dailyStats.uniqueUsers must be a list")
        return cls(
            day=date.fromisoformat(str(raw.get("date", ""))),
            request_count=count,
            unique_users={u for u in users if is_state_key(u)},
        )


@dataclass(frozen=True)
class QuotaStatus:
    used: int
    limit: int
    remaining: int
    percentage: int
    tier: QuotaTier

    def to_dict(self) -> dict[str, Any]:
        return {
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "percentage": self.percentage,
            "tier": self.tier.value,
        }


class QuotaTracker:
    """Single shared request counter for the current UTC day.

    Every public call first compares the stored day with `today_fn()` and
    resets the counter when the day has changed, so no timer is involved.

    `status()` followed by `increment()` is a check-then-act sequence: with
    several requests in flight the count can pass the limit by up to
    (in-flight - 1). `try_increment()` does the check and the increment
    under one lock for callers that need a hard cap.
    """

    def __init__(
        self,
        config: QuotaConfig | None = None,
        *,
        today_fn: Callable[[], date] = utc_today,
    ) -> None:
        self._config = config or QuotaConfig()
        self._today_fn = today_fn
        self._lock = threading.RLock()
        self._quota = DailyQuota(day=today_fn())

    @property
    def config(self) -> QuotaConfig:
        return self._config

    def _rollover_locked(self) -> None:
        today = self._today_fn()
        if self._quota.day != today:
            logger.info(
                "Quota day rolled over from %s to %s after %d requests",
                self._quota.day.isoformat(),
                today.isoformat(),
                self._quota.request_count,
            )
            self._quota = DailyQuota(day=today)

    def _status_locked(self) -> QuotaStatus:
        used = self._quota.request_count
        limit = self._config.daily_limit
        remaining = max(0, limit - used)
        # Integer half-up rounding; round() would take 12.5 down to 12.
        percentage = (used * 200 + limit) // (limit * 2)
        return QuotaStatus(
            used=used,
            limit=limit,
            remaining=remaining,
            percentage=percentage,
            tier=self._config.tier_for(remaining),
        )

    def status(self) -> QuotaStatus:
        with self._lock:
            self._rollover_locked()
            return self._status_locked()

    def increment(self, user_id: UserId) -> QuotaStatus:
        """Count one request for `user_id`. Does not enforce the limit."""
        check_state_key(user_id, "user")
        with self._lock:
            self._rollover_locked()
            self._quota.request_count += 1
            self._quota.unique_users.add(user_id)
            return self._status_locked()

    def try_increment(self, user_id: UserId) -> bool:
        """Count one request only if quota remains; return False when exhausted."""
        check_state_key(user_id, "user")
        with self._lock:
            self._rollover_locked()
            if self._status_locked().remaining <= 0:
                return False
            self._quota.request_count += 1
            self._quota.unique_users.add(user_id)
            return True

    def current_day(self) -> date:
        with self._lock:
            self._rollover_locked()
            return self._quota.day

    def active_users_today(self) -> int:
        with self._lock:
            self._rollover_locked()
            return len(self._quota.unique_users)

    def unique_users(self) -> set[UserId]:
        with self._lock:
            self._rollover_locked()
            return set(self._quota.unique_users)

    @contextmanager
    def frozen(self) -> Iterator[None]:
        with self._lock:
            yield

    def export_state(self) -> dict[str, Any]:
        with self._lock:
            self._rollover_locked()
            return self._quota.to_dict()

    def load_state(self, quota: DailyQuota) -> None:
        """Replace the counter; a quota from an earlier day is reset before use."""
        with self._lock:
            self._quota = DailyQuota(
                day=quota.day,
                request_count=quota.request_count,
                unique_users=set(quota.unique_users),
            )
            self._rollover_locked()
