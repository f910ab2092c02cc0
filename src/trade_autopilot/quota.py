"""Per-provider daily request quotas.

Every mutation is a single check-and-increment under one lock, so two
callers can never both observe "quota available" and jointly overshoot the
limit. Windows are calendar days in the configured timezone.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, time as clock_time, timedelta
from typing import Any, Callable
from zoneinfo import ZoneInfo

from loguru import logger

from .models import utcnow
from .settings import settings


@dataclass
class ProviderQuota:
    provider: str
    window_start: datetime
    reset_at: datetime
    usage: int
    limit: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "window_start": self.window_start.isoformat(),
            "reset_at": self.reset_at.isoformat(),
            "usage": self.usage,
            "limit": self.limit,
        }


class QuotaTracker:
    def __init__(
        self,
        limits: dict[str, int] | None = None,
        *,
        priority: list[str] | None = None,
        now_fn: Callable[[], datetime] = utcnow,
        timezone: str | None = None,
    ) -> None:
        self._limits = dict(limits if limits is not None else settings.provider_limits())
        self._priority = [p for p in (priority or settings.provider_order()) if p in self._limits]
        self._priority += [p for p in self._limits if p not in self._priority]
        self._now = now_fn
        self._tz = ZoneInfo(timezone or settings.timezone)
        self._lock = threading.Lock()
        self._quotas: dict[str, ProviderQuota] = {p: self._fresh(p) for p in self._limits}

    @property
    def providers(self) -> list[str]:
        return list(self._priority)

    def _window_bounds(self, now: datetime) -> tuple[datetime, datetime]:
        local = now.astimezone(self._tz)
        start = datetime.combine(local.date(), clock_time(0, 0), tzinfo=self._tz)
        return start, start + timedelta(days=1)

    def _fresh(self, provider: str) -> ProviderQuota:
        start, reset_at = self._window_bounds(self._now())
        return ProviderQuota(provider, start, reset_at, 0, self._limits[provider])

    def _roll(self, quota: ProviderQuota, now: datetime) -> None:
        if now < quota.reset_at:
            return
        while quota.reset_at <= now:
            quota.window_start = quota.reset_at
            quota.reset_at = quota.reset_at + timedelta(days=1)
        quota.usage = 0
        logger.info("Quota window reset for {} (next reset {})", quota.provider, quota.reset_at.isoformat())

    def _quota(self, provider: str) -> ProviderQuota:
        try:
            quota = self._quotas[provider]
        except KeyError:
            raise KeyError(f"Unknown AI provider: {provider}") from None
        self._roll(quota, self._now())
        return quota

    def can_use(self, provider: str) -> bool:
        with self._lock:
            quota = self._quota(provider)
            return quota.usage < quota.limit

    def record(self, provider: str) -> bool:
        with self._lock:
            quota = self._quota(provider)
            if quota.usage >= quota.limit:
                return False
            quota.usage += 1
            return True

    def available_providers(self) -> list[str]:
        with self._lock:
            result = []
            for provider in self._priority:
                quota = self._quota(provider)
                if quota.usage < quota.limit:
                    result.append(provider)
            return result

    def best_available(self, preferred: str | None = None, exclude: tuple[str, ...] | list[str] = ()) -> str | None:
        """Preferred provider if usable, else the least-used usable one."""
        with self._lock:
            usable: list[ProviderQuota] = []
            for provider in self._priority:
                if provider in exclude:
                    continue
                quota = self._quota(provider)
                if quota.usage < quota.limit:
                    usable.append(quota)

            if not usable:
                return None
            if preferred and any(q.provider == preferred for q in usable):
                return preferred
            # min() keeps priority order on ties
            return min(usable, key=lambda q: q.usage).provider

    def usage_info(self, provider: str) -> dict[str, Any]:
        with self._lock:
            quota = self._quota(provider)
            remaining = max(0, quota.limit - quota.usage)
            percentage = min(100.0, quota.usage / quota.limit * 100) if quota.limit > 0 else 100.0
            return {
                "usage": quota.usage,
                "limit": quota.limit,
                "remaining": remaining,
                "percentage": percentage,
                "reset_time": quota.reset_at,
            }

    def all_usage_info(self) -> dict[str, dict[str, Any]]:
        return {provider: self.usage_info(provider) for provider in self._priority}

    def set_limit(self, provider: str, limit: int) -> None:
        if limit < 0:
            raise ValueError("limit must be >= 0")
        with self._lock:
            quota = self._quota(provider)
            self._limits[provider] = limit
            quota.limit = limit
            # keep usage <= limit after a downgrade
            quota.usage = min(quota.usage, limit)

    def reset_all(self) -> None:
        with self._lock:
            self._quotas = {p: self._fresh(p) for p in self._limits}
        logger.warning("All provider quotas manually reset")

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {p: q.to_dict() for p, q in self._quotas.items()}

    def restore(self, data: dict[str, Any] | None) -> None:
        if not data:
            return
        with self._lock:
            now = self._now()
            for provider, raw in data.items():
                if provider not in self._quotas or not isinstance(raw, dict):
                    continue
                quota = self._quotas[provider]
                reset_at = datetime.fromisoformat(raw["reset_at"])
                if reset_at <= now:
                    # stored window already closed
                    continue
                quota.window_start = datetime.fromisoformat(raw["window_start"])
                quota.reset_at = reset_at
                quota.usage = min(int(raw.get("usage", 0)), quota.limit)
