from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from trade_autopilot.quota import QuotaTracker


class Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def _tracker(clock: Clock, **limits: int) -> QuotaTracker:
    return QuotaTracker(
        limits or {"gemini": 3, "groq": 5, "openai": 5},
        priority=["gemini", "groq", "openai"],
        now_fn=clock,
        timezone="America/New_York",
    )


def test_record_stops_at_limit() -> None:
    tracker = _tracker(Clock(datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)))

    results = [tracker.record("gemini") for _ in range(5)]

    assert results == [True, True, True, False, False]
    info = tracker.usage_info("gemini")
    assert info["usage"] == 3
    assert info["remaining"] == 0
    assert info["percentage"] == 100.0
    assert tracker.can_use("gemini") is False


def test_window_resets_once_at_local_midnight() -> None:
    # 10:00 New York time; next reset is 05:00 UTC the following day
    clock = Clock(datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc))
    tracker = _tracker(clock)
    for _ in range(3):
        tracker.record("gemini")

    clock.now = datetime(2026, 3, 3, 4, 59, tzinfo=timezone.utc)
    assert tracker.usage_info("gemini")["usage"] == 3

    clock.now = datetime(2026, 3, 3, 5, 30, tzinfo=timezone.utc)
    assert tracker.usage_info("gemini")["usage"] == 0
    assert tracker.record("gemini") is True

    clock.advance(hours=1)
    assert tracker.usage_info("gemini")["usage"] == 1
    assert tracker.usage_info("gemini")["reset_time"] == datetime(2026, 3, 4, 5, 0, tzinfo=timezone.utc)


def test_best_available_prefers_then_falls_back_to_least_used() -> None:
    tracker = _tracker(Clock(datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)))

    assert tracker.best_available("openai") == "openai"

    for _ in range(3):
        tracker.record("gemini")
    tracker.record("groq")

    assert tracker.best_available("gemini") == "openai"
    assert tracker.best_available("gemini", exclude=["openai"]) == "groq"
    assert tracker.best_available(None, exclude=["openai", "groq"]) is None


def test_concurrent_record_never_exceeds_limit() -> None:
    tracker = QuotaTracker({"gemini": 50}, priority=["gemini"])
    granted: list[bool] = []
    lock = threading.Lock()

    def worker() -> None:
        for _ in range(20):
            ok = tracker.record("gemini")
            with lock:
                granted.append(ok)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert granted.count(True) == 50
    assert tracker.usage_info("gemini")["usage"] == 50


def test_set_limit_clamps_usage() -> None:
    tracker = _tracker(Clock(datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)))
    for _ in range(4):
        tracker.record("groq")

    tracker.set_limit("groq", 2)

    assert tracker.usage_info("groq")["usage"] == 2
    assert tracker.can_use("groq") is False
    with pytest.raises(ValueError):
        tracker.set_limit("groq", -1)


def test_snapshot_restore_keeps_usage_inside_window_only() -> None:
    clock = Clock(datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc))
    tracker = _tracker(clock)
    tracker.record("gemini")
    tracker.record("gemini")
    snapshot = tracker.snapshot()

    same_day = _tracker(clock)
    same_day.restore(snapshot)
    assert same_day.usage_info("gemini")["usage"] == 2

    clock.advance(days=1)
    next_day = _tracker(clock)
    next_day.restore(snapshot)
    assert next_day.usage_info("gemini")["usage"] == 0


def test_unknown_provider_raises() -> None:
    tracker = _tracker(Clock(datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)))
    with pytest.raises(KeyError):
        tracker.record("anthropic")
