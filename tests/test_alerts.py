from __future__ import annotations

import pytest
import requests

from trade_autopilot import alerts
from trade_autopilot.alerts import AlertRouter
from trade_autopilot.events import EventBus


class OkResponse:
    def raise_for_status(self) -> None:
        return None


def test_subscribed_events_are_posted(monkeypatch: pytest.MonkeyPatch) -> None:
    sent: list[dict] = []

    def fake_post(url, json=None, timeout=None):
        sent.append({"url": url, **json})
        return OkResponse()

    monkeypatch.setattr(alerts.requests, "post", fake_post)
    bus = EventBus()
    AlertRouter("https://hooks.example.test/autopilot", {"emergency_stop"}).attach(bus)

    bus.publish("emergency_stop", reason="drawdown -35.0%", cancelled_trades=2, terminal=False)
    bus.publish("trade_queued", trade={})

    assert sent == [
        {
            "url": "https://hooks.example.test/autopilot",
            "event_type": "emergency_stop",
            "message": "drawdown -35.0%",
            "metadata": {"reason": "drawdown -35.0%", "cancelled_trades": 2, "terminal": False},
        }
    ]


def test_without_webhook_nothing_is_sent(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(alerts.requests, "post", lambda *args, **kwargs: pytest.fail("unexpected post"))

    router = AlertRouter("", {"bot_error"})

    assert router.send("bot_error", "boom", {}) is False


def test_delivery_failure_is_logged_not_raised(monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_post(*args, **kwargs):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(alerts.requests, "post", failing_post)

    assert AlertRouter("https://hooks.example.test/x", {"bot_error"}).send("bot_error", "boom", {}) is False
