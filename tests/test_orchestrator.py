from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from trade_autopilot.bot_config import BotConfig
from trade_autopilot.dispatcher import DispatchOptions, ProviderDispatcher
from trade_autopilot.errors import ConfigError, DataUnavailable, InvalidTransition
from trade_autopilot.events import EventBus
from trade_autopilot.gateways import PriceSnapshot
from trade_autopilot.orchestrator import Orchestrator
from trade_autopilot.paper import PaperPortfolioLedger
from trade_autopilot.quota import QuotaTracker
from trade_autopilot.storage import MemoryPersistence


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class FakeMarketData:
    def __init__(self, prices: dict[str, float] | None = None, candidates: list[str] | None = None) -> None:
        self.prices = dict(prices or {})
        self.candidates = list(candidates or [])
        self.fail_candidates = False

    def get_quote(self, symbol: str) -> PriceSnapshot:
        if symbol not in self.prices:
            raise DataUnavailable(f"no data for {symbol}")
        return PriceSnapshot(symbol, self.prices[symbol], change_percent=0.5, volume=2_000_000)

    def get_candidates(self, limit: int) -> list[str]:
        if self.fail_candidates:
            raise RuntimeError("screener offline")
        return self.candidates[:limit]


class FakeClient:
    def __init__(self, recommendations: list[dict] | None = None) -> None:
        self.recommendations = list(recommendations or [])
        self.calls: list[list[str]] = []

    def recommend(self, symbols: list[str]) -> dict:
        self.calls.append(list(symbols))
        return {"recommendations": self.recommendations}


class FakeScheduler:
    def __init__(self) -> None:
        self.starts: list[tuple[int, bool]] = []
        self.stops = 0
        self.running = False

    def start(self, interval_minutes: int, *, run_immediately: bool = True) -> None:
        self.starts.append((interval_minutes, run_immediately))
        self.running = True

    def stop(self) -> None:
        self.stops += 1
        self.running = False

    def shutdown(self) -> None:
        self.running = False

    def next_run_time(self) -> datetime | None:
        return None


BUY_AAPL = {
    "symbol": "AAPL",
    "action": "BUY",
    "confidence": 92,
    "current_price": 50.0,
    "target_price": 60.0,
    "risk_level": "LOW",
    "reasoning": "services growth",
}


def _bot(
    *,
    market: FakeMarketData | None = None,
    client: FakeClient | None = None,
    limit: int = 100,
    persistence: MemoryPersistence | None = None,
    ledger: PaperPortfolioLedger | None = None,
    clock: Clock | None = None,
    **config,
) -> Orchestrator:
    clock = clock or Clock()
    bus = EventBus()
    persistence = persistence or MemoryPersistence()
    quota = QuotaTracker({"gemini": limit}, priority=["gemini"], now_fn=clock)
    dispatcher = ProviderDispatcher(
        quota,
        {"gemini": client or FakeClient([BUY_AAPL])},
        bus=bus,
        timeout_seconds=5,
        sleep_fn=lambda seconds: None,
    )
    config.setdefault("execution_delay_seconds", 0)
    config.setdefault("trading_hours_only", False)
    return Orchestrator(
        market or FakeMarketData({"AAPL": 50.0}, ["AAPL"]),
        ledger or PaperPortfolioLedger(10_000, persistence),
        persistence,
        dispatcher=dispatcher,
        quota=quota,
        config=BotConfig(**config),
        bus=bus,
        scheduler=FakeScheduler(),
        dispatch_options=DispatchOptions("gemini", True, 1),
        market_open_fn=lambda now: True,
        now_fn=clock,
    )


def test_scan_buys_and_arms_protective_orders() -> None:
    bot = _bot()
    bot.start()

    report = bot.run_scan()

    assert report.provider_used == "gemini"
    assert [d.outcome for d in report.decisions] == ["EXECUTE_TRADE"]
    assert [(t.action, t.quantity, t.status) for t in report.executed] == [("BUY", 18, "COMPLETED")]
    assert bot.ledger.holdings["AAPL"].quantity == 18
    assert sorted(o.order_type for o in bot.orders.active_orders("AAPL")) == ["STOP_LOSS", "TAKE_PROFIT"]
    assert bot.performance()["successful_trades"] == 1
    assert bot.scheduler.starts == [(30, True)]


def test_stopped_bot_does_not_scan() -> None:
    client = FakeClient([BUY_AAPL])
    bot = _bot(client=client)

    assert bot.run_scan().skipped == "stopped"
    assert client.calls == []


def test_market_closed_skips_the_cycle() -> None:
    client = FakeClient([BUY_AAPL])
    bot = _bot(client=client, trading_hours_only=True)
    bot._market_open = lambda now: False
    bot.start()

    assert bot.run_scan().skipped == "market_closed"
    assert client.calls == []


def test_daily_trade_cap_skips_intake_but_still_drains() -> None:
    client = FakeClient([BUY_AAPL])
    bot = _bot(client=client, max_daily_trades=2)
    bot.queue.enqueue("MSFT", "BUY", 1, 100.0, now=bot._now())
    bot.queue.enqueue("NVDA", "BUY", 1, 100.0, now=bot._now())
    bot.start()

    report = bot.run_scan()

    assert report.intake_skipped == "daily trade limit reached (2/2)"
    assert client.calls == []
    assert sorted(t.symbol for t in report.executed) == ["MSFT", "NVDA"]
    assert all(t.status == "COMPLETED" for t in report.executed)


def test_stop_loss_order_sells_the_position() -> None:
    market = FakeMarketData({"AAPL": 50.0}, ["AAPL"])
    bot = _bot(market=market)
    bot.start()
    bot.run_scan()

    market.prices["AAPL"] = 40.0
    report = bot.run_scan()

    assert [(t.source, t.priority, t.quantity) for t in report.protective_trades] == [("protective", "URGENT", 18)]
    assert [(t.action, t.status) for t in report.executed] == [("SELL", "COMPLETED")]
    assert "AAPL" not in bot.ledger.holdings
    assert bot.orders.active_orders() == []


def test_target_sweep_protects_untracked_holdings() -> None:
    market = FakeMarketData({"MSFT": 80.0}, [])
    ledger = PaperPortfolioLedger(10_000)
    ledger.execute_trade("MSFT", "BUY", 10, 100.0)
    bot = _bot(market=market, ledger=ledger, client=FakeClient([]))
    bot.start()

    report = bot.run_scan()

    assert [(t.source, t.symbol, t.quantity) for t in report.protective_trades] == [("target_sweep", "MSFT", 10)]
    assert report.executed[0].status == "COMPLETED"
    assert ledger.holdings == {}


def test_protective_sell_does_not_block_intake_in_the_same_cycle() -> None:
    market = FakeMarketData({"MSFT": 80.0, "AAPL": 50.0}, ["AAPL"])
    ledger = PaperPortfolioLedger(10_000)
    ledger.execute_trade("MSFT", "BUY", 10, 100.0)
    client = FakeClient([BUY_AAPL])
    bot = _bot(market=market, ledger=ledger, client=client, max_daily_trades=1)
    bot.start()

    report = bot.run_scan()

    assert [t.symbol for t in report.protective_trades] == ["MSFT"]
    assert report.intake_skipped is None
    assert client.calls == [["MSFT", "AAPL"]]
    # the sweep's sell now fills the single daily slot
    assert [(d.symbol, d.outcome) for d in report.decisions] == [("AAPL", "SKIP_LIMITS")]
    assert [t.symbol for t in report.executed] == ["MSFT"]


def test_quota_exhaustion_is_not_an_error() -> None:
    bot = _bot(limit=0)
    bot.start()

    report = bot.run_scan()

    assert report.intake_skipped == "quota_exhausted"
    assert report.error is None
    assert bot.state.status == "RUNNING"
    assert bot.state.consecutive_scan_failures == 0
    assert bot.bus.recent("quota_exhausted")


def test_drawdown_pauses_then_recovers() -> None:
    ledger = PaperPortfolioLedger(10_000)
    bot = _bot(ledger=ledger)
    bot.start()
    ledger.cash = 7_500

    assert bot.run_scan().skipped == "drawdown"
    assert bot.state.status == "PAUSED"
    assert bot.bus.recent("drawdown_pause")

    ledger.cash = 10_000
    assert bot.run_scan().skipped == "paused"
    assert bot.state.status == "RUNNING"
    assert bot.state.drawdown_breach_streak == 0


def test_sustained_drawdown_escalates_to_emergency_stop() -> None:
    ledger = PaperPortfolioLedger(10_000)
    bot = _bot(ledger=ledger)
    bot.start()
    ledger.cash = 7_500

    reports = [bot.run_scan() for _ in range(4)]

    assert [r.skipped for r in reports] == ["drawdown", "paused", "paused", "emergency_stop"]
    assert bot.state.status == "STOPPED"
    assert bot.bus.recent("emergency_stop")


def test_sustained_gain_pauses_without_emergency_stop() -> None:
    ledger = PaperPortfolioLedger(10_000)
    bot = _bot(ledger=ledger)
    bot.start()
    ledger.cash = 12_500

    reports = [bot.run_scan() for _ in range(4)]

    assert [r.skipped for r in reports] == ["drawdown", "paused", "paused", "paused"]
    assert bot.state.status == "PAUSED"
    assert bot.config.enabled is True
    assert bot.state.drawdown_breach_streak == 0
    assert bot.bus.recent("emergency_stop") == []


def test_manual_pause_is_not_auto_resumed() -> None:
    bot = _bot()
    bot.start()
    bot.pause()

    bot.run_scan()

    assert bot.state.status == "PAUSED"


def test_repeated_emergency_stops_end_in_error() -> None:
    ledger = PaperPortfolioLedger(10_000)
    bot = _bot(ledger=ledger)
    pending = bot.queue.enqueue("MSFT", "BUY", 1, 100.0, now=bot._now())
    ledger.cash = 6_000

    bot.start()
    assert bot.run_scan().skipped == "emergency_stop"
    assert bot.state.status == "STOPPED"
    assert pending.status == "CANCELLED"
    assert bot.config.enabled is False

    bot.start()
    bot.run_scan()
    assert bot.state.status == "ERROR"
    assert bot.bus.recent("bot_error")
    with pytest.raises(InvalidTransition):
        bot.start()

    bot.clear_error()
    assert bot.state.status == "STOPPED"
    assert bot.state.emergency_stops == 0


def test_repeated_scan_failures_enter_error() -> None:
    market = FakeMarketData({"AAPL": 50.0}, ["AAPL"])
    market.fail_candidates = True
    bot = _bot(market=market)
    bot.start()

    reports = [bot.run_scan() for _ in range(3)]

    assert all(r.error == "screener offline" for r in reports)
    assert bot.state.status == "ERROR"
    assert bot.state.last_error == "screener offline"
    assert bot.scheduler.stops == 1


def test_stop_cancels_pending_trades() -> None:
    bot = _bot()
    bot.start()
    trade = bot.queue.enqueue("MSFT", "BUY", 1, 100.0, now=bot._now())

    status = bot.stop()

    assert status["status"] == "STOPPED"
    assert status["enabled"] is False
    assert trade.status == "CANCELLED"
    assert bot.scheduler.stops == 1


def test_config_update_reschedules_running_bot() -> None:
    bot = _bot()
    bot.start()

    config = bot.update_config(scan_interval_minutes=5, enabled=False)

    assert config.scan_interval_minutes == 5
    assert config.enabled is True
    assert bot.scheduler.starts[-1] == (5, False)
    with pytest.raises(ConfigError):
        bot.update_config(stop_loss_percent=150)
    with pytest.raises(ConfigError):
        bot.update_config(leverage=3)


def test_state_survives_restart() -> None:
    persistence = MemoryPersistence()
    clock = Clock()
    bot = _bot(persistence=persistence, clock=clock)
    bot.start()
    bot.run_scan()

    clock.now += timedelta(minutes=30)
    revived = _bot(persistence=persistence, clock=clock)

    assert [d.symbol for d in revived.decisions()] == ["AAPL"]
    assert revived.engine.already_decided("AAPL")
    assert len(revived.orders.active_orders("AAPL")) == 2
    assert revived.ledger.holdings["AAPL"].quantity == 18
    assert revived.performance()["total_automated_trades"] == 1
    assert revived.quota_info()["gemini"]["usage"] == 1


def test_next_scan_time_comes_from_scheduler() -> None:
    bot = _bot()
    upcoming = datetime(2026, 3, 2, 15, 30, tzinfo=timezone.utc)
    bot.scheduler.next_run_time = lambda: upcoming

    assert bot.status()["next_scan_at"] is None
    assert "next_scan_at" not in bot.state.to_dict()

    bot.start()
    assert bot.status()["next_scan_at"] == upcoming.isoformat()
