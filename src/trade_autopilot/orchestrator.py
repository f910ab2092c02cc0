"""Scan loop and host operations.

One ``Orchestrator`` owns every piece of mutable engine state (config,
quotas, queue, order ledger, decisions) and serializes writers behind a
single re-entrant lock. Readers go through the components' own locks.

A scan tick runs, in order: emergency check, market-hours gate, drawdown
gate, daily-limit gate, protective-order and target sweep, candidate fetch,
AI recommendations, decisions, queue drain. The daily-limit gate is read
before the sweep so protective sells never block intake.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from loguru import logger

from .bot_config import BotConfig, load_bot_config
from .decision import DecisionEngine
from .dispatcher import DispatchOptions, ProviderDispatcher
from .errors import (
    AllProvidersFailed,
    DataUnavailable,
    InsufficientFunds,
    InsufficientShares,
    QuotaExhausted,
)
from .events import EventBus
from .execution_queue import ExecutionQueue
from .gateways import MarketDataGateway, Persistence, PortfolioLedger, PortfolioSummary, PriceSnapshot
from .market_hours import is_market_open
from .models import Decision, Performance, QueuedTrade, SellInstruction, utcnow
from .orders import OrderLedger
from .quota import QuotaTracker
from .risk import RiskState, check_drawdown, check_stop_loss_targets, is_emergency_stop_required
from .scheduler import ScanScheduler
from .settings import settings
from .state import RuntimeState
from .storage import MemoryPersistence


KEY_BOT_CONFIG = "bot_config"
KEY_QUEUE = "execution_queue"
KEY_DECISIONS = "decisions"
KEY_ORDERS = "order_ledger"
KEY_QUOTA = "quota_state"
KEY_PERFORMANCE = "performance"


@dataclass
class ScanReport:
    started_at: datetime
    finished_at: datetime | None = None
    skipped: str | None = None
    error: str | None = None
    intake_skipped: str | None = None
    provider_used: str | None = None
    decisions: list[Decision] = field(default_factory=list)
    protective_trades: list[QueuedTrade] = field(default_factory=list)
    executed: list[QueuedTrade] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "skipped": self.skipped,
            "error": self.error,
            "intake_skipped": self.intake_skipped,
            "provider_used": self.provider_used,
            "decisions": [d.to_dict() for d in self.decisions],
            "protective_trades": [t.to_dict() for t in self.protective_trades],
            "executed": [t.to_dict() for t in self.executed],
        }


class Orchestrator:
    def __init__(
        self,
        market_data: MarketDataGateway,
        ledger: PortfolioLedger,
        persistence: Persistence | None = None,
        *,
        dispatcher: ProviderDispatcher | None = None,
        quota: QuotaTracker | None = None,
        config: BotConfig | None = None,
        bus: EventBus | None = None,
        scheduler: ScanScheduler | None = None,
        dispatch_options: DispatchOptions | None = None,
        market_open_fn: Callable[[datetime], bool] = is_market_open,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self.market_data = market_data
        self.ledger = ledger
        self.persistence: Persistence = persistence or MemoryPersistence()
        self.bus = bus or EventBus()
        self.quota = quota or (dispatcher.quota if dispatcher else QuotaTracker(now_fn=now_fn))
        self.dispatcher = dispatcher or ProviderDispatcher(self.quota, bus=self.bus)
        self.dispatch_options = dispatch_options or DispatchOptions.from_settings()
        self.queue = ExecutionQueue(self.bus, now_fn=now_fn)
        self.orders = OrderLedger(self.bus)
        self.engine = DecisionEngine(self.queue, bus=self.bus, now_fn=now_fn)
        self.state = RuntimeState()
        self.scheduler = scheduler or ScanScheduler(self._scheduled_tick)
        self._market_open = market_open_fn
        self._now = now_fn
        self._lock = threading.RLock()
        self._stop_event = threading.Event()

        self._restore()
        self.config = config or self._initial_config()

    # -- persistence -------------------------------------------------

    def _initial_config(self) -> BotConfig:
        from_file = load_bot_config()
        if from_file is not None:
            logger.info("Bot config loaded from {}", settings.bot_config_path)
            return from_file
        stored = self.persistence.load(KEY_BOT_CONFIG)
        if stored:
            return BotConfig.from_dict(stored)
        return BotConfig()

    def _restore(self) -> None:
        self.queue.restore(self.persistence.load(KEY_QUEUE))
        self.engine.restore(self.persistence.load(KEY_DECISIONS))
        self.orders = OrderLedger.from_dict(self.persistence.load(KEY_ORDERS), bus=self.bus)
        self.quota.restore(self.persistence.load(KEY_QUOTA))
        self.state.performance = Performance.from_dict(self.persistence.load(KEY_PERFORMANCE))

    def _persist(self) -> None:
        self.persistence.save(KEY_BOT_CONFIG, self.config.to_dict())
        self.persistence.save(KEY_QUEUE, self.queue.to_dict())
        self.persistence.save(KEY_DECISIONS, self.engine.to_list())
        self.persistence.save(KEY_ORDERS, self.orders.to_dict())
        self.persistence.save(KEY_QUOTA, self.quota.snapshot())
        self.persistence.save(KEY_PERFORMANCE, self.state.performance.to_dict())

    # -- host operations ---------------------------------------------

    def _set_status(self, status: str, reason: str = "") -> None:
        previous = self.state.status
        self.state.transition(status, reason)  # type: ignore[arg-type]
        if previous != status:
            logger.info("Bot status {} -> {} {}", previous, status, f"({reason})" if reason else "")
            self.bus.publish("bot_status", previous=previous, status=status, reason=reason)

    def start(self) -> dict[str, Any]:
        with self._lock:
            self._set_status("RUNNING", "started")
            self._stop_event.clear()
            self.config = self.config.update(enabled=True)
            self.scheduler.start(self.config.scan_interval_minutes)
            self._persist()
        return self.status()

    def stop(self, reason: str = "stopped by user") -> dict[str, Any]:
        # wake any inter-trade wait before queueing for the lock
        self._stop_event.set()
        self.scheduler.stop()
        with self._lock:
            self.queue.cancel_pending(reason)
            if self.state.status != "STOPPED":
                self._set_status("STOPPED", reason)
            self.config = self.config.update(enabled=False)
            self._persist()
        return self.status()

    def pause(self, reason: str = "paused by user") -> dict[str, Any]:
        with self._lock:
            self._set_status("PAUSED", reason)
        return self.status()

    def resume(self) -> dict[str, Any]:
        with self._lock:
            self._set_status("RUNNING", "resumed")
            self.state.drawdown_breach_streak = 0
        return self.status()

    def emergency_stop(self, reason: str = "manual emergency stop") -> dict[str, Any]:
        self._stop_event.set()
        self.scheduler.stop()
        with self._lock:
            cancelled = self.queue.cancel_pending(f"emergency stop: {reason}")
            self.state.emergency_stops += 1
            terminal = self.state.status == "ERROR" or self.state.emergency_stops >= settings.max_emergency_stops
            self._set_status("ERROR" if terminal else "STOPPED", f"emergency stop: {reason}")
            self.state.add_note(f"Emergency stop: {reason}")
            self.config = self.config.update(enabled=False)
            self._persist()
        logger.error("EMERGENCY STOP: {} ({} pending trades cancelled)", reason, cancelled)
        self.bus.publish("emergency_stop", reason=reason, cancelled_trades=cancelled, terminal=terminal)
        if terminal:
            self.bus.publish("bot_error", reason=f"repeated emergency stops: {reason}")
        return self.status()

    def clear_error(self) -> dict[str, Any]:
        with self._lock:
            if self.state.status == "ERROR":
                self._set_status("STOPPED", "error cleared by operator")
            self.state.emergency_stops = 0
            self.state.consecutive_scan_failures = 0
            self.state.consecutive_execution_failures = 0
            self.state.drawdown_breach_streak = 0
            self.state.last_error = None
        return self.status()

    def update_config(self, **changes: Any) -> BotConfig:
        with self._lock:
            changes.pop("enabled", None)
            self.config = self.config.update(**changes)
            self._persist()
            if self.state.status in ("RUNNING", "PAUSED"):
                # replace the job so a new interval takes effect
                self.scheduler.start(self.config.scan_interval_minutes, run_immediately=False)
        logger.info("Bot config updated: {}", ", ".join(sorted(changes)) or "no changes")
        return self.config

    def shutdown(self) -> None:
        """Process exit: halt the timer but keep pending trades and the enabled flag."""
        self._stop_event.set()
        self.scheduler.shutdown()
        with self._lock:
            self._persist()
        self.dispatcher.close()

    def cancel_order(self, order_id: str) -> bool:
        cancelled = self.orders.cancel(order_id)
        if cancelled:
            self.persistence.save(KEY_ORDERS, self.orders.to_dict())
        return cancelled

    def cancel_trade(self, trade_id: str) -> bool:
        cancelled = self.queue.cancel(trade_id)
        if cancelled:
            self.persistence.save(KEY_QUEUE, self.queue.to_dict())
        return cancelled

    def cleanup(self, days: int | None = None) -> dict[str, int]:
        cutoff = self._now() - timedelta(days=days or settings.history_retention_days)
        with self._lock:
            removed = {
                "trades": self.queue.prune(cutoff),
                "decisions": self.engine.prune(cutoff),
                "orders": self.orders.prune(cutoff),
            }
        if any(removed.values()):
            logger.info("Cleanup removed {}", removed)
        return removed

    # -- read-only queries -------------------------------------------

    def status(self) -> dict[str, Any]:
        count, amount = self.queue.today_stats()
        next_run = self.scheduler.next_run_time() if self.state.status in ("RUNNING", "PAUSED") else None
        return {
            **self.state.to_dict(),
            "next_scan_at": next_run.isoformat() if next_run else None,
            "enabled": self.config.enabled,
            "today_trades": count,
            "today_amount": round(amount, 2),
            "pending_trades": len(self.queue.pending()),
            "active_orders": len(self.orders.active_orders()),
            "available_providers": self.quota.available_providers(),
        }

    def queue_listing(self) -> dict[str, Any]:
        return {
            "pending": [t.to_dict() for t in self.queue.pending()],
            "history": [t.to_dict() for t in self.queue.history(limit=50)],
        }

    def decisions(self, limit: int | None = None) -> list[Decision]:
        return self.engine.decisions(limit)

    def orders_listing(self) -> dict[str, Any]:
        return {
            "active": [o.to_dict() for o in self.orders.active_orders()],
            "history": [o.to_dict() for o in self.orders.history(limit=50)],
        }

    def quota_info(self) -> dict[str, dict[str, Any]]:
        return self.quota.all_usage_info()

    def performance(self) -> dict[str, Any]:
        return self.state.performance.to_dict()

    # -- scan cycle --------------------------------------------------

    def _scheduled_tick(self) -> None:
        try:
            self.run_scan()
        except Exception:
            # never let the timer thread die
            logger.exception("Scheduled scan crashed")

    def run_once(self) -> ScanReport:
        """One manual cycle without the timer; a stopped bot goes back to STOPPED."""
        with self._lock:
            if self.state.status != "STOPPED":
                return self.run_scan()
            self._set_status("RUNNING", "single cycle")
            self._stop_event.clear()
            try:
                return self.run_scan()
            finally:
                if self.state.status in ("RUNNING", "PAUSED"):
                    self._set_status("STOPPED", "single cycle finished")

    def run_scan(self) -> ScanReport:
        report = ScanReport(started_at=self._now())
        with self._lock:
            status = self.state.status
            if status == "ERROR":
                report.skipped = "error_state"
            elif status == "STOPPED":
                report.skipped = "stopped"
            elif status == "PAUSED":
                self._monitor_paused(report)
            else:
                self._run_cycle(report)
            report.finished_at = self._now()
        return report

    def _risk_state(self, portfolio: PortfolioSummary) -> RiskState:
        return RiskState(
            total_profit_loss_percent=portfolio.total_profit_loss_percent,
            drawdown_breach_streak=self.state.drawdown_breach_streak,
            consecutive_execution_failures=self.state.consecutive_execution_failures,
        )

    def _check_emergency(self, portfolio: PortfolioSummary, report: ScanReport) -> bool:
        check = is_emergency_stop_required(self._risk_state(portfolio))
        if not check.required:
            return False
        self.emergency_stop(check.reason)
        report.skipped = "emergency_stop"
        return True

    def _drawdown_breached(self, portfolio: PortfolioSummary) -> bool:
        if check_drawdown(portfolio, self.config):
            self.state.drawdown_breach_streak = 0
            return False
        # a gain outside the band pauses but never escalates to an emergency stop
        if portfolio.total_profit_loss_percent < -self.config.max_portfolio_drawdown:
            self.state.drawdown_breach_streak += 1
        else:
            self.state.drawdown_breach_streak = 0
        logger.warning(
            "Drawdown gate: P/L {:.1f}% outside {:.1f}% (streak {})",
            portfolio.total_profit_loss_percent,
            self.config.max_portfolio_drawdown,
            self.state.drawdown_breach_streak,
        )
        return True

    def _monitor_paused(self, report: ScanReport) -> None:
        report.skipped = "paused"
        portfolio = self.ledger.get_summary()
        if self._check_emergency(portfolio, report):
            return
        breached = self._drawdown_breached(portfolio)
        if not breached and self.state.status_reason.startswith("drawdown"):
            logger.info("Drawdown recovered; resuming automated trading")
            self._set_status("RUNNING", "drawdown recovered")

    def _run_cycle(self, report: ScanReport) -> None:
        self.state.mark_start()
        try:
            self._scan(report)
        except Exception as exc:
            logger.exception("Scan cycle failed")
            report.error = str(exc)
            self._record_scan_failure(str(exc))
        else:
            if report.error is None:
                self.state.consecutive_scan_failures = 0
        finally:
            self.state.mark_finish()
            self.cleanup()
            self._persist()

    def _record_scan_failure(self, message: str) -> None:
        self.state.consecutive_scan_failures += 1
        self.state.last_error = message
        if self.state.consecutive_scan_failures >= settings.max_consecutive_failures:
            self._enter_error(f"{self.state.consecutive_scan_failures} consecutive scan failures: {message}")

    def _enter_error(self, reason: str) -> None:
        self._stop_event.set()
        self.scheduler.stop()
        self.queue.cancel_pending(f"bot error: {reason}")
        self._set_status("ERROR", reason)
        logger.error("Bot entered ERROR state: {}", reason)
        self.bus.publish("bot_error", reason=reason)

    def _scan(self, report: ScanReport) -> None:
        now = self._now()
        portfolio = self.ledger.get_summary()

        if self._check_emergency(portfolio, report):
            return

        if self.config.trading_hours_only and not self._market_open(now):
            logger.info("Market closed; skipping scan")
            report.skipped = "market_closed"
            return

        if self._drawdown_breached(portfolio):
            reason = f"drawdown {portfolio.total_profit_loss_percent:.1f}% beyond {self.config.max_portfolio_drawdown:.1f}%"
            self._set_status("PAUSED", reason)
            self.bus.publish("drawdown_pause", reason=reason, streak=self.state.drawdown_breach_streak)
            report.skipped = "drawdown"
            return

        held = [symbol for symbol, h in portfolio.holdings.items() if h.quantity > 0]
        watched = set(held) | {order.symbol for order in self.orders.active_orders()}
        quotes = self._quotes(sorted(watched))
        self._mark_prices(quotes)
        intake_block = self._intake_block(now)
        report.protective_trades = self._sweep_protective(portfolio, quotes, now)

        if intake_block:
            logger.info("Skipping recommendation intake: {}", intake_block)
            report.intake_skipped = intake_block
        else:
            self._intake(portfolio, held, quotes, report, now)

        report.executed = self._drain()

    def _quotes(self, symbols: list[str]) -> dict[str, PriceSnapshot]:
        quotes: dict[str, PriceSnapshot] = {}
        for symbol in symbols:
            try:
                quotes[symbol] = self.market_data.get_quote(symbol)
            except DataUnavailable as exc:
                logger.warning("No quote for {}: {}", symbol, exc)
        return quotes

    def _mark_prices(self, quotes: dict[str, PriceSnapshot]) -> None:
        # ledgers that track marks (the paper book does) get fresh prices
        mark = getattr(self.ledger, "mark", None)
        if mark is None:
            return
        for symbol, quote in quotes.items():
            mark(symbol, quote.price)

    def _sellable(self, portfolio: PortfolioSummary, symbol: str) -> int:
        holding = portfolio.holdings.get(symbol)
        held = holding.quantity if holding else 0
        queued = sum(t.quantity for t in self.queue.pending() if t.symbol == symbol and t.action == "SELL")
        return max(0, held - queued)

    def _queue_protective_sell(
        self,
        portfolio: PortfolioSummary,
        instruction: SellInstruction,
        now: datetime,
        source: str = "protective",
    ) -> QueuedTrade | None:
        quantity = min(instruction.quantity, self._sellable(portfolio, instruction.symbol))
        if quantity <= 0:
            logger.warning("Protective sell for {} dropped: no unqueued shares", instruction.symbol)
            return None
        return self.queue.enqueue(
            instruction.symbol,
            "SELL",
            quantity,
            instruction.price,
            "URGENT",
            source=source,
            confidence=100,
            rationale=instruction.reason,
            now=now,
        )

    def _sweep_protective(
        self,
        portfolio: PortfolioSummary,
        quotes: dict[str, PriceSnapshot],
        now: datetime,
    ) -> list[QueuedTrade]:
        trades: list[QueuedTrade] = []
        self.orders.expire(now)
        for symbol, quote in quotes.items():
            for instruction in self.orders.on_price(symbol, quote.price, now):
                trade = self._queue_protective_sell(portfolio, instruction, now)
                if trade:
                    trades.append(trade)

        live_prices = {symbol: quote.price for symbol, quote in quotes.items()}
        for target in check_stop_loss_targets(portfolio.holdings, live_prices, self.config):
            if not target.should_execute or self.queue.has_open(target.symbol, "SELL"):
                continue
            instruction = SellInstruction(
                symbol=target.symbol,
                quantity=target.quantity,
                price=target.current_price,
                reason=(
                    f"{target.type.replace('_', '-').lower()} target hit at ${target.current_price:.2f} "
                    f"(entry ${target.entry_price:.2f})"
                ),
                order_type=target.type,
            )
            trade = self._queue_protective_sell(portfolio, instruction, now, source="target_sweep")
            if trade:
                trades.append(trade)
        return trades

    def _intake_block(self, now: datetime) -> str | None:
        count, amount = self.queue.today_stats(now)
        if count >= self.config.max_daily_trades:
            return f"daily trade limit reached ({count}/{self.config.max_daily_trades})"
        if amount >= self.config.max_daily_amount:
            return f"daily amount limit reached (${amount:.2f}/${self.config.max_daily_amount:.2f})"
        return None

    def _intake(
        self,
        portfolio: PortfolioSummary,
        held: list[str],
        quotes: dict[str, PriceSnapshot],
        report: ScanReport,
        now: datetime,
    ) -> None:
        candidates: list[str] = []
        for symbol in held + self.market_data.get_candidates(settings.candidate_limit):
            symbol = symbol.upper()
            if symbol not in candidates and not self.engine.already_decided(symbol, now):
                candidates.append(symbol)
        candidates = candidates[: settings.candidate_limit]
        if not candidates:
            report.intake_skipped = "no undecided candidates"
            return

        quotes.update(self._quotes([s for s in candidates if s not in quotes]))
        result = self.dispatcher.recommendations(candidates, self.dispatch_options)
        if not result.ok:
            self._handle_dispatch_failure(result.error, report)
            return

        report.provider_used = result.provider_used
        wanted = set(candidates)
        recommendations = [rec for rec in result.data or [] if rec.symbol in wanted]
        logger.info(
            "Received {} recommendations from {}{}",
            len(recommendations),
            (result.provider_used or "?").upper(),
            " (fallback)" if result.fallback_used else "",
        )
        report.decisions = self.engine.process(recommendations, self.config, portfolio, quotes, now=now)

    def _handle_dispatch_failure(self, error: Exception | None, report: ScanReport) -> None:
        if isinstance(error, QuotaExhausted):
            logger.warning("Scan skipped: {}", error)
            report.intake_skipped = "quota_exhausted"
            self.bus.publish("quota_exhausted", message=str(error), quotas=self.quota.all_usage_info())
            return
        if isinstance(error, AllProvidersFailed):
            logger.error("Recommendation request failed: {}", error)
        else:
            logger.error("Recommendation request failed unexpectedly: {}", error)
        report.error = str(error)
        self._record_scan_failure(str(error))

    def _drain(self) -> list[QueuedTrade]:
        processed = self.queue.drain(
            self._execute_trade,
            delay_seconds=self.config.execution_delay_seconds,
            stop_event=self._stop_event,
        )
        for trade in processed:
            success = trade.status == "COMPLETED"
            self.state.performance.record(success)
            if success:
                self.state.consecutive_execution_failures = 0
            else:
                self.state.consecutive_execution_failures += 1
                self.bus.publish(
                    "trade_failed",
                    message=f"{trade.action} {trade.symbol} failed: {trade.reason}",
                    trade_id=trade.id,
                )
        return processed

    def _execution_price(self, trade: QueuedTrade) -> float:
        try:
            return self.market_data.get_quote(trade.symbol).price
        except DataUnavailable:
            return trade.target_price

    def _execute_trade(self, trade: QueuedTrade) -> bool:
        price = self._execution_price(trade)
        portfolio = self.ledger.get_summary()
        if trade.action == "BUY":
            cost = trade.quantity * price
            if cost > portfolio.cash_balance:
                raise InsufficientFunds(
                    f"{trade.symbol}: need ${cost:.2f}, have ${portfolio.cash_balance:.2f}"
                )
        else:
            holding = portfolio.holdings.get(trade.symbol)
            held = holding.quantity if holding else 0
            if held < trade.quantity:
                raise InsufficientShares(f"{trade.symbol}: have {held}, need {trade.quantity}")

        ok = self.ledger.execute_trade(
            trade.symbol,
            trade.action,
            trade.quantity,
            price,
            metadata={
                "trade_id": trade.id,
                "source": trade.source,
                "priority": trade.priority,
                "confidence": trade.confidence,
                "reasoning": trade.rationale,
            },
        )
        if not ok:
            return False

        if trade.action == "BUY":
            self.orders.create_protective_orders(trade.id, trade.symbol, trade.quantity, price, self.config)
        else:
            remaining = self.ledger.get_summary().holdings.get(trade.symbol)
            if remaining is None or remaining.quantity <= 0:
                self.orders.cancel_symbol(trade.symbol, "position closed")
        return True
