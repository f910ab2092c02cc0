from __future__ import annotations

import threading
from collections import deque
from datetime import date, datetime
from typing import Any, Callable, Iterable
from zoneinfo import ZoneInfo

from loguru import logger

from .bot_config import BotConfig
from .events import EventBus
from .execution_queue import ExecutionQueue
from .gateways import PortfolioSummary, PriceSnapshot
from .models import Decision, DecisionOutcome, Recommendation, new_id, utcnow
from .risk import assess_trade_risk, position_size, trade_priority
from .settings import settings


class DecisionEngine:
    """Turns recommendations into audited decisions and queued trades.

    Every recommendation that is not a same-day duplicate produces exactly
    one ``Decision``; only EXECUTE_TRADE decisions reach the queue.
    """

    def __init__(
        self,
        queue: ExecutionQueue,
        *,
        retention: int | None = None,
        bus: EventBus | None = None,
        now_fn: Callable[[], datetime] = utcnow,
        timezone: str | None = None,
        volatility_threshold_percent: float | None = None,
    ) -> None:
        self.queue = queue
        self.bus = bus
        self._now = now_fn
        self._tz = ZoneInfo(timezone or settings.timezone)
        self.volatility_threshold = (
            volatility_threshold_percent
            if volatility_threshold_percent is not None
            else settings.volatility_threshold_percent
        )
        self._decisions: deque[Decision] = deque(maxlen=retention or settings.decision_retention)
        self._seen_day: date | None = None
        self._seen_symbols: set[str] = set()
        self._lock = threading.RLock()

    def _local_day(self, at: datetime) -> date:
        return at.astimezone(self._tz).date()

    def already_decided(self, symbol: str, at: datetime | None = None) -> bool:
        day = self._local_day(at or self._now())
        with self._lock:
            return self._seen_day == day and symbol in self._seen_symbols

    def _mark_seen(self, symbol: str, at: datetime) -> None:
        day = self._local_day(at)
        if self._seen_day != day:
            self._seen_day = day
            self._seen_symbols = set()
        self._seen_symbols.add(symbol)

    def _record(
        self,
        rec: Recommendation,
        outcome: DecisionOutcome,
        reason: str,
        at: datetime,
        trade_id: str | None = None,
    ) -> Decision:
        decision = Decision(
            id=new_id("dec"),
            timestamp=at,
            symbol=rec.symbol,
            recommendation=rec,
            outcome=outcome,
            reason=reason,
            trade_id=trade_id,
        )
        with self._lock:
            self._decisions.appendleft(decision)
            self._mark_seen(rec.symbol, at)

        if outcome == "EXECUTE_TRADE":
            logger.info("Decision {} {}: {}", rec.symbol, outcome, reason)
        else:
            logger.warning("Decision {} {}: {}", rec.symbol, outcome, reason)
        if self.bus is not None:
            self.bus.publish("decision_recorded", decision=decision.to_dict())
        return decision

    def _committed_cash(self) -> float:
        return sum(t.notional for t in self.queue.pending() if t.action == "BUY")

    def _market_condition_problem(self, quote: PriceSnapshot | None, config: BotConfig) -> str | None:
        if quote is None:
            return None
        if config.avoid_high_volatility and abs(quote.change_percent) > self.volatility_threshold:
            return f"High volatility ({quote.change_percent:+.1f}% today)"
        if config.minimum_liquidity > 0 and 0 < quote.volume < config.minimum_liquidity:
            return f"Volume {quote.volume:,.0f} below minimum liquidity {config.minimum_liquidity:,.0f}"
        return None

    def decide(
        self,
        rec: Recommendation,
        config: BotConfig,
        portfolio: PortfolioSummary,
        quote: PriceSnapshot | None = None,
        *,
        now: datetime | None = None,
    ) -> Decision | None:
        """Return the recorded decision, or ``None`` for a same-day duplicate."""
        at = now or self._now()
        if self.already_decided(rec.symbol, at):
            logger.debug("Ignoring duplicate recommendation for {} today", rec.symbol)
            return None

        if rec.confidence < config.minimum_confidence:
            return self._record(
                rec,
                "SKIP_CONFIDENCE",
                f"Confidence {rec.confidence:.0f}% below minimum {config.minimum_confidence:.0f}%",
                at,
            )
        if rec.risk_level not in config.risk_levels_enabled:
            return self._record(rec, "SKIP_RISK", f"Risk level {rec.risk_level} not enabled", at)
        if rec.action == "HOLD":
            return self._record(rec, "SKIP_RISK", "HOLD recommendation - no action needed", at)

        problem = self._market_condition_problem(quote, config)
        if problem:
            return self._record(rec, "SKIP_MARKET_CONDITIONS", problem, at)

        price = quote.price if quote is not None and quote.price > 0 else rec.current_price
        if price <= 0:
            return self._record(rec, "SKIP_MARKET_CONDITIONS", f"No price available for {rec.symbol}", at)

        if self.queue.has_open(rec.symbol):
            return self._record(rec, "SKIP_LIMITS", f"A trade for {rec.symbol} is already queued", at)

        count, amount = self.queue.today_stats(at)
        if count >= config.max_daily_trades:
            return self._record(
                rec, "SKIP_LIMITS", f"Daily trade limit reached ({count}/{config.max_daily_trades})", at
            )

        if rec.action == "BUY":
            return self._decide_buy(rec, config, portfolio, price, amount, at)
        return self._decide_sell(rec, config, portfolio, price, at)

    def _decide_buy(
        self,
        rec: Recommendation,
        config: BotConfig,
        portfolio: PortfolioSummary,
        price: float,
        traded_today: float,
        at: datetime,
    ) -> Decision:
        cash = max(0.0, portfolio.cash_balance - self._committed_cash())
        sizing = position_size(
            rec.symbol,
            price,
            rec.confidence,
            rec.risk_level,
            portfolio.total_value,
            cash,
            config,
        )
        assessment = assess_trade_risk(rec.symbol, "BUY", sizing.quantity, price, rec, config, portfolio)
        if not assessment.approved:
            return self._record(rec, "SKIP_RISK", assessment.reason, at)
        if sizing.quantity <= 0:
            return self._record(rec, "SKIP_LIMITS", sizing.reasoning, at)
        if traded_today + sizing.position_value > config.max_daily_amount:
            return self._record(
                rec,
                "SKIP_LIMITS",
                f"Daily amount limit: ${traded_today:.2f} + ${sizing.position_value:.2f} "
                f"exceeds ${config.max_daily_amount:.2f}",
                at,
            )

        trade = self.queue.enqueue(
            rec.symbol,
            "BUY",
            sizing.quantity,
            price,
            trade_priority(rec.confidence),
            confidence=rec.confidence,
            rationale=rec.reasoning,
            now=at,
        )
        return self._record(
            rec,
            "EXECUTE_TRADE",
            f"BUY {sizing.quantity} shares at ${price:.2f} - {rec.reasoning}".rstrip(" -"),
            at,
            trade.id,
        )

    def _decide_sell(
        self,
        rec: Recommendation,
        config: BotConfig,
        portfolio: PortfolioSummary,
        price: float,
        at: datetime,
    ) -> Decision:
        holding = portfolio.holdings.get(rec.symbol)
        if holding is None or holding.quantity <= 0:
            return self._record(rec, "SKIP_LIMITS", f"No {rec.symbol} shares to sell", at)

        assessment = assess_trade_risk(rec.symbol, "SELL", holding.quantity, price, rec, config, portfolio)
        if assessment.severity != "LOW":
            logger.warning("SELL {} carries warnings: {}", rec.symbol, assessment.reason)

        trade = self.queue.enqueue(
            rec.symbol,
            "SELL",
            holding.quantity,
            price,
            trade_priority(rec.confidence),
            confidence=rec.confidence,
            rationale=rec.reasoning,
            now=at,
        )
        return self._record(
            rec,
            "EXECUTE_TRADE",
            f"SELL {holding.quantity} shares at ${price:.2f} - {rec.reasoning}".rstrip(" -"),
            at,
            trade.id,
        )

    def process(
        self,
        recommendations: Iterable[Recommendation],
        config: BotConfig,
        portfolio: PortfolioSummary,
        quotes: dict[str, PriceSnapshot] | None = None,
        *,
        now: datetime | None = None,
    ) -> list[Decision]:
        quotes = quotes or {}
        decisions: list[Decision] = []
        for rec in recommendations:
            decision = self.decide(rec, config, portfolio, quotes.get(rec.symbol), now=now)
            if decision is not None:
                decisions.append(decision)
        return decisions

    def decisions(self, limit: int | None = None) -> list[Decision]:
        with self._lock:
            items = list(self._decisions)
        return items[:limit] if limit else items

    def prune(self, older_than: datetime) -> int:
        with self._lock:
            kept = [d for d in self._decisions if d.timestamp >= older_than]
            removed = len(self._decisions) - len(kept)
            self._decisions = deque(kept, maxlen=self._decisions.maxlen)
        return removed

    def to_list(self) -> list[dict[str, Any]]:
        with self._lock:
            return [d.to_dict() for d in self._decisions]

    def restore(self, items: list[dict[str, Any]] | None) -> None:
        restored: list[Decision] = []
        for item in items or []:
            try:
                restored.append(Decision.from_dict(item))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable stored decision: {}", exc)
        today = self._local_day(self._now())
        with self._lock:
            self._decisions = deque(restored, maxlen=self._decisions.maxlen)
            self._seen_day = today
            self._seen_symbols = {d.symbol for d in restored if self._local_day(d.timestamp) == today}
