from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta
from typing import Any, Callable
from zoneinfo import ZoneInfo

from loguru import logger

from .errors import InsufficientFunds, InsufficientShares
from .events import EventBus
from .models import PRIORITY_RANK, Priority, QueuedTrade, TradeAction, new_id, utcnow
from .settings import settings


TradeExecutor = Callable[[QueuedTrade], bool]

COUNTED_STATUSES = frozenset({"PENDING", "EXECUTING", "COMPLETED"})


def _drain_key(trade: QueuedTrade) -> tuple[int, datetime]:
    return (-PRIORITY_RANK.get(trade.priority, 0), trade.scheduled_for)


class ExecutionQueue:
    """Priority queue of scheduled trades; executes strictly one at a time.

    Eligible trades (PENDING and due) drain URGENT first, ties broken by
    ``scheduled_for``. A trade that fails is recorded FAILED and never
    retried here.
    """

    def __init__(
        self,
        bus: EventBus | None = None,
        *,
        now_fn: Callable[[], datetime] = utcnow,
        sleep_fn: Callable[[float], None] = time.sleep,
        timezone: str | None = None,
    ) -> None:
        self.bus = bus
        self._now = now_fn
        self._sleep = sleep_fn
        self._tz = ZoneInfo(timezone or settings.timezone)
        self._trades: dict[str, QueuedTrade] = {}
        self._lock = threading.RLock()

    def _publish(self, topic: str, trade: QueuedTrade) -> None:
        if self.bus is not None:
            self.bus.publish(topic, trade=trade.to_dict())

    def enqueue(
        self,
        symbol: str,
        action: TradeAction,
        quantity: int,
        target_price: float,
        priority: Priority = "MEDIUM",
        *,
        delay_seconds: float = 0,
        source: str = "recommendation",
        confidence: float = 0.0,
        rationale: str = "",
        now: datetime | None = None,
    ) -> QueuedTrade:
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        created = now or self._now()
        trade = QueuedTrade(
            id=new_id("trade"),
            symbol=symbol,
            action=action,
            quantity=quantity,
            target_price=target_price,
            priority=priority,
            created_at=created,
            scheduled_for=created + timedelta(seconds=delay_seconds),
            source=source,
            confidence=confidence,
            rationale=rationale,
        )
        with self._lock:
            self._trades[trade.id] = trade
        logger.info(
            "Queued {} {} x{} @ {:.2f} priority={} source={}",
            action,
            symbol,
            quantity,
            target_price,
            priority,
            source,
        )
        self._publish("trade_queued", trade)
        return trade

    def get(self, trade_id: str) -> QueuedTrade | None:
        with self._lock:
            return self._trades.get(trade_id)

    def all_trades(self) -> list[QueuedTrade]:
        with self._lock:
            return sorted(self._trades.values(), key=lambda t: t.created_at, reverse=True)

    def pending(self) -> list[QueuedTrade]:
        with self._lock:
            trades = [t for t in self._trades.values() if t.status == "PENDING"]
        return sorted(trades, key=_drain_key)

    def due(self, now: datetime | None = None) -> list[QueuedTrade]:
        at = now or self._now()
        return [t for t in self.pending() if t.scheduled_for <= at]

    def history(self, limit: int | None = None) -> list[QueuedTrade]:
        with self._lock:
            done = [t for t in self._trades.values() if t.is_terminal]
        done.sort(key=lambda t: t.executed_at or t.created_at, reverse=True)
        return done[:limit] if limit else done

    def has_open(self, symbol: str, action: str | None = None) -> bool:
        with self._lock:
            return any(
                t.symbol == symbol
                and t.status in ("PENDING", "EXECUTING")
                and (action is None or t.action == action)
                for t in self._trades.values()
            )

    def today_stats(self, now: datetime | None = None) -> tuple[int, float]:
        """(count, dollar amount) of today's trades that are queued or done."""
        today = (now or self._now()).astimezone(self._tz).date()
        count = 0
        amount = 0.0
        with self._lock:
            for trade in self._trades.values():
                if trade.status not in COUNTED_STATUSES:
                    continue
                if trade.created_at.astimezone(self._tz).date() != today:
                    continue
                count += 1
                amount += trade.notional
        return count, amount

    def cancel(self, trade_id: str, reason: str = "cancelled by user") -> bool:
        with self._lock:
            trade = self._trades.get(trade_id)
            if trade is None or trade.status != "PENDING":
                return False
            trade.transition("CANCELLED", reason)
        logger.info("Trade {} cancelled: {}", trade_id, reason)
        self._publish("trade_cancelled", trade)
        return True

    def cancel_pending(self, reason: str) -> int:
        with self._lock:
            pending = [t for t in self._trades.values() if t.status == "PENDING"]
            for trade in pending:
                trade.transition("CANCELLED", reason)
        for trade in pending:
            self._publish("trade_cancelled", trade)
        if pending:
            logger.info("Cancelled {} pending trades: {}", len(pending), reason)
        return len(pending)

    def _next_due(self) -> QueuedTrade | None:
        with self._lock:
            due = self.due()
            if not due:
                return None
            trade = due[0]
            trade.transition("EXECUTING")
            return trade

    def _run_one(self, trade: QueuedTrade, executor: TradeExecutor) -> None:
        logger.info("Executing {} {} x{} ({})", trade.action, trade.symbol, trade.quantity, trade.id)
        try:
            success = executor(trade)
        except (InsufficientFunds, InsufficientShares) as exc:
            logger.warning("Trade {} rejected: {}", trade.id, exc)
            success, reason = False, str(exc)
        except Exception as exc:
            logger.exception("Trade {} raised during execution", trade.id)
            success, reason = False, f"execution error: {exc}"
        else:
            reason = "executed" if success else "rejected by portfolio ledger"

        with self._lock:
            trade.transition("COMPLETED" if success else "FAILED", reason, self._now())

        if success:
            logger.info("Trade {} completed: {} {} x{}", trade.id, trade.action, trade.symbol, trade.quantity)
            self._publish("trade_completed", trade)
        else:
            logger.error("Trade {} failed: {}", trade.id, reason)
            self._publish("trade_failed", trade)

    def drain(
        self,
        executor: TradeExecutor,
        *,
        delay_seconds: float = 0,
        stop_event: threading.Event | None = None,
    ) -> list[QueuedTrade]:
        """Execute every due trade in priority order, one at a time.

        The next trade is picked fresh after each delay, so a cancellation or
        stop that lands while waiting takes effect before anything else runs.
        An EXECUTING trade always runs to completion.
        """
        processed: list[QueuedTrade] = []
        while True:
            if stop_event is not None and stop_event.is_set():
                break
            trade = self._next_due()
            if trade is None:
                break
            self._run_one(trade, executor)
            processed.append(trade)

            if delay_seconds > 0 and self.due():
                if stop_event is not None:
                    if stop_event.wait(delay_seconds):
                        break
                else:
                    self._sleep(delay_seconds)
        return processed

    def prune(self, older_than: datetime) -> int:
        with self._lock:
            stale = [
                trade_id
                for trade_id, trade in self._trades.items()
                if trade.is_terminal and (trade.executed_at or trade.created_at) < older_than
            ]
            for trade_id in stale:
                del self._trades[trade_id]
        return len(stale)

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {"trades": [t.to_dict() for t in self._trades.values()]}

    def restore(self, data: dict[str, Any] | None) -> None:
        trades: dict[str, QueuedTrade] = {}
        for item in (data or {}).get("trades", []):
            try:
                trade = QueuedTrade.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable stored trade: {}", exc)
                continue
            if trade.status == "EXECUTING":
                # process died mid-trade; the ledger outcome is unknown
                trade.transition("FAILED", "interrupted by restart", self._now())
            trades[trade.id] = trade
        with self._lock:
            self._trades = trades
        if trades:
            logger.info("Restored {} trades ({} pending)", len(trades), len(self.pending()))
