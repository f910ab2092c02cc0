"""Protective (advanced) order lifecycle.

Orders are spawned by a completed BUY and live until a price tick triggers
them, an operator cancels them, or they expire. All orders created from one
BUY share a ``group_id`` so the group never sells more than the position:
a full exit cancels its siblings, a take-profit tranche shrinks them.
"""

from __future__ import annotations

import math
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal, Union

from loguru import logger

from .bot_config import BotConfig
from .errors import InvalidTransition
from .events import EventBus
from .models import SellInstruction, _iso, _parse_dt, new_id, utcnow


OrderStatus = Literal["PENDING", "ACTIVE", "TRIGGERED", "CANCELLED", "EXPIRED"]

ORDER_TRANSITIONS: dict[str, set[str]] = {
    "PENDING": {"ACTIVE", "CANCELLED"},
    "ACTIVE": {"TRIGGERED", "CANCELLED", "EXPIRED"},
    "TRIGGERED": set(),
    "CANCELLED": set(),
    "EXPIRED": set(),
}
LIVE_ORDER_STATUSES = frozenset({"PENDING", "ACTIVE"})

TAKE_PROFIT_MULTIPLIERS = (0.6, 1.0, 1.5)
TRANCHE_FRACTION = 0.33


@dataclass
class _OrderBase:
    id: str
    symbol: str
    quantity: int
    created_at: datetime = field(default_factory=utcnow)
    status: OrderStatus = "ACTIVE"
    triggered_at: datetime | None = None
    expires_at: datetime | None = None
    group_id: str | None = None
    parent_order_id: str | None = None
    reason: str = ""

    order_type = "ORDER"

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_ORDER_STATUSES

    def transition(self, new_status: OrderStatus, reason: str = "", at: datetime | None = None) -> None:
        if new_status not in ORDER_TRANSITIONS.get(self.status, set()):
            raise InvalidTransition(f"Order {self.id}: {self.status} -> {new_status} is not allowed")
        self.status = new_status
        if reason:
            self.reason = reason
        if new_status == "TRIGGERED":
            self.triggered_at = at or utcnow()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["order_type"] = self.order_type
        for key in ("created_at", "triggered_at", "expires_at"):
            data[key] = _iso(getattr(self, key))
        return data


@dataclass
class StopLossOrder(_OrderBase):
    stop_price: float = 0.0

    order_type = "STOP_LOSS"

    def is_hit(self, price: float) -> bool:
        return price <= self.stop_price


@dataclass
class TakeProfitLevel:
    level: int
    target_price: float
    quantity: int
    status: OrderStatus = "ACTIVE"
    triggered_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["triggered_at"] = _iso(self.triggered_at)
        return data


@dataclass
class TakeProfitOrder(_OrderBase):
    target_price: float = 0.0
    levels: list[TakeProfitLevel] = field(default_factory=list)

    order_type = "TAKE_PROFIT"

    @property
    def is_multi_level(self) -> bool:
        return bool(self.levels)

    def is_hit(self, price: float) -> bool:
        return price >= self.target_price

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["levels"] = [level.to_dict() for level in self.levels]
        return data


@dataclass
class TrailingStopOrder(_OrderBase):
    trail_percent: float = 5.0
    high_water_mark: float = 0.0
    current_stop_price: float = 0.0

    order_type = "TRAILING_STOP"

    def observe(self, price: float) -> None:
        """Ratchet the high-water mark; the stop only ever moves up."""
        if price > self.high_water_mark:
            self.high_water_mark = price
            self.current_stop_price = self.high_water_mark * (1 - self.trail_percent / 100)

    def is_hit(self, price: float) -> bool:
        return price <= self.current_stop_price


@dataclass
class OCOOrder(_OrderBase):
    stop_loss: StopLossOrder | None = None
    take_profit: TakeProfitOrder | None = None

    order_type = "OCO"

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["stop_loss"] = self.stop_loss.to_dict() if self.stop_loss else None
        data["take_profit"] = self.take_profit.to_dict() if self.take_profit else None
        return data


AdvancedOrder = Union[StopLossOrder, TakeProfitOrder, TrailingStopOrder, OCOOrder]


def stop_loss_order(
    symbol: str,
    quantity: int,
    entry_price: float,
    stop_loss_percent: float,
    **common: Any,
) -> StopLossOrder:
    return StopLossOrder(
        id=new_id("sl"),
        symbol=symbol,
        quantity=quantity,
        stop_price=entry_price * (1 - stop_loss_percent / 100),
        **common,
    )


def take_profit_order(
    symbol: str,
    quantity: int,
    entry_price: float,
    take_profit_percent: float,
    *,
    multi_level: bool = False,
    **common: Any,
) -> TakeProfitOrder:
    order = TakeProfitOrder(
        id=new_id("tp"),
        symbol=symbol,
        quantity=quantity,
        target_price=entry_price * (1 + take_profit_percent / 100),
        **common,
    )
    if not multi_level:
        return order

    first = math.floor(quantity * TRANCHE_FRACTION)
    second = math.floor(quantity * TRANCHE_FRACTION)
    tranche_sizes = (first, second, quantity - first - second)
    for index, (multiplier, size) in enumerate(zip(TAKE_PROFIT_MULTIPLIERS, tranche_sizes), start=1):
        if size <= 0:
            continue
        order.levels.append(
            TakeProfitLevel(
                level=index,
                target_price=entry_price * (1 + take_profit_percent * multiplier / 100),
                quantity=size,
            )
        )
    return order


def trailing_stop_order(
    symbol: str,
    quantity: int,
    entry_price: float,
    trail_percent: float,
    **common: Any,
) -> TrailingStopOrder:
    return TrailingStopOrder(
        id=new_id("ts"),
        symbol=symbol,
        quantity=quantity,
        trail_percent=trail_percent,
        high_water_mark=entry_price,
        current_stop_price=entry_price * (1 - trail_percent / 100),
        **common,
    )


def oco_order(
    symbol: str,
    quantity: int,
    entry_price: float,
    stop_loss_percent: float,
    take_profit_percent: float,
    **common: Any,
) -> OCOOrder:
    order = OCOOrder(id=new_id("oco"), symbol=symbol, quantity=quantity, **common)
    legs = {key: value for key, value in common.items() if key != "parent_order_id"}
    order.stop_loss = stop_loss_order(
        symbol, quantity, entry_price, stop_loss_percent, parent_order_id=order.id, **legs
    )
    order.take_profit = take_profit_order(
        symbol, quantity, entry_price, take_profit_percent, parent_order_id=order.id, **legs
    )
    return order


def _common_from_dict(data: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": data["id"],
        "symbol": data["symbol"],
        "quantity": int(data["quantity"]),
        "created_at": _parse_dt(data.get("created_at")) or utcnow(),
        "status": data.get("status", "ACTIVE"),
        "triggered_at": _parse_dt(data.get("triggered_at")),
        "expires_at": _parse_dt(data.get("expires_at")),
        "group_id": data.get("group_id"),
        "parent_order_id": data.get("parent_order_id"),
        "reason": data.get("reason", ""),
    }



def order_from_dict(data: dict[str, Any]) -> AdvancedOrder:
    kind = data.get("order_type")
    common = _common_from_dict(data)
    if kind == "STOP_LOSS":
        return StopLossOrder(stop_price=float(data["stop_price"]), **common)
    if kind == "TAKE_PROFIT":
        levels = [
            TakeProfitLevel(
                level=int(item["level"]),
                target_price=float(item["target_price"]),
                quantity=int(item["quantity"]),
                status=item.get("status", "ACTIVE"),
                triggered_at=_parse_dt(item.get("triggered_at")),
            )
            for item in data.get("levels") or []
        ]
        return TakeProfitOrder(target_price=float(data["target_price"]), levels=levels, **common)
    if kind == "TRAILING_STOP":
        return TrailingStopOrder(
            trail_percent=float(data["trail_percent"]),
            high_water_mark=float(data["high_water_mark"]),
            current_stop_price=float(data["current_stop_price"]),
            **common,
        )
    if kind == "OCO":
        order = OCOOrder(**common)
        if data.get("stop_loss"):
            order.stop_loss = order_from_dict(data["stop_loss"])  # type: ignore[assignment]
        if data.get("take_profit"):
            order.take_profit = order_from_dict(data["take_profit"])  # type: ignore[assignment]
        return order
    raise ValueError(f"Unknown order type: {kind!r}")


class OrderLedger:
    """Owns every advanced order; the only place their state changes."""

    def __init__(self, bus: EventBus | None = None) -> None:
        self.bus = bus
        self._orders: dict[str, AdvancedOrder] = {}
        self._lock = threading.RLock()

    def add(self, order: AdvancedOrder) -> AdvancedOrder:
        with self._lock:
            self._orders[order.id] = order
        logger.info("{} order {} active for {} x{}", order.order_type, order.id, order.symbol, order.quantity)
        return order

    def create_protective_orders(
        self,
        trade_id: str,
        symbol: str,
        quantity: int,
        entry_price: float,
        config: BotConfig,
        *,
        expires_in: timedelta | None = None,
        now: datetime | None = None,
    ) -> list[AdvancedOrder]:
        if quantity <= 0 or entry_price <= 0:
            return []

        created = now or utcnow()
        common: dict[str, Any] = {
            "group_id": trade_id,
            "created_at": created,
            "expires_at": created + expires_in if expires_in else None,
        }
        orders: list[AdvancedOrder] = []

        use_oco = (
            config.oco_enabled
            and not config.multi_level_take_profit
            and config.stop_loss_enabled
            and config.take_profit_enabled
        )
        if use_oco:
            orders.append(
                oco_order(symbol, quantity, entry_price, config.stop_loss_percent, config.take_profit_percent, **common)
            )
        else:
            if config.stop_loss_enabled:
                orders.append(stop_loss_order(symbol, quantity, entry_price, config.stop_loss_percent, **common))
            if config.take_profit_enabled:
                orders.append(
                    take_profit_order(
                        symbol,
                        quantity,
                        entry_price,
                        config.take_profit_percent,
                        multi_level=config.multi_level_take_profit,
                        **common,
                    )
                )

        if config.trailing_stop_enabled:
            orders.append(
                trailing_stop_order(symbol, quantity, entry_price, config.trailing_stop_percent, **common)
            )

        for order in orders:
            self.add(order)
        return orders

    def get(self, order_id: str) -> AdvancedOrder | None:
        with self._lock:
            return self._orders.get(order_id)

    def active_orders(self, symbol: str | None = None) -> list[AdvancedOrder]:
        with self._lock:
            return [
                order
                for order in self._orders.values()
                if order.is_live and (symbol is None or order.symbol == symbol)
            ]

    def history(self, limit: int | None = None) -> list[AdvancedOrder]:
        with self._lock:
            done = [order for order in self._orders.values() if not order.is_live]
        done.sort(key=lambda order: order.triggered_at or order.created_at, reverse=True)
        return done[:limit] if limit else done

    def _cancel(self, order: AdvancedOrder, reason: str) -> None:
        order.transition("CANCELLED", reason)
        if isinstance(order, OCOOrder):
            for leg in (order.stop_loss, order.take_profit):
                if leg is not None and leg.is_live:
                    leg.transition("CANCELLED", reason)
        if isinstance(order, TakeProfitOrder):
            for level in order.levels:
                if level.status == "ACTIVE":
                    level.status = "CANCELLED"
        if self.bus is not None:
            self.bus.publish("order_cancelled", order_id=order.id, symbol=order.symbol, reason=reason)

    def cancel(self, order_id: str, reason: str = "cancelled by user") -> bool:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or not order.is_live:
                return False
            self._cancel(order, reason)
        logger.info("Order {} cancelled: {}", order_id, reason)
        return True

    def cancel_symbol(self, symbol: str, reason: str = "position closed") -> int:
        with self._lock:
            live = [order for order in self._orders.values() if order.is_live and order.symbol == symbol]
            for order in live:
                self._cancel(order, reason)
        if live:
            logger.info("Cancelled {} protective orders for {}: {}", len(live), symbol, reason)
        return len(live)

    def expire(self, now: datetime | None = None) -> list[AdvancedOrder]:
        at = now or utcnow()
        expired: list[AdvancedOrder] = []
        with self._lock:
            for order in self._orders.values():
                if order.status == "ACTIVE" and order.expires_at is not None and order.expires_at <= at:
                    order.transition("EXPIRED", "expired")
                    expired.append(order)
        for order in expired:
            logger.info("Order {} for {} expired", order.id, order.symbol)
        return expired

    def prune(self, older_than: datetime) -> int:
        with self._lock:
            stale = [
                order_id
                for order_id, order in self._orders.items()
                if not order.is_live and (order.triggered_at or order.created_at) < older_than
            ]
            for order_id in stale:
                del self._orders[order_id]
        return len(stale)

    def _siblings(self, order: AdvancedOrder) -> list[AdvancedOrder]:
        if order.group_id is None:
            return []
        return [
            other
            for other in self._orders.values()
            if other.id != order.id and other.group_id == order.group_id and other.is_live
        ]

    def _close_group(self, order: AdvancedOrder) -> None:
        for sibling in self._siblings(order):
            self._cancel(sibling, "position closed")

    def _shrink_group(self, order: AdvancedOrder, sold: int) -> None:
        for sibling in self._siblings(order):
            remaining = sibling.quantity - sold
            if remaining <= 0:
                self._cancel(sibling, "position closed")
                continue
            sibling.quantity = remaining
            if isinstance(sibling, OCOOrder):
                for leg in (sibling.stop_loss, sibling.take_profit):
                    if leg is not None:
                        leg.quantity = remaining

    def _fire(
        self,
        order: AdvancedOrder,
        quantity: int,
        price: float,
        at: datetime,
        reason: str,
        **metadata: Any,
    ) -> SellInstruction:
        instruction = SellInstruction(
            symbol=order.symbol,
            quantity=quantity,
            price=price,
            reason=reason,
            order_id=order.id,
            order_type=order.order_type,
            metadata={"group_id": order.group_id, **metadata},
        )
        logger.info("{} {} triggered for {} x{} at {:.2f}", order.order_type, order.id, order.symbol, quantity, price)
        if self.bus is not None:
            self.bus.publish(
                "order_triggered",
                order_id=order.id,
                order_type=order.order_type,
                symbol=order.symbol,
                quantity=quantity,
                price=price,
                at=at,
                **metadata,
            )
        return instruction

    def _evaluate(self, order: AdvancedOrder, price: float, at: datetime) -> list[SellInstruction]:
        if isinstance(order, StopLossOrder):
            if not order.is_hit(price):
                return []
            order.transition("TRIGGERED", "stop-loss hit", at)
            self._close_group(order)
            return [self._fire(order, order.quantity, price, at, f"Stop-loss triggered at ${price:.2f}")]

        if isinstance(order, TrailingStopOrder):
            order.observe(price)
            if not order.is_hit(price):
                return []
            order.transition("TRIGGERED", "trailing stop hit", at)
            self._close_group(order)
            return [
                self._fire(
                    order,
                    order.quantity,
                    price,
                    at,
                    f"Trailing stop triggered at ${price:.2f} (high ${order.high_water_mark:.2f})",
                )
            ]

        if isinstance(order, OCOOrder):
            return self._evaluate_oco(order, price, at)

        if isinstance(order, TakeProfitOrder):
            if order.is_multi_level:
                return self._evaluate_levels(order, price, at)
            if not order.is_hit(price):
                return []
            order.transition("TRIGGERED", "target reached", at)
            self._close_group(order)
            return [self._fire(order, order.quantity, price, at, f"Take-profit triggered at ${price:.2f}")]

        return []

    def _evaluate_levels(self, order: TakeProfitOrder, price: float, at: datetime) -> list[SellInstruction]:
        fired: list[SellInstruction] = []
        for level in order.levels:
            if level.status != "ACTIVE" or price < level.target_price:
                continue
            level.status = "TRIGGERED"
            level.triggered_at = at
            order.quantity = max(0, order.quantity - level.quantity)
            self._shrink_group(order, level.quantity)
            fired.append(
                self._fire(
                    order,
                    level.quantity,
                    price,
                    at,
                    f"Take-profit level {level.level} triggered at ${price:.2f}",
                    level=level.level,
                )
            )
        if order.levels and all(level.status != "ACTIVE" for level in order.levels):
            order.transition("TRIGGERED", "all take-profit levels filled", at)
        return fired

    def _evaluate_oco(self, order: OCOOrder, price: float, at: datetime) -> list[SellInstruction]:
        stop_leg, profit_leg = order.stop_loss, order.take_profit
        if stop_leg is None or profit_leg is None:
            return []

        if stop_leg.is_hit(price):
            hit, other, label = stop_leg, profit_leg, "stop-loss"
        elif profit_leg.is_hit(price):
            hit, other, label = profit_leg, stop_leg, "take-profit"
        else:
            return []

        hit.transition("TRIGGERED", f"{label} leg hit", at)
        other.transition("CANCELLED", f"{label} leg triggered")
        order.transition("TRIGGERED", f"{label} leg hit", at)
        self._close_group(order)
        return [
            self._fire(
                order,
                order.quantity,
                price,
                at,
                f"OCO {label} leg triggered at ${price:.2f}",
                leg=hit.order_type,
                leg_order_id=hit.id,
            )
        ]

    def on_price(self, symbol: str, price: float, now: datetime | None = None) -> list[SellInstruction]:
        """Feed one price observation; returns the sells it triggers."""
        at = now or utcnow()
        instructions: list[SellInstruction] = []
        with self._lock:
            for order in list(self._orders.values()):
                # an earlier order in this tick may have closed the group
                if order.symbol != symbol or order.status != "ACTIVE":
                    continue
                instructions.extend(self._evaluate(order, price, at))
        return instructions

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {"orders": [order.to_dict() for order in self._orders.values()]}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, bus: EventBus | None = None) -> "OrderLedger":
        ledger = cls(bus=bus)
        for item in (data or {}).get("orders", []):
            try:
                order = order_from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable stored order: {}", exc)
                continue
            ledger._orders[order.id] = order
        return ledger
