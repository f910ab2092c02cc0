"""Risk and position-sizing policy.

Everything here is a pure function of its arguments: the same inputs always
produce the same assessment, so decisions can be replayed and audited.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Literal

from .bot_config import BotConfig
from .gateways import Holding, PortfolioSummary
from .models import Priority, Recommendation, Severity
from .settings import settings


RISK_LEVEL_MULTIPLIER = {"LOW": 1.0, "MEDIUM": 0.75, "HIGH": 0.5}
SEVERITY_RANK = {"LOW": 0, "MEDIUM": 1, "HIGH": 2, "CRITICAL": 3}
LOSS_WARNING_RATIO = 0.9


@dataclass(frozen=True)
class PositionSizing:
    quantity: int
    position_value: float
    risk_amount: float
    position_ratio: float
    reasoning: str = ""


@dataclass(frozen=True)
class RiskAssessment:
    approved: bool
    severity: Severity
    reason: str
    recommendations: tuple[str, ...] = ()
    max_position_size: float = 0.0
    max_trade_amount: float = 0.0
    suggested_quantity: int | None = None


@dataclass(frozen=True)
class StopLossTarget:
    symbol: str
    type: Literal["STOP_LOSS", "TAKE_PROFIT"]
    should_execute: bool
    quantity: int
    current_price: float
    entry_price: float
    stop_loss_price: float
    take_profit_price: float


@dataclass(frozen=True)
class RiskState:
    total_profit_loss_percent: float
    drawdown_breach_streak: int = 0
    consecutive_execution_failures: int = 0
    emergency_drawdown_percent: float = field(default_factory=lambda: settings.emergency_drawdown_percent)
    drawdown_breach_limit: int = field(default_factory=lambda: settings.drawdown_breach_limit)
    max_consecutive_failures: int = field(default_factory=lambda: settings.max_consecutive_failures)


@dataclass(frozen=True)
class EmergencyCheck:
    required: bool
    reason: str



def confidence_multiplier(confidence: float) -> float:
    """0.6x at 50% confidence rising linearly to 1.0x at 100%."""
    clamped = min(max(confidence, 50.0), 100.0)
    return 0.6 + 0.4 * (clamped - 50.0) / 50.0



def trade_priority(confidence: float) -> Priority:
    if confidence >= 95:
        return "URGENT"
    if confidence >= 90:
        return "HIGH"
    if confidence >= 85:
        return "MEDIUM"
    return "LOW"



def position_size(
    symbol: str,
    price: float,
    confidence: float,
    risk_level: str,
    portfolio_value: float,
    cash: float,
    config: BotConfig,
) -> PositionSizing:
    if price <= 0 or portfolio_value <= 0:
        return PositionSizing(0, 0.0, 0.0, 0.0, f"{symbol}: no sizing without a positive price and portfolio value")

    base_allocation = portfolio_value * config.max_position_size_percent / 100
    allocation = base_allocation * RISK_LEVEL_MULTIPLIER.get(risk_level, 0.5) * confidence_multiplier(confidence)

    available_cash = max(0.0, cash * (1 - config.cash_reserve_percent / 100))
    allocation = min(allocation, available_cash)

    quantity = max(0, math.floor(allocation / price))
    position_value = quantity * price
    stop_price = price * (1 - config.stop_loss_percent / 100)
    risk_amount = quantity * (price - stop_price)
    ratio = position_value / portfolio_value * 100

    reasoning = (
        f"Position sized at {allocation / portfolio_value * 100:.1f}% of portfolio "
        f"based on {confidence:.0f}% confidence and {risk_level} risk"
    )
    if quantity == 0:
        reasoning = f"Allocation ${allocation:.2f} too small for one share at ${price:.2f}"

    return PositionSizing(
        quantity=quantity,
        position_value=position_value,
        risk_amount=risk_amount,
        position_ratio=ratio,
        reasoning=reasoning,
    )


def _escalate(current: Severity, new: Severity) -> Severity:
    return new if SEVERITY_RANK[new] > SEVERITY_RANK[current] else current



def assess_trade_risk(
    symbol: str,
    action: str,
    quantity: int,
    price: float,
    recommendation: Recommendation,
    config: BotConfig,
    portfolio: PortfolioSummary,
) -> RiskAssessment:
    trade_amount = quantity * price
    risks: list[str] = []
    advice: list[str] = []
    severity: Severity = "LOW"
    approved = True

    if action == "BUY":
        if portfolio.total_profit_loss_percent < -config.max_portfolio_drawdown:
            risks.append(
                f"Portfolio drawdown ({portfolio.total_profit_loss_percent:.1f}%) exceeds limit "
                f"({config.max_portfolio_drawdown:.1f}%)"
            )
            severity = "CRITICAL"
            approved = False

        if recommendation.confidence < config.minimum_confidence:
            risks.append(
                f"Confidence {recommendation.confidence:.0f}% below threshold {config.minimum_confidence:.0f}%"
            )
            severity = _escalate(severity, "HIGH")
            approved = False

        if recommendation.risk_level not in config.risk_levels_enabled:
            risks.append(f"Risk level {recommendation.risk_level} not enabled")
            severity = _escalate(severity, "HIGH")
            approved = False

        holding = portfolio.holdings.get(symbol)
        existing_value = holding.total_value if holding else 0.0
        if portfolio.total_value > 0:
            position_percent = (existing_value + trade_amount) / portfolio.total_value * 100
        else:
            position_percent = 100.0
        if position_percent > config.max_position_size_percent:
            risks.append(
                f"Position size ({position_percent:.1f}%) exceeds limit ({config.max_position_size_percent:.1f}%)"
            )
            severity = _escalate(severity, "HIGH")
            approved = False

        available_cash = portfolio.cash_balance * (1 - config.cash_reserve_percent / 100)
        if trade_amount > available_cash:
            risks.append("Trade would violate cash reserve requirement")
            severity = _escalate(severity, "HIGH")
            approved = False

        if recommendation.risk_level == "HIGH" and recommendation.confidence < 90:
            risks.append("High risk recommendation with moderate confidence")
            severity = _escalate(severity, "MEDIUM")
            advice.append("Consider reducing position size for high-risk trades")

    elif action == "SELL":
        # sells reduce exposure; warnings only
        holding = portfolio.holdings.get(symbol)
        held = holding.quantity if holding else 0
        if held < quantity:
            risks.append(f"Insufficient shares to sell (have: {held}, need: {quantity})")
            severity = _escalate(severity, "HIGH")
        if holding and price < holding.average_price * LOSS_WARNING_RATIO:
            loss_percent = (price - holding.average_price) / holding.average_price * 100
            risks.append(f"Selling at significant loss ({loss_percent:.1f}%)")
            severity = _escalate(severity, "MEDIUM")
            advice.append("Consider stop-loss strategy instead of market sell")

    max_position_value = portfolio.total_value * config.max_position_size_percent / 100
    max_trade_amount = min(max_position_value, config.max_daily_amount, portfolio.cash_balance * 0.9)
    suggested = math.floor(max_trade_amount / price) if action == "BUY" and price > 0 else None

    return RiskAssessment(
        approved=approved,
        severity=severity,
        reason="; ".join(risks) if risks else "Trade meets all risk criteria",
        recommendations=tuple(advice),
        max_position_size=config.max_position_size_percent,
        max_trade_amount=max_trade_amount,
        suggested_quantity=suggested,
    )



def check_drawdown(portfolio: PortfolioSummary, config: BotConfig) -> bool:
    """True while the portfolio is inside the configured drawdown band."""
    return abs(portfolio.total_profit_loss_percent) <= config.max_portfolio_drawdown



def check_stop_loss_targets(
    holdings: dict[str, Holding],
    live_prices: dict[str, float],
    config: BotConfig,
) -> list[StopLossTarget]:
    targets: list[StopLossTarget] = []
    for symbol, holding in holdings.items():
        if holding.quantity <= 0 or holding.average_price <= 0:
            continue
        price = live_prices.get(symbol, holding.current_price)
        stop_price = holding.average_price * (1 - config.stop_loss_percent / 100)
        take_price = holding.average_price * (1 + config.take_profit_percent / 100)

        kind: Literal["STOP_LOSS", "TAKE_PROFIT"] | None = None
        if price <= stop_price:
            kind = "STOP_LOSS"
        elif price >= take_price:
            kind = "TAKE_PROFIT"
        if kind is None:
            continue

        targets.append(
            StopLossTarget(
                symbol=symbol,
                type=kind,
                should_execute=True,
                quantity=holding.quantity,
                current_price=price,
                entry_price=holding.average_price,
                stop_loss_price=stop_price,
                take_profit_price=take_price,
            )
        )
    return targets



def is_emergency_stop_required(state: RiskState) -> EmergencyCheck:
    if state.total_profit_loss_percent < -state.emergency_drawdown_percent:
        return EmergencyCheck(True, f"Extreme portfolio drawdown: {state.total_profit_loss_percent:.1f}%")

    if state.drawdown_breach_streak >= state.drawdown_breach_limit:
        return EmergencyCheck(
            True, f"Drawdown limit breached for {state.drawdown_breach_streak} consecutive scans"
        )

    if state.consecutive_execution_failures >= state.max_consecutive_failures:
        return EmergencyCheck(
            True, f"{state.consecutive_execution_failures} consecutive trade execution failures"
        )

    return EmergencyCheck(False, "No emergency conditions detected")
