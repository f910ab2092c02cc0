from __future__ import annotations

from trade_autopilot.bot_config import BotConfig
from trade_autopilot.gateways import Holding, PortfolioSummary
from trade_autopilot.models import Recommendation
from trade_autopilot.risk import (
    RiskState,
    assess_trade_risk,
    check_drawdown,
    check_stop_loss_targets,
    confidence_multiplier,
    is_emergency_stop_required,
    position_size,
    trade_priority,
)


def _rec(confidence: float = 100, risk_level: str = "LOW", action: str = "BUY") -> Recommendation:
    return Recommendation(
        symbol="AAPL",
        action=action,
        confidence=confidence,
        current_price=50.0,
        target_price=60.0,
        risk_level=risk_level,
    )


def _portfolio(cash: float = 5000, total: float = 10000, pnl: float = 0.0, **holdings: Holding) -> PortfolioSummary:
    return PortfolioSummary(cash_balance=cash, total_value=total, total_profit_loss_percent=pnl, holdings=dict(holdings))


def test_position_size_reference_case() -> None:
    sizing = position_size("AAPL", 50.0, 100, "LOW", 10_000, 5_000, BotConfig())

    assert sizing.quantity == 20
    assert sizing.position_value == 1000.0
    assert sizing.risk_amount == 150.0
    assert sizing.position_ratio == 10.0


def test_position_size_scales_down_for_risk_and_confidence() -> None:
    # 1000 * 0.5 (HIGH) * 0.6 (confidence floor)
    sizing = position_size("AAPL", 50.0, 40, "HIGH", 10_000, 10_000, BotConfig())
    assert sizing.quantity == 6


def test_position_size_respects_cash_reserve() -> None:
    sizing = position_size("AAPL", 50.0, 100, "LOW", 10_000, 200, BotConfig())
    # 200 * 0.85 = 170 usable
    assert sizing.quantity == 3


def test_position_size_too_small_yields_zero() -> None:
    sizing = position_size("BRK.A", 5000.0, 100, "LOW", 10_000, 10_000, BotConfig())
    assert sizing.quantity == 0
    assert "too small" in sizing.reasoning


def test_confidence_multiplier_and_priority_bands() -> None:
    assert confidence_multiplier(50) == 0.6
    assert confidence_multiplier(100) == 1.0
    assert confidence_multiplier(120) == 1.0
    assert [trade_priority(c) for c in (96, 92, 86, 70)] == ["URGENT", "HIGH", "MEDIUM", "LOW"]


def test_assess_buy_within_limits_is_approved() -> None:
    result = assess_trade_risk("AAPL", "BUY", 20, 50.0, _rec(), BotConfig(), _portfolio())

    assert result.approved is True
    assert result.severity == "LOW"
    assert result.reason == "Trade meets all risk criteria"
    assert result.max_trade_amount == 1000.0
    assert result.suggested_quantity == 20


def test_assess_is_deterministic() -> None:
    args = ("AAPL", "BUY", 20, 50.0, _rec(85, "MEDIUM"), BotConfig(), _portfolio())
    assert assess_trade_risk(*args) == assess_trade_risk(*args)


def test_assess_buy_rejections() -> None:
    config = BotConfig()

    low_confidence = assess_trade_risk("AAPL", "BUY", 2, 50.0, _rec(70), config, _portfolio())
    assert not low_confidence.approved
    assert low_confidence.severity == "HIGH"

    high_risk = assess_trade_risk("AAPL", "BUY", 2, 50.0, _rec(95, "HIGH"), config, _portfolio())
    assert not high_risk.approved
    assert "HIGH not enabled" in high_risk.reason

    held = Holding("AAPL", 15, 50.0, 50.0)
    oversized = assess_trade_risk("AAPL", "BUY", 10, 50.0, _rec(), config, _portfolio(AAPL=held))
    assert not oversized.approved
    assert "Position size (12.5%)" in oversized.reason

    drawdown = assess_trade_risk("AAPL", "BUY", 2, 50.0, _rec(), config, _portfolio(pnl=-25))
    assert not drawdown.approved
    assert drawdown.severity == "CRITICAL"

    reserve = assess_trade_risk("AAPL", "BUY", 20, 50.0, _rec(), config, _portfolio(cash=1000))
    assert not reserve.approved
    assert "cash reserve" in reserve.reason


def test_high_risk_moderate_confidence_warns_but_approves() -> None:
    config = BotConfig(risk_levels_enabled=("LOW", "MEDIUM", "HIGH"))
    result = assess_trade_risk("AAPL", "BUY", 2, 50.0, _rec(85, "HIGH"), config, _portfolio())

    assert result.approved is True
    assert result.severity == "MEDIUM"
    assert result.recommendations == ("Consider reducing position size for high-risk trades",)


def test_assess_sell_only_warns() -> None:
    held = Holding("AAPL", 10, 100.0, 80.0)

    missing = assess_trade_risk("AAPL", "SELL", 10, 50.0, _rec(action="SELL"), BotConfig(), _portfolio())
    assert missing.approved is True
    assert missing.severity == "HIGH"

    at_loss = assess_trade_risk("AAPL", "SELL", 10, 80.0, _rec(action="SELL"), BotConfig(), _portfolio(AAPL=held))
    assert at_loss.approved is True
    assert at_loss.severity == "MEDIUM"
    assert "-20.0%" in at_loss.reason
    assert at_loss.suggested_quantity is None


def test_check_drawdown_uses_absolute_band() -> None:
    config = BotConfig(max_portfolio_drawdown=20)
    assert check_drawdown(_portfolio(pnl=-10), config)
    assert not check_drawdown(_portfolio(pnl=-25), config)
    assert not check_drawdown(_portfolio(pnl=25), config)


def test_stop_loss_targets_only_returns_triggered() -> None:
    holdings = {
        "AAPL": Holding("AAPL", 10, 100.0, 100.0),
        "MSFT": Holding("MSFT", 5, 100.0, 100.0),
        "NVDA": Holding("NVDA", 3, 100.0, 130.0),
        "AMD": Holding("AMD", 4, 100.0, 100.0),
    }
    targets = check_stop_loss_targets(holdings, {"AAPL": 84.0, "MSFT": 126.0, "AMD": 99.0}, BotConfig())

    by_symbol = {t.symbol: t for t in targets}
    assert set(by_symbol) == {"AAPL", "MSFT", "NVDA"}
    assert by_symbol["AAPL"].type == "STOP_LOSS"
    assert by_symbol["AAPL"].quantity == 10
    assert by_symbol["MSFT"].type == "TAKE_PROFIT"
    # no live price: falls back to the holding's marked price
    assert by_symbol["NVDA"].current_price == 130.0


def test_emergency_stop_conditions() -> None:
    assert not is_emergency_stop_required(RiskState(-10)).required
    assert is_emergency_stop_required(RiskState(-31)).required
    assert is_emergency_stop_required(RiskState(-5, drawdown_breach_streak=3)).required

    failures = is_emergency_stop_required(RiskState(0, consecutive_execution_failures=3))
    assert failures.required
    assert "execution failures" in failures.reason
