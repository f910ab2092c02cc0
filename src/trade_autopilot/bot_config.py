from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError
from .settings import settings


RISK_LEVELS = ("LOW", "MEDIUM", "HIGH")

# yaml section -> keys it may carry
_YAML_SECTIONS: dict[str, tuple[str, ...]] = {
    "intervals": ("scan_interval_minutes", "execution_delay_seconds"),
    "ai_thresholds": ("minimum_confidence", "risk_levels_enabled"),
    "risk_management": (
        "max_position_size_percent",
        "max_daily_trades",
        "max_daily_amount",
        "stop_loss_percent",
        "take_profit_percent",
        "max_portfolio_drawdown",
    ),
    "market_conditions": ("trading_hours_only", "avoid_high_volatility", "minimum_liquidity"),
    "preferences": ("diversification_target", "cash_reserve_percent", "rebalancing_enabled"),
    "protective_orders": (
        "stop_loss_enabled",
        "take_profit_enabled",
        "multi_level_take_profit",
        "trailing_stop_enabled",
        "trailing_stop_percent",
        "oco_enabled",
    ),
}


@dataclass(frozen=True)
class BotConfig:
    enabled: bool = False
    scan_interval_minutes: int = 30
    execution_delay_seconds: float = 60
    minimum_confidence: float = 80
    risk_levels_enabled: tuple[str, ...] = ("LOW", "MEDIUM")
    max_position_size_percent: float = 10
    max_daily_trades: int = 5
    max_daily_amount: float = 1000
    stop_loss_percent: float = 15
    take_profit_percent: float = 25
    max_portfolio_drawdown: float = 20
    trading_hours_only: bool = True
    avoid_high_volatility: bool = True
    minimum_liquidity: float = 100_000
    diversification_target: int = 8
    cash_reserve_percent: float = 15
    rebalancing_enabled: bool = True
    stop_loss_enabled: bool = True
    take_profit_enabled: bool = True
    multi_level_take_profit: bool = True
    trailing_stop_enabled: bool = False
    trailing_stop_percent: float = 5
    oco_enabled: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "risk_levels_enabled",
            tuple(str(level).upper() for level in self.risk_levels_enabled),
        )
        self.validate()

    def validate(self) -> None:
        problems: list[str] = []
        if self.scan_interval_minutes < 1:
            problems.append("scan_interval_minutes must be >= 1")
        if self.execution_delay_seconds < 0:
            problems.append("execution_delay_seconds must be >= 0")
        if not 0 <= self.minimum_confidence <= 100:
            problems.append("minimum_confidence must be within [0, 100]")
        unknown = [level for level in self.risk_levels_enabled if level not in RISK_LEVELS]
        if unknown:
            problems.append(f"unknown risk levels: {unknown}")
        if not 0 < self.max_position_size_percent <= 100:
            problems.append("max_position_size_percent must be within (0, 100]")
        if self.max_daily_trades < 0 or self.max_daily_amount < 0:
            problems.append("daily limits must be >= 0")
        if not 0 < self.stop_loss_percent < 100:
            problems.append("stop_loss_percent must be within (0, 100)")
        if self.take_profit_percent <= 0:
            problems.append("take_profit_percent must be > 0")
        if not 0 < self.trailing_stop_percent < 100:
            problems.append("trailing_stop_percent must be within (0, 100)")
        if self.max_portfolio_drawdown <= 0:
            problems.append("max_portfolio_drawdown must be > 0")
        if not 0 <= self.cash_reserve_percent < 100:
            problems.append("cash_reserve_percent must be within [0, 100)")
        if problems:
            raise ConfigError("; ".join(problems))

    def update(self, **changes: Any) -> "BotConfig":
        known = {f.name for f in fields(self)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ConfigError(f"Unknown config fields: {unknown}")
        if "risk_levels_enabled" in changes:
            changes["risk_levels_enabled"] = tuple(changes["risk_levels_enabled"])
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["risk_levels_enabled"] = list(self.risk_levels_enabled)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "BotConfig":
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        flat: dict[str, Any] = {}
        for key, value in data.items():
            if key in _YAML_SECTIONS and isinstance(value, dict):
                flat.update({k: v for k, v in value.items() if k in _YAML_SECTIONS[key]})
            elif key in known:
                flat[key] = value
        if "risk_levels_enabled" in flat:
            flat["risk_levels_enabled"] = tuple(flat["risk_levels_enabled"])
        return cls(**flat)



def load_bot_config(file_path: Path | None = None) -> BotConfig | None:
    path = file_path or settings.bot_config_path
    if not path.exists():
        return None

    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return BotConfig.from_dict(raw)
