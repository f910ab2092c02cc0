from __future__ import annotations

from pathlib import Path

import pytest

from trade_autopilot.bot_config import BotConfig, load_bot_config
from trade_autopilot.errors import ConfigError


def test_defaults_are_conservative() -> None:
    config = BotConfig()

    assert config.enabled is False
    assert config.minimum_confidence == 80
    assert config.risk_levels_enabled == ("LOW", "MEDIUM")
    assert config.max_daily_trades == 5
    assert config.multi_level_take_profit is True
    assert config.oco_enabled is False


def test_sectioned_yaml_is_flattened(tmp_path: Path) -> None:
    path = tmp_path / "bot_config.yaml"
    path.write_text(
        """
intervals:
  scan_interval_minutes: 15
ai_thresholds:
  minimum_confidence: 88
  risk_levels_enabled: [low]
risk_management:
  max_daily_trades: 3
protective_orders:
  trailing_stop_enabled: true
  unknown_knob: 7
""",
        encoding="utf-8",
    )

    config = load_bot_config(path)

    assert config.scan_interval_minutes == 15
    assert config.minimum_confidence == 88
    assert config.risk_levels_enabled == ("LOW",)
    assert config.max_daily_trades == 3
    assert config.trailing_stop_enabled is True


def test_missing_file_means_no_override(tmp_path: Path) -> None:
    assert load_bot_config(tmp_path / "absent.yaml") is None


def test_non_mapping_yaml_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "bot_config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_bot_config(path)


def test_update_validates_and_returns_new_instance() -> None:
    config = BotConfig()
    updated = config.update(max_daily_amount=2500, risk_levels_enabled=["high"])

    assert updated is not config
    assert updated.max_daily_amount == 2500
    assert updated.risk_levels_enabled == ("HIGH",)
    assert config.max_daily_amount == 1000

    with pytest.raises(ConfigError, match="stop_loss_percent"):
        config.update(stop_loss_percent=0)
    with pytest.raises(ConfigError, match="unknown risk levels"):
        config.update(risk_levels_enabled=["EXTREME"])
    with pytest.raises(ConfigError, match="Unknown config fields"):
        config.update(leverage=2)


def test_flat_dict_round_trip() -> None:
    config = BotConfig(oco_enabled=True, multi_level_take_profit=False)
    assert BotConfig.from_dict(config.to_dict()) == config
