from __future__ import annotations

from types import SimpleNamespace

import pytest

from trade_autopilot import market_data
from trade_autopilot.errors import DataUnavailable
from trade_autopilot.market_data import YFinanceMarketData


class FakeHistory:
    def __init__(self, closes: list[float], volumes: list[float]) -> None:
        self.columns = {"Close": SimpleNamespace(values=closes), "Volume": SimpleNamespace(values=volumes)}
        self.empty = not closes

    def __getitem__(self, key: str):
        return self.columns[key]


class FakeTicker:
    downloads = 0
    history_by_symbol: dict[str, FakeHistory] = {}

    def __init__(self, symbol: str) -> None:
        self.symbol = symbol

    def history(self, period: str, interval: str) -> FakeHistory:
        FakeTicker.downloads += 1
        return self.history_by_symbol[self.symbol]


@pytest.fixture
def ticker(monkeypatch: pytest.MonkeyPatch) -> type[FakeTicker]:
    FakeTicker.downloads = 0
    FakeTicker.history_by_symbol = {
        "AAPL": FakeHistory([200.0, 210.0], [5_000_000, 6_000_000]),
        "ZZZZ": FakeHistory([], []),
    }
    monkeypatch.setattr(market_data.yf, "Ticker", FakeTicker)
    return FakeTicker


def test_quote_uses_last_two_closes(ticker: type[FakeTicker]) -> None:
    feed = YFinanceMarketData(["aapl"])

    quote = feed.get_quote("AAPL")

    assert quote.price == 210.0
    assert quote.change_percent == pytest.approx(5.0)
    assert quote.volume == 6_000_000
    feed.get_quote("AAPL")
    assert ticker.downloads == 1


def test_empty_history_is_unavailable(ticker: type[FakeTicker]) -> None:
    with pytest.raises(DataUnavailable):
        YFinanceMarketData([]).get_quote("ZZZZ")


def test_candidates_come_from_watchlist() -> None:
    feed = YFinanceMarketData([" aapl", "msft ", "", "nvda"])
    assert feed.get_candidates(2) == ["AAPL", "MSFT"]
