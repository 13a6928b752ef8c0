from __future__ import annotations

import pandas as pd
import pytest

from market_episode_engine.contract.errors import ConfigurationError, ContractError
from market_episode_engine.contract.schemas.features import FEATURES
from market_episode_engine.domain.models import EpisodeLogic
from market_episode_engine.domain.rules.chart_view import format_bars_table, format_episodes_table
from market_episode_engine.domain.rules.market_data import BarFetcher


def test_load_bars_builds_episodes_with_interval_threshold(make_raw_bars, scenario_closes) -> None:
    logic = EpisodeLogic()

    episodes = logic.load_bars("TEST", make_raw_bars(scenario_closes), interval="1d")

    assert logic.is_loaded
    assert logic.interval == "1d"
    assert len(episodes) == 3
    assert len(logic.bars("TEST")) == 7
    assert logic.episodes() == episodes


def test_feature_matrix_uses_configured_strategy(make_raw_bars, scenario_closes) -> None:
    logic = EpisodeLogic()
    logic.load_bars("TEST", make_raw_bars(scenario_closes))

    matrix = logic.feature_matrix()

    assert matrix.shape == (3, len(FEATURES))
    assert logic.feature_matrix("zero", ticker="TEST").shape == (3, len(FEATURES))


def test_unknown_interval_is_rejected(make_raw_bars) -> None:
    with pytest.raises(ConfigurationError):
        EpisodeLogic().load_bars("TEST", make_raw_bars([1.0, 2.0]), interval="2d")


def test_scan_views(make_raw_bars, scenario_closes) -> None:
    logic = EpisodeLogic()
    logic.load_bars("TEST", make_raw_bars(scenario_closes))

    bars_table = logic.scan(ticker="TEST", view="bars", last_n=3)
    episodes_table = logic.scan(ticker="TEST", view="episodes")

    assert "close" in bars_table
    assert "2023-11-20T22:13:20" in bars_table
    assert "2023-11-14T22:13:20" not in bars_table
    assert "up" in episodes_table and "down" in episodes_table


def test_scan_errors(make_raw_bars) -> None:
    logic = EpisodeLogic()
    with pytest.raises(ContractError):
        logic.scan(ticker="TEST", view="bars")

    logic.load_bars("TEST", make_raw_bars([1.0, 2.0]))
    with pytest.raises(ContractError):
        logic.scan(ticker="OTHER", view="bars")
    with pytest.raises(ContractError):
        logic.scan(ticker="TEST", view="decision")  # type: ignore[arg-type]


def test_load_charts_uses_fetcher() -> None:
    def download(*, ticker, start, end, interval):
        dates = pd.date_range("2024-01-01", periods=5, freq="D")
        return pd.DataFrame(
            {
                "date": dates,
                "open": [10.0, 11.0, 12.0, 11.0, 10.0],
                "high": [10.5, 11.5, 12.5, 11.5, 10.5],
                "low": [9.5, 10.5, 11.5, 10.5, 9.5],
                "close": [10.0, 11.0, 12.0, 11.0, 10.0],
                "volume": [100, 100, 100, 100, 100],
            }
        )

    logic = EpisodeLogic(fetcher=BarFetcher(download=download))
    logic.load_charts(["AAA", "BBB"], interval="1d")

    assert set(logic.charts) == {"AAA", "BBB"}
    assert len(logic.episodes("AAA")) == 2
    assert logic.episodes("AAA")[0].ticker == "AAA"


def test_table_filters_by_time_key(make_raw_bars, scenario_closes) -> None:
    logic = EpisodeLogic()
    logic.load_bars("TEST", make_raw_bars(scenario_closes))

    table = format_bars_table(bars=logic.bars("TEST"), start="2023-11-16", end="2023-11-17", last_n=0)
    assert "2023-11-16T22:13:20" in table
    assert "2023-11-15T22:13:20" not in table
    assert "2023-11-18T22:13:20" not in table

    assert "start" in format_episodes_table(episodes=logic.episodes("TEST"), tablefmt="plain")
