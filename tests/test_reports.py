from __future__ import annotations

import json

import pandas as pd
import pytest

from market_episode_engine.contract.errors import ContractError, DataError, DimensionMismatch
from market_episode_engine.contract.schemas.features import FEATURES, ImputeStrategy
from market_episode_engine.contract.schemas.reports import BatchReport, RunMode, SkippedTicker
from market_episode_engine.domain.rules.enrichment import enrich_bars
from market_episode_engine.domain.rules.episodes import build_episodes
from market_episode_engine.domain.rules.features import build_feature_matrix
from market_episode_engine.domain.rules.scaler import StandardScaler
from market_episode_engine.pipeline.context import build_engine_context
from market_episode_engine.reports.csv_export import (
    ENRICHED_COLUMNS,
    read_raw_bars_csv,
    ticker_from_filename,
    write_enriched_csv,
    write_episodes_csv,
    write_feature_csv,
)
from market_episode_engine.reports.json_report import (
    build_batch_report,
    load_scaler,
    report_to_dict,
    save_scaler,
    write_batch_report,
)


def test_ticker_from_filename() -> None:
    assert ticker_from_filename("data/AAPL_1d_2024.csv") == "AAPL"
    assert ticker_from_filename("MSFT.csv") == "MSFT"


def test_read_raw_bars_csv_infers_ticker(write_bars_csv, scenario_closes) -> None:
    bars = read_raw_bars_csv(write_bars_csv("AAPL_1d.csv", scenario_closes))

    assert len(bars) == 7
    assert {b.ticker for b in bars} == {"AAPL"}
    assert bars[0].timestamp == "1700000000"

    enriched = enrich_bars(bars)
    assert enriched[0].close == 100.0


def test_row_ticker_wins_over_file_name(write_bars_csv) -> None:
    bars = read_raw_bars_csv(write_bars_csv("AAPL_1d.csv", [1.0, 2.0], with_ticker=True))

    assert {b.ticker for b in bars} == {"CSVT"}


def test_read_errors(tmp_path) -> None:
    with pytest.raises(DataError):
        read_raw_bars_csv(tmp_path / "missing.csv")

    no_close = tmp_path / "X_1d.csv"
    no_close.write_text("start,open\n1700000000,1.0\n", encoding="utf-8")
    with pytest.raises(DataError):
        read_raw_bars_csv(no_close)


def test_enriched_and_episode_csv(tmp_path, make_raw_bars, scenario_closes) -> None:
    bars = enrich_bars(make_raw_bars(scenario_closes))
    episodes = build_episodes(bars, 0.05)

    enriched_path = write_enriched_csv(bars, tmp_path / "out" / "enriched.csv")
    episodes_path = write_episodes_csv(episodes, tmp_path / "out" / "episodes.csv")

    enriched = pd.read_csv(enriched_path)
    assert tuple(enriched.columns) == ENRICHED_COLUMNS
    assert enriched["time"].iloc[0] == "2023-11-14T22:13:20"
    assert enriched["ema"].isna().all()

    frame = pd.read_csv(episodes_path)
    assert len(frame) == 3
    assert "start_features" not in frame.columns
    assert frame["direction"].tolist() == ["up", "down", "up"]
    assert frame["episode_id"].iloc[0] == episodes[0].episode_id


def test_feature_csv(tmp_path, make_raw_bars, scenario_closes) -> None:
    episodes = build_episodes(enrich_bars(make_raw_bars(scenario_closes)), 0.05)
    matrix = build_feature_matrix(episodes, ImputeStrategy.SENTINEL)

    path = write_feature_csv(matrix, tmp_path / "features.csv", labels=["a", "b", "c"])

    frame = pd.read_csv(path)
    assert list(frame.columns) == [*FEATURES, "label"]
    assert frame["duration"].tolist() == [3, 3, 3]

    with pytest.raises(DimensionMismatch):
        write_feature_csv(matrix[:, :5], tmp_path / "bad.csv")
    with pytest.raises(DimensionMismatch):
        write_feature_csv(matrix, tmp_path / "bad.csv", labels=["a"])


def test_scaler_file_round_trip(tmp_path) -> None:
    scaler = StandardScaler(label_names=["up", "down", "flat"]).fit([[1.0, 2.0], [3.0, 6.0]])

    path = save_scaler(scaler, tmp_path / "models" / "scaler.json")
    record = json.loads(path.read_text(encoding="utf-8"))
    restored = load_scaler(path)

    assert record["labelNames"] == ["up", "down", "flat"]
    assert restored.means.tolist() == pytest.approx([2.0, 4.0])
    assert restored.stds.tolist() == pytest.approx([1.0, 2.0])


def test_load_scaler_errors(tmp_path) -> None:
    with pytest.raises(ContractError):
        load_scaler(tmp_path / "nope.json")

    broken = tmp_path / "broken.json"
    broken.write_text(json.dumps({"means": [1.0], "stds": [0.0]}), encoding="utf-8")
    with pytest.raises(ContractError):
        load_scaler(broken)

    with pytest.raises(ContractError):
        save_scaler(StandardScaler(), tmp_path / "unfitted.json")


def test_batch_report_json(tmp_path, config) -> None:
    ctx = build_engine_context(mode="training", config=config, run_id="run-1")
    report = build_batch_report(
        ctx,
        tickers=["AAA", "BBB"],
        processed=["AAA"],
        skipped=[SkippedTicker(ticker="BBB", code="SKIP_TICKER", reason="No episode could be built.")],
        n_bars=7,
        n_episodes=2,
        n_features=len(FEATURES),
    )

    path = write_batch_report(report, tmp_path / "report.json")
    loaded = json.loads(path.read_text(encoding="utf-8"))

    assert loaded["run_id"] == "run-1"
    assert loaded["mode"] == "training"
    assert loaded["skipped"][0]["ticker"] == "BBB"
    assert report_to_dict(report)["threshold_pct"] == 0.05


def test_batch_report_rejects_overlap() -> None:
    with pytest.raises(ValueError):
        BatchReport(
            run_id="r",
            mode=RunMode.TRAINING,
            interval="1d",
            threshold_pct=0.05,
            processed=["AAA"],
            skipped=[SkippedTicker(ticker="AAA", code="SKIP_TICKER", reason="x")],
            generated_at="2024-01-01T00:00:00+00:00",
        )
