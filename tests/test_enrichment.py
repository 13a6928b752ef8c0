from __future__ import annotations

from datetime import datetime, timezone

import pandas as pd
import pytest

from market_episode_engine.contract.errors import InvalidTimestamp
from market_episode_engine.contract.schemas.market import IndicatorSettings, RawBar
from market_episode_engine.domain.rules.enrichment import (
    enrich_bars,
    enrich_sources,
    merge_sources,
    normalize_timestamp,
    safe_float,
    zscore,
)

EXPECTED = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "value",
    [
        1_700_000_000,
        1_700_000_000_000,
        "1700000000",
        "2023-11-14T22:13:20Z",
        "2023-11-14T22:13:20.999Z",
        "2023-11-14T22:13:20",
        "2023-11-15T07:13:20+09:00",
        datetime(2023, 11, 14, 22, 13, 20, 500_000),
    ],
)
def test_normalize_timestamp_accepts_seconds_millis_and_iso(value) -> None:
    assert normalize_timestamp(value) == EXPECTED


@pytest.mark.parametrize(
    "value",
    ["not-a-date", "", None, True, float("nan"), "now", "today", " Today ", "11/14/2023", "2023-13-45T00:00:00Z"],
)
def test_normalize_timestamp_rejects_garbage(value) -> None:
    with pytest.raises(InvalidTimestamp):
        normalize_timestamp(value)


def test_safe_float_falls_back() -> None:
    assert safe_float("1.5") == 1.5
    assert safe_float(None, 7.0) == 7.0
    assert safe_float("abc") == 0.0
    assert safe_float(float("inf"), 2.0) == 2.0


def test_enrich_empty_input_returns_empty_list() -> None:
    assert enrich_bars([]) == []


def test_duplicates_keep_last_and_output_is_sorted(make_raw_bars) -> None:
    bars = make_raw_bars([100.0, 101.0, 102.0])
    late_duplicate = dict(bars[0], close=105.0)
    shuffled = [bars[2], bars[0], bars[1], late_duplicate]

    out = enrich_bars(shuffled)

    assert len(out) == 3
    assert [b.time for b in out] == sorted(b.time for b in out)
    assert out[0].close == 105.0


def test_missing_ohlc_falls_back_to_close_and_volume_to_zero() -> None:
    out = enrich_bars([{"t": 1_700_000_000, "c": "42.5"}])

    assert len(out) == 1
    bar = out[0]
    assert (bar.open, bar.high, bar.low, bar.close) == (42.5, 42.5, 42.5, 42.5)
    assert bar.volume == 0.0
    assert bar.ticker is None


def test_warm_up_indicators_are_none_not_zero(make_raw_bars) -> None:
    closes = [100.0 + (i % 3) - (i % 5) * 0.5 for i in range(25)]
    out = enrich_bars(make_raw_bars(closes))

    assert all(b.ema is None for b in out[:14])
    assert out[14].ema is not None
    assert all(b.rsi is None for b in out[:14])
    assert out[14].rsi is not None
    assert all(b.bb_middle is None for b in out[:19])
    assert out[19].bb_middle is not None
    assert out[0].obv is None
    assert out[1].obv is not None
    assert out[0].vwap == pytest.approx(out[0].close)

    # 欠損の指標は正規化値も欠損
    assert out[0].ema_norm is None
    assert out[14].ema_norm is not None


def test_indicator_settings_change_warm_up(make_raw_bars) -> None:
    out = enrich_bars(make_raw_bars([float(v) for v in range(1, 8)]), settings=IndicatorSettings(ema_period=3, rsi_period=3, bb_period=3))

    assert out[2].ema is None
    assert out[3].ema is not None
    assert out[3].rsi == 100.0
    assert out[2].bb_middle == pytest.approx(2.0)


def test_norms_are_z_scores_over_the_batch(make_raw_bars) -> None:
    out = enrich_bars(make_raw_bars([10.0, 20.0, 30.0]))

    norms = [b.close_norm for b in out]
    assert sum(norms) == pytest.approx(0.0)
    assert norms[0] == pytest.approx(-1.224744871, rel=1e-6)
    # 出来高が一定なら std は 1 に置き換わり、正規化値は 0
    assert all(b.volume_norm == 0.0 for b in out)


def test_enrichment_is_idempotent(make_raw_bars) -> None:
    raw = make_raw_bars([100.0 + i * 0.7 - (i % 4) for i in range(30)])

    assert enrich_bars(raw) == enrich_bars(raw)


def test_invalid_timestamp_aborts_batch_with_index(make_raw_bars) -> None:
    raw = make_raw_bars([1.0, 2.0, 3.0])
    raw[1]["start"] = "yesterday-ish"

    with pytest.raises(InvalidTimestamp) as exc_info:
        enrich_bars(raw)

    assert exc_info.value.context["index"] == 1
    assert exc_info.value.context["ticker"] == "TEST"


@pytest.mark.parametrize("keyword", ["now", "today"])
def test_wall_clock_keywords_are_not_timestamps(make_raw_bars, keyword) -> None:
    raw = make_raw_bars([1.0, 2.0, 3.0])
    raw[2]["start"] = keyword

    with pytest.raises(InvalidTimestamp) as exc_info:
        enrich_bars(raw)

    assert exc_info.value.context["index"] == 2


def test_merge_sources_accepts_models_and_dicts(make_raw_bars) -> None:
    a = [RawBar.model_validate(b) for b in make_raw_bars([1.0, 2.0])]
    b = make_raw_bars([3.0, 4.0], start=1_700_000_000 + 86_400)

    merged = merge_sources([a, b])

    assert len(merged) == 4
    assert all(isinstance(x, RawBar) for x in merged)


def test_enrich_sources_deduplicates_overlapping_files(make_raw_bars) -> None:
    first = make_raw_bars([1.0, 2.0, 3.0])
    second = make_raw_bars([30.0, 40.0], start=1_700_000_000 + 2 * 86_400)

    out = enrich_sources([first, second])

    assert [b.close for b in out] == [1.0, 2.0, 30.0, 40.0]


def test_zscore_keeps_missing_values_missing() -> None:
    out = zscore(pd.Series([1.0, None, 3.0]))

    assert out.iloc[0] == pytest.approx(-1.0)
    assert pd.isna(out.iloc[1])
    assert out.iloc[2] == pytest.approx(1.0)
