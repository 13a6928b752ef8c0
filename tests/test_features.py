from __future__ import annotations

import math

import numpy as np
import pytest

from market_episode_engine.contract.schemas.features import (
    FEATURES,
    SENTINEL_VALUE,
    ImputeStrategy,
    LabelMode,
)
from market_episode_engine.domain.rules.enrichment import enrich_bars
from market_episode_engine.domain.rules.episodes import build_episodes
from market_episode_engine.domain.rules.features import (
    build_feature_matrix,
    build_label_matrix,
    composite_label,
    compute_feature_statistics,
    direction_label,
    episode_to_feature_vector,
    impute_value,
    label_names,
    report_missing_values,
    trend_quality_label,
)


@pytest.fixture
def episodes(make_raw_bars, scenario_closes):
    return build_episodes(enrich_bars(make_raw_bars(scenario_closes)), 0.055)


def test_feature_names_are_frozen() -> None:
    assert len(FEATURES) == 37
    assert len(set(FEATURES)) == 37
    assert FEATURES[:5] == ("duration", "total_return", "lr_slope_5", "lr_slope_5_norm", "lr_fit_r2_5")
    assert FEATURES[-1] == "ema_end_norm"


def test_vector_follows_feature_order(episodes) -> None:
    ep = episodes[0]
    vec = episode_to_feature_vector(ep)

    assert len(vec) == len(FEATURES)
    assert vec[FEATURES.index("duration")] == 3.0
    assert vec[FEATURES.index("total_return")] == pytest.approx(0.06)
    assert vec[FEATURES.index("price_start")] == 100.0
    assert all(math.isfinite(v) for v in vec)


def test_sentinel_and_zero_imputation(episodes) -> None:
    ep = episodes[0]
    idx = FEATURES.index("avg_rsi")

    assert ep.avg_rsi is None
    assert episode_to_feature_vector(ep, ImputeStrategy.SENTINEL)[idx] == SENTINEL_VALUE
    assert episode_to_feature_vector(ep, ImputeStrategy.ZERO)[idx] == 0.0


def test_mean_and_median_imputation_use_given_statistics() -> None:
    assert impute_value(None, ImputeStrategy.MEAN, mean=3.5) == 3.5
    assert impute_value(float("nan"), ImputeStrategy.MEDIAN, median=2.0) == 2.0
    assert impute_value(None, ImputeStrategy.MEAN) == 0.0
    assert impute_value(4, ImputeStrategy.SENTINEL) == 4.0


def test_statistics_ignore_missing_values(episodes) -> None:
    stats = compute_feature_statistics(episodes)

    assert stats.means["duration"] == pytest.approx(3.0)
    assert "avg_rsi" not in stats.means
    assert stats.medians["price_start"] == pytest.approx((100.0 + 106.0) / 2)


def test_feature_matrix_shape(episodes) -> None:
    matrix = build_feature_matrix(episodes, ImputeStrategy.SENTINEL)

    assert matrix.shape == (2, len(FEATURES))
    assert matrix.dtype == np.float64


def test_empty_feature_matrix_keeps_width() -> None:
    assert build_feature_matrix([], ImputeStrategy.ZERO).shape == (0, len(FEATURES))


def test_missing_value_report(episodes) -> None:
    missing = report_missing_values(episodes)

    assert missing["avg_rsi"] == 2
    assert "duration" not in missing


def test_one_hot_labels(episodes) -> None:
    up, down = episodes

    assert direction_label(up) == [1, 0, 0]
    assert direction_label(down) == [0, 1, 0]
    assert trend_quality_label(up) == [1, 0]
    assert composite_label(up) == "up_strong"
    assert label_names(LabelMode.DIRECTION) == ["up", "down", "flat"]
    assert label_names(LabelMode.TREND_QUALITY) == ["strong", "weak"]


def test_label_matrix(episodes) -> None:
    labels = build_label_matrix(episodes, LabelMode.DIRECTION)

    assert labels.tolist() == [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]
    assert build_label_matrix([], LabelMode.TREND_QUALITY).shape == (0, 2)
