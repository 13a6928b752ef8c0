from __future__ import annotations

import numpy as np
import pytest

from market_episode_engine.contract.errors import ContractError, DimensionMismatch
from market_episode_engine.contract.schemas.features import ImputeStrategy
from market_episode_engine.domain.rules.enrichment import enrich_bars
from market_episode_engine.domain.rules.episodes import build_episodes
from market_episode_engine.domain.rules.features import build_feature_matrix
from market_episode_engine.domain.rules.scaler import StandardScaler
from market_episode_engine.pipeline.inference import predict_episodes

LABELS = ["up", "down", "flat"]


@pytest.fixture
def bars(make_raw_bars, scenario_closes):
    return enrich_bars(make_raw_bars(scenario_closes))


@pytest.fixture
def scaler(bars):
    features = build_feature_matrix(build_episodes(bars, 0.05), ImputeStrategy.SENTINEL)
    return StandardScaler(label_names=LABELS).fit(features)


def test_predictions_take_argmax_label(bars, scaler) -> None:
    seen = {}

    def predict(x):
        seen["shape"] = x.shape
        return np.array([[0.8, 0.1, 0.1], [0.2, 0.7, 0.1], [0.1, 0.3, 0.6]])

    out = predict_episodes(bars, scaler=scaler, predict=predict, threshold_pct=0.05)

    assert seen["shape"] == (3, scaler.n_features)
    assert [p.label for p in out] == ["up", "down", "flat"]
    assert [p.confidence for p in out] == pytest.approx([0.8, 0.7, 0.6])
    assert out[0].episode.direction.value == "up"


def test_confidence_floor_filters(bars, scaler) -> None:
    def predict(x):
        return np.array([[0.8, 0.1, 0.1], [0.2, 0.7, 0.1], [0.1, 0.3, 0.6]])

    out = predict_episodes(bars, scaler=scaler, predict=predict, threshold_pct=0.05, min_confidence=0.7)

    assert [p.confidence for p in out] == pytest.approx([0.8, 0.7])


def test_explicit_labels_override_scaler_labels(bars, scaler) -> None:
    out = predict_episodes(
        bars,
        scaler=scaler,
        predict=lambda x: np.tile([0.3, 0.7], (x.shape[0], 1)),
        threshold_pct=0.05,
        labels=["strong", "weak"],
    )

    assert {p.label for p in out} == {"weak"}


def test_probability_width_must_match_labels(bars, scaler) -> None:
    with pytest.raises(DimensionMismatch):
        predict_episodes(
            bars,
            scaler=scaler,
            predict=lambda x: np.ones((x.shape[0], 2)) / 2,
            threshold_pct=0.05,
        )


def test_labels_are_required(bars) -> None:
    unlabeled = StandardScaler().fit(np.ones((2, 37)))

    with pytest.raises(ContractError):
        predict_episodes(bars, scaler=unlabeled, predict=lambda x: x, threshold_pct=0.05)


def test_no_episodes_means_no_predictions(make_raw_bars, scaler) -> None:
    single = enrich_bars(make_raw_bars([100.0]))

    def predict(x):
        raise AssertionError("predict must not be called")

    assert predict_episodes(single, scaler=scaler, predict=predict, threshold_pct=0.05) == []
