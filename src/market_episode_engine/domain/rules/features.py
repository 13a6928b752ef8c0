"""Rules: episode → feature vector / label encoding.

特徴量の並びは contract/schemas/features.FEATURES に固定されている。
欠損（None/NaN）は ImputeStrategy に従って補完し、ベクトル長は常に len(FEATURES)。
"""
from __future__ import annotations

import logging
import math
from typing import Any, Mapping, Sequence

import numpy as np

from market_episode_engine.contract.errors import ContractError
from market_episode_engine.contract.schemas.episode import Episode
from market_episode_engine.contract.schemas.features import (
    DIRECTION_CLASSES,
    FEATURES,
    SENTINEL_VALUE,
    TREND_QUALITY_CLASSES,
    FeatureStatistics,
    ImputeStrategy,
    LabelMode,
)

logger = logging.getLogger(__name__)


def impute_value(
    value: Any,
    strategy: ImputeStrategy,
    *,
    mean: float | None = None,
    median: float | None = None,
) -> float:
    """欠損なら strategy に従って補完し、そうでなければ float にして返す.

    - zero: 0
    - mean / median: 外部から与えた統計量（無ければ 0）
    - sentinel: -1
    """
    if value is None or (isinstance(value, float) and math.isnan(value)):
        if strategy is ImputeStrategy.ZERO:
            return 0.0
        if strategy is ImputeStrategy.MEAN:
            return float(mean) if mean is not None else 0.0
        if strategy is ImputeStrategy.MEDIAN:
            return float(median) if median is not None else 0.0
        if strategy is ImputeStrategy.SENTINEL:
            return SENTINEL_VALUE
        raise ContractError("Unknown impute strategy.", context={"strategy": strategy})
    return float(value)


def episode_to_feature_vector(
    episode: Episode,
    strategy: ImputeStrategy = ImputeStrategy.SENTINEL,
    *,
    feature_means: Mapping[str, float] | None = None,
    feature_medians: Mapping[str, float] | None = None,
) -> list[float]:
    """Episode を FEATURES 順の数値ベクトルにする."""
    strategy = ImputeStrategy(strategy)
    means = feature_means or {}
    medians = feature_medians or {}
    return [
        impute_value(
            getattr(episode, name),
            strategy,
            mean=means.get(name),
            median=medians.get(name),
        )
        for name in FEATURES
    ]


def build_feature_matrix(
    episodes: Sequence[Episode],
    strategy: ImputeStrategy = ImputeStrategy.SENTINEL,
    *,
    statistics: FeatureStatistics | None = None,
) -> np.ndarray:
    """エピソード列を (n, len(FEATURES)) の行列にする（空なら (0, len(FEATURES))）."""
    logger.debug("Building feature matrix for %d episodes.", len(episodes))
    if not episodes:
        logger.warning("No episodes provided; returning an empty feature matrix.")
        return np.empty((0, len(FEATURES)), dtype="float64")

    stats = statistics or FeatureStatistics()
    rows = [
        episode_to_feature_vector(
            e,
            strategy,
            feature_means=stats.means,
            feature_medians=stats.medians,
        )
        for e in episodes
    ]
    return np.asarray(rows, dtype="float64")


def compute_feature_statistics(episodes: Sequence[Episode]) -> FeatureStatistics:
    """mean/median 補完用に、各特徴量の存在値だけから平均・中央値を求める."""
    means: dict[str, float] = {}
    medians: dict[str, float] = {}
    for name in FEATURES:
        present = [
            float(v)
            for v in (getattr(e, name) for e in episodes)
            if v is not None and not (isinstance(v, float) and math.isnan(v))
        ]
        if not present:
            continue
        means[name] = float(np.mean(present))
        medians[name] = float(np.median(present))
    return FeatureStatistics(means=means, medians=medians)


def report_missing_values(episodes: Sequence[Episode]) -> dict[str, int]:
    """特徴量ごとの欠損件数（欠損がある特徴量だけ WARNING を出す）."""
    missing: dict[str, int] = {}
    for name in FEATURES:
        count = sum(1 for e in episodes if getattr(e, name) is None)
        if count > 0:
            missing[name] = count
            logger.warning("Feature %s missing in %d/%d episodes", name, count, len(episodes))
    return missing


def direction_label(episode: Episode) -> list[int]:
    """方向の one-hot（[up, down, flat]）."""
    return [1 if episode.direction == c else 0 for c in DIRECTION_CLASSES]


def trend_quality_label(episode: Episode) -> list[int]:
    """トレンド品質の one-hot（[strong, weak]）."""
    return [1 if episode.trend_quality == c else 0 for c in TREND_QUALITY_CLASSES]


def composite_label(episode: Episode) -> str:
    return f"{episode.direction.value}_{episode.trend_quality.value}"


def label_names(mode: LabelMode) -> list[str]:
    """one-hot の各列に対応するクラス名."""
    classes = DIRECTION_CLASSES if LabelMode(mode) is LabelMode.DIRECTION else TREND_QUALITY_CLASSES
    return [c.value for c in classes]


def build_label_matrix(episodes: Sequence[Episode], mode: LabelMode) -> np.ndarray:
    """教師ラベルの one-hot 行列."""
    mode = LabelMode(mode)
    encode = direction_label if mode is LabelMode.DIRECTION else trend_quality_label
    width = len(label_names(mode))
    if not episodes:
        return np.empty((0, width), dtype="float64")
    return np.asarray([encode(e) for e in episodes], dtype="float64")
