"""推論オーバーレイ: バー → エピソード → 特徴量 → 保存済み scaler → 予測ラベル.

設計意図:
- モデル本体は不透明な callable（確率行列を返す）として注入し、ここは前後処理と検証だけを持つ。
- scaler と補完統計は保存済みのものを使うだけで、新しいデータで fit / 再計算しない。
- 確率の列数がラベル数と合わない場合は誤魔化さずに停止する。
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Sequence

import numpy as np

from market_episode_engine.contract.errors import ContractError, DimensionMismatch
from market_episode_engine.contract.schemas.episode import EpisodePrediction
from market_episode_engine.contract.schemas.features import FeatureStatistics, ImputeStrategy
from market_episode_engine.contract.schemas.market import EnrichedBar
from market_episode_engine.domain.rules.episodes import build_episodes
from market_episode_engine.domain.rules.features import build_feature_matrix
from market_episode_engine.domain.rules.scaler import StandardScaler

logger = logging.getLogger(__name__)

PredictFn = Callable[[np.ndarray], Any]


def predict_episodes(
    bars: Sequence[EnrichedBar],
    *,
    scaler: StandardScaler,
    predict: PredictFn,
    threshold_pct: float,
    labels: Sequence[str] | None = None,
    strategy: ImputeStrategy = ImputeStrategy.SENTINEL,
    statistics: FeatureStatistics | None = None,
    min_confidence: float = 0.0,
) -> list[EpisodePrediction]:
    """エピソードごとに予測ラベルと確信度を付ける.

    Args:
        bars: 時刻昇順の EnrichedBar。
        scaler: fit 済み scaler（学習時に保存したもの）。
        predict: (n, n_features) の scaled 行列を受け取り (n, n_labels) の確率を返す callable。
        threshold_pct: 反転しきい値（比率）。
        labels: 確率の各列に対応するラベル名。None の場合は scaler.label_names。
        strategy: 欠損値の補完方針（学習時と同じものを渡す）。
        statistics: mean/median 補完用の統計量。None の場合は scaler.statistics（学習時の値）。
        min_confidence: これ未満の確信度の予測は捨てる（0.0 なら全件）。

    Returns:
        確信度が min_confidence 以上のエピソード予測（時刻順）。

    Raises:
        ContractError: ラベル名が無い、scaler が未 fit、または mean/median 補完の統計が無い。
        DimensionMismatch: 特徴量列数や確率の形が合わない。
    """
    names = list(labels) if labels is not None else scaler.label_names
    if not names:
        raise ContractError("Label names are required (pass labels or use a scaler saved with labelNames).")
    if not scaler.is_fitted:
        raise ContractError("Scaler is not fitted.")

    strategy = ImputeStrategy(strategy)
    stats = statistics if statistics is not None else scaler.statistics
    if strategy in (ImputeStrategy.MEAN, ImputeStrategy.MEDIAN) and stats is None:
        raise ContractError(
            "Mean/median imputation requires training statistics.",
            context={"impute_strategy": strategy.value},
        )

    episodes = build_episodes(bars, threshold_pct)
    if not episodes:
        logger.info("No episodes to predict.")
        return []

    features = build_feature_matrix(episodes, strategy, statistics=stats)
    scaled = scaler.transform(features)

    probs = np.asarray(predict(scaled), dtype="float64")
    if probs.ndim != 2 or probs.shape[0] != len(episodes) or probs.shape[1] != len(names):
        raise DimensionMismatch(
            "Prediction output shape does not match episodes x labels.",
            context={"expected": (len(episodes), len(names)), "got": tuple(probs.shape)},
        )

    predictions: list[EpisodePrediction] = []
    for episode, row in zip(episodes, probs):
        idx = int(np.argmax(row))
        confidence = float(min(max(row[idx], 0.0), 1.0))
        if confidence < min_confidence:
            continue
        predictions.append(EpisodePrediction(episode=episode, label=names[idx], confidence=confidence))

    logger.info(
        "Using %d/%d episodes above confidence=%s",
        len(predictions),
        len(episodes),
        min_confidence,
    )
    return predictions
