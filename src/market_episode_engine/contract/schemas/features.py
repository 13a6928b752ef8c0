"""特徴量（Feature）とラベル、scaler レコードの契約定義。

設計意図:
- 特徴量名の並び（FEATURES）を学習・推論で共有する凍結契約として1か所に置く。
- 並びを変えると、保存済み scaler / モデルはすべて無効になる（再学習が必要）。
- scaler の永続化形式 {means, stds, labelNames?, featureMeans?, featureMedians?} を型で固定する。
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Final

from pydantic import BaseModel, ConfigDict, Field, model_validator

from market_episode_engine.contract.schemas.episode import Direction, TrendQuality

FEATURES: Final[tuple[str, ...]] = (
    "duration",
    "total_return",
    "lr_slope_5",
    "lr_slope_5_norm",
    "lr_fit_r2_5",
    "avg_volume",
    "avg_volume_norm",
    "max_volume",
    "avg_rsi",
    "avg_rsi_norm",
    "avg_volatility",
    "avg_volatility_norm",
    "obv_change",
    "obv_change_norm",
    "avg_vwap",
    "avg_vwap_norm",
    "price_start",
    "price_end",
    "price_delta",
    "price_start_norm",
    "price_end_norm",
    "rsi_start",
    "rsi_end",
    "rsi_start_norm",
    "rsi_end_norm",
    "vwap_start",
    "vwap_end",
    "vwap_start_norm",
    "vwap_end_norm",
    "obv_start",
    "obv_end",
    "obv_start_norm",
    "obv_end_norm",
    "ema_start",
    "ema_end",
    "ema_start_norm",
    "ema_end_norm",
)

# one-hot のクラス順（固定）
DIRECTION_CLASSES: Final[tuple[Direction, ...]] = (Direction.UP, Direction.DOWN, Direction.FLAT)
TREND_QUALITY_CLASSES: Final[tuple[TrendQuality, ...]] = (TrendQuality.STRONG, TrendQuality.WEAK)

SENTINEL_VALUE: Final[float] = -1.0


class ImputeStrategy(str, Enum):
    """欠損値（None/NaN）の補完方針."""

    ZERO = "zero"
    MEAN = "mean"
    MEDIAN = "median"
    SENTINEL = "sentinel"


class LabelMode(str, Enum):
    """教師ラベルの種類."""

    DIRECTION = "direction"
    TREND_QUALITY = "trend_quality"


class FeatureStatistics(BaseModel):
    """mean/median 補完用の特徴量統計（存在値のみから算出）."""

    model_config = ConfigDict(frozen=True)

    means: dict[str, float] = Field(default_factory=dict)
    medians: dict[str, float] = Field(default_factory=dict)


class ScalerState(BaseModel):
    """StandardScaler の永続化レコード.

    Notes:
        - JSON キーは means / stds / labelNames（互換維持のため camelCase）
        - featureMeans / featureMedians は学習時の補完統計。推論で同じ値を使うために保存する
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    means: list[float]
    stds: list[float]
    label_names: list[str] | None = Field(default=None, alias="labelNames")
    feature_means: dict[str, float] | None = Field(default=None, alias="featureMeans")
    feature_medians: dict[str, float] | None = Field(default=None, alias="featureMedians")

    @model_validator(mode="after")
    def _validate_vectors(self) -> "ScalerState":
        if len(self.means) != len(self.stds):
            raise ValueError("means and stds must have the same length.")
        for s in self.stds:
            if not math.isfinite(s) or s <= 0.0:
                raise ValueError("stds must be finite and > 0.")
        for m in self.means:
            if not math.isfinite(m):
                raise ValueError("means must be finite.")
        for stats in (self.feature_means, self.feature_medians):
            for name, value in (stats or {}).items():
                if name not in FEATURES:
                    raise ValueError(f"Unknown feature in imputation statistics: {name}")
                if not math.isfinite(value):
                    raise ValueError("Imputation statistics must be finite.")
        return self
