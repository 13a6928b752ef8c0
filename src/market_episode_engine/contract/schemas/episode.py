"""エピソード（スイング間のトレンド区間）の契約定義。

設計意図:
- スイング検出の中間表現（SwingPoint）と、その出力（Episode）の意味論をここで固定する。
- 計算ロジックは domain/rules/episodes.py に閉じ、ここは型と制約のみを持つ。
- lr_slope_5 / lr_fit_r2_5 などの名前は特徴量スキーマ（CSV ヘッダ）の凍結名なので変えない。
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from market_episode_engine.contract.schemas.market import EnrichedBar


class SwingType(str, Enum):
    """スイング点の種類."""

    PEAK = "peak"
    TROUGH = "trough"


class Direction(str, Enum):
    """エピソードの方向（始値→終値の終値差の符号）."""

    UP = "up"
    DOWN = "down"
    FLAT = "flat"


class TrendQuality(str, Enum):
    """回帰 R² によるトレンド品質."""

    STRONG = "strong"
    WEAK = "weak"


class SwingPoint(BaseModel):
    """ジグザグ検出中にのみ存在するスイング点."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0, description="Index into the source bar sequence")
    price: float
    type: SwingType


class Episode(BaseModel):
    """連続する2つのスイング点に挟まれたバー区間の集計."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    ticker: str | None = Field(default=None)
    episode_id: str = Field(..., min_length=1, description="ticker + start/end time key")
    start_time: datetime
    end_time: datetime
    duration: int = Field(..., ge=1, description="Bar count, both endpoints inclusive")
    direction: Direction
    total_return: float

    # 線形回帰（終値 vs バー番号）
    lr_slope_5: float
    lr_slope_5_norm: float = Field(description="Slope divided by the starting close")
    lr_fit_r2_5: float
    trend_quality: TrendQuality

    # 境界バーのスナップショット
    start_features: EnrichedBar
    end_features: EnrichedBar

    # 集計（raw + normalized）
    avg_volume: float
    avg_volume_norm: float | None = None
    max_volume: float
    avg_rsi: float | None = None
    avg_rsi_norm: float | None = None
    avg_volatility: float
    avg_volatility_norm: float
    obv_change: float | None = None
    obv_change_norm: float | None = None
    avg_vwap: float | None = None
    avg_vwap_norm: float | None = None

    # 始点・終点の値（raw + normalized）
    price_start: float
    price_end: float
    price_delta: float
    price_start_norm: float | None = None
    price_end_norm: float | None = None
    rsi_start: float | None = None
    rsi_end: float | None = None
    rsi_start_norm: float | None = None
    rsi_end_norm: float | None = None
    vwap_start: float | None = None
    vwap_end: float | None = None
    vwap_start_norm: float | None = None
    vwap_end_norm: float | None = None
    obv_start: float | None = None
    obv_end: float | None = None
    obv_start_norm: float | None = None
    obv_end_norm: float | None = None
    ema_start: float | None = None
    ema_end: float | None = None
    ema_start_norm: float | None = None
    ema_end_norm: float | None = None


class EpisodePrediction(BaseModel):
    """推論オーバーレイ1件（エピソードと予測ラベル・確信度）."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    episode: Episode
    label: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0.0, le=1.0)
