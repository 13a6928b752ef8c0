"""スキーマ定義：バーと指標系列の契約データ構造.

Notes:
    - 生バー（RawBar）: CSV 行 / バー API レスポンスをそのまま受ける
    - 指標計算用の時系列点（ChartPoint / BandPoint / MacdSeries）
    - enrichment 済みバー（EnrichedBar）

Policy:
    - 生バーの数値は未検証のまま保持し、変換（safe cast）は enrichment 側で行う
    - enrichment 済みバーは不変。指標のウォームアップ中は None を保持する（0 で埋めない）
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

# 指標・正規化の対象となる数値列（順序は CSV 出力の列順にもなる）
PRICE_COLUMNS: tuple[str, ...] = ("open", "high", "low", "close", "volume")
INDICATOR_COLUMNS: tuple[str, ...] = (
    "ema",
    "rsi",
    "obv",
    "vwap",
    "bb_upper",
    "bb_middle",
    "bb_lower",
)
NUMERIC_COLUMNS: tuple[str, ...] = PRICE_COLUMNS + INDICATOR_COLUMNS

PointTime = Union[datetime, str, int, float]


def format_time_key(value: datetime) -> str:
    """時刻を秒粒度の ISO 文字列（YYYY-MM-DDTHH:MM:SS）にする."""
    return value.strftime("%Y-%m-%dT%H:%M:%S")


# 指標計算の入出力
class ChartPoint(BaseModel):
    """時系列の1点（value は終値など。OBV/VWAP では volume も使う）."""

    model_config = ConfigDict(frozen=True)

    time: PointTime
    value: float | None
    volume: float | None = None


class BandPoint(BaseModel):
    """Bollinger Bands の1点."""

    model_config = ConfigDict(frozen=True)

    time: PointTime
    upper: float
    middle: float
    lower: float


class MacdSeries(BaseModel):
    """MACD / シグナル / ヒストグラムの3系列（各々末尾揃え）."""

    model_config = ConfigDict(frozen=True)

    macd: list[ChartPoint] = Field(default_factory=list)
    signal: list[ChartPoint] = Field(default_factory=list)
    histogram: list[ChartPoint] = Field(default_factory=list)


# 生バー
class RawBar(BaseModel):
    """取り込み直後のバー.

    Policy:
        - timestamp は unix 秒 / unix ミリ秒 / ISO 文字列のいずれも受ける
        - OHLCV は任意のスカラーを受け、数値化は enrichment で行う
        - API の短縮キー（t/o/h/l/c/v）と CSV の start 列も受ける
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    ticker: str | None = Field(default=None, validation_alias=AliasChoices("ticker", "symbol", "S"))
    timestamp: Any = Field(validation_alias=AliasChoices("timestamp", "start", "time", "t", "date"))
    open: Any = Field(default=None, validation_alias=AliasChoices("open", "o"))
    high: Any = Field(default=None, validation_alias=AliasChoices("high", "h"))
    low: Any = Field(default=None, validation_alias=AliasChoices("low", "l"))
    close: Any = Field(validation_alias=AliasChoices("close", "c"))
    volume: Any = Field(default=None, validation_alias=AliasChoices("volume", "v"))


# enrichment 済みバー
class EnrichedBar(BaseModel):
    """指標と z-score 正規化値を付与したバー."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    ticker: str | None = Field(default=None, description="Ticker symbol (if known)")
    time: datetime = Field(description="Canonical UTC instant (second precision)")

    open: float
    high: float
    low: float
    close: float
    volume: float

    # 指標（ウォームアップ中は None）
    ema: float | None = Field(default=None, description="EMA(ema_period)")
    rsi: float | None = Field(default=None, ge=0.0, le=100.0, description="RSI(rsi_period)")
    obv: float | None = Field(default=None, description="On-Balance Volume (level)")
    vwap: float | None = Field(default=None, description="Cumulative VWAP")
    bb_upper: float | None = Field(default=None)
    bb_middle: float | None = Field(default=None)
    bb_lower: float | None = Field(default=None)

    # z-score（バッチ全体）
    open_norm: float | None = None
    high_norm: float | None = None
    low_norm: float | None = None
    close_norm: float | None = None
    volume_norm: float | None = None
    ema_norm: float | None = None
    rsi_norm: float | None = None
    obv_norm: float | None = None
    vwap_norm: float | None = None
    bb_upper_norm: float | None = None
    bb_middle_norm: float | None = None
    bb_lower_norm: float | None = None

    @property
    def time_key(self) -> str:
        """エピソード ID などに使う秒粒度の時刻キー."""
        return format_time_key(self.time)


class IndicatorSettings(BaseModel):
    """enrichment で計算する指標のパラメータ."""

    model_config = ConfigDict(frozen=True)

    ema_period: int = Field(14, ge=1, le=500)
    rsi_period: int = Field(14, ge=1, le=500)
    bb_period: int = Field(20, ge=1, le=500)
    bb_multiplier: float = Field(2.0, gt=0.0, le=10.0)
