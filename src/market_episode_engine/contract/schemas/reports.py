"""バッチ実行レポート（BatchReport）の契約定義。

設計意図:
- 計算結果（エピソード・特徴量）を改変せず、実行の要約だけを表現層の契約として固定する。
- スキップ理由は例外の code をそのまま残す（監査・再実行判断用）。
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RunMode(str, Enum):
    """バッチの実行モード."""

    TRAINING = "training"
    INFERENCE = "inference"


class SkippedTicker(BaseModel):
    """スキップしたティッカーと理由."""

    model_config = ConfigDict(frozen=True)

    ticker: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1, description="Exception code (e.g., SKIP_TICKER)")
    reason: str = Field(..., description="Exception message")


class BatchReport(BaseModel):
    """run_batch 1回分のレポート契約."""

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(..., min_length=1)
    mode: RunMode
    interval: str = Field(..., min_length=1)
    threshold_pct: float = Field(..., gt=0.0)

    tickers: list[str] = Field(default_factory=list, description="Requested tickers")
    processed: list[str] = Field(default_factory=list, description="Tickers that produced episodes")
    skipped: list[SkippedTicker] = Field(default_factory=list)

    n_bars: int = Field(0, ge=0)
    n_episodes: int = Field(0, ge=0)
    n_features: int = Field(0, ge=0)
    missing_features: dict[str, int] = Field(default_factory=dict)

    degraded: bool = False
    notes: dict[str, Any] = Field(default_factory=dict)
    generated_at: str = Field(..., min_length=1, description="ISO8601 (seconds)")

    @model_validator(mode="after")
    def _validate_partition(self) -> "BatchReport":
        skipped = {s.ticker for s in self.skipped}
        overlap = skipped.intersection(self.processed)
        if overlap:
            raise ValueError(f"tickers both processed and skipped: {sorted(overlap)}")
        return self


def now_iso_seconds() -> str:
    """ISO8601 文字列（秒粒度、UTC）."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")
