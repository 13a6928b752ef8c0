"""パイプライン実行文脈（EngineContext）の組み立て。

設計意図:
- entrypoints（CLI）から渡された引数と設定を、パイプライン内部で使う
  単一の実行文脈に正規化して固定する。
- pipeline はこの文脈のみを信頼し、外部 I/O や環境依存の取得をここに混入させない。
- 縮退運転（degraded）をここで表現できるようにし、後段の例外処理を単純化する。
"""

from __future__ import annotations

import uuid
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

from market_episode_engine.config.resolver import resolve_config, resolve_threshold
from market_episode_engine.contract.errors import ConfigurationError
from market_episode_engine.contract.schemas.reports import RunMode


class EngineContext(BaseModel):
    """バッチパイプラインが参照する実行文脈（不変）。"""

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(..., min_length=1, description="Run identifier")
    mode: RunMode = Field(..., description="training (fit scaler) or inference (reuse scaler)")
    interval: str = Field(..., min_length=1, description="Bar interval (e.g., 1d, 5m)")
    threshold_pct: float = Field(..., gt=0.0, description="Reversal threshold resolved for interval")

    # 設定は「解釈済み・正規化済み」を前提とする（resolver の出力を想定）
    config: dict[str, Any] = Field(default_factory=dict, description="Resolved config (normalized)")

    # 縮退運転フラグ（例: 一部ティッカーの取得失敗など）
    degraded: bool = Field(False, description="Whether pipeline runs in degraded mode")

    # 監査・デバッグ用の付帯情報（ログの材料）。値の意味は固定せず、keys を運用で統一。
    notes: dict[str, Any] = Field(default_factory=dict, description="Diagnostic notes")


def build_engine_context(
    *,
    mode: RunMode | str,
    interval: str | None = None,
    config: Mapping[str, Any] | None = None,
    run_id: str | None = None,
    threshold_pct: float | None = None,
    notes: Mapping[str, Any] | None = None,
) -> EngineContext:
    """引数と設定から EngineContext を生成する。

    Args:
        mode: 実行モード（"training" | "inference"）。
        interval: 時間足。None なら config の episodes.default_interval。
        config: resolver 済み設定。未指定なら既定値で解決する。
        run_id: 実行 ID。未指定なら uuid4 の先頭12桁。
        threshold_pct: 反転しきい値の明示指定（しきい値表より優先）。
        notes: 任意の診断情報。

    Returns:
        EngineContext: パイプライン内部で参照する不変文脈。

    Raises:
        ConfigurationError: mode が不正、またはしきい値を解決できない場合。
    """
    try:
        run_mode = RunMode(mode)
    except ValueError as err:
        raise ConfigurationError(f"Invalid run mode: {mode}") from err

    resolved: dict[str, Any] = dict(config) if config is not None else resolve_config()
    key = interval or str(resolved["episodes"]["default_interval"])

    if threshold_pct is None:
        threshold = resolve_threshold(resolved, key)
    else:
        threshold = float(threshold_pct)
        if not threshold > 0.0:
            raise ConfigurationError(f"threshold_pct must be > 0: {threshold_pct}")

    merged_notes: dict[str, Any] = dict(notes or {})
    merged_notes.setdefault("impute_strategy", resolved["features"]["impute_strategy"])

    return EngineContext(
        run_id=run_id or uuid.uuid4().hex[:12],
        mode=run_mode,
        interval=key,
        threshold_pct=threshold,
        config=resolved,
        notes=merged_notes,
    )
