"""JSON レポート / scaler レコードの生成と保存（表現層）。

設計意図:
- エピソード・特徴量（数値）を改変せず、実行の要約だけを BatchReport に包む。
- scaler は {means, stds, labelNames?} の JSON として保存し、推論側で fit し直さずに読み戻す。
- 組み立て（build_*）と保存（save_* / write_*）を分け、パイプラインは組み立てだけを呼ぶ。
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Sequence

from market_episode_engine.contract.errors import ContractError
from market_episode_engine.contract.schemas.reports import BatchReport, SkippedTicker, now_iso_seconds
from market_episode_engine.domain.rules.scaler import StandardScaler
from market_episode_engine.pipeline.context import EngineContext

logger = logging.getLogger(__name__)


def build_batch_report(
    ctx: EngineContext,
    *,
    tickers: Sequence[str],
    processed: Sequence[str],
    skipped: Sequence[SkippedTicker],
    n_bars: int,
    n_episodes: int,
    n_features: int,
    missing: dict[str, int] | None = None,
) -> BatchReport:
    """実行文脈と集計値から BatchReport を返す。

    Args:
        ctx: 実行文脈（degraded や notes を参照する）。
        tickers: 要求されたティッカー。
        processed: エピソードを生成できたティッカー。
        skipped: スキップしたティッカーと理由。
        n_bars: enrichment 後のバー総数。
        n_episodes: エピソード総数。
        n_features: 特徴量の列数。
        missing: 特徴量ごとの欠損件数。

    Returns:
        BatchReport: `contract/schemas/reports.py` 契約に従うレポート。
    """
    return BatchReport(
        run_id=ctx.run_id,
        mode=ctx.mode,
        interval=ctx.interval,
        threshold_pct=ctx.threshold_pct,
        tickers=list(tickers),
        processed=list(processed),
        skipped=list(skipped),
        n_bars=n_bars,
        n_episodes=n_episodes,
        n_features=n_features,
        missing_features=dict(missing or {}),
        degraded=ctx.degraded,
        notes=dict(ctx.notes),
        generated_at=now_iso_seconds(),
    )


def write_batch_report(report: BatchReport, path: str | Path) -> Path:
    """BatchReport を JSON ファイルに書き出す."""
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(report.model_dump_json(indent=2), encoding="utf-8")
    logger.info("Wrote batch report to %s.", out)
    return out


def save_scaler(scaler: StandardScaler, path: str | Path) -> Path:
    """fit 済み scaler を {means, stds, labelNames?} の JSON として保存する.

    Raises:
        ContractError: fit 前の scaler。
    """
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(scaler.to_dict(), indent=2), encoding="utf-8")
    logger.info("Saved scaler (%d features) to %s.", scaler.n_features, out)
    return out


def load_scaler(path: str | Path) -> StandardScaler:
    """save_scaler で保存した JSON から scaler を復元する.

    Raises:
        ContractError: ファイルが無い、または JSON / レコードが不正。
    """
    src = Path(path)
    try:
        text = src.read_text(encoding="utf-8")
    except OSError as err:
        raise ContractError("Scaler file cannot be read.", context={"path": str(src)}) from err
    scaler = StandardScaler.from_json(text)
    logger.info("Loaded scaler (%d features) from %s.", scaler.n_features, src)
    return scaler


def report_to_dict(report: BatchReport) -> dict[str, Any]:
    """JSON 互換の dict（enum は値に落とす）."""
    return report.model_dump(mode="json")
