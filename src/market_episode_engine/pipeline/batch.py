"""バッチ一方向パイプライン（オーケストレーション）。

設計意図:
- 手続き（Step の順序）をここで固定し、各 Step の中身は domain/rules へ委譲する。
- 生バーの取得元（CSV / yfinance）は services として注入し、テストや入口ごとに差し替える。
- 例外分類（Fatal/Degraded/Skip）に従って、停止・縮退・ティッカースキップを一貫して扱う。
- training では scaler を fit し、inference では渡された scaler を使うだけで fit し直さない。
- mean/median 補完の統計も training でだけ計算して scaler に載せ、inference ではそれを使う。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

import numpy as np

from market_episode_engine.config.resolver import impute_strategy, indicator_settings
from market_episode_engine.contract.errors import (
    ContractError,
    DataError,
    EpisodeEngineError,
    FatalPipelineError,
    SkipTicker,
)
from market_episode_engine.contract.schemas.episode import Episode
from market_episode_engine.contract.schemas.features import FeatureStatistics, ImputeStrategy, LabelMode
from market_episode_engine.contract.schemas.market import EnrichedBar, RawBar
from market_episode_engine.contract.schemas.reports import BatchReport, RunMode, SkippedTicker
from market_episode_engine.domain.rules.enrichment import enrich_bars
from market_episode_engine.domain.rules.episodes import build_episodes
from market_episode_engine.domain.rules.features import (
    build_feature_matrix,
    build_label_matrix,
    compute_feature_statistics,
    label_names,
    report_missing_values,
)
from market_episode_engine.domain.rules.scaler import StandardScaler
from market_episode_engine.pipeline.context import EngineContext
from market_episode_engine.reports.json_report import build_batch_report

logger = logging.getLogger(__name__)


# -------------------------
# Service contracts (DI)
# -------------------------


@dataclass(frozen=True)
class PipelineServices:
    """パイプラインが呼び出す機能群（依存注入）。

    batch.py は関数を呼び出して順番を制御するだけ。
    """

    # data load（CSV / fetcher など I/O を局所化したもの）
    load_bars: Callable[[EngineContext, str], Sequence[RawBar | Mapping[str, Any]]]

    # report
    build_report: Callable[..., BatchReport] = build_batch_report


@dataclass
class BatchResult:
    """run_batch の出力一式."""

    context: EngineContext
    bars: dict[str, list[EnrichedBar]] = field(default_factory=dict)
    episodes: list[Episode] = field(default_factory=list)
    features: np.ndarray = field(default_factory=lambda: np.empty((0, 0)))
    scaled: np.ndarray = field(default_factory=lambda: np.empty((0, 0)))
    labels: np.ndarray = field(default_factory=lambda: np.empty((0, 0)))
    statistics: FeatureStatistics | None = None
    scaler: StandardScaler | None = None
    report: BatchReport | None = None


# -------------------------
# Helpers
# -------------------------


def _ctx_with_note(ctx: EngineContext, key: str, value: Any) -> EngineContext:
    """EngineContext は frozen なので、notes を更新した新インスタンスを返す。"""
    notes = dict(ctx.notes)
    notes[key] = value
    return ctx.model_copy(update={"notes": notes})


def _ctx_mark_degraded(ctx: EngineContext, reason: str) -> EngineContext:
    """縮退運転フラグを立て、理由を notes に残した新インスタンスを返す。"""
    notes = dict(ctx.notes)
    reasons = list(notes.get("degraded_reasons", []))
    reasons.append(reason)
    notes["degraded_reasons"] = reasons
    return ctx.model_copy(update={"degraded": True, "notes": notes})


# -------------------------
# Public API
# -------------------------


def run_batch(
    ctx: EngineContext,
    tickers: Sequence[str],
    services: PipelineServices,
    *,
    scaler: StandardScaler | None = None,
    label_mode: LabelMode = LabelMode.DIRECTION,
) -> BatchResult:
    """バッチパイプラインを実行し、BatchResult を返す。

    Args:
        ctx: `pipeline/context.py` で生成された実行文脈。
        tickers: 対象ティッカー。
        services: 各 Step の実装（依存注入）。
        scaler: inference で使う fit 済み scaler（training では無視して新しく fit する）。
        label_mode: 教師ラベルの種類。

    Returns:
        BatchResult: エピソード・特徴量・scaler・レポート。

    Raises:
        FatalPipelineError: ティッカーが空、全ティッカーがスキップ、未分類例外。
        ContractError: inference なのに scaler が無い / 未 fit、
            または mean/median 補完なのに scaler に学習時の統計が無い。
        DimensionMismatch: scaler と特徴量の列数不一致。
    """
    if not tickers:
        raise FatalPipelineError("Ticker list is empty.")

    if ctx.mode is RunMode.INFERENCE and (scaler is None or not scaler.is_fitted):
        raise ContractError("Inference mode requires a fitted scaler.")

    strategy = impute_strategy(ctx.config)
    needs_statistics = strategy in (ImputeStrategy.MEAN, ImputeStrategy.MEDIAN)
    if ctx.mode is RunMode.INFERENCE and needs_statistics and scaler.statistics is None:
        raise ContractError(
            "Inference with mean/median imputation requires training statistics on the scaler.",
            context={"impute_strategy": strategy.value},
        )

    ctx = _ctx_with_note(ctx, "ticker_count", len(tickers))
    settings = indicator_settings(ctx.config)

    # 1) Per-ticker: load -> enrich -> episodes
    bars_by_ticker: dict[str, list[EnrichedBar]] = {}
    episodes: list[Episode] = []
    processed: list[str] = []
    skipped: list[SkippedTicker] = []

    for ticker in tickers:
        try:
            raw = services.load_bars(ctx, ticker)
            enriched = enrich_bars(raw, settings=settings)
            if not enriched:
                raise SkipTicker("No bars after cleaning.", context={"ticker": ticker})

            built = build_episodes(enriched, ctx.threshold_pct)
            if not built:
                raise SkipTicker("No episode could be built.", context={"ticker": ticker})
        except SkipTicker as e:
            logger.info("Skipping %s: %s", ticker, e)
            skipped.append(SkippedTicker(ticker=ticker, code=e.code, reason=str(e)))
            continue
        except DataError as e:
            # InvalidTimestamp / ExternalDataError を含む。ティッカー単位で縮退して継続
            logger.warning("Data error for %s: %s", ticker, e)
            ctx = _ctx_mark_degraded(ctx, f"{ticker}: {e.code}")
            skipped.append(SkippedTicker(ticker=ticker, code=e.code, reason=str(e)))
            continue
        except EpisodeEngineError:
            # 分類済みはそのまま上げる（停止は上位で扱う）
            raise
        except Exception as e:  # noqa: BLE001
            # 未分類例外は致命的として扱う（契約外のため）
            raise FatalPipelineError(f"Unhandled exception in episode stage: {e}", context={"ticker": ticker}) from e

        bars_by_ticker[ticker] = enriched
        episodes.extend(built)
        processed.append(ticker)

    ctx = _ctx_with_note(ctx, "episode_ready_tickers", len(processed))

    if not episodes:
        raise FatalPipelineError(
            "No tickers available after enrichment/episode building.",
            context={"skipped": [s.ticker for s in skipped]},
        )

    # 2) Features / labels
    # 補完統計は training でだけ計算する（inference は学習時の値を使う）
    statistics: FeatureStatistics | None = None
    if needs_statistics:
        if ctx.mode is RunMode.TRAINING:
            statistics = compute_feature_statistics(episodes)
        else:
            assert scaler is not None
            statistics = scaler.statistics

    missing = report_missing_values(episodes)
    features = build_feature_matrix(episodes, strategy, statistics=statistics)
    labels = build_label_matrix(episodes, label_mode)

    # 3) Scaling（training のみ fit）
    if ctx.mode is RunMode.TRAINING:
        scaler = StandardScaler(label_names=label_names(label_mode), statistics=statistics).fit(features)
    assert scaler is not None
    scaled = scaler.transform(features)

    # 4) Report
    report = services.build_report(
        ctx,
        tickers=list(tickers),
        processed=processed,
        skipped=skipped,
        n_bars=sum(len(b) for b in bars_by_ticker.values()),
        n_episodes=len(episodes),
        n_features=int(features.shape[1]),
        missing=missing,
    )
    logger.info(
        "Batch %s (%s) done: %d episodes from %d/%d tickers.",
        ctx.run_id,
        ctx.mode.value,
        len(episodes),
        len(processed),
        len(tickers),
    )

    return BatchResult(
        context=ctx,
        bars=bars_by_ticker,
        episodes=episodes,
        features=features,
        scaled=scaled,
        labels=labels,
        statistics=statistics,
        scaler=scaler,
        report=report,
    )
