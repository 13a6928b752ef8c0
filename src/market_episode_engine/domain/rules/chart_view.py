"""Rules: pretty view for enriched bars and episodes."""
from __future__ import annotations

from typing import Sequence

from tabulate import tabulate  # type: ignore

from market_episode_engine.contract.schemas.episode import Episode
from market_episode_engine.contract.schemas.market import EnrichedBar


BAR_COLUMNS: tuple[str, ...] = (
    "open",
    "high",
    "low",
    "close",
    "volume",
    "ema",
    "rsi",
    "obv",
    "vwap",
    "bb_upper",
    "bb_middle",
    "bb_lower",
)

EPISODE_COLUMNS: tuple[str, ...] = (
    "direction",
    "trend_quality",
    "duration",
    "total_return",
    "lr_slope_5_norm",
    "lr_fit_r2_5",
    "avg_rsi",
    "avg_volatility",
    "obv_change",
)


def format_bars_table(
    *,
    bars: Sequence[EnrichedBar],
    start: str | None = None,
    end: str | None = None,
    last_n: int = 20,
    tablefmt: str = "github",
    columns: Sequence[str] | None = None,
) -> str:
    """enrichment 済みバーをテーブル表示用文字列に整形する."""
    cols = list(columns if columns is not None else BAR_COLUMNS)
    selected = _select(bars, key=lambda b: b.time_key, start=start, end=end, last_n=last_n)

    headers = ["time", *cols]
    rows: list[list[object]] = []
    for bar in selected:
        # 欠損（ウォームアップ中の指標）は空で出す
        rows.append([bar.time_key, *(getattr(bar, c, None) for c in cols)])

    return tabulate(rows, headers=headers, tablefmt=tablefmt, floatfmt=".6f")


def format_episodes_table(
    *,
    episodes: Sequence[Episode],
    start: str | None = None,
    end: str | None = None,
    last_n: int = 20,
    tablefmt: str = "github",
) -> str:
    """エピソードをテーブル表示用文字列に整形する.

    Args:
        episodes: エピソード列（時刻順）
        start: 開始時刻キー（YYYY-MM-DD... の前方比較）, Noneの場合は最初から
        end: 終了時刻キー, Noneの場合は最後まで
        last_n: 最後からN件だけ表示（0以下の場合は全件）
        tablefmt: tabulateのtablefmt指定

    Returns:
        整形済みテーブル文字列
    """
    selected = _select(
        episodes,
        key=lambda e: e.start_features.time_key,
        start=start,
        end=end,
        last_n=last_n,
    )

    headers = ["start", "end", *EPISODE_COLUMNS]
    rows: list[list[object]] = []
    for ep in selected:
        row: list[object] = [ep.start_features.time_key, ep.end_features.time_key]
        for c in EPISODE_COLUMNS:
            v = getattr(ep, c)
            row.append(getattr(v, "value", v))
        rows.append(row)

    return tabulate(rows, headers=headers, tablefmt=tablefmt, floatfmt=".6f")


def _select(items, *, key, start: str | None, end: str | None, last_n: int):  # type: ignore[no-untyped-def]
    selected = list(items)
    if start is not None:
        selected = [x for x in selected if key(x) >= start]
    if end is not None:
        selected = [x for x in selected if key(x) <= end]
    if last_n > 0:
        selected = selected[-last_n:]
    return selected
