"""CSV の取り込みと書き出し（生バー / enrichment 済みバー / エピソード / 特徴量）。

Rules:
    - 取り込みは文字列のまま RawBar に渡し、数値化・時刻解釈は enrichment に任せる
    - ticker 列が無いファイルは、ファイル名の先頭（最初の "_" まで）を ticker とする
    - 書き出しの列順は contract（NUMERIC_COLUMNS / FEATURES）に従う
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Sequence

import numpy as np
import pandas as pd
from pydantic import ValidationError

from market_episode_engine.contract.errors import DataError, DimensionMismatch
from market_episode_engine.contract.schemas.episode import Episode
from market_episode_engine.contract.schemas.features import FEATURES
from market_episode_engine.contract.schemas.market import (
    NUMERIC_COLUMNS,
    EnrichedBar,
    RawBar,
    format_time_key,
)

logger = logging.getLogger(__name__)

ENRICHED_COLUMNS: tuple[str, ...] = (
    "ticker",
    "time",
    *NUMERIC_COLUMNS,
    *(f"{c}_norm" for c in NUMERIC_COLUMNS),
)


def ticker_from_filename(path: str | Path) -> str:
    """ファイル名の先頭（最初の "_" まで）。例: AAPL_1d_2024.csv -> AAPL."""
    return Path(path).stem.split("_")[0]


def read_raw_bars_csv(path: str | Path, ticker: str | None = None) -> list[RawBar]:
    """CSV を RawBar のリストとして読む.

    Args:
        path: CSV ファイルパス（ヘッダ行必須）。
        ticker: 行に ticker が無い場合に使うティッカー。None の場合はファイル名から推定する。

    Raises:
        DataError: ファイルが読めない、または必須列（時刻 / close）が無い。
    """
    src = Path(path)
    try:
        frame = pd.read_csv(src, dtype=str, keep_default_na=False)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as err:
        raise DataError("Failed to read CSV.", context={"path": str(src)}) from err

    frame.columns = [str(c).strip() for c in frame.columns]
    fallback_ticker = ticker or ticker_from_filename(src)

    bars: list[RawBar] = []
    for i, rec in enumerate(frame.to_dict(orient="records")):
        cleaned: dict[str, Any] = {k: (None if v == "" else v) for k, v in rec.items()}
        try:
            bar = RawBar.model_validate(cleaned)
        except ValidationError as err:
            raise DataError(
                "CSV row is missing required columns.",
                context={"path": str(src), "row": i, "columns": list(frame.columns)},
            ) from err
        if bar.ticker is None:
            bar = bar.model_copy(update={"ticker": fallback_ticker})
        bars.append(bar)

    logger.info("Read %d raw bars from %s.", len(bars), src)
    return bars


def enriched_frame(bars: Sequence[EnrichedBar]) -> pd.DataFrame:
    """EnrichedBar を ENRICHED_COLUMNS 順の DataFrame にする（time は秒粒度キー）."""
    rows = []
    for bar in bars:
        rec = bar.model_dump()
        rec["time"] = bar.time_key
        rows.append(rec)
    return pd.DataFrame(rows, columns=list(ENRICHED_COLUMNS))


def write_enriched_csv(bars: Sequence[EnrichedBar], path: str | Path) -> Path:
    out = _prepare(path)
    enriched_frame(bars).to_csv(out, index=False)
    logger.info("Wrote %d enriched bars to %s.", len(bars), out)
    return out


def episodes_frame(episodes: Sequence[Episode]) -> pd.DataFrame:
    """Episode を1行1エピソードの DataFrame にする（始点・終点のバー全体は含めない）."""
    rows = []
    for ep in episodes:
        rec = ep.model_dump(exclude={"start_features", "end_features"})
        rec["start_time"] = format_time_key(ep.start_time)
        rec["end_time"] = format_time_key(ep.end_time)
        rec["direction"] = ep.direction.value
        rec["trend_quality"] = ep.trend_quality.value
        rows.append(rec)

    columns = [name for name in Episode.model_fields if name not in ("start_features", "end_features")]
    return pd.DataFrame(rows, columns=columns)


def write_episodes_csv(episodes: Sequence[Episode], path: str | Path) -> Path:
    out = _prepare(path)
    episodes_frame(episodes).to_csv(out, index=False)
    logger.info("Wrote %d episodes to %s.", len(episodes), out)
    return out


def write_feature_csv(
    features: np.ndarray,
    path: str | Path,
    *,
    labels: Sequence[str] | None = None,
) -> Path:
    """特徴量行列を FEATURES ヘッダつきで書き出す（labels があれば末尾に label 列）.

    Raises:
        DimensionMismatch: 列数が len(FEATURES) と異なる、または labels の行数が合わない。
    """
    matrix = np.asarray(features, dtype="float64")
    if matrix.size == 0:
        matrix = matrix.reshape(0, len(FEATURES))
    if matrix.ndim != 2 or matrix.shape[1] != len(FEATURES):
        raise DimensionMismatch(
            "Feature matrix width does not match FEATURES.",
            context={"expected": len(FEATURES), "got": tuple(matrix.shape)},
        )

    frame = pd.DataFrame(matrix, columns=list(FEATURES))
    if labels is not None:
        if len(labels) != matrix.shape[0]:
            raise DimensionMismatch(
                "Label count does not match feature rows.",
                context={"expected": int(matrix.shape[0]), "got": len(labels)},
            )
        frame["label"] = list(labels)

    out = _prepare(path)
    frame.to_csv(out, index=False)
    logger.info("Wrote %d feature rows to %s.", matrix.shape[0], out)
    return out


def _prepare(path: str | Path) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    return out
