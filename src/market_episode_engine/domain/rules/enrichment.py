"""Rules: raw bar normalization and indicator enrichment."""
from __future__ import annotations

import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

import numpy as np
import pandas as pd

from market_episode_engine.contract.errors import InvalidTimestamp
from market_episode_engine.contract.schemas.market import (
    NUMERIC_COLUMNS,
    ChartPoint,
    EnrichedBar,
    IndicatorSettings,
    RawBar,
)
from market_episode_engine.domain.rules.indicators import (
    compute_bollinger_bands,
    compute_ema,
    compute_obv,
    compute_rsi,
    compute_vwap,
)

logger = logging.getLogger(__name__)

# これ未満の数値は unix 秒、以上は unix ミリ秒とみなす
EPOCH_MILLIS_THRESHOLD = 1e12

_DIGITS = re.compile(r"^-?\d+(\.\d+)?$")
# ISO-8601 は日付部（YYYY-MM-DD）から始まる。"now" / "today" などのキーワードはここで弾く
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}")


def normalize_timestamp(value: Any) -> datetime:
    """バーの時刻を UTC・秒粒度の datetime に正規化する.

    Args:
        value: unix 秒 / unix ミリ秒（数値または数字のみの文字列）、ISO-8601 文字列、datetime。

    Returns:
        tz-aware（UTC）の datetime。タイムゾーン無しの入力は UTC とみなす。

    Raises:
        InvalidTimestamp: 解釈できない値。
    """
    if isinstance(value, bool) or value is None:
        raise InvalidTimestamp("Invalid time value.", context={"value": value})

    if isinstance(value, str) and _DIGITS.match(value.strip()):
        value = float(value.strip())

    try:
        if isinstance(value, (int, float, np.integer, np.floating)):
            if not math.isfinite(float(value)):
                raise InvalidTimestamp("Invalid time value.", context={"value": value})
            millis = float(value) * 1000.0 if value < EPOCH_MILLIS_THRESHOLD else float(value)
            ts = pd.Timestamp(millis, unit="ms", tz="UTC")
        elif isinstance(value, (str, datetime)):
            if isinstance(value, str):
                value = value.strip()
                if not _ISO_DATE.match(value):
                    raise InvalidTimestamp("Invalid time value.", context={"value": value})
            ts = pd.Timestamp(value)
            ts = ts.tz_localize("UTC") if ts.tzinfo is None else ts.tz_convert("UTC")
        else:
            raise InvalidTimestamp("Invalid time value.", context={"value": repr(value)})
    except (ValueError, TypeError, OverflowError) as err:
        raise InvalidTimestamp("Invalid time value.", context={"value": value}) from err

    if pd.isna(ts):
        raise InvalidTimestamp("Invalid time value.", context={"value": value})

    return ts.floor("s").to_pydatetime().astimezone(timezone.utc)


def safe_float(value: Any, fallback: float = 0.0) -> float:
    """数値化できない / 有限でない値を fallback に置き換える."""
    if value is None or isinstance(value, bool):
        return fallback
    try:
        n = float(value)
    except (TypeError, ValueError):
        return fallback
    return n if math.isfinite(n) else fallback


def merge_sources(sources: Iterable[Sequence[RawBar | Mapping[str, Any]]]) -> list[RawBar]:
    """複数ファイル分の生バーを1本に連結する（重複は enrich_bars で後勝ち解消）."""
    merged: list[RawBar] = []
    n_files = 0
    for bars in sources:
        n_files += 1
        merged.extend(_as_raw_bar(b) for b in bars)
    logger.info("Merged %d files into %d raw bars.", n_files, len(merged))
    return merged


def enrich_sources(
    sources: Iterable[Sequence[RawBar | Mapping[str, Any]]],
    *,
    settings: IndicatorSettings | None = None,
) -> list[EnrichedBar]:
    """複数ファイルを連結・重複排除してから enrichment する."""
    return enrich_bars(merge_sources(sources), settings=settings)


def enrich_bars(
    raw_bars: Sequence[RawBar | Mapping[str, Any]],
    *,
    settings: IndicatorSettings | None = None,
) -> list[EnrichedBar]:
    """生バーを正規化し、指標と z-score 正規化値を付与する.

    手順:
        1. 時刻の正規化と数値の safe cast
        2. 時刻での重複排除（後勝ち）と昇順ソート
        3. 指標計算と time での left-join（ウォームアップ中は None）
        4. 各数値列の z-score（None は統計から除外し、None のまま残す）

    Args:
        raw_bars: RawBar または RawBar 互換の dict の列。
        settings: 指標パラメータ。None なら既定値。

    Returns:
        時刻昇順・時刻一意の EnrichedBar リスト。

    Raises:
        InvalidTimestamp: 時刻を解釈できないバーが1本でもある場合（バッチ全体を中断）。
    """
    if not raw_bars:
        logger.warning("No raw bars provided.")
        return []

    cfg = settings or IndicatorSettings()

    parsed = [_parse_bar(_as_raw_bar(bar), index=i) for i, bar in enumerate(raw_bars)]

    by_time: dict[datetime, dict[str, Any]] = {}
    for row in parsed:
        by_time[row["time"]] = row
    rows = sorted(by_time.values(), key=lambda r: r["time"])
    if len(rows) != len(parsed):
        logger.info("Dropped %d duplicate bars by timestamp.", len(parsed) - len(rows))

    close_series = [ChartPoint(time=r["time"], value=r["close"]) for r in rows]
    volume_series = [ChartPoint(time=r["time"], value=r["close"], volume=r["volume"]) for r in rows]

    ema_map = {p.time: p.value for p in compute_ema(close_series, cfg.ema_period)}
    rsi_map = {p.time: p.value for p in compute_rsi(close_series, cfg.rsi_period)}
    obv_map = {p.time: p.value for p in compute_obv(volume_series)}
    vwap_map = {p.time: p.value for p in compute_vwap(volume_series)}
    bb_map = {b.time: b for b in compute_bollinger_bands(close_series, cfg.bb_period, cfg.bb_multiplier)}

    for r in rows:
        t = r["time"]
        band = bb_map.get(t)
        r["ema"] = ema_map.get(t)
        r["rsi"] = rsi_map.get(t)
        r["obv"] = obv_map.get(t)
        r["vwap"] = vwap_map.get(t)
        r["bb_upper"] = band.upper if band is not None else None
        r["bb_middle"] = band.middle if band is not None else None
        r["bb_lower"] = band.lower if band is not None else None

    frame = pd.DataFrame(rows, columns=["ticker", "time", *NUMERIC_COLUMNS])
    for col in NUMERIC_COLUMNS:
        frame[f"{col}_norm"] = zscore(frame[col])

    enriched = [EnrichedBar(**_clean_record(rec)) for rec in frame.to_dict(orient="records")]
    logger.debug("Enriched %d bars (%s).", len(enriched), cfg.model_dump())
    return enriched


def zscore(values: pd.Series) -> pd.Series:
    """母標準偏差による z-score（std が 0 / 未定義なら 1 で割る）。欠損は欠損のまま."""
    numeric = pd.to_numeric(values, errors="coerce").astype("float64")
    present = numeric.dropna()
    if present.empty:
        return numeric

    mean = float(present.mean())
    std = float(present.std(ddof=0))
    if not math.isfinite(std) or std == 0.0:
        std = 1.0
    return (numeric - mean) / std


def _as_raw_bar(bar: RawBar | Mapping[str, Any]) -> RawBar:
    if isinstance(bar, RawBar):
        return bar
    return RawBar.model_validate(dict(bar))


def _parse_bar(bar: RawBar, *, index: int) -> dict[str, Any]:
    """時刻正規化と safe cast（OHLC の欠損は close、volume の欠損は 0）."""
    try:
        time = normalize_timestamp(bar.timestamp)
    except InvalidTimestamp as err:
        raise err.with_context(index=index, ticker=bar.ticker) from err

    close = safe_float(bar.close)
    return {
        "ticker": bar.ticker,
        "time": time,
        "open": safe_float(bar.open, close),
        "high": safe_float(bar.high, close),
        "low": safe_float(bar.low, close),
        "close": close,
        "volume": safe_float(bar.volume),
    }


def _clean_record(record: Mapping[Any, Any]) -> dict[str, Any]:
    """DataFrame 由来の NaN を None に、numpy スカラーを Python 型に戻す."""
    cleaned: dict[str, Any] = {}
    for k, v in record.items():
        key = str(k)
        if key == "time":
            cleaned[key] = v.to_pydatetime() if isinstance(v, pd.Timestamp) else v
            continue
        if key == "ticker":
            cleaned[key] = None if v is None or (isinstance(v, float) and math.isnan(v)) else str(v)
            continue
        if v is None or (isinstance(v, float) and not math.isfinite(v)):
            cleaned[key] = None
            continue
        cleaned[key] = float(v)
    return cleaned
