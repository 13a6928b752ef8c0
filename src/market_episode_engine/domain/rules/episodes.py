"""Rules: zig-zag swing detection and episode construction.

スイング検出は前方1回走査の状態機械:
    - direction: 最初にしきい値を超える値動きまで None
    - anchor: 現在のレッグの極値（index / price）

設計意図:
- エピソードはスイング点で系列を分割したものなので、隣接エピソードは境界バーを共有する。
- 退化区間（長さ1、分母0）は例外にせず中立値（0）で吸収する。
- 入力は時刻昇順であることが前提（呼び出し側の責務）。
"""
from __future__ import annotations

import logging
import math
from typing import Iterable, Sequence

import numpy as np

from market_episode_engine.contract.errors import ContractError
from market_episode_engine.contract.schemas.episode import (
    Direction,
    Episode,
    SwingPoint,
    SwingType,
    TrendQuality,
)
from market_episode_engine.contract.schemas.market import EnrichedBar

logger = logging.getLogger(__name__)

# R² がこれを超えるとトレンド品質 strong
STRONG_TREND_R2 = 0.7


def detect_swings(closes: Sequence[float], threshold_pct: float) -> list[SwingPoint]:
    """終値系列からジグザグのスイング点を検出する.

    Args:
        closes: 時刻昇順の終値。
        threshold_pct: 反転とみなす相対変化（比率。0.02 = 2%）。

    Returns:
        index 昇順のスイング点。
        - 最初に方向が決まった時点で、起点（index=0）を最初のスイングとして記録する
        - 走査後、最後の anchor を最終スイングとして必ず追加する
        - 方向が一度も決まらない場合は [0, n-1]（いずれも trough）として系列全体を1区間にする
    """
    _check_threshold(threshold_pct)

    n = len(closes)
    if n == 0:
        return []

    swings: list[SwingPoint] = []
    anchor_idx = 0
    anchor_price = float(closes[0])
    direction: Direction | None = None

    for i in range(1, n):
        price = float(closes[i])
        change = _relative_change(price, anchor_price)

        if direction is None:
            if abs(change) >= threshold_pct:
                direction = Direction.UP if change > 0 else Direction.DOWN
                origin_type = SwingType.TROUGH if direction is Direction.UP else SwingType.PEAK
                swings.append(SwingPoint(index=0, price=float(closes[0]), type=origin_type))
                anchor_idx, anchor_price = i, price
            continue

        if direction is Direction.UP and change <= -threshold_pct:
            swings.append(SwingPoint(index=anchor_idx, price=anchor_price, type=SwingType.PEAK))
            direction = Direction.DOWN
            anchor_idx, anchor_price = i, price
        elif direction is Direction.DOWN and change >= threshold_pct:
            swings.append(SwingPoint(index=anchor_idx, price=anchor_price, type=SwingType.TROUGH))
            direction = Direction.UP
            anchor_idx, anchor_price = i, price
        elif direction is Direction.UP and price > anchor_price:
            anchor_idx, anchor_price = i, price
        elif direction is Direction.DOWN and price < anchor_price:
            anchor_idx, anchor_price = i, price

    if direction is None:
        # 方向未確定: 慣例で trough とし、系列全体を1区間にする
        swings.append(SwingPoint(index=0, price=float(closes[0]), type=SwingType.TROUGH))
        if n > 1:
            swings.append(SwingPoint(index=n - 1, price=float(closes[-1]), type=SwingType.TROUGH))
        return swings

    final_type = SwingType.PEAK if direction is Direction.UP else SwingType.TROUGH
    swings.append(SwingPoint(index=anchor_idx, price=anchor_price, type=final_type))
    return swings


def linear_regression(values: Sequence[float]) -> tuple[float, float]:
    """バー番号（0..n-1）に対する最小二乗回帰の (slope, R²).

    分母が 0 になる場合（n<=1、全値同一など）は slope=0 / R²=0 に倒す。
    """
    n = len(values)
    if n == 0:
        return 0.0, 0.0

    y = np.asarray(values, dtype="float64")
    x = np.arange(n, dtype="float64")
    x_mean = x.mean()
    y_mean = y.mean()

    num = float(((x - x_mean) * (y - y_mean)).sum())
    den = float(((x - x_mean) ** 2).sum())
    slope = 0.0 if den == 0 else num / den
    intercept = y_mean - slope * x_mean

    ss_tot = float(((y - y_mean) ** 2).sum())
    ss_res = float(((y - (slope * x + intercept)) ** 2).sum())
    r2 = 0.0 if ss_tot == 0 else 1.0 - ss_res / ss_tot
    return slope, r2


def build_episodes(bars: Sequence[EnrichedBar], threshold_pct: float) -> list[Episode]:
    """enrichment 済みバーをスイング間のエピソードに分割する.

    Args:
        bars: 時刻昇順の EnrichedBar。
        threshold_pct: 反転しきい値（比率）。

    Returns:
        時刻順のエピソード。スイングが2点未満なら空。

    Raises:
        ContractError: threshold_pct が有限の正数でない。
    """
    _check_threshold(threshold_pct)
    if not bars:
        return []

    swings = detect_swings([b.close for b in bars], threshold_pct)
    logger.debug("Detected %d swing points from %d bars (threshold=%s).", len(swings), len(bars), threshold_pct)

    episodes: list[Episode] = []
    for a, b in zip(swings, swings[1:]):
        episode = build_episode(bars, a.index, b.index)
        logger.debug(
            "Episode %s: dir=%s return=%.4f slope=%.4f r2=%.3f duration=%d",
            episode.episode_id,
            episode.direction.value,
            episode.total_return,
            episode.lr_slope_5,
            episode.lr_fit_r2_5,
            episode.duration,
        )
        episodes.append(episode)

    _log_summary(episodes)
    return episodes


def build_episode(bars: Sequence[EnrichedBar], start_idx: int, end_idx: int) -> Episode:
    """bars[start_idx..end_idx]（両端含む）を1エピソードに集計する."""
    if start_idx < 0 or end_idx >= len(bars) or start_idx > end_idx:
        raise ContractError(
            "Invalid episode bounds.",
            context={"start_idx": start_idx, "end_idx": end_idx, "n_bars": len(bars)},
        )

    segment = bars[start_idx : end_idx + 1]
    start = bars[start_idx]
    exit_ = bars[end_idx]

    closes = [r.close for r in segment]
    slope, r2 = linear_regression(closes)

    return Episode(
        ticker=start.ticker,
        episode_id=episode_id(start.ticker, start.time_key, exit_.time_key),
        start_time=start.time,
        end_time=exit_.time,
        duration=end_idx - start_idx + 1,
        direction=_direction(start.close, exit_.close),
        total_return=exit_.close / start.close - 1.0 if start.close != 0 else 0.0,
        lr_slope_5=slope,
        lr_slope_5_norm=slope / (start.close or 1.0),
        lr_fit_r2_5=r2,
        trend_quality=TrendQuality.STRONG if r2 > STRONG_TREND_R2 else TrendQuality.WEAK,
        start_features=start,
        end_features=exit_,
        avg_volume=_mean([r.volume for r in segment]) or 0.0,
        avg_volume_norm=_mean([r.volume_norm for r in segment]),
        max_volume=max(r.volume for r in segment),
        avg_rsi=_mean([r.rsi for r in segment]),
        avg_rsi_norm=_mean([r.rsi_norm for r in segment]),
        avg_volatility=_mean([_ratio(r.high - r.low, r.close) for r in segment]) or 0.0,
        avg_volatility_norm=_mean([_ratio(r.high - r.low, r.close_norm) for r in segment]) or 0.0,
        obv_change=(exit_.obv or 0.0) - (start.obv or 0.0),
        obv_change_norm=(exit_.obv_norm or 0.0) - (start.obv_norm or 0.0),
        avg_vwap=_mean([r.vwap for r in segment]),
        avg_vwap_norm=_mean([r.vwap_norm for r in segment]),
        price_start=start.close,
        price_end=exit_.close,
        price_delta=exit_.close - start.close,
        price_start_norm=start.close_norm,
        price_end_norm=exit_.close_norm,
        rsi_start=start.rsi,
        rsi_end=exit_.rsi,
        rsi_start_norm=start.rsi_norm,
        rsi_end_norm=exit_.rsi_norm,
        vwap_start=start.vwap,
        vwap_end=exit_.vwap,
        vwap_start_norm=start.vwap_norm,
        vwap_end_norm=exit_.vwap_norm,
        obv_start=start.obv,
        obv_end=exit_.obv,
        obv_start_norm=start.obv_norm,
        obv_end_norm=exit_.obv_norm,
        ema_start=start.ema,
        ema_end=exit_.ema,
        ema_start_norm=start.ema_norm,
        ema_end_norm=exit_.ema_norm,
    )


def episode_id(ticker: str | None, start_key: str, end_key: str) -> str:
    """ticker と始点・終点の時刻キーだけから決まる ID（再実行で同一）."""
    return f"{ticker or 'UNKNOWN'}_{start_key}_{end_key}"


def _direction(start_close: float, end_close: float) -> Direction:
    if end_close > start_close:
        return Direction.UP
    if end_close < start_close:
        return Direction.DOWN
    return Direction.FLAT


def _relative_change(price: float, anchor_price: float) -> float:
    if anchor_price == 0:
        return 0.0
    return (price - anchor_price) / anchor_price


def _ratio(num: float, den: float | None) -> float:
    if den is None or den == 0:
        return 0.0
    return num / den


def _mean(values: Iterable[float | None]) -> float | None:
    """None を除いた算術平均（1つも無ければ None）."""
    present = [v for v in values if v is not None]
    if not present:
        return None
    return sum(present) / len(present)


def _check_threshold(threshold_pct: float) -> None:
    if (
        isinstance(threshold_pct, bool)
        or not isinstance(threshold_pct, (int, float))
        or not math.isfinite(threshold_pct)
        or threshold_pct <= 0
    ):
        raise ContractError(
            "Reversal threshold must be a finite number > 0.",
            context={"threshold_pct": threshold_pct},
        )


def _log_summary(episodes: Sequence[Episode]) -> None:
    counts = {d: 0 for d in Direction}
    for e in episodes:
        counts[e.direction] += 1
    avg_return = sum(e.total_return for e in episodes) / (len(episodes) or 1)
    logger.info(
        "Built %d episodes. up=%d, down=%d, flat=%d, avgReturn=%.4f",
        len(episodes),
        counts[Direction.UP],
        counts[Direction.DOWN],
        counts[Direction.FLAT],
        avg_return,
    )
