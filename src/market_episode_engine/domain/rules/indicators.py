"""Rules: technical indicators over time-ordered point series.

各関数は純粋関数で、入力系列の末尾揃え（各ウィンドウの最終バーの time）で結果を返す。
ウォームアップ区間（先頭 period-1 点など）は出力しない。
"""
from __future__ import annotations

import math
from typing import Any, Mapping, Sequence

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from market_episode_engine.contract.errors import ContractError
from market_episode_engine.contract.schemas.market import BandPoint, ChartPoint, MacdSeries

# |value| がこれ以上の点はチャート上「無効」とみなす
_MAX_VALID_ABS = 9e15


def normalize_close_series(rows: Sequence[Mapping[str, Any]]) -> list[ChartPoint]:
    """OHLC 行を終値系列に落とす.

    Args:
        rows: time（無ければ date の先頭10文字）と close（無ければ value）を持つ行。

    Returns:
        数値の終値を持つ行だけの ChartPoint リスト。
    """
    out: list[ChartPoint] = []
    for row in rows:
        time = row.get("time")
        if not time and isinstance(row.get("date"), str):
            time = row["date"][:10]
        value = row.get("close")
        if not _is_number(value):
            value = row.get("value")
        if time is None or not _is_number(value):
            continue
        out.append(ChartPoint(time=time, value=float(value)))
    return out


def filter_valid_points(points: Sequence[ChartPoint]) -> list[ChartPoint]:
    """None/NaN/極端値の点を除く（チャート描画用）."""
    return [
        p
        for p in points
        if p.value is not None and not math.isnan(p.value) and abs(p.value) < _MAX_VALID_ABS
    ]


def compute_sma(points: Sequence[ChartPoint], period: int) -> list[ChartPoint]:
    """単純移動平均."""
    _check_period(period)
    values = _values(points)
    if len(values) < period:
        return []

    means = sliding_window_view(values, period).mean(axis=1)
    return _to_points(points, means, offset=period - 1)


def compute_wma(points: Sequence[ChartPoint], period: int) -> list[ChartPoint]:
    """加重移動平均（重み 1..period、直近ほど重い）."""
    _check_period(period)
    values = _values(points)
    if len(values) < period:
        return []

    weights = np.arange(1, period + 1, dtype="float64")
    denominator = period * (period + 1) / 2
    wma = sliding_window_view(values, period) @ weights / denominator
    return _to_points(points, wma, offset=period - 1)


def compute_ema(points: Sequence[ChartPoint], period: int) -> list[ChartPoint]:
    """指数移動平均.

    初期値は先頭 period 点の SMA。出力は index=period から始まる（初期値自体は出さない）。
    """
    _check_period(period)
    values = _values(points)
    if len(values) <= period:
        return []

    k = 2.0 / (period + 1)
    ema_prev = float(values[:period].sum()) / period

    out: list[ChartPoint] = []
    for i in range(period, len(values)):
        ema = float(values[i]) * k + ema_prev * (1.0 - k)
        out.append(ChartPoint(time=points[i].time, value=ema))
        ema_prev = ema
    return out


def compute_rsi(points: Sequence[ChartPoint], period: int) -> list[ChartPoint]:
    """RSI（直近 period+1 点 = period 個の差分の平均上昇幅/平均下落幅）.

    平均下落幅が 0 の場合はゼロ除算ガードが働き、上昇があれば RSI は 100 に張り付く。
    上昇も下落も無い（横ばい）窓は RS = 0 として 0 を返す。
    """
    _check_period(period)
    values = _values(points)
    if len(values) <= period:
        return []

    diffs = np.diff(values)
    windows = sliding_window_view(diffs, period)
    avg_gain = np.where(windows > 0, windows, 0.0).sum(axis=1) / period
    avg_loss = np.where(windows < 0, -windows, 0.0).sum(axis=1) / period

    out: list[ChartPoint] = []
    for j, (gain, loss) in enumerate(zip(avg_gain, avg_loss)):
        if loss == 0:
            rsi = 100.0 if gain > 0 else 0.0
        else:
            rsi = 100.0 - 100.0 / (1.0 + float(gain) / float(loss))
        out.append(ChartPoint(time=points[j + period].time, value=rsi))
    return out


def compute_macd(
    points: Sequence[ChartPoint],
    *,
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> MacdSeries:
    """MACD(fast, slow, signal).

    MACD = EMA(fast) - EMA(slow)。長い方の系列の先頭を削って末尾で揃える。
    """
    if fast >= slow:
        raise ContractError("MACD fast period must be shorter than slow period.", context={"fast": fast, "slow": slow})

    ema_fast = compute_ema(points, fast)
    ema_slow = compute_ema(points, slow)
    macd = _aligned_difference(ema_fast, ema_slow)

    signal_line = compute_ema(macd, signal)
    histogram = _aligned_difference(macd, signal_line)

    return MacdSeries(macd=macd, signal=signal_line, histogram=histogram)


def compute_obv(points: Sequence[ChartPoint]) -> list[ChartPoint]:
    """On-Balance Volume（0 から累積。出力は2点目から）."""
    out: list[ChartPoint] = []
    obv = 0.0
    for i in range(1, len(points)):
        prev = points[i - 1]
        curr = points[i]
        volume = curr.volume or 0.0
        if _gt(curr.value, prev.value):
            obv += volume
        elif _gt(prev.value, curr.value):
            obv -= volume
        out.append(ChartPoint(time=curr.time, value=obv))
    return out


def compute_vwap(points: Sequence[ChartPoint]) -> list[ChartPoint]:
    """累積 VWAP（先頭から）.

    value/volume が数値でない点は飛ばす（累積状態は維持）。
    累積出来高が 0 の間は値が定義できないため出力しない。
    """
    out: list[ChartPoint] = []
    cumulative_pv = 0.0
    cumulative_volume = 0.0

    for p in points:
        if not _is_number(p.value) or not _is_number(p.volume):
            continue
        assert p.value is not None
        assert p.volume is not None

        cumulative_pv += p.value * p.volume
        cumulative_volume += p.volume
        if cumulative_volume == 0:
            continue
        out.append(ChartPoint(time=p.time, value=cumulative_pv / cumulative_volume))
    return out


def compute_bollinger_bands(
    points: Sequence[ChartPoint],
    period: int = 20,
    multiplier: float = 2.0,
) -> list[BandPoint]:
    """Bollinger Bands（移動平均 ± multiplier × 母標準偏差）."""
    _check_period(period)
    values = _values(points)
    if len(values) < period:
        return []

    windows = sliding_window_view(values, period)
    means = windows.mean(axis=1)
    stds = windows.std(axis=1)

    out: list[BandPoint] = []
    for j, (mean, std) in enumerate(zip(means, stds)):
        out.append(
            BandPoint(
                time=points[j + period - 1].time,
                upper=float(mean + multiplier * std),
                middle=float(mean),
                lower=float(mean - multiplier * std),
            )
        )
    return out


def _aligned_difference(longer: list[ChartPoint], shorter: list[ChartPoint]) -> list[ChartPoint]:
    """末尾揃えで longer - shorter を計算する（time は shorter 側）."""
    offset = len(longer) - len(shorter)
    out: list[ChartPoint] = []
    for i, point in enumerate(shorter):
        a = longer[i + offset].value
        b = point.value
        assert a is not None and b is not None
        out.append(ChartPoint(time=point.time, value=a - b))
    return out


def _values(points: Sequence[ChartPoint]) -> np.ndarray:
    return np.array(
        [np.nan if p.value is None else p.value for p in points],
        dtype="float64",
    )


def _to_points(points: Sequence[ChartPoint], values: np.ndarray, *, offset: int) -> list[ChartPoint]:
    return [ChartPoint(time=points[j + offset].time, value=float(v)) for j, v in enumerate(values)]


def _check_period(period: int) -> None:
    if not isinstance(period, int) or isinstance(period, bool) or period < 1:
        raise ContractError("Indicator period must be a positive int.", context={"period": period})


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _gt(a: float | None, b: float | None) -> bool:
    if a is None or b is None:
        return False
    return a > b
