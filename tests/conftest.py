from __future__ import annotations

from typing import Callable, Sequence

import pytest

from market_episode_engine.config.resolver import resolve_config

# 2023-11-14T22:13:20Z
BASE_EPOCH = 1_700_000_000
DAY = 86_400

# 上昇 → 下落 → 小反発 の7本
SCENARIO_CLOSES = [100.0, 103.0, 106.0, 101.0, 97.0, 99.0, 102.0]


def _make_raw_bars(
    closes: Sequence[float],
    *,
    ticker: str | None = "TEST",
    start: int = BASE_EPOCH,
    step: int = DAY,
    volume: float | Sequence[float] = 1000.0,
) -> list[dict]:
    volumes = list(volume) if isinstance(volume, (list, tuple)) else [volume] * len(closes)
    bars = []
    for i, (c, v) in enumerate(zip(closes, volumes)):
        bars.append(
            {
                "ticker": ticker,
                "start": start + i * step,
                "open": c,
                "high": c * 1.01,
                "low": c * 0.99,
                "close": c,
                "volume": v,
            }
        )
    return bars


@pytest.fixture
def make_raw_bars() -> Callable[..., list[dict]]:
    return _make_raw_bars


@pytest.fixture
def scenario_closes() -> list[float]:
    return list(SCENARIO_CLOSES)


@pytest.fixture
def config() -> dict:
    return resolve_config()


@pytest.fixture
def write_bars_csv(tmp_path):
    """closes から生バー CSV を書き、パスを返す."""

    def _write(name: str, closes: Sequence[float], *, with_ticker: bool = False) -> str:
        path = tmp_path / name
        header = "start,open,high,low,close,volume"
        if with_ticker:
            header = "ticker," + header
        lines = [header]
        for i, c in enumerate(closes):
            row = f"{BASE_EPOCH + i * DAY},{c},{c * 1.01},{c * 0.99},{c},1000"
            lines.append(("CSVT," + row) if with_ticker else row)
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return str(path)

    return _write
