"""Rules: market data fetching and conversion to raw bars."""
from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

import pandas as pd
import yfinance as yf

from market_episode_engine.contract.errors import DataError, ExternalDataError, SkipTicker
from market_episode_engine.contract.schemas.market import RawBar
from market_episode_engine.data.cache import TTLCache

logger = logging.getLogger(__name__)

FetchKey = tuple[str, str | None, str | None, str]


def fetch_ohlcv_frame(
    *,
    ticker: str,
    start: str | None,
    end: str | None,
    interval: str,
) -> pd.DataFrame:
    """yfinanceからOHLCVを取得し、正規化済みDataFrameを返す.

    Args:
        ticker: ティッカーシンボル.
        start: 開始日（YYYY-MM-DD形式）またはNone.
        end: 終了日（YYYY-MM-DD形式）またはNone.
        interval: データ間隔（例: "5m", "1h", "1d"）.

    Returns:
        pd.DataFrame: columns=["date","open","high","low","close","volume"] を満たす。

    Raises:
        ExternalDataError: 取得失敗（retryable=True。通信・レート制限の可能性がある）。
        SkipTicker: 取得結果が空。
        DataError: 必要な列が無い（retryable ではない）。
    """
    try:
        df = yf.download(
            ticker,
            start=start,
            end=end,
            interval=interval,
            auto_adjust=True,
            progress=False,
        )
    except Exception as err:  # noqa: BLE001
        raise ExternalDataError(
            "Failed to download OHLCV via yfinance.",
            retryable=True,
            context={"ticker": ticker, "start": start, "end": end, "interval": interval},
        ) from err

    if df is None or df.empty:
        raise SkipTicker(
            "OHLCV is empty.",
            context={"ticker": ticker, "start": start, "end": end, "interval": interval},
        )

    # MultiIndex: ('Open','AAPL') 等を 'Open' に潰す
    if isinstance(df.columns, pd.MultiIndex):
        df = df.copy()
        df.columns = df.columns.get_level_values(0)

    needed = {"Open", "High", "Low", "Close", "Volume"}
    if not needed.issubset(set(df.columns)):
        raise DataError(
            "OHLCV columns are missing.",
            context={"ticker": ticker, "columns": list(df.columns), "required": sorted(needed)},
        )

    df2 = df.reset_index().rename(
        columns={
            "Date": "date",
            "Datetime": "date",
            "Open": "open",
            "High": "high",
            "Low": "low",
            "Close": "close",
            "Volume": "volume",
        }
    )

    required = {"date", "open", "high", "low", "close", "volume"}
    if not required.issubset(set(df2.columns)):
        raise DataError(
            "OHLCV normalized columns are missing.",
            context={"ticker": ticker, "columns": list(df2.columns), "required": sorted(required)},
        )

    return df2[["date", "open", "high", "low", "close", "volume"]].copy()


def frame_to_raw_bars(*, ohlcv_frame: pd.DataFrame, ticker: str | None) -> list[RawBar]:
    """正規化済みOHLCVフレームを RawBar のリストにする（数値の検証は enrichment 側）."""
    bars: list[RawBar] = []
    for row in ohlcv_frame.itertuples(index=False):
        dt = getattr(row, "date")
        bars.append(
            RawBar(
                ticker=ticker,
                timestamp=dt.to_pydatetime() if isinstance(dt, pd.Timestamp) else dt,
                open=getattr(row, "open"),
                high=getattr(row, "high"),
                low=getattr(row, "low"),
                close=getattr(row, "close"),
                volume=getattr(row, "volume"),
            )
        )
    return bars


class BarFetcher:
    """ティッカー別の生バー取得（TTL/LRU キャッシュつき）.

    キャッシュはインスタンスが所有する（モジュール global には置かない）。
    """

    def __init__(
        self,
        *,
        cache: TTLCache[FetchKey, list[RawBar]] | None = None,
        download: Callable[..., pd.DataFrame] = fetch_ohlcv_frame,
    ) -> None:
        self._cache: TTLCache[FetchKey, list[RawBar]] = cache or TTLCache(capacity=128, ttl_seconds=60.0)
        self._download = download

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "BarFetcher":
        """resolve_config の cache セクションから生成する."""
        cache_cfg = config.get("cache", {})
        return cls(
            cache=TTLCache(
                capacity=int(cache_cfg.get("capacity", 128)),
                ttl_seconds=float(cache_cfg.get("ttl_seconds", 60.0)),
            )
        )

    def fetch(
        self,
        ticker: str,
        *,
        start: str | None = None,
        end: str | None = None,
        interval: str = "1d",
    ) -> list[RawBar]:
        key: FetchKey = (ticker, start, end, interval)
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("Cache hit for %s.", key)
            return list(cached)

        frame = self._download(ticker=ticker, start=start, end=end, interval=interval)
        bars = frame_to_raw_bars(ohlcv_frame=frame, ticker=ticker)
        self._cache.set(key, bars)
        logger.info("Fetched %d bars for %s (%s).", len(bars), ticker, interval)
        return list(bars)
