"""Domain model: enriched bars and episodes per ticker."""
from __future__ import annotations

import logging
from typing import Any, Literal, Mapping, Sequence

import numpy as np

from market_episode_engine.config.resolver import (
    impute_strategy,
    indicator_settings,
    resolve_config,
    resolve_threshold,
)
from market_episode_engine.contract.errors import ContractError
from market_episode_engine.contract.schemas.episode import Episode
from market_episode_engine.contract.schemas.features import ImputeStrategy
from market_episode_engine.contract.schemas.market import EnrichedBar, RawBar
from market_episode_engine.domain.rules.chart_view import format_bars_table, format_episodes_table
from market_episode_engine.domain.rules.enrichment import enrich_bars
from market_episode_engine.domain.rules.episodes import build_episodes
from market_episode_engine.domain.rules.features import build_feature_matrix, compute_feature_statistics
from market_episode_engine.domain.rules.market_data import BarFetcher

logger = logging.getLogger(__name__)


class EpisodeLogic:
    """ティッカー別の enrichment 済みバーとエピソードを保持する.

    保持形式:
        ticker -> {"bars": list[EnrichedBar], "episodes": list[Episode]}
    """

    def __init__(
        self,
        *,
        config: Mapping[str, Any] | None = None,
        fetcher: BarFetcher | None = None,
    ) -> None:
        """初期化.

        Args:
            config: resolve_config 済みの設定。None の場合は既定値で解決する。
            fetcher: load_charts で使う取得器。None の場合は config の cache 設定から生成する。
        """
        self._config: dict[str, Any] = dict(config) if config is not None else resolve_config()
        self._fetcher = fetcher or BarFetcher.from_config(self._config)

        self._by_ticker: dict[str, dict[str, list[Any]]] = {}
        self._interval: str = str(self._config["episodes"]["default_interval"])
        self._is_loaded: bool = False

    @property
    def charts(self) -> dict[str, dict[str, list[Any]]]:
        """取得・計算済みのデータを返す."""
        return self._by_ticker

    @property
    def interval(self) -> str:
        return self._interval

    @property
    def is_loaded(self) -> bool:
        """データが取得・計算済みかどうかを返す."""
        return self._is_loaded

    def bars(self, ticker: str) -> list[EnrichedBar]:
        return list(self._bucket(ticker)["bars"])

    def episodes(self, ticker: str | None = None) -> list[Episode]:
        """指定ティッカー（None なら全ティッカー）のエピソードを返す."""
        if ticker is not None:
            return list(self._bucket(ticker)["episodes"])
        return [e for bucket in self._by_ticker.values() for e in bucket["episodes"]]

    def load_bars(
        self,
        ticker: str,
        raw_bars: Sequence[RawBar | Mapping[str, Any]],
        *,
        interval: str | None = None,
    ) -> list[Episode]:
        """生バー → enrichment → エピソード化して ticker 配下へ保持する.

        Args:
            ticker: 保持先のティッカー。
            raw_bars: 生バー（RawBar または互換 dict）。
            interval: しきい値表を引く時間足。None の場合は設定の既定値。

        Returns:
            構築したエピソード。

        Raises:
            InvalidTimestamp: 時刻を解釈できないバーがある場合。
            ConfigurationError: しきい値表に無い時間足。
        """
        key = interval or self._interval
        threshold = resolve_threshold(self._config, key)

        enriched = enrich_bars(raw_bars, settings=indicator_settings(self._config))
        episodes = build_episodes(enriched, threshold)

        self._by_ticker[ticker] = {"bars": enriched, "episodes": episodes}
        self._interval = key
        self._is_loaded = True
        logger.info("Loaded %s: %d bars, %d episodes.", ticker, len(enriched), len(episodes))
        return episodes

    def load_charts(
        self,
        tickers: str | list[str],
        *,
        start: str | None = None,
        end: str | None = None,
        interval: str = "1d",
    ) -> None:
        """取得→enrichment→エピソード化を ticker ごとに行う.

        Args:
            tickers: 取得・計算対象のティッカーまたはティッカーリスト。
            start: 取得開始日（YYYY-MM-DD形式）。Noneの場合、デフォルト期間。
            end: 取得終了日（YYYY-MM-DD形式）。Noneの場合、デフォルト期間。
            interval: 取得間隔。"1d", "1wk", "1mo"など。

        Raises:
            ExternalDataError: 取得に失敗した場合。
            SkipTicker: 取得結果が空の場合。
        """
        ticker_list = [tickers] if isinstance(tickers, str) else tickers

        for ticker in ticker_list:
            raw = self._fetcher.fetch(ticker, start=start, end=end, interval=interval)
            self.load_bars(ticker, raw, interval=interval)

    def feature_matrix(
        self,
        strategy: ImputeStrategy | str | None = None,
        *,
        ticker: str | None = None,
    ) -> np.ndarray:
        """保持しているエピソードの特徴量行列（FEATURES 順）.

        mean/median 補完の統計は、対象エピソード自身から求める（学習用途）。
        """
        resolved = ImputeStrategy(strategy) if strategy is not None else impute_strategy(self._config)
        episodes = self.episodes(ticker)
        statistics = None
        if resolved in (ImputeStrategy.MEAN, ImputeStrategy.MEDIAN):
            statistics = compute_feature_statistics(episodes)
        return build_feature_matrix(episodes, resolved, statistics=statistics)

    def scan(
        self,
        *,
        ticker: str,
        view: Literal["bars", "episodes"],
        start: str | None = None,
        end: str | None = None,
        last_n: int | None = None,
        tablefmt: str | None = None,
    ) -> str:
        """指定した view をテーブルとして表示する.

        Args:
            ticker: 対象ティッカー。
            view: 表示種別（"bars" | "episodes"）。
            start: 開始時刻キー。None の場合は制限なし。
            end: 終了時刻キー。None の場合は制限なし。
            last_n: 直近 n 件のみ表示。None の場合は設定値。
            tablefmt: `tabulate` の tablefmt。None の場合は設定値。

        Returns:
            フォーマット済み表文字列。

        Raises:
            ContractError: データ未ロード、ティッカー不明、view が不正な場合。
        """
        bucket = self._bucket(ticker)
        report_cfg = self._config["report"]
        n = report_cfg["last_n"] if last_n is None else last_n
        fmt = tablefmt or report_cfg["tablefmt"]

        if view == "bars":
            return format_bars_table(bars=bucket["bars"], start=start, end=end, last_n=n, tablefmt=fmt)
        if view == "episodes":
            return format_episodes_table(episodes=bucket["episodes"], start=start, end=end, last_n=n, tablefmt=fmt)
        raise ContractError(f"Invalid view: {view}", context={"allowed": ["bars", "episodes"]})

    def _bucket(self, ticker: str) -> dict[str, list[Any]]:
        if not self._is_loaded:
            raise ContractError("Charts are not loaded. Call load_bars() or load_charts() first.")
        if ticker not in self._by_ticker:
            raise ContractError(f"Ticker not found: {ticker}")
        return self._by_ticker[ticker]
