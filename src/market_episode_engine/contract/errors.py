"""Market Episode Engine における例外定義モジュール.

Purpose:
    - 契約違反（API の誤用）とデータ起因の失敗を明確に区別する
    - バッチ制御（ティッカー単位のスキップ / 縮退 / 停止）を例外の種類で表現する

Notes:
    - 例外メッセージは英語（ログ/CI の一貫性）。
    - 退化したセグメント（長さ1、分母0など）は例外にせず、中立値で吸収する。
"""

from __future__ import annotations

import copy
from typing import Any, Literal, Mapping

ErrorSeverity = Literal["error", "degraded", "skip", "fatal"]


class EpisodeEngineError(Exception):
    """プロジェクト共通の基底例外.

    Attributes:
        - message: 例外メッセージ（英語）
        - code: 機械判定用の短い識別子
        - severity: パイプライン上の重要度（error/degraded/skip/fatal）
        - context: 追加情報（ticker, index, expected など任意）
    """

    code: str = "MEE_ERROR"
    severity: ErrorSeverity = "error"

    def __init__(self, message: str, *, context: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = dict(context or {})

    def with_context(self, **kwargs: Any) -> "EpisodeEngineError":
        """コンテキストを追加した同型例外を返す（自身は変更しない）."""
        clone = copy.copy(self)
        merged = dict(self.context)
        merged.update(kwargs)
        clone.context = merged
        return clone

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v!r}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({details})"


class ContractError(EpisodeEngineError):
    """呼び出し契約違反（開発者/利用者の誤用）.

    Examples:
        - period < 1 で指標を計算する
        - fit 前に transform を呼ぶ
        - 壊れた scaler レコードを読み込む
    """

    code = "CONTRACT_ERROR"
    severity: ErrorSeverity = "fatal"


class ConfigurationError(EpisodeEngineError):
    """設定不備（起動前に検出したい種類のエラー）."""

    code = "CONFIGURATION_ERROR"
    severity: ErrorSeverity = "fatal"


class DataError(EpisodeEngineError):
    """データ起因のエラー（欠損/範囲不足/品質不備など）."""

    code = "DATA_ERROR"


class InvalidTimestamp(DataError):
    """バーの時刻を解釈できない.

    Policy:
        - 該当ファイル（バッチ）の enrichment を中断する。黙って落とさない。
    """

    code = "INVALID_TIMESTAMP"


class ExternalDataError(DataError):
    """外部データ取得失敗（Examples: yfinance 失敗、レート制限、ネットワーク等）.

    retryable で「再試行すれば回復しうる」かを呼び出し側へ伝える。
    """

    code = "EXTERNAL_DATA_ERROR"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, context=context)
        self.retryable = retryable
        self.severity = "degraded" if retryable else "error"


class DimensionMismatch(EpisodeEngineError):
    """特徴量の列数が scaler / モデルの想定と一致しない.

    Policy:
        - 切り詰め・パディングで誤魔化さず、常に停止する。
    """

    code = "DIMENSION_MISMATCH"
    severity: ErrorSeverity = "fatal"


class SkipTicker(EpisodeEngineError):
    """当該ティッカーをスキップするための制御例外.

    Examples:
        - bars are empty after cleaning
        - no episode could be built
    """

    code = "SKIP_TICKER"
    severity: ErrorSeverity = "skip"


class FatalPipelineError(EpisodeEngineError):
    """バッチ全体を停止すべき致命的エラー（未分類例外の包み込みなど）."""

    code = "FATAL_PIPELINE_ERROR"
    severity: ErrorSeverity = "fatal"
