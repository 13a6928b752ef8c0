"""設定リゾルバ（defaults + user config の合成と正規化）。

設計意図:
- defaults（不変）と user config（可変）を合成し、パイプラインで扱いやすい形へ正規化する。
- I/O は loader に限定し、本モジュールは純粋関数として扱えるようにする。
- 時間足 → 反転しきい値の対応表はここで解決する（episode builder 自体は表を知らない）。
"""

from __future__ import annotations

import math
from copy import deepcopy
from typing import Any, Mapping

from market_episode_engine.config.defaults import (
    CACHE_DEFAULTS,
    EPISODE_DEFAULTS,
    FEATURE_DEFAULTS,
    INDICATOR_DEFAULTS,
    REPORT_DEFAULTS,
)
from market_episode_engine.contract.errors import ConfigurationError
from market_episode_engine.contract.schemas.features import ImputeStrategy
from market_episode_engine.contract.schemas.market import IndicatorSettings


def resolve_config(user_config: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """defaults と user config を合成し、正規化済み config を返す。

    Args:
        user_config: loader が読み込んだユーザー設定（dict 相当）。

    Returns:
        正規化済み設定 dict（セクション: indicators / episodes / features / cache / report）。

    Raises:
        ConfigurationError: 設定の型が不正、値が許容範囲外など。
    """
    if user_config is None:
        user_config_dict: dict[str, Any] = {}
    else:
        if not isinstance(user_config, Mapping):
            raise ConfigurationError("user_config must be a mapping.")
        user_config_dict = dict(user_config)

    base: dict[str, Any] = {
        "indicators": deepcopy(INDICATOR_DEFAULTS),
        "episodes": deepcopy(EPISODE_DEFAULTS),
        "features": deepcopy(FEATURE_DEFAULTS),
        "cache": deepcopy(CACHE_DEFAULTS),
        "report": deepcopy(REPORT_DEFAULTS),
    }

    merged = _deep_merge(base, user_config_dict)
    return _normalize_config(merged)


def resolve_threshold(config: Mapping[str, Any], interval: str | None = None) -> float:
    """時間足に対応する反転しきい値を返す。

    Args:
        config: resolve_config の出力。
        interval: 時間足（例: "1d", "5m"）。None なら episodes.default_interval。

    Raises:
        ConfigurationError: しきい値表に無い時間足。
    """
    episodes = config.get("episodes", {})
    key = interval if interval is not None else episodes.get("default_interval")
    thresholds = episodes.get("thresholds", {})
    if not isinstance(key, str) or key not in thresholds:
        allowed = ", ".join(sorted(thresholds))
        raise ConfigurationError(f"No reversal threshold for interval: {key}. Allowed: {allowed}")
    return float(thresholds[key])


def indicator_settings(config: Mapping[str, Any]) -> IndicatorSettings:
    """indicators セクションを IndicatorSettings に変換する。"""
    return IndicatorSettings(**dict(config.get("indicators", {})))


def impute_strategy(config: Mapping[str, Any]) -> ImputeStrategy:
    """features.impute_strategy を ImputeStrategy に変換する。"""
    return ImputeStrategy(config.get("features", {}).get("impute_strategy", "sentinel"))


def _deep_merge(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """辞書を deep merge する（override が優先）。

    - dict 同士は再帰的に merge
    - それ以外（list/str/int/...）は override で上書き
    """
    if not isinstance(override, Mapping):
        raise ConfigurationError("override must be a mapping.")

    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, Mapping):
            result[key] = _deep_merge(result[key], value)
        else:
            if isinstance(value, Mapping):
                result[key] = dict(value)
            else:
                result[key] = value
    return result


def _normalize_config(config: dict[str, Any]) -> dict[str, Any]:
    """最小の正規化（型・範囲・必須キー補完）を行う。"""
    cfg = dict(config)

    # ---- indicators ----
    ind = _ensure_dict(cfg.get("indicators"), name="indicators")
    ind["ema_period"] = _as_int(ind.get("ema_period"), name="indicators.ema_period", min_value=1, max_value=500)
    ind["rsi_period"] = _as_int(ind.get("rsi_period"), name="indicators.rsi_period", min_value=1, max_value=500)
    ind["bb_period"] = _as_int(ind.get("bb_period"), name="indicators.bb_period", min_value=1, max_value=500)
    ind["bb_multiplier"] = _as_float(
        ind.get("bb_multiplier"), name="indicators.bb_multiplier", min_value=0.0, max_value=10.0
    )
    cfg["indicators"] = ind

    # ---- episodes ----
    ep = _ensure_dict(cfg.get("episodes"), name="episodes")
    thresholds = _ensure_dict(ep.get("thresholds"), name="episodes.thresholds")
    if not thresholds:
        raise ConfigurationError("episodes.thresholds must not be empty.")
    ep["thresholds"] = {
        str(interval): _as_float(value, name=f"episodes.thresholds.{interval}", min_value=0.0, max_value=1.0)
        for interval, value in thresholds.items()
    }
    thresholds = ep["thresholds"]

    default_interval = ep.get("default_interval")
    if not isinstance(default_interval, str) or default_interval not in thresholds:
        raise ConfigurationError("episodes.default_interval must be a key of episodes.thresholds.")
    cfg["episodes"] = ep

    # ---- features ----
    feat = _ensure_dict(cfg.get("features"), name="features")
    strategy = feat.get("impute_strategy")
    allowed = {s.value for s in ImputeStrategy}
    if not isinstance(strategy, str) or strategy.strip().lower() not in allowed:
        raise ConfigurationError(f"features.impute_strategy must be one of: {', '.join(sorted(allowed))}.")
    feat["impute_strategy"] = strategy.strip().lower()
    cfg["features"] = feat

    # ---- cache ----
    cache = _ensure_dict(cfg.get("cache"), name="cache")
    cache["capacity"] = _as_int(cache.get("capacity"), name="cache.capacity", min_value=1, max_value=100_000)
    cache["ttl_seconds"] = _as_float(cache.get("ttl_seconds"), name="cache.ttl_seconds", min_value=0.0, max_value=86_400.0)
    cfg["cache"] = cache

    # ---- report ----
    report = _ensure_dict(cfg.get("report"), name="report")
    tablefmt = report.get("tablefmt")
    if not isinstance(tablefmt, str) or not tablefmt.strip():
        raise ConfigurationError("report.tablefmt must be a non-empty string.")
    report["tablefmt"] = tablefmt.strip()
    report["last_n"] = _as_int(report.get("last_n"), name="report.last_n", min_value=0, max_value=100_000)
    cfg["report"] = report

    return cfg


def _ensure_dict(value: Any, *, name: str) -> dict[str, Any]:
    """dict を要求し、None なら空 dict とする。"""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"{name} must be a dict.")
    return dict(value)


def _as_int(value: Any, *, name: str, min_value: int, max_value: int) -> int:
    """int を要求し、範囲チェックを行う（厳格）。"""
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigurationError(f"{name} must be an int.")
    if value < min_value or value > max_value:
        raise ConfigurationError(f"{name} out of range: {value} (allowed: {min_value}-{max_value}).")
    return value


def _as_float(value: Any, *, name: str, min_value: float, max_value: float) -> float:
    """数値を要求し float にする。min_value は排他的（0 より大きいことを要求する用途）。"""
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ConfigurationError(f"{name} must be a number.")
    v = float(value)
    if not math.isfinite(v) or v <= min_value or v > max_value:
        raise ConfigurationError(f"{name} out of range: {value} (allowed: ({min_value}, {max_value}]).")
    return v
