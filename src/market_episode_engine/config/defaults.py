"""デフォルト設定（最小）。

設計意図:
- パイプラインを動かすための「最低限の前提」を定義する。
- 環境依存・I/O・動的解決は行わない（resolver が責務を持つ）。
- ここにある値は「存在してよい初期値」であり、最適値ではない。
"""

from __future__ import annotations


# ====================
# Indicator defaults
# ====================

INDICATOR_DEFAULTS: dict[str, object] = {
    "ema_period": 14,
    "rsi_period": 14,
    "bb_period": 20,
    "bb_multiplier": 2.0,
}

# ====================
# Episode defaults
# ====================

# 反転しきい値（比率）の時間足別ポリシー表。日中足ほど細かく、日足以上ほど粗く取る。
EPISODE_DEFAULTS: dict[str, object] = {
    "default_interval": "1d",
    "thresholds": {
        "1m": 0.005,
        "5m": 0.01,
        "15m": 0.015,
        "30m": 0.02,
        "1h": 0.025,
        "1d": 0.05,
        "1wk": 0.08,
        "1mo": 0.12,
    },
}

# ====================
# Feature defaults
# ====================

FEATURE_DEFAULTS: dict[str, object] = {
    "impute_strategy": "sentinel",
}

# ====================
# Fetch cache defaults
# ====================

CACHE_DEFAULTS: dict[str, object] = {
    "capacity": 128,
    "ttl_seconds": 60.0,
}

# ====================
# Report defaults
# ====================

REPORT_DEFAULTS: dict[str, object] = {
    "tablefmt": "github",
    "last_n": 20,
}
