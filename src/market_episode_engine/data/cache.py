"""取得結果の TTL + LRU キャッシュ。

設計意図:
- モジュール global のリクエストキャッシュを持たず、利用側（BarFetcher）がインスタンスを所有する。
- 容量上限（LRU 追い出し）と時計の注入（テストで時間を進められる）を明示的に持つ。
"""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, TypeVar

from market_episode_engine.contract.errors import ContractError

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """容量上限つき TTL キャッシュ（最も古く使われたものから追い出す）。"""

    def __init__(
        self,
        *,
        capacity: int,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ContractError("Cache capacity must be >= 1.", context={"capacity": capacity})
        if ttl_seconds <= 0:
            raise ContractError("Cache TTL must be > 0.", context={"ttl_seconds": ttl_seconds})

        self._capacity = capacity
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._entries: OrderedDict[K, tuple[float, V]] = OrderedDict()

    def get(self, key: K) -> V | None:
        """有効期限内なら値を返し、最近使ったものとして末尾へ移す。"""
        entry = self._entries.get(key)
        if entry is None:
            return None

        stored_at, value = entry
        if self._clock() - stored_at >= self._ttl:
            del self._entries[key]
            return None

        self._entries.move_to_end(key)
        return value

    def set(self, key: K, value: V) -> None:
        self._entries[key] = (self._clock(), value)
        self._entries.move_to_end(key)
        while len(self._entries) > self._capacity:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        return len(self._entries)
