"""TTL 快取模組。

以明確的物件持有載入結果與載入時間，取代模組層級的可變全域變數。
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

T = TypeVar('T')


@dataclass
class TTLCache(Generic[T]):
    """整批替換的 TTL 快取。

    快取值只會被整體替換或清除，不做局部更新。

    Attributes:
        ttl: 存活秒數
        clock: 時間來源（預設 time.monotonic，測試時可注入）
    """

    ttl: float
    clock: Callable[[], float] = time.monotonic
    _value: T | None = field(default=None, init=False)
    _loaded_at: float | None = field(default=None, init=False)

    def is_expired(self) -> bool:
        """判斷快取是否需要重新載入。

        Returns:
            尚未載入或超過 TTL 時回傳 True
        """
        if self._loaded_at is None:
            return True
        return self.clock() - self._loaded_at >= self.ttl

    def get(self) -> T | None:
        """取得未過期的快取值。

        Returns:
            快取值，過期或未載入時回傳 None
        """
        if self.is_expired():
            return None
        return self._value

    def set(self, value: T) -> None:
        """寫入新的快取值並記錄載入時間。"""
        self._value = value
        self._loaded_at = self.clock()

    def invalidate(self) -> None:
        """清除快取，下次讀取時重新載入。"""
        self._value = None
        self._loaded_at = None
