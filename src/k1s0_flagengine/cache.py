"""TTL 付きのフラグ評価キャッシュ（FlagCache）"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from .exceptions import FlagAuthError
from .models import FlagResolution

logger = structlog.stdlib.get_logger(__name__)

Loader = Callable[[str], Awaitable[FlagResolution]]

DEFAULT_TTL_SECONDS = 300.0


class _CacheEntry:
    __slots__ = ("value", "timestamp")

    def __init__(self, value: FlagResolution, timestamp: float) -> None:
        self.value = value
        self.timestamp = timestamp


class FlagCache:
    """フラグ評価結果を TTL の間メモ化するキャッシュ。

    期限切れまたは未登録のときだけ loader を呼ぶ。loader が失敗した場合、
    以前のエントリ（期限切れでも可）があればそれを返す。認証エラーだけは
    古い値で隠さずに送出する。同じキーへの同時ミスは 1 回のロードを共有する。
    """

    def __init__(
        self,
        loader: Loader,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive: {ttl_seconds}")
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}
        self._inflight: dict[str, asyncio.Task[FlagResolution]] = {}
        self._hits = 0
        self._misses = 0
        self._stale_served = 0
        self._joined = 0

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def _is_fresh(self, entry: _CacheEntry) -> bool:
        return self._clock() - entry.timestamp < self._ttl

    async def get(self, flag_name: str) -> FlagResolution:
        """フラグ評価結果を返す。必要なときだけ loader を呼ぶ。"""
        entry = self._entries.get(flag_name)
        if entry is not None and self._is_fresh(entry):
            self._hits += 1
            return entry.value

        task = self._inflight.get(flag_name)
        if task is None:
            self._misses += 1
            task = asyncio.ensure_future(self._load(flag_name))
            task.add_done_callback(_consume_exception)
            self._inflight[flag_name] = task
        else:
            # 進行中のロードに合流した呼び出しはミスに数えない
            self._joined += 1
        return await asyncio.shield(task)

    async def _load(self, flag_name: str) -> FlagResolution:
        try:
            value = await self._loader(flag_name)
        except FlagAuthError:
            raise
        except Exception as e:
            previous = self._entries.get(flag_name)
            if previous is None:
                raise
            self._stale_served += 1
            logger.warning(
                "Serving stale feature flag after resolution failure",
                flag=flag_name,
                age_seconds=round(self._clock() - previous.timestamp, 3),
                error=str(e),
            )
            return previous.value
        finally:
            self._inflight.pop(flag_name, None)
        self._entries[flag_name] = _CacheEntry(value, self._clock())
        return value

    def peek(self, flag_name: str) -> FlagResolution | None:
        """ロードせずに、期限内のエントリがあれば返す。"""
        entry = self._entries.get(flag_name)
        if entry is None or not self._is_fresh(entry):
            return None
        return entry.value

    def invalidate(self, flag_name: str) -> bool:
        """単一エントリを削除する。削除できたら True。"""
        return self._entries.pop(flag_name, None) is not None

    def clear(self) -> None:
        """全エントリを削除する。"""
        self._entries.clear()
        logger.info("Feature flag cache cleared")

    def keys(self) -> list[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, Any]:
        """ヒット率などのキャッシュ統計を返す。"""
        lookups = self._hits + self._misses
        return {
            "size": len(self._entries),
            "ttl_seconds": self._ttl,
            "hits": self._hits,
            "misses": self._misses,
            "stale_served": self._stale_served,
            "joined": self._joined,
            "hit_rate": self._hits / lookups if lookups else 0.0,
        }


def _consume_exception(task: asyncio.Task[Any]) -> None:
    # 待ち手が全員キャンセルされた場合の "exception was never retrieved" を防ぐ
    if not task.cancelled():
        task.exception()
