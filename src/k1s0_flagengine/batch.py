"""複数フラグの並行評価（BatchResolver）"""

from __future__ import annotations

import asyncio

import structlog

from .resolver import Lookup
from .telemetry import TelemetryAggregator

logger = structlog.stdlib.get_logger(__name__)

DEFAULT_MAX_CONCURRENCY = 10


class BatchResolver:
    """複数フラグを同時実行数を制限しつつ並行に評価する。

    個々のフラグの失敗は False として扱い、呼び出し全体は失敗させない。
    """

    def __init__(
        self,
        lookup: Lookup,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        telemetry: TelemetryAggregator | None = None,
    ) -> None:
        if max_concurrency <= 0:
            raise ValueError(f"max_concurrency must be positive: {max_concurrency}")
        self._lookup = lookup
        self._max_concurrency = max_concurrency
        self._telemetry = telemetry

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    async def resolve_many(self, flag_names: list[str]) -> dict[str, bool]:
        """各フラグ名の評価結果を返す。返り値は全フラグ名を含む。"""
        names = list(dict.fromkeys(flag_names))
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _one(name: str) -> bool:
            async with semaphore:
                try:
                    result = await self._lookup(name)
                except Exception as e:
                    logger.warning(
                        "Feature flag resolution failed, defaulting to disabled",
                        flag=name,
                        operation="resolve_many",
                        error=str(e),
                    )
                    if self._telemetry is not None:
                        self._telemetry.record_error(
                            e, "batch_resolution_error", {"flag": name, "operation": "resolve_many"}
                        )
                    return False
                return result.enabled

        results = await asyncio.gather(*(_one(name) for name in names))
        return dict(zip(names, results))
