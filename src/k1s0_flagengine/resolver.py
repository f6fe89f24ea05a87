"""階層フラグの評価（FlagResolver）"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable

import structlog

from .client import FlagServiceClient
from .models import PARENT_DISABLED_REASON, FlagResolution, parent_of
from .telemetry import TelemetryAggregator

logger = structlog.stdlib.get_logger(__name__)

Lookup = Callable[[str], Awaitable[FlagResolution]]


class FlagResolver:
    """単一フラグをリモートサービスで評価する。

    `events.creation` のような階層フラグは、先頭セグメント (`events`) が
    無効なら子をリモートに問い合わせずに無効とする。階層は 1 段のみ。
    """

    def __init__(
        self,
        client: FlagServiceClient,
        parent_lookup: Lookup | None = None,
        telemetry: TelemetryAggregator | None = None,
    ) -> None:
        self._client = client
        self._parent_lookup = parent_lookup or self.resolve
        self._telemetry = telemetry

    def set_parent_lookup(self, lookup: Lookup) -> None:
        """親フラグの評価経路を差し替える（通常はキャッシュ経由）。"""
        self._parent_lookup = lookup

    async def resolve(self, flag_name: str) -> FlagResolution:
        """親フラグを考慮してフラグを評価する。"""
        parent = parent_of(flag_name)
        if parent != flag_name:
            parent_result = await self._parent_lookup(parent)
            if not parent_result.enabled:
                logger.debug(
                    "Feature flag short-circuited by disabled parent",
                    flag=flag_name,
                    parent=parent,
                )
                self._record(flag_name, 0.0, True, False)
                return FlagResolution(name=flag_name, enabled=False, reason=PARENT_DISABLED_REASON)
        return await self.check(flag_name)

    async def check(self, flag_name: str) -> FlagResolution:
        """親を考慮せずリモートサービスに直接問い合わせる。"""
        start = time.perf_counter()
        try:
            result = await self._client.check_enabled(flag_name)
        except Exception as e:
            self._record(flag_name, _elapsed_ms(start), False, None, e)
            raise
        self._record(flag_name, _elapsed_ms(start), True, result.enabled)
        return result

    def _record(
        self,
        flag_name: str,
        duration_ms: float,
        success: bool,
        enabled: bool | None,
        error: Exception | None = None,
    ) -> None:
        if self._telemetry is not None:
            self._telemetry.record_check(flag_name, duration_ms, success, enabled, error)


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0
