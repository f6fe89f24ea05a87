"""複数フラグの all/any 合成（FlagComposer）"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from .batch import DEFAULT_MAX_CONCURRENCY
from .models import CompositionMode
from .resolver import Lookup
from .telemetry import TelemetryAggregator

logger = structlog.stdlib.get_logger(__name__)

Listener = Callable[["ComposedResult"], Awaitable[None] | None]


@dataclass
class ComposedResult:
    """合成評価の結果。"""

    enabled: bool
    statuses: dict[str, bool] = field(default_factory=dict)
    mode: CompositionMode = CompositionMode.ALL
    hierarchical: bool = True
    error: str | None = None
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "statuses": dict(self.statuses),
            "mode": str(self.mode),
            "hierarchical": self.hierarchical,
            "error": self.error,
            "failed": list(self.failed),
        }


@dataclass(frozen=True)
class _Request:
    features: tuple[str, ...]
    mode: CompositionMode
    hierarchical: bool


def combine(statuses: list[bool], mode: CompositionMode) -> bool:
    """all は全て True（空なら True）、any は 1 つ以上 True（空なら False）。"""
    if mode is CompositionMode.ALL:
        return all(statuses)
    return any(statuses)


class FlagComposer:
    """複数フラグを評価して 1 つの真偽値に合成する。

    評価中は `loading` が True になる。`subscribe()` で登録したリスナーには
    評価のたびに結果が通知され、`refresh()` で直前の評価を再実行できる。
    """

    def __init__(
        self,
        hierarchical_lookup: Lookup,
        flat_lookup: Lookup,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        telemetry: TelemetryAggregator | None = None,
    ) -> None:
        self._hierarchical_lookup = hierarchical_lookup
        self._flat_lookup = flat_lookup
        self._max_concurrency = max_concurrency
        self._telemetry = telemetry
        self._outstanding = 0
        self._last_request: _Request | None = None
        self._last_result: ComposedResult | None = None
        self._listeners: list[Listener] = []

    @property
    def loading(self) -> bool:
        return self._outstanding > 0

    @property
    def last_result(self) -> ComposedResult | None:
        return self._last_result

    async def evaluate(
        self,
        features: list[str],
        mode: CompositionMode | str = CompositionMode.ALL,
        hierarchical: bool = True,
    ) -> ComposedResult:
        """フラグ群を評価して合成結果を返す。

        Args:
            features: 評価するフラグ名のリスト
            mode: "all" または "any"
            hierarchical: True なら親フラグを考慮しキャッシュ経由で評価する

        Returns:
            ComposedResult。個々の失敗は False として扱い error に記録する。

        Raises:
            ValueError: mode が不正な場合
        """
        request = _Request(tuple(features), CompositionMode(mode), hierarchical)
        self._last_request = request
        self._outstanding += 1
        try:
            result = await self._run(request)
        finally:
            self._outstanding -= 1
        self._last_result = result
        await self._notify(result)
        return result

    async def refresh(self) -> ComposedResult | None:
        """直前の評価を再実行する。未評価なら None。"""
        if self._last_request is None:
            return None
        request = self._last_request
        return await self.evaluate(list(request.features), request.mode, request.hierarchical)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """結果通知のリスナーを登録し、登録解除用の関数を返す。"""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def _run(self, request: _Request) -> ComposedResult:
        lookup = self._hierarchical_lookup if request.hierarchical else self._flat_lookup
        names = list(dict.fromkeys(request.features))
        semaphore = asyncio.Semaphore(self._max_concurrency)
        errors: dict[str, str] = {}

        async def _one(name: str) -> bool:
            async with semaphore:
                try:
                    return (await lookup(name)).enabled
                except Exception as e:
                    logger.warning(
                        "Feature flag evaluation failed, treating as disabled",
                        flag=name,
                        operation="evaluate",
                        error=str(e),
                    )
                    if self._telemetry is not None:
                        self._telemetry.record_error(
                            e, "composition_error", {"flag": name, "operation": "evaluate"}
                        )
                    errors[name] = str(e)
                    return False

        values = await asyncio.gather(*(_one(name) for name in names))
        statuses = dict(zip(names, values))
        return ComposedResult(
            enabled=combine([statuses[name] for name in request.features], request.mode),
            statuses=statuses,
            mode=request.mode,
            hierarchical=request.hierarchical,
            error="; ".join(f"{name}: {msg}" for name, msg in errors.items()) or None,
            failed=list(errors),
        )

    async def _notify(self, result: ComposedResult) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning("Composer listener failed", error=str(e))
