"""FlagEngine: 全コンポーネントを所有するルートオブジェクト"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from pathlib import Path
from types import TracebackType
from typing import Any

import structlog

from .batch import BatchResolver
from .cache import FlagCache
from .client import FlagServiceClient
from .composer import ComposedResult, FlagComposer
from .config import FlagEngineConfig
from .experiments import ExperimentEngine
from .http_client import HttpFlagServiceClient
from .models import CompositionMode, FeatureFlag, FlagResolution, FlagStatus, parent_of
from .resolver import FlagResolver
from .sink import AnalyticsSink, EventForwarder, sink_for
from .store import InMemoryKeyValueStore, JsonFileKeyValueStore, KeyValueStore
from .telemetry import TelemetryAggregator

logger = structlog.stdlib.get_logger(__name__)


class FlagEngine:
    """フィーチャーフラグ評価と A/B テストのエントリポイント。

    キャッシュ・リゾルバ・一括評価・実験・テレメトリを生成して配線する。
    モジュールレベルの共有状態は持たない。

    Example:
        async with FlagEngine.from_config(load_config(Path("config.yaml"))) as engine:
            if await engine.is_enabled("events.creation"):
                ...
    """

    def __init__(
        self,
        client: FlagServiceClient,
        config: FlagEngineConfig | None = None,
        store: KeyValueStore | None = None,
        analytics_sink: AnalyticsSink | None = None,
        monitoring_sink: AnalyticsSink | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or FlagEngineConfig()
        self.client = client
        self._analytics = EventForwarder(analytics_sink)
        self._monitoring = EventForwarder(monitoring_sink)

        self.telemetry = TelemetryAggregator(self.config.telemetry, monitoring=self._monitoring)
        self.resolver = FlagResolver(client, telemetry=self.telemetry)
        self.cache = FlagCache(self.resolver.resolve, self.config.cache.ttl_seconds, clock=clock)
        # 親フラグの評価もキャッシュ経由にする
        self.resolver.set_parent_lookup(self.cache.get)
        self.telemetry.watch_cache(self.cache.stats)

        self.batch = BatchResolver(
            self.cache.get,
            max_concurrency=self.config.batch.max_concurrency,
            telemetry=self.telemetry,
        )
        self.experiments = ExperimentEngine(
            store or InMemoryKeyValueStore(),
            forwarder=self._analytics,
            telemetry=self.telemetry,
        )
        self._composer = self.composer()

    @classmethod
    def from_config(
        cls,
        config: FlagEngineConfig,
        client: FlagServiceClient | None = None,
        store: KeyValueStore | None = None,
    ) -> FlagEngine:
        """設定から FlagEngine を構築する。

        client 未指定時は HttpFlagServiceClient、store 未指定時は
        experiments.store_path があれば JsonFileKeyValueStore を使う。
        """
        if client is None:
            client = HttpFlagServiceClient(config.service)
        if store is None and config.experiments.store_path:
            store = JsonFileKeyValueStore(Path(config.experiments.store_path))
        telemetry = config.telemetry
        return cls(
            client,
            config=config,
            store=store,
            analytics_sink=sink_for(telemetry.analytics_endpoint, telemetry.sink_token),
            monitoring_sink=sink_for(telemetry.monitoring_endpoint, telemetry.sink_token),
        )

    # ----- 評価 -----

    async def resolve(self, flag_name: str) -> FlagResolution:
        """親フラグを考慮し、キャッシュ経由でフラグを評価する。"""
        return await self.cache.get(flag_name)

    async def check(self, flag_name: str) -> FlagResolution:
        """キャッシュと親フラグを介さずリモートに問い合わせる。"""
        return await self.resolver.check(flag_name)

    async def is_enabled(self, flag_name: str, default: bool = False) -> bool:
        """フラグが有効か返す。評価に失敗した場合は default を返す。"""
        try:
            return (await self.resolve(flag_name)).enabled
        except Exception as e:
            logger.warning(
                "Feature flag check failed, using default",
                flag=flag_name,
                default=default,
                error=str(e),
            )
            return default

    async def resolve_many(self, flag_names: list[str]) -> dict[str, bool]:
        return await self.batch.resolve_many(flag_names)

    def composer(self) -> FlagComposer:
        """独立した状態（loading・リスナー）を持つ FlagComposer を生成する。"""
        return FlagComposer(
            self.cache.get,
            self.resolver.check,
            max_concurrency=self.config.batch.max_concurrency,
            telemetry=self.telemetry,
        )

    async def evaluate(
        self,
        features: list[str],
        mode: CompositionMode | str = CompositionMode.ALL,
        hierarchical: bool = True,
    ) -> ComposedResult:
        return await self._composer.evaluate(features, mode, hierarchical)

    async def flags_summary(self) -> dict[str, Any]:
        """有効・無効フラグの一覧を並行取得する。失敗した側は空リストにする。"""
        enabled, disabled = await asyncio.gather(
            self._list_names(FlagStatus.ENABLED),
            self._list_names(FlagStatus.DISABLED),
        )
        return {
            "enabled": enabled,
            "disabled": disabled,
            "total": len(enabled) + len(disabled),
        }

    async def _list_names(self, status: FlagStatus) -> list[str]:
        try:
            flags = await self.client.list_flags(status)
        except Exception as e:
            logger.warning("Failed to list feature flags", status=str(status), error=str(e))
            return []
        return [flag.name for flag in flags]

    # ----- 管理操作 -----

    async def list_flags(self, status: FlagStatus | None = None) -> list[FeatureFlag]:
        return await self.client.list_flags(status)

    async def get_flag(self, flag_name: str) -> FeatureFlag:
        return await self.client.get_flag(flag_name)

    async def create_flag(self, flag: FeatureFlag) -> FeatureFlag:
        created = await self.client.create_flag(flag)
        self._invalidate(flag.name)
        logger.info("Feature flag created", flag=flag.name, enabled=created.enabled)
        return created

    async def update_flag(
        self,
        flag_name: str,
        enabled: bool | None = None,
        description: str | None = None,
    ) -> FeatureFlag:
        updated = await self.client.update_flag(flag_name, enabled=enabled, description=description)
        self._invalidate(flag_name)
        logger.info("Feature flag updated", flag=flag_name, enabled=updated.enabled)
        return updated

    async def toggle_flag(self, flag_name: str) -> FeatureFlag:
        """フラグの有効状態を反転する。"""
        current = await self.client.get_flag(flag_name)
        return await self.update_flag(flag_name, enabled=not current.enabled)

    async def delete_flag(self, flag_name: str) -> None:
        await self.client.delete_flag(flag_name)
        self._invalidate(flag_name)
        logger.info("Feature flag deleted", flag=flag_name)

    def _invalidate(self, flag_name: str) -> None:
        self.cache.invalidate(flag_name)
        if parent_of(flag_name) == flag_name:
            # 子フラグの結果は親の状態に依存する
            prefix = f"{flag_name}."
            for key in self.cache.keys():
                if key.startswith(prefix):
                    self.cache.invalidate(key)

    def clear_cache(self) -> None:
        self.cache.clear()

    # ----- テレメトリ -----

    def track_interaction(self, flag_name: str, interaction_type: str = "click") -> None:
        self.telemetry.track_interaction(flag_name, interaction_type)

    def export_snapshot(self) -> dict[str, Any]:
        return self.telemetry.export_snapshot()

    # ----- ライフサイクル -----

    async def aclose(self) -> None:
        """送信待ちのイベントを送り切る。"""
        await asyncio.gather(self._analytics.drain(), self._monitoring.drain())

    async def __aenter__(self) -> FlagEngine:
        await self.experiments.load()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()
