"""A/B テストの割り当てと集計（ExperimentEngine）"""

from __future__ import annotations

import asyncio
import json
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

import structlog

from . import metrics
from .exceptions import ExperimentConfigError
from .hashing import EXPERIMENT_BUCKETS, bucket
from .sink import EventForwarder
from .store import KeyValueStore
from .telemetry import TelemetryAggregator

logger = structlog.stdlib.get_logger(__name__)

ANONYMOUS_ID_KEY = "anonymous_user_id"
ASSIGNMENTS_KEY = "feature_flag_ab_variants"
WEIGHT_TOLERANCE = 0.01


class TrafficSplit(StrEnum):
    EQUAL = "equal"
    WEIGHTED = "weighted"


class ExperimentStatus(StrEnum):
    ACTIVE = "active"
    ENDED = "ended"


class EventType(StrEnum):
    VIEW = "view"
    CONVERSION = "conversion"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _short_id() -> str:
    return f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass(frozen=True)
class Variant:
    """実験のバリアント。"""

    id: str
    name: str
    value: Any = None
    weight: float = 0.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Variant:
        return cls(
            id=data["id"],
            name=data["name"],
            value=data.get("value"),
            weight=float(data.get("weight", 0.0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "value": self.value, "weight": self.weight}


@dataclass
class ExperimentMetrics:
    impressions: int = 0
    conversions: float = 0
    conversion_rate: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "impressions": self.impressions,
            "conversions": self.conversions,
            "conversion_rate": self.conversion_rate,
        }


@dataclass
class Experiment:
    """A/B テスト実験。active → ended の遷移は一方向。"""

    id: str
    name: str
    variants: list[Variant]
    traffic_split: TrafficSplit = TrafficSplit.EQUAL
    status: ExperimentStatus = ExperimentStatus.ACTIVE
    start_date: str = ""
    end_date: str | None = None
    metrics: ExperimentMetrics = field(default_factory=ExperimentMetrics)
    winner: Variant | None = None

    @property
    def active(self) -> bool:
        return self.status is ExperimentStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "variants": [v.to_dict() for v in self.variants],
            "traffic_split": str(self.traffic_split),
            "status": str(self.status),
            "start_date": self.start_date,
            "end_date": self.end_date,
            "metrics": self.metrics.to_dict(),
            "winner": self.winner.to_dict() if self.winner else None,
        }


@dataclass(frozen=True)
class ExperimentEvent:
    """実験イベント（表示・コンバージョン）。"""

    id: str
    type: EventType
    experiment_name: str
    variant: str
    variant_id: str
    timestamp: str
    user_id: str
    value: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": str(self.type),
            "experimentName": self.experiment_name,
            "variant": self.variant,
            "variantId": self.variant_id,
            "timestamp": self.timestamp,
            "userId": self.user_id,
            "value": self.value,
        }


@dataclass
class VariantStatistics:
    variant: Variant
    views: int
    conversions: float
    conversion_rate: float
    events: list[ExperimentEvent]

    def to_dict(self) -> dict[str, Any]:
        return {
            "variant": self.variant.to_dict(),
            "views": self.views,
            "conversions": self.conversions,
            "conversion_rate": self.conversion_rate,
            "events": [e.to_dict() for e in self.events],
        }


@dataclass
class ExperimentStatistics:
    experiment: Experiment
    variant_stats: list[VariantStatistics]
    total_views: int
    total_conversions: float
    overall_conversion_rate: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "experiment": self.experiment.to_dict(),
            "variant_stats": [s.to_dict() for s in self.variant_stats],
            "total_views": self.total_views,
            "total_conversions": self.total_conversions,
            "overall_conversion_rate": self.overall_conversion_rate,
        }


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def build_variants(
    experiment_name: str,
    variants: list[dict[str, Any]],
    traffic_split: TrafficSplit,
) -> list[Variant]:
    """バリアント定義を検証して Variant のリストにする。

    Raises:
        ExperimentConfigError: 定義が不正な場合
    """
    if not variants:
        raise ExperimentConfigError(experiment_name, "at least one variant is required")

    weights: list[float] = []
    for index, spec in enumerate(variants):
        if "name" not in spec:
            raise ExperimentConfigError(experiment_name, f"variant {index} has no name")
        if traffic_split is TrafficSplit.EQUAL:
            weights.append(1 / len(variants))
            continue
        weight = spec.get("weight")
        if not _is_number(weight):
            raise ExperimentConfigError(
                experiment_name, f"variant '{spec['name']}' needs a numeric weight"
            )
        if weight < 0:
            raise ExperimentConfigError(
                experiment_name, f"variant '{spec['name']}' has a negative weight"
            )
        weights.append(float(weight))

    total = sum(weights)
    if abs(total - 1.0) > WEIGHT_TOLERANCE:
        raise ExperimentConfigError(experiment_name, f"weights must sum to 1, got {total:.4f}")

    return [
        Variant(id=f"variant_{index}", name=spec["name"], value=spec.get("value"), weight=weight)
        for index, (spec, weight) in enumerate(zip(variants, weights))
    ]


def assign_variant(experiment: Experiment, user_key: str) -> Variant:
    """ユーザーキーのハッシュバケットから累積重みでバリアントを選ぶ。"""
    normalized = bucket(user_key, EXPERIMENT_BUCKETS)
    cumulative = 0.0
    for variant in experiment.variants:
        cumulative += variant.weight * EXPERIMENT_BUCKETS
        if normalized < cumulative:
            return variant
    return experiment.variants[0]


class ExperimentEngine:
    """A/B テスト実験を管理する。

    ユーザーへのバリアント割り当ては決定的で、KeyValueStore に永続化される。
    割り当ての確認と作成は asyncio.Lock で直列化する。
    """

    def __init__(
        self,
        store: KeyValueStore,
        forwarder: EventForwarder | None = None,
        telemetry: TelemetryAggregator | None = None,
    ) -> None:
        self._store = store
        self._forwarder = forwarder or EventForwarder()
        self._telemetry = telemetry
        self._experiments: dict[str, Experiment] = {}
        self._events: dict[str, list[ExperimentEvent]] = {}
        self._assignments: dict[str, Variant] = {}
        self._anonymous_id: str | None = None
        self._lock = asyncio.Lock()
        self._loaded = False

    async def load(self) -> None:
        """永続化済みの割り当てを読み込む。

        ストアの読み込み失敗や不正なデータは警告して無視する。読み込みに失敗した間は
        新しい割り当てを永続化せず、保存済みの割り当ては上書きしない。
        """
        async with self._lock:
            await self._load_locked()

    async def _load_locked(self) -> bool:
        if self._loaded:
            return True
        try:
            raw = await self._store.get(ASSIGNMENTS_KEY)
        except Exception as e:
            logger.warning("Failed to read experiment assignments", error=str(e))
            self._report(e, "load_assignments")
            return False
        self._loaded = True
        if not raw:
            return True
        try:
            pairs = json.loads(raw)
            restored = {str(key): Variant.from_dict(variant) for key, variant in pairs}
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("Failed to load experiment assignments", error=str(e))
            self._report(e, "load_assignments")
            return True
        # 保存済みの割り当てはメモリ上の仮の割り当てより優先する
        self._assignments.update(restored)
        logger.debug("Experiment assignments loaded", count=len(restored))
        return True

    async def _save_locked(self) -> None:
        payload = json.dumps([[key, v.to_dict()] for key, v in self._assignments.items()])
        try:
            await self._store.set(ASSIGNMENTS_KEY, payload)
        except Exception as e:
            logger.warning("Failed to save experiment assignments", error=str(e))
            self._report(e, "save_assignments")

    def _report(self, error: Exception, operation: str) -> None:
        if self._telemetry is not None:
            self._telemetry.record_error(error, "experiment_error", {"operation": operation})

    async def anonymous_user_id(self) -> str:
        """匿名ユーザー ID を返す。無ければ生成して永続化する。"""
        if self._anonymous_id is not None:
            return self._anonymous_id
        async with self._lock:
            return await self._anonymous_id_locked()

    async def _anonymous_id_locked(self) -> str:
        if self._anonymous_id is not None:
            return self._anonymous_id
        try:
            stored = await self._store.get(ANONYMOUS_ID_KEY)
        except Exception as e:
            # 読めない場合は保存済みの ID を上書きせず、このプロセス内だけで使う
            logger.warning("Failed to read anonymous user id", error=str(e))
            self._report(e, "load_anonymous_id")
            self._anonymous_id = f"anon_{_short_id()}"
            return self._anonymous_id
        if not stored:
            stored = f"anon_{_short_id()}"
            try:
                await self._store.set(ANONYMOUS_ID_KEY, stored)
            except Exception as e:
                logger.warning("Failed to save anonymous user id", error=str(e))
                self._report(e, "save_anonymous_id")
        self._anonymous_id = stored
        return self._anonymous_id

    def create_experiment(
        self,
        name: str,
        variants: list[dict[str, Any]],
        traffic_split: TrafficSplit | str = TrafficSplit.EQUAL,
    ) -> Experiment:
        """実験を作成する。

        Args:
            name: 実験名（一意）
            variants: {"name", "value", "weight"} の辞書のリスト
            traffic_split: "equal" または "weighted"

        Raises:
            ExperimentConfigError: 定義が不正、または同名の実験が存在する場合
        """
        try:
            split = TrafficSplit(traffic_split)
        except ValueError as e:
            raise ExperimentConfigError(name, f"unknown traffic split '{traffic_split}'") from e
        if name in self._experiments:
            raise ExperimentConfigError(name, "experiment already exists")

        experiment = Experiment(
            id=f"exp_{_short_id()}",
            name=name,
            variants=build_variants(name, variants, split),
            traffic_split=split,
            start_date=_now_iso(),
        )
        self._experiments[name] = experiment
        self._events[name] = []
        logger.info("Experiment created", experiment=name, variants=len(experiment.variants))
        return experiment

    def get_experiment(self, name: str) -> Experiment | None:
        return self._experiments.get(name)

    def list_experiments(self) -> list[Experiment]:
        return list(self._experiments.values())

    async def get_user_variant(self, name: str, user_id: str | None = None) -> Variant | None:
        """ユーザーに割り当てられたバリアントを返す。実験が無効なら None。"""
        experiment = self._experiments.get(name)
        if experiment is None or not experiment.active:
            return None

        async with self._lock:
            # ロック待ちの間に end_experiment が呼ばれた場合
            if not experiment.active:
                return None
            loaded = await self._load_locked()
            user_key = user_id or await self._anonymous_id_locked()
            assignment_key = f"{name}_{user_key}"
            existing = self._assignments.get(assignment_key)
            if existing is not None:
                return existing
            variant = assign_variant(experiment, user_key)
            self._assignments[assignment_key] = variant
            if loaded:
                await self._save_locked()
        return variant

    async def track_experiment_view(
        self, name: str, variant: Variant, user_id: str | None = None
    ) -> ExperimentEvent | None:
        """表示を記録する。実験が無い、または終了済みなら何もしない。"""
        experiment = self._experiments.get(name)
        if experiment is None or not experiment.active:
            return None
        experiment.metrics.impressions += 1
        _update_rate(experiment.metrics)
        return await self._record_event(EventType.VIEW, experiment, variant, user_id)

    async def track_experiment_conversion(
        self,
        name: str,
        variant: Variant,
        value: float = 1,
        user_id: str | None = None,
    ) -> ExperimentEvent | None:
        """コンバージョンを記録する。実験が無い、または終了済みなら何もしない。"""
        experiment = self._experiments.get(name)
        if experiment is None or not experiment.active:
            return None
        experiment.metrics.conversions += value
        _update_rate(experiment.metrics)
        return await self._record_event(EventType.CONVERSION, experiment, variant, user_id, value)

    async def _record_event(
        self,
        event_type: EventType,
        experiment: Experiment,
        variant: Variant,
        user_id: str | None,
        value: float | None = None,
    ) -> ExperimentEvent:
        event = ExperimentEvent(
            id=f"ab_event_{_short_id()}",
            type=event_type,
            experiment_name=experiment.name,
            variant=variant.name,
            variant_id=variant.id,
            timestamp=_now_iso(),
            user_id=user_id or await self.anonymous_user_id(),
            value=value,
        )
        self._events.setdefault(experiment.name, []).append(event)
        metrics.experiment_events_total.add(
            1, {"experiment": experiment.name, "type": str(event_type)}
        )
        self._forwarder.forward({**event.to_dict(), "eventType": "ab_testing"})
        return event

    def get_experiment_statistics(self, name: str) -> ExperimentStatistics | None:
        """バリアント別の表示数・コンバージョン数・コンバージョン率を返す。"""
        experiment = self._experiments.get(name)
        if experiment is None:
            return None
        events = self._events.get(name, [])
        variant_stats: list[VariantStatistics] = []
        for variant in experiment.variants:
            variant_events = [e for e in events if e.variant_id == variant.id]
            views = sum(1 for e in variant_events if e.type is EventType.VIEW)
            conversions = sum(
                e.value if e.value is not None else 1
                for e in variant_events
                if e.type is EventType.CONVERSION
            )
            variant_stats.append(
                VariantStatistics(
                    variant=variant,
                    views=views,
                    conversions=conversions,
                    conversion_rate=conversions / views if views > 0 else 0.0,
                    events=variant_events,
                )
            )
        return ExperimentStatistics(
            experiment=experiment,
            variant_stats=variant_stats,
            total_views=experiment.metrics.impressions,
            total_conversions=experiment.metrics.conversions,
            overall_conversion_rate=experiment.metrics.conversion_rate,
        )

    def end_experiment(self, name: str) -> Experiment | None:
        """実験を終了し、コンバージョン率が最も高いバリアントを勝者にする。"""
        experiment = self._experiments.get(name)
        if experiment is None:
            return None
        if not experiment.active:
            return experiment

        stats = self.get_experiment_statistics(name)
        if stats is not None and stats.variant_stats:
            best = stats.variant_stats[0]
            for current in stats.variant_stats[1:]:
                if current.conversion_rate > best.conversion_rate:
                    best = current
            experiment.winner = best.variant
        experiment.status = ExperimentStatus.ENDED
        experiment.end_date = _now_iso()
        logger.info(
            "Experiment ended",
            experiment=name,
            winner=experiment.winner.name if experiment.winner else None,
        )
        return experiment


def _update_rate(m: ExperimentMetrics) -> None:
    m.conversion_rate = m.conversions / m.impressions if m.impressions > 0 else 0.0
