"""フラグ利用状況・エラー・性能の集計（TelemetryAggregator）"""

from __future__ import annotations

import json
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from . import metrics
from .config import TelemetrySection
from .sink import EventForwarder

logger = structlog.stdlib.get_logger(__name__)

FLAG_ERROR_TYPE = "feature_flag_error"
CONSECUTIVE_ERROR_THRESHOLD = 5
MAX_ERROR_PATTERNS = 100
RECENT_ERROR_COUNT = 10
RANKED_FLAG_COUNT = 5


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


def format_uptime(seconds: float) -> str:
    """経過秒数を "1h 2m" / "3m 4s" / "5s" 形式にする。"""
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


@dataclass
class UsageRecord:
    """フラグ単位の利用カウンター。"""

    total_checks: int = 0
    enabled_checks: int = 0
    disabled_checks: int = 0
    error_count: int = 0
    total_response_time_ms: float = 0.0
    min_response_time_ms: float | None = None
    max_response_time_ms: float = 0.0
    slow_calls: int = 0
    very_slow_calls: int = 0
    first_seen: str = ""
    last_checked: str = ""

    @property
    def average_response_time_ms(self) -> float:
        return self.total_response_time_ms / self.total_checks if self.total_checks else 0.0


@dataclass
class ErrorRecord:
    """エラー 1 件の記録。"""

    id: str
    timestamp: float
    type: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": _iso(self.timestamp),
            "type": self.type,
            "message": self.message,
            "context": self.context,
        }


@dataclass
class ErrorPattern:
    """同じ type:message のエラーの集約。"""

    key: str
    count: int
    first_seen: float
    last_seen: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "count": self.count,
            "first_seen": _iso(self.first_seen),
            "last_seen": _iso(self.last_seen),
        }


@dataclass
class SessionData:
    session_id: str
    started_at: float
    user_id: str | None = None
    feature_interactions: int = 0


class TelemetryAggregator:
    """フラグ評価の利用状況とエラーを集計するサイドチャネル。

    記録系メソッドは例外を送出しない。集計の失敗は評価結果に影響させない。
    カウンターはスレッドからの同時更新に備えてロックで保護する。
    """

    def __init__(
        self,
        config: TelemetrySection | None = None,
        monitoring: EventForwarder | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or TelemetrySection()
        self._monitoring = monitoring or EventForwarder()
        self._clock = clock
        self._lock = threading.Lock()
        self._usage: dict[str, UsageRecord] = {}
        self._errors: deque[ErrorRecord] = deque(maxlen=self._config.max_errors)
        self._patterns: dict[str, ErrorPattern] = {}
        self._total_errors = 0
        self._consecutive_failures = 0
        self._alerts: deque[dict[str, Any]] = deque(maxlen=100)
        self._last_rate_alert: float | None = None
        self._cache_stats: Callable[[], dict[str, Any]] | None = None
        self._session = SessionData(session_id=f"session_{uuid.uuid4().hex}", started_at=clock())

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def watch_cache(self, stats: Callable[[], dict[str, Any]]) -> None:
        """性能統計に含めるキャッシュ統計の取得関数を登録する。"""
        self._cache_stats = stats

    # ----- 記録 -----

    def record_check(
        self,
        flag_name: str,
        duration_ms: float,
        success: bool,
        enabled: bool | None = None,
        error: BaseException | str | None = None,
    ) -> None:
        """フラグ評価 1 回分を記録する。"""
        if not self._config.enabled:
            return
        try:
            self._record_check(flag_name, duration_ms, success, enabled)
            attributes = {"flag": flag_name, "success": success}
            metrics.flag_checks_total.add(1, attributes)
            metrics.flag_check_duration_seconds.record(duration_ms / 1000.0, attributes)
            if not success:
                metrics.flag_check_errors_total.add(1, {"flag": flag_name})
                self.record_error(
                    error if error is not None else "unknown error",
                    FLAG_ERROR_TYPE,
                    {"flag": flag_name, "operation": "resolve"},
                )
            self._check_performance(flag_name, duration_ms)
        except Exception as e:
            logger.warning("Failed to record flag check", flag=flag_name, error=str(e))

    def _record_check(
        self, flag_name: str, duration_ms: float, success: bool, enabled: bool | None
    ) -> None:
        now = _iso(self._clock())
        with self._lock:
            usage = self._usage.get(flag_name)
            if usage is None:
                usage = UsageRecord(first_seen=now)
                self._usage[flag_name] = usage
            usage.total_checks += 1
            usage.total_response_time_ms += duration_ms
            usage.max_response_time_ms = max(usage.max_response_time_ms, duration_ms)
            if usage.min_response_time_ms is None or duration_ms < usage.min_response_time_ms:
                usage.min_response_time_ms = duration_ms
            usage.last_checked = now
            if duration_ms > self._config.very_slow_threshold_ms:
                usage.very_slow_calls += 1
            elif duration_ms > self._config.slow_threshold_ms:
                usage.slow_calls += 1
            if success:
                self._consecutive_failures = 0
                if enabled:
                    usage.enabled_checks += 1
                else:
                    usage.disabled_checks += 1
            else:
                usage.error_count += 1

    def record_error(
        self,
        error: BaseException | str,
        error_type: str = FLAG_ERROR_TYPE,
        context: dict[str, Any] | None = None,
    ) -> None:
        """エラーを有限長のバッファに記録し、パターンを集約する。"""
        if not self._config.enabled:
            return
        try:
            now = self._clock()
            record = ErrorRecord(
                id=f"error_{uuid.uuid4().hex}",
                timestamp=now,
                type=error_type,
                message=str(error) or type(error).__name__,
                context=dict(context or {}),
            )
            with self._lock:
                self._errors.append(record)
                self._total_errors += 1
                if error_type == FLAG_ERROR_TYPE:
                    self._consecutive_failures += 1
                consecutive = self._consecutive_failures
                self._update_pattern(record)
            self._check_alert_thresholds(consecutive)
        except Exception as e:
            logger.warning("Failed to record error", error=str(e))

    def _update_pattern(self, record: ErrorRecord) -> None:
        key = f"{record.type}:{record.message}"
        pattern = self._patterns.get(key)
        if pattern is None:
            if len(self._patterns) >= MAX_ERROR_PATTERNS:
                oldest = min(self._patterns.values(), key=lambda p: p.last_seen)
                del self._patterns[oldest.key]
            pattern = ErrorPattern(key=key, count=0, first_seen=record.timestamp, last_seen=0.0)
            self._patterns[key] = pattern
        pattern.count += 1
        pattern.last_seen = record.timestamp

    def track_interaction(self, flag_name: str, interaction_type: str = "click") -> None:
        """フラグで制御された機能へのユーザー操作を記録する。"""
        if not self._config.enabled:
            return
        try:
            with self._lock:
                self._session.feature_interactions += 1
                user_id = self._session.user_id
            self._monitoring.forward(
                {
                    "eventType": "feature_interaction",
                    "featureName": flag_name,
                    "interactionType": interaction_type,
                    "sessionId": self._session.session_id,
                    "userId": user_id,
                    "timestamp": _iso(self._clock()),
                }
            )
        except Exception as e:
            logger.warning("Failed to track interaction", flag=flag_name, error=str(e))

    def set_user_id(self, user_id: str | None) -> None:
        with self._lock:
            self._session.user_id = user_id

    # ----- アラート -----

    def _check_performance(self, flag_name: str, duration_ms: float) -> None:
        if duration_ms > self._config.very_slow_threshold_ms:
            self._trigger_alert(
                "very_slow_flag_check", {"flag": flag_name, "duration_ms": duration_ms}, "critical"
            )
        elif duration_ms > self._config.slow_threshold_ms:
            self._trigger_alert("slow_flag_check", {"flag": flag_name, "duration_ms": duration_ms})

    def _check_alert_thresholds(self, consecutive: int) -> None:
        if consecutive == CONSECUTIVE_ERROR_THRESHOLD:
            self._trigger_alert("consecutive_errors", {"count": consecutive})

        now = self._clock()
        window = self._config.error_window_seconds
        rate = self._error_rate(now)
        if rate > self._config.error_rate_alert_threshold and (
            self._last_rate_alert is None or now - self._last_rate_alert >= window
        ):
            self._last_rate_alert = now
            self._trigger_alert(
                "high_error_rate",
                {"error_rate": rate, "threshold": self._config.error_rate_alert_threshold},
            )

    def _trigger_alert(self, alert_type: str, data: dict[str, Any], severity: str = "warning") -> None:
        alert = {
            "id": f"alert_{uuid.uuid4().hex}",
            "type": alert_type,
            "data": data,
            "timestamp": _iso(self._clock()),
            "severity": severity,
        }
        with self._lock:
            self._alerts.append(alert)
        logger.warning("Feature flag alert", alert_type=alert_type, severity=severity, **data)
        self._monitoring.forward(alert)

    # ----- 統計 -----

    def _error_rate(self, now: float) -> float:
        window = self._config.error_window_seconds
        with self._lock:
            recent = sum(1 for e in self._errors if now - e.timestamp < window)
        return recent / window

    def get_usage_statistics(self) -> dict[str, Any]:
        """フラグ利用状況の統計を返す。"""
        with self._lock:
            items = [(name, UsageRecord(**asdict(u))) for name, u in self._usage.items()]
        total_checks = sum(u.total_checks for _, u in items)
        total_errors = sum(u.error_count for _, u in items)
        total_ms = sum(u.total_response_time_ms for _, u in items)

        feature_stats = [
            {
                "flag": name,
                **asdict(usage),
                "average_response_time_ms": usage.average_response_time_ms,
                "usage_rate": usage.total_checks / total_checks if total_checks else 0.0,
            }
            for name, usage in items
        ]
        feature_stats.sort(key=lambda s: s["total_checks"], reverse=True)

        return {
            "total_features": len(items),
            "total_checks": total_checks,
            "total_interactions": self._session.feature_interactions,
            "error_rate": total_errors / total_checks if total_checks else 0.0,
            "average_response_time_ms": total_ms / total_checks if total_checks else 0.0,
            "most_used_features": feature_stats[:RANKED_FLAG_COUNT],
            "least_used_features": list(reversed(feature_stats[-RANKED_FLAG_COUNT:])),
        }

    def get_error_statistics(self) -> dict[str, Any]:
        """エラー統計を返す。error_rate は直近ウィンドウ内の毎秒エラー数。"""
        now = self._clock()
        with self._lock:
            errors = list(self._errors)
            patterns = sorted(self._patterns.values(), key=lambda p: p.count, reverse=True)
            total = self._total_errors
        error_types: dict[str, int] = {}
        for error in errors:
            error_types[error.type] = error_types.get(error.type, 0) + 1
        return {
            "total_errors": total,
            "buffered_errors": len(errors),
            "error_types": error_types,
            "error_rate": self._error_rate(now),
            "recent_errors": [e.to_dict() for e in errors[-RECENT_ERROR_COUNT:]],
            "error_patterns": [p.to_dict() for p in patterns],
        }

    def get_performance_statistics(self) -> dict[str, Any]:
        """フラグ単位の応答時間と遅延呼び出しの統計を返す。"""
        with self._lock:
            items = [(name, UsageRecord(**asdict(u))) for name, u in self._usage.items()]
        total_calls = sum(u.total_checks for _, u in items)
        stats: dict[str, Any] = {
            "total_flags": len(items),
            "total_calls": total_calls,
            "average_response_time_ms": 0.0,
            "slow_call_rate": 0.0,
            "error_rate": 0.0,
            "slow_threshold_ms": self._config.slow_threshold_ms,
            "very_slow_threshold_ms": self._config.very_slow_threshold_ms,
            "flags": [
                {
                    "flag": name,
                    "total_calls": u.total_checks,
                    "failed_calls": u.error_count,
                    "average_ms": u.average_response_time_ms,
                    "min_ms": u.min_response_time_ms or 0.0,
                    "max_ms": u.max_response_time_ms,
                    "slow_calls": u.slow_calls,
                    "very_slow_calls": u.very_slow_calls,
                    "success_rate": (u.total_checks - u.error_count) / u.total_checks
                    if u.total_checks
                    else 0.0,
                }
                for name, u in items
            ],
        }
        if total_calls:
            stats["average_response_time_ms"] = (
                sum(u.total_response_time_ms for _, u in items) / total_calls
            )
            stats["slow_call_rate"] = (
                sum(u.slow_calls + u.very_slow_calls for _, u in items) / total_calls
            )
            stats["error_rate"] = sum(u.error_count for _, u in items) / total_calls
        if self._cache_stats is not None:
            stats["cache"] = self._cache_stats()
        return stats

    def get_session_statistics(self) -> dict[str, Any]:
        uptime = self._clock() - self._session.started_at
        return {
            "session_id": self._session.session_id,
            "started_at": _iso(self._session.started_at),
            "uptime_seconds": uptime,
            "uptime": format_uptime(uptime),
            "user_id": self._session.user_id,
            "feature_interactions": self._session.feature_interactions,
        }

    def get_alerts(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._alerts)

    def export_snapshot(self) -> dict[str, Any]:
        """保存・送信用の JSON 化可能なスナップショットを返す。"""
        return {
            "usage": self.get_usage_statistics(),
            "errors": self.get_error_statistics(),
            "performance": self.get_performance_statistics(),
            "session": self.get_session_statistics(),
            "timestamp": _iso(self._clock()),
        }

    def export_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.export_snapshot(), indent=indent, default=str)

    def clear_old_errors(self, max_age_seconds: float = 24 * 60 * 60) -> int:
        """max_age_seconds より古いエラーを削除し、削除件数を返す。"""
        cutoff = self._clock() - max_age_seconds
        with self._lock:
            kept = [e for e in self._errors if e.timestamp > cutoff]
            removed = len(self._errors) - len(kept)
            self._errors.clear()
            self._errors.extend(kept)
        return removed

    def reset(self) -> None:
        """全カウンターを初期化する（セッションは維持）。"""
        with self._lock:
            self._usage.clear()
            self._errors.clear()
            self._patterns.clear()
            self._alerts.clear()
            self._total_errors = 0
            self._consecutive_failures = 0
            self._last_rate_alert = None
