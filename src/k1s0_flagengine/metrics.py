"""OpenTelemetry メトリクス定義"""

from __future__ import annotations

from opentelemetry import metrics

_meter = metrics.get_meter("k1s0_flagengine", version="0.1.0")

flag_checks_total = _meter.create_counter(
    name="flag_checks_total",
    description="Total number of feature flag resolution attempts",
    unit="1",
)

flag_check_duration_seconds = _meter.create_histogram(
    name="flag_check_duration_seconds",
    description="Feature flag resolution duration in seconds",
    unit="s",
)

flag_check_errors_total = _meter.create_counter(
    name="flag_check_errors_total",
    description="Total number of failed feature flag resolutions",
    unit="1",
)

experiment_events_total = _meter.create_counter(
    name="experiment_events_total",
    description="Total number of recorded experiment events",
    unit="1",
)
