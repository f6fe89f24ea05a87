"""k1s0 flagengine library."""

from .batch import BatchResolver
from .cache import FlagCache
from .client import FlagServiceClient
from .composer import ComposedResult, FlagComposer
from .config import FlagEngineConfig, load_config
from .engine import FlagEngine
from .exceptions import (
    ConfigError,
    ConfigErrorCodes,
    ExperimentConfigError,
    FeatureFlagError,
    FeatureFlagErrorCodes,
    FlagAuthError,
    FlagNotFoundError,
    FlagTransportError,
)
from .experiments import (
    Experiment,
    ExperimentEngine,
    ExperimentEvent,
    ExperimentStatistics,
    Variant,
    VariantStatistics,
)
from .hashing import bucket, hash_key, java_hash
from .http_client import HttpFlagServiceClient
from .log import configure_logging, new_logger
from .memory import InMemoryFlagServiceClient
from .models import CompositionMode, FeatureFlag, FlagResolution, FlagStatus
from .resolver import FlagResolver
from .sink import AnalyticsSink, HttpAnalyticsSink, InMemoryAnalyticsSink, NullAnalyticsSink
from .store import InMemoryKeyValueStore, JsonFileKeyValueStore, KeyValueStore
from .telemetry import TelemetryAggregator

__all__ = [
    "AnalyticsSink",
    "BatchResolver",
    "ComposedResult",
    "CompositionMode",
    "ConfigError",
    "ConfigErrorCodes",
    "Experiment",
    "ExperimentConfigError",
    "ExperimentEngine",
    "ExperimentEvent",
    "ExperimentStatistics",
    "FeatureFlag",
    "FeatureFlagError",
    "FeatureFlagErrorCodes",
    "FlagAuthError",
    "FlagCache",
    "FlagComposer",
    "FlagEngine",
    "FlagEngineConfig",
    "FlagNotFoundError",
    "FlagResolution",
    "FlagResolver",
    "FlagServiceClient",
    "FlagStatus",
    "FlagTransportError",
    "HttpAnalyticsSink",
    "HttpFlagServiceClient",
    "InMemoryAnalyticsSink",
    "InMemoryFlagServiceClient",
    "InMemoryKeyValueStore",
    "JsonFileKeyValueStore",
    "KeyValueStore",
    "NullAnalyticsSink",
    "TelemetryAggregator",
    "Variant",
    "VariantStatistics",
    "bucket",
    "configure_logging",
    "hash_key",
    "java_hash",
    "load_config",
    "new_logger",
]
