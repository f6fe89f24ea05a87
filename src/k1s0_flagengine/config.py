"""設定型定義（pydantic BaseModel）と YAML ローダー"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConfigError, ConfigErrorCodes

ENV_PREFIX = "K1S0_FLAGENGINE_"


class ServiceSection(BaseModel):
    """リモートのフラグサービス接続設定。"""

    base_url: str = "http://localhost:8080/api/v1"
    token: str = ""
    timeout_seconds: float = Field(default=5.0, gt=0)


class CacheSection(BaseModel):
    """フラグキャッシュ設定。"""

    ttl_seconds: float = Field(default=300.0, gt=0)


class BatchSection(BaseModel):
    """一括評価設定。"""

    max_concurrency: int = Field(default=10, ge=1)


class ExperimentSection(BaseModel):
    """A/B テスト設定。"""

    # 空の場合はインメモリストアを使う
    store_path: str = ""


class TelemetrySection(BaseModel):
    """利用状況・エラー集計設定。"""

    enabled: bool = True
    max_errors: int = Field(default=1000, ge=1)
    error_window_seconds: float = Field(default=60.0, gt=0)
    slow_threshold_ms: float = Field(default=1000.0, gt=0)
    very_slow_threshold_ms: float = Field(default=5000.0, gt=0)
    error_rate_alert_threshold: float = Field(default=0.1, ge=0)
    analytics_endpoint: str = ""
    monitoring_endpoint: str = ""
    sink_token: str = ""


class LogSection(BaseModel):
    """ログ設定。"""

    level: str = "INFO"
    format: Literal["json", "text"] = "json"


class FlagEngineConfig(BaseModel):
    """フラグエンジン設定全体。"""

    service: ServiceSection = Field(default_factory=ServiceSection)
    cache: CacheSection = Field(default_factory=CacheSection)
    batch: BatchSection = Field(default_factory=BatchSection)
    experiments: ExperimentSection = Field(default_factory=ExperimentSection)
    telemetry: TelemetrySection = Field(default_factory=TelemetrySection)
    log: LogSection = Field(default_factory=LogSection)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """override を base に重ねた新しい辞書を返す。

    両方が辞書のキーだけ再帰的に重ね、それ以外（リストを含む）は override で置き換える。
    """
    merged: dict[str, Any] = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            value = deep_merge(current, value)
        merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(
            ConfigErrorCodes.READ_FILE, f"Cannot read flag engine config: {path}", cause=e
        ) from e
    except yaml.YAMLError as e:
        raise ConfigError(
            ConfigErrorCodes.PARSE_YAML, f"Invalid YAML in flag engine config: {path}", cause=e
        ) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            ConfigErrorCodes.PARSE_YAML,
            f"Flag engine config must be a mapping, got {type(data).__name__}: {path}",
        )
    return data


def env_overrides(
    environ: Mapping[str, str] | None = None, prefix: str = ENV_PREFIX
) -> dict[str, Any]:
    """環境変数から設定の上書き辞書を作る。

    `K1S0_FLAGENGINE_SERVICE__TOKEN=xxx` は `{"service": {"token": "xxx"}}` になる。
    値の型変換は pydantic のバリデーションに任せる。
    """
    source = os.environ if environ is None else environ
    result: dict[str, Any] = {}
    for key, value in source.items():
        if not key.startswith(prefix):
            continue
        path = [part.lower() for part in key[len(prefix) :].split("__") if part]
        if not path:
            continue
        node = result
        for part in path[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                break
            node = child
        else:
            node[path[-1]] = value
    return result


def load_config(
    base_path: Path,
    env_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> FlagEngineConfig:
    """設定ファイルを読み込んで FlagEngineConfig を返す。

    base_path: ベース設定ファイルパス（必須）
    env_path: 環境別設定ファイルパス（オプション）。存在する場合はベースにマージ。
    environ: 上書きに使う環境変数（省略時は os.environ）。トークンなどの秘密情報は
        YAML ではなく `K1S0_FLAGENGINE_` で始まる環境変数で渡す。
    """
    data = _read_yaml(base_path)
    if env_path is not None and env_path.exists():
        data = deep_merge(data, _read_yaml(env_path))
    data = deep_merge(data, env_overrides(environ))
    try:
        return FlagEngineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            code=ConfigErrorCodes.VALIDATION,
            message=f"Config validation failed: {e}",
            cause=e,
        ) from e
