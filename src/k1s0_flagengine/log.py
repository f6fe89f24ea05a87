"""フラグエンジンのログ設定（structlog）"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

from .config import LogSection

LOGGER_NAME = "k1s0_flagengine"


def _renderers(format: str) -> list[structlog.types.Processor]:
    if format == "json":
        return [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    return [structlog.dev.ConsoleRenderer()]


def _package_logger(level: int) -> logging.Logger:
    # モジュールのロガー (k1s0_flagengine.*) はこのロガーのレベルとハンドラを継承する
    package = logging.getLogger(LOGGER_NAME)
    package.setLevel(level)
    if not package.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(message)s"))
        package.addHandler(handler)
    package.propagate = False
    return package


def new_logger(
    level: str = "INFO", format: str = "json", **context: Any
) -> structlog.stdlib.BoundLogger:
    """フラグエンジン用に structlog を設定し、ロガーを返す。

    Args:
        level: ログレベル ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        format: 出力形式 ("json" or "text")
        context: 全てのログに付与するキー（例: service="event-api"）

    Returns:
        context を束縛した structlog.stdlib.BoundLogger
    """
    _package_logger(getattr(logging, level.upper(), logging.INFO))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            *_renderers(format),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logger = structlog.stdlib.get_logger(LOGGER_NAME)
    return logger.bind(**context) if context else logger


def configure_logging(section: LogSection, **context: Any) -> structlog.stdlib.BoundLogger:
    """LogSection からロガーを設定する。"""
    return new_logger(level=section.level, format=section.format, **context)
