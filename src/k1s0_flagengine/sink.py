"""分析・監視イベントのベストエフォート送信"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog

logger = structlog.stdlib.get_logger(__name__)


class AnalyticsSink(ABC):
    """イベント送信先の抽象基底クラス。"""

    @abstractmethod
    async def send(self, event: dict[str, Any]) -> None:
        """イベントを 1 件送信する。失敗時は例外を送出してよい。"""
        ...


class NullAnalyticsSink(AnalyticsSink):
    """送信先が未設定のときに使う何もしない sink。"""

    async def send(self, event: dict[str, Any]) -> None:
        return None


class InMemoryAnalyticsSink(AnalyticsSink):
    """テスト用に受け取ったイベントを保持する sink。"""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    async def send(self, event: dict[str, Any]) -> None:
        self.events.append(event)


class HttpAnalyticsSink(AnalyticsSink):
    """httpx で JSON イベントを POST する sink。"""

    def __init__(self, endpoint: str, token: str = "", timeout_seconds: float = 5.0) -> None:
        self._endpoint = endpoint
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._headers = headers
        self._timeout = timeout_seconds

    async def send(self, event: dict[str, Any]) -> None:
        async with httpx.AsyncClient(headers=self._headers, timeout=self._timeout) as client:
            resp = await client.post(self._endpoint, json=event)
        resp.raise_for_status()


def sink_for(endpoint: str, token: str = "") -> AnalyticsSink:
    """エンドポイントが空なら NullAnalyticsSink を返す。"""
    if not endpoint:
        return NullAnalyticsSink()
    return HttpAnalyticsSink(endpoint, token=token)


class EventForwarder:
    """sink への送信をバックグラウンドタスクで行う。

    送信の成否は呼び出し元の戻り値に影響しない。失敗はログに残すだけ。
    """

    def __init__(self, sink: AnalyticsSink | None = None) -> None:
        self._sink = sink or NullAnalyticsSink()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def enabled(self) -> bool:
        return not isinstance(self._sink, NullAnalyticsSink)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def forward(self, event: dict[str, Any]) -> None:
        """イベント送信をスケジュールする。イベントループ外では破棄する。"""
        if not self.enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, dropping forwarded event")
            return
        task = loop.create_task(self._send(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, event: dict[str, Any]) -> None:
        try:
            await self._sink.send(event)
        except Exception as e:
            logger.warning(
                "Failed to forward event",
                event_type=event.get("eventType") or event.get("type"),
                error=str(e),
            )

    async def drain(self) -> None:
        """未完了の送信タスクの完了を待つ。"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
