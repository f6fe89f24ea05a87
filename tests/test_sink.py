"""イベント送信のユニットテスト"""

import json
from typing import Any

import httpx
import respx
from k1s0_flagengine.sink import (
    AnalyticsSink,
    EventForwarder,
    HttpAnalyticsSink,
    InMemoryAnalyticsSink,
    NullAnalyticsSink,
    sink_for,
)

ENDPOINT = "http://analytics:9000/events"


class FailingSink(AnalyticsSink):
    async def send(self, event: dict[str, Any]) -> None:
        raise RuntimeError("analytics down")


def test_sink_for_empty_endpoint_is_null() -> None:
    """エンドポイント未設定なら NullAnalyticsSink。"""
    assert isinstance(sink_for(""), NullAnalyticsSink)
    assert isinstance(sink_for(ENDPOINT), HttpAnalyticsSink)


async def test_forwarder_delivers_events() -> None:
    """forward したイベントは drain 後に届いている。"""
    sink = InMemoryAnalyticsSink()
    forwarder = EventForwarder(sink)
    forwarder.forward({"eventType": "ab_testing", "id": 1})
    forwarder.forward({"eventType": "ab_testing", "id": 2})
    assert forwarder.pending == 2
    await forwarder.drain()
    assert [e["id"] for e in sink.events] == [1, 2]
    assert forwarder.pending == 0


async def test_forwarder_swallows_sink_failure() -> None:
    """送信失敗は例外にならない。"""
    forwarder = EventForwarder(FailingSink())
    forwarder.forward({"eventType": "ab_testing"})
    await forwarder.drain()


async def test_null_forwarder_is_disabled() -> None:
    """sink 未指定の forwarder は何もしない。"""
    forwarder = EventForwarder()
    assert forwarder.enabled is False
    forwarder.forward({"eventType": "ab_testing"})
    assert forwarder.pending == 0


def test_forward_without_event_loop_is_dropped() -> None:
    """イベントループ外の forward は破棄する。"""
    sink = InMemoryAnalyticsSink()
    forwarder = EventForwarder(sink)
    forwarder.forward({"eventType": "ab_testing"})
    assert forwarder.pending == 0
    assert sink.events == []


@respx.mock
async def test_http_sink_posts_json_with_token() -> None:
    """HttpAnalyticsSink は JSON を Bearer トークン付きで POST する。"""
    route = respx.post(ENDPOINT).mock(return_value=httpx.Response(202))
    await HttpAnalyticsSink(ENDPOINT, token="sink-token").send({"eventType": "ab_testing"})
    request = route.calls.last.request
    assert request.headers["Authorization"] == "Bearer sink-token"
    assert json.loads(request.read()) == {"eventType": "ab_testing"}


@respx.mock
async def test_http_sink_failure_through_forwarder() -> None:
    """HTTP エラーは forwarder 内でログに残すだけ。"""
    route = respx.post(ENDPOINT).mock(return_value=httpx.Response(500))
    forwarder = EventForwarder(HttpAnalyticsSink(ENDPOINT))
    forwarder.forward({"eventType": "ab_testing"})
    await forwarder.drain()
    assert route.called
