"""BatchResolver のユニットテスト"""

import asyncio

import pytest
from k1s0_flagengine.batch import BatchResolver
from k1s0_flagengine.exceptions import FlagAuthError, FlagTransportError
from k1s0_flagengine.memory import InMemoryFlagServiceClient
from k1s0_flagengine.models import FlagResolution
from k1s0_flagengine.telemetry import TelemetryAggregator


async def test_failing_flag_defaults_to_false() -> None:
    """1 件が失敗しても全件の結果を返し、失敗分は False。"""
    client = InMemoryFlagServiceClient({"a": True, "b": True, "c": True})
    client.fail_with("b", FlagTransportError("service down"))
    batch = BatchResolver(client.check_enabled)
    result = await batch.resolve_many(["a", "b", "c"])
    assert result == {"a": True, "b": False, "c": True}


async def test_auth_error_defaults_to_false() -> None:
    """認証エラーでも一括評価は失敗しない。"""
    client = InMemoryFlagServiceClient({"a": True})
    client.fail_with("a", FlagAuthError("token expired"))
    telemetry = TelemetryAggregator()
    batch = BatchResolver(client.check_enabled, telemetry=telemetry)
    assert await batch.resolve_many(["a"]) == {"a": False}
    assert telemetry.get_error_statistics()["error_types"] == {"batch_resolution_error": 1}


async def test_duplicate_names_are_resolved_once() -> None:
    """重複したフラグ名は 1 回だけ評価する。"""
    client = InMemoryFlagServiceClient({"a": True})
    batch = BatchResolver(client.check_enabled)
    assert await batch.resolve_many(["a", "a"]) == {"a": True}
    assert client.check_count("a") == 1


async def test_empty_list() -> None:
    """空リストは空の辞書。"""
    batch = BatchResolver(InMemoryFlagServiceClient().check_enabled)
    assert await batch.resolve_many([]) == {}


async def test_concurrency_is_bounded() -> None:
    """同時実行数は max_concurrency を超えない。"""
    running = 0
    peak = 0

    async def lookup(name: str) -> FlagResolution:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        return FlagResolution(name=name, enabled=True)

    batch = BatchResolver(lookup, max_concurrency=2)
    result = await batch.resolve_many([f"flag-{i}" for i in range(8)])
    assert len(result) == 8
    assert peak == 2


def test_invalid_max_concurrency() -> None:
    """max_concurrency が 0 以下なら ValueError。"""
    with pytest.raises(ValueError):
        BatchResolver(InMemoryFlagServiceClient().check_enabled, max_concurrency=0)
