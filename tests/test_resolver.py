"""FlagResolver のユニットテスト"""

import pytest
from k1s0_flagengine.config import TelemetrySection
from k1s0_flagengine.exceptions import FlagTransportError
from k1s0_flagengine.memory import InMemoryFlagServiceClient
from k1s0_flagengine.models import NOT_FOUND_REASON, PARENT_DISABLED_REASON
from k1s0_flagengine.resolver import FlagResolver
from k1s0_flagengine.telemetry import TelemetryAggregator


async def test_disabled_parent_short_circuits_child() -> None:
    """親が無効なら子は無効になり、子はリモートに問い合わせない。"""
    client = InMemoryFlagServiceClient({"events": False, "events.creation": True})
    resolver = FlagResolver(client)
    result = await resolver.resolve("events.creation")
    assert result.enabled is False
    assert result.reason == PARENT_DISABLED_REASON
    assert client.check_count("events.creation") == 0
    assert client.check_count("events") == 1


async def test_enabled_parent_checks_child() -> None:
    """親が有効なら子の値をそのまま返す。"""
    client = InMemoryFlagServiceClient({"events": True, "events.creation": False})
    resolver = FlagResolver(client)
    result = await resolver.resolve("events.creation")
    assert result.enabled is False
    assert result.reason is None
    assert client.check_count("events.creation") == 1


async def test_hierarchy_checks_first_segment_only() -> None:
    """"a.b.c" は "a" だけを親として確認する。"""
    client = InMemoryFlagServiceClient({"a": True, "a.b": False, "a.b.c": True})
    resolver = FlagResolver(client)
    assert (await resolver.resolve("a.b.c")).enabled is True
    assert client.check_count("a.b") == 0


async def test_unknown_flag_resolves_disabled() -> None:
    """存在しないフラグは無効。"""
    resolver = FlagResolver(InMemoryFlagServiceClient())
    result = await resolver.resolve("missing")
    assert result.enabled is False
    assert result.reason == NOT_FOUND_REASON


async def test_check_ignores_parent() -> None:
    """check は親を考慮しない。"""
    client = InMemoryFlagServiceClient({"events": False, "events.creation": True})
    resolver = FlagResolver(client)
    assert (await resolver.check("events.creation")).enabled is True
    assert client.check_count("events") == 0


async def test_parent_lookup_is_used() -> None:
    """親の評価には parent_lookup を使う。"""
    client = InMemoryFlagServiceClient({"events": True, "events.creation": True})
    looked_up: list[str] = []

    async def lookup(name: str):
        looked_up.append(name)
        return await client.check_enabled(name)

    resolver = FlagResolver(client, parent_lookup=lookup)
    await resolver.resolve("events.creation")
    assert looked_up == ["events"]


async def test_errors_propagate_and_are_recorded() -> None:
    """リモートの失敗は送出され、テレメトリに記録される。"""
    client = InMemoryFlagServiceClient({"search": True})
    client.fail_with("search", FlagTransportError("service down"))
    telemetry = TelemetryAggregator(TelemetrySection())
    resolver = FlagResolver(client, telemetry=telemetry)
    with pytest.raises(FlagTransportError):
        await resolver.resolve("search")
    usage = telemetry.get_usage_statistics()
    assert usage["total_checks"] == 1
    assert usage["error_rate"] == 1.0
    assert telemetry.get_error_statistics()["total_errors"] == 1


async def test_successful_checks_are_recorded() -> None:
    """成功した評価は有効・無効別に記録される。"""
    client = InMemoryFlagServiceClient({"search": True, "chat": False})
    telemetry = TelemetryAggregator()
    resolver = FlagResolver(client, telemetry=telemetry)
    await resolver.resolve("search")
    await resolver.resolve("chat")
    await resolver.resolve("search")
    stats = {s["flag"]: s for s in telemetry.get_usage_statistics()["most_used_features"]}
    assert stats["search"]["enabled_checks"] == 2
    assert stats["chat"]["disabled_checks"] == 1
