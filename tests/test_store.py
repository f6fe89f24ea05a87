"""KeyValueStore 実装のユニットテスト"""

from pathlib import Path

import pytest
from k1s0_flagengine.exceptions import FeatureFlagError, FeatureFlagErrorCodes
from k1s0_flagengine.store import InMemoryKeyValueStore, JsonFileKeyValueStore


async def test_in_memory_set_and_get() -> None:
    """値の保存と取得。"""
    store = InMemoryKeyValueStore({"a": "1"})
    await store.set("b", "2")
    assert await store.get("a") == "1"
    assert await store.get("b") == "2"
    assert await store.get("missing") is None
    assert store.snapshot() == {"a": "1", "b": "2"}


async def test_json_file_persists_across_instances(tmp_path: Path) -> None:
    """ファイルに保存した値は別インスタンスから読める。"""
    path = tmp_path / "state" / "flags.json"
    first = JsonFileKeyValueStore(path)
    await first.set("anonymous_user_id", "anon_1")
    assert path.exists()
    assert not path.with_suffix(".json.tmp").exists()

    second = JsonFileKeyValueStore(path)
    assert await second.get("anonymous_user_id") == "anon_1"
    assert await second.get("missing") is None


async def test_json_file_missing_file_is_empty(tmp_path: Path) -> None:
    """ファイルが無ければ空として扱う。"""
    store = JsonFileKeyValueStore(tmp_path / "none.json")
    assert await store.get("key") is None


async def test_json_file_corrupted(tmp_path: Path) -> None:
    """壊れたファイルは FeatureFlagError(STORE_ERROR)。"""
    path = tmp_path / "bad.json"
    path.write_text("{not json")
    with pytest.raises(FeatureFlagError) as exc_info:
        await JsonFileKeyValueStore(path).get("key")
    assert exc_info.value.code == FeatureFlagErrorCodes.STORE_ERROR


async def test_json_file_not_an_object(tmp_path: Path) -> None:
    """JSON オブジェクト以外は FeatureFlagError(STORE_ERROR)。"""
    path = tmp_path / "list.json"
    path.write_text("[1, 2]")
    with pytest.raises(FeatureFlagError) as exc_info:
        await JsonFileKeyValueStore(path).get("key")
    assert exc_info.value.code == FeatureFlagErrorCodes.STORE_ERROR
