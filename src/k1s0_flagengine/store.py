"""KeyValueStore 抽象基底クラスと実装"""

from __future__ import annotations

import asyncio
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path

from .exceptions import FeatureFlagError, FeatureFlagErrorCodes


class KeyValueStore(ABC):
    """匿名ユーザー ID とバリアント割り当てを永続化するキーバリューストア。"""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """キーに対応する値を取得する。存在しなければ None。"""
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """キーと値を保存する。"""
        ...


class InMemoryKeyValueStore(KeyValueStore):
    """テスト用インメモリキーバリューストア。"""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def snapshot(self) -> dict[str, str]:
        """現在の内容のコピーを返す。"""
        return dict(self._data)


class JsonFileKeyValueStore(KeyValueStore):
    """単一の JSON ファイルに保存する永続キーバリューストア。

    書き込みは一時ファイルへ書いてから置き換えるため、途中で落ちても
    既存ファイルが壊れない。
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()
        self._data: dict[str, str] | None = None

    async def get(self, key: str) -> str | None:
        async with self._lock:
            data = await self._load()
            return data.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            data = await self._load()
            data[key] = value
            await asyncio.to_thread(self._write, dict(data))

    async def _load(self) -> dict[str, str]:
        if self._data is None:
            self._data = await asyncio.to_thread(self._read)
        return self._data

    def _read(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as e:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.STORE_ERROR,
                message=f"Failed to read key-value store: {self._path}",
                cause=e,
            ) from e
        if not isinstance(raw, dict):
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.STORE_ERROR,
                message=f"Key-value store is not a JSON object: {self._path}",
            )
        return {str(k): str(v) for k, v in raw.items()}

    def _write(self, data: dict[str, str]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp, self._path)
        except OSError as e:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.STORE_ERROR,
                message=f"Failed to write key-value store: {self._path}",
                cause=e,
            ) from e
