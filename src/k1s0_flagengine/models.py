"""フラグ評価のデータモデル"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

PARENT_DISABLED_REASON = "parent feature disabled"
NOT_FOUND_REASON = "flag not found"


def unwrap_envelope(data: Any) -> Any:
    """{"data": ...} 形式のレスポンスから中身を取り出す。"""
    if isinstance(data, dict) and isinstance(data.get("data"), (dict, list)):
        return data["data"]
    return data


def _mapping(data: Any) -> dict[str, Any]:
    data = unwrap_envelope(data)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _flag_state(data: dict[str, Any]) -> bool:
    # "false" などの文字列を真と扱わない
    value = data.get("enabled")
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ValueError(f"enabled must be a boolean, got {value!r}")
    return value


class FlagStatus(StrEnum):
    """フラグ一覧の絞り込み条件。"""

    ENABLED = "enabled"
    DISABLED = "disabled"


class CompositionMode(StrEnum):
    """複数フラグの合成方法。"""

    ALL = "all"
    ANY = "any"


@dataclass
class FeatureFlag:
    """リモートのフラグサービスが保持するフラグ定義。"""

    name: str
    enabled: bool = False
    description: str = ""
    created_at: str = ""
    updated_at: str = ""

    @property
    def parent(self) -> str:
        return parent_of(self.name)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeatureFlag:
        """API レスポンス辞書から FeatureFlag を生成する。

        Raises:
            ValueError: オブジェクトでない、または enabled が真偽値でない場合
        """
        data = _mapping(data)
        return cls(
            name=data.get("name") or data.get("featureName", ""),
            enabled=_flag_state(data),
            description=data.get("description") or "",
            created_at=data.get("createdAt") or data.get("created_at") or "",
            updated_at=data.get("updatedAt") or data.get("updated_at") or "",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "enabled": self.enabled,
            "description": self.description,
        }


@dataclass(frozen=True)
class FlagResolution:
    """単一フラグの評価結果。"""

    name: str
    enabled: bool
    reason: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], name: str) -> FlagResolution:
        """`GET /flags/{name}/enabled` のレスポンスから生成する。"""
        data = _mapping(data)
        return cls(name=data.get("name") or name, enabled=_flag_state(data))

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"name": self.name, "enabled": self.enabled}
        if self.reason is not None:
            result["reason"] = self.reason
        return result


def parent_of(flag_name: str) -> str:
    """階層フラグ名の親（最初の `.` より前）を返す。親が無ければ自身。"""
    return flag_name.split(".")[0]
