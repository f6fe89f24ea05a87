"""InMemoryFlagServiceClient 実装"""

from __future__ import annotations

from dataclasses import replace

from .client import FlagServiceClient
from .exceptions import FeatureFlagError, FeatureFlagErrorCodes, FlagNotFoundError
from .models import NOT_FOUND_REASON, FeatureFlag, FlagResolution, FlagStatus


class InMemoryFlagServiceClient(FlagServiceClient):
    """テスト用インメモリフラグサービスクライアント。

    呼び出し履歴を記録し、フラグ単位で例外を注入できる。
    """

    def __init__(self, flags: dict[str, bool] | None = None) -> None:
        self._flags: dict[str, FeatureFlag] = {}
        self._failures: dict[str, Exception] = {}
        self.calls: list[tuple[str, str]] = []
        for name, enabled in (flags or {}).items():
            self.set_flag(FeatureFlag(name=name, enabled=enabled))

    def set_flag(self, flag: FeatureFlag) -> None:
        """フラグを設定する。"""
        self._flags[flag.name] = flag

    def set_enabled(self, flag_name: str, enabled: bool) -> None:
        """既存フラグの有効状態を変更する（無ければ作成する）。"""
        flag = self._flags.get(flag_name) or FeatureFlag(name=flag_name)
        self._flags[flag_name] = replace(flag, enabled=enabled)

    def fail_with(self, flag_name: str, error: Exception | None) -> None:
        """指定フラグの確認時に error を送出させる。None で解除。"""
        if error is None:
            self._failures.pop(flag_name, None)
        else:
            self._failures[flag_name] = error

    def check_count(self, flag_name: str) -> int:
        """check_enabled が呼ばれた回数。"""
        return self.calls.count(("check_enabled", flag_name))

    def clear_history(self) -> None:
        self.calls.clear()

    def _raise_if_failing(self, flag_name: str) -> None:
        error = self._failures.get(flag_name)
        if error is not None:
            raise error

    async def list_flags(self, status: FlagStatus | None = None) -> list[FeatureFlag]:
        self.calls.append(("list_flags", str(status or "")))
        flags = list(self._flags.values())
        if status is FlagStatus.ENABLED:
            return [f for f in flags if f.enabled]
        if status is FlagStatus.DISABLED:
            return [f for f in flags if not f.enabled]
        return flags

    async def get_flag(self, flag_name: str) -> FeatureFlag:
        self.calls.append(("get_flag", flag_name))
        self._raise_if_failing(flag_name)
        flag = self._flags.get(flag_name)
        if flag is None:
            raise FlagNotFoundError(flag_name)
        return flag

    async def check_enabled(self, flag_name: str) -> FlagResolution:
        self.calls.append(("check_enabled", flag_name))
        self._raise_if_failing(flag_name)
        flag = self._flags.get(flag_name)
        if flag is None:
            return FlagResolution(name=flag_name, enabled=False, reason=NOT_FOUND_REASON)
        return FlagResolution(name=flag_name, enabled=flag.enabled)

    async def create_flag(self, flag: FeatureFlag) -> FeatureFlag:
        self.calls.append(("create_flag", flag.name))
        if flag.name in self._flags:
            raise FeatureFlagError(
                FeatureFlagErrorCodes.HTTP_ERROR,
                f"Feature flag already exists: {flag.name}",
            )
        self._flags[flag.name] = flag
        return flag

    async def update_flag(
        self,
        flag_name: str,
        enabled: bool | None = None,
        description: str | None = None,
    ) -> FeatureFlag:
        self.calls.append(("update_flag", flag_name))
        flag = self._flags.get(flag_name)
        if flag is None:
            raise FlagNotFoundError(flag_name)
        if enabled is not None:
            flag = replace(flag, enabled=enabled)
        if description is not None:
            flag = replace(flag, description=description)
        self._flags[flag_name] = flag
        return flag

    async def delete_flag(self, flag_name: str) -> None:
        self.calls.append(("delete_flag", flag_name))
        if self._flags.pop(flag_name, None) is None:
            raise FlagNotFoundError(flag_name)
