"""FlagServiceClient 抽象基底クラス"""

from __future__ import annotations

from abc import ABC, abstractmethod

from .models import FeatureFlag, FlagResolution, FlagStatus


class FlagServiceClient(ABC):
    """リモートのフィーチャーフラグサービスのクライアント。"""

    @abstractmethod
    async def list_flags(self, status: FlagStatus | None = None) -> list[FeatureFlag]:
        """フラグ一覧を取得する。status 指定時は有効/無効で絞り込む。"""
        ...

    @abstractmethod
    async def get_flag(self, flag_name: str) -> FeatureFlag:
        """単一フラグの定義を取得する。存在しなければ FlagNotFoundError。"""
        ...

    @abstractmethod
    async def check_enabled(self, flag_name: str) -> FlagResolution:
        """フラグが有効か確認する。存在しないフラグは無効として返す。"""
        ...

    @abstractmethod
    async def create_flag(self, flag: FeatureFlag) -> FeatureFlag:
        """フラグを作成する。"""
        ...

    @abstractmethod
    async def update_flag(
        self,
        flag_name: str,
        enabled: bool | None = None,
        description: str | None = None,
    ) -> FeatureFlag:
        """フラグの有効状態・説明を更新する。"""
        ...

    @abstractmethod
    async def delete_flag(self, flag_name: str) -> None:
        """フラグを削除する。"""
        ...
