"""flagengine ライブラリの例外型定義"""

from __future__ import annotations


class FeatureFlagError(Exception):
    """flagengine ライブラリのエラー基底クラス。"""

    def __init__(
        self,
        code: str,
        message: str,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"


class FeatureFlagErrorCodes:
    """FeatureFlagError のエラーコード定数。"""

    FLAG_NOT_FOUND: str = "FLAG_NOT_FOUND"
    UNAUTHORIZED: str = "UNAUTHORIZED"
    CONNECTION_ERROR: str = "CONNECTION_ERROR"
    TIMEOUT: str = "TIMEOUT"
    HTTP_ERROR: str = "HTTP_ERROR"
    CONFIG_ERROR: str = "CONFIG_ERROR"
    STORE_ERROR: str = "STORE_ERROR"


class FlagAuthError(FeatureFlagError):
    """認証情報が無い、または無効な場合のエラー。キャッシュでは握りつぶさない。"""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(FeatureFlagErrorCodes.UNAUTHORIZED, message, cause)


class FlagTransportError(FeatureFlagError):
    """ネットワーク障害・タイムアウト・サーバーエラー。"""

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        code: str = FeatureFlagErrorCodes.CONNECTION_ERROR,
    ) -> None:
        super().__init__(code, message, cause)


class FlagNotFoundError(FeatureFlagError):
    """フラグ定義が存在しない場合のエラー（get_flag 専用）。"""

    def __init__(self, flag_name: str) -> None:
        self.flag_name = flag_name
        super().__init__(
            FeatureFlagErrorCodes.FLAG_NOT_FOUND,
            f"Feature flag not found: {flag_name}",
        )


class ExperimentConfigError(FeatureFlagError):
    """実験定義が不正な場合のエラー。"""

    def __init__(self, experiment_name: str, message: str) -> None:
        self.experiment_name = experiment_name
        super().__init__(
            FeatureFlagErrorCodes.CONFIG_ERROR,
            f"Invalid experiment '{experiment_name}': {message}",
        )


class ConfigError(Exception):
    """設定読み込みのエラー。"""

    def __init__(
        self,
        code: str,
        message: str,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"


class ConfigErrorCodes:
    """ConfigError のエラーコード定数。"""

    READ_FILE: str = "READ_FILE_ERROR"
    PARSE_YAML: str = "PARSE_YAML_ERROR"
    VALIDATION: str = "VALIDATION_ERROR"
