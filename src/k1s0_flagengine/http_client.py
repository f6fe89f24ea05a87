"""フラグサービス HTTP クライアント実装"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar
from urllib.parse import quote

import httpx

from .client import FlagServiceClient
from .config import ServiceSection
from .exceptions import (
    FeatureFlagError,
    FeatureFlagErrorCodes,
    FlagAuthError,
    FlagNotFoundError,
    FlagTransportError,
)
from .models import NOT_FOUND_REASON, FeatureFlag, FlagResolution, FlagStatus, unwrap_envelope

TokenProvider = Callable[[], str | None]
ModelT = TypeVar("ModelT")


def _flag_path(flag_name: str) -> str:
    # フラグ名は `.` を含むためエンコードする
    return f"/flags/{quote(flag_name, safe='')}"


def _flag_list(data: Any) -> list[FeatureFlag]:
    if isinstance(data, dict):
        data = data.get("flags", [])
    if not isinstance(data, list):
        raise ValueError(f"expected a list of flags, got {type(data).__name__}")
    return [FeatureFlag.from_dict(item) for item in data]


class HttpFlagServiceClient(FlagServiceClient):
    """httpx を使ったフラグサービス HTTP クライアント。"""

    def __init__(
        self,
        config: ServiceSection,
        token_provider: TokenProvider | None = None,
    ) -> None:
        self._config = config
        self._token_provider = token_provider

    def _token(self) -> str:
        token = self._token_provider() if self._token_provider else self._config.token
        if not token:
            raise FlagAuthError("No feature flag service token configured")
        return token

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._config.base_url,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._token()}",
            },
            timeout=self._config.timeout_seconds,
        )

    def _handle_error(self, resp: httpx.Response, context: str) -> None:
        if resp.status_code in (401, 403):
            raise FlagAuthError(f"{context}: HTTP {resp.status_code}")
        if resp.status_code >= 500:
            raise FlagTransportError(f"{context}: HTTP {resp.status_code}: {resp.text}")
        if resp.status_code >= 400:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.HTTP_ERROR,
                message=f"{context}: HTTP {resp.status_code}: {resp.text}",
            )

    async def _request(
        self,
        method: str,
        path: str,
        context: str,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            async with self._make_client() as client:
                return await client.request(method, path, **kwargs)
        except FeatureFlagError:
            raise
        except httpx.TimeoutException as e:
            raise FlagTransportError(
                f"{context}: request timed out",
                cause=e,
                code=FeatureFlagErrorCodes.TIMEOUT,
            ) from e
        except httpx.TransportError as e:
            raise FlagTransportError(f"{context}: {e}", cause=e) from e

    @staticmethod
    def _json(resp: httpx.Response, context: str) -> Any:
        try:
            return unwrap_envelope(resp.json())
        except ValueError as e:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.HTTP_ERROR,
                message=f"{context}: invalid JSON response",
                cause=e,
            ) from e

    @classmethod
    def _parse(
        cls, resp: httpx.Response, context: str, build: Callable[[Any], ModelT]
    ) -> ModelT:
        data = cls._json(resp, context)
        try:
            return build(data)
        except ValueError as e:
            raise FeatureFlagError(
                code=FeatureFlagErrorCodes.HTTP_ERROR,
                message=f"{context}: malformed response: {e}",
                cause=e,
            ) from e

    async def list_flags(self, status: FlagStatus | None = None) -> list[FeatureFlag]:
        context = "list_flags" if status is None else f"list_flags({status})"
        params = {"status": str(status)} if status is not None else None
        resp = await self._request("GET", "/flags", context, params=params)
        self._handle_error(resp, context)
        return self._parse(resp, context, _flag_list)

    async def get_flag(self, flag_name: str) -> FeatureFlag:
        context = f"get_flag({flag_name})"
        resp = await self._request("GET", _flag_path(flag_name), context)
        if resp.status_code == 404:
            raise FlagNotFoundError(flag_name)
        self._handle_error(resp, context)
        return self._parse(resp, context, FeatureFlag.from_dict)

    async def check_enabled(self, flag_name: str) -> FlagResolution:
        context = f"check_enabled({flag_name})"
        resp = await self._request("GET", f"{_flag_path(flag_name)}/enabled", context)
        if resp.status_code == 404:
            return FlagResolution(name=flag_name, enabled=False, reason=NOT_FOUND_REASON)
        self._handle_error(resp, context)
        return self._parse(
            resp, context, lambda data: FlagResolution.from_dict(data, flag_name)
        )

    async def create_flag(self, flag: FeatureFlag) -> FeatureFlag:
        context = f"create_flag({flag.name})"
        resp = await self._request("POST", "/flags", context, json=flag.to_dict())
        self._handle_error(resp, context)
        return self._parse(resp, context, FeatureFlag.from_dict)

    async def update_flag(
        self,
        flag_name: str,
        enabled: bool | None = None,
        description: str | None = None,
    ) -> FeatureFlag:
        context = f"update_flag({flag_name})"
        body: dict[str, Any] = {}
        if enabled is not None:
            body["enabled"] = enabled
        if description is not None:
            body["description"] = description
        resp = await self._request("PUT", _flag_path(flag_name), context, json=body)
        if resp.status_code == 404:
            raise FlagNotFoundError(flag_name)
        self._handle_error(resp, context)
        return self._parse(resp, context, FeatureFlag.from_dict)

    async def delete_flag(self, flag_name: str) -> None:
        context = f"delete_flag({flag_name})"
        resp = await self._request("DELETE", _flag_path(flag_name), context)
        if resp.status_code == 404:
            raise FlagNotFoundError(flag_name)
        self._handle_error(resp, context)
