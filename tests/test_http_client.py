"""HttpFlagServiceClient のユニットテスト（respx モック）"""

import json

import httpx
import pytest
import respx
from k1s0_flagengine.config import ServiceSection
from k1s0_flagengine.exceptions import (
    FeatureFlagError,
    FeatureFlagErrorCodes,
    FlagAuthError,
    FlagNotFoundError,
    FlagTransportError,
)
from k1s0_flagengine.http_client import HttpFlagServiceClient
from k1s0_flagengine.models import NOT_FOUND_REASON, FeatureFlag, FlagStatus

BASE_URL = "http://flags:8080/api/v1"


def make_client(token: str = "test-token") -> HttpFlagServiceClient:
    return HttpFlagServiceClient(ServiceSection(base_url=BASE_URL, token=token))


@respx.mock
async def test_check_enabled_success() -> None:
    """有効フラグの確認と Authorization ヘッダー。"""
    route = respx.get(f"{BASE_URL}/flags/events.creation/enabled").mock(
        return_value=httpx.Response(200, json={"name": "events.creation", "enabled": True})
    )
    result = await make_client().check_enabled("events.creation")
    assert result.name == "events.creation"
    assert result.enabled is True
    assert result.reason is None
    assert route.calls.last.request.headers["Authorization"] == "Bearer test-token"


@respx.mock
async def test_check_enabled_accepts_data_envelope() -> None:
    """{"data": ...} 形式のレスポンスも受け付けること。"""
    respx.get(f"{BASE_URL}/flags/search/enabled").mock(
        return_value=httpx.Response(
            200, json={"success": True, "data": {"name": "search", "enabled": True}}
        )
    )
    result = await make_client().check_enabled("search")
    assert result.enabled is True


@respx.mock
async def test_check_enabled_not_found_is_disabled() -> None:
    """404 は無効として扱い、例外にしない。"""
    respx.get(f"{BASE_URL}/flags/unknown/enabled").mock(
        return_value=httpx.Response(404, text="Not found")
    )
    result = await make_client().check_enabled("unknown")
    assert result.enabled is False
    assert result.reason == NOT_FOUND_REASON


@respx.mock
async def test_flag_name_is_url_encoded() -> None:
    """フラグ名はパスセグメントとしてエンコードされること。"""
    route = respx.route(method="GET", host="flags").mock(
        return_value=httpx.Response(200, json={"name": "a/b c", "enabled": False})
    )
    await make_client().check_enabled("a/b c")
    assert route.calls.last.request.url.raw_path == b"/api/v1/flags/a%2Fb%20c/enabled"


@respx.mock
async def test_unauthorized_raises_auth_error() -> None:
    """401 で FlagAuthError が発生すること。"""
    respx.get(f"{BASE_URL}/flags/search/enabled").mock(
        return_value=httpx.Response(401, text="Unauthorized")
    )
    with pytest.raises(FlagAuthError) as exc_info:
        await make_client().check_enabled("search")
    assert exc_info.value.code == FeatureFlagErrorCodes.UNAUTHORIZED


@respx.mock
async def test_forbidden_raises_auth_error() -> None:
    """403 で FlagAuthError が発生すること。"""
    respx.get(f"{BASE_URL}/flags").mock(return_value=httpx.Response(403, text="Forbidden"))
    with pytest.raises(FlagAuthError):
        await make_client().list_flags()


async def test_missing_token_raises_before_request() -> None:
    """トークン未設定ならリクエスト前に FlagAuthError。"""
    with respx.mock(assert_all_called=False) as mock:
        route = mock.get(f"{BASE_URL}/flags/search/enabled")
        with pytest.raises(FlagAuthError):
            await make_client(token="").check_enabled("search")
        assert not route.called


async def test_token_provider_is_used() -> None:
    """token_provider の戻り値をトークンとして使うこと。"""
    client = HttpFlagServiceClient(
        ServiceSection(base_url=BASE_URL), token_provider=lambda: "dynamic"
    )
    with respx.mock:
        route = respx.get(f"{BASE_URL}/flags/search/enabled").mock(
            return_value=httpx.Response(200, json={"enabled": True})
        )
        await client.check_enabled("search")
    assert route.calls.last.request.headers["Authorization"] == "Bearer dynamic"


@respx.mock
async def test_server_error_raises_transport_error() -> None:
    """5xx で FlagTransportError が発生すること。"""
    respx.get(f"{BASE_URL}/flags/search/enabled").mock(
        return_value=httpx.Response(503, text="Unavailable")
    )
    with pytest.raises(FlagTransportError) as exc_info:
        await make_client().check_enabled("search")
    assert exc_info.value.code == FeatureFlagErrorCodes.CONNECTION_ERROR


@respx.mock
async def test_timeout_raises_transport_error() -> None:
    """タイムアウトで FlagTransportError(TIMEOUT) が発生すること。"""
    respx.get(f"{BASE_URL}/flags/search/enabled").mock(
        side_effect=httpx.ConnectTimeout("timed out")
    )
    with pytest.raises(FlagTransportError) as exc_info:
        await make_client().check_enabled("search")
    assert exc_info.value.code == FeatureFlagErrorCodes.TIMEOUT
    assert isinstance(exc_info.value.__cause__, httpx.TimeoutException)


@respx.mock
async def test_connection_error_raises_transport_error() -> None:
    """接続失敗で FlagTransportError(CONNECTION_ERROR) が発生すること。"""
    respx.get(f"{BASE_URL}/flags/search/enabled").mock(
        side_effect=httpx.ConnectError("refused")
    )
    with pytest.raises(FlagTransportError) as exc_info:
        await make_client().check_enabled("search")
    assert exc_info.value.code == FeatureFlagErrorCodes.CONNECTION_ERROR


@respx.mock
async def test_other_client_error_raises_http_error() -> None:
    """その他の 4xx で FeatureFlagError(HTTP_ERROR) が発生すること。"""
    respx.post(f"{BASE_URL}/flags").mock(return_value=httpx.Response(422, text="invalid"))
    with pytest.raises(FeatureFlagError) as exc_info:
        await make_client().create_flag(FeatureFlag(name="bad name"))
    assert exc_info.value.code == FeatureFlagErrorCodes.HTTP_ERROR
    assert str(exc_info.value).startswith("HTTP_ERROR: ")


@respx.mock
async def test_list_flags_with_status() -> None:
    """status 指定時はクエリパラメータで絞り込むこと。"""
    route = respx.get(f"{BASE_URL}/flags", params={"status": "enabled"}).mock(
        return_value=httpx.Response(
            200,
            json={"data": [{"name": "search", "enabled": True, "createdAt": "2024-01-01"}]},
        )
    )
    flags = await make_client().list_flags(FlagStatus.ENABLED)
    assert route.called
    assert [f.name for f in flags] == ["search"]
    assert flags[0].created_at == "2024-01-01"


@respx.mock
async def test_get_flag_not_found() -> None:
    """get_flag の 404 は FlagNotFoundError。"""
    respx.get(f"{BASE_URL}/flags/missing").mock(return_value=httpx.Response(404))
    with pytest.raises(FlagNotFoundError) as exc_info:
        await make_client().get_flag("missing")
    assert exc_info.value.code == FeatureFlagErrorCodes.FLAG_NOT_FOUND
    assert exc_info.value.flag_name == "missing"


@respx.mock
async def test_update_flag_sends_only_given_fields() -> None:
    """update_flag は指定したフィールドだけ送ること。"""
    route = respx.put(f"{BASE_URL}/flags/search").mock(
        return_value=httpx.Response(200, json={"name": "search", "enabled": False})
    )
    flag = await make_client().update_flag("search", enabled=False)
    assert flag.enabled is False
    assert json.loads(route.calls.last.request.read()) == {"enabled": False}


@respx.mock
async def test_delete_flag_success() -> None:
    """フラグ削除成功。"""
    route = respx.delete(f"{BASE_URL}/flags/search").mock(return_value=httpx.Response(204))
    await make_client().delete_flag("search")
    assert route.called


@pytest.mark.parametrize("body", [{"name": "search", "enabled": "false"}, ["search"], "ok"])
async def test_malformed_check_response_raises_http_error(body: object) -> None:
    """enabled が真偽値でない、またはオブジェクトでないレスポンスは HTTP_ERROR。"""
    with respx.mock:
        respx.get(f"{BASE_URL}/flags/search/enabled").mock(
            return_value=httpx.Response(200, json=body)
        )
        with pytest.raises(FeatureFlagError) as exc_info:
            await make_client().check_enabled("search")
    assert exc_info.value.code == FeatureFlagErrorCodes.HTTP_ERROR
    assert "malformed response" in str(exc_info.value)


@respx.mock
async def test_malformed_list_response_raises_http_error() -> None:
    """flags がリストでない一覧レスポンスは HTTP_ERROR。"""
    respx.get(f"{BASE_URL}/flags").mock(
        return_value=httpx.Response(200, json={"flags": "search"})
    )
    with pytest.raises(FeatureFlagError) as exc_info:
        await make_client().list_flags()
    assert exc_info.value.code == FeatureFlagErrorCodes.HTTP_ERROR
