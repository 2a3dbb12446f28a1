"""Tests for the QQ Connect client: authorize URL, body parsing, the three provider calls, cancellation."""
import asyncio
import time
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from conftest import OPENID_PATH, TOKEN_PATH, USER_INFO_PATH
from qqconnect.provider_client import (
    ExchangeError,
    ProfileError,
    QQConnectClient,
    ResolveError,
    parse_provider_body,
    split_provider_properties,
)

CALLBACK = "https://app.example/signin-qqconnect"


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def test_build_authorization_url_includes_required_params(qq_client):
    url = qq_client.build_authorization_url({}, "opaque-state", CALLBACK)
    assert url.startswith("https://graph.qq.com/oauth2.0/authorize?")
    params = _query(url)
    assert params == {
        "response_type": "code",
        "client_id": "101000",
        "redirect_uri": CALLBACK,
        "state": "opaque-state",
        "scope": "get_user_info",
    }


def test_build_authorization_url_with_provider_properties(qq_client):
    url = qq_client.build_authorization_url({"scope": "get_user_info,list_album", "display": "mobile"}, "s", CALLBACK)
    params = _query(url)
    assert params["scope"] == "get_user_info,list_album"
    assert params["display"] == "mobile"


def test_build_authorization_url_does_no_io(qq_client, fake_qq):
    qq_client.build_authorization_url({}, "s", CALLBACK)
    assert fake_qq.calls == []


def test_split_provider_properties():
    provider, remaining = split_provider_properties({"qqconnect:display": "mobile", "tenant": "a"})
    assert provider == {"display": "mobile"}
    assert remaining == {"tenant": "a"}


@pytest.mark.parametrize(
    "body,expected",
    [
        ('{"access_token":"T","expires_in":"10"}', {"access_token": "T", "expires_in": "10"}),
        ('callback( {"client_id":"1","openid":"O"} );', {"client_id": "1", "openid": "O"}),
        ("callback({\"openid\":\"O\"})\n", {"openid": "O"}),
        ("access_token=T&expires_in=7776000&refresh_token=R", {"access_token": "T", "expires_in": "7776000", "refresh_token": "R"}),
    ],
)
def test_parse_provider_body(body, expected):
    assert parse_provider_body(body) == expected


@pytest.mark.parametrize("body", ["", "   ", "<html>oops</html>", "[1, 2]", "{not json", "callback( [1] );"])
def test_parse_provider_body_rejects_garbage(body):
    with pytest.raises(ValueError):
        parse_provider_body(body)


def test_exchange_code_success(qq_client, fake_qq):
    token = asyncio.run(qq_client.exchange_code("abc", CALLBACK))
    assert token.access_token == "T1"
    assert token.expires_in == 7776000
    assert token.refresh_token == "R1"
    assert "T1" not in repr(token)

    sent = fake_qq.requests[0].url.params
    assert sent["grant_type"] == "authorization_code"
    assert sent["code"] == "abc"
    assert sent["client_id"] == "101000"
    assert sent["client_secret"] == "test-app-key"
    assert sent["redirect_uri"] == CALLBACK


def test_exchange_code_form_encoded_body(qq_client, fake_qq):
    fake_qq.responses[TOKEN_PATH] = (200, "access_token=T2&expires_in=100&refresh_token=R2")
    token = asyncio.run(qq_client.exchange_code("abc", CALLBACK))
    assert token.access_token == "T2"
    assert token.expires_in == 100


def test_exchange_code_empty_token_is_soft_failure(qq_client, fake_qq):
    fake_qq.responses[TOKEN_PATH] = (200, '{"access_token":"","expires_in":"10"}')
    with pytest.raises(ExchangeError) as exc:
        asyncio.run(qq_client.exchange_code("abc", CALLBACK))
    assert exc.value.transport is False
    assert "access_token was not found" in str(exc.value)


def test_exchange_code_provider_error_body(qq_client, fake_qq):
    fake_qq.responses[TOKEN_PATH] = (200, 'callback( {"error":100019,"error_description":"code to access token error"} );')
    with pytest.raises(ExchangeError) as exc:
        asyncio.run(qq_client.exchange_code("abc", CALLBACK))
    assert exc.value.transport is False
    assert "100019" in str(exc.value)


def test_exchange_code_http_error_is_transport_failure(qq_client, fake_qq):
    fake_qq.responses[TOKEN_PATH] = (502, "bad gateway")
    with pytest.raises(ExchangeError) as exc:
        asyncio.run(qq_client.exchange_code("abc", CALLBACK))
    assert exc.value.transport is True
    assert exc.value.status_code == 502


def test_exchange_code_network_error_is_transport_failure(qq_client, fake_qq):
    fake_qq.responses[TOKEN_PATH] = httpx.ConnectError("connection refused")
    with pytest.raises(ExchangeError) as exc:
        asyncio.run(qq_client.exchange_code("abc", CALLBACK))
    assert exc.value.transport is True
    assert fake_qq.calls == [TOKEN_PATH]


def test_exchange_code_does_not_retry(qq_client, fake_qq):
    fake_qq.responses[TOKEN_PATH] = (503, "")
    with pytest.raises(ExchangeError):
        asyncio.run(qq_client.exchange_code("abc", CALLBACK))
    assert fake_qq.calls == [TOKEN_PATH]


def test_resolve_openid_success(qq_client, fake_qq):
    result = asyncio.run(qq_client.resolve_openid("T1"))
    assert result.openid == "U1"
    assert result.client_id == "101000"
    assert fake_qq.requests[0].url.params["access_token"] == "T1"


def test_resolve_openid_blank(qq_client, fake_qq):
    fake_qq.responses[OPENID_PATH] = (200, '{"client_id":"101000","openid":"  "}')
    with pytest.raises(ResolveError) as exc:
        asyncio.run(qq_client.resolve_openid("T1"))
    assert exc.value.transport is False


def test_resolve_openid_unparseable(qq_client, fake_qq):
    fake_qq.responses[OPENID_PATH] = (200, "<html>maintenance</html>")
    with pytest.raises(ResolveError):
        asyncio.run(qq_client.resolve_openid("T1"))


def test_fetch_profile_success(qq_client, fake_qq):
    profile = asyncio.run(qq_client.fetch_profile("T1", "U1"))
    assert profile.nickname == "Alice"
    assert profile.figureurl_qq_2 == "http://thirdqq.qlogo.cn/100"
    assert profile.figureurl is None
    params = fake_qq.requests[0].url.params
    assert params["oauth_consumer_key"] == "101000"
    assert params["openid"] == "U1"


def test_fetch_profile_ret_nonzero(qq_client, fake_qq):
    fake_qq.responses[USER_INFO_PATH] = (200, '{"ret":-1,"msg":"client request\'s parameters are invalid"}')
    with pytest.raises(ProfileError) as exc:
        asyncio.run(qq_client.fetch_profile("T1", "U1"))
    assert exc.value.transport is False


def test_cancel_already_set_makes_no_call(qq_client, fake_qq):
    async def scenario():
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(asyncio.CancelledError):
            await qq_client.exchange_code("abc", CALLBACK, cancel)

    asyncio.run(scenario())
    assert fake_qq.calls == []


def test_cancel_aborts_in_flight_call():
    async def slow(request):
        await asyncio.sleep(10)
        return httpx.Response(200, text='{"access_token":"late"}')

    async def scenario():
        client = QQConnectClient(
            httpx.AsyncClient(transport=httpx.MockTransport(slow)), app_id="101000", app_key="k"
        )
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)
        start = time.monotonic()
        with pytest.raises(asyncio.CancelledError):
            await client.exchange_code("abc", CALLBACK, cancel)
        return time.monotonic() - start

    assert asyncio.run(scenario()) < 5


def test_cancel_event_not_set_lets_call_finish(qq_client):
    async def scenario():
        return await qq_client.exchange_code("abc", CALLBACK, asyncio.Event())

    assert asyncio.run(scenario()).access_token == "T1"
