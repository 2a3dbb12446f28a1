"""
Pytest configuration for qqconnect. In-memory SQLite and a fixed state key, set before any qqconnect import.
FakeQQ stands in for graph.qq.com and records every call it receives.
"""
import os

os.environ["QQCONNECT_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["QQCONNECT_STATE_KEY"] = "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY="
os.environ["QQCONNECT_APP_ID"] = "101000"
os.environ["QQCONNECT_APP_KEY"] = "test-app-key"

import httpx  # noqa: E402
import pytest  # noqa: E402
from cryptography.fernet import Fernet  # noqa: E402

from qqconnect.flow import AuthFlowController  # noqa: E402
from qqconnect.provider_client import QQConnectClient  # noqa: E402
from qqconnect.state_codec import FernetStateCodec  # noqa: E402

TOKEN_PATH = "/oauth2.0/token"
OPENID_PATH = "/oauth2.0/me"
USER_INFO_PATH = "/user/get_user_info"


class FakeQQ:
    """MockTransport handler. responses: path -> (status, body) or an exception to raise."""

    def __init__(self):
        self.calls: list[str] = []
        self.requests: list[httpx.Request] = []
        self.responses = {
            TOKEN_PATH: (200, '{"access_token":"T1","expires_in":"7776000","refresh_token":"R1"}'),
            OPENID_PATH: (200, 'callback( {"client_id":"101000","openid":"U1"} );'),
            USER_INFO_PATH: (
                200,
                '{"ret":0,"msg":"","nickname":"Alice","gender":"女",'
                '"figureurl_qq_1":"http://thirdqq.qlogo.cn/40","figureurl_qq_2":"http://thirdqq.qlogo.cn/100"}',
            ),
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request.url.path)
        self.requests.append(request)
        response = self.responses[request.url.path]
        if isinstance(response, Exception):
            raise response
        status, body = response
        return httpx.Response(status, text=body)


@pytest.fixture
def fake_qq():
    return FakeQQ()


@pytest.fixture
def qq_client(fake_qq):
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake_qq))
    return QQConnectClient(http, app_id="101000", app_key="test-app-key")


@pytest.fixture
def codec():
    return FernetStateCodec(Fernet.generate_key(), ttl=600)


@pytest.fixture
def signed_in():
    """Collects (identity, redirect_target, properties) handed to the sign-in sink."""
    return []


@pytest.fixture
def controller(qq_client, codec, signed_in):
    return AuthFlowController(
        qq_client,
        codec,
        sign_in=lambda identity, target, properties: signed_in.append((identity, target, properties)),
        authentication_type="QQConnect",
        sign_in_as="Cookies",
        callback_path="/signin-qqconnect",
    )
