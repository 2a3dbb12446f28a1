"""
QQ Connect (graph.qq.com) calls used by the login flow: authorize URL, code -> access_token,
access_token -> openid, (access_token, openid) -> user profile.
Stateless; the shared httpx.AsyncClient is injected. No retries here.
"""
import asyncio
import json
import logging
import re
from typing import Any, Mapping
from urllib.parse import parse_qsl, urlencode

import httpx

from qqconnect.config import (
    AUTHORIZATION_ENDPOINT,
    DEFAULT_SCOPE,
    HTTP_TIMEOUT,
    OPENID_ENDPOINT,
    TOKEN_ENDPOINT,
    USER_INFO_ENDPOINT,
)
from qqconnect.schemas import OpenIdResult, ProviderToken, UserProfile

logger = logging.getLogger(__name__)

PROPERTY_PREFIX = "qqconnect:"

# Older graph.qq.com endpoints answer with JSONP: callback( {...} );
_JSONP = re.compile(r"^callback\s*\(\s*(.*?)\s*\)\s*;?$", re.DOTALL)


class ProviderError(Exception):
    """
    A provider call failed. transport=True: network fault or non-2xx (hard failure);
    transport=False: the provider answered but without the expected data (soft failure).
    """
    step = "provider"

    def __init__(self, message: str, *, transport: bool, status_code: int | None = None):
        super().__init__(message)
        self.transport = transport
        self.status_code = status_code


class ExchangeError(ProviderError):
    step = "token"


class ResolveError(ProviderError):
    step = "openid"


class ProfileError(ProviderError):
    step = "get_user_info"


def parse_provider_body(text: str) -> dict[str, Any]:
    """
    Parse a graph.qq.com response body: JSON object, JSONP-wrapped JSON, or form-encoded pairs.
    Raises ValueError for anything else.
    """
    body = (text or "").strip()
    if not body:
        raise ValueError("empty body")
    m = _JSONP.match(body)
    if m:
        body = m.group(1)
    if body.startswith("{"):
        data = json.loads(body)
        if not isinstance(data, dict):
            raise ValueError("JSON body is not an object")
        return data
    return dict(parse_qsl(body, keep_blank_values=True, strict_parsing=True))


def _provider_error(data: Mapping[str, Any]) -> str | None:
    """Error reported inside a 200 body, if any."""
    if "error" in data:
        return f"error={data.get('error')} {data.get('error_description', '')}".strip()
    ret = data.get("ret")
    if ret is not None and str(ret) != "0":
        return f"ret={ret} {data.get('msg', '')}".strip()
    return None


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def split_provider_properties(metadata: Mapping[str, str]) -> tuple[dict[str, str], dict[str, str]]:
    """Split challenge metadata into QQ Connect authorize options (prefix stripped) and the rest."""
    provider: dict[str, str] = {}
    remaining: dict[str, str] = {}
    for key, value in metadata.items():
        if key.startswith(PROPERTY_PREFIX):
            provider[key[len(PROPERTY_PREFIX):]] = value
        else:
            remaining[key] = value
    return provider, remaining


async def _cancellable(call, cancel: asyncio.Event):
    """Await call, cancelling it as soon as cancel is set."""
    request = asyncio.ensure_future(call)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({request, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        request.cancel()
        raise
    finally:
        waiter.cancel()
    if request in done:
        return request.result()
    request.cancel()
    await asyncio.wait({request})
    raise asyncio.CancelledError("cancelled by caller")


class QQConnectClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        app_id: str,
        app_key: str,
        scope: str = DEFAULT_SCOPE,
        authorization_endpoint: str = AUTHORIZATION_ENDPOINT,
        token_endpoint: str = TOKEN_ENDPOINT,
        openid_endpoint: str = OPENID_ENDPOINT,
        user_info_endpoint: str = USER_INFO_ENDPOINT,
        timeout: float = HTTP_TIMEOUT,
    ):
        self._http = http
        self.app_id = app_id
        self._app_key = app_key
        self.scope = scope
        self.authorization_endpoint = authorization_endpoint
        self.token_endpoint = token_endpoint
        self.openid_endpoint = openid_endpoint
        self.user_info_endpoint = user_info_endpoint
        self._timeout = timeout

    def build_authorization_url(self, properties: Mapping[str, str], state: str, redirect_uri: str) -> str:
        """Authorize URL with response_type, client_id, redirect_uri, state, scope and optional display."""
        params = {
            "response_type": "code",
            "client_id": self.app_id,
            "redirect_uri": redirect_uri,
            "state": state,
            "scope": properties.get("scope") or self.scope,
        }
        if properties.get("display"):
            params["display"] = properties["display"]
        sep = "&" if "?" in self.authorization_endpoint else "?"
        return f"{self.authorization_endpoint}{sep}{urlencode(params)}"

    async def exchange_code(
        self, code: str, redirect_uri: str, cancel: asyncio.Event | None = None
    ) -> ProviderToken:
        data = await self._get(
            ExchangeError,
            self.token_endpoint,
            {
                "grant_type": "authorization_code",
                "client_id": self.app_id,
                "client_secret": self._app_key,
                "code": code,
                "redirect_uri": redirect_uri,
                "fmt": "json",
            },
            cancel,
        )
        access_token = str(data.get("access_token") or "").strip()
        if not access_token:
            raise ExchangeError("access_token was not found", transport=False)
        refresh_token = str(data.get("refresh_token") or "").strip() or None
        return ProviderToken(
            access_token=access_token,
            expires_in=_as_int(data.get("expires_in")),
            refresh_token=refresh_token,
            raw=data,
        )

    async def resolve_openid(self, access_token: str, cancel: asyncio.Event | None = None) -> OpenIdResult:
        data = await self._get(
            ResolveError,
            self.openid_endpoint,
            {"access_token": access_token, "fmt": "json"},
            cancel,
        )
        openid = str(data.get("openid") or "").strip()
        if not openid:
            raise ResolveError("openid was not found", transport=False)
        client_id = data.get("client_id")
        return OpenIdResult(openid=openid, client_id=str(client_id) if client_id else None, raw=data)

    async def fetch_profile(
        self, access_token: str, openid: str, cancel: asyncio.Event | None = None
    ) -> UserProfile:
        data = await self._get(
            ProfileError,
            self.user_info_endpoint,
            {"access_token": access_token, "oauth_consumer_key": self.app_id, "openid": openid},
            cancel,
        )
        return UserProfile.from_response(data)

    async def _get(
        self,
        error_cls: type[ProviderError],
        url: str,
        params: dict[str, str],
        cancel: asyncio.Event | None,
    ) -> dict[str, Any]:
        if cancel is not None and cancel.is_set():
            raise asyncio.CancelledError("cancelled by caller")
        call = self._http.get(url, params=params, headers={"Accept": "application/json"}, timeout=self._timeout)
        try:
            if cancel is None:
                response = await call
            else:
                response = await _cancellable(call, cancel)
        except httpx.HTTPError as e:
            raise error_cls(f"{error_cls.step} request failed: {e.__class__.__name__}", transport=True) from e

        if not response.is_success:
            raise error_cls(
                f"{error_cls.step} returned HTTP {response.status_code}",
                transport=True,
                status_code=response.status_code,
            )
        try:
            data = parse_provider_body(response.text)
        except ValueError as e:
            raise error_cls(f"{error_cls.step} response could not be parsed", transport=False) from e
        logger.debug("%s response received (%d bytes)", error_cls.step, len(response.content))

        provider_error = _provider_error(data)
        if provider_error:
            raise error_cls(f"{error_cls.step} rejected by provider: {provider_error}", transport=False)
        return data
