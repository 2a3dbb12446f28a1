"""
Value types passed between the login flow components.
Plain dataclasses; nothing here does I/O.
"""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping, Protocol

CORRELATION_KEY = ".xsrf"


class CorrelationStore(Protocol):
    """Out-of-band, per-browser value store (a cookie in the host app)."""

    def get(self, name: str) -> str | None: ...

    def set(self, name: str, value: str) -> None: ...

    def delete(self, name: str) -> None: ...


@dataclass
class ChallengeRequest:
    """Host request to start a login. Empty redirect_target means "not set yet"."""
    redirect_target: str = ""
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RoundTripState:
    """Carried through QQ Connect in the state parameter."""
    redirect_target: str
    extra: dict[str, str] = field(default_factory=dict)

    @property
    def correlation_token(self) -> str | None:
        return self.extra.get(CORRELATION_KEY)

    def with_extra(self, **values: str) -> "RoundTripState":
        return replace(self, extra={**self.extra, **values})

    def without_extra(self, key: str) -> "RoundTripState":
        return replace(self, extra={k: v for k, v in self.extra.items() if k != key})


@dataclass(frozen=True)
class ProviderToken:
    access_token: str
    expires_in: int | None = None
    refresh_token: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def __repr__(self) -> str:
        # Keep token values out of logs and tracebacks
        return f"ProviderToken(access_token=***, expires_in={self.expires_in!r})"


@dataclass(frozen=True)
class OpenIdResult:
    openid: str
    client_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class UserProfile:
    nickname: str | None = None
    gender: str | None = None
    figureurl: str | None = None
    figureurl_1: str | None = None
    figureurl_2: str | None = None
    figureurl_qq_1: str | None = None
    figureurl_qq_2: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    AVATAR_FIELDS = ("figureurl", "figureurl_1", "figureurl_2", "figureurl_qq_1", "figureurl_qq_2")

    @classmethod
    def from_response(cls, data: Mapping[str, Any]) -> "UserProfile":
        def text(key: str) -> str | None:
            value = data.get(key)
            if value is None:
                return None
            value = str(value).strip()
            return value or None

        return cls(
            nickname=text("nickname"),
            gender=text("gender"),
            **{name: text(name) for name in cls.AVATAR_FIELDS},
            raw=dict(data),
        )


@dataclass(frozen=True)
class Claim:
    type: str
    value: str


@dataclass(frozen=True)
class NormalizedIdentity:
    subject: str
    claims: tuple[Claim, ...]
    authentication_type: str
    name_claim_type: str = "name"

    @property
    def name(self) -> str | None:
        return self.find_first(self.name_claim_type)

    def find_first(self, claim_type: str) -> str | None:
        for claim in self.claims:
            if claim.type == claim_type:
                return claim.value
        return None

    def with_authentication_type(self, authentication_type: str) -> "NormalizedIdentity":
        return replace(self, authentication_type=authentication_type)


class FailureReason(str, Enum):
    INVALID_STATE = "invalid_state"
    CORRELATION_MISMATCH = "correlation_mismatch"
    MISSING_CODE = "missing_code"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    ID_RESOLUTION_FAILED = "id_resolution_failed"
    PROFILE_FETCH_FAILED = "profile_fetch_failed"
    CANCELLED = "cancelled"
    UNEXPECTED = "unexpected"


@dataclass(frozen=True)
class AuthSuccess:
    identity: NormalizedIdentity
    redirect_target: str
    properties: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AuthFailure:
    reason: FailureReason
    redirect_target: str | None = None


AuthOutcome = AuthSuccess | AuthFailure


@dataclass(frozen=True)
class RedirectInstruction:
    location: str
    status_code: int = 302


@dataclass
class HostRequest:
    """
    What a host passes to the flow: the request path, query parameters, the current absolute URL,
    the base URL (scheme + host + path base) and the correlation store bound to this browser.
    """
    path: str
    query: Mapping[str, str]
    url: str
    base_url: str
    correlation: CorrelationStore
