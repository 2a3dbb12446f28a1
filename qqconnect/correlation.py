"""
CSRF protection for the login round trip.
A random correlation value is written to the browser (cookie) and embedded in the protected state;
on callback both must match. The cookie is consumed on first validation, match or not.
"""
import hmac
import logging
import secrets

from qqconnect.schemas import CORRELATION_KEY, CorrelationStore, RoundTripState

logger = logging.getLogger(__name__)


def generate_correlation_token() -> str:
    """256 bits, URL-safe."""
    return secrets.token_urlsafe(32)


def correlation_cookie_name(authentication_type: str) -> str:
    return f"qqconnect.correlation.{authentication_type}"


class InMemoryCorrelationStore:
    """Dict-backed store; one instance stands in for one browser's cookie jar."""

    def __init__(self, values: dict[str, str] | None = None):
        self.values: dict[str, str] = dict(values or {})

    def get(self, name: str) -> str | None:
        return self.values.get(name)

    def set(self, name: str, value: str) -> None:
        self.values[name] = value

    def delete(self, name: str) -> None:
        self.values.pop(name, None)


class CorrelationGuard:
    def __init__(self, authentication_type: str):
        self.cookie_name = correlation_cookie_name(authentication_type)

    def issue(self, state: RoundTripState, store: CorrelationStore) -> RoundTripState:
        """Return a copy of state carrying a fresh token; write the same token to the store."""
        token = generate_correlation_token()
        store.set(self.cookie_name, token)
        return state.with_extra(**{CORRELATION_KEY: token})

    def validate(self, state: RoundTripState, store: CorrelationStore) -> bool:
        stored = store.get(self.cookie_name)
        if stored is None:
            logger.warning("%s cookie not found", self.cookie_name)
            return False
        # Single use: consumed whether or not it matches
        store.delete(self.cookie_name)

        embedded = state.correlation_token
        if not embedded:
            logger.warning("correlation value missing from state")
            return False
        if not hmac.compare_digest(stored.encode("utf-8"), embedded.encode("utf-8")):
            logger.warning("%s state property mismatch", self.cookie_name)
            return False
        return True
