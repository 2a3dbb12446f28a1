"""Tests for the correlation (CSRF) guard."""
import re

from qqconnect.correlation import (
    CorrelationGuard,
    InMemoryCorrelationStore,
    correlation_cookie_name,
    generate_correlation_token,
)
from qqconnect.schemas import RoundTripState

GUARD = CorrelationGuard("QQConnect")
COOKIE = correlation_cookie_name("QQConnect")


def test_generate_correlation_token_length():
    t = generate_correlation_token()
    assert len(t) >= 43  # 32 bytes base64url
    assert re.match(r"^[A-Za-z0-9_-]+$", t)


def test_issue_writes_same_token_to_store_and_state():
    store = InMemoryCorrelationStore()
    state = GUARD.issue(RoundTripState(redirect_target="/x", extra={"k": "v"}), store)
    assert state.correlation_token
    assert store.get(COOKIE) == state.correlation_token
    assert state.extra["k"] == "v"
    assert state.redirect_target == "/x"


def test_issue_does_not_mutate_input():
    original = RoundTripState(redirect_target="/x")
    GUARD.issue(original, InMemoryCorrelationStore())
    assert original.correlation_token is None


def test_issue_twice_gives_different_tokens():
    store = InMemoryCorrelationStore()
    a = GUARD.issue(RoundTripState(redirect_target="/"), store)
    b = GUARD.issue(RoundTripState(redirect_target="/"), store)
    assert a.correlation_token != b.correlation_token


def test_validate_matching_token():
    store = InMemoryCorrelationStore()
    state = GUARD.issue(RoundTripState(redirect_target="/"), store)
    assert GUARD.validate(state, store) is True


def test_validate_is_single_use():
    store = InMemoryCorrelationStore()
    state = GUARD.issue(RoundTripState(redirect_target="/"), store)
    assert GUARD.validate(state, store) is True
    assert store.get(COOKIE) is None
    assert GUARD.validate(state, store) is False


def test_validate_mismatch_consumes_cookie():
    store = InMemoryCorrelationStore()
    GUARD.issue(RoundTripState(redirect_target="/"), store)
    forged = RoundTripState(redirect_target="/", extra={".xsrf": "attacker-value"})
    assert GUARD.validate(forged, store) is False
    assert store.get(COOKIE) is None


def test_validate_missing_cookie():
    state = GUARD.issue(RoundTripState(redirect_target="/"), InMemoryCorrelationStore())
    assert GUARD.validate(state, InMemoryCorrelationStore()) is False


def test_validate_missing_token_in_state():
    store = InMemoryCorrelationStore({COOKIE: "value"})
    assert GUARD.validate(RoundTripState(redirect_target="/"), store) is False


def test_cookie_is_per_authentication_type():
    store = InMemoryCorrelationStore()
    state = CorrelationGuard("Other").issue(RoundTripState(redirect_target="/"), store)
    assert GUARD.validate(state, store) is False
