"""
Login state machine for QQ Connect.

Challenge (out):  ChallengeRequest -> correlation token issued -> state protected -> authorize URL.
Callback (in):    decode state -> validate correlation -> code -> access_token -> openid -> profile
                  -> NormalizedIdentity -> sign-in sink.

Each attempt is single-shot and self-contained in its protected state plus the correlation cookie,
so the controller holds no per-request state and is safe to share between concurrent requests.
Every failure becomes an AuthFailure; nothing raised by the provider calls leaves complete_login().
"""
import asyncio
import inspect
import logging
from dataclasses import replace
from enum import Enum
from typing import Awaitable, Callable, Mapping

from qqconnect.config import AUTHENTICATION_TYPE, CALLBACK_PATH, SIGN_IN_AS
from qqconnect.correlation import CorrelationGuard
from qqconnect.identity import assemble_identity
from qqconnect.provider_client import (
    ExchangeError,
    ProfileError,
    ProviderError,
    QQConnectClient,
    ResolveError,
    split_provider_properties,
)
from qqconnect.schemas import (
    CORRELATION_KEY,
    AuthFailure,
    AuthOutcome,
    AuthSuccess,
    ChallengeRequest,
    CorrelationStore,
    FailureReason,
    HostRequest,
    NormalizedIdentity,
    RedirectInstruction,
    RoundTripState,
)
from qqconnect.state_codec import StateCodec, StateDecodeError

logger = logging.getLogger(__name__)

# (identity, redirect_target, properties): properties are the challenge metadata carried through the state
SignInSink = Callable[[NormalizedIdentity, str, Mapping[str, str]], Awaitable[None] | None]


class FlowStep(str, Enum):
    CHALLENGE_ISSUED = "challenge_issued"
    CALLBACK_RECEIVED = "callback_received"
    STATE_VALIDATED = "state_validated"
    STATE_REJECTED = "state_rejected"
    EXCHANGE_OK = "exchange_ok"
    EXCHANGE_FAILED = "exchange_failed"
    ID_RESOLVED = "id_resolved"
    ID_FAILED = "id_failed"
    PROFILE_FETCHED = "profile_fetched"
    PROFILE_FAILED = "profile_failed"
    COMPLETED = "completed"


def _step(step: FlowStep, detail: str = "") -> None:
    logger.debug("login flow: %s %s", step.value, detail)


def _log_provider_error(e: ProviderError) -> None:
    if e.transport:
        logger.error("QQ Connect %s call failed: %s", e.step, e)
    else:
        logger.error("QQ Connect %s answered without usable data: %s", e.step, e)


class AuthFlowController:
    def __init__(
        self,
        client: QQConnectClient,
        codec: StateCodec,
        *,
        sign_in: SignInSink,
        authentication_type: str = AUTHENTICATION_TYPE,
        sign_in_as: str | None = SIGN_IN_AS,
        callback_path: str = CALLBACK_PATH,
        guard: CorrelationGuard | None = None,
        assembler: Callable[..., NormalizedIdentity] = assemble_identity,
    ):
        self.client = client
        self.codec = codec
        self.sign_in = sign_in
        self.authentication_type = authentication_type
        self.sign_in_as = sign_in_as
        self.callback_path = callback_path
        self.guard = guard or CorrelationGuard(authentication_type)
        self.assembler = assembler

    def callback_url_for(self, base_url: str) -> str:
        """redirect_uri registered with QQ Connect: scheme + host + path base + callback path."""
        return base_url.rstrip("/") + self.callback_path

    def begin_challenge(self, request: ChallengeRequest, *, callback_url: str, store: CorrelationStore) -> str:
        """
        Build the QQ Connect authorize URL for this attempt. Writes the correlation value to store;
        the host must send that cookie with the redirect.
        """
        provider_properties, extra = split_provider_properties(request.metadata)
        state = RoundTripState(redirect_target=request.redirect_target, extra=extra)
        state = self.guard.issue(state, store)
        url = self.client.build_authorization_url(provider_properties, self.codec.encode(state), callback_url)
        _step(FlowStep.CHALLENGE_ISSUED)
        return url

    async def complete_login(
        self,
        query: Mapping[str, str],
        *,
        callback_url: str,
        store: CorrelationStore,
        cancel: asyncio.Event | None = None,
    ) -> AuthOutcome:
        _step(FlowStep.CALLBACK_RECEIVED)
        redirect_target = None
        try:
            try:
                state = self.codec.decode(query.get("state") or "")
            except StateDecodeError as e:
                # No provider call is made for a state we cannot trust
                logger.warning("Invalid return state: %s", e)
                _step(FlowStep.STATE_REJECTED)
                return self._failed(FailureReason.INVALID_STATE, None)
            redirect_target = state.redirect_target

            if not self.guard.validate(state, store):
                _step(FlowStep.STATE_REJECTED, "correlation")
                return self._failed(FailureReason.CORRELATION_MISMATCH, redirect_target)
            state = state.without_extra(CORRELATION_KEY)
            _step(FlowStep.STATE_VALIDATED)

            code = query.get("code")
            if not code:
                if query.get("error"):
                    logger.warning(
                        "QQ Connect returned error=%s (%s)", query.get("error"), query.get("error_description", "")
                    )
                else:
                    logger.warning("code was not found")
                return self._failed(FailureReason.MISSING_CODE, redirect_target)

            try:
                token = await self.client.exchange_code(code, callback_url, cancel)
            except ExchangeError as e:
                _log_provider_error(e)
                _step(FlowStep.EXCHANGE_FAILED)
                return self._failed(FailureReason.TOKEN_EXCHANGE_FAILED, redirect_target)
            _step(FlowStep.EXCHANGE_OK)

            try:
                openid = await self.client.resolve_openid(token.access_token, cancel)
            except ResolveError as e:
                _log_provider_error(e)
                _step(FlowStep.ID_FAILED)
                return self._failed(FailureReason.ID_RESOLUTION_FAILED, redirect_target)
            _step(FlowStep.ID_RESOLVED)

            try:
                profile = await self.client.fetch_profile(token.access_token, openid.openid, cancel)
            except ProfileError as e:
                _log_provider_error(e)
                _step(FlowStep.PROFILE_FAILED)
                return self._failed(FailureReason.PROFILE_FETCH_FAILED, redirect_target)
            _step(FlowStep.PROFILE_FETCHED)

            identity = self.assembler(self.authentication_type, token, openid, profile)
        except asyncio.CancelledError:
            if cancel is None or not cancel.is_set():
                raise
            logger.info("Login cancelled by caller; no further provider calls")
            return self._failed(FailureReason.CANCELLED, redirect_target)
        except Exception:
            logger.exception("Authentication failed")
            return self._failed(FailureReason.UNEXPECTED, redirect_target)

        _step(FlowStep.COMPLETED, "success")
        return AuthSuccess(identity=identity, redirect_target=redirect_target, properties=dict(state.extra))

    def apply_challenge_response(
        self,
        status_code: int,
        challenge: ChallengeRequest | None,
        request: HostRequest,
    ) -> RedirectInstruction | None:
        """On a 401 with a pending challenge, redirect to QQ Connect. Target defaults to the current URL."""
        if status_code != 401 or challenge is None:
            return None
        if not challenge.redirect_target.strip():
            challenge = replace(challenge, redirect_target=request.url)
        url = self.begin_challenge(
            challenge,
            callback_url=self.callback_url_for(request.base_url),
            store=request.correlation,
        )
        return RedirectInstruction(location=url)

    async def handle(
        self, request: HostRequest, cancel: asyncio.Event | None = None
    ) -> RedirectInstruction | AuthFailure | None:
        """
        Callback dispatch. None if request is not for the callback path. On success the sign-in sink
        is called once and a redirect to the stored target is returned; otherwise the AuthFailure.
        """
        if request.path != self.callback_path:
            return None
        outcome = await self.complete_login(
            request.query,
            callback_url=self.callback_url_for(request.base_url),
            store=request.correlation,
            cancel=cancel,
        )
        if isinstance(outcome, AuthFailure):
            logger.error("Login failed (%s), unable to redirect.", outcome.reason.value)
            return outcome

        identity = outcome.identity
        if self.sign_in_as and identity.authentication_type != self.sign_in_as:
            identity = identity.with_authentication_type(self.sign_in_as)
        target = outcome.redirect_target or "/"
        try:
            result = self.sign_in(identity, target, outcome.properties)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Sign-in sink failed")
            return AuthFailure(reason=FailureReason.UNEXPECTED, redirect_target=target)
        return RedirectInstruction(location=target)

    def _failed(self, reason: FailureReason, redirect_target: str | None) -> AuthFailure:
        _step(FlowStep.COMPLETED, reason.value)
        return AuthFailure(reason=reason, redirect_target=redirect_target)
