"""
QQ Connect login host app.
GET / (home), /login (start), /protected (401 -> challenge), callback path, /audit.
Port 8000. The login flow itself lives in qqconnect.flow; this module is host plumbing only.
"""
import asyncio
import html
import logging
from contextlib import asynccontextmanager
from typing import Mapping

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.orm import Session

from qqconnect.audit import (
    EVENT_CHALLENGE_ISSUED,
    EVENT_LOGIN_FAIL,
    EVENT_LOGIN_OK,
    OUTCOME_FAIL,
    get_client_ip,
    log_audit,
)
from qqconnect.audit import router as audit_router
from qqconnect.config import (
    APP_ID,
    APP_KEY,
    CALLBACK_PATH,
    HTTP_TIMEOUT,
    STATE_KEY,
    STATE_KEY_PATH,
    STATE_KEY_PREVIOUS_PATH,
    STATE_TTL,
)
from qqconnect.database import SessionLocal, get_db, init_db
from qqconnect.flow import AuthFlowController
from qqconnect.provider_client import QQConnectClient
from qqconnect.schemas import ChallengeRequest, HostRequest, NormalizedIdentity, RedirectInstruction
from qqconnect.state_codec import build_state_codec

logger = logging.getLogger(__name__)


class CookieCorrelationStore:
    """
    CorrelationStore over the request's cookies. Writes are recorded and replayed onto the
    outgoing response with apply().
    """

    def __init__(self, request: Request, max_age: int = STATE_TTL):
        self._cookies = dict(request.cookies)
        self._secure = request.url.scheme == "https"
        self._max_age = max_age
        self._pending: list[tuple[str, str | None]] = []

    def get(self, name: str) -> str | None:
        return self._cookies.get(name)

    def set(self, name: str, value: str) -> None:
        self._cookies[name] = value
        self._pending.append((name, value))

    def delete(self, name: str) -> None:
        self._cookies.pop(name, None)
        self._pending.append((name, None))

    def apply(self, response) -> None:
        for name, value in self._pending:
            if value is None:
                response.delete_cookie(name, path="/", secure=self._secure, httponly=True, samesite="lax")
            else:
                # Lax: the cookie must come back on QQ's top-level GET redirect to the callback
                response.set_cookie(
                    name,
                    value,
                    max_age=self._max_age,
                    path="/",
                    secure=self._secure,
                    httponly=True,
                    samesite="lax",
                )


def _audit_login_ok(subject: str) -> None:
    db = SessionLocal()
    try:
        log_audit(db, EVENT_LOGIN_OK, subject=subject)
    finally:
        db.close()


async def record_sign_in(identity: NormalizedIdentity, redirect_target: str, properties: Mapping[str, str]) -> None:
    """Sign-in sink: audit the login. Session handling belongs to the host framework."""
    logger.info(
        "QQ Connect login ok: sub=%s as %s (properties: %s)",
        identity.subject,
        identity.authentication_type,
        sorted(properties),
    )
    await run_in_threadpool(_audit_login_ok, identity.subject)


async def watch_disconnect(request: Request, cancel: asyncio.Event, interval: float = 0.1) -> None:
    """Set cancel once the client goes away, so in-flight QQ Connect calls are abandoned."""
    while not cancel.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected during QQ Connect callback")
            cancel.set()
            return
        await asyncio.sleep(interval)


def build_controller(http: httpx.AsyncClient) -> AuthFlowController:
    codec = build_state_codec(STATE_KEY, STATE_KEY_PATH, STATE_KEY_PREVIOUS_PATH, STATE_TTL)
    client = QQConnectClient(http, app_id=APP_ID, app_key=APP_KEY, timeout=HTTP_TIMEOUT)
    return AuthFlowController(client, codec, sign_in=record_sign_in)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create audit tables; one shared AsyncClient (connection pool) for all flows."""
    init_db()
    if not APP_KEY:
        logger.warning("QQCONNECT_APP_KEY is not set; token exchange will be rejected by QQ Connect")
    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as http:
        app.state.controller = build_controller(http)
        yield


app = FastAPI(title="QQ Connect Login", version="0.1.0", lifespan=lifespan)
app.include_router(audit_router)


def get_controller(request: Request) -> AuthFlowController:
    return request.app.state.controller


def _host_request(request: Request, store: CookieCorrelationStore) -> HostRequest:
    return HostRequest(
        path=request.url.path,
        query=dict(request.query_params),
        url=str(request.url),
        base_url=str(request.base_url),
        correlation=store,
    )


def _local_path(value: str | None) -> str:
    """Only same-site paths are accepted as post-login targets."""
    if value and value.startswith("/") and not value.startswith("//") and "\\" not in value:
        return value
    return "/"


def _error_page(title: str, message: str, status_code: int) -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
  <h1>{html.escape(title)}</h1>
  <p>{html.escape(message)}</p>
  <p><a href="/">Home</a></p>
</body>
</html>""",
        status_code=status_code,
    )


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "qqconnect"}


@app.get("/", response_class=HTMLResponse)
def home():
    return HTMLResponse(
        """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>QQ Connect Login</title></head>
<body>
  <h1>QQ Connect Login</h1>
  <p><a href="/login">Log in with QQ</a></p>
  <p><a href="/protected">Protected page</a> (redirects to QQ when not logged in)</p>
</body>
</html>"""
    )


@app.get("/login")
def login(
    request: Request,
    return_url: str | None = None,
    controller: AuthFlowController = Depends(get_controller),
    db: Session = Depends(get_db),
):
    """Start a login: set the correlation cookie and redirect to the QQ Connect authorize page."""
    store = CookieCorrelationStore(request)
    url = controller.begin_challenge(
        ChallengeRequest(redirect_target=_local_path(return_url)),
        callback_url=controller.callback_url_for(str(request.base_url)),
        store=store,
    )
    log_audit(db, EVENT_CHALLENGE_ISSUED, ip=get_client_ip(request))
    response = RedirectResponse(url=url, status_code=302)
    store.apply(response)
    return response


@app.get("/protected")
def protected(
    request: Request,
    controller: AuthFlowController = Depends(get_controller),
    db: Session = Depends(get_db),
):
    """
    Stands in for any page that requires a login: it answers 401 with a pending challenge and the
    flow turns that into a redirect whose post-login target is this page.
    """
    store = CookieCorrelationStore(request)
    instruction = controller.apply_challenge_response(401, ChallengeRequest(), _host_request(request, store))
    if instruction is None:
        return _error_page("Unauthorized", "Login required.", 401)
    log_audit(db, EVENT_CHALLENGE_ISSUED, ip=get_client_ip(request))
    response = RedirectResponse(url=instruction.location, status_code=instruction.status_code)
    store.apply(response)
    return response


@app.get(CALLBACK_PATH)
async def callback(
    request: Request,
    controller: AuthFlowController = Depends(get_controller),
    db: Session = Depends(get_db),
):
    """QQ Connect redirects here with ?code=...&state=... On any failure: generic 500, no redirect."""
    store = CookieCorrelationStore(request)
    cancel = asyncio.Event()
    watcher = asyncio.create_task(watch_disconnect(request, cancel))
    try:
        result = await controller.handle(_host_request(request, store), cancel)
    finally:
        watcher.cancel()
        await asyncio.wait({watcher})
    if result is None:
        return _error_page("Not found", "Unknown callback path.", 404)
    if isinstance(result, RedirectInstruction):
        response = RedirectResponse(url=result.location, status_code=result.status_code)
    else:
        await run_in_threadpool(
            log_audit,
            db,
            EVENT_LOGIN_FAIL,
            reason=result.reason.value,
            ip=get_client_ip(request),
            outcome=OUTCOME_FAIL,
        )
        response = _error_page("Login failed", "We could not complete your QQ login. Please try again.", 500)
    store.apply(response)
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "qqconnect.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
