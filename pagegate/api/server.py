"""
HTTP surface: Naver login, session introspection, redeem/status and code administration.

Handlers stay thin: they resolve config, the session credential and the store, then
delegate to `pagegate.auth` / `pagegate.ledger`. Every `PageGateError` is rendered as a
JSON body with an `error` key by one exception handler.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from pagegate.auth.config import AUTHORIZE_ENV, CALLBACK_ENV, SESSION_ENV, load_auth_config
from pagegate.auth.cookies import OAUTH_STATE_COOKIE, read_cookie
from pagegate.auth.deps import authenticate_request, require_admin, require_config
from pagegate.auth.oauth import build_authorize_url, exchange_code_for_token, fetch_profile
from pagegate.auth.session import (
    clear_session_cookie_kwargs,
    clear_state_cookie_kwargs,
    encode_session,
    issue_session,
    session_cookie_kwargs,
    state_cookie_kwargs,
)
from pagegate.auth.tokens import SigningKeys, signing_keys
from pagegate.auth.util import constant_time_equals, random_token
from pagegate.errors import AuthenticationError, ClientProtocolError, ConfigurationError, PageGateError
from pagegate.ledger import codes as code_admin
from pagegate.ledger.models import ProfileFields
from pagegate.ledger.redeem import redeem
from pagegate.ledger.status import UNAUTHENTICATED, StatusResult, status
from pagegate.ledger.store import LedgerStore, build_store

logger = logging.getLogger(__name__)

app = FastAPI(title="pagegate")


class GenerateCodesRequest(BaseModel):
    count: int
    codeLength: Optional[int] = None
    pageIdLength: Optional[int] = None
    expiresAt: Optional[str] = None


class UpdateCodeRequest(BaseModel):
    code: str
    expiresAt: Optional[str] = None


class DeleteCodeRequest(BaseModel):
    code: str


def get_store() -> LedgerStore:
    store = build_store()
    if store is None:
        raise ConfigurationError(["POSTGRES_DSN"])
    return store


def _keys_or_fail(cfg) -> SigningKeys:
    keys = signing_keys(cfg)
    if keys is None:
        raise ConfigurationError(list(SESSION_ENV))
    return keys


def _no_store(resp):
    resp.headers["Cache-Control"] = "no-store"
    return resp


@app.exception_handler(PageGateError)
async def _pagegate_error_handler(request: Request, exc: PageGateError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _no_store(JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict())))


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    detail = [{"loc": list(e.get("loc") or ()), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
    body = {"error": "Invalid request body", "detail": detail}
    return _no_store(JSONResponse(status_code=400, content=body))


@app.on_event("startup")
def _startup_maybe_migrate_db() -> None:
    """Auto-apply DB migrations when DB_AUTO_MIGRATE=1; failures never block startup."""
    try:
        from pagegate.ledger.migrate import maybe_auto_migrate

        did_attempt, msg = maybe_auto_migrate()
        if did_attempt:
            logger.info("DB migrations: %s", msg)
    except Exception as e:
        logger.warning("DB migrations: startup auto-migrate failed: %s", str(e))


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming HTTP requests."""
    start_time = time.time()
    logger.debug("%s %s", request.method, request.url.path)
    try:
        response = await call_next(request)
    except Exception as e:
        process_time = time.time() - start_time
        logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
        raise
    process_time = time.time() - start_time
    logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
    return response


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


@app.get("/api/auth/naver")
def auth_login_naver() -> RedirectResponse:
    """Start the Naver authorization-code flow."""
    cfg = load_auth_config()
    require_config(cfg, AUTHORIZE_ENV)

    state = random_token(32)
    resp = RedirectResponse(url=build_authorize_url(cfg, state=state), status_code=302)
    resp.set_cookie(**state_cookie_kwargs(cfg, state))
    return _no_store(resp)


@app.get("/api/auth/callback/naver")
def auth_callback_naver(request: Request) -> RedirectResponse:
    """Handle the provider redirect: verify state, exchange the code, issue the session cookie."""
    cfg = load_auth_config()
    require_config(cfg, CALLBACK_ENV)

    code = (request.query_params.get("code") or "").strip()
    state = (request.query_params.get("state") or "").strip()
    if not code or not state:
        raise ClientProtocolError("Missing code/state")

    cookie_state = read_cookie(request, OAUTH_STATE_COOKIE)
    if not constant_time_equals(cookie_state, state):
        logger.info("OAuth callback rejected: state mismatch")
        raise ClientProtocolError("Invalid state")

    access_token = exchange_code_for_token(cfg, code=code, state=state)
    profile = fetch_profile(cfg, access_token=access_token)

    credential = issue_session(
        cfg,
        subject_id=profile.subject_id,
        display_name=profile.display_name,
        email=profile.email,
    )
    session_value = encode_session(cfg, credential)
    if not session_value:
        raise ConfigurationError(list(SESSION_ENV))
    logger.info("Login succeeded for %s", credential.subject_id)

    resp = RedirectResponse(url=cfg.home_url, status_code=302)
    resp.set_cookie(**session_cookie_kwargs(cfg, session_value))
    # Clear OAuth state cookie.
    resp.set_cookie(**clear_state_cookie_kwargs(cfg))
    return _no_store(resp)


@app.post("/api/logout")
def auth_logout() -> JSONResponse:
    cfg = load_auth_config()
    resp = JSONResponse(content={"ok": True})
    resp.set_cookie(**clear_session_cookie_kwargs(cfg))
    return _no_store(resp)


@app.get("/api/me")
def auth_me(request: Request) -> JSONResponse:
    cfg = load_auth_config()
    credential = authenticate_request(cfg, request)
    if credential is None:
        raise AuthenticationError()
    body = {
        "authenticated": True,
        "user": {"id": credential.subject_id, "name": credential.display_name, "email": credential.email},
    }
    return _no_store(JSONResponse(content=body))


@app.get("/api/naver/status")
def naver_status(request: Request) -> JSONResponse:
    cfg = load_auth_config()
    credential = authenticate_request(cfg, request)
    if credential is None:
        # No store access for anonymous callers.
        result = StatusResult(state=UNAUTHENTICATED)
    else:
        result = status(get_store(), _keys_or_fail(cfg), cfg, credential)
    return _no_store(JSONResponse(content=result.to_dict()))


@app.post("/api/naver/redeem")
def naver_redeem(request: Request, payload: Optional[Dict[str, Any]] = Body(None)) -> JSONResponse:
    cfg = load_auth_config()
    credential = authenticate_request(cfg, request)
    if credential is None:
        raise AuthenticationError()
    payload = payload or {}
    result = redeem(
        get_store(),
        _keys_or_fail(cfg),
        cfg,
        credential,
        payload.get("code"),
        ProfileFields.from_mapping(payload),
    )
    return _no_store(JSONResponse(content=result.to_dict()))


@app.get("/api/admin/redeem-codes")
def admin_list_codes(
    request: Request,
    search: Optional[str] = None,
    used: Optional[str] = None,
    page: Optional[str] = None,
    limit: Optional[str] = None,
) -> JSONResponse:
    require_admin(load_auth_config(), request)
    body = code_admin.list_codes(
        get_store(),
        search=search,
        used=used,
        page=page,
        limit=limit,
    )
    return _no_store(JSONResponse(content=body))


@app.post("/api/admin/redeem-codes")
def admin_generate_codes(request: Request, req: GenerateCodesRequest) -> JSONResponse:
    require_admin(load_auth_config(), request)
    created = code_admin.generate_codes(
        get_store(),
        req.count,
        code_length=req.codeLength,
        page_id_length=req.pageIdLength,
        expires_at=code_admin.parse_expires_at(req.expiresAt),
    )
    body = {
        "success": True,
        "data": [c.to_dict() for c in created],
        "message": f"{len(created)} redeem code(s) created",
    }
    return _no_store(JSONResponse(content=body))


@app.put("/api/admin/redeem-codes")
def admin_update_code(request: Request, req: UpdateCodeRequest) -> JSONResponse:
    require_admin(load_auth_config(), request)
    code_admin.update_expiry(get_store(), req.code, req.expiresAt)
    return _no_store(JSONResponse(content={"success": True}))


@app.delete("/api/admin/redeem-codes")
def admin_delete_code(request: Request, req: DeleteCodeRequest) -> JSONResponse:
    require_admin(load_auth_config(), request)
    code_admin.delete_code(get_store(), req.code)
    return _no_store(JSONResponse(content={"success": True}))


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    import uvicorn

    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    logger.info("Starting pagegate on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)
