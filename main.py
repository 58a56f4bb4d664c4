import logging
from time import time
from urllib.parse import quote_plus

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from backend import create_backend
from config import (
    LOG_LEVEL,
    PUBLIC_PATHS,
    SESSION_COOKIE_NAME,
    TOKEN_REFRESH_MARGIN_SECONDS,
    _current_session,
    _set_client_clock,
)
from entries import EntryReconciler
from med_docs import PhotoDocumentManager
from remote import BackendError
from routers import auth, entries, med_docs
from security import _csrf_header_valid, _ensure_csrf_cookie, _is_same_origin, _verify_session_token
from state import SIGNED_IN, SessionStore

logger = logging.getLogger(__name__)


def _reload_user_data(app: FastAPI):
    """Auth listener: fetch the user's entries and photo document on sign-in."""

    def on_auth_state_change(event, state):
        if event != SIGNED_IN:
            return
        backend = app.state.backend
        records = backend.records(state.access_token)
        try:
            EntryReconciler(records, state).load()
        except BackendError as exc:
            logger.warning("loading entries after sign-in failed: %s", exc.message)
            state.flash = f"Could not load entries: {exc.message}"
        try:
            PhotoDocumentManager(records, backend.storage(state.access_token), state).load()
        except BackendError as exc:
            logger.warning("loading photo document after sign-in failed: %s", exc.message)

    return on_auth_state_change


def refresh_if_expiring(app: FastAPI, state) -> bool:
    """Renew the access token once for overlapping requests; False when the session ended."""
    with state.refresh_lock:
        if not state.signed_in:
            return False
        if state.expires_at - time() >= TOKEN_REFRESH_MARGIN_SECONDS:
            return True
        try:
            refreshed = app.state.backend.auth.refresh_session(state.refresh_token)
        except BackendError as exc:
            logger.info("session refresh failed, signing out: %s", exc.message)
            app.state.sessions.sign_out(state)
            app.state.sessions.drop(state.session_id)
            return False
        app.state.sessions.token_refreshed(state, refreshed)
        return True


def _unauthorized(path: str, error: str = ""):
    if path.startswith("/api/"):
        return JSONResponse({"error": "unauthorized"}, status_code=401)
    url = "/login"
    if error:
        url += "?error=" + quote_plus(error)
    return RedirectResponse(url=url, status_code=303)


def create_app(backend=None) -> FastAPI:
    app = FastAPI()
    app.state.backend = backend if backend is not None else create_backend()
    app.state.sessions = SessionStore()
    app.state.sessions.on_auth_state_change(_reload_user_data(app))

    def _resolve_session(request: Request):
        cookie = request.cookies.get(SESSION_COOKIE_NAME, "")
        session_id = _verify_session_token(cookie) if cookie else None
        if not session_id:
            return None
        return app.state.sessions.get(session_id)

    @app.middleware("http")
    async def auth_middleware(request: Request, call_next):
        path = request.url.path
        if request.method in {"POST", "PUT", "PATCH", "DELETE"}:
            if not _is_same_origin(request):
                if path.startswith("/api/"):
                    return JSONResponse({"error": "forbidden"}, status_code=403)
                return RedirectResponse(url="/login?error=Forbidden+request", status_code=303)
            if path.startswith("/api/") and not _csrf_header_valid(request):
                return JSONResponse({"error": "forbidden"}, status_code=403)
        _set_client_clock(request.cookies.get("tz_offset", ""))
        state = _resolve_session(request)
        _current_session.set(state)

        if path in PUBLIC_PATHS:
            return _ensure_csrf_cookie(request, await call_next(request))

        if state is None or not state.signed_in:
            return _unauthorized(path)
        if state.expires_at - time() < TOKEN_REFRESH_MARGIN_SECONDS:
            if not await run_in_threadpool(refresh_if_expiring, app, state):
                return _unauthorized(path, "Session expired, please sign in again")
        return _ensure_csrf_cookie(request, await call_next(request))

    app.include_router(auth.router)
    app.include_router(entries.router)
    app.include_router(med_docs.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=8000)
