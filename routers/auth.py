import logging
from urllib.parse import quote_plus

from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from config import SESSION_COOKIE_NAME, _current_session
from remote import BackendError
from security import _is_login_allowed, _is_magic_link_allowed, _set_session_cookie
from ui import PAGE_STYLE, _alert, _notice

logger = logging.getLogger(__name__)

router = APIRouter()


def _login_url(error: str = "", success: str = "") -> str:
    if error:
        return f"/login?error={quote_plus(error)}"
    if success:
        return f"/login?success={quote_plus(success)}"
    return "/login"


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _start_session(request: Request, auth_session):
    """Replace any previous app session with a fresh one for ``auth_session``."""
    sessions = request.app.state.sessions
    previous = _current_session.get()
    if previous is not None:
        sessions.drop(previous.session_id)
    state = sessions.create()
    sessions.sign_in(state, auth_session)
    resp = RedirectResponse(url="/", status_code=303)
    _set_session_cookie(resp, request, state.session_id)
    return resp


@router.get("/login", response_class=HTMLResponse)
def login_get(error: str = "", success: str = ""):
    state = _current_session.get()
    if state is not None and state.signed_in:
        return RedirectResponse(url="/", status_code=303)
    return f"""<!DOCTYPE html>
<html>
<head>{PAGE_STYLE}<title>Log In</title></head>
<body>
  <div class="container" style="max-width:480px;">
    <h1>Body Notebook</h1>
    <p style="color:#555; font-size:14px; margin-bottom:16px;">Sign in to see your entries and photos.</p>
    {_alert(error)}
    {_notice(success)}
    <div class="card">
      <form method="post" action="/login/magic-link">
        <div class="form-group">
          <label for="ml-email">Email</label>
          <input type="email" id="ml-email" name="email" required autocomplete="email"
                 placeholder="you@example.com">
        </div>
        <button type="submit" class="btn-primary">Email me a sign-in link</button>
      </form>
    </div>
    <div class="card">
      <form method="post" action="/login">
        <div class="form-group">
          <label for="email">Email</label>
          <input type="email" id="email" name="email" required autocomplete="email">
        </div>
        <div class="form-group">
          <label for="password">Password</label>
          <input type="password" id="password" name="password" required autocomplete="current-password">
        </div>
        <button type="submit" class="btn-primary">Log In</button>
      </form>
    </div>
  </div>
</body>
</html>
"""


@router.post("/login/magic-link")
def login_magic_link(request: Request, email: str = Form("")):
    email = email.strip()
    if not email:
        return RedirectResponse(url=_login_url("Enter your email address"), status_code=303)
    if not _is_magic_link_allowed(_client_ip(request)):
        logger.warning("magic link rate limit hit for %s", _client_ip(request))
        return RedirectResponse(url=_login_url("Too many requests. Please wait before trying again."), status_code=303)
    redirect_to = str(request.base_url).rstrip("/") + "/auth/confirm"
    try:
        request.app.state.backend.auth.send_magic_link(email, redirect_to)
    except BackendError as exc:
        return RedirectResponse(url=_login_url(f"Could not send the sign-in link: {exc.message}"), status_code=303)
    return RedirectResponse(
        url=_login_url(success=f"A sign-in link was sent to {email}. Check your inbox."), status_code=303
    )


@router.get("/auth/confirm")
def auth_confirm(request: Request, token_hash: str = "", type: str = "magiclink"):
    if not token_hash:
        return RedirectResponse(url=_login_url("The sign-in link is incomplete"), status_code=303)
    try:
        auth_session = request.app.state.backend.auth.verify_otp(token_hash, type)
    except BackendError as exc:
        return RedirectResponse(url=_login_url(f"Sign-in link rejected: {exc.message}"), status_code=303)
    return _start_session(request, auth_session)


@router.post("/login")
def login_post(request: Request, email: str = Form(""), password: str = Form("")):
    ip = _client_ip(request)
    if not _is_login_allowed(ip):
        return RedirectResponse(url=_login_url("Too many attempts. Please wait before trying again."), status_code=303)
    try:
        auth_session = request.app.state.backend.auth.sign_in_with_password(email.strip(), password)
    except BackendError as exc:
        return RedirectResponse(url=_login_url(exc.message), status_code=303)
    return _start_session(request, auth_session)


@router.post("/logout")
def logout(request: Request):
    state = _current_session.get()
    if state is not None:
        if state.access_token:
            try:
                request.app.state.backend.auth.sign_out(state.access_token)
            except BackendError as exc:
                logger.warning("remote sign-out failed: %s", exc.message)
        request.app.state.sessions.sign_out(state)
        request.app.state.sessions.drop(state.session_id)
    resp = RedirectResponse(url="/login", status_code=303)
    resp.delete_cookie(SESSION_COOKIE_NAME)
    return resp
