import hmac
import logging
import secrets
import threading
from collections import defaultdict
from dataclasses import dataclass
from time import time
from typing import Optional

from fastapi import Request

from config import (
    SESSION_COOKIE_NAME,
    SESSION_TTL_SECONDS,
    CSRF_COOKIE_NAME,
    SECRET_KEY,
)
from remote import BackendError, RestClient

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# In-memory rate limiting (per-IP, resets on server restart)
# ---------------------------------------------------------------------------
_rate_lock = threading.Lock()
_login_buckets: dict[str, list[float]] = defaultdict(list)
_magic_link_buckets: dict[str, list[float]] = defaultdict(list)

_LOGIN_WINDOW = 300   # 5 minutes
_LOGIN_MAX = 10       # attempts per window per IP
_MAGIC_LINK_WINDOW = 900   # 15 minutes
_MAGIC_LINK_MAX = 5        # sends per window per IP


def _check_rate_limit(bucket: dict, ip: str, window: int, max_attempts: int) -> bool:
    """Return True if the request should be allowed, False if rate limited."""
    now = time()
    with _rate_lock:
        bucket[ip] = [t for t in bucket[ip] if now - t < window]
        if len(bucket[ip]) >= max_attempts:
            return False
        bucket[ip].append(now)
        return True


def _is_login_allowed(ip: str) -> bool:
    return _check_rate_limit(_login_buckets, ip, _LOGIN_WINDOW, _LOGIN_MAX)


def _is_magic_link_allowed(ip: str) -> bool:
    return _check_rate_limit(_magic_link_buckets, ip, _MAGIC_LINK_WINDOW, _MAGIC_LINK_MAX)


def _request_origin_host(request: Request) -> str:
    header = request.headers.get("origin") or request.headers.get("referer") or ""
    if not header:
        return ""
    if "://" in header:
        return header.split("://", 1)[1].split("/", 1)[0].lower()
    return ""


def _is_same_origin(request: Request) -> bool:
    origin_host = _request_origin_host(request)
    if not origin_host:
        return False
    return origin_host == request.url.netloc.lower()


def _ensure_csrf_cookie(request: Request, response):
    if request.cookies.get(CSRF_COOKIE_NAME):
        return response
    response.set_cookie(
        CSRF_COOKIE_NAME,
        secrets.token_urlsafe(32),
        httponly=False,
        samesite="lax",
        secure=request.url.scheme == "https",
    )
    return response


def _csrf_header_valid(request: Request) -> bool:
    cookie_token = request.cookies.get(CSRF_COOKIE_NAME, "")
    header_token = request.headers.get("x-csrf-token", "")
    return bool(cookie_token) and hmac.compare_digest(cookie_token, header_token)


# ---------------------------------------------------------------------------
# App session cookie: "<session id>:<expiry>:<signature>"
# ---------------------------------------------------------------------------

def _sign(payload: str) -> str:
    return hmac.new(SECRET_KEY.encode(), payload.encode(), "sha256").hexdigest()


def _make_session_token(session_id: str) -> str:
    exp = int(time()) + SESSION_TTL_SECONDS
    payload = f"{session_id}:{exp}"
    return f"{payload}:{_sign(payload)}"


def _verify_session_token(token: str) -> Optional[str]:
    """Return the session id if the token is authentic and unexpired."""
    try:
        session_id, exp_s, sig = token.split(":", 2)
        if int(exp_s) < int(time()):
            return None
    except ValueError:
        return None
    if not hmac.compare_digest(sig, _sign(f"{session_id}:{exp_s}")):
        return None
    return session_id


def _set_session_cookie(response, request: Request, session_id: str):
    response.set_cookie(
        SESSION_COOKIE_NAME,
        _make_session_token(session_id),
        httponly=True,
        samesite="lax",
        secure=request.url.scheme == "https",
        max_age=SESSION_TTL_SECONDS,
    )
    return response


# ---------------------------------------------------------------------------
# Hosted identity service
# ---------------------------------------------------------------------------

@dataclass
class AuthSession:
    access_token: str
    refresh_token: str
    expires_at: float
    user_id: str
    email: Optional[str] = None

    @classmethod
    def from_payload(cls, body: dict) -> "AuthSession":
        user = body.get("user") or {}
        if not body.get("access_token") or not user.get("id"):
            raise BackendError("Sign-in response did not include a session")
        expires_at = body.get("expires_at")
        if not expires_at:
            expires_at = time() + int(body.get("expires_in") or 3600)
        return cls(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token", ""),
            expires_at=float(expires_at),
            user_id=user["id"],
            email=user.get("email"),
        )


class AuthClient(RestClient):
    prefix = "/auth/v1"

    def send_magic_link(self, email: str, redirect_to: str) -> None:
        self._request(
            "POST",
            "otp",
            params={"redirect_to": redirect_to},
            json={"email": email, "create_user": True},
        )

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        body = self._request(
            "POST",
            "token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        return AuthSession.from_payload(body or {})

    def verify_otp(self, token_hash: str, type: str = "magiclink") -> AuthSession:
        body = self._request("POST", "verify", json={"type": type, "token_hash": token_hash})
        return AuthSession.from_payload(body or {})

    def refresh_session(self, refresh_token: str) -> AuthSession:
        body = self._request(
            "POST",
            "token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )
        return AuthSession.from_payload(body or {})

    def sign_out(self, access_token: str) -> None:
        self._request("POST", "logout", headers={"Authorization": f"Bearer {access_token}"})
