import os
import secrets
from contextvars import ContextVar
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

SUPABASE_URL = os.environ.get("SUPABASE_URL", "").rstrip("/")
SUPABASE_KEY = os.environ.get("SUPABASE_KEY", "")
BACKEND_TIMEOUT_SECONDS = float(os.environ.get("BACKEND_TIMEOUT_SECONDS", "15"))

ENTRIES_TABLE = "body_entries"
MED_DOCS_TABLE = "med_docs"
MED_BUCKET = os.environ.get("MED_BUCKET", "med_docs_bucket")
MED_DOC_TYPE = os.environ.get("MED_DOC_TYPE", "rx_supplements")
MED_DOC_DEFAULT_TITLE = os.environ.get("MED_DOC_DEFAULT_TITLE", "Prescriptions & supplements")
SIGNED_URL_TTL_SECONDS = 60 * 60
MAX_PHOTO_SIZE = 10 * 1024 * 1024

SECRET_KEY_PATH = Path(".app_secret_key")
SESSION_TTL_SECONDS = 60 * 60 * 24 * 14
SESSION_COOKIE_NAME = "notebook_session"
CSRF_COOKIE_NAME = "csrf_token"
TOKEN_REFRESH_MARGIN_SECONDS = 60
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

PUBLIC_PATHS = {"/login", "/login/magic-link", "/auth/confirm", "/logout"}

_current_session: ContextVar[Optional[Any]] = ContextVar("_current_session", default=None)
_client_now: ContextVar[Optional[datetime]] = ContextVar("_client_now", default=None)


def _set_client_clock(tz_offset_cookie: str):
    """Set per-request client-local clock derived from JS timezone offset cookie."""
    offset = None
    try:
        offset = int((tz_offset_cookie or "").strip())
    except ValueError:
        offset = None
    if offset is not None and -840 <= offset <= 840:
        _client_now.set(datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(minutes=offset))
        return
    _client_now.set(datetime.now())


def _now_local() -> datetime:
    return _client_now.get() or datetime.now()


def _today_local() -> str:
    return _now_local().date().isoformat()


def _parse_ymd(value: str) -> Optional[date]:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return None


def _load_secret_key() -> str:
    env_key = os.environ.get("APP_SECRET_KEY", "").strip()
    if env_key:
        return env_key
    if SECRET_KEY_PATH.exists():
        return SECRET_KEY_PATH.read_text(encoding="utf-8").strip()
    key = secrets.token_hex(32)
    SECRET_KEY_PATH.write_text(key, encoding="utf-8")
    return key


SECRET_KEY = _load_secret_key()
