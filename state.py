import logging
import secrets
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from time import time
from typing import Callable, Optional

from config import SESSION_TTL_SECONDS, _today_local

logger = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_REFRESHED = "TOKEN_REFRESHED"

# Resources whose responses are ordered by a RequestFence.
FENCED_RESOURCES = ("entries", "med_urls")


class ValidationError(ValueError):
    """User input rejected before any remote call is made."""


@dataclass
class EntryForm:
    """The body-entry form exactly as typed: every field is free text."""

    date: str = ""
    weight: str = ""
    bp_s: str = ""
    bp_d: str = ""
    exercise_min: str = ""
    plank_min: str = ""
    knee_pain: str = "0"
    notes: str = ""

    @classmethod
    def blank(cls) -> "EntryForm":
        return cls(date=_today_local())

    @classmethod
    def from_record(cls, row: dict) -> "EntryForm":
        def text(key):
            value = row.get(key)
            return "" if value is None else str(value)

        knee = row.get("knee_pain")
        return cls(
            date=row.get("date") or _today_local(),
            weight=text("weight"),
            bp_s=text("bp_s"),
            bp_d=text("bp_d"),
            exercise_min=text("exercise_min"),
            plank_min=text("plank_min"),
            knee_pain="0" if knee is None else str(knee),
            notes=row.get("notes") or "",
        )


@dataclass(frozen=True)
class EditingContext:
    record_id: str
    original_date: str


class RequestFence:
    """Orders responses for one resource.

    Every request takes a token from ``issue()``; when its response arrives
    it is applied only if ``is_current(token)`` still holds, i.e. no newer
    request for the same resource was issued in the meantime.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._latest = 0

    def issue(self) -> int:
        with self._lock:
            self._latest += 1
            return self._latest

    def is_current(self, token: int) -> bool:
        with self._lock:
            return token == self._latest


@dataclass
class SessionState:
    """Everything one signed-in browser session sees and edits."""

    session_id: str
    user_id: Optional[str] = None
    email: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: float = 0.0
    last_seen: float = field(default_factory=time)

    entries: list = field(default_factory=list)
    form: EntryForm = field(default_factory=EntryForm.blank)
    editing: Optional[EditingContext] = None

    med_doc: Optional[dict] = None
    med_title: str = ""
    med_urls: dict = field(default_factory=dict)
    med_status: str = ""
    flash: str = ""

    fences: dict = field(default_factory=lambda: {name: RequestFence() for name in FENCED_RESOURCES})
    refresh_lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    _busy: set = field(default_factory=set)

    @property
    def signed_in(self) -> bool:
        return self.user_id is not None

    @contextmanager
    def busy(self, resource: str):
        # Advisory only: overlapping operations are not blocked.
        self._busy.add(resource)
        try:
            yield
        finally:
            self._busy.discard(resource)

    def is_busy(self, resource: str) -> bool:
        return resource in self._busy

    def pop_flash(self) -> str:
        message, self.flash = self.flash, ""
        return message

    def reset_entry_form(self):
        self.form = EntryForm.blank()
        self.editing = None

    def apply_auth(self, auth_session):
        if self.user_id is not None and self.user_id != auth_session.user_id:
            self.clear_user_data()
        self.user_id = auth_session.user_id
        self.email = auth_session.email
        self.access_token = auth_session.access_token
        self.refresh_token = auth_session.refresh_token
        self.expires_at = auth_session.expires_at

    def clear_user_data(self):
        self.user_id = None
        self.email = None
        self.access_token = None
        self.refresh_token = None
        self.expires_at = 0.0
        self.entries = []
        self.reset_entry_form()
        self.med_doc = None
        self.med_title = ""
        self.med_urls = {}
        self.med_status = ""
        self.flash = ""


class SessionStore:
    """In-memory session registry (resets on server restart)."""

    def __init__(self, ttl_seconds: int = SESSION_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._sessions: dict[str, SessionState] = {}
        self._listeners: list[Callable] = []

    def create(self) -> SessionState:
        state = SessionState(session_id=secrets.token_urlsafe(24))
        with self._lock:
            self._evict_expired()
            self._sessions[state.session_id] = state
        return state

    def get(self, session_id: str) -> Optional[SessionState]:
        with self._lock:
            state = self._sessions.get(session_id)
            if state is None:
                return None
            if time() - state.last_seen > self.ttl_seconds:
                del self._sessions[session_id]
                return None
            state.last_seen = time()
            return state

    def drop(self, session_id: str):
        with self._lock:
            self._sessions.pop(session_id, None)

    def _evict_expired(self):
        cutoff = time() - self.ttl_seconds
        for sid in [sid for sid, s in self._sessions.items() if s.last_seen < cutoff]:
            del self._sessions[sid]

    def on_auth_state_change(self, callback: Callable) -> Callable:
        """Subscribe ``callback(event, state)``; returns the unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: str, state: SessionState):
        logger.debug("auth event %s for session %s", event, state.session_id[:6])
        for callback in list(self._listeners):
            callback(event, state)

    def sign_in(self, state: SessionState, auth_session):
        state.apply_auth(auth_session)
        self._emit(SIGNED_IN, state)

    def token_refreshed(self, state: SessionState, auth_session):
        state.apply_auth(auth_session)
        self._emit(TOKEN_REFRESHED, state)

    def sign_out(self, state: SessionState):
        state.clear_user_data()
        self._emit(SIGNED_OUT, state)
