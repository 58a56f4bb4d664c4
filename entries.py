"""Body-entry reconciliation.

A submitted form becomes exactly one row per (user, date).  The date is the
row's logical key, so an edit that moves an entry to another day deletes the
old row first and then writes under the new date.  Writes go through an
upsert on ``user_id,date``; the table carries the matching unique
constraint (see ``schema.sql``).
"""
import logging
import math
from typing import Optional, Union

from config import ENTRIES_TABLE, _parse_ymd
from state import EditingContext, EntryForm, ValidationError

logger = logging.getLogger(__name__)

ENTRY_CONFLICT_KEY = "user_id,date"
ENTRY_ORDER = (("date", True), ("created_at", True))
KNEE_PAIN_MIN, KNEE_PAIN_MAX = 0, 10

Number = Union[int, float]


def to_number_or_none(value: Optional[str]) -> Optional[Number]:
    """Trimmed text to a number; blank, unparseable or non-finite gives None."""
    s = (value or "").strip()
    if not s:
        return None
    try:
        n = float(s)
    except ValueError:
        return None
    if not math.isfinite(n):
        return None
    return int(n) if n.is_integer() else n


def _to_int_or_none(value: Optional[str]) -> Optional[int]:
    n = to_number_or_none(value)
    return None if n is None else int(round(n))


def normalize_entry(form: EntryForm, user_id: str) -> dict:
    """Build the row payload for ``form``.  Raises ValidationError on a bad date."""
    date = (form.date or "").strip()
    if not date:
        raise ValidationError("Date is required")
    if _parse_ymd(date) is None:
        raise ValidationError("Date must be YYYY-MM-DD")
    knee = _to_int_or_none(form.knee_pain)
    knee = 0 if knee is None else min(max(knee, KNEE_PAIN_MIN), KNEE_PAIN_MAX)
    notes = form.notes or ""
    return {
        "user_id": user_id,
        "date": date,
        "weight": to_number_or_none(form.weight),
        "bp_s": _to_int_or_none(form.bp_s),
        "bp_d": _to_int_or_none(form.bp_d),
        "exercise_min": _to_int_or_none(form.exercise_min),
        "plank_min": _to_int_or_none(form.plank_min),
        "knee_pain": knee,
        "notes": notes if notes.strip() else None,
    }


def latest_entry(entries: list) -> Optional[dict]:
    return entries[0] if entries else None


class EntryReconciler:
    """Create/update/delete body entries for the session's user.

    ``store`` is a record store bound to the user's token; ``state`` is the
    session's SessionState, which holds the list, form and edit session.
    """

    resource = "entries"

    def __init__(self, store, state):
        self.store = store
        self.state = state

    def _require_user(self) -> str:
        if not self.state.signed_in:
            raise ValidationError("Sign in required")
        return self.state.user_id

    def load(self) -> Optional[list]:
        """Re-query every entry for the user, newest date first.

        Returns the rows, or None when a newer load was issued while this one
        was in flight (its result is discarded).
        """
        user_id = self._require_user()
        fence = self.state.fences[self.resource]
        token = fence.issue()
        rows = self.store.select(ENTRIES_TABLE, {"user_id": user_id}, order=ENTRY_ORDER)
        if not fence.is_current(token):
            logger.debug("discarding superseded entries load %s", token)
            return None
        self.state.entries = rows
        return rows

    def save(self, form: EntryForm, editing: Optional[EditingContext] = None) -> list:
        user_id = self._require_user()
        payload = normalize_entry(form, user_id)
        with self.state.busy(self.resource):
            if editing is not None and editing.original_date != payload["date"]:
                self.store.delete(ENTRIES_TABLE, {"id": editing.record_id, "user_id": user_id})
            rows = self.store.upsert(ENTRIES_TABLE, payload, on_conflict=ENTRY_CONFLICT_KEY)
            self.load()
            self.state.reset_entry_form()
        return rows

    def delete(self, record_id: str, confirmed: bool) -> bool:
        if not confirmed:
            return False
        user_id = self._require_user()
        with self.state.busy(self.resource):
            self.store.delete(ENTRIES_TABLE, {"id": record_id, "user_id": user_id})
            if self.state.editing is not None and self.state.editing.record_id == record_id:
                self.cancel_edit()
            self.load()
        return True

    def find(self, record_id: str) -> Optional[dict]:
        return next((e for e in self.state.entries if str(e.get("id")) == str(record_id)), None)

    def start_edit(self, record: dict):
        self.state.editing = EditingContext(record_id=str(record["id"]), original_date=record.get("date") or "")
        self.state.form = EntryForm.from_record(record)

    def cancel_edit(self):
        self.state.reset_entry_form()
