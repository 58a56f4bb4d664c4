import logging
from dataclasses import fields
from urllib.parse import quote_plus

from fastapi import APIRouter, Body, Form, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from config import _current_session
from entries import EntryReconciler
from med_docs import PhotoDocumentManager
from remote import BackendError
from state import EditingContext, EntryForm, ValidationError
from ui import PAGE_STYLE, _alert, _entry_cards, _entry_form, _latest_summary, _med_section, _nav_bar, _notice

logger = logging.getLogger(__name__)

router = APIRouter()

_FORM_FIELDS = [f.name for f in fields(EntryForm)]


def _reconciler(request: Request, state) -> EntryReconciler:
    return EntryReconciler(request.app.state.backend.records(state.access_token), state)


def _home_url(error: str = "") -> str:
    return f"/?error={quote_plus(error)}" if error else "/"


def _text(value) -> str:
    return "" if value is None else str(value)


@router.get("/", response_class=HTMLResponse)
def home(request: Request, error: str = ""):
    state = _current_session.get()
    backend = request.app.state.backend
    records = backend.records(state.access_token)
    errors = [error] if error else []
    try:
        EntryReconciler(records, state).load()
    except BackendError as exc:
        logger.warning("entries load failed: %s", exc.message)
        errors.append(f"Could not load entries: {exc.message}")
    # The last upload/delete result is shown once, on the page that follows it.
    med_status = state.med_status
    try:
        PhotoDocumentManager(records, backend.storage(state.access_token), state).load()
        state.med_status = med_status
    except BackendError as exc:
        logger.warning("photo document load failed: %s", exc.message)
    alerts = "".join(_alert(message) for message in errors)
    flash = state.pop_flash()
    page = f"""<!DOCTYPE html>
<html>
<head>{PAGE_STYLE}<title>Body Notebook</title></head>
<body>
  {_nav_bar(state.email or "")}
  <div class="container">
    <h1>Body Notebook</h1>
    {alerts}
    {_notice(flash)}
    {_latest_summary(state.entries)}
    {_entry_form(state)}
    {_med_section(state)}
    <h2>Recent entries</h2>
    {_entry_cards(state.entries)}
  </div>
</body>
</html>
"""
    state.med_status = ""
    return page


@router.post("/entries")
def entries_save(
    request: Request,
    date: str = Form(""),
    weight: str = Form(""),
    bp_s: str = Form(""),
    bp_d: str = Form(""),
    exercise_min: str = Form(""),
    plank_min: str = Form(""),
    knee_pain: str = Form("0"),
    notes: str = Form(""),
    editing_id: str = Form(""),
    original_date: str = Form(""),
):
    state = _current_session.get()
    form = EntryForm(
        date=date,
        weight=weight,
        bp_s=bp_s,
        bp_d=bp_d,
        exercise_min=exercise_min,
        plank_min=plank_min,
        knee_pain=knee_pain,
        notes=notes,
    )
    state.form = form
    editing = EditingContext(editing_id, original_date) if editing_id else None
    try:
        _reconciler(request, state).save(form, editing)
    except ValidationError as exc:
        return RedirectResponse(url=_home_url(str(exc)), status_code=303)
    except BackendError as exc:
        return RedirectResponse(url=_home_url(f"Save failed: {exc.message}"), status_code=303)
    return RedirectResponse(url="/", status_code=303)


@router.get("/entries/{entry_id}/edit")
def entries_edit(request: Request, entry_id: str):
    state = _current_session.get()
    reconciler = _reconciler(request, state)
    record = reconciler.find(entry_id)
    if record is None:
        try:
            reconciler.load()
        except BackendError as exc:
            return RedirectResponse(url=_home_url(f"Loading failed: {exc.message}"), status_code=303)
        record = reconciler.find(entry_id)
    if record is None:
        return RedirectResponse(url=_home_url("Entry not found"), status_code=303)
    reconciler.start_edit(record)
    return RedirectResponse(url="/", status_code=303)


@router.post("/entries/cancel")
def entries_cancel(request: Request):
    state = _current_session.get()
    _reconciler(request, state).cancel_edit()
    return RedirectResponse(url="/", status_code=303)


@router.post("/entries/{entry_id}/delete")
def entries_delete(request: Request, entry_id: str, confirmed: str = Form("")):
    state = _current_session.get()
    try:
        _reconciler(request, state).delete(entry_id, confirmed == "yes")
    except BackendError as exc:
        return RedirectResponse(url=_home_url(f"Delete failed: {exc.message}"), status_code=303)
    return RedirectResponse(url="/", status_code=303)


# ---------------------------------------------------------------------------
# JSON API
# ---------------------------------------------------------------------------

@router.get("/api/entries")
def api_entries(request: Request):
    state = _current_session.get()
    try:
        _reconciler(request, state).load()
    except BackendError as exc:
        return JSONResponse({"error": exc.message}, status_code=502)
    return JSONResponse({"entries": state.entries})


@router.post("/api/entries")
def api_entries_save(request: Request, payload: dict = Body(...)):
    state = _current_session.get()
    form = EntryForm(**{name: _text(payload.get(name)) for name in _FORM_FIELDS if name in payload})
    editing = None
    raw_editing = payload.get("editing") or {}
    if not isinstance(raw_editing, dict):
        return JSONResponse({"error": "editing must be an object"}, status_code=400)
    if raw_editing.get("record_id"):
        editing = EditingContext(_text(raw_editing["record_id"]), _text(raw_editing.get("original_date")))
    try:
        rows = _reconciler(request, state).save(form, editing)
    except ValidationError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    except BackendError as exc:
        return JSONResponse({"error": exc.message}, status_code=502)
    return JSONResponse({"ok": True, "entry": rows[0] if rows else None, "entries": state.entries})


@router.delete("/api/entries/{entry_id}")
def api_entries_delete(request: Request, entry_id: str, confirm: str = ""):
    state = _current_session.get()
    try:
        deleted = _reconciler(request, state).delete(entry_id, confirm == "yes")
    except BackendError as exc:
        return JSONResponse({"error": exc.message}, status_code=502)
    if not deleted:
        return JSONResponse({"error": "Deletion was not confirmed"}, status_code=400)
    return JSONResponse({"ok": True, "entries": state.entries})
