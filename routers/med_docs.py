from typing import List
from urllib.parse import quote_plus

from fastapi import APIRouter, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from config import MAX_PHOTO_SIZE, _current_session
from med_docs import PhotoDocumentManager, PhotoUpload
from remote import BackendError
from state import ValidationError

router = APIRouter()


def _manager(request: Request, state) -> PhotoDocumentManager:
    backend = request.app.state.backend
    return PhotoDocumentManager(
        backend.records(state.access_token), backend.storage(state.access_token), state
    )


async def _read_limited_upload(upload: UploadFile, max_bytes: int) -> bytes:
    # Stops one chunk past the limit; the size check downstream rejects it.
    chunks = []
    total = 0
    while True:
        chunk = await upload.read(1024 * 1024)
        if not chunk:
            break
        chunks.append(chunk)
        total += len(chunk)
        if total > max_bytes:
            break
    return b"".join(chunks)


async def _collect(files: List[UploadFile]) -> list:
    photos = []
    for upload in files:
        if not upload.filename:
            continue
        data = await _read_limited_upload(upload, MAX_PHOTO_SIZE)
        photos.append(PhotoUpload(upload.filename, data, upload.content_type or ""))
    return photos


def _document_payload(state) -> dict:
    doc = state.med_doc or {}
    return {
        "document": state.med_doc,
        "urls": {p: state.med_urls.get(p) for p in doc.get("file_paths") or []},
        "status": state.med_status,
        "busy": state.is_busy(PhotoDocumentManager.resource),
    }


@router.post("/med-docs/upload")
async def med_docs_upload(
    request: Request,
    files: List[UploadFile] = File(default=[]),
    title: str = Form(""),
):
    state = _current_session.get()
    state.med_title = title
    photos = await _collect(files)
    if not photos:
        return RedirectResponse(url="/", status_code=303)
    try:
        await run_in_threadpool(_manager(request, state).upload, photos, title)
    except ValidationError as exc:
        return RedirectResponse(url=f"/?error={quote_plus(str(exc))}", status_code=303)
    except BackendError as exc:
        return RedirectResponse(url=f"/?error={quote_plus('Upload failed: ' + exc.message)}", status_code=303)
    return RedirectResponse(url="/", status_code=303)


@router.post("/med-docs/delete")
def med_docs_delete(request: Request, path: str = Form(...), confirmed: str = Form("")):
    state = _current_session.get()
    try:
        _manager(request, state).remove_file(path, confirmed == "yes")
    except ValidationError as exc:
        return RedirectResponse(url=f"/?error={quote_plus(str(exc))}", status_code=303)
    except BackendError as exc:
        return RedirectResponse(url=f"/?error={quote_plus('Delete failed: ' + exc.message)}", status_code=303)
    return RedirectResponse(url="/", status_code=303)


# ---------------------------------------------------------------------------
# JSON API
# ---------------------------------------------------------------------------

@router.get("/api/med-docs")
def api_med_docs(request: Request):
    state = _current_session.get()
    try:
        _manager(request, state).load()
    except BackendError as exc:
        return JSONResponse({"error": exc.message}, status_code=502)
    return JSONResponse(_document_payload(state))


@router.post("/api/med-docs/upload")
async def api_med_docs_upload(
    request: Request,
    files: List[UploadFile] = File(default=[]),
    title: str = Form(""),
):
    state = _current_session.get()
    photos = await _collect(files)
    if not photos:
        return JSONResponse({"error": "No files selected"}, status_code=400)
    try:
        result = await run_in_threadpool(_manager(request, state).upload, photos, title)
    except ValidationError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    except BackendError as exc:
        return JSONResponse({"error": exc.message}, status_code=502)
    payload = _document_payload(state)
    payload["uploaded"] = result.uploaded
    payload["failed"] = [{"filename": name, "error": message} for name, message in result.failed]
    return JSONResponse(payload)


@router.delete("/api/med-docs/files")
def api_med_docs_delete(request: Request, path: str, confirm: str = ""):
    state = _current_session.get()
    try:
        removed = _manager(request, state).remove_file(path, confirm == "yes")
    except ValidationError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    except BackendError as exc:
        return JSONResponse({"error": exc.message}, status_code=502)
    if not removed:
        return JSONResponse({"error": "Deletion was not confirmed"}, status_code=400)
    return JSONResponse(_document_payload(state))
