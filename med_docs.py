"""Prescription / supplement photo collection.

Each user owns a single ``med_docs`` row for the photo category.  Uploaded
objects live under ``{user}/{document id}/`` in the bucket and the row's
``file_paths`` keeps them in upload order.
"""
import logging
import re
import secrets
import string
from dataclasses import dataclass, field
from time import time
from typing import Optional

from config import MED_DOC_DEFAULT_TITLE, MED_DOC_TYPE, MED_DOCS_TABLE, SIGNED_URL_TTL_SECONDS
from remote import BackendError
from state import ValidationError
from storage import PhotoRejected, prepare_photo

logger = logging.getLogger(__name__)

MAX_FILE_NAME_LENGTH = 80
_UNSAFE_CHARS = re.compile(r"[^\w.\- ]+")
_WHITESPACE = re.compile(r"\s+")
_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def safe_file_name(name: str, max_length: int = MAX_FILE_NAME_LENGTH) -> str:
    cleaned = _WHITESPACE.sub("_", _UNSAFE_CHARS.sub("_", name or ""))
    if len(cleaned) > max_length:
        stem, dot, ext = cleaned.rpartition(".")
        if dot and stem and len(ext) < max_length // 2:
            cleaned = stem[: max_length - len(ext) - 1] + "." + ext
        else:
            cleaned = cleaned[:max_length]
    return cleaned or "file"


def build_storage_path(owner: str, document_id, filename: str, now_ms: Optional[int] = None) -> str:
    if now_ms is None:
        now_ms = int(time() * 1000)
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"{owner}/{document_id}/{now_ms}_{suffix}_{safe_file_name(filename)}"


@dataclass
class PhotoUpload:
    filename: str
    data: bytes
    content_type: str = ""


@dataclass
class UploadResult:
    uploaded: list = field(default_factory=list)
    failed: list = field(default_factory=list)  # (filename, message)


class PhotoDocumentManager:
    resource = "med"

    def __init__(
        self,
        store,
        bucket,
        state,
        doc_type: str = MED_DOC_TYPE,
        default_title: str = MED_DOC_DEFAULT_TITLE,
        signed_url_ttl: int = SIGNED_URL_TTL_SECONDS,
    ):
        self.store = store
        self.bucket = bucket
        self.state = state
        self.doc_type = doc_type
        self.default_title = default_title
        self.signed_url_ttl = signed_url_ttl

    def _require_user(self) -> str:
        if not self.state.signed_in:
            raise ValidationError("Sign in required")
        return self.state.user_id

    def _find(self, user_id: str) -> Optional[dict]:
        rows = self.store.select(MED_DOCS_TABLE, {"user_id": user_id, "doc_type": self.doc_type}, limit=1)
        return rows[0] if rows else None

    def ensure_document(self) -> dict:
        """Return the user's document for this category, creating it if absent."""
        user_id = self._require_user()
        doc = self._find(user_id)
        if doc is None:
            try:
                doc = self.store.insert(
                    MED_DOCS_TABLE,
                    {
                        "user_id": user_id,
                        "doc_type": self.doc_type,
                        "title": self.default_title,
                        "file_paths": [],
                    },
                )
            except BackendError as exc:
                # Another request created it first.
                if not exc.is_conflict:
                    raise
                doc = self._find(user_id)
                if doc is None:
                    raise
        self.state.med_doc = doc
        if not self.state.med_title.strip():
            self.state.med_title = doc.get("title") or ""
        return doc

    def load(self) -> dict:
        self.state.med_status = "Checking photo document..."
        try:
            doc = self.ensure_document()
            self.refresh_signed_urls(doc.get("file_paths") or [])
        except BackendError as exc:
            self.state.med_status = f"Could not load photos: {exc.message}"
            raise
        self.state.med_status = ""
        return doc

    def refresh_signed_urls(self, paths: list) -> Optional[dict]:
        """Rebuild the path -> signed URL map; None if a newer refresh superseded this one."""
        fence = self.state.fences["med_urls"]
        token = fence.issue()
        urls = {}
        for path in paths:
            try:
                urls[path] = self.bucket.create_signed_url(path, self.signed_url_ttl)
            except BackendError as exc:
                logger.warning("signed URL for %s failed: %s", path, exc.message)
        if not fence.is_current(token):
            return None
        self.state.med_urls = urls
        return urls

    def _write_paths(self, doc: dict, values: dict) -> dict:
        rows = self.store.update(
            MED_DOCS_TABLE, values, {"id": doc["id"], "user_id": self.state.user_id}
        )
        if not rows:
            raise BackendError("Photo document no longer exists")
        self.state.med_doc = rows[0]
        return rows[0]

    def upload(self, files: list, title: str = "") -> UploadResult:
        result = UploadResult()
        if not files:
            return result
        user_id = self._require_user()
        with self.state.busy(self.resource):
            doc = self.ensure_document()
            for upload in files:
                try:
                    data, content_type = prepare_photo(upload.data, upload.content_type)
                    path = build_storage_path(user_id, doc["id"], upload.filename)
                    self.bucket.upload(path, data, content_type, upsert=True)
                except (PhotoRejected, BackendError) as exc:
                    logger.warning("upload of %r failed: %s", upload.filename, exc)
                    result.failed.append((upload.filename, str(exc)))
                    continue
                result.uploaded.append(path)

            values = {"file_paths": list(doc.get("file_paths") or []) + result.uploaded}
            if title.strip():
                values["title"] = title.strip()
            try:
                updated = self._write_paths(doc, values)
            except BackendError as exc:
                if result.uploaded:
                    logger.warning("%d uploaded photo(s) left unreferenced: %s", len(result.uploaded), exc.message)
                self.state.med_status = f"Saving the photo list failed: {exc.message}"
                raise
            self.refresh_signed_urls(updated.get("file_paths") or [])
        self.state.med_status = _upload_status(result)
        return result

    def remove_file(self, path: str, confirmed: bool) -> bool:
        if not confirmed:
            return False
        user_id = self._require_user()
        if not path.startswith(f"{user_id}/"):
            raise ValidationError("That photo does not belong to this account")
        with self.state.busy(self.resource):
            doc = self.ensure_document()
            self.bucket.remove([path])
            remaining = [p for p in (doc.get("file_paths") or []) if p != path]
            updated = self._write_paths(doc, {"file_paths": remaining})
            self.refresh_signed_urls(updated.get("file_paths") or [])
        return True


def _upload_status(result: UploadResult) -> str:
    if not result.failed:
        return f"Saved {len(result.uploaded)} photo(s)."
    failed = "; ".join(f"{name}: {message}" for name, message in result.failed)
    return f"Saved {len(result.uploaded)} photo(s). Upload failed for {failed}"
