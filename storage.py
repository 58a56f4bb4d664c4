import io
import logging
from typing import Iterable, Optional, Tuple
from urllib.parse import quote

from PIL import Image, ImageOps

from config import MAX_PHOTO_SIZE
from remote import BackendError, RestClient

logger = logging.getLogger(__name__)

_MAX_IMAGE_DIMENSION = 8000  # pixels per side
_PIL_FORMATS = {"jpg": "JPEG", "png": "PNG", "gif": "GIF", "webp": "WEBP"}
_CONTENT_TYPES = {"jpg": "image/jpeg", "png": "image/png", "gif": "image/gif", "webp": "image/webp"}
_SAVE_OPTIONS = {"jpg": {"quality": 92}, "webp": {"quality": 92}}


class PhotoRejected(ValueError):
    """A selected file cannot be stored as a photo."""


def _detect_image_ext(data: bytes) -> Optional[str]:
    if data.startswith(b"\xff\xd8\xff"):
        return "jpg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "png"
    if data.startswith(b"GIF87a") or data.startswith(b"GIF89a"):
        return "gif"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    return None


def prepare_photo(data: bytes, content_type: str = "") -> Tuple[bytes, str]:
    """Return (bytes, content type) ready for upload.

    Formats Pillow can round-trip are re-encoded upright with EXIF/GPS
    metadata dropped, JPEG and WEBP at high quality so labels stay legible.
    Animated images and anything Pillow cannot round-trip (HEIC from phones,
    for one) are stored as received.
    """
    if not data:
        raise PhotoRejected("File is empty")
    if len(data) > MAX_PHOTO_SIZE:
        raise PhotoRejected(f"File is larger than {MAX_PHOTO_SIZE // (1024 * 1024)} MB")
    ext = _detect_image_ext(data)
    if ext is None:
        return data, content_type or "application/octet-stream"
    try:
        img = Image.open(io.BytesIO(data))
        if img.width > _MAX_IMAGE_DIMENSION or img.height > _MAX_IMAGE_DIMENSION:
            raise PhotoRejected(f"Image must be {_MAX_IMAGE_DIMENSION}px or smaller in each dimension")
        if getattr(img, "is_animated", False):
            # Re-saving would keep only the first frame.
            return data, _CONTENT_TYPES[ext]
        img = ImageOps.exif_transpose(img)
        buf = io.BytesIO()
        img.save(buf, format=_PIL_FORMATS[ext], **_SAVE_OPTIONS.get(ext, {}))
    except PhotoRejected:
        raise
    except Exception as exc:
        raise PhotoRejected("Could not process image") from exc
    return buf.getvalue(), _CONTENT_TYPES[ext]


class StorageBucket(RestClient):
    """One object-storage bucket on the hosted backend."""

    prefix = "/storage/v1"

    def __init__(self, base_url: str, api_key: str, bucket: str, **kwargs):
        super().__init__(base_url, api_key, **kwargs)
        self.bucket = bucket

    def _object_path(self, path: str) -> str:
        return f"{self.bucket}/{quote(path.lstrip('/'), safe='/')}"

    def upload(self, path: str, data: bytes, content_type: str, upsert: bool = True) -> None:
        self._request(
            "POST",
            f"object/{self._object_path(path)}",
            data=data,
            headers={
                "Content-Type": content_type or "application/octet-stream",
                "x-upsert": "true" if upsert else "false",
            },
        )

    def remove(self, paths: Iterable[str]) -> None:
        self._request("DELETE", f"object/{self.bucket}", json={"prefixes": list(paths)})

    def create_signed_url(self, path: str, expires_in: int) -> str:
        body = self._request(
            "POST", f"object/sign/{self._object_path(path)}", json={"expiresIn": int(expires_in)}
        )
        signed = (body or {}).get("signedURL") or (body or {}).get("signedUrl")
        if not signed:
            raise BackendError(f"No signed URL returned for {path}")
        if signed.startswith("http"):
            return signed
        return f"{self.base_url}{self.prefix}/{signed.lstrip('/')}"
