import logging
from typing import Optional

import requests

from config import BACKEND_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

_UNIQUE_VIOLATION = "23505"


class BackendError(Exception):
    """A request to the hosted backend failed (transport error or non-2xx reply)."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409 or self.code == _UNIQUE_VIOLATION


def _error_message(resp) -> tuple:
    """Pull (message, code) out of a PostgREST / GoTrue / Storage error body."""
    try:
        body = resp.json()
    except ValueError:
        return ((resp.text or "").strip()[:200] or f"HTTP {resp.status_code}", None)
    if not isinstance(body, dict):
        return (str(body)[:200], None)
    message = (
        body.get("message")
        or body.get("msg")
        or body.get("error_description")
        or body.get("error")
        or f"HTTP {resp.status_code}"
    )
    code = body.get("code") or body.get("error_code") or body.get("statusCode")
    return (str(message), str(code) if code is not None else None)


class RestClient:
    """Shared plumbing for the backend's REST surfaces.

    ``prefix`` is the service mount point (``/rest/v1``, ``/storage/v1``,
    ``/auth/v1``).  Requests carry the project key, plus the user's access
    token when one is bound so row-level security applies.
    """

    prefix = ""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        access_token: Optional[str] = None,
        http: Optional[requests.Session] = None,
        timeout: float = BACKEND_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self.http = http or requests.Session()
        self.timeout = timeout

    def url(self, path: str) -> str:
        return f"{self.base_url}{self.prefix}/{path.lstrip('/')}"

    def _headers(self, extra: Optional[dict] = None) -> dict:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token or self.api_key}",
        }
        if extra:
            headers.update(extra)
        return headers

    def _request(self, method: str, path: str, *, params=None, json=None, data=None, headers=None):
        try:
            resp = self.http.request(
                method,
                self.url(path),
                params=params,
                json=json,
                data=data,
                headers=self._headers(headers),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise BackendError(str(exc)) from exc
        if not 200 <= resp.status_code < 300:
            message, code = _error_message(resp)
            raise BackendError(message, status_code=resp.status_code, code=code)
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return resp.text
