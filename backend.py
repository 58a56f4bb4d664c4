from typing import Optional

import requests

from config import BACKEND_TIMEOUT_SECONDS, MED_BUCKET, SUPABASE_KEY, SUPABASE_URL
from db import RecordStore
from security import AuthClient
from storage import StorageBucket


class Backend:
    """Entry point to the hosted backend: identity, rows and photo storage.

    One HTTP session is shared by every client handed out; row and storage
    clients are bound to the caller's access token.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        bucket: str = MED_BUCKET,
        http: Optional[requests.Session] = None,
        timeout: float = BACKEND_TIMEOUT_SECONDS,
    ):
        self.url = url
        self.api_key = api_key
        self.bucket = bucket
        self.http = http or requests.Session()
        self.timeout = timeout
        self.auth = AuthClient(url, api_key, http=self.http, timeout=timeout)

    def records(self, access_token: Optional[str]) -> RecordStore:
        return RecordStore(
            self.url, self.api_key, access_token=access_token, http=self.http, timeout=self.timeout
        )

    def storage(self, access_token: Optional[str]) -> StorageBucket:
        return StorageBucket(
            self.url,
            self.api_key,
            self.bucket,
            access_token=access_token,
            http=self.http,
            timeout=self.timeout,
        )


def create_backend() -> Backend:
    return Backend(SUPABASE_URL, SUPABASE_KEY)
