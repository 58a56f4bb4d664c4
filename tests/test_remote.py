import unittest
from unittest import mock

import requests

from db import RecordStore
from remote import BackendError
from security import AuthClient
from storage import StorageBucket


def response(status=200, body=None, text=None):
    resp = mock.Mock()
    resp.status_code = status
    if body is not None:
        resp.json.return_value = body
        resp.content = b"x"
        resp.text = str(body)
    else:
        resp.json.side_effect = ValueError("no json")
        resp.text = text or ""
        resp.content = (text or "").encode()
    return resp


class RecordStoreTests(unittest.TestCase):
    def setUp(self):
        self.http = mock.Mock(spec=requests.Session)
        self.store = RecordStore("https://proj.example.co/", "anon-key", access_token="jwt", http=self.http)

    def _call(self):
        args, kwargs = self.http.request.call_args
        return args, kwargs

    def test_select_builds_filters_and_order(self):
        self.http.request.return_value = response(body=[{"id": 1}])
        rows = self.store.select("body_entries", {"user_id": "u1"}, order=(("date", True), ("created_at", True)))
        self.assertEqual(rows, [{"id": 1}])
        (method, url), kwargs = self._call()
        self.assertEqual(method, "GET")
        self.assertEqual(url, "https://proj.example.co/rest/v1/body_entries")
        self.assertEqual(
            kwargs["params"], {"select": "*", "user_id": "eq.u1", "order": "date.desc,created_at.desc"}
        )
        self.assertEqual(kwargs["headers"]["apikey"], "anon-key")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer jwt")

    def test_upsert_merges_on_conflict_key(self):
        self.http.request.return_value = response(body=[{"id": 7}])
        self.store.upsert("body_entries", {"date": "2024-01-05"}, on_conflict="user_id,date")
        _, kwargs = self._call()
        self.assertEqual(kwargs["params"], {"on_conflict": "user_id,date"})
        self.assertIn("resolution=merge-duplicates", kwargs["headers"]["Prefer"])

    def test_unique_violation_is_a_conflict(self):
        self.http.request.return_value = response(
            409, body={"code": "23505", "message": "duplicate key value violates unique constraint"}
        )
        with self.assertRaises(BackendError) as ctx:
            self.store.insert("med_docs", {"user_id": "u1"})
        self.assertTrue(ctx.exception.is_conflict)
        self.assertEqual(ctx.exception.message, "duplicate key value violates unique constraint")

    def test_transport_error_becomes_backend_error(self):
        self.http.request.side_effect = requests.ConnectionError("connection refused")
        with self.assertRaises(BackendError) as ctx:
            self.store.select("body_entries")
        self.assertIsNone(ctx.exception.status_code)

    def test_plain_text_error_body(self):
        self.http.request.return_value = response(500, text="upstream timeout")
        with self.assertRaises(BackendError) as ctx:
            self.store.delete("body_entries", {"id": "1"})
        self.assertEqual(ctx.exception.message, "upstream timeout")
        self.assertFalse(ctx.exception.is_conflict)

    def test_unfiltered_writes_are_refused(self):
        with self.assertRaises(ValueError):
            self.store.delete("body_entries", {})
        self.http.request.assert_not_called()


class StorageBucketTests(unittest.TestCase):
    def setUp(self):
        self.http = mock.Mock(spec=requests.Session)
        self.bucket = StorageBucket("https://proj.example.co", "anon-key", "med_docs_bucket", http=self.http)

    def test_signed_url_is_made_absolute(self):
        self.http.request.return_value = response(
            body={"signedURL": "/object/sign/med_docs_bucket/u1/1/a.jpg?token=abc"}
        )
        url = self.bucket.create_signed_url("u1/1/a.jpg", 3600)
        self.assertEqual(url, "https://proj.example.co/storage/v1/object/sign/med_docs_bucket/u1/1/a.jpg?token=abc")
        (method, called), kwargs = self.http.request.call_args
        self.assertEqual(called, "https://proj.example.co/storage/v1/object/sign/med_docs_bucket/u1/1/a.jpg")
        self.assertEqual(kwargs["json"], {"expiresIn": 3600})

    def test_upload_overwrites_with_content_type(self):
        self.http.request.return_value = response(body={"Key": "med_docs_bucket/u1/1/a.jpg"})
        self.bucket.upload("u1/1/a b.jpg", b"data", "image/jpeg")
        (method, url), kwargs = self.http.request.call_args
        self.assertEqual(method, "POST")
        self.assertTrue(url.endswith("/object/med_docs_bucket/u1/1/a%20b.jpg"))
        self.assertEqual(kwargs["headers"]["x-upsert"], "true")
        self.assertEqual(kwargs["headers"]["Content-Type"], "image/jpeg")

    def test_remove_sends_prefixes(self):
        self.http.request.return_value = response(body=[])
        self.bucket.remove(["u1/1/a.jpg"])
        (method, url), kwargs = self.http.request.call_args
        self.assertEqual(method, "DELETE")
        self.assertEqual(kwargs["json"], {"prefixes": ["u1/1/a.jpg"]})


class AuthClientTests(unittest.TestCase):
    def setUp(self):
        self.http = mock.Mock(spec=requests.Session)
        self.auth = AuthClient("https://proj.example.co", "anon-key", http=self.http)

    def test_password_sign_in_returns_session(self):
        self.http.request.return_value = response(
            body={
                "access_token": "jwt",
                "refresh_token": "r1",
                "expires_at": 1700003600,
                "user": {"id": "u1", "email": "a@example.com"},
            }
        )
        session = self.auth.sign_in_with_password("a@example.com", "pw")
        self.assertEqual((session.user_id, session.email, session.access_token), ("u1", "a@example.com", "jwt"))
        _, kwargs = self.http.request.call_args
        self.assertEqual(kwargs["params"], {"grant_type": "password"})

    def test_bad_credentials_surface_backend_message(self):
        self.http.request.return_value = response(
            400, body={"error": "invalid_grant", "error_description": "Invalid login credentials"}
        )
        with self.assertRaises(BackendError) as ctx:
            self.auth.sign_in_with_password("a@example.com", "nope")
        self.assertEqual(ctx.exception.message, "Invalid login credentials")

    def test_response_without_session_is_an_error(self):
        self.http.request.return_value = response(body={"user": None})
        with self.assertRaises(BackendError):
            self.auth.verify_otp("hash")


if __name__ == "__main__":
    unittest.main()
