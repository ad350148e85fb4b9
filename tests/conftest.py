"""
Pytest fixtures for the tracker sync tests.

FakeSupabase stands in for SupabaseRestClient: same table()/storage surface,
rows kept in memory, every call recorded so tests can count remote traffic.
"""

import copy
import itertools
from typing import Any, Callable, Dict, List
from unittest.mock import MagicMock

import pytest

from database import TrackerDatabase
from supabase_rest import SupabaseResponse, SupabaseError, NO_ROWS_CODE

USER_ID = "user-123"


class FakeQuery:
    def __init__(self, client: "FakeSupabase", table: str):
        self.client = client
        self.table_name = table
        self._filters = []
        self._select = None
        self._single = False
        self._operation = None
        self._payload = None
        self._on_conflict = None

    def select(self, columns="*"):
        self._select = columns
        return self

    def eq(self, column, value):
        self._filters.append((column, value))
        return self

    def order(self, column, desc=False):
        return self

    def single(self):
        self._single = True
        return self

    def upsert(self, data, on_conflict=None):
        self._operation = "upsert"
        self._payload = data
        self._on_conflict = on_conflict
        return self

    def insert(self, data):
        self._operation = "insert"
        self._payload = data
        return self

    def update(self, data):
        self._operation = "update"
        self._payload = data
        return self

    def delete(self):
        self._operation = "delete"
        return self

    def _matches(self, row):
        return all(row.get(col) == val for col, val in self._filters)

    def _shape(self, rows):
        if not self._single:
            return SupabaseResponse(copy.deepcopy(rows))
        if len(rows) != 1:
            return SupabaseResponse(None, error=SupabaseError(
                "JSON object requested, multiple (or no) rows returned",
                code=NO_ROWS_CODE, status=406))
        return SupabaseResponse(copy.deepcopy(rows[0]))

    def execute(self):
        operation = self._operation or "select"
        self.client.calls.append((self.table_name, operation, copy.deepcopy(self._payload)))
        for should_fail in self.client.failures:
            if should_fail(self.table_name, operation, self._payload):
                return SupabaseResponse(None, error=SupabaseError("simulated failure", status=500))

        rows = self.client.tables.setdefault(self.table_name, [])

        if operation == "select":
            return self._shape([r for r in rows if self._matches(r)])

        if operation in ("upsert", "insert"):
            key = self._on_conflict or "id"
            payloads = self._payload if isinstance(self._payload, list) else [self._payload]
            written = []
            for payload in payloads:
                existing = None
                if operation == "upsert" and payload.get(key) is not None:
                    existing = next((r for r in rows if r.get(key) == payload[key]), None)
                if existing is not None:
                    existing.update(copy.deepcopy(payload))
                    written.append(existing)
                else:
                    row = copy.deepcopy(payload)
                    row.setdefault("id", self.client.next_id(self.table_name))
                    rows.append(row)
                    written.append(row)
            if self._select is None:
                return SupabaseResponse([])
            return self._shape(written)

        if operation == "update":
            for row in rows:
                if self._matches(row):
                    row.update(copy.deepcopy(self._payload))
            return SupabaseResponse([])

        if operation == "delete":
            self.client.tables[self.table_name] = [r for r in rows if not self._matches(r)]
            return SupabaseResponse([])

        raise ValueError(operation)


class FakeBucket:
    def __init__(self, client: "FakeSupabase", bucket: str):
        self.client = client
        self.bucket = bucket

    @property
    def objects(self) -> Dict[str, bytes]:
        return self.client.objects.setdefault(self.bucket, {})

    def upload(self, path, data, content_type="image/jpeg", upsert=False):
        self.client.calls.append(("storage:" + self.bucket, "upload", path))
        if self.client.fail_uploads:
            return SupabaseResponse(None, error=SupabaseError("upload failed", status=500))
        if path in self.objects and not upsert:
            return SupabaseResponse(None, error=SupabaseError("Duplicate", status=409))
        self.objects[path] = data
        self.client.upload_options.append({"path": path, "content_type": content_type, "upsert": upsert})
        return SupabaseResponse({"Key": f"{self.bucket}/{path}"})

    def create_signed_url(self, path, expires_in):
        self.client.calls.append(("storage:" + self.bucket, "sign", (path, expires_in)))
        url = f"https://fake.supabase.co/storage/v1/object/sign/{self.bucket}/{path}?token=t{expires_in}"
        return SupabaseResponse({"signedUrl": url})

    def list(self, prefix="", limit=1000):
        self.client.calls.append(("storage:" + self.bucket, "list", prefix))
        names = [p[len(prefix) + 1:] for p in self.objects if p.startswith(prefix + "/")]
        return SupabaseResponse([{"name": n} for n in names])

    def remove(self, paths):
        self.client.calls.append(("storage:" + self.bucket, "remove", list(paths)))
        for p in paths:
            self.objects.pop(p, None)
        return SupabaseResponse([{"name": p} for p in paths])


class FakeStorage:
    def __init__(self, client):
        self.client = client

    def from_(self, bucket):
        return FakeBucket(self.client, bucket)


class FakeSupabase:
    """In-memory Supabase double shared by several simulated devices."""

    realtime_url = "wss://fake.supabase.co/realtime/v1/websocket?apikey=anon&vsn=1.0.0"
    access_token = "jwt-token"

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.objects: Dict[str, Dict[str, bytes]] = {}
        self.calls: List[tuple] = []
        self.failures: List[Callable[[str, str, Any], bool]] = []
        self.fail_uploads = False
        self.upload_options: List[Dict] = []
        self.storage = FakeStorage(self)
        self._ids = itertools.count(1)

    def next_id(self, table: str) -> str:
        return f"{table[:3]}-cloud-{next(self._ids)}"

    def table(self, name):
        return FakeQuery(self, name)

    def writes(self) -> List[tuple]:
        return [c for c in self.calls if c[1] in ("upsert", "insert", "update", "delete", "upload")]

    def rows(self, table: str) -> List[Dict]:
        return self.tables.get(table, [])


@pytest.fixture
def user_id():
    return USER_ID


@pytest.fixture
def db(tmp_path):
    """TrackerDatabase on a temporary file."""
    database = TrackerDatabase(str(tmp_path / "tracker.db"))
    yield database
    database.close()


@pytest.fixture
def second_db(tmp_path):
    """A second device's database."""
    database = TrackerDatabase(str(tmp_path / "device2.db"))
    yield database
    database.close()


@pytest.fixture
def cloud():
    return FakeSupabase()


@pytest.fixture
def cloud_db(db, user_id):
    """Database whose user has cloud sync turned on."""
    db.update_user_preferences(user_id, cloud_enabled=True)
    return db


@pytest.fixture
def media_dir(tmp_path):
    path = tmp_path / "media"
    path.mkdir()
    return path


@pytest.fixture
def http_photos(monkeypatch, cloud):
    """Serve signed storage URLs from the fake bucket through attachments.requests.get."""
    import attachments

    def fake_get(url, timeout=None):
        response = MagicMock()
        path = url.split("/object/sign/observations/", 1)[-1].split("?", 1)[0]
        data = cloud.objects.get("observations", {}).get(path)
        response.ok = data is not None
        response.status_code = 200 if data is not None else 404
        response.content = data or b""
        return response

    monkeypatch.setattr(attachments.requests, "get", fake_get)
    return fake_get
