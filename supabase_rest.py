"""
Simple Supabase REST API client using only the requests library.

Covers the parts of Supabase the tracker app talks to:
- PostgREST tables (select / upsert / insert / update / delete)
- Storage buckets (upload / signed URLs / list / remove)
- Auth (current user lookup)
"""
import logging
import threading
from typing import List, Dict, Any, Optional, Union
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

# PostgREST error code returned by .single() when the query matched no rows
NO_ROWS_CODE = "PGRST116"


class SupabaseConfigError(RuntimeError):
    """Raised when the Supabase URL or key is not configured."""


class SupabaseError(Exception):
    """Error returned by a Supabase endpoint (or the transport underneath)."""

    def __init__(self, message: str, code: Optional[str] = None,
                 status: Optional[int] = None, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status
        self.details = details

    @property
    def is_no_rows(self) -> bool:
        return self.code == NO_ROWS_CODE

    def __repr__(self):
        return f"SupabaseError({self.message!r}, code={self.code!r}, status={self.status!r})"


class SupabaseResponse:
    """Mimics the supabase response object."""
    def __init__(self, data: Union[List[Dict], Dict, None], error: Optional[SupabaseError] = None):
        self.data = data
        self.error = error

    def raise_for_error(self) -> 'SupabaseResponse':
        if self.error is not None:
            raise self.error
        return self


def _error_from_response(response: requests.Response) -> SupabaseError:
    """Build a SupabaseError from a failed HTTP response."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    message = body.get("message") or body.get("error") or response.text or f"HTTP {response.status_code}"
    return SupabaseError(
        message,
        code=body.get("code") or body.get("statusCode"),
        status=response.status_code,
        details=body.get("details"),
    )


class TableQuery:
    """Builds and executes queries against a Supabase table."""

    def __init__(self, client: 'SupabaseRestClient', table_name: str):
        self.client = client
        self.table_name = table_name
        self._select_cols = None
        self._filters = []
        self._order = None
        self._limit = None
        self._single = False
        self._operation = None  # None means plain SELECT
        self._payload = None
        self._on_conflict = None

    def select(self, columns: str = "*") -> 'TableQuery':
        """Set columns to select (or to return from a write)."""
        self._select_cols = columns
        return self

    def upsert(self, data: Union[Dict, List[Dict]], on_conflict: str = None) -> 'TableQuery':
        """Set data to upsert."""
        self._operation = "upsert"
        self._payload = data
        self._on_conflict = on_conflict
        return self

    def insert(self, data: Union[Dict, List[Dict]]) -> 'TableQuery':
        """Set data to insert."""
        self._operation = "insert"
        self._payload = data
        return self

    def update(self, data: Dict) -> 'TableQuery':
        """Set fields to update on the filtered rows."""
        self._operation = "update"
        self._payload = data
        return self

    def delete(self) -> 'TableQuery':
        """Mark as delete operation."""
        self._operation = "delete"
        return self

    def eq(self, column: str, value: Any) -> 'TableQuery':
        """Add equal filter."""
        self._filters.append((column, f"eq.{value}"))
        return self

    def neq(self, column: str, value: Any) -> 'TableQuery':
        """Add not-equal filter."""
        self._filters.append((column, f"neq.{value}"))
        return self

    def gt(self, column: str, value: Any) -> 'TableQuery':
        """Add greater-than filter."""
        self._filters.append((column, f"gt.{value}"))
        return self

    def is_(self, column: str, value: Optional[bool]) -> 'TableQuery':
        """Add IS filter (null / true / false)."""
        literal = "null" if value is None else str(value).lower()
        self._filters.append((column, f"is.{literal}"))
        return self

    def order(self, column: str, desc: bool = False) -> 'TableQuery':
        self._order = f"{column}.{'desc' if desc else 'asc'}"
        return self

    def limit(self, count: int) -> 'TableQuery':
        self._limit = count
        return self

    def single(self) -> 'TableQuery':
        """Expect exactly one row; data becomes a dict instead of a list."""
        self._single = True
        return self

    def _params(self) -> List[tuple]:
        params = list(self._filters)
        if self._select_cols is not None:
            params.append(("select", self._select_cols))
        if self._order:
            params.append(("order", self._order))
        if self._limit is not None:
            params.append(("limit", str(self._limit)))
        if self._on_conflict:
            params.append(("on_conflict", self._on_conflict))
        return params

    def execute(self) -> SupabaseResponse:
        """Execute the query."""
        url = f"{self.client.url}/rest/v1/{self.table_name}"
        headers = self.client._get_headers()
        if self._single:
            headers["Accept"] = "application/vnd.pgrst.object+json"
        params = self._params()

        try:
            if self._operation is None:
                # SELECT query
                if self._select_cols is None:
                    params.append(("select", "*"))
                response = requests.get(url, headers=headers, params=params, timeout=30)

            else:
                prefer = ["return=representation" if self._select_cols is not None else "return=minimal"]
                if self._operation == "upsert":
                    prefer.insert(0, "resolution=merge-duplicates")
                headers["Prefer"] = ",".join(prefer)

                if self._operation in ("upsert", "insert"):
                    response = requests.post(url, headers=headers, params=params,
                                             json=self._payload, timeout=60)
                elif self._operation == "update":
                    response = requests.patch(url, headers=headers, params=params,
                                              json=self._payload, timeout=60)
                elif self._operation == "delete":
                    response = requests.delete(url, headers=headers, params=params, timeout=30)
                else:
                    raise ValueError(f"Unknown operation: {self._operation}")

            if not response.ok:
                return SupabaseResponse(None, error=_error_from_response(response))

            if not response.content:
                return SupabaseResponse(None if self._single else [])
            return SupabaseResponse(response.json())

        except requests.exceptions.RequestException as e:
            logger.debug(f"Request to {self.table_name} failed: {e}")
            return SupabaseResponse(None, error=SupabaseError(str(e)))


class StorageBucket:
    """File operations against one Supabase Storage bucket."""

    def __init__(self, client: 'SupabaseRestClient', bucket: str):
        self.client = client
        self.bucket = bucket

    def _object_url(self, path: str, action: str = "object") -> str:
        return f"{self.client.url}/storage/v1/{action}/{self.bucket}/{quote(path)}"

    def _call(self, method: str, url: str, **kwargs) -> SupabaseResponse:
        try:
            response = requests.request(method, url, **kwargs)
            if not response.ok:
                return SupabaseResponse(None, error=_error_from_response(response))
            return SupabaseResponse(response.json() if response.content else None)
        except requests.exceptions.RequestException as e:
            return SupabaseResponse(None, error=SupabaseError(str(e)))

    def upload(self, path: str, data: bytes, content_type: str = "image/jpeg",
               upsert: bool = False) -> SupabaseResponse:
        """Upload bytes to `path` (overwrites an existing object when upsert is True)."""
        headers = self.client._get_headers()
        headers["Content-Type"] = content_type
        headers["x-upsert"] = "true" if upsert else "false"
        return self._call("POST", self._object_url(path), headers=headers, data=data, timeout=120)

    def create_signed_url(self, path: str, expires_in: int) -> SupabaseResponse:
        """Create a signed URL; data is {"signedUrl": <absolute url>}."""
        result = self._call("POST", self._object_url(path, "object/sign"),
                            headers=self.client._get_headers(),
                            json={"expiresIn": expires_in}, timeout=30)
        if result.error is not None:
            return result
        signed = (result.data or {}).get("signedURL") or (result.data or {}).get("signedUrl")
        if not signed:
            return SupabaseResponse(None, error=SupabaseError(f"No signed URL returned for {path}"))
        if not signed.startswith("http"):
            signed = f"{self.client.url}/storage/v1{signed}"
        return SupabaseResponse({"signedUrl": signed})

    def list(self, prefix: str = "", limit: int = 1000) -> SupabaseResponse:
        """List objects under a folder prefix; data is a list of {"name": ...} entries."""
        return self._call("POST", f"{self.client.url}/storage/v1/object/list/{self.bucket}",
                          headers=self.client._get_headers(),
                          json={"prefix": prefix, "limit": limit, "offset": 0}, timeout=30)

    def remove(self, paths: List[str]) -> SupabaseResponse:
        """Delete objects by full path."""
        return self._call("DELETE", f"{self.client.url}/storage/v1/object/{self.bucket}",
                          headers=self.client._get_headers(),
                          json={"prefixes": paths}, timeout=30)


class StorageClient:
    def __init__(self, client: 'SupabaseRestClient'):
        self.client = client

    def from_(self, bucket: str) -> StorageBucket:
        return StorageBucket(self.client, bucket)


class AuthClient:
    def __init__(self, client: 'SupabaseRestClient'):
        self.client = client

    def get_user(self) -> Optional[Dict]:
        """Return the signed-in user record, or None when anonymous."""
        if not self.client.access_token:
            return None
        try:
            response = requests.get(f"{self.client.url}/auth/v1/user",
                                    headers=self.client._get_headers(), timeout=10)
            if not response.ok:
                logger.warning(f"Auth lookup failed: HTTP {response.status_code}")
                return None
            return response.json()
        except requests.exceptions.RequestException as e:
            logger.warning(f"Auth lookup failed: {e}")
            return None

    def get_user_id(self) -> Optional[str]:
        user = self.get_user()
        return user.get("id") if user else None


class SupabaseRestClient:
    """Simple Supabase REST API client."""

    def __init__(self, url: str, key: str, access_token: Optional[str] = None):
        """
        Initialize the client.

        Args:
            url: Supabase project URL (e.g., https://xxx.supabase.co)
            key: Supabase anon key
            access_token: Signed-in user's JWT (row-level security), if any
        """
        self.url = url.rstrip("/")
        self.key = key
        self.access_token = access_token
        self.storage = StorageClient(self)
        self.auth = AuthClient(self)

    def _get_headers(self) -> Dict[str, str]:
        """Get headers for API requests."""
        return {
            "apikey": self.key,
            "Authorization": f"Bearer {self.access_token or self.key}",
            "Content-Type": "application/json",
        }

    def table(self, name: str) -> TableQuery:
        """Get a table query builder."""
        return TableQuery(self, name)

    def from_(self, name: str) -> TableQuery:
        return self.table(name)

    @property
    def realtime_url(self) -> str:
        """Websocket endpoint for Supabase Realtime."""
        ws_base = self.url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        return f"{ws_base}/realtime/v1/websocket?apikey={self.key}&vsn=1.0.0"

    def is_configured(self) -> bool:
        return bool(self.url and self.key)

    def test_connection(self) -> bool:
        """Test if the connection works."""
        try:
            url = f"{self.url}/rest/v1/"
            response = requests.get(url, headers=self._get_headers(), timeout=10)
            return response.status_code in (200, 404)  # 404 is ok, means API is reachable
        except requests.exceptions.RequestException:
            return False


def create_client(url: str, key: str, access_token: Optional[str] = None) -> SupabaseRestClient:
    """Create a Supabase REST client (drop-in replacement for supabase.create_client)."""
    return SupabaseRestClient(url, key, access_token)


_client: Optional[SupabaseRestClient] = None
_client_initialized = False
_client_lock = threading.Lock()


def get_client() -> SupabaseRestClient:
    """Get the shared client, creating it from user config on first use.

    Raises:
        SupabaseConfigError: if the project URL or anon key is missing.
    """
    global _client, _client_initialized
    with _client_lock:
        if not _client_initialized:
            from user_config import get_supabase_credentials, get_access_token

            url, key = get_supabase_credentials()
            if not url or not key:
                raise SupabaseConfigError(
                    "Supabase is not configured: set SUPABASE_URL and SUPABASE_ANON_KEY "
                    "or supabase_url/supabase_key in config.json"
                )
            _client = create_client(url, key, get_access_token())
            _client_initialized = True
            logger.info(f"Supabase client initialized for {_client.url}")
        return _client


def reset_client():
    """Drop the shared client (e.g. after sign-in/sign-out)."""
    global _client, _client_initialized
    with _client_lock:
        _client = None
        _client_initialized = False
