import logging
import re
from typing import Any, Iterable, List, Optional, Tuple
from urllib.parse import quote

import httpx

from libreeze.config import Settings, settings as default_settings
from libreeze.errors import BackendError, NetworkError
from libreeze.services.auth import AuthClient
from libreeze.services.http_client import BackendHTTPClient, error_message

logger = logging.getLogger(__name__)

SINGLE_OBJECT = "application/vnd.pgrst.object+json"


def _quote(value: Any) -> str:
    """Double-quote a filter value so commas, dots and parentheses survive."""
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


_LIKE_SPECIAL = re.compile(r"([\\%_*])")


def _escape_like(term: str) -> str:
    """Backslash-escape LIKE wildcards so the term matches literally."""
    return _LIKE_SPECIAL.sub(r"\\\1", term)


def _format(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class TableQuery:
    """Chained request against one table: build with filters, then ``await execute()``."""

    def __init__(self, backend: "BackendClient", table: str) -> None:
        self._backend = backend
        self._table = table
        self._method = "GET"
        self._params: List[Tuple[str, str]] = []
        self._body: Any = None
        self._single = False

    def select(self, columns: str = "*") -> "TableQuery":
        self._params.append(("select", "".join(columns.split())))
        return self

    def insert(self, values: Any) -> "TableQuery":
        self._method = "POST"
        self._body = values
        return self

    def update(self, values: dict) -> "TableQuery":
        self._method = "PATCH"
        self._body = values
        return self

    def eq(self, column: str, value: Any) -> "TableQuery":
        self._params.append((column, f"eq.{_format(value)}"))
        return self

    def in_(self, column: str, values: Iterable[Any]) -> "TableQuery":
        joined = ",".join(_quote(_format(v)) for v in values)
        self._params.append((column, f"in.({joined})"))
        return self

    def ilike_any(self, columns: Iterable[str], term: str) -> "TableQuery":
        """Case-insensitive "contains" match of ``term`` against any of ``columns``."""
        pattern = _quote(f"%{_escape_like(term)}%")
        self._params.append(("or", "(" + ",".join(f"{c}.ilike.{pattern}" for c in columns) + ")"))
        return self

    def order(self, column: str, desc: bool = False) -> "TableQuery":
        self._params.append(("order", f"{column}.{'desc' if desc else 'asc'}"))
        return self

    def single(self) -> "TableQuery":
        self._single = True
        return self

    async def execute(self) -> Any:
        http = self._backend.http
        token = await self._backend.auth.get_access_token()
        headers = http.auth_headers(token)
        if self._single:
            headers["Accept"] = SINGLE_OBJECT
        if self._method != "GET":
            headers["Prefer"] = "return=representation"

        resp = await http.request(
            self._method,
            f"/rest/v1/{self._table}",
            params=self._params,
            json=self._body,
            headers=headers,
        )
        if resp.is_error:
            raise self._error(resp)
        if resp.status_code == 204 or not resp.content:
            return None if self._single else []
        return resp.json()

    def _error(self, resp: httpx.Response) -> BackendError:
        code = None
        try:
            payload = resp.json()
            if isinstance(payload, dict):
                code = payload.get("code")
        except ValueError:
            pass
        return BackendError(error_message(resp, f"Request on '{self._table}' failed"), code=code)


class StorageBucket:
    def __init__(self, backend: "BackendClient", bucket: str) -> None:
        self._backend = backend
        self.bucket = bucket

    async def upload(self, path: str, content: bytes, content_type: str, upsert: bool = False) -> str:
        http = self._backend.http
        headers = http.auth_headers(await self._backend.auth.get_access_token())
        headers["Content-Type"] = content_type
        headers["x-upsert"] = "true" if upsert else "false"
        logger.debug("Uploading %s to bucket %s", path, self.bucket)
        resp = await http.post(f"/storage/v1/object/{self.bucket}/{path}", content=content, headers=headers)
        if resp.is_error:
            raise BackendError(error_message(resp, "Upload failed"), code=str(resp.status_code))
        return path

    def get_public_url(self, path: str) -> str:
        # No existence check: the URL is derived, not fetched
        base = self._backend.settings.backend_url.rstrip("/")
        return f"{base}/storage/v1/object/public/{self.bucket}/{quote(path)}"


class FunctionsClient:
    def __init__(self, http: BackendHTTPClient) -> None:
        self._http = http

    async def invoke(self, name: str, body: dict, token: str, default_error: str) -> Any:
        """POST ``body`` to a remote function; non-2xx raises NetworkError."""
        resp = await self._http.post(
            f"/functions/v1/{name}", json=body, headers=self._http.auth_headers(token)
        )
        if resp.is_error:
            message = default_error
            try:
                payload = resp.json()
                if isinstance(payload, dict) and payload.get("error"):
                    message = str(payload["error"])
            except ValueError:
                pass
            raise NetworkError(message, status_code=resp.status_code)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise NetworkError(f"Malformed response from {name}", status_code=resp.status_code) from e


class BackendClient:
    """Entry point to the hosted backend: auth, tables, storage and functions."""

    def __init__(self, config: Optional[Settings] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = config or default_settings
        self.http = BackendHTTPClient(self.settings, transport=transport)
        session_file = self.settings.session_file if self.settings.persist_session else None
        self.auth = AuthClient(self.http, session_file=session_file)
        self.functions = FunctionsClient(self.http)

    def table(self, name: str) -> TableQuery:
        return TableQuery(self, name)

    def storage(self, bucket: Optional[str] = None) -> StorageBucket:
        return StorageBucket(self, bucket or self.settings.storage_bucket)

    async def close(self) -> None:
        await self.http.close()
