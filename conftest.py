import asyncio
import json
import re
import time
import uuid
from datetime import date
from typing import Any, Dict, List, Optional

import httpx
import pytest

from libreeze.config import Settings
from libreeze.library import LibraryService
from libreeze.services.backend import BackendClient
from libreeze.session import SessionStore

BACKEND_URL = "http://backend.test"
ANON_KEY = "anon-test-key"
SINGLE_OBJECT = "application/vnd.pgrst.object+json"

TABLES = (
    "users", "members", "libraries", "library_users", "books", "library_books",
    "publishers", "authors", "book_authors", "lending_transactions",
)

_QUOTED_OR_BARE = re.compile(r'"((?:[^"\\]|\\.)*)"|([^,]+)')
_ILIKE = re.compile(r'(\w+)\.ilike\."((?:[^"\\]|\\.)*)"')


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = dict(
        backend_url=BACKEND_URL,
        backend_anon_key=ANON_KEY,
        storage_bucket="libreeze",
        site_url="http://client.test",
        session_file=None,
        persist_session=False,
    )
    values.update(overrides)
    return Settings(**values)


def _unescape(text: str) -> str:
    return text.replace('\\"', '"').replace("\\\\", "\\")


def _like_term(pattern: str) -> str:
    """Literal text inside a quoted ``%term%`` pattern, with LIKE escapes removed."""
    return re.sub(r"\\(.)", r"\1", _unescape(pattern)[1:-1])


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


class FakeBackend:
    """In-memory stand-in for the hosted backend, served through httpx.MockTransport.

    Understands the subset of the auth, table, storage and function endpoints
    the client uses. Every request is kept in ``requests`` for assertions.
    """

    def __init__(self) -> None:
        self.tables: Dict[str, List[dict]] = {name: [] for name in TABLES}
        self.accounts: Dict[str, dict] = {}
        self.tokens: Dict[str, str] = {}
        self.refresh_tokens: Dict[str, str] = {}
        self.objects: Dict[str, tuple] = {}
        self.failing_tables: set = set()
        self.requests: List[httpx.Request] = []
        self.transport = httpx.MockTransport(self.handle)

    # ------------------------- Seeding ------------------------- #
    def client(self, config: Optional[Settings] = None) -> BackendClient:
        return BackendClient(config or make_settings(), transport=self.transport)

    def add_account(self, email: str, password: str, full_name: Optional[str] = None,
                    profile: bool = True) -> dict:
        user = {
            "id": str(uuid.uuid4()),
            "email": email,
            "user_metadata": {"full_name": full_name} if full_name else {},
        }
        self.accounts[email] = {"password": password, "user": user}
        if profile:
            self.seed("users", {"id": user["id"], "full_name": full_name, "email": email})
        return user

    def seed(self, table: str, *rows: dict) -> List[dict]:
        stored = []
        for row in rows:
            row = dict(row)
            row.setdefault("id", str(uuid.uuid4()))
            self.tables[table].append(row)
            stored.append(row)
        return stored

    def seed_catalog(self) -> Dict[str, Any]:
        """A library with three books, two linked authors and one publisher."""
        library, = self.seed("libraries", {"id": "lib-1", "name": "Central Library",
                                           "address": "1 Main St", "contact_email": "desk@central.test"})
        publisher, = self.seed("publishers", {"id": "pub-1", "name": "Penguin"})
        books = self.seed(
            "books",
            {"id": "book-1", "title": "Dune", "author": "Frank Herbert",
             "isbn": "9780441013593", "publisher_id": "pub-1"},
            {"id": "book-2", "title": "Good Omens", "author": "Terry Pratchett, Neil Gaiman",
             "isbn": "9780060853983", "publisher_id": "pub-1"},
            {"id": "book-3", "title": "Brave New World", "author": "Aldous Huxley",
             "isbn": "9780060850524"},
        )
        self.seed("authors", {"id": "auth-1", "name": "Terry Pratchett"},
                  {"id": "auth-2", "name": "Neil Gaiman"}, {"id": "auth-3", "name": "Frank Herbert"})
        self.seed("book_authors",
                  {"book_id": "book-2", "author_id": "auth-1"},
                  {"book_id": "book-2", "author_id": "auth-2"},
                  {"book_id": "book-1", "author_id": "auth-3"})
        holdings = self.seed(
            "library_books",
            *({"id": f"lb-{b['id']}", "library_id": "lib-1", "book_id": b["id"]} for b in books),
        )
        return {"library": library, "publisher": publisher, "books": books, "holdings": holdings}

    def add_membership(self, user_id: str, library_id: str = "lib-1", is_admin: bool = False) -> dict:
        row, = self.seed("library_users", {"user_id": user_id, "library_id": library_id,
                                           "is_admin": is_admin,
                                           "member_since": "2024-01-15T10:00:00+00:00"})
        return row

    def requests_to(self, prefix: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.startswith(prefix)]

    # ------------------------- Dispatch ------------------------- #
    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.startswith("/auth/v1/"):
            return self._auth(request, path[len("/auth/v1/"):])
        if path.startswith("/rest/v1/"):
            return self._rest(request, path[len("/rest/v1/"):])
        if path.startswith("/storage/v1/object/"):
            return self._storage(request, path[len("/storage/v1/object/"):])
        if path.startswith("/functions/v1/"):
            return self._function(request, path[len("/functions/v1/"):])
        return httpx.Response(404, json={"message": f"No route for {path}"})

    @staticmethod
    def _body(request: httpx.Request) -> Any:
        return json.loads(request.content) if request.content else None

    def _caller(self, request: httpx.Request) -> Optional[str]:
        header = request.headers.get("Authorization", "")
        token = header[len("Bearer "):] if header.startswith("Bearer ") else ""
        return self.tokens.get(token)

    # ------------------------- Auth ------------------------- #
    def _issue_session(self, user: dict) -> dict:
        access_token = f"access-{uuid.uuid4().hex}"
        refresh_token = f"refresh-{uuid.uuid4().hex}"
        self.tokens[access_token] = user["id"]
        self.refresh_tokens[refresh_token] = user["email"]
        return {
            "access_token": access_token,
            "token_type": "bearer",
            "expires_in": 3600,
            "expires_at": int(time.time()) + 3600,
            "refresh_token": refresh_token,
            "user": user,
        }

    def _auth(self, request: httpx.Request, endpoint: str) -> httpx.Response:
        if endpoint == "signup":
            body = self._body(request)
            if body["email"] in self.accounts:
                return httpx.Response(422, json={"code": 422, "msg": "User already registered"})
            user = self.add_account(body["email"], body["password"],
                                    (body.get("data") or {}).get("full_name"), profile=False)
            return httpx.Response(200, json=user)

        if endpoint == "token":
            grant = request.url.params.get("grant_type")
            body = self._body(request)
            if grant == "password":
                account = self.accounts.get(body.get("email"))
                if account is None or account["password"] != body.get("password"):
                    return httpx.Response(400, json={"error": "invalid_grant",
                                                     "error_description": "Invalid login credentials"})
                return httpx.Response(200, json=self._issue_session(account["user"]))
            if grant == "refresh_token":
                email = self.refresh_tokens.pop(body.get("refresh_token"), None)
                if email is None:
                    return httpx.Response(400, json={"error": "invalid_grant",
                                                     "error_description": "Invalid Refresh Token"})
                return httpx.Response(200, json=self._issue_session(self.accounts[email]["user"]))
            return httpx.Response(400, json={"error": "unsupported_grant_type"})

        if endpoint == "logout":
            header = request.headers.get("Authorization", "")
            self.tokens.pop(header[len("Bearer "):], None)
            return httpx.Response(204)

        return httpx.Response(404, json={"msg": f"Unknown auth endpoint {endpoint}"})

    # ------------------------- Tables ------------------------- #
    def _rest(self, request: httpx.Request, table: str) -> httpx.Response:
        if table in self.failing_tables:
            return httpx.Response(500, json={"code": "XX000", "message": f"{table} is unavailable"})
        if table not in self.tables:
            return httpx.Response(404, json={"code": "42P01",
                                             "message": f'relation "{table}" does not exist'})

        params = request.url.params
        rows = [row for row in self.tables[table] if self._matches(row, params)]

        if request.method == "POST":
            body = self._body(request)
            payload = body if isinstance(body, list) else [body]
            rows = self.seed(table, *payload)
        elif request.method == "PATCH":
            for row in rows:
                row.update(self._body(request))

        result = [self._embed(table, row) for row in rows]
        for key, value in params.multi_items():
            if key == "order":
                column, _, direction = value.partition(".")
                result.sort(key=lambda r: _as_text(r.get(column)), reverse=direction == "desc")

        if request.headers.get("Accept") == SINGLE_OBJECT:
            if len(result) != 1:
                return httpx.Response(406, json={
                    "code": "PGRST116",
                    "details": f"The result contains {len(result)} rows",
                    "message": "JSON object requested, multiple (or no) rows returned",
                })
            return httpx.Response(200, json=result[0])
        return httpx.Response(201 if request.method == "POST" else 200, json=result)

    @staticmethod
    def _matches(row: dict, params: httpx.QueryParams) -> bool:
        for key, value in params.multi_items():
            if key in ("select", "order"):
                continue
            if key == "or":
                conditions = _ILIKE.findall(value[1:-1])
                if not any(
                    _like_term(pattern).lower() in _as_text(row.get(column)).lower()
                    for column, pattern in conditions
                ):
                    return False
            elif value.startswith("eq."):
                if _as_text(row.get(key)) != value[3:]:
                    return False
            elif value.startswith("in.("):
                allowed = [_unescape(quoted) if quoted else bare
                           for quoted, bare in _QUOTED_OR_BARE.findall(value[4:-1])]
                if _as_text(row.get(key)) not in allowed:
                    return False
        return True

    def _find(self, table: str, row_id: Any) -> Optional[dict]:
        return next((r for r in self.tables[table] if r.get("id") == row_id), None)

    def _embed(self, table: str, row: dict) -> dict:
        if table != "lending_transactions":
            return dict(row)
        embedded = dict(row)
        holding = self._find("library_books", row.get("library_book_id"))
        if holding is not None:
            book = self._find("books", holding["book_id"]) or {}
            library = self._find("libraries", holding["library_id"])
            publisher = self._find("publishers", book.get("publisher_id"))
            author_links = [
                {"authors": {"name": author["name"]}}
                for link in self.tables["book_authors"] if link["book_id"] == book.get("id")
                for author in [self._find("authors", link["author_id"])] if author
            ]
            embedded["library_books"] = {
                "id": holding["id"],
                "library_id": holding["library_id"],
                "libraries": {"name": library["name"]} if library else None,
                "books": dict(book, publishers={"name": publisher["name"]} if publisher else None,
                              book_authors=author_links),
            }
        else:
            embedded["library_books"] = None
        user = self._find("users", row.get("user_id"))
        embedded["users"] = dict(user) if user else None
        return embedded

    # ------------------------- Storage ------------------------- #
    def _storage(self, request: httpx.Request, key: str) -> httpx.Response:
        if key in self.objects and request.headers.get("x-upsert") != "true":
            return httpx.Response(400, json={"statusCode": "409", "error": "Duplicate",
                                             "message": "The resource already exists"})
        self.objects[key] = (request.content, request.headers.get("Content-Type"))
        return httpx.Response(200, json={"Key": key})

    # ------------------------- Functions ------------------------- #
    def _function(self, request: httpx.Request, name: str) -> httpx.Response:
        if self._caller(request) is None:
            return httpx.Response(401, json={"error": "Invalid JWT"})
        body = self._body(request) or {}
        today = date.today().isoformat()

        if name == "add-book":
            if any(b.get("isbn") == body.get("isbn") for b in self.tables["books"]):
                return httpx.Response(409, json={"error": "Book with this ISBN already exists"})
            book, = self.seed("books", body)
            return httpx.Response(200, json={"book": book})

        if name == "lend-book":
            holding = self._find("library_books", body.get("book_id"))
            if holding is None:
                return httpx.Response(404, json={"error": "Book not found"})
            if any(t["library_book_id"] == holding["id"] and t["status"] != "returned"
                   for t in self.tables["lending_transactions"]):
                return httpx.Response(409, json={"error": "Book is already lent out"})
            transaction, = self.seed("lending_transactions", {
                "library_book_id": holding["id"],
                "user_id": body.get("member_id"),
                "borrowed_date": today,
                "due_date": body.get("due_date"),
                "returned_date": None,
                "status": "borrowed",
            })
            return httpx.Response(200, json={"transaction": transaction})

        if name == "return-book":
            transaction = self._find("lending_transactions", body.get("transaction_id"))
            if transaction is None:
                return httpx.Response(404, json={"error": "Transaction not found"})
            if transaction["status"] == "returned":
                return httpx.Response(400, json={"error": "Book already returned"})
            transaction.update(status="returned", returned_date=today)
            return httpx.Response(200, json={"transaction": transaction})

        return httpx.Response(404, json={"error": f"Function {name} not found"})


# ------------------------- Fixtures ------------------------- #
@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def test_settings():
    return make_settings()


@pytest.fixture
def backend(fake_backend, test_settings):
    client = fake_backend.client(test_settings)
    yield client
    asyncio.run(client.close())


@pytest.fixture
def service(backend):
    return LibraryService(backend)


@pytest.fixture
def store(backend):
    return SessionStore(backend)


@pytest.fixture
def catalog(fake_backend):
    return fake_backend.seed_catalog()


@pytest.fixture
def reader(fake_backend):
    """A signed-up account with a profile and no memberships."""
    user = fake_backend.add_account("reader@example.com", "secret123", "Rita Reader")
    return {"email": "reader@example.com", "password": "secret123", "user": user}


@pytest.fixture
def admin(fake_backend, catalog):
    """An account that administers the catalog's library."""
    user = fake_backend.add_account("admin@example.com", "adminpass", "Ada Admin")
    fake_backend.add_membership(user["id"], catalog["library"]["id"], is_admin=True)
    return {"email": "admin@example.com", "password": "adminpass", "user": user}
