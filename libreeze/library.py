import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from libreeze.errors import BackendError, NotAuthenticated, NotFound
from libreeze.models import (
    Book,
    Identity,
    LendedBook,
    LendingHistoryRow,
    LendingStatus,
    LendingTransaction,
    Library,
    Member,
    Membership,
    Session,
    UploadFile,
    UserProfile,
)
from libreeze.services.backend import BackendClient, TableQuery

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

BOOK_SEARCH_FIELDS = ("title", "author", "isbn")
USER_SEARCH_FIELDS = ("full_name", "email")
CURRENT_STATUSES = (LendingStatus.BORROWED.value, LendingStatus.OVERDUE.value)

LENDING_SELECT = """
    *,
    library_books(id, library_id, books(id, title, author, isbn)),
    users(id, full_name, email)
"""

HISTORY_SELECT = """
    id, user_id, status, borrowed_date, due_date, returned_date,
    library_books(
        id, library_id,
        libraries(name),
        books(id, title, publishers(name), book_authors(authors(name)))
    )
"""


def _parse(model: Type[M], data: Any) -> M:
    """Validate one backend row; a row of the wrong shape is a backend failure."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise BackendError(f"Unexpected {model.__name__} data from backend: {e.error_count()} invalid field(s)") from e


def _parse_all(model: Type[M], rows: Optional[List[Any]]) -> List[M]:
    return [_parse(model, row) for row in rows or []]


class LibraryService:
    """Thin typed access to the backend: one method per backend operation.

    Failures surface as the errors in ``libreeze.errors``; nothing is retried.
    """

    def __init__(self, backend: BackendClient) -> None:
        self.backend = backend
        self.settings = backend.settings

    # ------------------------- Auth ------------------------- #
    async def sign_up(self, email: str, password: str, full_name: str) -> Optional[Identity]:
        """Register the account, then create its ``users`` profile row."""
        redirect_url = f"{self.settings.site_url.rstrip('/')}/auth/library-options"
        identity = await self.backend.auth.sign_up(
            email, password, full_name=full_name, redirect_to=redirect_url
        )
        if identity:
            await self.backend.table("users").insert(
                {"id": identity.id, "full_name": full_name, "email": email}
            ).execute()
        return identity

    async def sign_in(self, email: str, password: str) -> Session:
        return await self.backend.auth.sign_in_with_password(email, password)

    async def sign_out(self) -> None:
        await self.backend.auth.sign_out()

    async def get_token(self) -> Optional[str]:
        return await self.backend.auth.get_access_token()

    async def _require_token(self) -> str:
        token = await self.get_token()
        if not token:
            raise NotAuthenticated()
        return token

    # ------------------------- Libraries ------------------------- #
    async def create_library(self, admin_id: str, name: str, address: str, email: str,
                             phone: Optional[str] = None) -> Library:
        """Create a library and make ``admin_id`` its administrator."""
        rows = await self.backend.table("libraries").insert({
            "name": name,
            "address": address,
            "contact_email": email,
            "contact_phone": phone,
        }).select().execute()
        if not rows:
            raise BackendError("Library was not created")
        library = _parse(Library, rows[0])

        await self.backend.table("library_users").insert({
            "library_id": library.id,
            "user_id": admin_id,
            "is_admin": True,
            "member_since": datetime.now(timezone.utc).isoformat(),
        }).execute()
        return library

    async def get_library_by_id(self, library_id: str) -> Library:
        query = self.backend.table("libraries").select("*").eq("id", library_id)
        return await self._single(query, Library, f"Library {library_id} not found")

    async def get_user_libraries(self, user_id: str) -> List[Membership]:
        rows = await self.backend.table("library_users").select("*").eq("user_id", user_id).execute()
        return _parse_all(Membership, rows)

    # ------------------------- Books ------------------------- #
    async def get_books(self, search_term: str = "") -> List[Book]:
        query = self.backend.table("books").select("*").order("title")
        if search_term:
            query = query.ilike_any(BOOK_SEARCH_FIELDS, search_term)
        return _parse_all(Book, await query.execute())

    async def get_book_by_id(self, book_id: str) -> Book:
        query = self.backend.table("books").select("*").eq("id", book_id)
        return await self._single(query, Book, f"Book {book_id} not found")

    async def get_book_by_isbn(self, isbn: str) -> Optional[Book]:
        """Book with this ISBN, or None when the catalog has none."""
        try:
            data = await self.backend.table("books").select("*").eq("isbn", isbn).single().execute()
        except BackendError as e:
            if e.is_no_rows:
                return None
            raise
        return _parse(Book, data) if data else None

    async def add_book(self, book_data: Dict[str, Any]) -> Any:
        token = await self._require_token()
        return await self.backend.functions.invoke(
            "add-book", book_data, token, default_error="Failed to add book"
        )

    # ------------------------- Lending ------------------------- #
    async def get_lending_history(self, member_id: Optional[str] = None) -> List[LendingTransaction]:
        query = (
            self.backend.table("lending_transactions")
            .select(LENDING_SELECT)
            .order("borrowed_date", desc=True)
        )
        if member_id:
            query = query.eq("user_id", member_id)
        return _parse_all(LendingTransaction, await query.execute())

    async def get_current_borrowings(self, member_id: Optional[str] = None) -> List[LendingTransaction]:
        query = (
            self.backend.table("lending_transactions")
            .select(LENDING_SELECT)
            .in_("status", CURRENT_STATUSES)
        )
        if member_id:
            query = query.eq("user_id", member_id)
        return _parse_all(LendingTransaction, await query.execute())

    async def get_all_lending_history(self, user_id: str) -> List[LendedBook]:
        """Every transaction of ``user_id`` flattened for display, in backend order."""
        rows = await (
            self.backend.table("lending_transactions")
            .select(HISTORY_SELECT)
            .eq("user_id", user_id)
            .execute()
        )
        lended: List[LendedBook] = []
        for row in rows or []:
            history_row = _parse(LendingHistoryRow, row)
            try:
                lended.append(LendedBook.from_history_row(history_row))
            except ValidationError as e:
                raise BackendError(f"Incomplete lending record {history_row.id}") from e
        return lended

    async def lend_book(self, book_id: str, member_id: str, due_date: Union[date, str]) -> Any:
        token = await self._require_token()
        due = due_date.isoformat() if isinstance(due_date, date) else due_date
        return await self.backend.functions.invoke(
            "lend-book",
            {"book_id": book_id, "member_id": member_id, "due_date": due},
            token,
            default_error="Failed to lend book",
        )

    async def return_book(self, transaction_id: str) -> Any:
        token = await self._require_token()
        return await self.backend.functions.invoke(
            "return-book", {"transaction_id": transaction_id}, token,
            default_error="Failed to return book",
        )

    # ------------------------- Users & members ------------------------- #
    async def get_users(self, search_term: str = "") -> List[UserProfile]:
        query = self.backend.table("users").select("*").order("full_name")
        if search_term:
            query = query.ilike_any(USER_SEARCH_FIELDS, search_term)
        return _parse_all(UserProfile, await query.execute())

    async def get_user_by_id(self, user_id: str) -> UserProfile:
        query = self.backend.table("users").select("*").eq("id", user_id)
        return await self._single(query, UserProfile, f"User {user_id} not found")

    async def update_user_profile(self, user_id: str, profile_data: Dict[str, Any]) -> UserProfile:
        query = self.backend.table("users").update(profile_data).eq("id", user_id).select()
        return await self._single(query, UserProfile, f"User {user_id} not found")

    async def get_member_by_id(self, member_id: str) -> Member:
        query = self.backend.table("members").select("*").eq("id", member_id)
        return await self._single(query, Member, f"Member {member_id} not found")

    async def update_member_profile(self, member_id: str, profile_data: Dict[str, Any]) -> Member:
        query = self.backend.table("members").update(profile_data).eq("id", member_id).select()
        return await self._single(query, Member, f"Member {member_id} not found")

    # ------------------------- Storage ------------------------- #
    async def upload_book_cover(self, file: UploadFile, isbn: str) -> str:
        return await self._upload("book-covers", isbn, file)

    async def upload_profile_photo(self, file: UploadFile, user_id: str) -> str:
        return await self._upload("profile-photos", user_id, file)

    async def _upload(self, folder: str, identifier: str, file: UploadFile) -> str:
        name = f"{identifier}.{file.extension}" if file.extension else identifier
        path = f"{folder}/{name}"
        bucket = self.backend.storage()
        await bucket.upload(path, file.content, file.content_type, upsert=True)
        return bucket.get_public_url(path)

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    async def _single(query: TableQuery, model: Type[M], not_found: str) -> M:
        try:
            data = await query.single().execute()
        except BackendError as e:
            if e.is_no_rows:
                raise NotFound(not_found) from e
            raise
        if data is None:
            raise NotFound(not_found)
        return _parse(model, data)
