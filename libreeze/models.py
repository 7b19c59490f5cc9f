from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator


def _to_date(value: Any) -> Any:
    """Accept ISO dates, ISO timestamps and date/datetime objects; blank means None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    return value


DateValue = Annotated[Optional[date], BeforeValidator(_to_date)]


class Row(BaseModel):
    """Base for backend rows: unknown columns are dropped, missing ones rejected."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class LendingStatus(str, Enum):
    BORROWED = "borrowed"
    RETURNED = "returned"
    OVERDUE = "overdue"


# ------------------------- Auth ------------------------- #
class Identity(Row):
    id: str
    email: str | None = None
    display_name: str | None = None

    @classmethod
    def from_auth_user(cls, data: dict) -> "Identity":
        metadata = data.get("user_metadata") or {}
        return cls(
            id=data["id"],
            email=data.get("email"),
            display_name=metadata.get("full_name") or metadata.get("display_name"),
        )


class Session(Row):
    access_token: str
    refresh_token: str | None = None
    expires_at: int | None = None
    user: Identity

    @classmethod
    def from_auth_payload(cls, data: dict) -> "Session":
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=data.get("expires_at"),
            user=Identity.from_auth_user(data["user"]),
        )

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now


# ------------------------- Tables ------------------------- #
class Library(Row):
    id: str
    name: str
    address: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None


class Membership(Row):
    user_id: str
    library_id: str
    is_admin: bool = False
    member_since: datetime | None = None


class UserProfile(Row):
    id: str
    full_name: str | None = None
    email: str | None = None
    profile_photo_url: str | None = None


class Member(UserProfile):
    phone: str | None = None


class Book(Row):
    id: str
    title: str
    author: str | None = None
    isbn: str | None = None
    publisher: str | None = None
    cover_url: str | None = None
    description: str | None = None


class BookSummary(Row):
    id: str
    title: str
    author: str | None = None
    isbn: str | None = None


class _HoldingSummary(Row):
    id: str
    library_id: str | None = None
    book: BookSummary | None = Field(default=None, alias="books")


class LendingTransaction(Row):
    id: str
    user_id: str
    library_book_id: str | None = None
    borrowed_date: DateValue
    due_date: DateValue = None
    returned_date: DateValue = None
    status: LendingStatus
    holding: _HoldingSummary | None = Field(default=None, alias="library_books")
    member: UserProfile | None = Field(default=None, alias="users")

    @model_validator(mode="after")
    def _returned_date_matches_status(self) -> "LendingTransaction":
        if (self.returned_date is not None) != (self.status is LendingStatus.RETURNED):
            raise ValueError("returned_date must be set exactly when status is 'returned'")
        return self

    @property
    def book(self) -> BookSummary | None:
        return self.holding.book if self.holding else None


# ------------------------- Lending history join ------------------------- #
class _NamedRef(Row):
    name: str


class _AuthorLink(Row):
    author: _NamedRef | None = Field(default=None, alias="authors")


class _HistoryBook(Row):
    id: str
    title: str
    publisher: _NamedRef | None = Field(default=None, alias="publishers")
    author_links: List[_AuthorLink] = Field(default_factory=list, alias="book_authors")


class _HistoryHolding(Row):
    id: str
    library_id: str
    library: _NamedRef | None = Field(default=None, alias="libraries")
    book: _HistoryBook = Field(alias="books")


class LendingHistoryRow(Row):
    """One lending transaction as returned by the history join."""

    id: str
    user_id: str
    status: LendingStatus
    borrowed_date: DateValue
    due_date: DateValue = None
    returned_date: DateValue = None
    holding: _HistoryHolding = Field(alias="library_books")


# ------------------------- View projections ------------------------- #
class LendedBook(BaseModel):
    user_id: str

    library_id: str
    library_name: str
    library_book_id: str

    book_id: str
    book_title: str
    authors: str
    publisher: str

    lending_transaction_id: str
    status: LendingStatus
    borrow_date: date
    due_date: date | None = None
    returned_date: date | None = None

    @classmethod
    def from_history_row(cls, row: LendingHistoryRow) -> "LendedBook":
        holding = row.holding
        book = holding.book
        authors = ", ".join(link.author.name for link in book.author_links if link.author)
        return cls(
            user_id=row.user_id,
            library_id=holding.library_id,
            library_name=holding.library.name if holding.library else "",
            library_book_id=holding.id,
            book_id=book.id,
            book_title=book.title,
            authors=authors,
            publisher=book.publisher.name if book.publisher else "",
            lending_transaction_id=row.id,
            status=row.status,
            borrow_date=row.borrowed_date,
            due_date=row.due_date,
            returned_date=row.returned_date,
        )


class UserLibrary(BaseModel):
    user_id: str
    library_id: str
    library_name: str
    membership_type: str
    membership_start_date: datetime | None = None


class UploadFile(BaseModel):
    """A file picked for upload: original name, raw bytes and content type."""

    name: str
    content: bytes
    content_type: str = "application/octet-stream"

    @property
    def extension(self) -> str:
        return self.name.rsplit(".", 1)[-1] if "." in self.name else ""
