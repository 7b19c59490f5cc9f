"""View state for each screen.

A view calls the data service, keeps what it needs to render, and turns
failures into a human-readable ``error``. Navigation requests go to the
view's navigator.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel

from libreeze.errors import LibreezeError
from libreeze.guards import DASHBOARD_PATH, LOGIN_PATH, REDIRECT_URL_KEY, Navigator
from libreeze.library import LibraryService
from libreeze.models import (
    Book,
    Identity,
    LendedBook,
    LendingStatus,
    LendingTransaction,
    UploadFile,
    UserLibrary,
    UserProfile,
)
from libreeze.session import SessionStore
from libreeze.validators import FormValidator, ISBNValidator

logger = logging.getLogger(__name__)

# Failures a view reports instead of raising
VIEW_ERRORS = (LibreezeError, httpx.HTTPError)


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_dump(v) for v in value]
    return value


def _is_local_path(url: Optional[str]) -> bool:
    """Only same-site paths are followed after login."""
    return bool(url) and url.startswith("/") and not url.startswith("//") and "\\" not in url


class View:
    def __init__(self, service: LibraryService, store: SessionStore, navigator: Navigator) -> None:
        self.service = service
        self.store = store
        self.navigator = navigator
        self.loading = False
        self.submitted = False
        self.error = ""
        self.form_errors: Dict[str, str] = {}
        self.failure: Optional[Exception] = None
        self._subscriptions: List[Callable[[], None]] = []

    def dispose(self) -> None:
        """Drop every session subscription this view holds."""
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions.clear()

    def _fail(self, exc: Exception, default: str) -> None:
        self.failure = exc
        self.error = getattr(exc, "message", None) or str(exc) or default

    def _state(self) -> Dict[str, Any]:
        return {}

    def state(self) -> Dict[str, Any]:
        snapshot = {
            "loading": self.loading,
            "submitted": self.submitted,
            "error": self.error,
            "form_errors": self.form_errors,
        }
        snapshot.update({k: _dump(v) for k, v in self._state().items()})
        return snapshot


# ------------------------- Auth screens ------------------------- #
class LoginView(View):
    async def init(self) -> None:
        redirect_url = self.navigator.session_storage.get(REDIRECT_URL_KEY)
        if redirect_url:
            logger.info("Redirect URL found: %s", redirect_url)

    async def submit(self, email: str, password: str) -> bool:
        self.submitted = True
        self.form_errors = FormValidator.validate_login(email, password)
        if self.form_errors:
            return False

        self.loading = True
        self.error = ""
        try:
            await self.service.sign_in(email, password)
        except VIEW_ERRORS as e:
            self._fail(e, "Login failed. Please check your credentials.")
            self.loading = False
            return False

        redirect_url = self.navigator.session_storage.pop(REDIRECT_URL_KEY, None)
        if not _is_local_path(redirect_url):
            redirect_url = DASHBOARD_PATH
        self.navigator.navigate_by_url(redirect_url)
        return True


class RegisterView(View):
    async def submit(self, full_name: str, email: str, password: str, confirm_password: str) -> bool:
        self.submitted = True
        self.form_errors = FormValidator.validate_register(full_name, email, password, confirm_password)
        if self.form_errors:
            return False

        self.loading = True
        self.error = ""
        try:
            await self.service.sign_up(email, password, full_name)
        except VIEW_ERRORS as e:
            self._fail(e, "Registration failed. Please try again.")
            self.loading = False
            return False

        self.navigator.navigate("/auth/check-email")
        return True


class LibraryOptionsView(View):
    """Shown after e-mail confirmation: create a library or ask an admin to join one."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.user_id = ""
        self.user_email = ""
        self.show_library_form = False
        self.show_admin_message = False
        self.library: Optional[Any] = None

    async def init(self) -> None:
        self._subscriptions.append(self.store.user.subscribe(self._on_user))

    def _on_user(self, user: Optional[Identity]) -> None:
        if user:
            self.user_id = user.id
            self.user_email = user.email or ""
        else:
            self.navigator.navigate("/auth/register")

    def show_create_library_form(self) -> None:
        self.show_library_form = True
        self.show_admin_message = False

    def show_contact_admin_message(self) -> None:
        self.show_library_form = False
        self.show_admin_message = True

    async def create_library(self, name: str, address: str, contact_email: Optional[str] = None,
                             contact_phone: Optional[str] = None) -> bool:
        self.submitted = True
        contact_email = contact_email or self.user_email
        self.form_errors = FormValidator.validate_library(name, address, contact_email)
        if self.form_errors:
            return False

        self.loading = True
        self.error = ""
        try:
            self.library = await self.service.create_library(
                self.user_id, name, address, contact_email, contact_phone or None
            )
        except VIEW_ERRORS as e:
            self._fail(e, "Failed to create library. Please try again.")
            return False
        finally:
            self.loading = False

        self.navigator.navigate(DASHBOARD_PATH, {"libraryCreated": "true", "libraryName": name})
        return True

    def _state(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "user_email": self.user_email,
            "show_library_form": self.show_library_form,
            "show_admin_message": self.show_admin_message,
            "library": self.library,
        }


class ProfileView(View):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.user_id = ""
        self.full_name = ""
        self.email = ""
        self.profile_photo_url = ""
        self.update_success = False
        self.user_libraries: List[UserLibrary] = []
        self.current_borrowings: List[LendingTransaction] = []
        self.lending_history: List[LendingTransaction] = []
        self.loading_history = False

    async def init(self) -> None:
        user = self.store.user.value
        if not user:
            return
        self.user_id = user.id
        await self.load_user_profile()
        await self.load_user_library_data()
        await self.load_borrowing_history()

    async def load_user_profile(self) -> None:
        self.loading = True
        try:
            profile = await self.service.get_user_by_id(self.user_id)
            self.full_name = profile.full_name or ""
            self.email = profile.email or ""
            if profile.profile_photo_url:
                self.profile_photo_url = profile.profile_photo_url
        except VIEW_ERRORS as e:
            self._fail(e, "Failed to load profile")
        finally:
            self.loading = False

    async def load_user_library_data(self) -> None:
        try:
            memberships = await self.service.get_user_libraries(self.user_id)
            libraries = []
            for membership in memberships:
                library = await self.service.get_library_by_id(membership.library_id)
                libraries.append(UserLibrary(
                    user_id=self.user_id,
                    library_id=membership.library_id,
                    library_name=library.name,
                    membership_type="Administrator" if membership.is_admin else "Reader",
                    membership_start_date=membership.member_since,
                ))
            self.user_libraries = libraries
        except VIEW_ERRORS as e:
            logger.error("Error loading user library data: %s", e)
            self._fail(e, "Failed to load libraries")

    async def load_borrowing_history(self) -> None:
        self.loading_history = True
        try:
            self.current_borrowings = await self.service.get_current_borrowings(self.user_id)
            history = await self.service.get_lending_history(self.user_id)
            self.lending_history = [t for t in history if t.status is LendingStatus.RETURNED]
        except VIEW_ERRORS as e:
            logger.error("Error loading borrowing history: %s", e)
            self._fail(e, "Failed to load borrowing history")
        finally:
            self.loading_history = False

    async def upload_profile_photo(self, file: UploadFile) -> bool:
        if not self.user_id:
            return False
        self.loading = True
        self.error = ""
        try:
            photo_url = await self.service.upload_profile_photo(file, self.user_id)
            await self.service.update_user_profile(self.user_id, {"profile_photo_url": photo_url})
        except VIEW_ERRORS as e:
            self._fail(e, "Failed to upload profile photo")
            return False
        finally:
            self.loading = False
        self.profile_photo_url = photo_url
        self.update_success = True
        return True

    async def update_profile(self, full_name: str) -> bool:
        self.submitted = True
        self.update_success = False
        self.form_errors = {} if FormValidator.required(full_name) else {"full_name": "required"}
        if self.form_errors:
            return False

        self.loading = True
        self.error = ""
        try:
            profile = await self.service.update_user_profile(self.user_id, {"full_name": full_name})
        except VIEW_ERRORS as e:
            self._fail(e, "Failed to update profile")
            return False
        finally:
            self.loading = False
        self.full_name = profile.full_name or full_name
        self.update_success = True
        return True

    def _state(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "full_name": self.full_name,
            "email": self.email,
            "profile_photo_url": self.profile_photo_url,
            "update_success": self.update_success,
            "user_libraries": self.user_libraries,
            "current_borrowings": self.current_borrowings,
            "lending_history": self.lending_history,
            "loading_history": self.loading_history,
        }


# ------------------------- Dashboard ------------------------- #
class DashboardView(View):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.user: Optional[Identity] = None
        self.user_profile: Optional[UserProfile] = None
        self.is_admin = False
        self.lended_books: List[LendedBook] = []
        self.current_borrowings: List[LendedBook] = []
        self.overdue_books: List[LendedBook] = []
        self.total_borrowed = 0

    async def init(self) -> None:
        self._subscriptions.append(self.store.user.subscribe(self._on_user))
        self._subscriptions.append(self.store.is_admin.subscribe(self._on_admin))
        if self.user:
            await self.load_user_profile(self.user.id)
            await self.load_borrowing_stats(self.user.id)

    def _on_user(self, user: Optional[Identity]) -> None:
        if user:
            self.user = user

    def _on_admin(self, is_admin: bool) -> None:
        self.is_admin = is_admin

    async def load_user_profile(self, user_id: str) -> None:
        try:
            self.user_profile = await self.service.get_user_by_id(user_id)
        except VIEW_ERRORS as e:
            logger.error("Error loading user profile: %s", e)
            self._fail(e, "Failed to load profile")

    async def load_borrowing_stats(self, user_id: str) -> None:
        self.loading = True
        try:
            self.lended_books = await self.service.get_all_lending_history(user_id)
            self.total_borrowed = len(self.lended_books)
            self.current_borrowings = [
                b for b in self.lended_books
                if b.status in (LendingStatus.BORROWED, LendingStatus.OVERDUE)
            ]
            self.overdue_books = [b for b in self.lended_books if b.status is LendingStatus.OVERDUE]
        except VIEW_ERRORS as e:
            logger.error("Error loading borrowing stats: %s", e)
            self._fail(e, "Failed to load borrowing stats")
        finally:
            self.loading = False

    async def logout(self) -> None:
        try:
            await self.service.sign_out()
        except VIEW_ERRORS as e:
            logger.error("Error during logout: %s", e)
            self._fail(e, "Logout failed")
            return
        self.navigator.navigate(LOGIN_PATH)

    def _state(self) -> Dict[str, Any]:
        return {
            "user": self.user,
            "user_profile": self.user_profile,
            "is_admin": self.is_admin,
            "lended_books": self.lended_books,
            "current_borrowings": self.current_borrowings,
            "overdue_books": self.overdue_books,
            "total_borrowed": self.total_borrowed,
        }


# ------------------------- Books ------------------------- #
class BookListView(View):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.search_term = ""
        self.books: List[Book] = []

    async def search(self, search_term: str = "") -> None:
        self.search_term = search_term
        self.loading = True
        self.error = ""
        try:
            self.books = await self.service.get_books(search_term)
        except VIEW_ERRORS as e:
            self._fail(e, "Failed to load books")
        finally:
            self.loading = False

    def _state(self) -> Dict[str, Any]:
        return {"search_term": self.search_term, "books": self.books}


class BookDetailsView(View):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.book: Optional[Book] = None

    async def load(self, book_id: str) -> None:
        self.loading = True
        try:
            self.book = await self.service.get_book_by_id(book_id)
        except VIEW_ERRORS as e:
            self._fail(e, "Failed to load book")
        finally:
            self.loading = False

    def _state(self) -> Dict[str, Any]:
        return {"book": self.book}


class AddBookView(View):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.existing_book: Optional[Book] = None
        self.added: Any = None

    async def check_isbn(self, isbn: str) -> Optional[Book]:
        """Look the ISBN up so the form can warn before submitting a duplicate."""
        normalized = ISBNValidator.normalize_isbn(isbn)
        self.existing_book = None
        if not ISBNValidator.is_valid_isbn(normalized):
            self.form_errors = {"isbn": "invalid"}
            return None
        try:
            self.existing_book = await self.service.get_book_by_isbn(normalized)
        except VIEW_ERRORS as e:
            self._fail(e, "Failed to look up ISBN")
        return self.existing_book

    async def submit(self, isbn: str, title: str, author: str = "", publisher: str = "",
                     description: str = "", cover: Optional[UploadFile] = None) -> bool:
        self.submitted = True
        self.error = ""
        normalized = ISBNValidator.normalize_isbn(isbn)
        self.form_errors = {}
        if not ISBNValidator.is_valid_isbn(normalized):
            self.form_errors["isbn"] = "invalid"
        if not FormValidator.required(title):
            self.form_errors["title"] = "required"
        if self.form_errors:
            return False

        if await self.check_isbn(normalized):
            self.error = f"A book with ISBN {normalized} already exists."
            return False
        if self.error:
            return False

        self.loading = True
        try:
            book_data: Dict[str, Any] = {
                "isbn": normalized,
                "title": title.strip(),
                "author": author.strip() or None,
                "publisher": publisher.strip() or None,
                "description": description.strip() or None,
            }
            if cover is not None:
                book_data["cover_url"] = await self.service.upload_book_cover(cover, normalized)
            self.added = await self.service.add_book(book_data)
        except VIEW_ERRORS as e:
            self._fail(e, "Failed to add book")
            return False
        finally:
            self.loading = False

        self.navigator.navigate("/books")
        return True

    def _state(self) -> Dict[str, Any]:
        return {"existing_book": self.existing_book, "added": self.added}


# ------------------------- Lending (admin) ------------------------- #
class LendBookView(View):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.members: List[UserProfile] = []
        self.books: List[Book] = []
        self.success = False
        self.result: Any = None

    async def search_members(self, search_term: str = "") -> None:
        try:
            self.members = await self.service.get_users(search_term)
        except VIEW_ERRORS as e:
            self._fail(e, "Failed to load members")

    async def search_books(self, search_term: str = "") -> None:
        try:
            self.books = await self.service.get_books(search_term)
        except VIEW_ERRORS as e:
            self._fail(e, "Failed to load books")

    async def lend(self, book_id: str, member_id: str, due_date: Optional[date]) -> bool:
        self.submitted = True
        self.success = False
        self.form_errors = {}
        if not book_id:
            self.form_errors["book_id"] = "required"
        if not member_id:
            self.form_errors["member_id"] = "required"
        if due_date is None:
            self.form_errors["due_date"] = "required"
        if self.form_errors:
            return False

        self.loading = True
        self.error = ""
        try:
            self.result = await self.service.lend_book(book_id, member_id, due_date)
        except VIEW_ERRORS as e:
            self._fail(e, "Failed to lend book")
            return False
        finally:
            self.loading = False
        self.success = True
        return True

    def _state(self) -> Dict[str, Any]:
        return {"members": self.members, "books": self.books, "success": self.success, "result": self.result}


class ReturnBookView(View):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.borrowings: List[LendingTransaction] = []
        self.success = False

    async def load(self, member_id: Optional[str] = None) -> None:
        self.loading = True
        try:
            self.borrowings = await self.service.get_current_borrowings(member_id)
        except VIEW_ERRORS as e:
            self._fail(e, "Failed to load current borrowings")
        finally:
            self.loading = False

    async def return_book(self, transaction_id: str) -> bool:
        self.success = False
        self.error = ""
        try:
            await self.service.return_book(transaction_id)
        except VIEW_ERRORS as e:
            self._fail(e, "Failed to return book")
            return False
        self.success = True
        await self.load()
        return True

    def _state(self) -> Dict[str, Any]:
        return {"borrowings": self.borrowings, "success": self.success}


class LendingHistoryView(View):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.transactions: List[LendingTransaction] = []
        self.status_filter: Optional[LendingStatus] = None

    async def load(self, member_id: Optional[str] = None,
                   status: Optional[LendingStatus] = None) -> None:
        self.loading = True
        self.status_filter = status
        try:
            history = await self.service.get_lending_history(member_id)
            self.transactions = [t for t in history if status is None or t.status is status]
        except VIEW_ERRORS as e:
            self._fail(e, "Failed to load lending history")
        finally:
            self.loading = False

    def _state(self) -> Dict[str, Any]:
        return {
            "status_filter": self.status_filter.value if self.status_filter else None,
            "transactions": self.transactions,
        }
