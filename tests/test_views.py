import asyncio
from datetime import date

import pytest

from libreeze.errors import NotFound
from libreeze.guards import REDIRECT_URL_KEY, Navigator
from libreeze.models import LendingStatus, UploadFile
from libreeze.views import (
    AddBookView,
    BookDetailsView,
    BookListView,
    DashboardView,
    LendBookView,
    LendingHistoryView,
    LibraryOptionsView,
    LoginView,
    ProfileView,
    RegisterView,
    ReturnBookView,
)


@pytest.fixture
def make_view(service, store):
    def factory(view_cls, storage=None):
        return view_cls(service, store, Navigator(storage))
    return factory


def run(coro):
    return asyncio.run(coro)


def seed_history(fake_backend, user_id):
    fake_backend.seed(
        "lending_transactions",
        {"id": "tx-1", "user_id": user_id, "library_book_id": "lb-book-1", "status": "returned",
         "borrowed_date": "2024-01-01", "due_date": "2024-01-15", "returned_date": "2024-01-12"},
        {"id": "tx-2", "user_id": user_id, "library_book_id": "lb-book-2", "status": "borrowed",
         "borrowed_date": "2024-04-01", "due_date": "2099-04-15", "returned_date": None},
        {"id": "tx-3", "user_id": user_id, "library_book_id": "lb-book-3", "status": "overdue",
         "borrowed_date": "2024-02-01", "due_date": "2024-02-15", "returned_date": None},
    )


# ------------------------- Login / register ------------------------- #
def test_login_returns_to_remembered_url(make_view, reader):
    view = make_view(LoginView, {REDIRECT_URL_KEY: "/books?q=dune"})

    assert run(view.submit(reader["email"], reader["password"])) is True
    assert view.navigator.redirect_to == "/books?q=dune"
    assert REDIRECT_URL_KEY not in view.navigator.session_storage


def test_login_defaults_to_dashboard(make_view, reader):
    view = make_view(LoginView)
    run(view.submit(reader["email"], reader["password"]))
    assert view.navigator.redirect_to == "/dashboard"


@pytest.mark.parametrize("remembered", [
    "https://evil.example/", "//evil.example/books", "books", "/\\evil.example",
])
def test_login_ignores_remembered_url_outside_the_site(make_view, reader, remembered):
    view = make_view(LoginView, {REDIRECT_URL_KEY: remembered})

    assert run(view.submit(reader["email"], reader["password"])) is True
    assert view.navigator.redirect_to == "/dashboard"
    assert REDIRECT_URL_KEY not in view.navigator.session_storage


def test_login_failure_sets_error(make_view, reader):
    view = make_view(LoginView)

    assert run(view.submit(reader["email"], "nope")) is False
    assert view.error == "Invalid login credentials"
    assert view.loading is False
    assert view.navigator.redirect_to is None


def test_login_validation_skips_backend(make_view, fake_backend):
    view = make_view(LoginView)

    assert run(view.submit("not-an-email", "")) is False
    assert view.form_errors == {"email": "email", "password": "required"}
    assert fake_backend.requests == []


def test_register_rejects_mismatched_passwords(make_view, fake_backend):
    view = make_view(RegisterView)

    assert run(view.submit("Pat", "pat@example.com", "secret123", "secret124")) is False
    assert view.form_errors == {"confirm_password": "mustMatch"}
    assert fake_backend.requests == []


def test_register_existing_email_reports_error(make_view, reader):
    view = make_view(RegisterView)

    assert run(view.submit("Rita", reader["email"], "secret123", "secret123")) is False
    assert view.error == "User already registered"
    assert view.state()["error"] == "User already registered"


# ------------------------- Library options ------------------------- #
def test_library_options_without_user_goes_to_register(make_view):
    view = make_view(LibraryOptionsView)
    run(view.init())
    assert view.navigator.redirect_to == "/auth/register"


def test_library_options_toggles(make_view):
    view = make_view(LibraryOptionsView)
    view.show_create_library_form()
    assert (view.show_library_form, view.show_admin_message) == (True, False)
    view.show_contact_admin_message()
    assert (view.show_library_form, view.show_admin_message) == (False, True)


def test_create_library_requires_fields(make_view, reader, fake_backend):
    view = make_view(LibraryOptionsView)
    view.user_id = reader["user"]["id"]
    assert run(view.create_library("", "", "bad-email")) is False
    assert view.form_errors == {
        "library_name": "required",
        "library_address": "required",
        "contact_email": "email",
    }
    assert fake_backend.tables["libraries"] == []


# ------------------------- Dashboard ------------------------- #
def test_dashboard_borrowing_stats(make_view, store, service, reader, catalog, fake_backend):
    seed_history(fake_backend, reader["user"]["id"])
    view = make_view(DashboardView)

    async def scenario():
        await service.sign_in(reader["email"], reader["password"])
        await store.get_session_user()
        await view.init()
        view.dispose()
        await store.close()

    run(scenario())
    state = view.state()

    assert state["user"]["email"] == reader["email"]
    assert state["user_profile"]["full_name"] == "Rita Reader"
    assert state["total_borrowed"] == 3
    assert sorted(b["lending_transaction_id"] for b in state["current_borrowings"]) == ["tx-2", "tx-3"]
    assert [b["lending_transaction_id"] for b in state["overdue_books"]] == ["tx-3"]
    assert state["is_admin"] is False


def test_dashboard_logout(make_view, service, reader):
    view = make_view(DashboardView)

    async def scenario():
        await service.sign_in(reader["email"], reader["password"])
        await view.logout()
        return await service.get_token()

    assert run(scenario()) is None
    assert view.navigator.redirect_to == "/auth/login"


# ------------------------- Profile ------------------------- #
def test_profile_loads_memberships_and_returned_history(make_view, store, service, reader, catalog,
                                                        fake_backend):
    fake_backend.add_membership(reader["user"]["id"], is_admin=False)
    seed_history(fake_backend, reader["user"]["id"])
    view = make_view(ProfileView)

    async def scenario():
        await service.sign_in(reader["email"], reader["password"])
        await store.get_session_user()
        await view.init()
        await store.close()

    run(scenario())

    library, = view.user_libraries
    assert library.library_name == "Central Library"
    assert library.membership_type == "Reader"
    assert [t.id for t in view.lending_history] == ["tx-1"]
    assert sorted(t.id for t in view.current_borrowings) == ["tx-2", "tx-3"]
    assert view.full_name == "Rita Reader"


def test_profile_update_and_photo(make_view, service, reader, fake_backend):
    view = make_view(ProfileView)
    view.user_id = reader["user"]["id"]
    photo = UploadFile(name="me.png", content=b"img", content_type="image/png")

    assert run(view.update_profile("Rita Updated")) is True
    assert run(view.upload_profile_photo(photo)) is True

    row = fake_backend.tables["users"][0]
    assert row["full_name"] == "Rita Updated"
    assert row["profile_photo_url"].endswith(f"/profile-photos/{view.user_id}.png")
    assert view.profile_photo_url == row["profile_photo_url"]


def test_profile_update_requires_name(make_view):
    view = make_view(ProfileView)
    view.user_id = "someone"
    assert run(view.update_profile("  ")) is False
    assert view.form_errors == {"full_name": "required"}


# ------------------------- Books ------------------------- #
def test_book_list_search(make_view, catalog):
    view = make_view(BookListView)
    run(view.search("huxley"))
    assert [b["title"] for b in view.state()["books"]] == ["Brave New World"]


def test_book_details_not_found_keeps_failure(make_view, catalog):
    view = make_view(BookDetailsView)
    run(view.load("missing"))
    assert view.book is None
    assert isinstance(view.failure, NotFound)
    assert view.error == "Book missing not found"


def test_add_book_rejects_existing_isbn(make_view, catalog, fake_backend):
    view = make_view(AddBookView)

    assert run(view.submit("978-0-441-01359-3", "Dune")) is False
    assert view.error == "A book with ISBN 9780441013593 already exists."
    assert fake_backend.requests_to("/functions/v1/") == []


def test_add_book_invalid_isbn(make_view, fake_backend):
    view = make_view(AddBookView)
    assert run(view.submit("12345", "")) is False
    assert view.form_errors == {"isbn": "invalid", "title": "required"}
    assert fake_backend.requests == []


def test_add_book_with_cover(make_view, service, reader, catalog, fake_backend):
    view = make_view(AddBookView)
    cover = UploadFile(name="sapiens.jpg", content=b"jpeg", content_type="image/jpeg")

    async def scenario():
        await service.sign_in(reader["email"], reader["password"])
        return await view.submit("9780062316097", "Sapiens", author="Yuval Noah Harari", cover=cover)

    assert run(scenario()) is True
    assert view.navigator.redirect_to == "/books"
    added = view.added["book"]
    assert added["isbn"] == "9780062316097"
    assert added["cover_url"].endswith("/book-covers/9780062316097.jpg")
    assert added["publisher"] is None


# ------------------------- Lending ------------------------- #
def test_lend_requires_all_fields(make_view, fake_backend):
    view = make_view(LendBookView)
    assert run(view.lend("", "", None)) is False
    assert set(view.form_errors) == {"book_id", "member_id", "due_date"}
    assert fake_backend.requests == []


def test_lend_and_return_views(make_view, service, admin, reader):
    lend = make_view(LendBookView)
    give_back = make_view(ReturnBookView)

    async def scenario():
        await service.sign_in(admin["email"], admin["password"])
        await lend.search_members("rita")
        await lend.search_books("dune")
        ok = await lend.lend("lb-book-1", lend.members[0].id, date(2030, 6, 1))
        await give_back.load()
        loaded = [t.id for t in give_back.borrowings]
        returned = await give_back.return_book(loaded[0])
        return ok, loaded, returned

    ok, loaded, returned = run(scenario())

    assert ok is True and lend.success is True
    assert [m.id for m in lend.members] == [reader["user"]["id"]]
    assert [b.id for b in lend.books] == ["book-1"]
    assert loaded == [lend.result["transaction"]["id"]]
    assert returned is True
    assert give_back.borrowings == []


def test_return_failure_sets_error(make_view, service, admin):
    view = make_view(ReturnBookView)

    async def scenario():
        await service.sign_in(admin["email"], admin["password"])
        return await view.return_book("no-such-transaction")

    assert run(scenario()) is False
    assert view.error == "Transaction not found"


def test_lending_history_status_filter(make_view, reader, catalog, fake_backend):
    seed_history(fake_backend, reader["user"]["id"])
    view = make_view(LendingHistoryView)

    run(view.load(status=LendingStatus.OVERDUE))

    assert [t.id for t in view.transactions] == ["tx-3"]
    assert view.state()["status_filter"] == "overdue"

