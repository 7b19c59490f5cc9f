"""Local web service exposing every screen's state as JSON.

Route guards run as dependencies; a denied navigation becomes a 303 redirect.
The remembered pre-login path travels in the ``redirectUrl`` session cookie.
"""

import dataclasses
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import quote, unquote

import httpx
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import Base64Bytes, BaseModel

from libreeze.config import Settings, settings
from libreeze.errors import (
    AuthError,
    BackendError,
    LibreezeError,
    NetworkError,
    NotAuthenticated,
    NotFound,
)
from libreeze.guards import (
    DASHBOARD_PATH,
    REDIRECT_URL_KEY,
    Navigator,
    admin_guard,
    auth_guard,
    public_guard,
)
from libreeze.library import LibraryService
from libreeze.models import LendingStatus, UploadFile
from libreeze.services.backend import BackendClient
from libreeze.session import SessionStore
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
    View,
)

logger = logging.getLogger(__name__)

Guard = Callable[[SessionStore, Navigator, str], Awaitable[bool]]


# --- Request models ---
class LoginForm(BaseModel):
    email: str = ""
    password: str = ""


class RegisterForm(BaseModel):
    full_name: str = ""
    email: str = ""
    password: str = ""
    confirm_password: str = ""


class LibraryForm(BaseModel):
    library_name: str = ""
    library_address: str = ""
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None


class ProfileForm(BaseModel):
    full_name: str = ""


class FilePayload(BaseModel):
    """A file sent inline: original name, content type and base64 data."""
    filename: str
    content_type: str = "application/octet-stream"
    data: Base64Bytes

    def to_upload(self) -> UploadFile:
        return UploadFile(name=self.filename, content=self.data, content_type=self.content_type)


class AddBookForm(BaseModel):
    isbn: str = ""
    title: str = ""
    author: str = ""
    publisher: str = ""
    description: str = ""
    cover: Optional[FilePayload] = None


class LendForm(BaseModel):
    book_id: str = ""
    member_id: str = ""
    due_date: Optional[date] = None


class ReturnForm(BaseModel):
    transaction_id: str


# --- Error mapping ---
def status_for(exc: Exception) -> int:
    if isinstance(exc, (AuthError, NotAuthenticated)):
        return 401
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, (BackendError, NetworkError, httpx.HTTPError)):
        return 502
    return 500


class GuardRedirect(Exception):
    """Raised by a guard dependency to turn a denied navigation into a redirect."""

    def __init__(self, request: Request, navigator: Navigator) -> None:
        super().__init__(navigator.redirect_to)
        self.request = request
        self.navigator = navigator


# --- Navigation helpers ---
def _navigator(request: Request) -> Navigator:
    storage: Dict[str, str] = {}
    if REDIRECT_URL_KEY in request.cookies:
        storage[REDIRECT_URL_KEY] = unquote(request.cookies[REDIRECT_URL_KEY])
    return Navigator(storage)


def _sync_session_cookie(request: Request, response: Response, navigator: Navigator) -> None:
    value = navigator.session_storage.get(REDIRECT_URL_KEY)
    if value is not None:
        value = quote(value, safe="")
        if request.cookies.get(REDIRECT_URL_KEY) != value:
            # No max-age: the cookie lives as long as the browser session
            response.set_cookie(REDIRECT_URL_KEY, value, httponly=True, samesite="lax")
    elif REDIRECT_URL_KEY in request.cookies:
        response.delete_cookie(REDIRECT_URL_KEY)


def _render(request: Request, view: View) -> Response:
    navigator = view.navigator
    if navigator.redirect_to:
        response: Response = RedirectResponse(navigator.redirect_to, status_code=303)
    else:
        if view.failure is not None:
            status = status_for(view.failure)
        elif view.form_errors:
            status = 422
        else:
            status = 200
        response = JSONResponse(view.state(), status_code=status)
    _sync_session_cookie(request, response, navigator)
    return response


async def _guard_redirect_handler(request: Request, exc: GuardRedirect) -> Response:
    response = RedirectResponse(exc.navigator.redirect_to or DASHBOARD_PATH, status_code=303)
    _sync_session_cookie(exc.request, response, exc.navigator)
    return response


async def _libreeze_error_handler(request: Request, exc: LibreezeError) -> Response:
    logger.warning("Unhandled %s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse({"detail": exc.message}, status_code=status_for(exc))


# --- Dependencies ---
def get_store(request: Request) -> SessionStore:
    return request.app.state.store


def get_service(request: Request) -> LibraryService:
    return request.app.state.service


def guarded(guard: Guard) -> Callable[..., Awaitable[Navigator]]:
    async def dependency(request: Request, store: SessionStore = Depends(get_store)) -> Navigator:
        navigator = _navigator(request)
        url = request.url.path + (f"?{request.url.query}" if request.url.query else "")
        if not await guard(store, navigator, url):
            raise GuardRedirect(request, navigator)
        return navigator

    return dependency


authenticated = guarded(auth_guard)
admin_only = guarded(admin_guard)
public_only = guarded(public_guard)


class Screen:
    """Bundles what a view needs so routes can build one in a single line."""

    def __init__(self, request: Request, service: LibraryService, store: SessionStore,
                 navigator: Navigator) -> None:
        self.request = request
        self.service = service
        self.store = store
        self.navigator = navigator

    def view(self, view_cls: type) -> Any:
        return view_cls(self.service, self.store, self.navigator)


def _screen(guard_dependency: Callable[..., Awaitable[Navigator]]) -> Callable[..., Awaitable[Screen]]:
    async def dependency(request: Request,
                         navigator: Navigator = Depends(guard_dependency),
                         service: LibraryService = Depends(get_service),
                         store: SessionStore = Depends(get_store)) -> Screen:
        return Screen(request, service, store, navigator)

    return dependency


AuthScreen = _screen(authenticated)
AdminScreen = _screen(admin_only)
PublicScreen = _screen(public_only)


router = APIRouter()


# --- Health ---
@router.get("/health")
async def health(store: SessionStore = Depends(get_store)):
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "session": store.state.value,
        "admin_pending": store.admin_pending,
    }


@router.get("/")
async def root():
    return RedirectResponse(DASHBOARD_PATH)


# --- Dashboard ---
@router.get("/dashboard")
async def dashboard(screen: Screen = Depends(AuthScreen)):
    view = screen.view(DashboardView)
    try:
        await view.init()
        return _render(screen.request, view)
    finally:
        view.dispose()


@router.post("/dashboard/logout")
async def logout(screen: Screen = Depends(AuthScreen)):
    view = screen.view(DashboardView)
    await view.logout()
    return _render(screen.request, view)


# --- Books ---
@router.get("/books")
async def list_books(q: str = Query(default=""), screen: Screen = Depends(AuthScreen)):
    view = screen.view(BookListView)
    await view.search(q)
    return _render(screen.request, view)


@router.get("/books/add")
async def add_book_form(isbn: str = Query(default=""), screen: Screen = Depends(AuthScreen)):
    view = screen.view(AddBookView)
    if isbn:
        await view.check_isbn(isbn)
    return _render(screen.request, view)


@router.post("/books/add")
async def add_book(form: AddBookForm, screen: Screen = Depends(AuthScreen)):
    view = screen.view(AddBookView)
    await view.submit(
        form.isbn, form.title, form.author, form.publisher, form.description,
        cover=form.cover.to_upload() if form.cover else None,
    )
    return _render(screen.request, view)


@router.get("/books/{book_id}")
async def book_details(book_id: str, screen: Screen = Depends(AuthScreen)):
    view = screen.view(BookDetailsView)
    await view.load(book_id)
    return _render(screen.request, view)


# --- Lending (admin) ---
@router.get("/lending/lend")
async def lend_book_form(member_q: str = Query(default=""), book_q: str = Query(default=""),
                         screen: Screen = Depends(AdminScreen)):
    view = screen.view(LendBookView)
    await view.search_members(member_q)
    await view.search_books(book_q)
    return _render(screen.request, view)


@router.post("/lending/lend")
async def lend_book(form: LendForm, screen: Screen = Depends(AdminScreen)):
    view = screen.view(LendBookView)
    await view.lend(form.book_id, form.member_id, form.due_date)
    return _render(screen.request, view)


@router.get("/lending/return")
async def return_book_form(member_id: Optional[str] = None, screen: Screen = Depends(AdminScreen)):
    view = screen.view(ReturnBookView)
    await view.load(member_id)
    return _render(screen.request, view)


@router.post("/lending/return")
async def return_book(form: ReturnForm, screen: Screen = Depends(AdminScreen)):
    view = screen.view(ReturnBookView)
    await view.return_book(form.transaction_id)
    return _render(screen.request, view)


@router.get("/lending/history")
async def lending_history(member_id: Optional[str] = None, status: Optional[LendingStatus] = None,
                          screen: Screen = Depends(AdminScreen)):
    view = screen.view(LendingHistoryView)
    await view.load(member_id, status)
    return _render(screen.request, view)


# --- Auth ---
@router.get("/auth/login")
async def login_form(screen: Screen = Depends(PublicScreen)):
    view = screen.view(LoginView)
    await view.init()
    return _render(screen.request, view)


@router.post("/auth/login")
async def login(form: LoginForm, screen: Screen = Depends(PublicScreen)):
    view = screen.view(LoginView)
    await view.submit(form.email, form.password)
    return _render(screen.request, view)


@router.get("/auth/register")
async def register_form(screen: Screen = Depends(PublicScreen)):
    return _render(screen.request, screen.view(RegisterView))


@router.post("/auth/register")
async def register(form: RegisterForm, screen: Screen = Depends(PublicScreen)):
    view = screen.view(RegisterView)
    await view.submit(form.full_name, form.email, form.password, form.confirm_password)
    return _render(screen.request, view)


@router.get("/auth/check-email")
async def check_email(screen: Screen = Depends(PublicScreen)):
    return {"message": "Check your e-mail and follow the confirmation link to finish signing up."}


@router.get("/auth/library-options")
async def library_options(option: Optional[str] = None, screen: Screen = Depends(AuthScreen)):
    view = screen.view(LibraryOptionsView)
    try:
        await view.init()
        if option == "create":
            view.show_create_library_form()
        elif option == "contact":
            view.show_contact_admin_message()
        return _render(screen.request, view)
    finally:
        view.dispose()


@router.post("/auth/library-options")
async def create_library(form: LibraryForm, screen: Screen = Depends(AuthScreen)):
    view = screen.view(LibraryOptionsView)
    try:
        await view.init()
        if not view.navigator.redirect_to:
            await view.create_library(
                form.library_name, form.library_address, form.contact_email, form.contact_phone
            )
        return _render(screen.request, view)
    finally:
        view.dispose()


@router.get("/auth/profile")
async def profile(screen: Screen = Depends(AuthScreen)):
    view = screen.view(ProfileView)
    await view.init()
    return _render(screen.request, view)


@router.post("/auth/profile")
async def update_profile(form: ProfileForm, screen: Screen = Depends(AuthScreen)):
    view = screen.view(ProfileView)
    view.user_id = screen.store.user.value.id
    await view.update_profile(form.full_name)
    return _render(screen.request, view)


@router.post("/auth/profile/photo")
async def upload_profile_photo(photo: FilePayload, screen: Screen = Depends(AuthScreen)):
    view = screen.view(ProfileView)
    view.user_id = screen.store.user.value.id
    await view.upload_profile_photo(photo.to_upload())
    return _render(screen.request, view)


# Anything else lands on the dashboard
@router.get("/{path:path}")
async def fallback(path: str):
    return RedirectResponse(DASHBOARD_PATH)


def create_app(config: Optional[Settings] = None,
               transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    """Build the web service; ``transport`` lets tests stand in for the backend.

    The service never reads or writes the CLI session file: every browser starts
    signed out and signs in through /auth/login.
    """
    config = dataclasses.replace(config or settings, persist_session=False)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        backend = BackendClient(config, transport=transport)
        store = SessionStore(backend)
        await store.start()
        app.state.backend = backend
        app.state.store = store
        app.state.service = LibraryService(backend)
        try:
            yield
        finally:
            await store.close()
            await backend.close()

    app = FastAPI(title=config.app_name, version=config.app_version, debug=config.debug,
                  lifespan=lifespan)
    app.add_exception_handler(GuardRedirect, _guard_redirect_handler)
    app.add_exception_handler(LibreezeError, _libreeze_error_handler)
    app.include_router(router)
    return app


logging.basicConfig(level=settings.log_level)
app = create_app()
