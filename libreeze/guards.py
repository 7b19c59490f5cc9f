"""Navigation guards consulted before a view is entered.

Each guard returns True to allow the navigation. On denial it records a
redirect on the navigator and returns False.
"""

from typing import Dict, MutableMapping, Optional
from urllib.parse import urlencode

from libreeze.session import SessionStore

REDIRECT_URL_KEY = "redirectUrl"
LOGIN_PATH = "/auth/login"
DASHBOARD_PATH = "/dashboard"


class Navigator:
    """Collects the navigation a guard or view asks for.

    ``session_storage`` holds values that must survive the login round-trip
    (the web service backs it with a session cookie).
    """

    def __init__(self, session_storage: Optional[MutableMapping[str, str]] = None) -> None:
        self.session_storage: MutableMapping[str, str] = (
            session_storage if session_storage is not None else {}
        )
        self.redirect_to: Optional[str] = None

    def navigate(self, path: str, query_params: Optional[Dict[str, str]] = None) -> None:
        self.redirect_to = f"{path}?{urlencode(query_params)}" if query_params else path

    def navigate_by_url(self, url: str) -> None:
        self.redirect_to = url


async def auth_guard(store: SessionStore, navigator: Navigator, url: str) -> bool:
    user = await store.get_session_user()
    if user is None:
        navigator.session_storage[REDIRECT_URL_KEY] = url
        navigator.navigate(LOGIN_PATH)
        return False
    return True


async def admin_guard(store: SessionStore, navigator: Navigator, url: str) -> bool:
    # Waits for an admin lookup already in flight instead of reading the default
    is_admin = await store.admin_status()
    if not is_admin:
        navigator.navigate(DASHBOARD_PATH)
        return False
    return True


async def public_guard(store: SessionStore, navigator: Navigator, url: str) -> bool:
    user = await store.get_session_user()
    if user is not None:
        navigator.navigate(DASHBOARD_PATH)
        return False
    return True
