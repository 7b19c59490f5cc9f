import logging
import time
from pathlib import Path
from typing import Callable, List, Optional

from libreeze.errors import AuthError
from libreeze.models import Identity, Session
from libreeze.services.http_client import BackendHTTPClient, error_message

logger = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_REFRESHED = "TOKEN_REFRESHED"

AuthCallback = Callable[[str, Optional[Session]], None]


class AuthClient:
    """Password auth against the backend, holding the current session.

    Listeners registered with ``on_auth_state_change`` are called synchronously,
    in registration order, whenever the session is set, refreshed or cleared.
    When a session file is given the session survives process restarts.
    """

    def __init__(self, http: BackendHTTPClient, session_file: Optional[str] = None) -> None:
        self._http = http
        self._session_file = Path(session_file).expanduser() if session_file else None
        self._listeners: List[AuthCallback] = []
        self._session: Optional[Session] = self._load_session()

    # ------------------------- Events ------------------------- #
    def on_auth_state_change(self, callback: AuthCallback) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: str) -> None:
        logger.info("Auth event %s", event)
        for listener in list(self._listeners):
            listener(event, self._session)

    # ------------------------- Operations ------------------------- #
    async def sign_up(self, email: str, password: str, full_name: Optional[str] = None,
                      redirect_to: Optional[str] = None) -> Optional[Identity]:
        """Register a new account. Returns the created identity, if the backend sent one."""
        params = {"redirect_to": redirect_to} if redirect_to else None
        body = {"email": email, "password": password}
        if full_name:
            body["data"] = {"full_name": full_name}
        resp = await self._http.post("/auth/v1/signup", json=body, params=params)
        if resp.is_error:
            raise AuthError(error_message(resp, "Registration failed"))

        payload = resp.json()
        if payload.get("access_token"):
            # Auto-confirmed projects hand back a full session right away
            self._set_session(Session.from_auth_payload(payload), SIGNED_IN)
            return self._session.user
        if payload.get("user"):
            return Identity.from_auth_user(payload["user"])
        if payload.get("id"):
            return Identity.from_auth_user(payload)
        return None

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        resp = await self._http.post(
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        if resp.is_error:
            raise AuthError(error_message(resp, "Invalid login credentials"))
        session = Session.from_auth_payload(resp.json())
        self._set_session(session, SIGNED_IN)
        return session

    async def sign_out(self) -> None:
        session = self._session
        if session is not None:
            resp = await self._http.post(
                "/auth/v1/logout", headers=self._http.auth_headers(session.access_token)
            )
            if resp.is_error:
                logger.warning("Backend sign-out failed: %s", error_message(resp, "unknown error"))
        self._set_session(None, SIGNED_OUT)

    async def get_session(self) -> Optional[Session]:
        """Current session, refreshed first when its access token has expired."""
        session = self._session
        if session is not None and session.is_expired(time.time()):
            return await self._refresh(session)
        return session

    async def get_access_token(self) -> Optional[str]:
        session = await self.get_session()
        return session.access_token if session else None

    async def _refresh(self, session: Session) -> Optional[Session]:
        if not session.refresh_token:
            self._set_session(None, SIGNED_OUT)
            return None
        resp = await self._http.post(
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": session.refresh_token},
        )
        if resp.is_error:
            logger.warning("Session refresh failed: %s", error_message(resp, "unknown error"))
            self._set_session(None, SIGNED_OUT)
            return None
        self._set_session(Session.from_auth_payload(resp.json()), TOKEN_REFRESHED)
        return self._session

    # ------------------------- Persistence ------------------------- #
    def _set_session(self, session: Optional[Session], event: str) -> None:
        self._session = session
        self._save_session()
        self._emit(event)

    def _load_session(self) -> Optional[Session]:
        if not self._session_file or not self._session_file.exists():
            return None
        try:
            return Session.model_validate_json(self._session_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable session file %s: %s", self._session_file, e)
            return None

    def _save_session(self) -> None:
        if not self._session_file:
            return
        if self._session is None:
            self._session_file.unlink(missing_ok=True)
            return
        self._session_file.parent.mkdir(parents=True, exist_ok=True)
        self._session_file.write_text(self._session.model_dump_json(), encoding="utf-8")
