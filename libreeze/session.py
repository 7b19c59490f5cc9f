"""Process-wide session state: the signed-in identity and its admin flag."""

import asyncio
import logging
from enum import Enum
from typing import Callable, Generic, List, Optional, TypeVar

from libreeze.models import Identity, Membership, Session
from libreeze.services.backend import BackendClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ObservableValue(Generic[T]):
    """A value that remembers its latest state and pushes changes to subscribers.

    New subscribers are called immediately with the current value. Updates are
    delivered synchronously in subscription order.
    """

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._subscribers: List[Callable[[T], None]] = []

    @property
    def value(self) -> T:
        return self._value

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        self._subscribers.append(callback)
        callback(self._value)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def next(self, value: T) -> None:
        self._value = value
        for callback in list(self._subscribers):
            callback(value)


class SessionState(Enum):
    UNKNOWN = "unknown"
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"


class SessionStore:
    """Tracks the current identity and admin flag, following backend auth events."""

    def __init__(self, backend: BackendClient) -> None:
        self._backend = backend
        self.user: ObservableValue[Optional[Identity]] = ObservableValue(None)
        self.is_admin: ObservableValue[bool] = ObservableValue(False)
        self.state = SessionState.UNKNOWN
        self._admin_task: Optional[asyncio.Task] = None
        self._unlisten: Optional[Callable[[], None]] = None

    async def start(self) -> None:
        """Listen for auth events, then publish whatever session already exists."""
        self._unlisten = self._backend.auth.on_auth_state_change(self._on_auth_event)
        session = await self._backend.auth.get_session()
        if session:
            self._publish_user(session.user)
        else:
            self.state = SessionState.ANONYMOUS

    async def close(self) -> None:
        if self._unlisten:
            self._unlisten()
            self._unlisten = None
        task = self._admin_task
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def get_session_user(self) -> Optional[Identity]:
        """Re-read the session and publish it; None when nobody is signed in."""
        session = await self._backend.auth.get_session()
        if session:
            self._publish_user(session.user)
            return session.user
        self.state = SessionState.ANONYMOUS
        self.user.next(None)
        return None

    async def check_admin_status(self, user_id: str) -> None:
        """Look up the admin flag for ``user_id``; any failure counts as "not admin"."""
        try:
            rows = await (
                self._backend.table("library_users")
                .select("user_id, library_id, is_admin")
                .eq("user_id", user_id)
                .execute()
            )
            is_admin = any(Membership.model_validate(row).is_admin for row in rows)
        except Exception as e:
            logger.error("Error checking admin status for %s: %s", user_id, e)
            is_admin = False

        current = self.user.value
        if current is None or current.id != user_id:
            # Identity changed while the lookup was in flight
            return
        self.is_admin.next(is_admin)

    @property
    def admin_pending(self) -> bool:
        return self._admin_task is not None and not self._admin_task.done()

    async def admin_status(self) -> bool:
        """Admin flag after any in-flight lookup has finished."""
        task = self._admin_task
        if task is not None and not task.done():
            await asyncio.shield(task)
        return self.is_admin.value

    def _on_auth_event(self, event: str, session: Optional[Session]) -> None:
        if session:
            self._publish_user(session.user)
        else:
            self.state = SessionState.ANONYMOUS
            self.user.next(None)
            self.is_admin.next(False)

    def _publish_user(self, identity: Identity) -> None:
        self.state = SessionState.AUTHENTICATED
        self.user.next(identity)
        self._admin_task = asyncio.get_running_loop().create_task(
            self.check_admin_status(identity.id)
        )
