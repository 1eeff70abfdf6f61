"""Client-side identity: the attached session and the calls that change it.

``SessionContext`` is created by the application and handed to whatever needs
the identity (the cart engine, favorites). Interested parties subscribe to it
instead of polling. ``AuthClient`` talks to the user service over HTTP and
attaches or detaches sessions on the context.
"""

import json
import logging
from dataclasses import asdict, dataclass
from typing import Callable, List, NamedTuple, Optional

import httpx

from canteen import config
from canteen.local_cache import LocalCache
from canteen.errors import AuthError, StoreError

logger = logging.getLogger(__name__)

SESSION_KEY = "session"

NOT_CONFIGURED = "Authentication is not configured. Please set USER_SERVICE_URL."
INVALID_CREDENTIALS = "Invalid login credentials"
CONFIRMATION_PENDING = "Please check your email for a confirmation link or try signing up again."
ACCOUNT_CREATED_UNCONFIRMED = "Account created! Please confirm your email before signing in."
SERVICE_UNAVAILABLE = "Authentication service unavailable. Please try again later."


@dataclass(frozen=True)
class Session:
    user_id: str
    email: str
    access_token: str
    name: Optional[str] = None
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def headers(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}"}


SessionListener = Callable[[Optional[Session]], None]


class SessionContext:
    """Holds the current session and notifies listeners when it changes."""

    def __init__(self, cache: Optional[LocalCache] = None):
        self._cache = cache
        self._session: Optional[Session] = None
        self._listeners: List[SessionListener] = []
        if cache is not None:
            self._session = self._restore()

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def user_id(self) -> Optional[str]:
        return self._session.user_id if self._session else None

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def attach(self, session: Session) -> None:
        self._session = session
        self._persist()
        self._notify()

    def detach(self) -> None:
        if self._session is None:
            return
        self._session = None
        self._persist()
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._session)
            except Exception:
                logger.exception("Session listener %r failed", listener)

    def _restore(self) -> Optional[Session]:
        raw = self._cache.get(SESSION_KEY)
        if not raw:
            return None
        try:
            return Session(**json.loads(raw))
        except (TypeError, ValueError):
            logger.warning("Discarding unreadable stored session")
            return None

    def _persist(self) -> None:
        if self._cache is None:
            return
        try:
            if self._session is None:
                self._cache.remove(SESSION_KEY)
            else:
                self._cache.set(SESSION_KEY, json.dumps(asdict(self._session)))
        except StoreError as e:
            logger.error("Could not persist session: %s", e)


class AuthResult(NamedTuple):
    session: Optional[Session]
    error: Optional[AuthError]


def _detail(response: httpx.Response) -> str:
    try:
        return str(response.json().get("detail", response.text))
    except ValueError:
        return response.text


class AuthClient:
    def __init__(self, context: SessionContext, base_url: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.context = context
        self.base_url = config.USER_SERVICE_URL if base_url is None else base_url
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, transport=self._transport, timeout=10.0)

    async def sign_in(self, email: str, password: str) -> AuthResult:
        if not self.base_url:
            return AuthResult(None, AuthError(NOT_CONFIGURED))
        try:
            async with self._client() as client:
                res = await client.post("/login", json={"email": email, "password": password})
        except httpx.RequestError as e:
            logger.error("Sign-in request failed: %s", e)
            return AuthResult(None, AuthError(SERVICE_UNAVAILABLE))

        if res.status_code == 403 and "not confirmed" in _detail(res).lower():
            return AuthResult(None, AuthError(CONFIRMATION_PENDING))
        if res.status_code == 401:
            return AuthResult(None, AuthError(INVALID_CREDENTIALS))
        if res.status_code != 200:
            return AuthResult(None, AuthError(_detail(res)))

        data = res.json()
        session = Session(
            user_id=data["id"],
            email=data["email"],
            access_token=data["access_token"],
            name=data.get("name"),
            role=data.get("role", "customer"),
        )
        self.context.attach(session)
        return AuthResult(session, None)

    async def sign_up(self, email: str, password: str, name: str) -> AuthResult:
        if not self.base_url:
            return AuthResult(None, AuthError(NOT_CONFIGURED))
        try:
            async with self._client() as client:
                res = await client.post("/register", json={"email": email, "password": password, "name": name})
        except httpx.RequestError as e:
            logger.error("Sign-up request failed: %s", e)
            return AuthResult(None, AuthError(SERVICE_UNAVAILABLE))

        if res.status_code != 200:
            return AuthResult(None, AuthError(_detail(res)))
        if not res.json().get("email_confirmed", True):
            return AuthResult(None, AuthError(ACCOUNT_CREATED_UNCONFIRMED))
        return await self.sign_in(email, password)

    async def get_current_session(self) -> Optional[Session]:
        """Return the stored session if the user service still accepts its token."""
        session = self.context.session
        if session is None or not self.base_url:
            return session
        try:
            async with self._client() as client:
                res = await client.get("/verify", headers=session.headers)
        except httpx.RequestError as e:
            # keep the session, the service may just be down
            logger.warning("Could not verify session: %s", e)
            return session
        if res.status_code != 200:
            logger.info("Stored session for %s expired", session.email)
            self.context.detach()
            return None
        return session

    async def sign_out(self) -> None:
        # tokens are stateless, dropping the session is enough
        self.context.detach()
