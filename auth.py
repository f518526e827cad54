import os
import secrets
import threading
import time
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

from fastapi import Depends, HTTPException, Request
from jose import JWTError, jwt
from passlib.context import CryptContext

from config import Settings
from database import Store
from schemas import PublicUser, Role

ALGORITHM = "HS256"
SESSION_COOKIE_NAME = "session"

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=int(os.getenv("BCRYPT_ROUNDS", 12)),
)


# ----------------------- Passwords -----------------------

def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def authenticate(store: Store, username: str, password: str) -> Optional[PublicUser]:
    """Return the public profile for valid credentials, else None.

    Unknown usernames still pay for one hash so both failure causes look alike.
    """
    user = store.get_user_by_username(username)
    if user is None:
        pwd_context.dummy_verify()
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user.public()


# ----------------------- Sessions -----------------------

class SessionStore:
    """Server-side session records with an absolute lifetime.

    Holds at most ``max_entries`` records; the least recently used one is
    evicted when a new session would exceed that. Expired records are swept
    on the first ``create`` after each ``check_period`` seconds.
    """

    def __init__(self, max_age: int = 60 * 60 * 24, max_entries: int = 10000,
                 check_period: int = 60 * 60, clock: Callable[[], float] = time.time):
        self.max_age = max_age
        self.max_entries = max_entries
        self.check_period = check_period
        self._clock = clock
        self._lock = threading.Lock()
        self._records: "OrderedDict[str, Tuple[float, PublicUser]]" = OrderedDict()
        self._next_purge = clock() + check_period

    def __len__(self):
        return len(self._records)

    def create(self, user: PublicUser) -> str:
        now = self._clock()
        if now >= self._next_purge:
            self._next_purge = now + self.check_period
            self.purge_expired()
        sid = secrets.token_urlsafe(32)
        expires_at = now + self.max_age
        with self._lock:
            self._records[sid] = (expires_at, user)
            while len(self._records) > self.max_entries:
                self._records.popitem(last=False)
        return sid

    def get(self, sid: str) -> Optional[PublicUser]:
        with self._lock:
            entry = self._records.get(sid)
            if entry is None:
                return None
            expires_at, user = entry
            if expires_at <= self._clock():
                del self._records[sid]
                return None
            self._records.move_to_end(sid)
            return user

    def destroy(self, sid: str) -> bool:
        with self._lock:
            return self._records.pop(sid, None) is not None

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [sid for sid, (expires_at, _) in self._records.items() if expires_at <= now]
            for sid in expired:
                del self._records[sid]
        return len(expired)


def encode_session_cookie(sid: str, settings: Settings) -> str:
    expire = datetime.now(timezone.utc) + timedelta(seconds=settings.session_max_age)
    return jwt.encode({"sid": sid, "exp": expire}, settings.session_secret, algorithm=ALGORITHM)


def decode_session_cookie(token: str, settings: Settings) -> Optional[str]:
    try:
        payload = jwt.decode(token, settings.session_secret, algorithms=[ALGORITHM])
    except JWTError:
        return None
    sid = payload.get("sid")
    return sid if isinstance(sid, str) else None


# ----------------------- Dependencies -----------------------

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_sessions(request: Request) -> SessionStore:
    return request.app.state.sessions


def get_session_id(request: Request, settings: Settings = Depends(get_settings)) -> Optional[str]:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        return None
    return decode_session_cookie(token, settings)


def get_current_user(
    sid: Optional[str] = Depends(get_session_id),
    sessions: SessionStore = Depends(get_sessions),
) -> PublicUser:
    user = sessions.get(sid) if sid else None
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def require_role(*roles: Role):
    """Dependency admitting only sessions whose role is one of ``roles``."""
    allowed = frozenset(roles)

    def guard(current: PublicUser = Depends(get_current_user)) -> PublicUser:
        if current.role not in allowed:
            raise HTTPException(status_code=403, detail="Forbidden")
        return current

    return guard
