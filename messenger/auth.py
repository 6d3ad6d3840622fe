import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from jose import JWTError, jwt

from messenger import config
from messenger.data_service import DataService
from messenger.errors import NotAuthenticatedError, RemoteError
from messenger.schemas import User, UserStatus

logger = logging.getLogger(__name__)


def create_access_token(data: dict, expires_delta: timedelta = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)
    return encoded_jwt


def decode_token(token: str):
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        return payload
    except JWTError:
        return None


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, stored: Optional[str]) -> bool:
    if not stored:
        return False
    try:
        return bcrypt.checkpw(password.encode(), stored.encode())
    except ValueError:
        # not a bcrypt hash
        return False


class Session:
    """The signed-in user of one client.

    ``current_user()`` answers from memory, so operations that only need to
    know who is signed in never touch the data service.
    """

    def __init__(self, data: DataService):
        self.data = data
        self.user: Optional[User] = None
        self.access_token: Optional[str] = None
        self.loading = False
        self.error: Optional[str] = None

    def current_user(self) -> Optional[User]:
        return self.user

    def require_user(self) -> User:
        if self.user is None:
            raise NotAuthenticatedError()
        return self.user

    def clear_error(self):
        self.error = None

    async def sign_up(self, email: str, password: str, display_name: str = None) -> User:
        self.loading, self.error = True, None
        try:
            user = await self.data.insert_user(
                email,
                password_hash=hash_password(password),
                display_name=display_name or email.split("@")[0],
            )
        except RemoteError as e:
            self.error = e.message
            raise
        finally:
            self.loading = False
        logger.info("Registered user %s", user.id)
        return user

    async def sign_in(self, email: str, password: str) -> User:
        self.loading, self.error = True, None
        try:
            found = await self.data.get_credentials(email)
            if found is None or not verify_password(password, found[1]):
                raise RemoteError("Invalid login credentials")
            user = found[0]
            self.user = user
            self.access_token = create_access_token({"sub": user.id})
            await self.fetch_profile()
        except RemoteError as e:
            self.user, self.access_token = None, None
            self.error = e.message
            raise
        finally:
            self.loading = False
        return self.user

    async def restore(self, token: str) -> User:
        payload = decode_token(token)
        if not payload or "sub" not in payload:
            raise NotAuthenticatedError("Invalid or expired token")
        user = await self.data.get_user(payload["sub"])
        if user is None:
            raise NotAuthenticatedError("Unknown user")
        self.user = user
        self.access_token = token
        return user

    async def fetch_profile(self) -> Optional[User]:
        if self.user is None:
            return None
        user = await self.data.get_user(self.user.id)
        if user is None:
            raise RemoteError(f"User {self.user.id} not found")
        self.user = await self.data.update_user(
            user.id, status=UserStatus.ONLINE, last_seen=datetime.now(timezone.utc))
        return self.user

    async def update_profile(self, **updates) -> User:
        if self.user is None:
            raise NotAuthenticatedError("No user found")
        try:
            self.user = await self.data.update_user(self.user.id, **updates)
        except RemoteError as e:
            self.error = e.message
            raise
        return self.user

    async def sign_out(self):
        self.loading = True
        if self.user is not None:
            # signing out must not depend on the presence write
            try:
                await self.data.update_user(
                    self.user.id, status=UserStatus.OFFLINE, last_seen=datetime.now(timezone.utc))
            except RemoteError as e:
                logger.warning("Could not mark %s offline: %s", self.user.id, e.message)
        self.user = None
        self.access_token = None
        self.loading = False
        self.error = None
