import logging
import re
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Protocol

import bcrypt
from sqlmodel import select

from .db import Store, utcnow
from .errors import AuthenticationError, ConflictError, NotFoundOrUnauthorized, ValidationError
from .models import AccessToken, User

log = logging.getLogger("beacon.auth")

MIN_PASSWORD_LENGTH = 6
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass(frozen=True)
class Principal:
    user_id: int
    username: str


class Authenticator(Protocol):
    def authenticate(self, api_key: Optional[str] = None, bearer: Optional[str] = None) -> Principal: ...


class StoreAuthenticator:
    """Resolves an API key (devices) or a bearer token (dashboards) to a user."""

    def __init__(self, store: Store):
        self.store = store

    def authenticate(self, api_key: Optional[str] = None, bearer: Optional[str] = None) -> Principal:
        if not api_key and not bearer:
            raise AuthenticationError("API key or bearer token required")
        with self.store.session() as s:
            if api_key:
                user = s.exec(select(User).where(User.api_key == api_key)).first()
                if not user:
                    raise AuthenticationError("Invalid API key")
                return Principal(user_id=user.id, username=user.username)
            token = s.get(AccessToken, bearer)
            if not token or token.expires_at <= utcnow():
                raise AuthenticationError("Invalid or expired token")
            user = s.get(User, token.user_id)
            if not user:
                raise AuthenticationError("Invalid or expired token")
            return Principal(user_id=user.id, username=user.username)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


class AccountService:
    def __init__(self, store: Store, token_ttl: timedelta = timedelta(hours=24)):
        self.store = store
        self.token_ttl = token_ttl

    def register(self, username: str, email: str, password: str) -> User:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
        with self.store.session() as s:
            if s.exec(select(User).where(User.username == username)).first():
                raise ConflictError("Username already exists")
            if s.exec(select(User).where(User.email == email)).first():
                raise ConflictError("Email already registered")
            user = User(
                username=username,
                email=email,
                password_hash=hash_password(password),
                api_key=secrets.token_hex(16),
            )
            s.add(user)
            s.commit()
            s.refresh(user)
        log.info("registered user %s", username)
        return user

    def login(self, username: str, password: str) -> tuple[User, AccessToken]:
        with self.store.session() as s:
            user = s.exec(select(User).where(User.username == username)).first()
            if not user or not verify_password(password, user.password_hash):
                raise AuthenticationError("Invalid credentials")
            now = utcnow()
            token = AccessToken(
                token=secrets.token_hex(24),
                user_id=user.id,
                created_at=now,
                expires_at=now + self.token_ttl,
            )
            s.add(token)
            s.commit()
            s.refresh(token)
            return user, token

    def profile(self, user_id: int) -> User:
        with self.store.session() as s:
            user = s.get(User, user_id)
            if not user:
                raise NotFoundOrUnauthorized("User not found")
            return user

    def update_profile(
        self,
        user_id: int,
        email: Optional[str] = None,
        current_password: Optional[str] = None,
        new_password: Optional[str] = None,
    ) -> User:
        """Change the email and/or password. A new password needs the current one."""
        if not email and not new_password:
            raise ValidationError("At least one field (email or password) must be provided")
        with self.store.session() as s:
            user = s.get(User, user_id)
            if not user:
                raise NotFoundOrUnauthorized("User not found")
            if new_password:
                if not current_password:
                    raise ValidationError("Current password required to change password")
                if not verify_password(current_password, user.password_hash):
                    raise AuthenticationError("Current password is incorrect")
                if len(new_password) < MIN_PASSWORD_LENGTH:
                    raise ValidationError(f"New password must be at least {MIN_PASSWORD_LENGTH} characters long")
                user.password_hash = hash_password(new_password)
            if email:
                if not EMAIL_RE.match(email):
                    raise ValidationError("Invalid email format")
                taken = s.exec(select(User).where(User.email == email, User.id != user_id)).first()
                if taken:
                    raise ConflictError("Email already registered")
                user.email = email
            user.updated_at = utcnow()
            s.add(user)
            s.commit()
            s.refresh(user)
        log.info("user %s updated profile", user_id)
        return user

    def refresh_api_key(self, user_id: int) -> str:
        with self.store.session() as s:
            user = s.get(User, user_id)
            if not user:
                raise NotFoundOrUnauthorized("User not found")
            user.api_key = secrets.token_hex(16)
            user.updated_at = utcnow()
            s.add(user)
            s.commit()
            return user.api_key
