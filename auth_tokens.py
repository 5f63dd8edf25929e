"""auth_tokens.py

Account registration, login and token issuance.

Access tokens are Flask-JWT-Extended JWTs (``sub`` = user id, plus a
``username`` claim). The refresh credential is an opaque random string stored
on the user row; every login and refresh replaces it, so a used value can
never be presented again.

All methods need an active Flask app context (JWT settings live on the app).
"""

from __future__ import annotations

import hmac
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from flask_jwt_extended import create_access_token, decode_token
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import PyJWTError

from errors import ErrorKind, Result
from models import User, utcnow
from security import hash_password, log_audit_event, verify_password_and_upgrade
from stores import UserStore

USERNAME_RE = re.compile(r"^[a-z0-9_.\-]{3,32}$")
MIN_PASSWORD_LEN = 8


@dataclass(frozen=True)
class Identity:
    user_id: str
    username: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    user_id: str
    username: str

    def to_wire(self) -> dict:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "userId": self.user_id,
            "username": self.username,
        }


def normalize_username(raw) -> str:
    return str(raw or "").strip().lower()


class AuthTokenIssuer:
    def __init__(self, users: UserStore, refresh_ttl: timedelta = timedelta(days=7)):
        self.users = users
        self.refresh_ttl = refresh_ttl

    def register(self, username, password) -> Result[User]:
        username = normalize_username(username)
        if not USERNAME_RE.match(username):
            return Result.failure(ErrorKind.INVALID_INPUT, "Username must be 3-32 chars of a-z, 0-9, '_', '.', '-'.")
        if not isinstance(password, str) or len(password) < MIN_PASSWORD_LEN:
            return Result.failure(ErrorKind.INVALID_INPUT, f"Password must be at least {MIN_PASSWORD_LEN} characters.")

        user = self.users.create(username, hash_password(password))
        if user is None:
            return Result.failure(ErrorKind.CONFLICT, "Username already taken.")
        log_audit_event(username, "register", user.id)
        return Result.success(user)

    def login(self, username, password) -> Result[TokenPair]:
        user = self.users.get_by_username(normalize_username(username))
        if user is None or not isinstance(password, str):
            return Result.failure(ErrorKind.UNAUTHORIZED, "Invalid username or password.")

        ok, upgraded = verify_password_and_upgrade(password, user.password_hash)
        if not ok:
            log_audit_event(user.username, "login_failed")
            return Result.failure(ErrorKind.UNAUTHORIZED, "Invalid username or password.")
        if upgraded:
            self.users.set_password_hash(user.id, upgraded)
            logging.info("Rehashed password for %s with current parameters", user.username)

        pair = self.issue(user)
        log_audit_event(user.username, "login")
        return Result.success(pair)

    def issue(self, user: User) -> TokenPair:
        """Mint an access token and replace the stored refresh credential."""
        refresh, created, expires = self._new_refresh()
        self.users.set_refresh_token(user.id, refresh, created, expires)
        return TokenPair(self._access_for(user), refresh, user.id, user.username)

    def validate(self, token: Optional[str]) -> Optional[Identity]:
        """Identity of a valid, unexpired access token; None otherwise."""
        claims = self._decode(token, allow_expired=False)
        if not claims:
            return None
        return Identity(user_id=str(claims["sub"]), username=str(claims.get("username") or ""))

    def refresh(self, access_token: Optional[str], refresh_token: Optional[str]) -> Result[TokenPair]:
        """Exchange a (possibly expired) access token plus refresh credential."""
        claims = self._decode(access_token, allow_expired=True)
        if not claims or not refresh_token:
            return Result.failure(ErrorKind.UNAUTHORIZED, "Invalid token.")

        user = self.users.get(str(claims["sub"]))
        if user is None or not user.refresh_token:
            return Result.failure(ErrorKind.UNAUTHORIZED, "Invalid token.")
        if not hmac.compare_digest(user.refresh_token, str(refresh_token)):
            log_audit_event(user.username, "refresh_rejected")
            return Result.failure(ErrorKind.UNAUTHORIZED, "Invalid token.")
        if user.token_expires is None or user.token_expires <= utcnow():
            return Result.failure(ErrorKind.UNAUTHORIZED, "Refresh token expired.")

        new_refresh, created, expires = self._new_refresh()
        # Lost race: another refresh consumed the same credential first.
        if not self.users.rotate_refresh_token(user.id, user.refresh_token, new_refresh, created, expires):
            return Result.failure(ErrorKind.UNAUTHORIZED, "Invalid token.")
        return Result.success(TokenPair(self._access_for(user), new_refresh, user.id, user.username))

    def _new_refresh(self):
        created = utcnow()
        return secrets.token_urlsafe(64), created, created + self.refresh_ttl

    @staticmethod
    def _access_for(user: User) -> str:
        return create_access_token(identity=user.id, additional_claims={"username": user.username})

    @staticmethod
    def _decode(token: Optional[str], allow_expired: bool) -> Optional[dict]:
        if not token or not isinstance(token, str):
            return None
        try:
            claims = decode_token(token, allow_expired=allow_expired)
        except (PyJWTError, JWTExtendedException):
            return None
        if claims.get("type") != "access" or not claims.get("sub"):
            return None
        return claims
