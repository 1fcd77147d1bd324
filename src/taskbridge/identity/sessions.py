# src/taskbridge/identity/sessions.py

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from ..errors import InvalidCredentials, NotFoundError, ValidationError
from ..gateway import PersistenceGateway
from ..models import Entity, Session, User, to_iso
from .linking import ensure_personal_project

logger = logging.getLogger(__name__)

PASSWORD_MIN = 8

_hasher = PasswordHasher()


def hash_password(password: str) -> str:
    if not isinstance(password, str) or len(password) < PASSWORD_MIN:
        raise ValidationError(f"password must be at least {PASSWORD_MIN} characters")
    return _hasher.hash(password)


def verify_password(password_hash: str | None, password: str) -> bool:
    if not password_hash or not password:
        return False
    try:
        return _hasher.verify(password_hash, password)
    except VerifyMismatchError:
        return False
    except (VerificationError, InvalidHashError):
        logger.warning("Stored password hash could not be checked", exc_info=True)
        return False


class SessionManager:
    """Local username/password accounts and server-side sessions."""

    def __init__(self, gateway: PersistenceGateway, *, ttl_seconds: int = 7 * 24 * 60 * 60) -> None:
        self._gateway = gateway
        self._ttl = timedelta(seconds=int(ttl_seconds))

    async def register(
        self,
        username: str,
        password: str,
        *,
        name: str | None = None,
        email: str | None = None,
        is_admin: bool = False,
    ) -> User:
        user = await self._gateway.create(
            Entity.USER,
            {
                "username": username,
                "name": name or username,
                "email": email,
                "is_admin": is_admin,
                "password_hash": hash_password(password),
            },
        )
        await ensure_personal_project(self._gateway, user)
        return user

    async def login(self, username: str, password: str) -> Session:
        wanted = (username or "").strip().lower()
        users = await self._gateway.list(Entity.USER, {"username": wanted}, limit=1) if wanted else []
        user = users[0] if users else None
        if user is None or not verify_password(user.password_hash, password):
            logger.info("Login failed username=%s", wanted)
            raise InvalidCredentials("invalid username or password")

        if _hasher.check_needs_rehash(user.password_hash):
            await self._gateway.update(
                Entity.USER, user.id, {"password_hash": _hasher.hash(password)}, audit=False
            )

        session = await self._gateway.create(
            Entity.SESSION,
            {"user_id": user.id, "expires_at": to_iso(datetime.now(UTC) + self._ttl)},
        )
        logger.info("Session opened user=%s", user.id)
        return session

    async def logout(self, session_id: str) -> None:
        try:
            await self._gateway.delete(Entity.SESSION, session_id)
        except NotFoundError:
            logger.debug("Logout for unknown session")

    async def purge_expired(self, now: datetime | None = None) -> int:
        now = now or datetime.now(UTC)
        purged = 0
        for session in await self._gateway.list(Entity.SESSION):
            if not session.is_expired(now):
                continue
            try:
                await self._gateway.delete(Entity.SESSION, session.id)
            except NotFoundError:
                continue
            purged += 1
        if purged:
            logger.info("Purged %d expired session(s)", purged)
        return purged
