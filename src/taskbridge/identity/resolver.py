# src/taskbridge/identity/resolver.py

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from http.cookies import CookieError, SimpleCookie

from ..errors import InvalidToken, NoCredential, NotFoundError, ProfileSetupRequired, StorageError
from ..gateway import PersistenceGateway
from ..models import Entity, Session, User
from .linking import AccountLinkingPolicy, NewIdentityPending
from .tokens import TokenStrategy, verify_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CredentialMaterial:
    bearer_token: str | None = None
    session_id: str | None = None

    @classmethod
    def from_headers(
        cls,
        headers: Mapping[str, str],
        cookies: Mapping[str, str] | None = None,
        *,
        cookie_name: str = "session_id",
    ) -> CredentialMaterial:
        lowered = {k.lower(): val for k, val in headers.items()}
        token = None
        auth = (lowered.get("authorization") or "").strip()
        if auth[:7].lower() == "bearer ":
            token = auth[7:].strip() or None

        if cookies is None:
            cookies = {}
            raw = lowered.get("cookie")
            if raw:
                jar = SimpleCookie()
                try:
                    jar.load(raw)
                except CookieError:
                    logger.debug("Ignoring malformed Cookie header")
                cookies = {k: m.value for k, m in jar.items()}
        session_id = (cookies.get(cookie_name) or "").strip() or None
        return cls(bearer_token=token, session_id=session_id)


@dataclass(frozen=True, slots=True)
class AuthenticatedPrincipal:
    user_id: str
    is_admin: bool


class IdentityResolver:
    """
    Turns credential material into an internal principal.

    Precedence: bearer token, then session id; the two are never combined.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        linking: AccountLinkingPolicy,
        strategies: Sequence[TokenStrategy],
    ) -> None:
        self._gateway = gateway
        self._linking = linking
        self._strategies = list(strategies)

    async def resolve(self, material: CredentialMaterial) -> AuthenticatedPrincipal:
        if material.bearer_token:
            user = await self._from_token(material.bearer_token)
        elif material.session_id:
            user = await self._from_session(material.session_id)
        else:
            raise NoCredential("no bearer token or session cookie presented")
        return AuthenticatedPrincipal(user_id=user.id, is_admin=user.is_admin)

    async def _from_token(self, token: str) -> User:
        verified = await verify_token(token, self._strategies)
        if verified.is_local:
            user = await self._gateway.find(Entity.USER, verified.subject)
            if user is None:
                raise InvalidToken("token subject has no account")
            return user

        outcome = await self._linking.resolve_or_link(
            verified.subject, verified.email, verified.display_name
        )
        if isinstance(outcome, NewIdentityPending):
            raise ProfileSetupRequired(outcome)
        return outcome

    async def _from_session(self, session_id: str) -> User:
        session: Session | None = await self._gateway.find(Entity.SESSION, session_id)
        if session is None:
            raise InvalidToken("unknown session")
        if session.is_expired():
            try:
                await self._gateway.delete(Entity.SESSION, session_id)
            except (NotFoundError, StorageError):
                logger.warning("Could not delete expired session", exc_info=True)
            raise InvalidToken("session expired")
        user = await self._gateway.find(Entity.USER, session.user_id)
        if user is None:
            raise InvalidToken("session owner no longer exists")
        return user
