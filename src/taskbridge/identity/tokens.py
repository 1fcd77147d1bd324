# src/taskbridge/identity/tokens.py

"""
Bearer-token verification strategies.

Strategies are tried in order. A strategy that cannot even attempt
verification (nothing configured, key set unreachable, token made for another
algorithm family, unknown key id) raises VerificationUnavailable and the next
one is tried. A strategy that attempts verification and fails ends the chain
with a typed AuthError.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import jwt

from ..config import AuthSettings
from ..errors import ConfigError, ExpiredToken, InvalidToken, UnknownIssuer

logger = logging.getLogger(__name__)

ASYMMETRIC_ALGORITHMS = ("RS256", "RS384", "RS512", "ES256", "ES384", "PS256")
LOCAL_TOKEN_USE = "local"


class VerificationUnavailable(Exception):
    """This strategy cannot check the token; try the next one."""


@dataclass(frozen=True, slots=True)
class VerifiedToken:
    strategy: str
    claims: dict[str, Any]

    @property
    def subject(self) -> str:
        return self.claims["sub"]

    @property
    def email(self) -> str | None:
        email = self.claims.get("email")
        return email if isinstance(email, str) and email.strip() else None

    @property
    def display_name(self) -> str | None:
        meta = self.claims.get("user_metadata")
        meta = meta if isinstance(meta, dict) else {}
        for raw in (meta.get("full_name"), meta.get("name"), self.claims.get("name")):
            if isinstance(raw, str) and raw.strip():
                return raw.strip()
        return None

    @property
    def is_local(self) -> bool:
        return self.strategy == SharedSecretStrategy.name and self.claims.get("token_use") == LOCAL_TOKEN_USE


class TokenStrategy(Protocol):
    name: str

    async def verify(self, token: str) -> dict[str, Any]: ...


def _unverified_header(token: str) -> dict[str, Any]:
    try:
        return jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise InvalidToken("malformed token") from exc


def _translate(exc: jwt.PyJWTError) -> Exception:
    if isinstance(exc, jwt.ExpiredSignatureError):
        return ExpiredToken("token has expired")
    if isinstance(exc, (jwt.InvalidIssuerError, jwt.InvalidAudienceError)):
        return UnknownIssuer(f"token issuer/audience not accepted: {exc}")
    return InvalidToken(f"token rejected: {exc}")


def _decode(token: str, key: Any, algorithm: str, *, audience: str, issuer: str | None) -> dict[str, Any]:
    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=[algorithm],
            audience=audience,
            issuer=issuer,
            options={"require": ["exp", "sub"]},
        )
    except jwt.PyJWTError as exc:
        raise _translate(exc) from exc
    if not isinstance(claims.get("sub"), str) or not claims["sub"].strip():
        raise InvalidToken("token subject is empty")
    return claims


class KeySetStrategy:
    """
    Asymmetric tokens checked against the provider's published key set (JWKS).

    The key set is fetched lazily, cached for `cache_seconds`, and refetched once
    when a token names a key id we have not seen (key rotation).
    """

    name = "key-set"

    def __init__(
        self,
        *,
        jwks_url: str | None,
        issuer: str | None,
        audience: str,
        http: httpx.AsyncClient,
        cache_seconds: float = 600.0,
        algorithms: Sequence[str] = ASYMMETRIC_ALGORITHMS,
    ) -> None:
        self._url = jwks_url
        self._issuer = issuer
        self._audience = audience
        self._http = http
        self._cache_s = float(cache_seconds)
        self._algorithms = tuple(algorithms)

        self._keys: jwt.PyJWKSet | None = None
        self._fetched_at = 0.0
        self._lock = asyncio.Lock()

    async def _key_set(self, *, refresh: bool = False) -> jwt.PyJWKSet:
        if not self._url:
            raise VerificationUnavailable("no key set configured")
        async with self._lock:
            fresh = self._keys is not None and time.monotonic() - self._fetched_at < self._cache_s
            if fresh and not refresh:
                return self._keys
            try:
                resp = await self._http.get(self._url)
                resp.raise_for_status()
                self._keys = jwt.PyJWKSet.from_dict(resp.json())
                self._fetched_at = time.monotonic()
                logger.info("Key set loaded url=%s keys=%d", self._url, len(self._keys.keys))
            except (httpx.HTTPError, ValueError, jwt.PyJWTError) as exc:
                logger.warning("Key set fetch failed url=%s: %s", self._url, exc)
                if self._keys is None:
                    raise VerificationUnavailable("key set unreachable") from exc
            return self._keys

    @staticmethod
    def _pick(keys: jwt.PyJWKSet, kid: str | None) -> jwt.PyJWK | None:
        for key in keys.keys:
            if kid is None or key.key_id == kid:
                return key
        return None

    async def verify(self, token: str) -> dict[str, Any]:
        header = _unverified_header(token)
        alg = str(header.get("alg") or "")
        if alg not in self._algorithms:
            raise VerificationUnavailable(f"algorithm {alg or 'none'} is not handled by the key set")
        kid = header.get("kid")

        key = self._pick(await self._key_set(), kid)
        if key is None:
            key = self._pick(await self._key_set(refresh=True), kid)
        if key is None:
            raise VerificationUnavailable(f"unknown key id {kid}")
        return _decode(token, key.key, alg, audience=self._audience, issuer=self._issuer)


class SharedSecretStrategy:
    """HS256 tokens signed with the pre-shared secret (provider fallback and local tokens)."""

    name = "shared-secret"

    def __init__(self, *, secret: str | None, issuer: str | None, audience: str) -> None:
        self._secret = secret
        self._issuer = issuer
        self._audience = audience

    async def verify(self, token: str) -> dict[str, Any]:
        if not self._secret:
            raise VerificationUnavailable("no shared secret configured")
        header = _unverified_header(token)
        if header.get("alg") != "HS256":
            raise VerificationUnavailable("not a HS256 token")
        return _decode(token, self._secret, "HS256", audience=self._audience, issuer=self._issuer)


def build_strategies(auth: AuthSettings, http: httpx.AsyncClient) -> list[TokenStrategy]:
    return [
        KeySetStrategy(
            jwks_url=auth.jwks_url,
            issuer=auth.issuer,
            audience=auth.audience,
            http=http,
            cache_seconds=auth.jwks_cache_seconds,
        ),
        SharedSecretStrategy(
            secret=auth.shared_secret,
            issuer=auth.token_issuer,
            audience=auth.audience,
        ),
    ]


async def verify_token(token: str, strategies: Sequence[TokenStrategy]) -> VerifiedToken:
    for strategy in strategies:
        try:
            claims = await strategy.verify(token)
        except VerificationUnavailable as exc:
            logger.debug("Strategy %s skipped: %s", strategy.name, exc)
            continue
        return VerifiedToken(strategy=strategy.name, claims=claims)
    raise InvalidToken("no verification strategy could check this token")


def issue_local_token(user_id: str, auth: AuthSettings, *, now: float | None = None) -> str:
    """Sign a token for an internal user id (used after local login)."""
    if not auth.shared_secret:
        raise ConfigError("issuing local tokens requires a shared secret")
    iat = int(now if now is not None else time.time())
    payload = {
        "sub": user_id,
        "iss": auth.token_issuer,
        "aud": auth.audience,
        "iat": iat,
        "exp": iat + int(auth.token_ttl_seconds),
        "token_use": LOCAL_TOKEN_USE,
    }
    return jwt.encode(payload, auth.shared_secret, algorithm="HS256")
