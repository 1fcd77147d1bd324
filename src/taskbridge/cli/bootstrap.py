# src/taskbridge/cli/bootstrap.py

"""
Composition root.

- settings are loaded once by the caller and passed in
- exactly one storage backend is selected (via the gateway)
- every service shares the gateway's KeyedLock
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field

import httpx

from ..activity import run_activity_trimmer
from ..config import Settings
from ..gateway import PersistenceGateway
from ..identity.linking import AccountLinkingPolicy
from ..identity.resolver import IdentityResolver
from ..identity.sessions import SessionManager
from ..identity.tokens import build_strategies

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Services:
    settings: Settings
    gateway: PersistenceGateway
    linking: AccountLinkingPolicy
    resolver: IdentityResolver
    sessions: SessionManager
    http: httpx.AsyncClient
    _trimmer: asyncio.Task | None = field(default=None, repr=False)

    async def start(self) -> None:
        await self.gateway.open()
        interval = self.settings.activity_trim_interval_seconds
        if interval > 0:
            self._trimmer = asyncio.create_task(
                run_activity_trimmer(self.gateway.recorder, interval_seconds=interval),
                name="activity-trimmer",
            )

    async def aclose(self) -> None:
        if self._trimmer is not None:
            self._trimmer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._trimmer
            self._trimmer = None
        await self.http.aclose()
        await self.gateway.close()

    async def __aenter__(self) -> Services:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def build_services(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> Services:
    """
    Wire concrete implementations.

    `transport` replaces the remote store's HTTP transport and `http_transport`
    the key-set client's (tests pass httpx.MockTransport instances).
    """
    gateway = PersistenceGateway.from_settings(settings, transport=transport)
    http = httpx.AsyncClient(timeout=httpx.Timeout(10.0), transport=http_transport)
    linking = AccountLinkingPolicy(gateway)
    resolver = IdentityResolver(gateway, linking, build_strategies(settings.auth, http))
    sessions = SessionManager(gateway, ttl_seconds=settings.auth.session_ttl_seconds)

    logger.info(
        "Services built backend=%s issuer=%s shared_secret=%s",
        gateway.backend_name,
        settings.auth.issuer or "-",
        "yes" if settings.auth.shared_secret else "no",
    )
    return Services(
        settings=settings,
        gateway=gateway,
        linking=linking,
        resolver=resolver,
        sessions=sessions,
        http=http,
    )
