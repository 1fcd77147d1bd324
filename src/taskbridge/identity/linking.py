# src/taskbridge/identity/linking.py

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..errors import ConflictError, ValidationError
from ..gateway import PersistenceGateway
from ..models import Entity, Project, User

logger = logging.getLogger(__name__)

PERSONAL_PROJECT_SUFFIX = "-Personal"


@dataclass(frozen=True, slots=True)
class NewIdentityPending:
    """A verified federated identity with no User yet; the caller must collect a username."""

    subject: str
    email: str | None = None
    display_name: str | None = None


async def ensure_personal_project(gateway: PersistenceGateway, user: User) -> Project:
    """Personal project owned by `user`, with the user as `owner` member. Idempotent."""
    owned = await gateway.list(Entity.PROJECT, {"owner_id": user.id, "is_personal": True}, order_by="created_at")
    if owned:
        project = owned[0]
    else:
        project = await gateway.create(
            Entity.PROJECT,
            {
                "name": f"{user.username}{PERSONAL_PROJECT_SUFFIX}",
                "description": "Personal tasks",
                "owner_id": user.id,
                "is_personal": True,
            },
            actor_id=user.id,
        )
    if await gateway.find(Entity.MEMBERSHIP, (project.id, user.id)) is None:
        try:
            await gateway.add_member(project.id, user.id, role="owner", actor_id=user.id)
        except ConflictError:
            logger.debug("Owner membership already present project=%s", project.id)
    return project


class AccountLinkingPolicy:
    """
    Maps a verified federated identity onto exactly one internal User.

    Order: existing link by subject, then a single unlinked user with the same
    email (case-insensitive), otherwise NewIdentityPending. All steps for one
    subject run inside the `federated:<subject>` critical section.
    """

    def __init__(self, gateway: PersistenceGateway) -> None:
        self._gateway = gateway

    @staticmethod
    def _lock_key(subject: str) -> str:
        return f"federated:{subject}"

    async def _by_subject(self, subject: str) -> User | None:
        found = await self._gateway.list(Entity.USER, {"federated_subject": subject}, limit=1)
        return found[0] if found else None

    async def resolve_or_link(
        self,
        subject: str,
        email: str | None = None,
        display_name: str | None = None,
    ) -> User | NewIdentityPending:
        subject = (subject or "").strip()
        if not subject:
            raise ValidationError("federated subject is required")
        email = (email or "").strip() or None

        async with self._gateway.locks.hold(self._lock_key(subject)):
            user = await self._by_subject(subject)
            if user is not None:
                return user

            if email:
                wanted = email.lower()
                candidates = [
                    u
                    for u in await self._gateway.list(Entity.USER, {"federated_subject": None})
                    if u.email and u.email.lower() == wanted
                ]
                if len(candidates) == 1:
                    target = candidates[0]
                    try:
                        linked = await self._gateway.update(
                            Entity.USER, target.id, {"federated_subject": subject}, actor_id=target.id
                        )
                    except ConflictError:
                        # another subject claimed the candidate first; it is no longer unlinked
                        user = await self._by_subject(subject)
                        if user is not None:
                            return user
                        logger.info("Email candidate user=%s was linked concurrently; not linking", target.id)
                        return NewIdentityPending(subject=subject, email=email, display_name=display_name)
                    logger.info("Linked federated subject to existing user=%s by email", linked.id)
                    return linked
                if len(candidates) > 1:
                    logger.warning("Email matches %d unlinked users; not linking automatically", len(candidates))

            return NewIdentityPending(subject=subject, email=email, display_name=display_name)

    async def complete_profile(
        self,
        pending: NewIdentityPending,
        username: str,
        name: str | None = None,
    ) -> User:
        """
        Create the User for a pending identity, plus its personal project.

        Safe to repeat: an already-attached subject returns the existing user and
        any missing personal project or owner membership is filled in.
        """
        async with self._gateway.locks.hold(self._lock_key(pending.subject)):
            user = await self._by_subject(pending.subject)
            if user is None:
                try:
                    user = await self._gateway.create(
                        Entity.USER,
                        {
                            "username": username,
                            "name": name or pending.display_name or username,
                            "email": pending.email,
                            "federated_subject": pending.subject,
                        },
                    )
                except ConflictError:
                    user = await self._by_subject(pending.subject)
                    if user is None:
                        raise
            await ensure_personal_project(self._gateway, user)
        return user
