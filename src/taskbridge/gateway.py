# src/taskbridge/gateway.py

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator, Mapping
from typing import Any

from . import validation as v
from .activity import ActivityRecorder
from .config import Settings
from .errors import (
    ConflictError,
    NotFoundError,
    PartialCascadeError,
    StorageUnavailable,
    ValidationError,
)
from .locks import KeyedLock
from .models import (
    ActivityRecord,
    Entity,
    EntitySpec,
    Project,
    ProjectMembership,
    Session,
    Task,
    TaskPriority,
    TaskStatus,
    User,
    default_initials,
    from_row,
    generate_id,
    pick_color,
    spec_for,
    to_row,
    utc_now_iso,
)
from .ports import Filters, Row, StorageBackend
from .storage import select_backend

logger = logging.getLogger(__name__)

USER_IDENTITY_KEY = "user-identity"

_USER_FIELDS = frozenset(
    {"username", "name", "email", "initials", "color", "is_admin", "federated_subject", "password_hash"}
)
_PROJECT_FIELDS = frozenset({"name", "description", "color", "owner_id", "is_personal"})
_TASK_FIELDS = frozenset(
    {"name", "description", "date", "project_id", "assigned_to_id", "created_by_id", "status", "priority", "archived"}
)
# Only imports carry these on create.
_IMPORT_FIELDS = frozenset({"id", "created_at", "updated_at"})


def project_key(project_id: str) -> str:
    return f"project:{project_id}"


def user_key(user_id: str) -> str:
    return f"user:{user_id}"


def _user_keys(*user_ids: str | None) -> set[str]:
    return {user_key(u) for u in user_ids if u}


class PersistenceGateway:
    """
    The single entry point for reads and writes, whichever backend is active.

    Responsibilities beyond plain CRUD:
    - field validation and foreign-key checks before every write
    - uniqueness of usernames, federated subjects and membership pairs
    - project cascade delete with re-verification of leftovers
    - one activity record per successful mutation (best-effort)

    Composite operations are serialized through a shared KeyedLock:
      project:<id>   cascade delete, task and membership writes in that project
      user-identity  user creation and identity-bearing updates
      user:<id>      user deletion, and every write that stores a reference to that user
    """

    def __init__(
        self,
        backend: StorageBackend,
        *,
        recorder: ActivityRecorder | None = None,
        locks: KeyedLock | None = None,
        activity_cap: int = 500,
        activity_query_limit: int = 50,
    ) -> None:
        self._backend = backend
        self._recorder = recorder or ActivityRecorder(
            backend, cap=activity_cap, query_limit=activity_query_limit
        )
        self._locks = locks or KeyedLock()

    @classmethod
    def from_settings(cls, settings: Settings, *, transport=None) -> PersistenceGateway:
        backend = select_backend(settings, transport=transport)
        logger.info("PersistenceGateway backend=%s", backend.name)
        return cls(
            backend,
            activity_cap=settings.activity_cap,
            activity_query_limit=settings.activity_query_limit,
        )

    @property
    def backend_name(self) -> str:
        return self._backend.name

    @property
    def recorder(self) -> ActivityRecorder:
        return self._recorder

    @property
    def locks(self) -> KeyedLock:
        return self._locks

    def describe(self) -> dict[str, Any]:
        describe = getattr(self._backend, "describe", None)
        info = describe() if callable(describe) else {"backend": self._backend.name}
        info["activity_cap"] = self._recorder.cap
        return info

    async def open(self) -> None:
        await self._backend.open()

    async def close(self) -> None:
        await self._backend.close()

    async def __aenter__(self) -> PersistenceGateway:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ---- low-level helpers ----

    @staticmethod
    def _spec(entity: Entity | str) -> EntitySpec:
        try:
            return spec_for(entity)
        except ValueError as exc:
            raise ValidationError(f"unknown entity {entity!r}") from exc

    @staticmethod
    def _key_filters(spec: EntitySpec, key: Any) -> dict[str, Any]:
        """Accept an id string, a tuple matching the key fields, or a mapping."""
        if isinstance(key, Mapping):
            filters = {k: key.get(k) for k in spec.key}
        elif isinstance(key, (tuple, list)):
            if len(key) != len(spec.key):
                raise ValidationError(f"{spec.entity.value} key needs {len(spec.key)} part(s)")
            filters = dict(zip(spec.key, key, strict=True))
        elif len(spec.key) == 1:
            filters = {spec.key[0]: key}
        else:
            raise ValidationError(f"{spec.entity.value} key must be ({', '.join(spec.key)})")
        for name, value in filters.items():
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{spec.entity.value}.{name} must be a non-empty id")
        return filters

    @staticmethod
    def _check_filter_fields(spec: EntitySpec, filters: Filters | None) -> None:
        for name in filters or {}:
            if name not in spec.fields:
                raise ValidationError(f"{spec.entity.value} has no field {name!r}")

    @contextlib.asynccontextmanager
    async def _hold(self, *keys: str) -> AsyncIterator[None]:
        async with contextlib.AsyncExitStack() as stack:
            # sorted: two writers needing the same pair never deadlock
            for key in sorted(set(keys)):
                await stack.enter_async_context(self._locks.hold(key))
            yield

    @contextlib.asynccontextmanager
    async def _task_section(self, task_id: str, *extra_keys: str) -> AsyncIterator[Task]:
        """Hold the task's current project key (plus `extra_keys`) and yield the task as read under it."""
        while True:
            seen: Task = await self._require(Entity.TASK, task_id)
            async with self._hold(project_key(seen.project_id), *extra_keys):
                current: Task = await self._require(Entity.TASK, task_id)
                if current.project_id == seen.project_id:
                    yield current
                    return
            logger.debug("Task %s moved to another project while waiting; retrying", task_id)

    async def _require(self, entity: Entity, key: Any) -> Any:
        found = await self.find(entity, key)
        if found is None:
            raise NotFoundError(f"{entity.value} {key!r} not found")
        return found

    async def _check_references(self, spec: EntitySpec, row: Row, only: set[str] | None = None) -> None:
        for fk in spec.foreign_keys:
            if only is not None and fk.field not in only:
                continue
            ref = row.get(fk.field)
            if ref is None:
                if fk.required:
                    raise ValidationError(f"{fk.field} is required")
                continue
            if not await self._backend.count(fk.target, {"id": ref}):
                raise ValidationError(f"{fk.field} references a missing {fk.target.value} row: {ref}")

    async def _audit(self, audit: bool, action: str, details: str, **refs: str | None) -> None:
        if audit:
            await self._recorder.record(action, details, **refs)

    # ---- reads ----

    async def list(
        self,
        entity: Entity | str,
        filters: Filters | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Any]:
        spec = self._spec(entity)
        self._check_filter_fields(spec, filters)
        if order_by is not None and order_by not in spec.fields:
            raise ValidationError(f"{spec.entity.value} has no field {order_by!r}")
        rows = await self._backend.fetch(
            spec.entity, filters, order_by=order_by, descending=descending, limit=limit
        )
        return [from_row(spec.entity, r) for r in rows]

    async def find(self, entity: Entity | str, key: Any) -> Any | None:
        spec = self._spec(entity)
        rows = await self._backend.fetch(spec.entity, self._key_filters(spec, key), limit=1)
        return from_row(spec.entity, rows[0]) if rows else None

    async def get_by_id(self, entity: Entity | str, key: Any) -> Any:
        return await self._require(self._spec(entity).entity, key)

    async def list_members(self, project_id: str) -> list[ProjectMembership]:
        return await self.list(Entity.MEMBERSHIP, {"project_id": project_id}, order_by="added_at")

    async def recent_activity(self, limit: int | None = None) -> list[ActivityRecord]:
        return await self._recorder.recent(limit)

    # ---- writes: dispatch ----

    async def create(
        self,
        entity: Entity | str,
        data: Mapping[str, Any],
        *,
        actor_id: str | None = None,
        audit: bool = True,
    ) -> Any:
        """
        Validate and store a new row; returns the stored model.

        `audit=False` skips the activity record (bulk imports).
        """
        spec = self._spec(entity)
        data = dict(data or {})
        match spec.entity:
            case Entity.USER:
                return await self._create_user(data, actor_id, audit)
            case Entity.PROJECT:
                return await self._create_project(data, actor_id, audit)
            case Entity.MEMBERSHIP:
                v.reject_unknown(data, {"project_id", "user_id", "role", "added_at"}, "membership")
                return await self.add_member(
                    data.get("project_id"),
                    data.get("user_id"),
                    role=data.get("role") or "member",
                    actor_id=actor_id,
                    added_at=data.get("added_at"),
                    audit=audit,
                )
            case Entity.TASK:
                return await self._create_task(data, actor_id, audit)
            case Entity.ACTIVITY:
                v.reject_unknown(data, {*spec.fields}, "activity")
                return await self._recorder.append(
                    action=data.get("action") or "",
                    details=data.get("details") or "",
                    actor_id=v.optional_ref(data.get("actor_id", actor_id), "actor_id"),
                    task_id=v.optional_ref(data.get("task_id"), "task_id"),
                    project_id=v.optional_ref(data.get("project_id"), "project_id"),
                    record_id=v.optional_ref(data.get("id"), "id"),
                    timestamp=v.timestamp(data.get("timestamp"), "timestamp"),
                )
            case Entity.SESSION:
                return await self._create_session(data)
        raise ValidationError(f"unsupported entity {spec.entity.value}")

    async def update(
        self,
        entity: Entity | str,
        key: Any,
        changes: Mapping[str, Any],
        *,
        actor_id: str | None = None,
        audit: bool = True,
    ) -> Any:
        spec = self._spec(entity)
        changes = dict(changes or {})
        match spec.entity:
            case Entity.USER:
                return await self._update_user(self._key_filters(spec, key)["id"], changes, actor_id, audit)
            case Entity.PROJECT:
                return await self._update_project(self._key_filters(spec, key)["id"], changes, actor_id, audit)
            case Entity.MEMBERSHIP:
                return await self._update_member(self._key_filters(spec, key), changes, actor_id, audit)
            case Entity.TASK:
                return await self._update_task(self._key_filters(spec, key)["id"], changes, actor_id, audit)
            case Entity.ACTIVITY:
                raise ValidationError("activity records are append-only")
            case Entity.SESSION:
                return await self._update_session(self._key_filters(spec, key)["id"], changes)
        raise ValidationError(f"unsupported entity {spec.entity.value}")

    async def delete(
        self,
        entity: Entity | str,
        key: Any,
        *,
        actor_id: str | None = None,
        audit: bool = True,
    ) -> None:
        spec = self._spec(entity)
        match spec.entity:
            case Entity.USER:
                await self._delete_user(self._key_filters(spec, key)["id"], actor_id, audit)
            case Entity.PROJECT:
                await self._delete_project(self._key_filters(spec, key)["id"], actor_id, audit)
            case Entity.MEMBERSHIP:
                filters = self._key_filters(spec, key)
                await self.remove_member(
                    filters["project_id"], filters["user_id"], actor_id=actor_id, audit=audit
                )
            case Entity.TASK:
                await self._delete_task(self._key_filters(spec, key)["id"], actor_id, audit)
            case Entity.ACTIVITY:
                raise ValidationError("activity records are append-only")
            case Entity.SESSION:
                removed = await self._backend.remove(Entity.SESSION, self._key_filters(spec, key))
                if not removed:
                    raise NotFoundError(f"session {key!r} not found")

    # ---- users ----

    async def _ensure_unique_user(
        self,
        *,
        username: str | None,
        subject: str | None,
        exclude_id: str | None = None,
    ) -> None:
        if username is not None:
            for row in await self._backend.fetch(Entity.USER, {"username": username}):
                if row.get("id") != exclude_id:
                    raise ConflictError(f"username {username!r} is already taken")
        if subject is not None:
            for row in await self._backend.fetch(Entity.USER, {"federated_subject": subject}):
                if row.get("id") != exclude_id:
                    raise ConflictError("federated subject is already attached to another user")

    async def _create_user(self, data: Row, actor_id: str | None, audit: bool) -> User:
        v.reject_unknown(data, _USER_FIELDS | _IMPORT_FIELDS, "user")
        username = v.username(data.get("username"))
        name = v.text(data.get("name") or username, "name", min_len=1, max_len=v.USER_NAME_MAX)
        now = utc_now_iso()
        user = User(
            id=v.optional_ref(data.get("id"), "id") or generate_id("user"),
            username=username,
            name=name,
            email=v.email(data.get("email")),
            initials=v.text(data.get("initials"), "initials", max_len=4).upper() or default_initials(name),
            color=v.color(data["color"]) if data.get("color") else pick_color(username),
            is_admin=v.flag(data.get("is_admin", False), "is_admin"),
            created_at=v.timestamp(data.get("created_at"), "created_at") or now,
            updated_at=v.timestamp(data.get("updated_at"), "updated_at") or now,
            federated_subject=v.optional_ref(data.get("federated_subject"), "federated_subject"),
            password_hash=data.get("password_hash") or None,
        )
        async with self._hold(USER_IDENTITY_KEY):
            if await self._backend.count(Entity.USER, {"id": user.id}):
                raise ConflictError(f"user {user.id} already exists")
            await self._ensure_unique_user(username=user.username, subject=user.federated_subject)
            await self._backend.insert(Entity.USER, to_row(user))
        logger.info("User created id=%s username=%s", user.id, user.username)
        await self._audit(audit, "user_created", f"User '{user.username}' created", actor_id=actor_id or user.id)
        return user

    async def _update_user(self, user_id: str, changes: Row, actor_id: str | None, audit: bool) -> User:
        v.reject_unknown(changes, _USER_FIELDS, "user")
        patch: Row = {}
        if "username" in changes:
            patch["username"] = v.username(changes["username"])
        if "name" in changes:
            patch["name"] = v.text(changes["name"], "name", min_len=1, max_len=v.USER_NAME_MAX)
        if "email" in changes:
            patch["email"] = v.email(changes["email"])
        if "initials" in changes:
            patch["initials"] = v.text(changes["initials"], "initials", min_len=1, max_len=4).upper()
        if "color" in changes:
            patch["color"] = v.color(changes["color"])
        if "is_admin" in changes:
            patch["is_admin"] = v.flag(changes["is_admin"], "is_admin")
        if "password_hash" in changes:
            patch["password_hash"] = changes["password_hash"] or None

        linked = False
        async with self._hold(USER_IDENTITY_KEY):
            current: User = await self._require(Entity.USER, user_id)
            if "federated_subject" in changes:
                subject = v.optional_ref(changes["federated_subject"], "federated_subject")
                if current.federated_subject is not None and subject != current.federated_subject:
                    raise ConflictError("federated subject cannot be changed once set")
                if subject is not None and current.federated_subject is None:
                    patch["federated_subject"] = subject
                    linked = True
            await self._ensure_unique_user(
                username=patch.get("username"),
                subject=patch.get("federated_subject"),
                exclude_id=user_id,
            )
            if not patch:
                return current
            patch["updated_at"] = utc_now_iso()
            await self._backend.patch(Entity.USER, {"id": user_id}, patch)
            updated: User = await self._require(Entity.USER, user_id)

        if linked:
            logger.info("Federated subject attached user=%s", user_id)
            await self._audit(
                audit,
                "account_linked",
                f"User '{updated.username}' linked to a federated identity",
                actor_id=actor_id or user_id,
            )
        else:
            await self._audit(audit, "user_updated", f"User '{updated.username}' updated", actor_id=actor_id)
        return updated

    async def _delete_user(self, user_id: str, actor_id: str | None, audit: bool) -> None:
        async with self._hold(user_key(user_id)):
            user: User = await self._require(Entity.USER, user_id)
            owned = await self._backend.count(Entity.PROJECT, {"owner_id": user_id})
            created = await self._backend.count(Entity.TASK, {"created_by_id": user_id})
            if owned or created:
                raise ConflictError(
                    f"user {user_id} still owns {owned} project(s) and created {created} task(s)"
                )
            await self._backend.remove(Entity.MEMBERSHIP, {"user_id": user_id})
            await self._backend.patch(
                Entity.TASK,
                {"assigned_to_id": user_id},
                {"assigned_to_id": None, "updated_at": utc_now_iso()},
            )
            await self._backend.remove(Entity.SESSION, {"user_id": user_id})
            await self._backend.remove(Entity.USER, {"id": user_id})
        logger.info("User deleted id=%s", user_id)
        await self._audit(audit, "user_deleted", f"User '{user.username}' deleted", actor_id=actor_id)

    # ---- projects ----

    async def _create_project(self, data: Row, actor_id: str | None, audit: bool) -> Project:
        v.reject_unknown(data, _PROJECT_FIELDS | _IMPORT_FIELDS, "project")
        name = v.text(data.get("name"), "name", min_len=1, max_len=v.PROJECT_NAME_MAX)
        now = utc_now_iso()
        project = Project(
            id=v.optional_ref(data.get("id"), "id") or generate_id("project"),
            name=name,
            description=v.text(data.get("description"), "description", max_len=v.PROJECT_DESCRIPTION_MAX),
            color=v.color(data["color"]) if data.get("color") else pick_color(name),
            owner_id=v.optional_ref(data.get("owner_id"), "owner_id") or "",
            is_personal=v.flag(data.get("is_personal", False), "is_personal"),
            created_at=v.timestamp(data.get("created_at"), "created_at") or now,
            updated_at=v.timestamp(data.get("updated_at"), "updated_at") or now,
        )
        if not project.owner_id:
            raise ValidationError("owner_id is required")
        row = to_row(project)
        async with self._hold(user_key(project.owner_id)):
            await self._check_references(self._spec(Entity.PROJECT), row)
            await self._backend.insert(Entity.PROJECT, row)
        logger.info("Project created id=%s owner=%s", project.id, project.owner_id)
        await self._audit(
            audit,
            "project_created",
            f"Project '{project.name}' created",
            actor_id=actor_id or project.owner_id,
            project_id=project.id,
        )
        return project

    async def _update_project(self, project_id: str, changes: Row, actor_id: str | None, audit: bool) -> Project:
        v.reject_unknown(changes, _PROJECT_FIELDS, "project")
        patch: Row = {}
        if "name" in changes:
            patch["name"] = v.text(changes["name"], "name", min_len=1, max_len=v.PROJECT_NAME_MAX)
        if "description" in changes:
            patch["description"] = v.text(
                changes["description"], "description", max_len=v.PROJECT_DESCRIPTION_MAX
            )
        if "color" in changes:
            patch["color"] = v.color(changes["color"])
        if "is_personal" in changes:
            patch["is_personal"] = v.flag(changes["is_personal"], "is_personal")
        if "owner_id" in changes:
            patch["owner_id"] = v.optional_ref(changes["owner_id"], "owner_id")

        async with self._hold(project_key(project_id), *_user_keys(patch.get("owner_id"))):
            current: Project = await self._require(Entity.PROJECT, project_id)
            if not patch:
                return current
            if "owner_id" in patch:
                await self._check_references(self._spec(Entity.PROJECT), patch, only={"owner_id"})
            patch["updated_at"] = utc_now_iso()
            await self._backend.patch(Entity.PROJECT, {"id": project_id}, patch)
            updated: Project = await self._require(Entity.PROJECT, project_id)
        await self._audit(
            audit, "project_updated", f"Project '{updated.name}' updated", actor_id=actor_id, project_id=project_id
        )
        return updated

    async def _leftovers(self, project_id: str) -> dict[Entity, int]:
        counts = {
            Entity.PROJECT: await self._backend.count(Entity.PROJECT, {"id": project_id}),
            Entity.MEMBERSHIP: await self._backend.count(Entity.MEMBERSHIP, {"project_id": project_id}),
            Entity.TASK: await self._backend.count(Entity.TASK, {"project_id": project_id}),
        }
        return {e: n for e, n in counts.items() if n}

    async def _finish_cascade(self, project_id: str) -> None:
        """Delete whatever the native cascade left behind, then verify nothing remains."""
        try:
            leftovers = await self._leftovers(project_id)
            if not leftovers:
                return
            logger.warning(
                "Cascade leftovers project=%s %s",
                project_id,
                {e.value: n for e, n in leftovers.items()},
            )
            if Entity.PROJECT in leftovers:
                await self._backend.delete_project_cascade(project_id)
            for entity in (Entity.MEMBERSHIP, Entity.TASK):
                if entity in leftovers:
                    await self._backend.remove(entity, {"project_id": project_id})
            remaining = await self._leftovers(project_id)
        except StorageUnavailable as exc:
            raise PartialCascadeError(project_id) from exc
        if remaining:
            raise PartialCascadeError(project_id)

    async def _delete_project(self, project_id: str, actor_id: str | None, audit: bool) -> None:
        async with self._hold(project_key(project_id)):
            project: Project | None = await self.find(Entity.PROJECT, project_id)
            if project is None:
                if not await self._leftovers(project_id):
                    raise NotFoundError(f"project {project_id!r} not found")
                logger.warning("Completing interrupted cascade project=%s", project_id)
            else:
                try:
                    await self._backend.delete_project_cascade(project_id)
                except StorageUnavailable:
                    logger.warning("Cascade interrupted project=%s; re-verifying", project_id, exc_info=True)
            await self._finish_cascade(project_id)
        logger.info("Project deleted id=%s", project_id)
        name = project.name if project is not None else project_id
        await self._audit(audit, "project_deleted", f"Project '{name}' deleted", actor_id=actor_id, project_id=project_id)

    # ---- memberships ----

    async def add_member(
        self,
        project_id: str,
        user_id: str,
        *,
        role: str = "member",
        actor_id: str | None = None,
        added_at: str | None = None,
        audit: bool = True,
    ) -> ProjectMembership:
        spec = self._spec(Entity.MEMBERSHIP)
        filters = self._key_filters(spec, (project_id, user_id))
        membership = ProjectMembership(
            project_id=filters["project_id"],
            user_id=filters["user_id"],
            role=v.role(role),
            added_at=v.timestamp(added_at, "added_at") or utc_now_iso(),
        )
        async with self._hold(project_key(membership.project_id), user_key(membership.user_id)):
            await self._check_references(spec, to_row(membership))
            if await self._backend.count(Entity.MEMBERSHIP, filters):
                raise ConflictError(f"user {user_id} is already a member of project {project_id}")
            await self._backend.insert(Entity.MEMBERSHIP, to_row(membership))
        await self._audit(
            audit,
            "member_added",
            f"User {user_id} added to project as {membership.role}",
            actor_id=actor_id,
            project_id=project_id,
        )
        return membership

    async def remove_member(
        self,
        project_id: str,
        user_id: str,
        *,
        actor_id: str | None = None,
        audit: bool = True,
    ) -> None:
        filters = self._key_filters(self._spec(Entity.MEMBERSHIP), (project_id, user_id))
        async with self._hold(project_key(project_id)):
            removed = await self._backend.remove(Entity.MEMBERSHIP, filters)
        if not removed:
            raise NotFoundError(f"user {user_id} is not a member of project {project_id}")
        await self._audit(
            audit, "member_removed", f"User {user_id} removed from project", actor_id=actor_id, project_id=project_id
        )

    async def _update_member(
        self, filters: dict[str, Any], changes: Row, actor_id: str | None, audit: bool
    ) -> ProjectMembership:
        v.reject_unknown(changes, {"role"}, "membership")
        if "role" not in changes:
            return await self._require(Entity.MEMBERSHIP, filters)
        role = v.role(changes["role"])
        async with self._hold(project_key(filters["project_id"])):
            await self._require(Entity.MEMBERSHIP, filters)
            await self._backend.patch(Entity.MEMBERSHIP, filters, {"role": role})
            updated: ProjectMembership = await self._require(Entity.MEMBERSHIP, filters)
        await self._audit(
            audit,
            "member_updated",
            f"User {filters['user_id']} is now {role}",
            actor_id=actor_id,
            project_id=filters["project_id"],
        )
        return updated

    # ---- tasks ----

    async def _create_task(self, data: Row, actor_id: str | None, audit: bool) -> Task:
        v.reject_unknown(data, _TASK_FIELDS | _IMPORT_FIELDS | {"completed_at"}, "task")
        now = utc_now_iso()
        status = v.choice(data.get("status") or TaskStatus.PENDING, TaskStatus, "status")
        completed_at = None
        if status is TaskStatus.COMPLETED:
            completed_at = v.timestamp(data.get("completed_at"), "completed_at") or now
        task = Task(
            id=v.optional_ref(data.get("id"), "id") or generate_id("task"),
            name=v.text(data.get("name"), "name", min_len=1, max_len=v.TASK_NAME_MAX),
            description=v.text(data.get("description"), "description", max_len=v.TASK_DESCRIPTION_MAX),
            date=v.due_date(data.get("date")),
            project_id=v.optional_ref(data.get("project_id"), "project_id") or "",
            assigned_to_id=v.optional_ref(data.get("assigned_to_id"), "assigned_to_id"),
            created_by_id=v.optional_ref(data.get("created_by_id", actor_id), "created_by_id") or "",
            status=status,
            priority=v.choice(data.get("priority") or TaskPriority.NONE, TaskPriority, "priority"),
            archived=v.flag(data.get("archived", False), "archived"),
            completed_at=completed_at,
            created_at=v.timestamp(data.get("created_at"), "created_at") or now,
            updated_at=v.timestamp(data.get("updated_at"), "updated_at") or now,
        )
        if not task.project_id:
            raise ValidationError("project_id is required")
        if not task.created_by_id:
            raise ValidationError("created_by_id is required")

        row = to_row(task)
        async with self._hold(project_key(task.project_id), *_user_keys(task.created_by_id, task.assigned_to_id)):
            await self._check_references(self._spec(Entity.TASK), row)
            await self._backend.insert(Entity.TASK, row)
        await self._audit(
            audit,
            "task_created",
            f"Task '{task.name}' created",
            actor_id=actor_id or task.created_by_id,
            task_id=task.id,
            project_id=task.project_id,
        )
        return task

    async def _update_task(self, task_id: str, changes: Row, actor_id: str | None, audit: bool) -> Task:
        v.reject_unknown(changes, _TASK_FIELDS - {"created_by_id"}, "task")
        patch: Row = {}
        if "name" in changes:
            patch["name"] = v.text(changes["name"], "name", min_len=1, max_len=v.TASK_NAME_MAX)
        if "description" in changes:
            patch["description"] = v.text(changes["description"], "description", max_len=v.TASK_DESCRIPTION_MAX)
        if "date" in changes:
            patch["date"] = v.due_date(changes["date"])
        if "priority" in changes:
            patch["priority"] = v.choice(changes["priority"], TaskPriority, "priority").value
        if "archived" in changes:
            patch["archived"] = v.flag(changes["archived"], "archived")
        if "assigned_to_id" in changes:
            patch["assigned_to_id"] = v.optional_ref(changes["assigned_to_id"], "assigned_to_id")
        if "project_id" in changes:
            target = v.optional_ref(changes["project_id"], "project_id")
            if target is None:
                raise ValidationError("project_id is required")
            patch["project_id"] = target
        status = v.choice(changes["status"], TaskStatus, "status") if "status" in changes else None

        extra = _user_keys(patch.get("assigned_to_id"))
        if "project_id" in patch:
            extra.add(project_key(patch["project_id"]))
        async with self._task_section(task_id, *extra) as current:
            if status is not None:
                patch["status"] = status.value
                if status is TaskStatus.COMPLETED:
                    if current.status is not TaskStatus.COMPLETED:
                        patch["completed_at"] = utc_now_iso()
                else:
                    patch["completed_at"] = None
            if not patch:
                return current
            await self._check_references(self._spec(Entity.TASK), patch, only=set(patch))
            patch["updated_at"] = utc_now_iso()
            await self._backend.patch(Entity.TASK, {"id": task_id}, patch)
            updated: Task = await self._require(Entity.TASK, task_id)

        completed = status is TaskStatus.COMPLETED and current.status is not TaskStatus.COMPLETED
        await self._audit(
            audit,
            "task_completed" if completed else "task_updated",
            f"Task '{updated.name}' {'completed' if completed else 'updated'}",
            actor_id=actor_id,
            task_id=task_id,
            project_id=updated.project_id,
        )
        return updated

    async def _delete_task(self, task_id: str, actor_id: str | None, audit: bool) -> None:
        async with self._task_section(task_id) as current:
            removed = await self._backend.remove(Entity.TASK, {"id": task_id})
        if not removed:
            raise NotFoundError(f"task {task_id!r} not found")
        await self._audit(
            audit,
            "task_deleted",
            f"Task '{current.name}' deleted",
            actor_id=actor_id,
            task_id=task_id,
            project_id=current.project_id,
        )

    # ---- sessions (never audited) ----

    async def _create_session(self, data: Row) -> Session:
        v.reject_unknown(data, {"id", "user_id", "expires_at", "created_at"}, "session")
        expires_at = v.timestamp(data.get("expires_at"), "expires_at")
        if expires_at is None:
            raise ValidationError("expires_at is required")
        session = Session(
            id=v.optional_ref(data.get("id"), "id") or generate_id("session"),
            user_id=v.optional_ref(data.get("user_id"), "user_id") or "",
            expires_at=expires_at,
            created_at=v.timestamp(data.get("created_at"), "created_at") or utc_now_iso(),
        )
        if not session.user_id:
            raise ValidationError("user_id is required")
        row = to_row(session)
        async with self._hold(user_key(session.user_id)):
            await self._check_references(self._spec(Entity.SESSION), row)
            await self._backend.insert(Entity.SESSION, row)
        return session

    async def _update_session(self, session_id: str, changes: Row) -> Session:
        v.reject_unknown(changes, {"expires_at"}, "session")
        expires_at = v.timestamp(changes.get("expires_at"), "expires_at")
        if expires_at is None:
            raise ValidationError("expires_at is required")
        if not await self._backend.patch(Entity.SESSION, {"id": session_id}, {"expires_at": expires_at}):
            raise NotFoundError(f"session {session_id!r} not found")
        return await self._require(Entity.SESSION, session_id)
