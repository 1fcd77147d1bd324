# src/taskbridge/models.py

"""
Entity types shared by every backend.

Each entity is described by an EntitySpec (table name, key, unique fields,
foreign keys). Backends and the gateway work from these descriptions, so
neither needs per-entity code paths for plain CRUD.
"""

from __future__ import annotations

import dataclasses
import secrets
import time
import zlib
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

PALETTE = (
    "#f06a6a",
    "#ffc82c",
    "#13ce66",
    "#667eea",
    "#764ba2",
    "#f093fb",
    "#4facfe",
    "#43e97b",
)


class Entity(StrEnum):
    USER = "users"
    PROJECT = "projects"
    MEMBERSHIP = "project_members"
    TASK = "tasks"
    ACTIVITY = "activity_log"
    SESSION = "sessions"


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.PENDING
        try:
            return cls(raw)
        except ValueError:
            return cls.PENDING


class TaskPriority(StrEnum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskPriority:
        if not raw:
            return cls.NONE
        try:
            return cls(raw)
        except ValueError:
            return cls.NONE


@dataclass(slots=True)
class User:
    id: str
    username: str
    name: str
    email: str | None
    initials: str
    color: str
    is_admin: bool
    created_at: str
    updated_at: str
    federated_subject: str | None = None
    password_hash: str | None = None


@dataclass(slots=True)
class Project:
    id: str
    name: str
    description: str
    color: str
    owner_id: str
    is_personal: bool
    created_at: str
    updated_at: str


@dataclass(slots=True)
class ProjectMembership:
    project_id: str
    user_id: str
    role: str
    added_at: str


@dataclass(slots=True)
class Task:
    id: str
    name: str
    description: str
    date: str | None
    project_id: str
    assigned_to_id: str | None
    created_by_id: str
    status: TaskStatus
    priority: TaskPriority
    archived: bool
    completed_at: str | None
    created_at: str
    updated_at: str


@dataclass(slots=True)
class ActivityRecord:
    id: str
    action: str
    details: str
    timestamp: str
    actor_id: str | None = None
    task_id: str | None = None
    project_id: str | None = None


@dataclass(slots=True)
class Session:
    id: str
    user_id: str
    expires_at: str
    created_at: str

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(UTC)
        try:
            return parse_timestamp(self.expires_at) <= now
        except ValueError:
            return True


# ---- entity descriptions ----


@dataclass(frozen=True, slots=True)
class ForeignKey:
    field: str
    target: Entity
    required: bool = True


@dataclass(frozen=True, slots=True)
class EntitySpec:
    entity: Entity
    model: type
    key: tuple[str, ...]
    id_prefix: str = ""
    bool_fields: frozenset[str] = frozenset()
    unique: tuple[tuple[str, ...], ...] = ()
    foreign_keys: tuple[ForeignKey, ...] = ()
    decoders: Mapping[str, Callable[[Any], Any]] = field(default_factory=dict)

    @property
    def fields(self) -> tuple[str, ...]:
        return tuple(f.name for f in dataclasses.fields(self.model))

    def key_of(self, row: Mapping[str, Any]) -> tuple[Any, ...]:
        return tuple(row.get(k) for k in self.key)


ENTITY_SPECS: dict[Entity, EntitySpec] = {
    Entity.USER: EntitySpec(
        entity=Entity.USER,
        model=User,
        key=("id",),
        id_prefix="user",
        bool_fields=frozenset({"is_admin"}),
        unique=(("username",), ("federated_subject",)),
    ),
    Entity.PROJECT: EntitySpec(
        entity=Entity.PROJECT,
        model=Project,
        key=("id",),
        id_prefix="project",
        bool_fields=frozenset({"is_personal"}),
        foreign_keys=(ForeignKey("owner_id", Entity.USER),),
    ),
    Entity.MEMBERSHIP: EntitySpec(
        entity=Entity.MEMBERSHIP,
        model=ProjectMembership,
        key=("project_id", "user_id"),
        unique=(("project_id", "user_id"),),
        foreign_keys=(
            ForeignKey("project_id", Entity.PROJECT),
            ForeignKey("user_id", Entity.USER),
        ),
    ),
    Entity.TASK: EntitySpec(
        entity=Entity.TASK,
        model=Task,
        key=("id",),
        id_prefix="task",
        bool_fields=frozenset({"archived"}),
        foreign_keys=(
            ForeignKey("project_id", Entity.PROJECT),
            ForeignKey("created_by_id", Entity.USER),
            ForeignKey("assigned_to_id", Entity.USER, required=False),
        ),
        decoders={"status": TaskStatus.from_db, "priority": TaskPriority.from_db},
    ),
    Entity.ACTIVITY: EntitySpec(
        entity=Entity.ACTIVITY,
        model=ActivityRecord,
        key=("id",),
        id_prefix="activity",
    ),
    Entity.SESSION: EntitySpec(
        entity=Entity.SESSION,
        model=Session,
        key=("id",),
        id_prefix="session",
        foreign_keys=(ForeignKey("user_id", Entity.USER),),
    ),
}


def spec_for(entity: Entity | str) -> EntitySpec:
    return ENTITY_SPECS[Entity(entity)]


def to_row(record: Any) -> dict[str, Any]:
    """Dataclass -> plain dict with enum members flattened to their values."""
    row = dataclasses.asdict(record)
    for k, v in row.items():
        if isinstance(v, StrEnum):
            row[k] = v.value
    return row


def from_row(entity: Entity, row: Mapping[str, Any]) -> Any:
    spec = ENTITY_SPECS[entity]
    values: dict[str, Any] = {}
    for name in spec.fields:
        v = row.get(name)
        if name in spec.bool_fields:
            v = bool(v)
        elif name in spec.decoders:
            v = spec.decoders[name](v)
        values[name] = v
    return spec.model(**values)


# ---- small helpers ----


def generate_id(prefix: str = "id") -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(5)}"


def to_iso(dt: datetime) -> str:
    """ISO-8601 UTC with milliseconds and a Z suffix."""
    return dt.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return to_iso(datetime.now(UTC))


def parse_timestamp(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def default_initials(name: str) -> str:
    return (name or "").strip()[:2].upper()


def pick_color(seed: str) -> str:
    # Stable per seed, so the same name gets the same colour on both backends.
    return PALETTE[zlib.crc32(seed.encode("utf-8")) % len(PALETTE)]
