# src/taskbridge/storage/schema.py

"""
Remote (SQLite-compatible) schema.

Executed statement by statement with CREATE ... IF NOT EXISTS, so running it
against an existing database is a no-op.

Cascades: deleting a project removes its memberships and tasks natively.
The activity log deliberately has no foreign keys: audit rows outlive the
entities they describe, on both backends.
"""

from __future__ import annotations

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        federated_subject TEXT UNIQUE,
        password_hash TEXT,
        username TEXT NOT NULL UNIQUE,
        email TEXT,
        name TEXT NOT NULL,
        initials TEXT,
        color TEXT,
        is_admin INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS projects (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        color TEXT NOT NULL DEFAULT '#f06a6a',
        owner_id TEXT NOT NULL,
        is_personal INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (owner_id) REFERENCES users(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS project_members (
        project_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'member',
        added_at TEXT NOT NULL,
        FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE,
        FOREIGN KEY (user_id) REFERENCES users(id),
        UNIQUE (project_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        date TEXT,
        project_id TEXT NOT NULL,
        assigned_to_id TEXT,
        created_by_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        priority TEXT NOT NULL DEFAULT 'none',
        archived INTEGER NOT NULL DEFAULT 0,
        completed_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE,
        FOREIGN KEY (assigned_to_id) REFERENCES users(id),
        FOREIGN KEY (created_by_id) REFERENCES users(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_log (
        id TEXT PRIMARY KEY,
        actor_id TEXT,
        task_id TEXT,
        project_id TEXT,
        action TEXT NOT NULL,
        details TEXT NOT NULL DEFAULT '',
        timestamp TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_users_email ON users(email)",
    "CREATE INDEX IF NOT EXISTS idx_projects_owner_id ON projects(owner_id)",
    "CREATE INDEX IF NOT EXISTS idx_project_members_user_id ON project_members(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_project_id ON tasks(project_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_assigned_to_id ON tasks(assigned_to_id)",
    "CREATE INDEX IF NOT EXISTS idx_activity_timestamp ON activity_log(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_expires_at ON sessions(expires_at)",
)
