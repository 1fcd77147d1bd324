# src/taskbridge/errors.py

"""
Typed errors raised by the core.

HTTP handlers (outside this package) translate them by `status_code`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .identity.linking import NewIdentityPending


class TaskBridgeError(Exception):
    status_code = 500


class ConfigError(TaskBridgeError):
    """Configuration is missing, partial or malformed."""


class ValidationError(TaskBridgeError):
    status_code = 400


class NotFoundError(TaskBridgeError):
    status_code = 404


class ConflictError(TaskBridgeError):
    status_code = 409


class StorageError(TaskBridgeError):
    """Backend rejected an operation, or the embedded store could not be read/written."""


class StorageUnavailable(StorageError):
    """Transient backend fault (timeout, network, overload). Callers may retry."""

    status_code = 503


class PartialCascadeError(StorageUnavailable):
    def __init__(self, project_id: str, message: str | None = None) -> None:
        super().__init__(
            message or f"cascade delete of project {project_id} is incomplete; repeat the delete"
        )
        self.project_id = project_id


# ---- auth ----


class AuthError(TaskBridgeError):
    status_code = 401


class NoCredential(AuthError):
    pass


class InvalidToken(AuthError):
    pass


class ExpiredToken(AuthError):
    pass


class UnknownIssuer(AuthError):
    pass


class InvalidCredentials(AuthError):
    """Username/password pair did not match a local account."""


class ProfileSetupRequired(AuthError):
    """A verified federated identity has no User yet."""

    def __init__(self, pending: NewIdentityPending) -> None:
        super().__init__(f"no account for federated subject {pending.subject}")
        self.pending = pending
