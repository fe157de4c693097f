"""
Engine settings schema.

Frozen dataclasses parsed from YAML by the loader.  Defaults are the
settings an embedded deployment gets when no file is configured.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from approval_kernel.domain.notifications import NotificationType


@dataclass(frozen=True)
class DatabaseSettings:
    """Where the workflow tables live."""

    url: str = "sqlite:///approval_engine.db"
    echo: bool = False


@dataclass(frozen=True)
class NotificationSettings:
    """Per-type notification toggles."""

    notify_on_approval_needed: bool = True
    notify_on_completion: bool = True
    notify_on_rejection: bool = True
    notify_on_cancellation: bool = True

    def allows(self, notification_type: NotificationType) -> bool:
        return {
            NotificationType.APPROVAL_NEEDED: self.notify_on_approval_needed,
            NotificationType.REQUEST_APPROVED: self.notify_on_completion,
            NotificationType.REQUEST_REJECTED: self.notify_on_rejection,
            NotificationType.REQUEST_CANCELLED: self.notify_on_cancellation,
        }[notification_type]


@dataclass(frozen=True)
class EngineSettings:
    """Behaviour switches for the workflow engine.

    ``max_commit_attempts`` bounds how often the facade re-runs a unit of
    work that lost an optimistic-concurrency race.
    """

    allow_drafts: bool = True
    require_comment_on_reject: bool = False
    require_comment_on_approve: bool = False
    max_commit_attempts: int = 3
    retry_backoff_seconds: float = 0.05
    admin_reference: str = "role:admin"
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)

    def __post_init__(self) -> None:
        if self.max_commit_attempts < 1:
            raise ValueError(
                f"max_commit_attempts must be at least 1, got {self.max_commit_attempts}"
            )
        if self.retry_backoff_seconds < 0:
            raise ValueError(
                f"retry_backoff_seconds must not be negative, got {self.retry_backoff_seconds}"
            )
        if not self.admin_reference.strip():
            raise ValueError("admin_reference must not be empty")
