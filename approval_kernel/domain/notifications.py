"""Notification events emitted by the workflow engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol
from uuid import UUID


class NotificationType(str, Enum):
    APPROVAL_NEEDED = "approval_needed"
    REQUEST_APPROVED = "request_approved"
    REQUEST_REJECTED = "request_rejected"
    REQUEST_CANCELLED = "request_cancelled"


@dataclass(frozen=True)
class NotificationEvent:
    """A message for zero or more recipients about one instance."""

    type: NotificationType
    instance_id: UUID
    recipient_ids: tuple[str, ...]
    payload: dict[str, Any] = field(default_factory=dict)


class NotificationDispatcher(Protocol):
    """Delivery collaborator. Called only after the unit of work commits."""

    def notify(self, event: NotificationEvent) -> None:
        ...
