"""
approval_services.notifications -- Post-commit notification delivery.

Responsibility:
    Dispatch the notification events a committed unit of work produced,
    filtered by the engine's notification toggles.  Delivery failures are
    logged at WARNING and returned as warnings; they never undo the
    committed state change.
"""

from __future__ import annotations

from collections.abc import Iterable

from approval_config.schema import NotificationSettings
from approval_kernel.domain.notifications import NotificationDispatcher, NotificationEvent
from approval_kernel.logging_config import get_logger

logger = get_logger("services.notifications")


class LoggingNotificationDispatcher:
    """Writes each event to the structured log. The default dispatcher."""

    def notify(self, event: NotificationEvent) -> None:
        logger.info(
            "notification_dispatched",
            extra={
                "notification_type": event.type.value,
                "instance_id": str(event.instance_id),
                "recipient_ids": list(event.recipient_ids),
            },
        )


class RecordingNotificationDispatcher:
    """Keeps every event in memory, for tests and embedding."""

    def __init__(self) -> None:
        self.events: list[NotificationEvent] = []

    def notify(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def of_type(self, notification_type) -> list[NotificationEvent]:
        return [e for e in self.events if e.type == notification_type]

    def clear(self) -> None:
        self.events.clear()


def dispatch_events(
    dispatcher: NotificationDispatcher,
    events: Iterable[NotificationEvent],
    settings: NotificationSettings,
) -> tuple[tuple[NotificationEvent, ...], tuple[str, ...]]:
    """Deliver ``events`` in order.

    Returns:
        ``(delivered, warnings)``: the events handed to the dispatcher and
        one message per failed delivery.
    """
    delivered: list[NotificationEvent] = []
    warnings: list[str] = []
    for event in events:
        if not event.recipient_ids or not settings.allows(event.type):
            continue
        try:
            dispatcher.notify(event)
        except Exception as exc:  # delivery is best-effort after commit
            logger.warning(
                "notification_dispatch_failed",
                extra={
                    "notification_type": event.type.value,
                    "instance_id": str(event.instance_id),
                    "recipient_count": len(event.recipient_ids),
                },
                exc_info=True,
            )
            warnings.append(
                f"{event.type.value} notification for instance {event.instance_id} "
                f"failed: {exc}"
            )
        else:
            delivered.append(event)
    return tuple(delivered), tuple(warnings)
