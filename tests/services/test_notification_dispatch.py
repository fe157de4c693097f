"""Tests for post-commit notification dispatch and the in-process dispatchers."""

from uuid import uuid4

from approval_config.schema import NotificationSettings
from approval_kernel.domain.notifications import NotificationEvent, NotificationType
from approval_services.notifications import (
    LoggingNotificationDispatcher,
    RecordingNotificationDispatcher,
    dispatch_events,
)


def event(notification_type=NotificationType.APPROVAL_NEEDED, recipients=("bob",)):
    return NotificationEvent(
        type=notification_type,
        instance_id=uuid4(),
        recipient_ids=tuple(recipients),
        payload={"step_index": 0},
    )


class FailingOnce:

    def __init__(self):
        self.delivered = []
        self._failed = False

    def notify(self, evt):
        if not self._failed:
            self._failed = True
            raise TimeoutError("smtp timeout")
        self.delivered.append(evt)


def test_delivers_in_order():
    dispatcher = RecordingNotificationDispatcher()
    events = [event(), event(NotificationType.REQUEST_APPROVED, ("alice",))]

    delivered, warnings = dispatch_events(dispatcher, events, NotificationSettings())

    assert delivered == tuple(events)
    assert warnings == ()
    assert dispatcher.events == events
    assert dispatcher.of_type(NotificationType.REQUEST_APPROVED) == [events[1]]


def test_skips_disabled_types_and_empty_recipients():
    dispatcher = RecordingNotificationDispatcher()
    settings = NotificationSettings(notify_on_completion=False)
    events = [
        event(NotificationType.REQUEST_APPROVED, ("alice",)),
        event(recipients=()),
        event(NotificationType.REQUEST_REJECTED, ("alice",)),
    ]

    delivered, _ = dispatch_events(dispatcher, events, settings)

    assert [e.type for e in delivered] == [NotificationType.REQUEST_REJECTED]


def test_failure_does_not_stop_later_events(captured_logs):
    dispatcher = FailingOnce()
    first, second = event(), event(NotificationType.REQUEST_CANCELLED, ("alice", "bob"))

    delivered, warnings = dispatch_events(dispatcher, [first, second], NotificationSettings())

    assert delivered == (second,)
    assert dispatcher.delivered == [second]
    assert len(warnings) == 1
    assert "approval_needed" in warnings[0]
    assert "smtp timeout" in warnings[0]
    [failure] = [r for r in captured_logs() if r["message"] == "notification_dispatch_failed"]
    assert failure["exc_type"] == "TimeoutError"
    assert failure["recipient_count"] == 1


def test_logging_dispatcher(captured_logs):
    evt = event(recipients=("bob", "carol"))
    LoggingNotificationDispatcher().notify(evt)

    [entry] = [r for r in captured_logs() if r["message"] == "notification_dispatched"]
    assert entry["notification_type"] == "approval_needed"
    assert entry["recipient_ids"] == ["bob", "carol"]
    assert entry["instance_id"] == str(evt.instance_id)


def test_recording_dispatcher_clear():
    dispatcher = RecordingNotificationDispatcher()
    dispatcher.notify(event())
    dispatcher.clear()
    assert dispatcher.events == []
