"""
Optimistic-concurrency tests for decisions and cancellation.

Two sessions read the same pending instance; the first to commit wins and
the other fails at flush with StaleStateError instead of double-advancing
or overwriting a terminal state.  The interleaving is driven explicitly so
the tests are deterministic on SQLite.
"""

import pytest

from approval_kernel.domain.workflow import InstanceStatus
from approval_kernel.exceptions import InvalidStateError, StaleStateError
from approval_kernel.services.approval_recorder import ApprovalRecorder
from approval_kernel.services.auditor_service import AuditorService
from approval_kernel.services.instance_lifecycle import InstanceLifecycleManager


class Unit:
    """Kernel services on their own session, as one facade attempt would have."""

    def __init__(self, session_factory, resolver, clock):
        self.session = session_factory()
        auditor = AuditorService(self.session, clock)
        self.lifecycle = InstanceLifecycleManager(self.session, auditor, resolver, clock)
        self.recorder = ApprovalRecorder(self.session, auditor, self.lifecycle, clock)

    def close(self):
        self.session.rollback()
        self.session.close()


@pytest.fixture
def units(session_factory, resolver, deterministic_clock):
    opened = []

    def _open():
        unit = Unit(session_factory, resolver, deterministic_clock)
        opened.append(unit)
        return unit

    yield _open
    for unit in opened:
        unit.close()


@pytest.fixture
def panel_instance(workflow_engine, make_definition):
    """Committed pending instance: Panel (ALL: dave, erin) then Finance (carol)."""
    template = workflow_engine.create_template(
        make_definition(
            steps=(("Panel", ("role:reviewers",), "ALL"), ("Finance", ("role:finance",), "ALL"))
        ),
        "hr-admin",
    )
    return workflow_engine.create_instance(template.id, "alice").instance


class TestConcurrentDecisions:

    def test_two_last_approvals_cannot_both_commit(self, units, workflow_engine, panel_instance):
        first, second = units(), units()
        step = panel_instance.steps[0]

        # Both units read the instance before either writes
        first.lifecycle.load_instance_model(panel_instance.id)
        second.lifecycle.load_instance_model(panel_instance.id)

        first.recorder.record_decision(panel_instance.id, step.id, "dave", "approved")
        first.session.commit()

        with pytest.raises(StaleStateError):
            second.recorder.record_decision(panel_instance.id, step.id, "erin", "approved")

        state = workflow_engine.get_instance(panel_instance.id)
        assert state.current_step_index == 0
        assert state.status == InstanceStatus.PENDING

    def test_loser_succeeds_on_a_fresh_read(self, units, workflow_engine, panel_instance):
        first, second = units(), units()
        step = panel_instance.steps[0]
        first.lifecycle.load_instance_model(panel_instance.id)
        second.lifecycle.load_instance_model(panel_instance.id)

        first.recorder.record_decision(panel_instance.id, step.id, "dave", "approved")
        first.session.commit()
        with pytest.raises(StaleStateError):
            second.recorder.record_decision(panel_instance.id, step.id, "erin", "approved")
        second.session.rollback()

        retry = units()
        outcome = retry.recorder.record_decision(panel_instance.id, step.id, "erin", "approved")
        retry.session.commit()

        assert outcome.instance.current_step_index == 1
        assert workflow_engine.get_instance(panel_instance.id).current_step_index == 1

    def test_approval_racing_cancel(self, units, workflow_engine, panel_instance):
        canceller, approver = units(), units()
        step = panel_instance.steps[0]
        canceller.lifecycle.load_instance_model(panel_instance.id)
        approver.lifecycle.load_instance_model(panel_instance.id)

        canceller.lifecycle.cancel_instance(panel_instance.id, "alice")
        canceller.session.commit()

        with pytest.raises(StaleStateError):
            approver.recorder.record_decision(panel_instance.id, step.id, "dave", "approved")
        approver.session.rollback()

        # Re-reading shows the terminal state
        with pytest.raises(InvalidStateError):
            units().recorder.record_decision(panel_instance.id, step.id, "dave", "approved")

        assert workflow_engine.get_instance(panel_instance.id).status == InstanceStatus.CANCELLED

    def test_facade_retries_into_the_new_state(self, units, workflow_engine, panel_instance):
        """A facade call after a concurrent commit always works from a fresh read."""
        step = panel_instance.steps[0]
        other = units()
        other.recorder.record_decision(panel_instance.id, step.id, "dave", "approved")
        other.session.commit()

        result = workflow_engine.record_decision(panel_instance.id, step.id, "erin", "approved")

        assert result.instance.current_step_index == 1
        assert result.instance.version > panel_instance.version

    def test_comment_edit_cannot_land_after_completion(
        self, units, workflow_engine, make_definition
    ):
        template = workflow_engine.create_template(make_definition(), "hr-admin")
        instance = workflow_engine.create_instance(template.id, "alice").instance
        step = instance.steps[0]
        workflow_engine.record_decision(instance.id, step.id, "dave", "approved", comment="first")

        editor = units()
        editor.lifecycle.load_instance_model(instance.id)

        completed = workflow_engine.record_decision(instance.id, step.id, "erin", "approved")
        assert completed.status == InstanceStatus.APPROVED

        with pytest.raises(StaleStateError):
            editor.recorder.record_decision(
                instance.id, step.id, "dave", "approved", comment="edited after close"
            )
        editor.session.rollback()

        [dave] = [
            r for r in workflow_engine.get_decision_history(instance.id) if r.approver_id == "dave"
        ]
        assert dave.comment == "first"
        assert workflow_engine.get_instance(instance.id).status == InstanceStatus.APPROVED
