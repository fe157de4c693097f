"""
Pytest fixtures for the approval workflow engine test suite.

Provides:
- A file-backed SQLite database per test (tables created fresh)
- Kernel services wired to one test session and a deterministic clock
- A WorkflowEngine facade with a recording notification dispatcher
- Structured log capture

Environment Variables:
- APPROVAL_TEST_DATABASE_URL: run against another database (e.g. PostgreSQL)
  instead of the per-test SQLite file.
"""

import json
import logging
import os
from io import StringIO

import pytest
from sqlalchemy.orm import Session, sessionmaker

from approval_config import EngineSettings
from approval_kernel.db.engine import build_engine, create_tables, drop_tables
from approval_kernel.domain.clock import DeterministicClock
from approval_kernel.domain.workflow import StepSpec, TemplateDefinition
from approval_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from approval_kernel.selectors.instance_selector import InstanceSelector
from approval_kernel.services.approval_recorder import ApprovalRecorder
from approval_kernel.services.auditor_service import AuditorService
from approval_kernel.services.instance_lifecycle import InstanceLifecycleManager
from approval_kernel.services.template_registry import TemplateRegistry
from approval_services.approver_resolver import StaticApproverResolver
from approval_services.notifications import RecordingNotificationDispatcher
from approval_services.workflow_engine import WorkflowEngine

ADMIN = "hr-admin"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture approval_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, workflow_engine):
            workflow_engine.create_instance(...)
            logs = captured_logs()
            assert any(r["message"] == "instance_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    handler.setLevel(logging.DEBUG)
    root = logging.getLogger("approval_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def db_engine(tmp_path):
    """A fresh database with every workflow table created."""
    url = os.environ.get(
        "APPROVAL_TEST_DATABASE_URL", f"sqlite:///{tmp_path / 'approval_test.db'}"
    )
    engine = build_engine(url)
    drop_tables(engine)
    create_tables(engine)
    yield engine
    drop_tables(engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker[Session]:
    return sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """A session for direct service tests. Never committed."""
    s = session_factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def deterministic_clock():
    return DeterministicClock()


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def resolver():
    """Directory used across the suite.

    One manager and one finance approver (the ExpenseApproval scenarios),
    a two-person review panel and a three-person board.
    """
    return StaticApproverResolver(
        {
            "admin": [ADMIN],
            "manager": ["bob"],
            "finance": ["carol"],
            "reviewers": ["dave", "erin"],
            "board": ["frank", "grace", "heidi"],
            "empty": [],
        }
    )


@pytest.fixture
def dispatcher():
    return RecordingNotificationDispatcher()


# =============================================================================
# Kernel services (one session, no commit)
# =============================================================================


@pytest.fixture
def auditor_service(session, deterministic_clock):
    return AuditorService(session, deterministic_clock)


@pytest.fixture
def template_registry(session, auditor_service, deterministic_clock):
    return TemplateRegistry(session, auditor_service, deterministic_clock)


@pytest.fixture
def lifecycle(session, auditor_service, resolver, deterministic_clock):
    return InstanceLifecycleManager(session, auditor_service, resolver, deterministic_clock)


@pytest.fixture
def recorder(session, auditor_service, lifecycle, deterministic_clock):
    return ApprovalRecorder(session, auditor_service, lifecycle, deterministic_clock)


@pytest.fixture
def instance_selector(session):
    return InstanceSelector(session)


# =============================================================================
# Facade
# =============================================================================


@pytest.fixture
def engine_settings():
    return EngineSettings(retry_backoff_seconds=0.0)


@pytest.fixture
def workflow_engine(session_factory, resolver, dispatcher, engine_settings, deterministic_clock):
    return WorkflowEngine(
        session_factory,
        resolver,
        dispatcher=dispatcher,
        settings=engine_settings,
        clock=deterministic_clock,
        sleep=lambda seconds: None,
    )


# =============================================================================
# Template definitions
# =============================================================================


@pytest.fixture
def expense_definition():
    """ExpenseApproval: Manager (ALL, one approver) then Finance (ALL, one approver)."""
    return TemplateDefinition(
        name="ExpenseApproval",
        domain_type="expense",
        description="Manager then finance sign-off",
        allow_drafts=True,
        steps=(
            StepSpec(order=1, name="Manager", approver_refs=("role:manager",), rule="ALL"),
            StepSpec(order=2, name="Finance", approver_refs=("role:finance",), rule="ALL"),
        ),
    )


@pytest.fixture
def make_definition():
    """Factory for single- or multi-step definitions.

    ``steps`` is a sequence of ``(name, refs, rule)`` tuples.
    """

    def _make(
        steps=(("Review", ("role:reviewers",), "ALL"),),
        name="Custom Flow",
        domain_type="custom",
        allow_drafts=False,
    ) -> TemplateDefinition:
        return TemplateDefinition(
            name=name,
            domain_type=domain_type,
            allow_drafts=allow_drafts,
            steps=tuple(
                StepSpec(order=i + 1, name=step_name, approver_refs=tuple(refs), rule=rule)
                for i, (step_name, refs, rule) in enumerate(steps)
            ),
        )

    return _make
