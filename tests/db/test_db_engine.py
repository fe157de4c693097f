"""Tests for the module-level engine and session_scope."""

import pytest
from sqlalchemy import select

from approval_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from approval_kernel.domain.workflow import StepSpec, TemplateDefinition
from approval_kernel.models.template import WorkflowTemplateModel
from approval_kernel.services.auditor_service import AuditorService
from approval_kernel.services.template_registry import TemplateRegistry


@pytest.fixture
def module_engine(tmp_path):
    engine = init_engine_from_url(f"sqlite:///{tmp_path / 'module.db'}")
    create_tables()
    yield engine
    reset_engine()


def _definition(name="Leave"):
    return TemplateDefinition(
        name=name,
        domain_type="leave",
        steps=(StepSpec(order=1, name="Manager", approver_refs=("role:manager",), rule="ALL"),),
    )


def _create(session, name):
    auditor = AuditorService(session)
    return TemplateRegistry(session, auditor).create_template(_definition(name), "hr-admin")


class TestModuleEngine:

    def test_uninitialized_access_raises(self):
        reset_engine()
        with pytest.raises(RuntimeError):
            get_engine()
        with pytest.raises(RuntimeError):
            get_session()
        with pytest.raises(RuntimeError):
            get_session_factory()

    def test_init_binds_sessions(self, module_engine):
        assert get_engine() is module_engine
        assert module_engine.dialect.name == "sqlite"
        session = get_session()
        try:
            assert session.get_bind() is module_engine
        finally:
            session.close()
        assert get_session_factory().kw["expire_on_commit"] is False

    def test_init_logs_dialect(self, tmp_path, captured_logs):
        init_engine_from_url(f"sqlite:///{tmp_path / 'logged.db'}")
        try:
            [entry] = [r for r in captured_logs() if r["message"] == "engine_initialized"]
            assert entry["dialect"] == "sqlite"
        finally:
            reset_engine()


class TestSessionScope:

    def test_commits_on_success(self, module_engine):
        with session_scope() as session:
            template = _create(session, "Committed")

        with session_scope() as session:
            stored = session.scalars(select(WorkflowTemplateModel)).all()
        assert [t.id for t in stored] == [template.id]

    def test_rolls_back_on_error(self, module_engine, captured_logs):
        with pytest.raises(ZeroDivisionError):
            with session_scope() as session:
                _create(session, "Discarded")
                1 / 0

        with session_scope(get_session_factory()) as session:
            assert session.scalars(select(WorkflowTemplateModel)).all() == []
        [entry] = [r for r in captured_logs() if r["message"] == "transaction_rolled_back"]
        assert entry["level"] == "WARNING"
        assert entry["exc_type"] == "ZeroDivisionError"
