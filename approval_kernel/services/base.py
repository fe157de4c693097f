"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for
    every service in the kernel layer.  Concrete services receive a
    SQLAlchemy ``Session`` and use ``session.flush()`` -- never
    ``session.commit()``.

Invariants enforced:
    Transaction boundaries: services flush within the caller's transaction
    and never commit or roll back themselves.  The caller (the
    ``WorkflowEngine`` facade or a test) owns commit/rollback, so a
    decision, its aggregation and the resulting transition land together
    or not at all.
"""

from abc import ABC
from contextlib import contextmanager
from typing import Generator

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.exceptions import StaleStateError


class BaseService(ABC):
    """
    Abstract base class for all kernel services.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide cross-entity queries -- those belong
          in ``approval_kernel/selectors/``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()

    @contextmanager
    def concurrency_guard(
        self, entity_type: str, entity_id
    ) -> Generator[None, None, None]:
        """Translate lost optimistic-concurrency races into StaleStateError."""
        try:
            yield
        except (StaleDataError, IntegrityError) as exc:
            raise StaleStateError(entity_type, str(entity_id)) from exc

    def flush(self, entity_type: str, entity_id) -> None:
        with self.concurrency_guard(entity_type, entity_id):
            self.session.flush()
