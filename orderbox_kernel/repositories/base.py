"""
Module: orderbox_kernel.repositories.base
Responsibility: Shared plumbing for repositories -- a session factory and a
    transactional scope that turns driver failures into RepositoryError.
Architecture position: Kernel > Repositories.  May import from db/, models/
    and domain/.  MUST NOT import from orderbox_batch.

Invariants enforced:
    - Session ownership: every public repository call opens, commits and
      closes its own session.  Batch tasks run on launcher threads and never
      share a session across calls.
    - DTO return convention: repositories return frozen values from
      ``orderbox_kernel.domain.values``, never live ORM rows.
"""

from contextlib import contextmanager
from typing import Callable, Generator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from orderbox_kernel.db.engine import session_scope
from orderbox_kernel.exceptions import RepositoryError


class BaseRepository:
    """
    Base class for repositories.

    Contract:
        Subclasses call ``self._scope(operation)`` around each unit of work.
        A SQLAlchemyError raised inside is rolled back and re-raised as
        ``RepositoryError(operation, reason)`` chained to the original.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @contextmanager
    def _scope(self, operation: str) -> Generator[Session, None, None]:
        try:
            with session_scope(self._session_factory) as session:
                yield session
        except SQLAlchemyError as exc:
            raise RepositoryError(operation, str(exc)) from exc
