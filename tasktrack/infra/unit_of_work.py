"""All-or-nothing writes spanning several tables.

    with UnitOfWork() as uow:
        uow.session.add(task)
        uow.session.add_all(notifications)
        uow.commit()

Leaving the block without ``commit()`` (business-rule failure, unexpected
fault, or plain return) rolls back everything added so far; the session is
closed on every exit path.
"""

from __future__ import annotations

from types import TracebackType

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from tasktrack.domain.errors import ConflictError, ErrorCode, TransactionError
from tasktrack.infra.db import get_engine

logger = structlog.get_logger(__name__)


class UnitOfWork:
    def __init__(self, session: Session | None = None) -> None:
        self._external = session
        self._session: Session | None = None
        self._committed = False

    @property
    def session(self) -> Session:
        if self._session is None:
            raise RuntimeError("unit of work has not been started")
        return self._session

    def begin(self) -> UnitOfWork:
        self._session = self._external or Session(get_engine(), expire_on_commit=False)
        self._committed = False
        return self

    def commit(self, *, integrity_as_conflict: bool = True) -> None:
        """Commit the session. Constraint violations surface as ``CONFLICT``
        unless the caller asks for them to be reported as a failed transaction."""
        session = self.session
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            if not integrity_as_conflict:
                logger.error("transaction_commit_failed", error=str(exc))
                raise TransactionError(ErrorCode.TRANSACTION_FAILED, "transaction failed") from exc
            raise ConflictError(ErrorCode.CONFLICT, "write conflicts with existing data") from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("transaction_commit_failed", error=str(exc))
            raise TransactionError(ErrorCode.TRANSACTION_FAILED, "transaction failed") from exc
        self._committed = True

    def abort(self) -> None:
        if self._session is not None and not self._committed:
            self._session.rollback()

    def release(self) -> None:
        if self._session is not None and self._external is None:
            self._session.close()
        self._session = None

    def __enter__(self) -> UnitOfWork:
        return self.begin()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        try:
            self.abort()
        finally:
            self.release()
