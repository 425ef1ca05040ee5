"""
Durable Order and Payment stores.

A thin record-oriented layer over SQLAlchemy with the four operations the
reconciliation code relies on: ``insert``, ``update_by_id``, ``find_by_field``
and ``count_by_field``. Every method opens its own session unless an outer
session is passed in through ``db``, in which case the caller owns the
transaction (used for the atomic Order + Payment insert).
"""
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from payhooks.errors import ConflictError, DependencyError, NotFoundError
from payhooks.models import Order, Payment

logger = structlog.get_logger(__name__)


class RecordStore:
    model: Any = None

    def __init__(self, session_factory):
        self._session_factory = session_factory

    @contextmanager
    def _session(self, db: Optional[Session] = None) -> Iterator[Session]:
        if db is not None:
            yield db
            return
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _column(self, field: str):
        column = getattr(self.model, field, None)
        if column is None:
            raise ValueError(f"{self.model.__tablename__} has no field {field!r}")
        return column

    def insert(self, record, db: Optional[Session] = None):
        try:
            with self._session(db) as session:
                session.add(record)
                session.flush()
                if db is None:
                    session.commit()
                    session.refresh(record)
                return record
        except IntegrityError as e:
            logger.warning("store_insert_conflict", table=self.model.__tablename__, error=str(e.orig))
            raise ConflictError(f"Duplicate {self.model.__tablename__} record") from e
        except SQLAlchemyError as e:
            logger.error("store_insert_failed", table=self.model.__tablename__, error=str(e))
            raise DependencyError(f"Failed to insert {self.model.__tablename__} record") from e

    def get(self, record_id: str):
        try:
            with self._session() as session:
                return session.get(self.model, record_id)
        except SQLAlchemyError as e:
            raise DependencyError(f"Failed to read {self.model.__tablename__} record") from e

    def update_by_id(self, record_id: str, patch: Dict[str, Any], db: Optional[Session] = None):
        try:
            with self._session(db) as session:
                record = session.get(self.model, record_id)
                if record is None:
                    raise NotFoundError(
                        f"{self.model.__tablename__} record not found", id=record_id
                    )
                self._apply_patch(record, patch)
                session.flush()
                if db is None:
                    session.commit()
                    session.refresh(record)
                return record
        except SQLAlchemyError as e:
            logger.error("store_update_failed", table=self.model.__tablename__, id=record_id, error=str(e))
            raise DependencyError(f"Failed to update {self.model.__tablename__} record") from e

    def _apply_patch(self, record, patch: Dict[str, Any]) -> None:
        for field, value in patch.items():
            self._column(field)
            setattr(record, field, value)

    def find_by_field(self, field: str, value: Any, limit: int = 1) -> List[Any]:
        column = self._column(field)
        try:
            with self._session() as session:
                return (
                    session.query(self.model)
                    .filter(column == value)
                    .order_by(self.model.created_at.desc())
                    .limit(limit)
                    .all()
                )
        except SQLAlchemyError as e:
            logger.error("store_query_failed", table=self.model.__tablename__, field=field, error=str(e))
            raise DependencyError(f"Failed to query {self.model.__tablename__} records") from e

    def count_by_field(self, field: str, value: Any) -> int:
        column = self._column(field)
        try:
            with self._session() as session:
                return session.query(self.model).filter(column == value).count()
        except SQLAlchemyError as e:
            logger.error("store_count_failed", table=self.model.__tablename__, field=field, error=str(e))
            raise DependencyError(f"Failed to count {self.model.__tablename__} records") from e


class OrderStore(RecordStore):
    model = Order

    def find_unpaid_before(self, cutoff, limit: int = 100) -> List[Order]:
        """Pending orders created before ``cutoff`` that have no Payment row."""
        try:
            with self._session() as session:
                linked = session.query(Payment.order_id).filter(Payment.order_id.isnot(None))
                return (
                    session.query(Order)
                    .filter(Order.status == "pending")
                    .filter(Order.created_at < cutoff)
                    .filter(~Order.id.in_(linked))
                    .order_by(Order.created_at)
                    .limit(limit)
                    .all()
                )
        except SQLAlchemyError as e:
            raise DependencyError("Failed to query abandoned orders") from e


class PaymentStore(RecordStore):
    model = Payment

    def _apply_patch(self, record, patch: Dict[str, Any]) -> None:
        patch = dict(patch)
        if "meta" in patch:
            # metadata is merged, never replaced
            merged = dict(record.meta or {})
            merged.update(patch.pop("meta") or {})
            record.meta = merged
        super()._apply_patch(record, patch)
