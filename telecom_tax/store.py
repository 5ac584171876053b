"""
Calculation record persistence.

Two stores share one contract:
- InMemoryCalculationStore - process-local, used by default and in tests
- SqlCalculationStore      - SQLAlchemy table ``tax_calculations``

Records are written whole in a single operation. Afterwards only the
lifecycle fields may change, and only through ``transition()``, which is a
compare-and-set on (status, version): a concurrent change makes it fail
with InvalidTransitionError instead of blocking.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Integer,
    Numeric,
    String,
    create_engine,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from telecom_tax.exceptions import CalculationNotFoundError, InvalidTransitionError
from telecom_tax.logging_config import get_logger
from telecom_tax.records import CalculableRef, CalculationRecord, CalculationStatus

logger = get_logger("store")

# Fields that may change after a record is written
LIFECYCLE_FIELDS = frozenset(
    {
        "status",
        "validation_status",
        "validation_notes",
        "updated_at",
        "document",
        "applied_at",
        "voided_at",
        "void_reason",
        "superseded_by",
    }
)


def _check_changes(changes: dict[str, Any]) -> None:
    frozen = set(changes) - LIFECYCLE_FIELDS
    if frozen:
        raise ValueError(f"Immutable calculation fields cannot change: {sorted(frozen)}")


class CalculationStore(ABC):
    @abstractmethod
    def add(self, record: CalculationRecord) -> None:
        """Persist a new record atomically."""

    @abstractmethod
    def get(self, calculation_id: str) -> CalculationRecord:
        """Return a record or raise CalculationNotFoundError."""

    @abstractmethod
    def transition(
        self,
        calculation_id: str,
        expected_status: CalculationStatus,
        expected_version: int,
        changes: dict[str, Any],
        successor: Optional[CalculationRecord] = None,
    ) -> CalculationRecord:
        """
        Apply lifecycle ``changes`` if the record is still at
        (expected_status, expected_version); optionally add ``successor``
        in the same step. Returns the updated record.
        """

    @abstractmethod
    def history(self, calculable: CalculableRef, limit: int = 10) -> list[CalculationRecord]:
        """Records for one calculable, newest first."""

    @abstractmethod
    def all(self) -> list[CalculationRecord]:
        """Every record, oldest first."""

    def find(self, calculation_id: str) -> Optional[CalculationRecord]:
        try:
            return self.get(calculation_id)
        except CalculationNotFoundError:
            return None


def _conflict(current: CalculationRecord, attempted: Any) -> InvalidTransitionError:
    target = attempted.value if hasattr(attempted, "value") else str(attempted)
    logger.warning(
        "Stale lifecycle update rejected",
        extra={"calculation_id": current.calculation_id, "version": current.version},
    )
    return InvalidTransitionError(
        current.calculation_id,
        current.status.value,
        target,
        detail=f"record changed concurrently (version {current.version})",
    )


# -----------------------------------------------------------------------
# In-memory store
# -----------------------------------------------------------------------


class InMemoryCalculationStore(CalculationStore):
    """Keeps serialized copies so callers can never alias stored state."""

    def __init__(self) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        self._order: list[str] = []
        self._lock = threading.Lock()

    def add(self, record: CalculationRecord) -> None:
        data = record.to_dict()
        with self._lock:
            if record.calculation_id in self._rows:
                raise ValueError(f"Calculation {record.calculation_id} already exists")
            self._rows[record.calculation_id] = data
            self._order.append(record.calculation_id)

    def get(self, calculation_id: str) -> CalculationRecord:
        with self._lock:
            data = self._rows.get(calculation_id)
        if data is None:
            raise CalculationNotFoundError(calculation_id)
        return CalculationRecord.from_dict(data)

    def transition(
        self,
        calculation_id: str,
        expected_status: CalculationStatus,
        expected_version: int,
        changes: dict[str, Any],
        successor: Optional[CalculationRecord] = None,
    ) -> CalculationRecord:
        _check_changes(changes)
        with self._lock:
            data = self._rows.get(calculation_id)
            if data is None:
                raise CalculationNotFoundError(calculation_id)
            current = CalculationRecord.from_dict(data)
            if current.status != expected_status or current.version != expected_version:
                raise _conflict(current, changes.get("status", current.status))
            updated = replace(current, version=current.version + 1, **changes)
            self._rows[calculation_id] = updated.to_dict()
            if successor is not None:
                self._rows[successor.calculation_id] = successor.to_dict()
                self._order.append(successor.calculation_id)
        return updated

    def history(self, calculable: CalculableRef, limit: int = 10) -> list[CalculationRecord]:
        with self._lock:
            rows = [self._rows[cid] for cid in reversed(self._order)]
        matches = [
            CalculationRecord.from_dict(r)
            for r in rows
            if r["calculable"] == calculable.to_dict()
        ]
        return matches[:limit]

    def all(self) -> list[CalculationRecord]:
        with self._lock:
            rows = [self._rows[cid] for cid in self._order]
        return [CalculationRecord.from_dict(r) for r in rows]


# -----------------------------------------------------------------------
# SQLAlchemy store
# -----------------------------------------------------------------------


class Base(DeclarativeBase):
    pass


class CalculationRow(Base):
    """One row per calculation record; ``payload`` holds the full record."""

    __tablename__ = "tax_calculations"

    calculation_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    seq: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    calculable_kind: Mapped[str] = mapped_column(String(32), index=True)
    calculable_id: Mapped[str] = mapped_column(String(64), index=True)
    calculation_type: Mapped[str] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(16), index=True)
    validation_status: Mapped[str] = mapped_column(String(16))
    base_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9))
    quantity: Mapped[int] = mapped_column(Integer)
    total_tax: Mapped[Decimal] = mapped_column(Numeric(38, 9))
    final_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9))
    adjusts_calculation_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)


def _row_values(record: CalculationRecord) -> dict[str, Any]:
    return {
        "calculable_kind": record.calculable.kind.value,
        "calculable_id": record.calculable.id,
        "calculation_type": record.calculation_type.value,
        "status": record.status.value,
        "validation_status": record.validation_status.value,
        "base_amount": record.base_amount,
        "quantity": record.quantity,
        "total_tax": record.total_tax,
        "final_amount": record.final_amount,
        "adjusts_calculation_id": record.adjusts_calculation_id,
        "version": record.version,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
        "payload": record.to_dict(),
    }


def make_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


class SqlCalculationStore(CalculationStore):
    def __init__(self, database_url: str = "sqlite://", engine: Optional[Engine] = None) -> None:
        self.engine = engine or make_engine(database_url)
        Base.metadata.create_all(self.engine)
        self._sessions = sessionmaker(self.engine, expire_on_commit=False)
        self._seq_lock = threading.Lock()

    def _next_seq(self, session: Session) -> int:
        current = session.scalar(select(CalculationRow.seq).order_by(CalculationRow.seq.desc()).limit(1))
        return (current or 0) + 1

    def add(self, record: CalculationRecord) -> None:
        with self._seq_lock, self._sessions.begin() as session:
            session.add(
                CalculationRow(
                    calculation_id=record.calculation_id,
                    seq=self._next_seq(session),
                    **_row_values(record),
                )
            )

    def get(self, calculation_id: str) -> CalculationRecord:
        with self._sessions() as session:
            row = session.get(CalculationRow, calculation_id)
            if row is None:
                raise CalculationNotFoundError(calculation_id)
            return CalculationRecord.from_dict(row.payload)

    def transition(
        self,
        calculation_id: str,
        expected_status: CalculationStatus,
        expected_version: int,
        changes: dict[str, Any],
        successor: Optional[CalculationRecord] = None,
    ) -> CalculationRecord:
        _check_changes(changes)
        current = self.get(calculation_id)
        if current.status != expected_status or current.version != expected_version:
            raise _conflict(current, changes.get("status", current.status))

        updated = replace(current, version=current.version + 1, **changes)
        values = _row_values(updated)
        with self._seq_lock, self._sessions.begin() as session:
            result = session.execute(
                update(CalculationRow)
                .where(
                    CalculationRow.calculation_id == calculation_id,
                    CalculationRow.status == expected_status.value,
                    CalculationRow.version == expected_version,
                )
                .values(**values)
            )
            if result.rowcount != 1:
                # Raising inside begin() rolls the successor back as well
                latest = CalculationRecord.from_dict(
                    session.get(CalculationRow, calculation_id).payload
                )
                raise _conflict(latest, changes.get("status", latest.status))
            if successor is not None:
                session.add(
                    CalculationRow(
                        calculation_id=successor.calculation_id,
                        seq=self._next_seq(session),
                        **_row_values(successor),
                    )
                )
        return updated

    def history(self, calculable: CalculableRef, limit: int = 10) -> list[CalculationRecord]:
        stmt = (
            select(CalculationRow.payload)
            .where(
                CalculationRow.calculable_kind == calculable.kind.value,
                CalculationRow.calculable_id == calculable.id,
            )
            .order_by(CalculationRow.seq.desc())
            .limit(limit)
        )
        with self._sessions() as session:
            return [CalculationRecord.from_dict(p) for p in session.scalars(stmt)]

    def all(self) -> list[CalculationRecord]:
        with self._sessions() as session:
            payloads = session.scalars(select(CalculationRow.payload).order_by(CalculationRow.seq))
            return [CalculationRecord.from_dict(p) for p in payloads]
