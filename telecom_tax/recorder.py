"""
Calculation recorder: writes calculation records and drives their
lifecycle (apply, adjust, void, validation marks).

Every transition is checked against ALLOWED_TRANSITIONS and then written
with a compare-and-set on the record's status and version, so two
operators racing on the same record cannot both succeed.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

from telecom_tax.exceptions import InvalidTransitionError
from telecom_tax.executor import ExecutionResult
from telecom_tax.logging_config import get_logger
from telecom_tax.records import (
    CalculableRef,
    CalculationRecord,
    CalculationStatus,
    CalculationType,
    EngineMetadata,
    ValidationStatus,
)
from telecom_tax.store import CalculationStore, InMemoryCalculationStore

logger = get_logger("recorder")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CalculationRecorder:
    def __init__(
        self,
        store: Optional[CalculationStore] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store if store is not None else InMemoryCalculationStore()
        self._clock = clock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def build(
        self,
        *,
        calculable: CalculableRef,
        calculation_type: CalculationType,
        base_amount: Decimal,
        quantity: int,
        input_snapshot: dict[str, Any],
        result: ExecutionResult,
        metadata: EngineMetadata,
        adjusts_calculation_id: Optional[str] = None,
        adjustment_reason: str = "",
    ) -> CalculationRecord:
        """Assemble a new record in status ``calculated`` without storing it."""
        return CalculationRecord(
            calculation_id=str(uuid.uuid4()),
            calculable=calculable,
            calculation_type=calculation_type,
            base_amount=base_amount,
            quantity=quantity,
            input_snapshot=input_snapshot,
            breakdown=list(result.breakdown),
            total_tax=result.total_tax,
            final_amount=result.final_amount,
            effective_rate=result.effective_rate,
            exemptions_applied=list(result.exemptions_applied),
            metadata=metadata,
            created_at=self._clock(),
            status=CalculationStatus.CALCULATED,
            adjusts_calculation_id=adjusts_calculation_id,
            adjustment_reason=adjustment_reason,
        )

    def record(self, **kwargs: Any) -> CalculationRecord:
        """Build and persist a record in one write."""
        record = self.build(**kwargs)
        self.store.add(record)
        return record

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _require(self, record: CalculationRecord, target: CalculationStatus) -> None:
        if not record.can_transition_to(target):
            raise InvalidTransitionError(
                record.calculation_id, record.status.value, target.value
            )

    def apply_to(self, calculation_id: str, document: CalculableRef) -> CalculationRecord:
        """
        Link the record to its finalized document. Calling again with the
        same document returns the record unchanged.
        """
        current = self.store.get(calculation_id)
        if current.status == CalculationStatus.APPLIED:
            if current.document == document:
                return current
            raise InvalidTransitionError(
                calculation_id,
                current.status.value,
                CalculationStatus.APPLIED.value,
                detail=f"already applied to {current.document}",
            )
        self._require(current, CalculationStatus.APPLIED)

        now = self._clock()
        updated = self.store.transition(
            calculation_id,
            current.status,
            current.version,
            {
                "status": CalculationStatus.APPLIED,
                "document": document,
                "applied_at": now,
                "updated_at": now,
            },
        )
        logger.info(
            "Calculation applied",
            extra={"calculation_id": calculation_id, "document": str(document)},
        )
        return updated

    def check_adjustable(self, calculation_id: str) -> CalculationRecord:
        current = self.store.get(calculation_id)
        self._require(current, CalculationStatus.ADJUSTED)
        return current

    def record_adjustment(
        self, original: CalculationRecord, successor: CalculationRecord
    ) -> CalculationRecord:
        """
        Store ``successor`` and mark ``original`` as adjusted in one step.
        The original's breakdown is left exactly as it was.
        """
        self._require(original, CalculationStatus.ADJUSTED)
        self.store.transition(
            original.calculation_id,
            original.status,
            original.version,
            {
                "status": CalculationStatus.ADJUSTED,
                "superseded_by": successor.calculation_id,
                "updated_at": self._clock(),
            },
            successor=successor,
        )
        logger.info(
            "Calculation adjusted",
            extra={
                "calculation_id": original.calculation_id,
                "successor_id": successor.calculation_id,
                "reason": successor.adjustment_reason,
            },
        )
        return successor

    def void(self, calculation_id: str, reason: str) -> CalculationRecord:
        current = self.store.get(calculation_id)
        self._require(current, CalculationStatus.VOIDED)
        now = self._clock()
        updated = self.store.transition(
            calculation_id,
            current.status,
            current.version,
            {
                "status": CalculationStatus.VOIDED,
                "voided_at": now,
                "void_reason": reason,
                "updated_at": now,
            },
        )
        logger.info(
            "Calculation voided",
            extra={"calculation_id": calculation_id, "reason": reason},
        )
        return updated

    def mark_validation(
        self, calculation_id: str, status: ValidationStatus, notes: str = ""
    ) -> CalculationRecord:
        current = self.store.get(calculation_id)
        updated = self.store.transition(
            calculation_id,
            current.status,
            current.version,
            {
                "validation_status": status,
                "validation_notes": notes,
                "updated_at": self._clock(),
            },
        )
        logger.info(
            "Calculation validation recorded",
            extra={"calculation_id": calculation_id, "validation_status": status.value},
        )
        return updated

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, calculation_id: str) -> CalculationRecord:
        return self.store.get(calculation_id)

    def history(self, calculable: CalculableRef, limit: int = 10) -> list[CalculationRecord]:
        return self.store.history(calculable, limit)

    def all(self) -> list[CalculationRecord]:
        return self.store.all()
