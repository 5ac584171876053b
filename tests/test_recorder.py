"""Tests for the CalculationRecorder lifecycle."""

import logging
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from telecom_tax.exceptions import InvalidTransitionError
from telecom_tax.executor import ExecutionResult
from telecom_tax.recorder import CalculationRecorder
from telecom_tax.records import (
    ALLOWED_TRANSITIONS,
    CalculableKind,
    CalculableRef,
    CalculationStatus,
    CalculationType,
    EngineMetadata,
    ValidationStatus,
)

LINE = CalculableRef(CalculableKind.INVOICE_LINE, "INV-1/1")
INVOICE = CalculableRef(CalculableKind.INVOICE_LINE, "INV-1")
NOW = datetime(2025, 1, 15, 9, 30, tzinfo=timezone.utc)

RESULT = ExecutionResult(
    extended_base=Decimal("100.00"),
    breakdown=[],
    total_tax=Decimal("6.25"),
    inclusive_tax=Decimal("0"),
    final_amount=Decimal("106.25"),
    effective_rate=Decimal("0.062500"),
)


@pytest.fixture
def recorder() -> CalculationRecorder:
    return CalculationRecorder(clock=lambda: NOW)


def _record(recorder, **overrides):
    fields = dict(
        calculable=LINE,
        calculation_type=CalculationType.INVOICE,
        base_amount=Decimal("100.00"),
        quantity=1,
        input_snapshot={},
        result=RESULT,
        metadata=EngineMetadata(),
    )
    fields.update(overrides)
    return recorder.record(**fields)


def test_new_record_is_calculated(recorder):
    record = _record(recorder)
    assert record.status == CalculationStatus.CALCULATED
    assert record.validation_status == ValidationStatus.PENDING
    assert record.created_at == NOW
    assert record.version == 1
    assert recorder.get(record.calculation_id).total_tax == Decimal("6.25")


def test_build_does_not_store(recorder):
    record = recorder.build(
        calculable=LINE,
        calculation_type=CalculationType.PREVIEW,
        base_amount=Decimal("1"),
        quantity=1,
        input_snapshot={},
        result=RESULT,
        metadata=EngineMetadata(),
    )
    assert recorder.store.find(record.calculation_id) is None


def test_allowed_transitions_table():
    assert ALLOWED_TRANSITIONS[CalculationStatus.APPLIED] == {CalculationStatus.CALCULATED}
    assert CalculationStatus.VOIDED not in ALLOWED_TRANSITIONS[CalculationStatus.ADJUSTED]


# ── apply_to ─────────────────────────────────────────────────────────


def test_apply_to_links_document(recorder):
    record = _record(recorder)
    applied = recorder.apply_to(record.calculation_id, INVOICE)
    assert applied.status == CalculationStatus.APPLIED
    assert applied.document == INVOICE
    assert applied.applied_at == NOW


def test_apply_to_same_document_is_idempotent(recorder):
    record = _record(recorder)
    first = recorder.apply_to(record.calculation_id, INVOICE)
    second = recorder.apply_to(record.calculation_id, INVOICE)
    assert second.version == first.version


def test_apply_to_other_document_rejected(recorder):
    record = _record(recorder)
    recorder.apply_to(record.calculation_id, INVOICE)
    other = CalculableRef(CalculableKind.INVOICE_LINE, "INV-2")
    with pytest.raises(InvalidTransitionError, match="already applied"):
        recorder.apply_to(record.calculation_id, other)


def test_voided_record_cannot_be_applied(recorder):
    record = _record(recorder)
    recorder.void(record.calculation_id, "duplicate")
    with pytest.raises(InvalidTransitionError) as exc_info:
        recorder.apply_to(record.calculation_id, INVOICE)
    assert exc_info.value.current_status == "voided"
    assert exc_info.value.attempted == "applied"


# ── void ─────────────────────────────────────────────────────────────


def test_void_applied_record(recorder):
    record = _record(recorder)
    recorder.apply_to(record.calculation_id, INVOICE)
    voided = recorder.void(record.calculation_id, "invoice cancelled")
    assert voided.status == CalculationStatus.VOIDED
    assert voided.void_reason == "invoice cancelled"
    assert voided.voided_at == NOW
    assert voided.total_tax == record.total_tax


def test_double_void_rejected(recorder):
    record = _record(recorder)
    recorder.void(record.calculation_id, "first")
    with pytest.raises(InvalidTransitionError):
        recorder.void(record.calculation_id, "second")


def test_void_is_logged(recorder, caplog):
    record = _record(recorder)
    with caplog.at_level(logging.INFO, logger="telecom_tax"):
        recorder.void(record.calculation_id, "duplicate")
    assert "Calculation voided" in caplog.text


# ── adjustments ──────────────────────────────────────────────────────


def test_record_adjustment_supersedes_original(recorder):
    original = _record(recorder)
    successor = recorder.build(
        calculable=LINE,
        calculation_type=CalculationType.ADJUSTMENT,
        base_amount=Decimal("90.00"),
        quantity=1,
        input_snapshot={},
        result=RESULT,
        metadata=EngineMetadata(),
        adjusts_calculation_id=original.calculation_id,
        adjustment_reason="price correction",
    )
    recorder.record_adjustment(original, successor)

    stored = recorder.get(original.calculation_id)
    assert stored.status == CalculationStatus.ADJUSTED
    assert stored.superseded_by == successor.calculation_id
    assert stored.breakdown_dicts() == original.breakdown_dicts()
    assert recorder.get(successor.calculation_id).adjustment_reason == "price correction"


def test_adjusted_record_cannot_be_adjusted_again(recorder):
    original = _record(recorder)
    successor = recorder.build(
        calculable=LINE,
        calculation_type=CalculationType.ADJUSTMENT,
        base_amount=Decimal("90.00"),
        quantity=1,
        input_snapshot={},
        result=RESULT,
        metadata=EngineMetadata(),
    )
    recorder.record_adjustment(original, successor)
    with pytest.raises(InvalidTransitionError):
        recorder.check_adjustable(original.calculation_id)


def test_stale_original_rejected(recorder):
    original = _record(recorder)
    recorder.mark_validation(original.calculation_id, ValidationStatus.VALIDATED)
    successor = recorder.build(
        calculable=LINE,
        calculation_type=CalculationType.ADJUSTMENT,
        base_amount=Decimal("90.00"),
        quantity=1,
        input_snapshot={},
        result=RESULT,
        metadata=EngineMetadata(),
    )
    with pytest.raises(InvalidTransitionError, match="changed concurrently"):
        recorder.record_adjustment(original, successor)
    assert recorder.store.find(successor.calculation_id) is None


# ── validation marks and queries ─────────────────────────────────────


def test_mark_validation_keeps_status(recorder):
    record = _record(recorder)
    marked = recorder.mark_validation(
        record.calculation_id, ValidationStatus.DISCREPANCY, "totals differ"
    )
    assert marked.status == CalculationStatus.CALCULATED
    assert marked.validation_status == ValidationStatus.DISCREPANCY
    assert marked.validation_notes == "totals differ"


def test_history_and_all(recorder):
    first = _record(recorder)
    second = _record(recorder, base_amount=Decimal("50.00"))
    other = _record(recorder, calculable=replace(LINE, id="INV-1/2"))
    assert [r.calculation_id for r in recorder.history(LINE)] == [
        second.calculation_id,
        first.calculation_id,
    ]
    assert len(recorder.all()) == 3
    assert recorder.all()[-1].calculation_id == other.calculation_id
