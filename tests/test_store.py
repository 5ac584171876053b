"""Tests for the in-memory and SQLAlchemy calculation stores."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from telecom_tax.exceptions import CalculationNotFoundError, InvalidTransitionError
from telecom_tax.executor import ExecutionResult
from telecom_tax.recorder import CalculationRecorder
from telecom_tax.records import (
    CalculableKind,
    CalculableRef,
    CalculationStatus,
    CalculationType,
    EngineMetadata,
)
from telecom_tax.store import InMemoryCalculationStore, SqlCalculationStore

LINE = CalculableRef(CalculableKind.INVOICE_LINE, "INV-1/1")
OTHER = CalculableRef(CalculableKind.QUOTE_LINE, "Q-9/1")
T0 = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def _record(calculable=LINE, total="7.00", minutes=0):
    result = ExecutionResult(
        extended_base=Decimal("100.00"),
        breakdown=[],
        total_tax=Decimal(total),
        inclusive_tax=Decimal("0"),
        final_amount=Decimal("100.00") + Decimal(total),
        effective_rate=Decimal(total) / Decimal("100"),
    )
    recorder = CalculationRecorder(clock=lambda: T0 + timedelta(minutes=minutes))
    return recorder.build(
        calculable=calculable,
        calculation_type=calculable.default_calculation_type,
        base_amount=Decimal("100.00"),
        quantity=1,
        input_snapshot={"base_amount": "100.00", "quantity": 1},
        result=result,
        metadata=EngineMetadata(engine_version="test", notes=["sample"]),
    )


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        return InMemoryCalculationStore()
    return SqlCalculationStore("sqlite://")


# ── Writes and reads ─────────────────────────────────────────────────


def test_add_and_get_round_trip(store):
    record = _record()
    store.add(record)
    loaded = store.get(record.calculation_id)
    assert loaded.to_dict() == record.to_dict()
    assert loaded.total_tax == Decimal("7.00")
    assert loaded.metadata.notes == ["sample"]


def test_duplicate_id_rejected_by_memory_store():
    store = InMemoryCalculationStore()
    record = _record()
    store.add(record)
    with pytest.raises(ValueError):
        store.add(record)


def test_missing_record(store):
    with pytest.raises(CalculationNotFoundError) as exc_info:
        store.get("nope")
    assert exc_info.value.code == "CALCULATION_NOT_FOUND"
    assert store.find("nope") is None


def test_returned_records_are_copies():
    store = InMemoryCalculationStore()
    record = _record()
    store.add(record)
    loaded = store.get(record.calculation_id)
    loaded.metadata.notes.append("tampered")
    assert store.get(record.calculation_id).metadata.notes == ["sample"]


# ── Transitions ──────────────────────────────────────────────────────


def test_transition_bumps_version(store):
    record = _record()
    store.add(record)
    updated = store.transition(
        record.calculation_id,
        CalculationStatus.CALCULATED,
        1,
        {"status": CalculationStatus.VOIDED, "void_reason": "duplicate"},
    )
    assert updated.version == 2
    stored = store.get(record.calculation_id)
    assert stored.status == CalculationStatus.VOIDED
    assert stored.void_reason == "duplicate"
    assert stored.version == 2


def test_stale_version_rejected(store):
    record = _record()
    store.add(record)
    store.transition(
        record.calculation_id, CalculationStatus.CALCULATED, 1,
        {"validation_notes": "first"},
    )
    with pytest.raises(InvalidTransitionError, match="changed concurrently"):
        store.transition(
            record.calculation_id, CalculationStatus.CALCULATED, 1,
            {"status": CalculationStatus.VOIDED},
        )
    assert store.get(record.calculation_id).status == CalculationStatus.CALCULATED


def test_stale_status_rejected(store):
    record = _record()
    store.add(record)
    with pytest.raises(InvalidTransitionError):
        store.transition(
            record.calculation_id, CalculationStatus.APPLIED, 1,
            {"status": CalculationStatus.VOIDED},
        )


def test_immutable_fields_cannot_change(store):
    record = _record()
    store.add(record)
    with pytest.raises(ValueError, match="Immutable"):
        store.transition(
            record.calculation_id, CalculationStatus.CALCULATED, 1,
            {"total_tax": Decimal("0")},
        )


def test_successor_written_with_transition(store):
    original = _record()
    store.add(original)
    successor = replace(
        _record(minutes=5),
        calculation_type=CalculationType.ADJUSTMENT,
        adjusts_calculation_id=original.calculation_id,
    )
    store.transition(
        original.calculation_id, CalculationStatus.CALCULATED, 1,
        {"status": CalculationStatus.ADJUSTED, "superseded_by": successor.calculation_id},
        successor=successor,
    )
    assert store.get(successor.calculation_id).adjusts_calculation_id == original.calculation_id
    assert store.get(original.calculation_id).superseded_by == successor.calculation_id


def test_successor_not_written_when_transition_fails(store):
    original = _record()
    store.add(original)
    successor = _record(minutes=5)
    with pytest.raises(InvalidTransitionError):
        store.transition(
            original.calculation_id, CalculationStatus.CALCULATED, 7,
            {"status": CalculationStatus.ADJUSTED},
            successor=successor,
        )
    assert store.find(successor.calculation_id) is None


# ── Queries ──────────────────────────────────────────────────────────


def test_history_newest_first_and_scoped(store):
    first, second, other = _record(), _record(minutes=1), _record(OTHER, minutes=2)
    for record in (first, second, other):
        store.add(record)
    history = store.history(LINE)
    assert [r.calculation_id for r in history] == [second.calculation_id, first.calculation_id]
    assert len(store.history(LINE, limit=1)) == 1


def test_all_oldest_first(store):
    records = [_record(minutes=i) for i in range(3)]
    for record in records:
        store.add(record)
    assert [r.calculation_id for r in store.all()] == [r.calculation_id for r in records]


def test_sql_store_persists_to_file(tmp_path):
    url = f"sqlite:///{tmp_path / 'calc.db'}"
    record = _record()
    SqlCalculationStore(url).add(record)
    reopened = SqlCalculationStore(url)
    assert reopened.get(record.calculation_id).to_dict() == record.to_dict()
