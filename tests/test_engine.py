"""End-to-end tests for the TaxEngine against the sample reference data."""

import logging
from datetime import date
from decimal import Decimal

import pytest

from telecom_tax.config import EngineSettings
from telecom_tax.engine import TaxEngine, coerce_amount, invoice_line, quote_line
from telecom_tax.exceptions import (
    InvalidCalculationInputError,
    InvalidTransitionError,
    UnresolvableAddressError,
)
from telecom_tax.records import CalculationStatus, CalculationType, ValidationStatus
from telecom_tax.reference import Address, Exemption, ReferenceData, VerificationStatus
from telecom_tax.store import SqlCalculationStore

HOUSTON = Address("US", "TX", "Harris", "Houston", "77002")
AS_OF = date(2025, 1, 15)
LINE = invoice_line("INV-1001/1")


@pytest.fixture
def reference() -> ReferenceData:
    reference = ReferenceData.us_telecom_sample()
    reference.put_exemption(
        Exemption(
            exemption_id="EX-TX-GOV",
            customer_id="CUST-42",
            exemption_type="government",
            is_blanket=True,
            jurisdiction_id="US-TX",
            verification_status=VerificationStatus.VERIFIED,
            certificate_number="TX-GOV-0042",
        )
    )
    return reference


@pytest.fixture
def engine(reference) -> TaxEngine:
    return TaxEngine(reference)


@pytest.fixture
def uncached(reference) -> TaxEngine:
    return TaxEngine(reference, settings=EngineSettings(cache_enabled=False))


def _houston(engine, amount="100.00", **kwargs):
    kwargs.setdefault("service_type", "local")
    return engine.calculate(LINE, amount, address=HOUSTON, as_of=AS_OF, **kwargs)


# ── Calculation ──────────────────────────────────────────────────────


def test_houston_local_service(engine):
    record = _houston(engine)
    assert record.total_tax == Decimal("69.77")
    assert record.final_amount == Decimal("169.77")
    assert record.effective_rate == Decimal("0.697700")
    assert record.status == CalculationStatus.CALCULATED
    assert record.calculation_type == CalculationType.INVOICE
    assert [e.sequence for e in record.breakdown] == list(range(1, 9))
    assert sum(e.final_contribution for e in record.breakdown) == record.total_tax
    assert record.metadata.category_code == "telecom_local"
    assert "category telecom_local chosen for service type local" in record.metadata.notes


def test_record_snapshot_holds_reference_data(engine):
    record = _houston(engine)
    snapshot = record.input_snapshot
    assert [j["jurisdiction_id"] for j in snapshot["jurisdictions"]] == [
        "US", "US-TX", "US-TX-HARRIS", "US-TX-HOUSTON", "US-TX-GH911",
    ]
    assert len(snapshot["rates"]) == 8
    assert snapshot["as_of"] == "2025-01-15"
    assert record.metadata.engine_version


def test_historical_date_uses_rates_in_force(engine):
    record = engine.calculate(
        LINE, "100.00", service_type="local", address=HOUSTON, as_of=date(2023, 6, 1)
    )
    assert record.total_tax == Decimal("12.37")
    assert "us-usf" not in record.metadata.rates_applied


def test_usage_counts_drive_per_line_fees(engine):
    record = _houston(engine, usage={"lines": 3})
    assert record.total_tax == Decimal("73.01")


def test_quote_line_type(engine):
    record = engine.calculate(
        quote_line("Q-7/1"), "100.00", service_type="local", address=HOUSTON, as_of=AS_OF
    )
    assert record.calculation_type == CalculationType.QUOTE


def test_non_taxable_category(engine):
    record = engine.calculate(LINE, "80.00", service_type="data", address=HOUSTON, as_of=AS_OF)
    assert record.breakdown == []
    assert record.total_tax == Decimal("0")
    assert record.final_amount == Decimal("80.00")
    assert "category internet_access is not taxable" in record.metadata.notes


def test_no_rates_is_not_an_error(engine):
    record = engine.calculate(
        LINE, "50.00", category="equipment", service_type="equipment",
        address=Address("US", "TX"), as_of=AS_OF,
    )
    assert [e.rate_id for e in record.breakdown] == ["tx-sales"]
    empty = engine.calculate(
        LINE, "50.00", category="telecom_interstate", service_type="satellite",
        address=Address("US"), as_of=AS_OF,
    )
    assert empty.breakdown == []
    assert "no rate definitions apply" in empty.metadata.notes


def test_unresolvable_address_writes_nothing(engine):
    with pytest.raises(UnresolvableAddressError):
        engine.calculate(LINE, "100.00", service_type="local", address=Address("FR"), as_of=AS_OF)
    assert engine.calculations() == []


@pytest.mark.parametrize("amount", [100.0, True, "abc", "NaN"])
def test_bad_amounts_rejected(engine, amount):
    with pytest.raises(InvalidCalculationInputError):
        _houston(engine, amount=amount)


def test_bad_quantity_and_missing_address(engine):
    with pytest.raises(InvalidCalculationInputError):
        _houston(engine, quantity=0)
    with pytest.raises(InvalidCalculationInputError, match="address"):
        engine.calculate(LINE, "1.00", as_of=AS_OF)


def test_coerce_amount_accepts_int_and_string():
    assert coerce_amount(5) == Decimal("5")
    assert coerce_amount(" 12.50 ") == Decimal("12.50")


def test_calculation_is_logged(engine, caplog):
    with caplog.at_level(logging.INFO, logger="telecom_tax"):
        _houston(engine)
    assert "Tax calculated" in caplog.text


# ── Exemptions ───────────────────────────────────────────────────────


def test_customer_exemption_waives_state_taxes(engine):
    record = _houston(engine, customer_id="CUST-42")
    assert record.total_tax == Decimal("39.52")
    waived = {e.rate_id: e.waived_amount for e in record.exemptions_applied}
    assert waived == {"tx-sales": Decimal("6.25"), "tx-usf": Decimal("24.00")}
    assert record.total_exempted == Decimal("30.25")


def test_exemption_usage_skips_voided(engine):
    record = _houston(engine, customer_id="CUST-42")
    usage = engine.exemption_usage("EX-TX-GOV")
    assert {u.rate_id for u in usage} == {"tx-sales", "tx-usf"}
    assert all(u.calculation_id == record.calculation_id for u in usage)
    engine.void(record.calculation_id, "cancelled")
    assert engine.exemption_usage("EX-TX-GOV") == []


def test_unverified_exemption_recorded_as_excluded(reference):
    reference.put_exemption(
        Exemption("EX-PENDING", "CUST-7", "resale", is_blanket=True)
    )
    record = _houston(TaxEngine(reference), customer_id="CUST-7")
    assert record.total_tax == Decimal("69.77")
    assert record.metadata.exemptions_excluded == {"EX-PENDING": "verification pending"}


def test_category_exemption_covers_state_rates_for_the_line(reference):
    reference.put_exemption(
        Exemption(
            "EX-LOCAL", "CUST-5", "resale", jurisdiction_id="US-TX",
            category_code="telecom_local", verification_status=VerificationStatus.VERIFIED,
        )
    )
    record = _houston(TaxEngine(reference), customer_id="CUST-5")
    assert {e.rate_id for e in record.exemptions_applied} == {"tx-sales", "tx-usf"}
    assert record.total_tax == Decimal("39.52")


def test_usage_limit_counts_calculations_in_the_month(reference):
    reference.put_exemption(
        Exemption(
            "EX-LIMITED", "CUST-9", "resale", is_blanket=True, jurisdiction_id="US-TX",
            verification_status=VerificationStatus.VERIFIED,
            conditions=({"type": "usage_limit", "value": 1},),
        )
    )
    engine = TaxEngine(reference)
    first = _houston(engine, customer_id="CUST-9")
    second = _houston(engine, customer_id="CUST-9")
    assert first.total_tax == Decimal("39.52")
    assert second.total_tax == Decimal("69.77")
    assert second.metadata.cache_hit is False
    assert second.metadata.exemptions_excluded == {"EX-LIMITED": "conditions not met"}
    assert second.input_snapshot["exemption_monthly_usage"] == {"EX-LIMITED": 1}
    validated = engine.validate_calculation(second.calculation_id)
    assert validated.validation_status == ValidationStatus.VALIDATED

    february = engine.calculate(
        LINE, "100.00", service_type="local", address=HOUSTON,
        as_of=date(2025, 2, 3), customer_id="CUST-9",
    )
    assert [e.exemption_id for e in february.exemptions_applied] == ["EX-LIMITED"] * 2

    engine.void(first.calculation_id, "cancelled")
    assert _houston(engine, customer_id="CUST-9").total_tax == Decimal("39.52")


# ── Cache ────────────────────────────────────────────────────────────


def test_cache_hit_still_records(engine):
    first = _houston(engine)
    second = _houston(engine)
    assert second.calculation_id != first.calculation_id
    assert second.metadata.cache_hit is True
    assert second.metadata.cached_from == first.calculation_id
    assert first.metadata.cache_hit is False
    assert second.breakdown_dicts() == first.breakdown_dicts()
    assert len(engine.calculations()) == 2
    assert engine.cache_stats()["hits"] == 1


def test_cached_record_matches_its_own_inputs(engine):
    _houston(engine, amount="100")
    record = _houston(engine, amount="100.00")
    assert record.metadata.cache_hit is False
    assert str(record.base_amount) == "100.00"
    assert record.input_snapshot["base_amount"] == "100.00"
    validated = engine.validate_calculation(record.calculation_id)
    assert validated.validation_status == ValidationStatus.VALIDATED


def test_clear_cache(engine):
    _houston(engine)
    engine.clear_cache()
    assert _houston(engine).metadata.cache_hit is False


def test_cache_disabled(uncached):
    _houston(uncached)
    assert _houston(uncached).metadata.cache_hit is False
    assert uncached.cache_stats() == {"enabled": False}


def test_same_inputs_after_void_give_identical_breakdown(uncached):
    first = _houston(uncached)
    uncached.void(first.calculation_id, "re-rate")
    second = _houston(uncached)
    assert second.breakdown_dicts() == first.breakdown_dicts()
    assert second.total_tax == first.total_tax


# ── Lifecycle ────────────────────────────────────────────────────────


def test_apply_then_void(engine):
    record = _houston(engine)
    invoice = invoice_line("INV-1001")
    applied = engine.apply_to(record.calculation_id, invoice)
    assert engine.apply_to(record.calculation_id, invoice).version == applied.version
    voided = engine.void(record.calculation_id, "invoice cancelled")
    assert voided.status == CalculationStatus.VOIDED
    with pytest.raises(InvalidTransitionError):
        engine.void(record.calculation_id, "again")


def test_adjust_creates_linked_successor(engine):
    original = _houston(engine)
    engine.apply_to(original.calculation_id, invoice_line("INV-1001"))
    successor = engine.adjust(original.calculation_id, "price correction", {"base_amount": "200.00"})

    assert successor.calculation_type == CalculationType.ADJUSTMENT
    assert successor.adjusts_calculation_id == original.calculation_id
    assert successor.calculable == original.calculable
    assert successor.total_tax == Decimal("137.92")
    assert f"adjusts {original.calculation_id}: price correction" in successor.metadata.notes

    stored = engine.get_calculation(original.calculation_id)
    assert stored.status == CalculationStatus.ADJUSTED
    assert stored.superseded_by == successor.calculation_id
    assert stored.breakdown_dicts() == original.breakdown_dicts()


def test_adjust_with_new_customer_picks_up_exemptions(engine):
    original = _houston(engine)
    successor = engine.adjust(original.calculation_id, "exempt customer", {"customer_id": "CUST-42"})
    assert successor.total_tax == Decimal("39.52")


def test_adjust_rejects_unknown_inputs(engine):
    record = _houston(engine)
    with pytest.raises(InvalidCalculationInputError):
        engine.adjust(record.calculation_id, "typo", {"amount": "1"})
    assert engine.get_calculation(record.calculation_id).status == CalculationStatus.CALCULATED


def test_voided_record_cannot_be_adjusted(engine):
    record = _houston(engine)
    engine.void(record.calculation_id, "cancelled")
    with pytest.raises(InvalidTransitionError):
        engine.adjust(record.calculation_id, "too late", {"base_amount": "1.00"})


# ── Audit ────────────────────────────────────────────────────────────


def test_validate_calculation(engine):
    record = _houston(engine, customer_id="CUST-42")
    validated = engine.validate_calculation(record.calculation_id, "monthly audit")
    assert validated.validation_status == ValidationStatus.VALIDATED
    assert validated.validation_notes == "monthly audit"


@pytest.mark.parametrize("database_url", [None, "sqlite://"])
def test_stored_breakdown_keeps_zero_contributions(database_url):
    engine = TaxEngine.from_settings(settings=EngineSettings(database_url=database_url))
    engine.reference.put_exemption(
        Exemption(
            "EX-FULL", "CUST-1", "government", is_blanket=True,
            verification_status=VerificationStatus.VERIFIED,
        )
    )
    record = _houston(engine, customer_id="CUST-1")
    assert record.total_tax == Decimal("0.00")
    stored = engine.get_calculation(record.calculation_id)
    assert stored.breakdown_dicts() == record.breakdown_dicts()
    sales = next(e for e in stored.breakdown if e.rate_id == "tx-sales")
    assert str(sales.final_contribution) == "0.00"
    validated = engine.validate_calculation(record.calculation_id)
    assert validated.validation_status == ValidationStatus.VALIDATED


def test_validate_detects_discrepancy(engine):
    record = _houston(engine)
    engine.recorder.store._rows[record.calculation_id]["total_tax"] = "1.00"
    flagged = engine.validate_calculation(record.calculation_id)
    assert flagged.validation_status == ValidationStatus.DISCREPANCY
    assert "69.77" in flagged.validation_notes


def test_recalculate_ignores_later_reference_changes(engine, reference):
    record = _houston(engine)
    reference.put_exemption(
        Exemption(
            "EX-LATE", "CUST-99", "resale", is_blanket=True,
            verification_status=VerificationStatus.VERIFIED,
        )
    )
    audit = engine.recalculate_from_audit(record.calculation_id)
    assert audit["matches"] is True
    assert audit["tax_difference"] == Decimal("0")
    assert audit["recalculated_total_tax"] == Decimal("69.77")


def test_history_and_compare_with_previous(engine):
    first = _houston(engine)
    assert engine.compare_with_previous(first.calculation_id) is None
    successor = engine.adjust(first.calculation_id, "price correction", {"base_amount": "200.00"})
    history = engine.history(LINE)
    assert [r.calculation_id for r in history] == [successor.calculation_id, first.calculation_id]
    diff = engine.compare_with_previous(successor.calculation_id)
    assert diff["previous_id"] == first.calculation_id
    assert diff["tax_difference"] == Decimal("68.15")
    assert diff["base_difference"] == Decimal("100.00")


# ── Construction ─────────────────────────────────────────────────────


def test_from_settings_uses_sql_store():
    engine = TaxEngine.from_settings(settings=EngineSettings(database_url="sqlite://"))
    assert isinstance(engine.recorder.store, SqlCalculationStore)
    record = _houston(engine)
    assert engine.get_calculation(record.calculation_id).total_tax == Decimal("69.77")


def test_expiring_exemptions_use_configured_window(reference):
    reference.put_exemption(
        Exemption(
            "EX-SOON", "CUST-8", "resale", is_blanket=True,
            verification_status=VerificationStatus.VERIFIED, expiry_date=date(2025, 1, 25),
        )
    )
    narrow = TaxEngine(reference, settings=EngineSettings(expiring_soon_days=5))
    wide = TaxEngine(reference, settings=EngineSettings(expiring_soon_days=30))
    assert narrow.expiring_exemptions(AS_OF) == []
    assert [e.exemption_id for e in wide.expiring_exemptions(AS_OF)] == ["EX-SOON"]
