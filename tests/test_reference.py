"""Tests for reference data: loading, lookups and the sample data set."""

import json
from datetime import date
from decimal import Decimal

import pytest

from telecom_tax.reference import (
    Address,
    Exemption,
    JurisdictionKind,
    RateDefinition,
    ReferenceData,
    VerificationStatus,
)

AS_OF = date(2025, 1, 15)


@pytest.fixture
def sample() -> ReferenceData:
    return ReferenceData.us_telecom_sample()


# ── Sample data set ──────────────────────────────────────────────────


def test_sample_contains_all_jurisdiction_kinds(sample):
    kinds = {j.kind for j in sample.jurisdictions()}
    assert {
        JurisdictionKind.FEDERAL,
        JurisdictionKind.STATE,
        JurisdictionKind.COUNTY,
        JurisdictionKind.MUNICIPAL,
        JurisdictionKind.SPECIAL_DISTRICT,
    } <= kinds


def test_sample_rates_sorted_and_typed(sample):
    ids = [r.rate_id for r in sample.rates()]
    assert ids == sorted(ids)
    fet = sample.get_rate("us-fet")
    assert fet.percentage == Decimal("3.0")
    assert fet.minimum_threshold == Decimal("0.20")


def test_breadth_ranks():
    ranks = [k.breadth for k in JurisdictionKind]
    assert ranks == sorted(ranks)
    assert JurisdictionKind.FEDERAL.breadth < JurisdictionKind.SPECIAL_DISTRICT.breadth


# ── Categories ───────────────────────────────────────────────────────


def test_category_for_service(sample):
    assert sample.category_for_service("voip_fixed").code == "telecom_local"
    assert sample.category_for_service("equipment").code == "equipment"
    assert sample.category_for_service("data").is_taxable is False
    assert sample.category_for_service("satellite") is None


# ── Append-only rates ────────────────────────────────────────────────


def test_duplicate_rate_id_rejected(sample):
    with pytest.raises(ValueError, match="already exists"):
        sample.add_rate(sample.get_rate("tx-sales"))


def test_rate_dict_round_trip(sample):
    rate = sample.get_rate("tx-houston-row")
    assert RateDefinition.from_dict(rate.to_dict()) == rate


def test_rate_window():
    rate = RateDefinition(
        rate_id="r",
        jurisdiction_id="US",
        tax_type="t",
        name="r",
        shape="fixed",
        effective_date=date(2024, 1, 1),
        expiry_date=date(2025, 1, 1),
    )
    assert not rate.is_effective(date(2023, 12, 31))
    assert rate.is_effective(date(2024, 1, 1))
    assert not rate.is_effective(date(2025, 1, 1))


# ── Exemptions ───────────────────────────────────────────────────────


def _exemption(exemption_id: str, customer_id: str = "CUST-1", **kw) -> Exemption:
    kw.setdefault("verification_status", VerificationStatus.VERIFIED)
    return Exemption(exemption_id, customer_id, "resale", is_blanket=True, **kw)


def test_active_exemptions_filters_invalid():
    reference = ReferenceData(
        exemptions=[
            _exemption("EX-OK"),
            _exemption("EX-UNVERIFIED", verification_status=VerificationStatus.PENDING),
            _exemption("EX-EXPIRED", expiry_date=date(2024, 12, 31)),
            _exemption("EX-OTHER", customer_id="CUST-2"),
        ]
    )
    assert [e.exemption_id for e in reference.active_exemptions("CUST-1", AS_OF)] == ["EX-OK"]
    assert reference.active_exemptions(None, AS_OF) == []


def test_expiring_exemptions():
    reference = ReferenceData(
        exemptions=[
            _exemption("EX-SOON", expiry_date=date(2025, 2, 1)),
            _exemption("EX-LATER", expiry_date=date(2026, 1, 1)),
            _exemption("EX-OPEN"),
        ]
    )
    assert [e.exemption_id for e in reference.expiring_exemptions(AS_OF, 30)] == ["EX-SOON"]


def test_put_exemption_replaces_by_id():
    reference = ReferenceData(exemptions=[_exemption("EX-1", percentage=Decimal("50"))])
    reference.put_exemption(_exemption("EX-1", percentage=Decimal("75")))
    assert reference.get_exemption("EX-1").percentage == Decimal("75")


# ── Loading ──────────────────────────────────────────────────────────


def test_json_file_round_trip(sample, tmp_path):
    path = tmp_path / "reference.json"
    path.write_text(json.dumps(sample.to_dict()), encoding="utf-8")
    loaded = ReferenceData.from_json_file(path)
    assert loaded.to_dict() == sample.to_dict()


def test_address_accepts_city_and_zip_aliases():
    address = Address.from_dict({"country": "US", "state": "TX", "city": "Houston", "zip": "77002"})
    assert address.municipality == "Houston"
    assert address.postal_code == "77002"
