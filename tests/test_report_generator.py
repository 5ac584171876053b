"""Tests for report generation and export."""

import json
from datetime import date
from decimal import Decimal

import pytest

from telecom_tax.config import EngineSettings
from telecom_tax.engine import TaxEngine, invoice_line
from telecom_tax.reference import Address, ReferenceData
from telecom_tax.report_generator import BREAKDOWN_COLUMNS, ReportGenerator

HOUSTON = Address("US", "TX", "Harris", "Houston")
LOS_ANGELES = Address("US", "CA", municipality="Los Angeles")
AS_OF = date(2025, 1, 15)


@pytest.fixture
def engine():
    return TaxEngine(
        ReferenceData.us_telecom_sample(), settings=EngineSettings(cache_enabled=False)
    )


@pytest.fixture
def records(engine):
    engine.calculate(
        invoice_line("INV-1/1"), "100.00", service_type="local", address=HOUSTON, as_of=AS_OF
    )
    engine.calculate(
        invoice_line("INV-2/1"), "50.00", service_type="local", address=LOS_ANGELES, as_of=AS_OF
    )
    voided = engine.calculate(
        invoice_line("INV-3/1"), "10.00", service_type="local", address=HOUSTON, as_of=AS_OF
    )
    engine.void(voided.calculation_id, "duplicate")
    return engine.calculations()


@pytest.fixture
def generator(tmp_path):
    return ReportGenerator(output_dir=str(tmp_path / "reports"))


# ── Reports ──────────────────────────────────────────────────────────


def test_calculation_report(generator, records):
    report = generator.calculation_report(records[0])
    assert report["report_type"] == "tax_calculation"
    assert report["summary"]["total_tax"] == Decimal("69.77")
    assert len(report["breakdown"]) == 8
    assert report["breakdown"][0]["sequence"] == 1


def test_summary_excludes_voided_by_default(generator, records):
    summary = generator.calculation_summary(records)
    assert summary["summary"]["calculation_count"] == 2
    assert summary["summary"]["total_base"] == Decimal("150.00")
    included = generator.calculation_summary(records, include_voided=True)
    assert included["summary"]["calculation_count"] == 3


def test_summary_groups_add_up(generator, records):
    summary = generator.calculation_summary(records)
    total = summary["summary"]["total_tax"]
    assert sum(summary["by_jurisdiction_kind"].values()) == total
    assert sum(summary["by_tax_type"].values()) == total
    assert sum(summary["by_jurisdiction"].values()) == total
    assert "US-CA-LA" in summary["by_jurisdiction"]


def test_statistics(generator, records):
    stats = generator.statistics(records)
    assert stats["summary"]["calculation_count"] == 3
    assert stats["by_status"] == {"calculated": 2, "voided": 1}
    assert stats["by_type"] == {"invoice": 3}
    assert stats["summary"]["cache_hits"] == 0


def test_statistics_empty(generator):
    assert generator.statistics([])["summary"] == {"calculation_count": 0}


def test_exemption_usage_report(generator):
    assert generator.exemption_usage_report("EX-1", [])["summary"]["times_used"] == 0


# ── Frames ───────────────────────────────────────────────────────────


def test_breakdown_frame(generator, records):
    frame = generator.breakdown_frame(records)
    assert list(frame.columns) == BREAKDOWN_COLUMNS
    houston = frame[frame["calculable"] == "invoice_line:INV-1/1"]
    assert houston["final_contribution"].sum() == pytest.approx(69.77)


def test_tax_by_kind(generator, records):
    counted = [r for r in records if r.status.value != "voided"]
    frame = generator.tax_by(counted, "jurisdiction_kind")
    assert list(frame.columns) == ["jurisdiction_kind", "tax"]
    assert frame["tax"].is_monotonic_decreasing
    assert frame["tax"].sum() == pytest.approx(
        float(sum(r.total_tax for r in counted))
    )


def test_tax_by_unknown_column(generator, records):
    with pytest.raises(ValueError):
        generator.tax_by(records, "colour")


# ── Export ───────────────────────────────────────────────────────────


def test_json_export_keeps_decimals_exact(generator, records, tmp_path):
    report = generator.calculation_report(records[0])
    text = generator.to_json(report, "calc.json")
    data = json.loads(text)
    assert data["summary"]["total_tax"] == "69.77"
    assert (tmp_path / "reports" / "calc.json").exists()


def test_csv_export(generator, records):
    report = generator.calculation_summary(records)
    csv_text = generator.to_csv(report, section="by_tax_type")
    assert csv_text.splitlines()[0] == "key,value"
    assert generator.to_csv(report, section="missing") == ""


def test_breakdown_csv_file(generator, records, tmp_path):
    generator.export_breakdown_csv(records)
    lines = (tmp_path / "reports" / "breakdown.csv").read_text().splitlines()
    assert lines[0] == ",".join(BREAKDOWN_COLUMNS)
    assert len(lines) == 1 + sum(len(r.breakdown) for r in records)


def test_format_text(generator, records):
    text = generator.format_text(generator.calculation_report(records[0]))
    assert "Tax Calculation" in text
    assert "BREAKDOWN" in text
    assert "$69.77" in text
