"""
Calculation report generator.

Produces:
- Single-calculation reports (breakdown, exemptions, warnings)
- Summaries across calculations by jurisdiction kind and tax type
- Statistics (counts by status and type, average effective rate)
- Exemption usage reports
- pandas frames of records and breakdown lines
- CSV and JSON export
"""

from __future__ import annotations

import csv
import io
import json
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Optional

import pandas as pd

from telecom_tax.records import CalculationRecord, CalculationStatus, ExemptionUsage

BREAKDOWN_COLUMNS = [
    "calculation_id",
    "calculable",
    "status",
    "sequence",
    "jurisdiction_id",
    "jurisdiction_kind",
    "tax_type",
    "rate_id",
    "taxable_base",
    "exempted_amount",
    "final_contribution",
    "is_inclusive",
]

RECORD_COLUMNS = [
    "calculation_id",
    "calculable",
    "calculation_type",
    "status",
    "extended_base",
    "total_tax",
    "final_amount",
    "effective_rate",
    "cache_hit",
    "created_at",
]


class _DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal and date objects."""

    def default(self, o: Any) -> Any:
        if isinstance(o, Decimal):
            return str(o)
        if isinstance(o, (date, datetime)):
            return o.isoformat()
        return super().default(o)


def _money(value: Any) -> str:
    return f"${float(value):,.2f}"


class ReportGenerator:
    """
    Builds reports over calculation records.

    Reports are plain dicts (Decimals kept exact) that can be rendered to
    console text or exported to CSV/JSON files under ``output_dir``.
    """

    def __init__(self, output_dir: Optional[str] = None) -> None:
        self.output_dir = Path(output_dir) if output_dir else Path("reports")

    def _write(self, filename: str, text: str) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / filename
        path.write_text(text, encoding="utf-8")
        return path

    # ------------------------------------------------------------------
    # Single calculation
    # ------------------------------------------------------------------

    def calculation_report(self, record: CalculationRecord) -> dict[str, Any]:
        return {
            "report_type": "tax_calculation",
            "generated_date": date.today().isoformat(),
            "calculation_id": record.calculation_id,
            "calculable": str(record.calculable),
            "status": record.status.value,
            "validation_status": record.validation_status.value,
            "summary": {
                "base_amount": record.base_amount,
                "quantity": record.quantity,
                "extended_base": record.extended_base,
                "total_tax": record.total_tax,
                "total_exempted": record.total_exempted,
                "final_amount": record.final_amount,
                "effective_rate": record.effective_rate,
            },
            "breakdown": [
                {
                    "sequence": e.sequence,
                    "jurisdiction": e.jurisdiction_name,
                    "kind": e.jurisdiction_kind,
                    "tax_type": e.tax_type,
                    "rate_id": e.rate_id,
                    "taxable_base": e.taxable_base,
                    "raw_amount": e.raw_amount,
                    "exempted_amount": e.exempted_amount,
                    "tax": e.final_contribution,
                    "inclusive": e.is_inclusive,
                }
                for e in record.breakdown
            ],
            "exemptions_applied": [e.to_dict() for e in record.exemptions_applied],
            "warnings": [w.get("message", str(w)) for w in record.warnings],
            "notes": list(record.metadata.notes),
        }

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    def calculation_summary(
        self,
        records: Iterable[CalculationRecord],
        include_voided: bool = False,
    ) -> dict[str, Any]:
        """Totals across calculations, grouped by jurisdiction kind and tax type."""
        counted = [
            r for r in records
            if include_voided or r.status != CalculationStatus.VOIDED
        ]
        by_kind: dict[str, Decimal] = {}
        by_type: dict[str, Decimal] = {}
        by_jurisdiction: dict[str, Decimal] = {}
        for record in counted:
            for entry in record.breakdown:
                amount = entry.final_contribution
                by_kind[entry.jurisdiction_kind] = (
                    by_kind.get(entry.jurisdiction_kind, Decimal("0")) + amount
                )
                by_type[entry.tax_type] = by_type.get(entry.tax_type, Decimal("0")) + amount
                by_jurisdiction[entry.jurisdiction_id] = (
                    by_jurisdiction.get(entry.jurisdiction_id, Decimal("0")) + amount
                )

        total_base = sum((r.extended_base for r in counted), Decimal("0"))
        total_tax = sum((r.total_tax for r in counted), Decimal("0"))
        return {
            "report_type": "calculation_summary",
            "generated_date": date.today().isoformat(),
            "summary": {
                "calculation_count": len(counted),
                "total_base": total_base,
                "total_tax": total_tax,
                "total_exempted": sum((r.total_exempted for r in counted), Decimal("0")),
                "total_final": sum((r.final_amount for r in counted), Decimal("0")),
                "overall_effective_rate": (
                    float(total_tax / total_base) if total_base > 0 else 0.0
                ),
            },
            "by_jurisdiction_kind": dict(sorted(by_kind.items())),
            "by_tax_type": dict(sorted(by_type.items())),
            "by_jurisdiction": dict(sorted(by_jurisdiction.items())),
        }

    def statistics(self, records: Iterable[CalculationRecord]) -> dict[str, Any]:
        frame = self.records_frame(records)
        if frame.empty:
            return {
                "report_type": "calculation_statistics",
                "summary": {"calculation_count": 0},
                "by_status": {},
                "by_type": {},
            }
        return {
            "report_type": "calculation_statistics",
            "generated_date": date.today().isoformat(),
            "summary": {
                "calculation_count": int(len(frame)),
                "average_effective_rate": float(frame["effective_rate"].mean()),
                "average_tax": round(float(frame["total_tax"].mean()), 2),
                "cache_hits": int(frame["cache_hit"].sum()),
            },
            "by_status": {k: int(v) for k, v in frame["status"].value_counts().sort_index().items()},
            "by_type": {
                k: int(v) for k, v in frame["calculation_type"].value_counts().sort_index().items()
            },
        }

    def exemption_usage_report(
        self, exemption_id: str, usage: list[ExemptionUsage]
    ) -> dict[str, Any]:
        return {
            "report_type": "exemption_usage",
            "generated_date": date.today().isoformat(),
            "exemption_id": exemption_id,
            "summary": {
                "times_used": len(usage),
                "calculations": len({u.calculation_id for u in usage}),
                "total_waived": sum((u.waived_amount for u in usage), Decimal("0")),
            },
            "usage": [u.to_dict() for u in usage],
        }

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    def records_frame(self, records: Iterable[CalculationRecord]) -> pd.DataFrame:
        rows = [
            {
                "calculation_id": r.calculation_id,
                "calculable": str(r.calculable),
                "calculation_type": r.calculation_type.value,
                "status": r.status.value,
                "extended_base": float(r.extended_base),
                "total_tax": float(r.total_tax),
                "final_amount": float(r.final_amount),
                "effective_rate": float(r.effective_rate),
                "cache_hit": r.metadata.cache_hit,
                "created_at": r.created_at,
            }
            for r in records
        ]
        return pd.DataFrame(rows, columns=RECORD_COLUMNS)

    def breakdown_frame(self, records: Iterable[CalculationRecord]) -> pd.DataFrame:
        """One row per breakdown entry; money columns are floats."""
        rows = [
            {
                "calculation_id": r.calculation_id,
                "calculable": str(r.calculable),
                "status": r.status.value,
                "sequence": e.sequence,
                "jurisdiction_id": e.jurisdiction_id,
                "jurisdiction_kind": e.jurisdiction_kind,
                "tax_type": e.tax_type,
                "rate_id": e.rate_id,
                "taxable_base": float(e.taxable_base),
                "exempted_amount": float(e.exempted_amount),
                "final_contribution": float(e.final_contribution),
                "is_inclusive": e.is_inclusive,
            }
            for r in records
            for e in r.breakdown
        ]
        return pd.DataFrame(rows, columns=BREAKDOWN_COLUMNS)

    def tax_by(self, records: Iterable[CalculationRecord], column: str) -> pd.DataFrame:
        """Tax totals grouped by a breakdown column, largest first."""
        frame = self.breakdown_frame(records)
        if column not in BREAKDOWN_COLUMNS:
            raise ValueError(f"Unknown breakdown column: {column}")
        grouped = (
            frame.groupby(column, as_index=False)["final_contribution"]
            .sum()
            .rename(columns={"final_contribution": "tax"})
        )
        return grouped.sort_values(["tax", column], ascending=[False, True]).reset_index(
            drop=True
        )

    # ------------------------------------------------------------------
    # Export methods
    # ------------------------------------------------------------------

    def to_json(self, report: dict[str, Any], filename: Optional[str] = None) -> str:
        """Export a report to JSON. Decimals are written as exact strings."""
        json_str = json.dumps(report, indent=2, cls=_DecimalEncoder)
        if filename:
            self._write(filename, json_str)
        return json_str

    def to_csv(
        self,
        report: dict[str, Any],
        filename: Optional[str] = None,
        section: str = "breakdown",
    ) -> str:
        """
        Export a report section to CSV. Returns the CSV string.

        List sections become one row per item; dict sections become
        key/value rows.
        """
        data = report.get(section, [])
        if not data:
            return ""

        output = io.StringIO()
        if isinstance(data, list) and isinstance(data[0], dict):
            writer = csv.DictWriter(output, fieldnames=list(data[0].keys()))
            writer.writeheader()
            for row in data:
                writer.writerow(row)
        elif isinstance(data, dict):
            writer = csv.writer(output)
            writer.writerow(["key", "value"])
            for k, v in data.items():
                writer.writerow([k, v])

        csv_str = output.getvalue()
        if filename:
            self._write(filename, csv_str)
        return csv_str

    def export_breakdown_csv(
        self,
        records: Iterable[CalculationRecord],
        filename: str = "breakdown.csv",
    ) -> str:
        csv_str = self.breakdown_frame(records).to_csv(index=False)
        self._write(filename, csv_str)
        return csv_str

    # ------------------------------------------------------------------
    # Console-formatted text output
    # ------------------------------------------------------------------

    def format_text(self, report: dict[str, Any]) -> str:
        """Format a report as human-readable text for console output."""
        lines: list[str] = []
        report_type = report.get("report_type", "report").replace("_", " ").title()
        lines.append("=" * 60)
        lines.append(f"  {report_type}")
        if report.get("generated_date"):
            lines.append(f"  Generated: {report['generated_date']}")
        if report.get("calculation_id"):
            lines.append(f"  Calculation: {report['calculation_id']}")
        lines.append("=" * 60)
        lines.append("")

        summary = report.get("summary", {})
        if summary:
            lines.append("SUMMARY")
            lines.append("-" * 40)
            for key, value in summary.items():
                label = key.replace("_", " ").title()
                if isinstance(value, (float, Decimal)):
                    if "rate" in key:
                        lines.append(f"  {label}: {float(value):.4%}")
                    else:
                        lines.append(f"  {label}: {_money(value)}")
                else:
                    lines.append(f"  {label}: {value}")
            lines.append("")

        breakdown = report.get("breakdown", [])
        if breakdown:
            lines.append("BREAKDOWN")
            lines.append("-" * 40)
            for b in breakdown:
                marker = " (incl.)" if b.get("inclusive") else ""
                lines.append(
                    f"  {b['sequence']:>2}. {b['jurisdiction']:<28} {b['tax_type']:<18} "
                    f"{_money(b['tax']):>10}{marker}"
                )
            lines.append("")

        for section in ("by_jurisdiction_kind", "by_tax_type"):
            data = report.get(section, {})
            if data:
                lines.append(section.replace("_", " ").upper())
                lines.append("-" * 40)
                for key, amount in data.items():
                    lines.append(f"  {key}: {_money(amount):>12}")
                lines.append("")

        for section in ("warnings", "notes"):
            items = report.get(section, [])
            if items:
                lines.append(section.upper())
                lines.append("-" * 40)
                for item in items:
                    lines.append(f"  * {item}")
                lines.append("")

        return "\n".join(lines)
