"""
Calculation records: the persisted, auditable output of the engine.

A record carries the full input snapshot (jurisdictions, rates and
exemptions as they were read), the ordered per-rate breakdown, totals and
engine metadata, so it can be re-derived without touching reference data.

Lifecycle::

    draft -> calculated -> applied -> adjusted
                 |            |
                 +-> voided <-+

Once a record is applied its breakdown never changes. Corrections are new
records of type ``adjustment`` that point back at the original.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from telecom_tax.exemptions import ExemptionAdjustment
from telecom_tax.reference import to_decimal


class CalculableKind(Enum):
    INVOICE_LINE = "invoice_line"
    QUOTE_LINE = "quote_line"
    ADJUSTMENT = "adjustment"


class CalculationStatus(Enum):
    DRAFT = "draft"
    CALCULATED = "calculated"
    APPLIED = "applied"
    ADJUSTED = "adjusted"
    VOIDED = "voided"


class CalculationType(Enum):
    PREVIEW = "preview"
    INVOICE = "invoice"
    QUOTE = "quote"
    ADJUSTMENT = "adjustment"


class ValidationStatus(Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    DISCREPANCY = "discrepancy"


# Legal lifecycle moves: target -> statuses it may be entered from
ALLOWED_TRANSITIONS: dict[CalculationStatus, frozenset[CalculationStatus]] = {
    CalculationStatus.CALCULATED: frozenset({CalculationStatus.DRAFT}),
    CalculationStatus.APPLIED: frozenset({CalculationStatus.CALCULATED}),
    CalculationStatus.ADJUSTED: frozenset(
        {CalculationStatus.CALCULATED, CalculationStatus.APPLIED}
    ),
    CalculationStatus.VOIDED: frozenset(
        {CalculationStatus.CALCULATED, CalculationStatus.APPLIED}
    ),
}

_TYPE_FOR_KIND: dict[CalculableKind, CalculationType] = {
    CalculableKind.INVOICE_LINE: CalculationType.INVOICE,
    CalculableKind.QUOTE_LINE: CalculationType.QUOTE,
    CalculableKind.ADJUSTMENT: CalculationType.ADJUSTMENT,
}


def _dec(value: Any) -> Decimal:
    return to_decimal(value, Decimal("0"))


def _dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class CalculableRef:
    """Reference to the document line a calculation belongs to."""

    kind: CalculableKind
    id: str

    @property
    def default_calculation_type(self) -> CalculationType:
        return _TYPE_FOR_KIND[self.kind]

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "id": self.id}

    @classmethod
    def from_dict(cls, data: dict) -> "CalculableRef":
        return cls(CalculableKind(data["kind"]), str(data["id"]))

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


@dataclass(frozen=True)
class BreakdownEntry:
    """How one rate contributed to the total."""

    sequence: int
    jurisdiction_id: str
    jurisdiction_name: str
    jurisdiction_kind: str
    rate_id: str
    tax_type: str
    tax_name: str
    shape: str
    calculation_method: str
    taxable_base: Decimal
    raw_amount: Decimal
    clamped_amount: Decimal
    exemption: ExemptionAdjustment
    exempted_amount: Decimal
    unrounded_contribution: Decimal
    final_contribution: Decimal
    is_inclusive: bool = False
    is_recoverable: bool = False
    de_minimis: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "jurisdiction_id": self.jurisdiction_id,
            "jurisdiction_name": self.jurisdiction_name,
            "jurisdiction_kind": self.jurisdiction_kind,
            "rate_id": self.rate_id,
            "tax_type": self.tax_type,
            "tax_name": self.tax_name,
            "shape": self.shape,
            "calculation_method": self.calculation_method,
            "taxable_base": str(self.taxable_base),
            "raw_amount": str(self.raw_amount),
            "clamped_amount": str(self.clamped_amount),
            "exemption": self.exemption.to_dict(),
            "exempted_amount": str(self.exempted_amount),
            "unrounded_contribution": str(self.unrounded_contribution),
            "final_contribution": str(self.final_contribution),
            "is_inclusive": self.is_inclusive,
            "is_recoverable": self.is_recoverable,
            "de_minimis": self.de_minimis,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BreakdownEntry":
        return cls(
            sequence=int(data["sequence"]),
            jurisdiction_id=data["jurisdiction_id"],
            jurisdiction_name=data["jurisdiction_name"],
            jurisdiction_kind=data["jurisdiction_kind"],
            rate_id=data["rate_id"],
            tax_type=data["tax_type"],
            tax_name=data["tax_name"],
            shape=data["shape"],
            calculation_method=data["calculation_method"],
            taxable_base=_dec(data["taxable_base"]),
            raw_amount=_dec(data["raw_amount"]),
            clamped_amount=_dec(data["clamped_amount"]),
            exemption=ExemptionAdjustment.from_dict(data.get("exemption")),
            exempted_amount=_dec(data["exempted_amount"]),
            unrounded_contribution=_dec(data["unrounded_contribution"]),
            final_contribution=_dec(data["final_contribution"]),
            is_inclusive=bool(data.get("is_inclusive", False)),
            is_recoverable=bool(data.get("is_recoverable", False)),
            de_minimis=bool(data.get("de_minimis", False)),
        )


@dataclass(frozen=True)
class ExemptionApplied:
    exemption_id: str
    rate_id: str
    tax_type: str
    jurisdiction_id: str
    original_amount: Decimal
    waived_amount: Decimal

    def to_dict(self) -> dict[str, str]:
        return {
            "exemption_id": self.exemption_id,
            "rate_id": self.rate_id,
            "tax_type": self.tax_type,
            "jurisdiction_id": self.jurisdiction_id,
            "original_amount": str(self.original_amount),
            "waived_amount": str(self.waived_amount),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExemptionApplied":
        return cls(
            exemption_id=data["exemption_id"],
            rate_id=data["rate_id"],
            tax_type=data["tax_type"],
            jurisdiction_id=data["jurisdiction_id"],
            original_amount=_dec(data["original_amount"]),
            waived_amount=_dec(data["waived_amount"]),
        )


@dataclass(frozen=True)
class ExemptionUsage:
    """One use of an exemption certificate against one rate of one calculation."""

    exemption_id: str
    calculation_id: str
    calculable: str
    rate_id: str
    original_amount: Decimal
    waived_amount: Decimal
    used_at: datetime

    def to_dict(self) -> dict[str, str]:
        return {
            "exemption_id": self.exemption_id,
            "calculation_id": self.calculation_id,
            "calculable": self.calculable,
            "rate_id": self.rate_id,
            "original_amount": str(self.original_amount),
            "waived_amount": str(self.waived_amount),
            "used_at": self.used_at.isoformat(),
        }


@dataclass
class EngineMetadata:
    """What the engine looked at and how long it took."""

    engine_version: str = ""
    jurisdictions: list[dict[str, str]] = field(default_factory=list)
    category_code: Optional[str] = None
    rates_considered: list[str] = field(default_factory=list)
    rates_applied: list[str] = field(default_factory=list)
    rates_skipped: list[dict[str, Any]] = field(default_factory=list)
    rates_superseded: list[dict[str, Any]] = field(default_factory=list)
    exemptions_considered: list[str] = field(default_factory=list)
    exemptions_excluded: dict[str, str] = field(default_factory=dict)
    warnings: list[dict[str, Any]] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    fingerprint: str = ""
    cache_hit: bool = False
    cached_from: Optional[str] = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "engine_version": self.engine_version,
            "jurisdictions": [dict(j) for j in self.jurisdictions],
            "category_code": self.category_code,
            "rates_considered": list(self.rates_considered),
            "rates_applied": list(self.rates_applied),
            "rates_skipped": [dict(s) for s in self.rates_skipped],
            "rates_superseded": [dict(s) for s in self.rates_superseded],
            "exemptions_considered": list(self.exemptions_considered),
            "exemptions_excluded": dict(self.exemptions_excluded),
            "warnings": [dict(w) for w in self.warnings],
            "notes": list(self.notes),
            "fingerprint": self.fingerprint,
            "cache_hit": self.cache_hit,
            "cached_from": self.cached_from,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EngineMetadata":
        return cls(
            engine_version=data.get("engine_version", ""),
            jurisdictions=list(data.get("jurisdictions", [])),
            category_code=data.get("category_code"),
            rates_considered=list(data.get("rates_considered", [])),
            rates_applied=list(data.get("rates_applied", [])),
            rates_skipped=list(data.get("rates_skipped", [])),
            rates_superseded=list(data.get("rates_superseded", [])),
            exemptions_considered=list(data.get("exemptions_considered", [])),
            exemptions_excluded=dict(data.get("exemptions_excluded", {})),
            warnings=list(data.get("warnings", [])),
            notes=list(data.get("notes", [])),
            fingerprint=data.get("fingerprint", ""),
            cache_hit=bool(data.get("cache_hit", False)),
            cached_from=data.get("cached_from"),
            duration_ms=float(data.get("duration_ms", 0.0)),
        )


@dataclass
class CalculationRecord:
    calculation_id: str
    calculable: CalculableRef
    calculation_type: CalculationType
    base_amount: Decimal
    quantity: int
    input_snapshot: dict[str, Any]
    breakdown: list[BreakdownEntry]
    total_tax: Decimal
    final_amount: Decimal
    effective_rate: Decimal
    exemptions_applied: list[ExemptionApplied]
    metadata: EngineMetadata
    created_at: datetime
    status: CalculationStatus = CalculationStatus.CALCULATED
    validation_status: ValidationStatus = ValidationStatus.PENDING
    validation_notes: str = ""
    updated_at: Optional[datetime] = None
    document: Optional[CalculableRef] = None
    applied_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None
    void_reason: str = ""
    adjusts_calculation_id: Optional[str] = None
    adjustment_reason: str = ""
    superseded_by: Optional[str] = None
    version: int = 1

    @property
    def extended_base(self) -> Decimal:
        return self.base_amount * self.quantity

    @property
    def total_exempted(self) -> Decimal:
        return sum((e.waived_amount for e in self.exemptions_applied), Decimal("0"))

    @property
    def warnings(self) -> list[dict[str, Any]]:
        return self.metadata.warnings

    def can_transition_to(self, target: CalculationStatus) -> bool:
        return self.status in ALLOWED_TRANSITIONS.get(target, frozenset())

    def tax_by_jurisdiction(self) -> dict[str, Decimal]:
        totals: dict[str, Decimal] = {}
        for entry in self.breakdown:
            totals[entry.jurisdiction_id] = (
                totals.get(entry.jurisdiction_id, Decimal("0")) + entry.final_contribution
            )
        return totals

    def tax_by_type(self) -> dict[str, Decimal]:
        totals: dict[str, Decimal] = {}
        for entry in self.breakdown:
            totals[entry.tax_type] = (
                totals.get(entry.tax_type, Decimal("0")) + entry.final_contribution
            )
        return totals

    def breakdown_dicts(self) -> list[dict[str, Any]]:
        return [e.to_dict() for e in self.breakdown]

    def exemption_usage(self) -> list[ExemptionUsage]:
        return [
            ExemptionUsage(
                exemption_id=e.exemption_id,
                calculation_id=self.calculation_id,
                calculable=str(self.calculable),
                rate_id=e.rate_id,
                original_amount=e.original_amount,
                waived_amount=e.waived_amount,
                used_at=self.created_at,
            )
            for e in self.exemptions_applied
        ]

    def summary(self) -> dict[str, Any]:
        return {
            "calculation_id": self.calculation_id,
            "calculable": str(self.calculable),
            "calculation_type": self.calculation_type.value,
            "status": self.status.value,
            "base_amount": self.base_amount,
            "quantity": self.quantity,
            "total_tax": self.total_tax,
            "final_amount": self.final_amount,
            "effective_rate": self.effective_rate,
            "created_at": self.created_at.isoformat(),
        }

    def to_dict(self) -> dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value is not None else None

        return {
            "calculation_id": self.calculation_id,
            "calculable": self.calculable.to_dict(),
            "calculation_type": self.calculation_type.value,
            "base_amount": str(self.base_amount),
            "quantity": self.quantity,
            "input_snapshot": self.input_snapshot,
            "breakdown": self.breakdown_dicts(),
            "total_tax": str(self.total_tax),
            "final_amount": str(self.final_amount),
            "effective_rate": str(self.effective_rate),
            "exemptions_applied": [e.to_dict() for e in self.exemptions_applied],
            "metadata": self.metadata.to_dict(),
            "created_at": iso(self.created_at),
            "status": self.status.value,
            "validation_status": self.validation_status.value,
            "validation_notes": self.validation_notes,
            "updated_at": iso(self.updated_at),
            "document": self.document.to_dict() if self.document else None,
            "applied_at": iso(self.applied_at),
            "voided_at": iso(self.voided_at),
            "void_reason": self.void_reason,
            "adjusts_calculation_id": self.adjusts_calculation_id,
            "adjustment_reason": self.adjustment_reason,
            "superseded_by": self.superseded_by,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CalculationRecord":
        return cls(
            calculation_id=data["calculation_id"],
            calculable=CalculableRef.from_dict(data["calculable"]),
            calculation_type=CalculationType(data["calculation_type"]),
            base_amount=_dec(data["base_amount"]),
            quantity=int(data["quantity"]),
            input_snapshot=dict(data.get("input_snapshot") or {}),
            breakdown=[BreakdownEntry.from_dict(b) for b in data.get("breakdown", [])],
            total_tax=_dec(data["total_tax"]),
            final_amount=_dec(data["final_amount"]),
            effective_rate=_dec(data["effective_rate"]),
            exemptions_applied=[
                ExemptionApplied.from_dict(e) for e in data.get("exemptions_applied", [])
            ],
            metadata=EngineMetadata.from_dict(data.get("metadata") or {}),
            created_at=_dt(data["created_at"]),
            status=CalculationStatus(data.get("status", "calculated")),
            validation_status=ValidationStatus(data.get("validation_status", "pending")),
            validation_notes=data.get("validation_notes", ""),
            updated_at=_dt(data.get("updated_at")),
            document=(
                CalculableRef.from_dict(data["document"]) if data.get("document") else None
            ),
            applied_at=_dt(data.get("applied_at")),
            voided_at=_dt(data.get("voided_at")),
            void_reason=data.get("void_reason", ""),
            adjusts_calculation_id=data.get("adjusts_calculation_id"),
            adjustment_reason=data.get("adjustment_reason", ""),
            superseded_by=data.get("superseded_by"),
            version=int(data.get("version", 1)),
        )
