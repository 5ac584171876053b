"""
TaxEngine: the public entry point for billing, invoicing and quoting.

Pipeline for ``calculate()``::

    cache lookup -> JurisdictionResolver -> RateSelector -> ExemptionFilter
                 -> CalculationExecutor -> CalculationRecorder -> cache put

A cache hit skips the pipeline but still writes a new calculation record,
so every request is auditable. Only UnresolvableAddressError (and bad
input) aborts a calculation; rate and exemption problems are recorded as
warnings in the record's metadata.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional, Sequence

from telecom_tax import __version__
from telecom_tax.cache import ResultCache, fingerprint
from telecom_tax.config import EngineSettings, load_settings
from telecom_tax.exceptions import InvalidCalculationInputError
from telecom_tax.exemptions import ExemptionFilter
from telecom_tax.executor import CalculationExecutor, ExecutionResult, UsageCounts
from telecom_tax.jurisdictions import JurisdictionResolver
from telecom_tax.logging_config import get_logger
from telecom_tax.rate_selector import RateSelector
from telecom_tax.recorder import CalculationRecorder
from telecom_tax.records import (
    CalculableKind,
    CalculableRef,
    CalculationRecord,
    CalculationStatus,
    CalculationType,
    EngineMetadata,
    ExemptionUsage,
    ValidationStatus,
)
from telecom_tax.reference import (
    Address,
    Exemption,
    Jurisdiction,
    RateDefinition,
    ReferenceData,
)
from telecom_tax.store import CalculationStore, InMemoryCalculationStore, SqlCalculationStore

logger = get_logger("engine")

# Inputs that adjust() accepts as corrections
CORRECTABLE_INPUTS = frozenset(
    {
        "base_amount",
        "quantity",
        "category",
        "service_type",
        "address",
        "as_of",
        "customer_id",
        "usage",
    }
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_amount(value: Any) -> Decimal:
    """Accept Decimal, int or numeric str. Floats are rejected outright."""
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidCalculationInputError(
            "base_amount", value, "pass a Decimal or a string, not a float"
        )
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise InvalidCalculationInputError(
                "base_amount", value, "not a number"
            ) from None
    if not amount.is_finite():
        raise InvalidCalculationInputError("base_amount", value, "must be finite")
    return amount


def _coerce_quantity(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidCalculationInputError("quantity", value, "must be an integer >= 1")
    return value


def _coerce_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise InvalidCalculationInputError("as_of", value, "expected YYYY-MM-DD") from None


@dataclass
class _Computation:
    """Everything a calculation produced before it was recorded."""

    result: ExecutionResult
    snapshot: dict[str, Any]
    metadata: EngineMetadata


class TaxEngine:
    """
    Facade over the calculation pipeline and the record lifecycle.

    Reference data is read-only here. The engine's only shared mutable
    state is the result cache and the record store.
    """

    def __init__(
        self,
        reference: ReferenceData,
        store: Optional[CalculationStore] = None,
        settings: Optional[EngineSettings] = None,
        cache: Optional[ResultCache] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.reference = reference
        self.settings = settings or EngineSettings()
        self._clock = clock
        self.resolver = JurisdictionResolver(reference)
        self.selector = RateSelector(reference)
        self.exemption_filter = ExemptionFilter()
        self.executor = CalculationExecutor()
        self.recorder = CalculationRecorder(store or InMemoryCalculationStore(), clock)
        if cache is None and self.settings.cache_enabled:
            cache = ResultCache(
                ttl_seconds=self.settings.cache_ttl_seconds,
                max_entries=self.settings.cache_max_entries,
            )
        self.cache = cache if self.settings.cache_enabled else None

    @classmethod
    def from_settings(
        cls,
        reference: Optional[ReferenceData] = None,
        settings: Optional[EngineSettings] = None,
    ) -> "TaxEngine":
        """Build an engine from environment settings (sample data if none given)."""
        settings = settings or load_settings()
        store: CalculationStore
        if settings.database_url:
            store = SqlCalculationStore(settings.database_url)
        else:
            store = InMemoryCalculationStore()
        return cls(
            reference or ReferenceData.us_telecom_sample(),
            store=store,
            settings=settings,
        )

    # ------------------------------------------------------------------
    # Calculation
    # ------------------------------------------------------------------

    def calculate(
        self,
        calculable: CalculableRef,
        base_amount: Any,
        quantity: int = 1,
        category: Optional[str] = None,
        service_type: str = "",
        address: Optional[Address] = None,
        as_of: Optional[date] = None,
        *,
        customer_id: Optional[str] = None,
        exemptions: Optional[Sequence[Exemption]] = None,
        usage: Optional[dict | UsageCounts] = None,
        calculation_type: Optional[CalculationType] = None,
    ) -> CalculationRecord:
        """
        Compute and record the tax for one calculable line.

        ``exemptions`` defaults to the customer's certificates from reference
        data. Raises UnresolvableAddressError when the address cannot be
        matched; never falls back to zero tax.
        """
        started = time.perf_counter()
        amount = coerce_amount(base_amount)
        quantity = _coerce_quantity(quantity)
        if address is None:
            raise InvalidCalculationInputError("address", None, "an address is required")
        as_of = _coerce_date(as_of) if as_of is not None else self._clock().date()
        counts = usage if isinstance(usage, UsageCounts) else UsageCounts.from_dict(usage)
        if exemptions is None:
            exemptions = self.reference.exemptions_for(customer_id) if customer_id else []
        monthly_usage = self._monthly_usage(exemptions, as_of)

        key = fingerprint(
            base_amount=amount,
            quantity=quantity,
            category_code=category,
            service_type=service_type,
            address=address,
            exemption_ids=[e.exemption_id for e in exemptions],
            as_of=as_of,
            customer_id=customer_id,
            usage=counts.to_dict(),
            exemption_usage=monthly_usage,
        )

        cached_from: Optional[str] = None
        computation: Optional[_Computation] = None
        if self.cache is not None:
            hit = self.cache.get(key)
            if hit is not None:
                cached_from, computation = hit

        if computation is None:
            computation = self._compute(
                amount, quantity, category, service_type, address, as_of,
                customer_id, exemptions, counts, monthly_usage,
            )

        metadata = EngineMetadata.from_dict(computation.metadata.to_dict())
        metadata.fingerprint = key
        metadata.cache_hit = cached_from is not None
        metadata.cached_from = cached_from
        metadata.duration_ms = round((time.perf_counter() - started) * 1000, 3)

        record = self.recorder.record(
            calculable=calculable,
            calculation_type=calculation_type or calculable.default_calculation_type,
            base_amount=amount,
            quantity=quantity,
            input_snapshot=computation.snapshot,
            result=computation.result,
            metadata=metadata,
        )

        if self.cache is not None and cached_from is None:
            self.cache.put(key, (record.calculation_id, computation))

        logger.info(
            "Tax calculated",
            extra={
                "calculation_id": record.calculation_id,
                "calculable": str(calculable),
                "base_amount": str(amount),
                "total_tax": str(record.total_tax),
                "jurisdictions": len(metadata.jurisdictions),
                "duration_ms": metadata.duration_ms,
                "cache_hit": metadata.cache_hit,
            },
        )
        return record

    def _compute(
        self,
        amount: Decimal,
        quantity: int,
        category: Optional[str],
        service_type: str,
        address: Address,
        as_of: date,
        customer_id: Optional[str],
        exemptions: Sequence[Exemption],
        usage: UsageCounts,
        monthly_usage: dict[str, int],
    ) -> _Computation:
        jurisdictions = self.resolver.resolve(address, as_of)
        notes: list[str] = []

        category_code = category
        if category_code is None and service_type:
            found = self.reference.category_for_service(service_type)
            if found is not None:
                category_code = found.code
                notes.append(f"category {found.code} chosen for service type {service_type}")

        tax_category = self.reference.get_category(category_code) if category_code else None
        taxable = tax_category is None or tax_category.is_taxable
        rates: list[RateDefinition] = []
        if not taxable:
            notes.append(f"category {category_code} is not taxable")
        else:
            rates = self.selector.select(jurisdictions, category_code, service_type, as_of)
            if not rates:
                notes.append("no rate definitions apply")

        filtered = self.exemption_filter.apply(
            rates,
            exemptions,
            as_of=as_of,
            service_type=service_type,
            amount=amount * quantity,
            category_code=category_code,
            monthly_usage=monthly_usage,
        )
        result = self.executor.execute(
            amount, quantity, filtered.adjusted, jurisdictions, usage
        )

        snapshot = {
            "base_amount": str(amount),
            "quantity": quantity,
            "category": category_code,
            "service_type": service_type,
            "address": address.to_dict(),
            "as_of": as_of.isoformat(),
            "customer_id": customer_id,
            "usage": usage.to_dict(),
            "jurisdictions": [j.to_dict() for j in jurisdictions],
            "rates": [r.to_dict() for r in rates],
            "exemptions": [e.to_dict() for e in exemptions],
            "exemption_monthly_usage": dict(monthly_usage),
            "taxable": taxable,
        }
        metadata = EngineMetadata(
            engine_version=__version__,
            jurisdictions=[
                {"jurisdiction_id": j.jurisdiction_id, "kind": j.kind.value, "name": j.name}
                for j in jurisdictions
            ],
            category_code=category_code,
            rates_considered=[r.rate_id for r in rates],
            rates_applied=result.rates_applied,
            rates_skipped=result.rates_skipped,
            rates_superseded=result.rates_superseded,
            exemptions_considered=filtered.considered,
            exemptions_excluded=filtered.excluded,
            warnings=result.rates_skipped + [c.to_dict() for c in filtered.conflicts],
            notes=notes,
        )
        return _Computation(result, snapshot, metadata)

    def _execute_snapshot(self, snapshot: dict[str, Any]) -> ExecutionResult:
        """Re-run the filter and executor on recorded inputs only."""
        jurisdictions = [Jurisdiction.from_dict(j) for j in snapshot.get("jurisdictions", [])]
        rates = [RateDefinition.from_dict(r) for r in snapshot.get("rates", [])]
        exemptions = [Exemption.from_dict(e) for e in snapshot.get("exemptions", [])]
        amount = coerce_amount(snapshot["base_amount"])
        quantity = int(snapshot["quantity"])
        filtered = self.exemption_filter.apply(
            rates,
            exemptions,
            as_of=_coerce_date(snapshot["as_of"]),
            service_type=snapshot.get("service_type", ""),
            amount=amount * quantity,
            category_code=snapshot.get("category"),
            monthly_usage=snapshot.get("exemption_monthly_usage"),
        )
        return self.executor.execute(
            amount,
            quantity,
            filtered.adjusted,
            jurisdictions,
            UsageCounts.from_dict(snapshot.get("usage")),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def get_calculation(self, calculation_id: str) -> CalculationRecord:
        return self.recorder.get(calculation_id)

    def apply_to(self, calculation_id: str, document: CalculableRef) -> CalculationRecord:
        return self.recorder.apply_to(calculation_id, document)

    def void(self, calculation_id: str, reason: str) -> CalculationRecord:
        return self.recorder.void(calculation_id, reason)

    def adjust(
        self,
        calculation_id: str,
        reason: str,
        corrected_inputs: Optional[dict[str, Any]] = None,
    ) -> CalculationRecord:
        """
        Recalculate with corrected inputs as a new ``adjustment`` record
        linked to the original. The original moves to ``adjusted`` and keeps
        its breakdown.
        """
        original = self.recorder.check_adjustable(calculation_id)
        corrected_inputs = dict(corrected_inputs or {})
        unknown = set(corrected_inputs) - CORRECTABLE_INPUTS
        if unknown:
            raise InvalidCalculationInputError(
                "corrected_inputs", sorted(unknown), "unknown input names"
            )

        snap = original.input_snapshot
        inputs: dict[str, Any] = {
            "base_amount": original.base_amount,
            "quantity": original.quantity,
            "category": snap.get("category"),
            "service_type": snap.get("service_type", ""),
            "address": Address.from_dict(snap["address"]),
            "as_of": snap["as_of"],
            "customer_id": snap.get("customer_id"),
            "usage": snap.get("usage"),
        }
        inputs.update(corrected_inputs)
        if isinstance(inputs["address"], dict):
            inputs["address"] = Address.from_dict(inputs["address"])

        started = time.perf_counter()
        amount = coerce_amount(inputs["base_amount"])
        quantity = _coerce_quantity(inputs["quantity"])
        as_of = _coerce_date(inputs["as_of"])
        customer_id = inputs["customer_id"]
        if "customer_id" in corrected_inputs:
            exemptions = self.reference.exemptions_for(customer_id) if customer_id else []
        else:
            exemptions = [Exemption.from_dict(e) for e in snap.get("exemptions", [])]
        counts = (
            inputs["usage"]
            if isinstance(inputs["usage"], UsageCounts)
            else UsageCounts.from_dict(inputs["usage"])
        )

        computation = self._compute(
            amount, quantity, inputs["category"], inputs["service_type"],
            inputs["address"], as_of, customer_id, exemptions, counts,
        )
        computation.metadata.notes.append(f"adjusts {original.calculation_id}: {reason}")
        computation.metadata.duration_ms = round((time.perf_counter() - started) * 1000, 3)

        successor = self.recorder.build(
            calculable=original.calculable,
            calculation_type=CalculationType.ADJUSTMENT,
            base_amount=amount,
            quantity=quantity,
            input_snapshot=computation.snapshot,
            result=computation.result,
            metadata=computation.metadata,
            adjusts_calculation_id=original.calculation_id,
            adjustment_reason=reason,
        )
        return self.recorder.record_adjustment(original, successor)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def validate_calculation(self, calculation_id: str, notes: str = "") -> CalculationRecord:
        """Re-derive the record from its snapshot and mark it validated or not."""
        record = self.recorder.get(calculation_id)
        recomputed = self._execute_snapshot(record.input_snapshot)
        matches = (
            [e.to_dict() for e in recomputed.breakdown] == record.breakdown_dicts()
            and recomputed.total_tax == record.total_tax
        )
        status = ValidationStatus.VALIDATED if matches else ValidationStatus.DISCREPANCY
        if not matches:
            detail = f"recomputed total {recomputed.total_tax} != recorded {record.total_tax}"
            notes = f"{notes}; {detail}" if notes else detail
            logger.warning(
                "Calculation failed validation",
                extra={"calculation_id": calculation_id, "detail": detail},
            )
        return self.recorder.mark_validation(calculation_id, status, notes)

    def recalculate_from_audit(self, calculation_id: str) -> dict[str, Any]:
        """Recompute from the stored snapshot and report the differences. Nothing is written."""
        record = self.recorder.get(calculation_id)
        recomputed = self._execute_snapshot(record.input_snapshot)
        return {
            "calculation_id": calculation_id,
            "original_total_tax": record.total_tax,
            "recalculated_total_tax": recomputed.total_tax,
            "tax_difference": recomputed.total_tax - record.total_tax,
            "original_final_amount": record.final_amount,
            "recalculated_final_amount": recomputed.final_amount,
            "final_difference": recomputed.final_amount - record.final_amount,
            "matches": [e.to_dict() for e in recomputed.breakdown] == record.breakdown_dicts(),
            "breakdown": [e.to_dict() for e in recomputed.breakdown],
        }

    def history(self, calculable: CalculableRef, limit: int = 10) -> list[CalculationRecord]:
        return self.recorder.history(calculable, limit)

    def compare_with_previous(self, calculation_id: str) -> Optional[dict[str, Any]]:
        """
        Differences between a record and the record before it for the same
        calculable. None when it is the first one.
        """
        record = self.recorder.get(calculation_id)
        earlier = [
            r
            for r in self.recorder.history(record.calculable, limit=1000)
            if r.calculation_id != calculation_id and r.created_at <= record.created_at
        ]
        if not earlier:
            return None
        previous = earlier[0]
        return {
            "calculation_id": record.calculation_id,
            "previous_id": previous.calculation_id,
            "base_difference": record.extended_base - previous.extended_base,
            "tax_difference": record.total_tax - previous.total_tax,
            "final_difference": record.final_amount - previous.final_amount,
            "rate_difference": record.effective_rate - previous.effective_rate,
        }

    def exemption_usage(self, exemption_id: str) -> list[ExemptionUsage]:
        """Every waiver granted by an exemption, skipping voided calculations."""
        usage: list[ExemptionUsage] = []
        for record in self.recorder.all():
            if record.status == CalculationStatus.VOIDED:
                continue
            usage.extend(u for u in record.exemption_usage() if u.exemption_id == exemption_id)
        return usage

    def _monthly_usage(self, exemptions: Sequence[Exemption], as_of: date) -> dict[str, int]:
        """Calculations each usage-limited exemption served in the as-of month."""
        limited = {e.exemption_id for e in exemptions if e.usage_limit() is not None}
        if not limited:
            return {}
        counts = dict.fromkeys(sorted(limited), 0)
        month = (as_of.year, as_of.month)
        for record in self.recorder.all():
            # superseded originals are counted through their successor
            if record.status in (CalculationStatus.VOIDED, CalculationStatus.ADJUSTED):
                continue
            recorded = _coerce_date(record.input_snapshot.get("as_of", as_of))
            if (recorded.year, recorded.month) != month:
                continue
            for exemption_id in {u.exemption_id for u in record.exemption_usage()} & limited:
                counts[exemption_id] += 1
        return counts

    def expiring_exemptions(self, as_of: Optional[date] = None) -> list[Exemption]:
        """Exemptions expiring within the configured window, soonest first."""
        as_of = _coerce_date(as_of) if as_of is not None else self._clock().date()
        return self.reference.expiring_exemptions(as_of, self.settings.expiring_soon_days)

    def calculations(self) -> list[CalculationRecord]:
        return self.recorder.all()

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    def clear_cache(self) -> None:
        if self.cache is not None:
            self.cache.clear()

    def cache_stats(self) -> dict[str, Any]:
        if self.cache is None:
            return {"enabled": False}
        return {"enabled": True, **self.cache.stats()}


def invoice_line(line_id: str) -> CalculableRef:
    return CalculableRef(CalculableKind.INVOICE_LINE, line_id)


def quote_line(line_id: str) -> CalculableRef:
    return CalculableRef(CalculableKind.QUOTE_LINE, line_id)
