"""
Calculation executor: applies the selected, exemption-adjusted rates to a
base amount and produces the ordered breakdown and totals.

Handles:
- Rate ordering by priority, then jurisdiction breadth, then rate id
- Overlapping definitions for the same tax (first in order wins, the rest
  are disclosed as superseded)
- Percentage, fixed, tiered and per-line/minute/unit rate shapes
- Standard/additive/exclusive, compound (tax-on-tax) and inclusive
  (already in the base) combination methods
- De-minimis thresholds and maximum amounts
- Partial, capped and full exemptions
- Per-rate banker's rounding to the cent
- Skipping malformed rates with a recorded warning instead of failing
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Any, Optional, Sequence

from telecom_tax.exceptions import InvalidCalculationInputError, RateDataWarning
from telecom_tax.exemptions import AdjustedRate, AdjustmentKind
from telecom_tax.logging_config import get_logger
from telecom_tax.records import BreakdownEntry, ExemptionApplied
from telecom_tax.reference import (
    CalculationMethod,
    Jurisdiction,
    RateDefinition,
    RateShape,
)

logger = get_logger("executor")

_CENT = Decimal("0.01")
_RATE_PLACES = Decimal("0.000001")
_HUNDRED = Decimal("100")
_ZERO = Decimal("0")

_PER_COUNT_SHAPES = {RateShape.PER_LINE, RateShape.PER_MINUTE, RateShape.PER_UNIT}


def round_tax(amount: Decimal) -> Decimal:
    """Round to the cent, half to even, so many small lines carry no bias."""
    return amount.quantize(_CENT, rounding=ROUND_HALF_EVEN)


@dataclass(frozen=True)
class UsageCounts:
    """Unit counts for per-line, per-minute and per-unit rates."""

    lines: Optional[int] = None
    minutes: Optional[int] = None
    units: Optional[int] = None

    def count_for(self, shape: RateShape, quantity: int) -> int:
        count = {
            RateShape.PER_LINE: self.lines,
            RateShape.PER_MINUTE: self.minutes,
            RateShape.PER_UNIT: self.units,
        }.get(shape)
        return quantity if count is None else count

    def to_dict(self) -> dict[str, Optional[int]]:
        return {"lines": self.lines, "minutes": self.minutes, "units": self.units}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "UsageCounts":
        data = data or {}
        counts = {}
        for key in ("lines", "minutes", "units"):
            value = data.get(key)
            if value is not None:
                value = int(value)
                if value < 0:
                    raise InvalidCalculationInputError(key, value, "must be non-negative")
            counts[key] = value
        return cls(**counts)


@dataclass
class ExecutionResult:
    extended_base: Decimal
    breakdown: list[BreakdownEntry]
    total_tax: Decimal
    inclusive_tax: Decimal
    final_amount: Decimal
    effective_rate: Decimal
    exemptions_applied: list[ExemptionApplied] = field(default_factory=list)
    rates_skipped: list[dict[str, Any]] = field(default_factory=list)
    rates_superseded: list[dict[str, Any]] = field(default_factory=list)

    @property
    def rates_applied(self) -> list[str]:
        return [e.rate_id for e in self.breakdown]


def _tiered_amount(amount: Decimal, rate: RateDefinition) -> Decimal:
    """Sum of each tier's percentage over the part of |amount| inside it."""
    magnitude = abs(amount)
    total = _ZERO
    for tier in sorted(rate.tiers, key=lambda t: t.floor):
        if magnitude <= tier.floor:
            break
        upper = magnitude if tier.ceiling is None else min(magnitude, tier.ceiling)
        total += (upper - tier.floor) * tier.percentage / _HUNDRED
    return total if amount >= 0 else -total


class CalculationExecutor:
    """
    Pure computation over already-resolved inputs.

    The executor does no lookups: jurisdictions, rates and exemption
    adjustments are handed in, so the same inputs always give the same
    breakdown.
    """

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _check_rate(
        rate: RateDefinition, jurisdictions: dict[str, Jurisdiction]
    ) -> tuple[RateShape, CalculationMethod]:
        """Raise RateDataWarning if the rate cannot be evaluated."""
        try:
            shape = RateShape(rate.shape)
        except ValueError:
            raise RateDataWarning(rate.rate_id, f"unknown rate shape {rate.shape!r}") from None
        try:
            method = CalculationMethod(rate.calculation_method)
        except ValueError:
            raise RateDataWarning(
                rate.rate_id, f"unknown calculation method {rate.calculation_method!r}"
            ) from None

        if rate.jurisdiction_id not in jurisdictions:
            raise RateDataWarning(
                rate.rate_id, f"jurisdiction {rate.jurisdiction_id} was not resolved"
            )

        if shape == RateShape.PERCENTAGE:
            if rate.percentage is None:
                raise RateDataWarning(rate.rate_id, "percentage rate has no percentage")
            if rate.percentage < 0:
                raise RateDataWarning(rate.rate_id, "percentage is negative")
        elif shape == RateShape.TIERED:
            if not rate.tiers:
                raise RateDataWarning(rate.rate_id, "tiered rate has no tier table")
            for tier in rate.tiers:
                if tier.ceiling is not None and tier.ceiling <= tier.floor:
                    raise RateDataWarning(
                        rate.rate_id, f"tier ceiling {tier.ceiling} <= floor {tier.floor}"
                    )
        elif rate.fixed_amount is None:
            raise RateDataWarning(rate.rate_id, f"{shape.value} rate has no fixed_amount")

        for name in ("minimum_threshold", "maximum_amount"):
            value = getattr(rate, name)
            if value is not None and value < 0:
                raise RateDataWarning(rate.rate_id, f"{name} is negative")
        return shape, method

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(
        self,
        base_amount: Decimal,
        quantity: int,
        adjusted_rates: Sequence[AdjustedRate],
        jurisdictions: Sequence[Jurisdiction],
        usage: Optional[UsageCounts] = None,
    ) -> ExecutionResult:
        if not isinstance(base_amount, Decimal):
            raise InvalidCalculationInputError("base_amount", base_amount, "must be a Decimal")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise InvalidCalculationInputError("quantity", quantity, "must be an integer >= 1")
        usage = usage or UsageCounts()

        by_id = {j.jurisdiction_id: j for j in jurisdictions}
        position = {j.jurisdiction_id: i for i, j in enumerate(jurisdictions)}

        skipped: list[dict[str, Any]] = []
        valid: list[tuple[AdjustedRate, RateShape, CalculationMethod]] = []
        for item in adjusted_rates:
            try:
                shape, method = self._check_rate(item.rate, by_id)
            except RateDataWarning as warning:
                logger.warning(warning.message, extra=warning.log_fields())
                skipped.append(warning.to_dict())
                continue
            valid.append((item, shape, method))

        def order(entry: tuple[AdjustedRate, RateShape, CalculationMethod]) -> tuple:
            rate = entry[0].rate
            jurisdiction = by_id[rate.jurisdiction_id]
            return (
                rate.priority,
                jurisdiction.kind.breadth,
                position[rate.jurisdiction_id],
                rate.rate_id,
            )

        valid.sort(key=order)

        superseded: list[dict[str, Any]] = []
        winners: dict[tuple, str] = {}
        ordered: list[tuple[AdjustedRate, RateShape, CalculationMethod]] = []
        for entry in valid:
            rate = entry[0].rate
            key = rate.overlap_key
            if key in winners:
                info = {
                    "rate_id": rate.rate_id,
                    "superseded_by": winners[key],
                    "reason": "overlapping definition for the same tax",
                }
                logger.warning(
                    "Overlapping rate definitions; %s superseded by %s",
                    rate.rate_id,
                    winners[key],
                    extra=info,
                )
                superseded.append(info)
                continue
            winners[key] = rate.rate_id
            ordered.append(entry)

        extended = base_amount * quantity
        running_base = extended
        cumulative = _ZERO
        inclusive_total = _ZERO
        breakdown: list[BreakdownEntry] = []
        exemptions_applied: list[ExemptionApplied] = []

        for seq, (item, shape, method) in enumerate(ordered, start=1):
            rate = item.rate
            inclusive = method == CalculationMethod.INCLUSIVE
            compound = not inclusive and (
                method == CalculationMethod.COMPOUND or rate.is_compound
            )

            if inclusive:
                taxable = running_base
            elif compound:
                taxable = running_base + cumulative
            else:
                taxable = extended

            raw = self._raw_amount(rate, shape, taxable, quantity, usage, inclusive)
            clamped, de_minimis = self._clamp(rate, raw)

            waived = item.adjustment.waived(clamped)
            contribution = clamped - waived
            final = round_tax(contribution)

            if item.adjustment.kind != AdjustmentKind.NONE:
                exemptions_applied.append(
                    ExemptionApplied(
                        exemption_id=item.adjustment.exemption_id or "",
                        rate_id=rate.rate_id,
                        tax_type=rate.tax_type,
                        jurisdiction_id=rate.jurisdiction_id,
                        original_amount=round_tax(clamped),
                        waived_amount=round_tax(clamped) - final,
                    )
                )

            cumulative += final
            if inclusive:
                inclusive_total += final
                running_base -= final

            jurisdiction = by_id[rate.jurisdiction_id]
            breakdown.append(
                BreakdownEntry(
                    sequence=seq,
                    jurisdiction_id=jurisdiction.jurisdiction_id,
                    jurisdiction_name=jurisdiction.name,
                    jurisdiction_kind=jurisdiction.kind.value,
                    rate_id=rate.rate_id,
                    tax_type=rate.tax_type,
                    tax_name=rate.name,
                    shape=shape.value,
                    calculation_method=method.value,
                    taxable_base=taxable,
                    raw_amount=raw,
                    clamped_amount=clamped,
                    exemption=item.adjustment,
                    exempted_amount=waived,
                    unrounded_contribution=contribution,
                    final_contribution=final,
                    is_inclusive=inclusive,
                    is_recoverable=rate.is_recoverable,
                    de_minimis=de_minimis,
                )
            )

        total_tax = cumulative
        final_amount = extended + total_tax - inclusive_total
        if extended == 0:
            effective_rate = _ZERO
        else:
            effective_rate = (total_tax / extended).quantize(_RATE_PLACES)

        return ExecutionResult(
            extended_base=extended,
            breakdown=breakdown,
            total_tax=total_tax,
            inclusive_tax=inclusive_total,
            final_amount=final_amount,
            effective_rate=effective_rate,
            exemptions_applied=exemptions_applied,
            rates_skipped=skipped,
            rates_superseded=superseded,
        )

    @staticmethod
    def _raw_amount(
        rate: RateDefinition,
        shape: RateShape,
        taxable: Decimal,
        quantity: int,
        usage: UsageCounts,
        inclusive: bool,
    ) -> Decimal:
        if shape == RateShape.PERCENTAGE:
            if inclusive:
                # Back the embedded tax out of the gross amount: base * p / (100 + p)
                return taxable * rate.percentage / (_HUNDRED + rate.percentage)
            return taxable * rate.percentage / _HUNDRED
        if shape == RateShape.FIXED:
            return rate.fixed_amount
        if shape == RateShape.TIERED:
            return _tiered_amount(taxable, rate)
        return rate.fixed_amount * usage.count_for(shape, quantity)

    @staticmethod
    def _clamp(rate: RateDefinition, amount: Decimal) -> tuple[Decimal, bool]:
        """Apply the de-minimis gate and the maximum. Returns (amount, de_minimis)."""
        minimum = rate.minimum_threshold
        if minimum is not None and minimum > 0 and abs(amount) < minimum:
            return _ZERO, True
        maximum = rate.maximum_amount
        if maximum is not None and abs(amount) > maximum:
            return maximum.copy_sign(amount), False
        return amount, False
