"""
Exemption filtering.

For every selected rate, decides how a customer's exemption certificates
reduce it: not at all, partially (percentage with an optional cap on the
waived amount) or fully.

Matching rules:
- Invalid exemptions (not active, not verified, outside their validity
  window) and exemptions whose conditions are not met are dropped first.
- Among exemptions whose scope covers the rate, the highest percentage
  wins; ties go to the lowest priority value, then the most recently
  verified certificate, then the exemption id.
- A tie that survives percentage and priority is recorded as an
  ExemptionConflictWarning for administrative review.

The filter never mutates exemption records.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional, Sequence

from telecom_tax.exceptions import ExemptionConflictWarning
from telecom_tax.logging_config import get_logger
from telecom_tax.reference import Exemption, RateDefinition, to_decimal

logger = get_logger("exemptions")

_HUNDRED = Decimal("100")


class AdjustmentKind(Enum):
    NONE = "none"
    PARTIAL = "partial"
    FULL = "full"


@dataclass(frozen=True)
class ExemptionAdjustment:
    """How much of one rate's contribution an exemption waives."""

    kind: AdjustmentKind = AdjustmentKind.NONE
    exemption_id: Optional[str] = None
    percentage: Decimal = Decimal("0")
    cap: Optional[Decimal] = None

    @classmethod
    def for_exemption(cls, exemption: Exemption) -> "ExemptionAdjustment":
        pct = min(max(exemption.percentage, Decimal("0")), _HUNDRED)
        cap = exemption.maximum_exemption_amount
        if pct == 0:
            return cls()
        if pct == _HUNDRED and cap is None:
            return cls(AdjustmentKind.FULL, exemption.exemption_id, pct)
        return cls(AdjustmentKind.PARTIAL, exemption.exemption_id, pct, cap)

    def waived(self, contribution: Decimal) -> Decimal:
        """Portion of ``contribution`` waived; carries the contribution's sign."""
        if self.kind == AdjustmentKind.NONE:
            return Decimal("0")
        if self.kind == AdjustmentKind.FULL:
            return contribution
        amount = contribution * self.percentage / _HUNDRED
        if self.cap is not None and abs(amount) > self.cap:
            amount = self.cap.copy_sign(amount)
        return amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "exemption_id": self.exemption_id,
            "percentage": str(self.percentage),
            "cap": str(self.cap) if self.cap is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ExemptionAdjustment":
        if not data:
            return cls()
        return cls(
            kind=AdjustmentKind(data.get("kind", "none")),
            exemption_id=data.get("exemption_id"),
            percentage=to_decimal(data.get("percentage", "0"), Decimal("0")),
            cap=to_decimal(data.get("cap")),
        )


@dataclass(frozen=True)
class AdjustedRate:
    rate: RateDefinition
    adjustment: ExemptionAdjustment = ExemptionAdjustment()


@dataclass
class ExemptionFilterResult:
    adjusted: list[AdjustedRate]
    considered: list[str] = field(default_factory=list)
    excluded: dict[str, str] = field(default_factory=dict)  # exemption id -> reason
    conflicts: list[ExemptionConflictWarning] = field(default_factory=list)


def _ranking(exemption: Exemption) -> tuple:
    verified = (
        exemption.last_verified_at.timestamp()
        if exemption.last_verified_at is not None
        else float("-inf")
    )
    return (-exemption.percentage, exemption.priority, -verified, exemption.exemption_id)


class ExemptionFilter:
    def apply(
        self,
        rates: Sequence[RateDefinition],
        exemptions: Sequence[Exemption],
        *,
        as_of: date,
        service_type: str,
        amount: Decimal,
        category_code: Optional[str] = None,
        monthly_usage: Optional[Mapping[str, int]] = None,
    ) -> ExemptionFilterResult:
        """
        Pick the winning exemption per rate.

        ``monthly_usage`` maps exemption id to the calculations it already
        served in the as-of month, for ``usage_limit`` conditions.
        """
        monthly_usage = monthly_usage or {}
        eligible: list[Exemption] = []
        excluded: dict[str, str] = {}
        for exemption in exemptions:
            if not exemption.is_valid(as_of):
                excluded[exemption.exemption_id] = self._invalid_reason(exemption, as_of)
            elif not exemption.meets_conditions(
                amount, service_type, as_of, monthly_usage.get(exemption.exemption_id, 0)
            ):
                excluded[exemption.exemption_id] = "conditions not met"
            else:
                eligible.append(exemption)

        result = ExemptionFilterResult(
            adjusted=[],
            considered=sorted(e.exemption_id for e in exemptions),
            excluded=excluded,
        )
        for rate in rates:
            matches = sorted(
                (e for e in eligible if e.applies_to(rate, service_type, category_code)),
                key=_ranking,
            )
            if not matches:
                result.adjusted.append(AdjustedRate(rate))
                continue

            winner = matches[0]
            tied = [
                e.exemption_id
                for e in matches
                if e.percentage == winner.percentage and e.priority == winner.priority
            ]
            if len(tied) > 1:
                warning = ExemptionConflictWarning(rate.rate_id, tied, winner.exemption_id)
                logger.warning(warning.message, extra=warning.log_fields())
                result.conflicts.append(warning)

            result.adjusted.append(
                AdjustedRate(rate, ExemptionAdjustment.for_exemption(winner))
            )
        return result

    @staticmethod
    def _invalid_reason(exemption: Exemption, as_of: date) -> str:
        if exemption.status.value != "active":
            return f"status {exemption.status.value}"
        if exemption.verification_status.value != "verified":
            return f"verification {exemption.verification_status.value}"
        if exemption.is_expired(as_of):
            return "expired"
        return "not yet valid"
