"""
Rate selection: the effective rate definitions for a set of jurisdictions,
a tax category and a service type on a given date.

Overlapping definitions for the same tax are all returned. Choosing among
them is left to the executor so the audit trail shows everything that was
considered.
"""

from __future__ import annotations

from datetime import date
from typing import Optional, Sequence

from telecom_tax.reference import Jurisdiction, RateDefinition, ReferenceData


class RateSelector:
    def __init__(self, reference: ReferenceData) -> None:
        self.reference = reference

    def select(
        self,
        jurisdictions: Sequence[Jurisdiction],
        category_code: Optional[str],
        service_type: str,
        as_of: date,
    ) -> list[RateDefinition]:
        """
        Return matching rate definitions, ordered by jurisdiction position,
        then priority, then rate id. An empty list is a valid answer.
        """
        position = {j.jurisdiction_id: i for i, j in enumerate(jurisdictions)}
        selected = [
            rate
            for rate in self.reference.rates()
            if rate.jurisdiction_id in position
            and rate.applies_to_category(category_code)
            and rate.applies_to_service(service_type)
            and rate.is_effective(as_of)
        ]
        return sorted(
            selected,
            key=lambda r: (position[r.jurisdiction_id], r.priority, r.rate_id),
        )
