"""
Jurisdiction resolution.

Maps a service address to the taxing jurisdictions that cover it, ordered
broadest to narrowest: federal, state, county, municipal, local, special
district.
"""

from __future__ import annotations

from datetime import date

from telecom_tax.exceptions import UnresolvableAddressError
from telecom_tax.logging_config import get_logger
from telecom_tax.reference import Address, Jurisdiction, ReferenceData

logger = get_logger("jurisdictions")


def breadth_order(jurisdiction: Jurisdiction) -> tuple[int, str, str]:
    return (jurisdiction.kind.breadth, jurisdiction.name, jurisdiction.jurisdiction_id)


class JurisdictionResolver:
    """Pure function of address + jurisdiction reference data."""

    def __init__(self, reference: ReferenceData) -> None:
        self.reference = reference

    def resolve(self, address: Address, as_of: date) -> list[Jurisdiction]:
        """
        Return the active jurisdictions whose scope contains the address.

        Raises UnresolvableAddressError when the address is malformed or
        nothing matches. Callers must not fall back to zero tax.
        """
        if not address.country or not address.country.strip():
            self._fail(address, "address has no country")

        active = [j for j in self.reference.jurisdictions() if j.is_active(as_of)]
        country = address.country.strip().lower()
        if not any(j.scope.country.lower() == country for j in active):
            self._fail(address, f"unsupported country {address.country!r}")

        matched = [j for j in active if j.scope.matches(address)]
        if not matched:
            self._fail(address, "no jurisdiction matches the address")

        return sorted(matched, key=breadth_order)

    def _fail(self, address: Address, reason: str) -> None:
        logger.warning(
            "Address could not be resolved",
            extra={"address": address.to_dict(), "reason": reason},
        )
        raise UnresolvableAddressError(address, reason)
