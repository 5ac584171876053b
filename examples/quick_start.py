#!/usr/bin/env python3
"""
Quick Start Example
===================

Demonstrates basic usage of the TaxEngine: calculate telecom taxes for a
VoIP line in Houston, TX, apply the result to an invoice line, then
correct it with an adjustment.

Usage:
    python examples/quick_start.py
"""

from datetime import date
from decimal import Decimal

from telecom_tax import Address, CalculableKind, CalculableRef, ReferenceData, TaxEngine
from telecom_tax.reference import Exemption, VerificationStatus


def main() -> None:
    # Sample US telecom reference data and an in-memory record store
    reference = ReferenceData.us_telecom_sample()
    engine = TaxEngine(reference)

    houston = Address(
        country="US", state="TX", county="Harris", municipality="Houston",
        postal_code="77002",
    )
    line = CalculableRef(CalculableKind.INVOICE_LINE, "INV-1001-1")

    # Calculate tax for a $100 local VoIP line
    record = engine.calculate(
        line,
        Decimal("100.00"),
        service_type="voip_fixed",
        address=houston,
        as_of=date(2025, 1, 15),
    )

    print(f"Calculation:    {record.calculation_id}")
    for entry in record.breakdown:
        print(f"  {entry.jurisdiction_name:<36} {entry.tax_name:<36} ${entry.final_contribution:>7}")
    print(f"Total Tax:      ${record.total_tax}")
    print(f"Final Amount:   ${record.final_amount}")
    print(f"Effective Rate: {record.effective_rate:.4%}")

    # Finalize the invoice line
    engine.apply_to(record.calculation_id, line)

    # A government customer with a verified state exemption
    reference.put_exemption(
        Exemption(
            exemption_id="EX-CITY-HALL",
            customer_id="CUST-42",
            exemption_type="government",
            jurisdiction_id="US-TX",
            is_blanket=True,
            verification_status=VerificationStatus.VERIFIED,
        )
    )

    print("\n--- Adjustment for an exempt customer ---")
    successor = engine.adjust(
        record.calculation_id,
        "customer is a government entity",
        {"customer_id": "CUST-42"},
    )
    print(f"Adjustment:     {successor.calculation_id}")
    print(f"Total Tax:      ${successor.total_tax}")
    print(f"Exempted:       ${successor.total_exempted}")
    print(f"Original now:   {engine.get_calculation(record.calculation_id).status.value}")


if __name__ == "__main__":
    main()
