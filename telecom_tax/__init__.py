"""
Telecom Tax Engine
==================

Multi-jurisdiction tax calculation for telecom and VoIP billing, with
auditable, reproducible calculation records.

Modules:
    reference        - Jurisdictions, categories, rate definitions, exemptions
    jurisdictions    - Address to jurisdiction resolution
    rate_selector    - Effective rate selection
    exemptions       - Exemption matching and adjustments
    executor         - The calculation algorithm
    records          - Calculation records and lifecycle states
    recorder         - Record creation and lifecycle transitions
    store            - In-memory and SQLAlchemy record stores
    cache            - Result cache and input fingerprints
    engine           - TaxEngine, the public entry point
    report_generator - Summaries, statistics, CSV/JSON export
    cli              - Command-line interface
"""

__version__ = "1.0.0"

from telecom_tax.engine import TaxEngine
from telecom_tax.exceptions import (
    CalculationNotFoundError,
    ExemptionConflictWarning,
    InvalidCalculationInputError,
    InvalidTransitionError,
    RateDataWarning,
    TaxEngineError,
    UnresolvableAddressError,
)
from telecom_tax.records import (
    CalculableKind,
    CalculableRef,
    CalculationRecord,
    CalculationStatus,
)
from telecom_tax.reference import Address, Exemption, RateDefinition, ReferenceData
from telecom_tax.report_generator import ReportGenerator

__all__ = [
    "TaxEngine",
    "ReferenceData",
    "Address",
    "Exemption",
    "RateDefinition",
    "CalculableKind",
    "CalculableRef",
    "CalculationRecord",
    "CalculationStatus",
    "ReportGenerator",
    "TaxEngineError",
    "UnresolvableAddressError",
    "InvalidTransitionError",
    "CalculationNotFoundError",
    "InvalidCalculationInputError",
    "RateDataWarning",
    "ExemptionConflictWarning",
]
