"""
Tax reference data: jurisdictions, categories, rate definitions, exemptions.

The engine only reads this data as of a given date. Rate definitions are
append-only facts with effective windows, so a historical calculation can
always be reproduced against the rates that were in force at the time.

Ships with a small US telecom sample data set (federal excise and USF,
Texas and California state/county/municipal taxes, 911 district fees)
used by the CLI and the examples.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional


class JurisdictionKind(Enum):
    FEDERAL = "federal"
    STATE = "state"
    COUNTY = "county"
    MUNICIPAL = "municipal"
    LOCAL = "local"
    SPECIAL_DISTRICT = "special_district"

    @property
    def breadth(self) -> int:
        """Rank from broadest (0) to narrowest."""
        return _BREADTH[self]


_BREADTH: dict[JurisdictionKind, int] = {
    JurisdictionKind.FEDERAL: 0,
    JurisdictionKind.STATE: 1,
    JurisdictionKind.COUNTY: 2,
    JurisdictionKind.MUNICIPAL: 3,
    JurisdictionKind.LOCAL: 4,
    JurisdictionKind.SPECIAL_DISTRICT: 5,
}


class RateShape(Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    TIERED = "tiered"
    PER_LINE = "per_line"
    PER_MINUTE = "per_minute"
    PER_UNIT = "per_unit"


class CalculationMethod(Enum):
    STANDARD = "standard"
    COMPOUND = "compound"
    ADDITIVE = "additive"
    # Tax already embedded in the base: a percentage rate p yields
    # base * p / (100 + p), not base * p / 100, and the running base shrinks by it.
    INCLUSIVE = "inclusive"
    EXCLUSIVE = "exclusive"  # tax added on top of the base


class ExemptionStatus(Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    SUSPENDED = "suspended"
    REVOKED = "revoked"
    PENDING = "pending"


class VerificationStatus(Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"
    EXPIRED = "expired"
    NEEDS_RENEWAL = "needs_renewal"


def to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Convert a numeric-ish value to Decimal; missing values give ``default``."""
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _to_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _to_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _str_or_none(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _norm(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = " ".join(value.split()).lower()
    return value or None


# -----------------------------------------------------------------------
# Addresses and jurisdictions
# -----------------------------------------------------------------------


@dataclass(frozen=True)
class Address:
    """A service or billing address, already parsed into its parts."""

    country: str
    state: Optional[str] = None
    county: Optional[str] = None
    municipality: Optional[str] = None
    postal_code: Optional[str] = None

    def to_dict(self) -> dict[str, Optional[str]]:
        return {
            "country": self.country,
            "state": self.state,
            "county": self.county,
            "municipality": self.municipality,
            "postal_code": self.postal_code,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Address":
        return cls(
            country=data.get("country") or "",
            state=data.get("state"),
            county=data.get("county"),
            municipality=data.get("municipality") or data.get("city"),
            postal_code=data.get("postal_code") or data.get("zip"),
        )


@dataclass(frozen=True)
class GeographicScope:
    """
    Where a jurisdiction applies. Every field that is set must match the
    address; unset fields match anything. Postal codes match by prefix so
    a ZIP+4 address matches a five digit entry.
    """

    country: str
    state: Optional[str] = None
    county: Optional[str] = None
    municipality: Optional[str] = None
    postal_codes: tuple[str, ...] = ()

    def matches(self, address: Address) -> bool:
        if _norm(self.country) != _norm(address.country):
            return False
        for scope_value, addr_value in (
            (self.state, address.state),
            (self.county, address.county),
            (self.municipality, address.municipality),
        ):
            if scope_value is not None and _norm(scope_value) != _norm(addr_value):
                return False
        if self.postal_codes:
            postal = (address.postal_code or "").replace(" ", "")
            if not postal or not any(postal.startswith(p) for p in self.postal_codes):
                return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "country": self.country,
            "state": self.state,
            "county": self.county,
            "municipality": self.municipality,
            "postal_codes": list(self.postal_codes),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GeographicScope":
        return cls(
            country=data["country"],
            state=data.get("state"),
            county=data.get("county"),
            municipality=data.get("municipality"),
            postal_codes=tuple(data.get("postal_codes") or ()),
        )


@dataclass(frozen=True)
class Jurisdiction:
    """A taxing authority scoped to a geography."""

    jurisdiction_id: str
    kind: JurisdictionKind
    name: str
    authority_name: str
    scope: GeographicScope
    effective_date: Optional[date] = None
    expiry_date: Optional[date] = None

    def is_active(self, as_of: date) -> bool:
        if self.effective_date is not None and as_of < self.effective_date:
            return False
        if self.expiry_date is not None and as_of >= self.expiry_date:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "jurisdiction_id": self.jurisdiction_id,
            "kind": self.kind.value,
            "name": self.name,
            "authority_name": self.authority_name,
            "scope": self.scope.to_dict(),
            "effective_date": _iso(self.effective_date),
            "expiry_date": _iso(self.expiry_date),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Jurisdiction":
        return cls(
            jurisdiction_id=str(data["jurisdiction_id"]),
            kind=JurisdictionKind(data["kind"]),
            name=data["name"],
            authority_name=data.get("authority_name", data["name"]),
            scope=GeographicScope.from_dict(data["scope"]),
            effective_date=_to_date(data.get("effective_date")),
            expiry_date=_to_date(data.get("expiry_date")),
        )


@dataclass(frozen=True)
class TaxCategory:
    """Classification of a service for tax purposes."""

    code: str
    name: str
    service_types: tuple[str, ...] = ()
    is_taxable: bool = True
    priority: int = 0

    def covers(self, service_type: str) -> bool:
        return not self.service_types or service_type in self.service_types

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "service_types": list(self.service_types),
            "is_taxable": self.is_taxable,
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TaxCategory":
        return cls(
            code=data["code"],
            name=data.get("name", data["code"]),
            service_types=tuple(data.get("service_types") or ()),
            is_taxable=bool(data.get("is_taxable", True)),
            priority=int(data.get("priority", 0)),
        )


# -----------------------------------------------------------------------
# Rate definitions
# -----------------------------------------------------------------------


@dataclass(frozen=True)
class TierBracket:
    """One segment of a tiered rate: ``percentage`` applies to [floor, ceiling)."""

    floor: Decimal
    ceiling: Optional[Decimal]
    percentage: Decimal

    def to_dict(self) -> dict[str, Optional[str]]:
        return {
            "floor": str(self.floor),
            "ceiling": _str_or_none(self.ceiling),
            "percentage": str(self.percentage),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TierBracket":
        return cls(
            floor=to_decimal(data.get("floor", "0"), Decimal("0")),
            ceiling=to_decimal(data.get("ceiling")),
            percentage=to_decimal(data["percentage"], Decimal("0")),
        )


@dataclass(frozen=True)
class RateDefinition:
    """
    A single tax rule.

    ``shape`` and ``calculation_method`` are kept as the raw strings found in
    the reference data; the executor validates them so that one bad row is
    skipped rather than rejected at load time.
    """

    rate_id: str
    jurisdiction_id: str
    tax_type: str
    name: str
    shape: str
    effective_date: date
    expiry_date: Optional[date] = None
    category_code: Optional[str] = None
    service_types: tuple[str, ...] = ()
    percentage: Optional[Decimal] = None
    fixed_amount: Optional[Decimal] = None
    minimum_threshold: Optional[Decimal] = None
    maximum_amount: Optional[Decimal] = None
    calculation_method: str = CalculationMethod.STANDARD.value
    is_compound: bool = False
    is_recoverable: bool = False
    priority: int = 0
    tiers: tuple[TierBracket, ...] = ()

    def is_effective(self, as_of: date) -> bool:
        if as_of < self.effective_date:
            return False
        return self.expiry_date is None or as_of < self.expiry_date

    def applies_to_category(self, category_code: Optional[str]) -> bool:
        return self.category_code is None or self.category_code == category_code

    def applies_to_service(self, service_type: str) -> bool:
        return not self.service_types or service_type in self.service_types

    @property
    def overlap_key(self) -> tuple[str, str, Optional[str]]:
        """Definitions sharing this key are alternatives for the same tax."""
        return (self.jurisdiction_id, self.tax_type, self.category_code)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rate_id": self.rate_id,
            "jurisdiction_id": self.jurisdiction_id,
            "tax_type": self.tax_type,
            "name": self.name,
            "shape": self.shape,
            "effective_date": _iso(self.effective_date),
            "expiry_date": _iso(self.expiry_date),
            "category_code": self.category_code,
            "service_types": list(self.service_types),
            "percentage": _str_or_none(self.percentage),
            "fixed_amount": _str_or_none(self.fixed_amount),
            "minimum_threshold": _str_or_none(self.minimum_threshold),
            "maximum_amount": _str_or_none(self.maximum_amount),
            "calculation_method": self.calculation_method,
            "is_compound": self.is_compound,
            "is_recoverable": self.is_recoverable,
            "priority": self.priority,
            "tiers": [t.to_dict() for t in self.tiers],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RateDefinition":
        return cls(
            rate_id=str(data["rate_id"]),
            jurisdiction_id=str(data["jurisdiction_id"]),
            tax_type=data["tax_type"],
            name=data.get("name", data["tax_type"]),
            shape=data.get("shape", ""),
            effective_date=_to_date(data["effective_date"]),
            expiry_date=_to_date(data.get("expiry_date")),
            category_code=data.get("category_code"),
            service_types=tuple(data.get("service_types") or ()),
            percentage=to_decimal(data.get("percentage")),
            fixed_amount=to_decimal(data.get("fixed_amount")),
            minimum_threshold=to_decimal(data.get("minimum_threshold")),
            maximum_amount=to_decimal(data.get("maximum_amount")),
            calculation_method=data.get(
                "calculation_method", CalculationMethod.STANDARD.value
            ),
            is_compound=bool(data.get("is_compound", False)),
            is_recoverable=bool(data.get("is_recoverable", False)),
            priority=int(data.get("priority", 0)),
            tiers=tuple(TierBracket.from_dict(t) for t in data.get("tiers") or ()),
        )


# -----------------------------------------------------------------------
# Exemptions
# -----------------------------------------------------------------------

_OPERATORS = {
    "=": lambda a, b: a == b,
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
}


@dataclass(frozen=True)
class Exemption:
    """
    A certificate-backed waiver held by a customer.

    Scope: a blanket exemption covers every rate (optionally restricted to
    one jurisdiction); a specific exemption covers rates matching all of
    its non-empty filters.
    """

    exemption_id: str
    customer_id: str
    exemption_type: str
    name: str = ""
    is_blanket: bool = False
    jurisdiction_id: Optional[str] = None
    category_code: Optional[str] = None
    applicable_tax_types: tuple[str, ...] = ()
    applicable_services: tuple[str, ...] = ()
    percentage: Decimal = Decimal("100")
    maximum_exemption_amount: Optional[Decimal] = None
    status: ExemptionStatus = ExemptionStatus.ACTIVE
    verification_status: VerificationStatus = VerificationStatus.PENDING
    last_verified_at: Optional[datetime] = None
    issue_date: Optional[date] = None
    expiry_date: Optional[date] = None
    priority: int = 0
    certificate_number: Optional[str] = None
    conditions: tuple[dict, ...] = ()

    # -- validity ------------------------------------------------------

    def is_expired(self, as_of: date) -> bool:
        return self.expiry_date is not None and as_of > self.expiry_date

    def is_expiring_soon(self, as_of: date, days: int = 30) -> bool:
        if self.expiry_date is None or self.is_expired(as_of):
            return False
        return self.expiry_date <= as_of + timedelta(days=days)

    def is_valid(self, as_of: date) -> bool:
        """Active, verified, and inside its validity window."""
        if self.status != ExemptionStatus.ACTIVE:
            return False
        if self.verification_status != VerificationStatus.VERIFIED:
            return False
        if self.issue_date is not None and as_of < self.issue_date:
            return False
        return not self.is_expired(as_of)

    # -- scope ---------------------------------------------------------

    def applies_to(
        self,
        rate: RateDefinition,
        service_type: str,
        category_code: Optional[str] = None,
    ) -> bool:
        """``category_code`` is the line's category, used for rates without one."""
        if self.jurisdiction_id is not None and self.jurisdiction_id != rate.jurisdiction_id:
            return False
        if self.is_blanket:
            return True
        if self.category_code is not None and self.category_code != (
            rate.category_code or category_code
        ):
            return False
        if self.applicable_tax_types and rate.tax_type not in self.applicable_tax_types:
            return False
        if self.applicable_services and service_type not in self.applicable_services:
            return False
        return True

    def usage_limit(self) -> Optional[int]:
        """Monthly use limit from a ``usage_limit`` condition, if any."""
        for condition in self.conditions:
            if condition.get("type") == "usage_limit":
                return int(condition.get("value", 0))
        return None

    def meets_conditions(
        self,
        amount: Decimal,
        service_type: str,
        as_of: date,
        monthly_usage: int = 0,
    ) -> bool:
        """Unknown condition types are never met."""
        for condition in self.conditions:
            kind = condition.get("type", "")
            if kind == "minimum_amount":
                compare = _OPERATORS.get(condition.get("operator", ">="))
                expected = to_decimal(condition.get("value", "0"))
                if compare is None or expected is None or not compare(amount, expected):
                    return False
            elif kind == "service_type":
                allowed = condition.get("value", [])
                if isinstance(allowed, str):
                    allowed = [allowed]
                if service_type not in allowed:
                    return False
            elif kind == "date_range":
                start = _to_date(condition.get("start_date"))
                end = _to_date(condition.get("end_date"))
                if start is not None and as_of < start:
                    return False
                if end is not None and as_of > end:
                    return False
            elif kind == "usage_limit":
                if monthly_usage >= int(condition.get("value", 0)):
                    return False
            else:
                return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "exemption_id": self.exemption_id,
            "customer_id": self.customer_id,
            "exemption_type": self.exemption_type,
            "name": self.name,
            "is_blanket": self.is_blanket,
            "jurisdiction_id": self.jurisdiction_id,
            "category_code": self.category_code,
            "applicable_tax_types": list(self.applicable_tax_types),
            "applicable_services": list(self.applicable_services),
            "percentage": str(self.percentage),
            "maximum_exemption_amount": _str_or_none(self.maximum_exemption_amount),
            "status": self.status.value,
            "verification_status": self.verification_status.value,
            "last_verified_at": (
                self.last_verified_at.isoformat() if self.last_verified_at else None
            ),
            "issue_date": _iso(self.issue_date),
            "expiry_date": _iso(self.expiry_date),
            "priority": self.priority,
            "certificate_number": self.certificate_number,
            "conditions": [dict(c) for c in self.conditions],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Exemption":
        return cls(
            exemption_id=str(data["exemption_id"]),
            customer_id=str(data["customer_id"]),
            exemption_type=data.get("exemption_type", "custom"),
            name=data.get("name", ""),
            is_blanket=bool(data.get("is_blanket", False)),
            jurisdiction_id=data.get("jurisdiction_id"),
            category_code=data.get("category_code"),
            applicable_tax_types=tuple(data.get("applicable_tax_types") or ()),
            applicable_services=tuple(data.get("applicable_services") or ()),
            percentage=to_decimal(data.get("percentage", "100"), Decimal("0")),
            maximum_exemption_amount=to_decimal(data.get("maximum_exemption_amount")),
            status=ExemptionStatus(data.get("status", "active")),
            verification_status=VerificationStatus(
                data.get("verification_status", "pending")
            ),
            last_verified_at=_to_datetime(data.get("last_verified_at")),
            issue_date=_to_date(data.get("issue_date")),
            expiry_date=_to_date(data.get("expiry_date")),
            priority=int(data.get("priority", 0)),
            certificate_number=data.get("certificate_number"),
            conditions=tuple(data.get("conditions") or ()),
        )


# -----------------------------------------------------------------------
# Sample US telecom data set
# -----------------------------------------------------------------------

_SAMPLE_DATA: dict[str, list[dict]] = {
    "jurisdictions": [
        {
            "jurisdiction_id": "US",
            "kind": "federal",
            "name": "United States",
            "authority_name": "Federal Communications Commission",
            "scope": {"country": "US"},
        },
        {
            "jurisdiction_id": "US-TX",
            "kind": "state",
            "name": "Texas",
            "authority_name": "Texas Comptroller of Public Accounts",
            "scope": {"country": "US", "state": "TX"},
        },
        {
            "jurisdiction_id": "US-TX-HARRIS",
            "kind": "county",
            "name": "Harris County",
            "authority_name": "Harris County",
            "scope": {"country": "US", "state": "TX", "county": "Harris"},
        },
        {
            "jurisdiction_id": "US-TX-HOUSTON",
            "kind": "municipal",
            "name": "Houston",
            "authority_name": "City of Houston",
            "scope": {"country": "US", "state": "TX", "municipality": "Houston"},
        },
        {
            "jurisdiction_id": "US-TX-GH911",
            "kind": "special_district",
            "name": "Greater Harris County 911 District",
            "authority_name": "Greater Harris County 9-1-1 Emergency Network",
            "scope": {"country": "US", "state": "TX", "county": "Harris"},
        },
        {
            "jurisdiction_id": "US-CA",
            "kind": "state",
            "name": "California",
            "authority_name": "California Department of Tax and Fee Administration",
            "scope": {"country": "US", "state": "CA"},
        },
        {
            "jurisdiction_id": "US-CA-LA",
            "kind": "municipal",
            "name": "Los Angeles",
            "authority_name": "City of Los Angeles Office of Finance",
            "scope": {"country": "US", "state": "CA", "municipality": "Los Angeles"},
        },
    ],
    "categories": [
        {
            "code": "telecom_local",
            "name": "Local exchange service",
            "service_types": ["local", "voip_fixed", "voip_nomadic"],
            "priority": 1,
        },
        {
            "code": "telecom_interstate",
            "name": "Interstate / long distance",
            "service_types": ["long_distance", "international"],
            "priority": 2,
        },
        {
            "code": "equipment",
            "name": "Equipment",
            "service_types": ["equipment"],
            "priority": 3,
        },
        {
            "code": "internet_access",
            "name": "Internet access (ITFA protected)",
            "service_types": ["data"],
            "is_taxable": False,
            "priority": 4,
        },
    ],
    "rates": [
        {
            "rate_id": "us-fet",
            "jurisdiction_id": "US",
            "tax_type": "federal_excise_tax",
            "name": "Federal Excise Tax",
            "shape": "percentage",
            "percentage": "3.0",
            "minimum_threshold": "0.20",
            "category_code": "telecom_local",
            "service_types": ["local", "voip_fixed", "voip_nomadic"],
            "priority": 1,
            "effective_date": "2006-08-01",
        },
        {
            "rate_id": "us-usf",
            "jurisdiction_id": "US",
            "tax_type": "universal_service_fund",
            "name": "Universal Service Fund",
            "shape": "percentage",
            "percentage": "33.4",
            "service_types": [
                "local", "long_distance", "international", "voip_fixed", "voip_nomadic",
            ],
            "is_recoverable": True,
            "priority": 2,
            "effective_date": "2024-01-01",
        },
        {
            "rate_id": "tx-sales",
            "jurisdiction_id": "US-TX",
            "tax_type": "sales_tax",
            "name": "Texas State Sales Tax",
            "shape": "percentage",
            "percentage": "6.25",
            "priority": 10,
            "effective_date": "1990-07-01",
        },
        {
            "rate_id": "tx-usf",
            "jurisdiction_id": "US-TX",
            "tax_type": "state_usf",
            "name": "Texas Universal Service Fund",
            "shape": "percentage",
            "percentage": "24.0",
            "category_code": "telecom_local",
            "priority": 11,
            "effective_date": "2024-01-01",
        },
        {
            "rate_id": "tx-harris-sales",
            "jurisdiction_id": "US-TX-HARRIS",
            "tax_type": "county_sales_tax",
            "name": "Harris County Sales Tax",
            "shape": "percentage",
            "percentage": "0.5",
            "priority": 20,
            "effective_date": "2000-01-01",
        },
        {
            "rate_id": "tx-houston-sales",
            "jurisdiction_id": "US-TX-HOUSTON",
            "tax_type": "city_sales_tax",
            "name": "Houston City Sales Tax",
            "shape": "percentage",
            "percentage": "1.0",
            "priority": 30,
            "effective_date": "2000-01-01",
        },
        {
            "rate_id": "tx-houston-row",
            "jurisdiction_id": "US-TX-HOUSTON",
            "tax_type": "right_of_way",
            "name": "Houston Right-of-Way Fee",
            "shape": "per_line",
            "fixed_amount": "1.12",
            "category_code": "telecom_local",
            "priority": 31,
            "effective_date": "2020-01-01",
        },
        {
            "rate_id": "tx-gh911",
            "jurisdiction_id": "US-TX-GH911",
            "tax_type": "e911_fee",
            "name": "9-1-1 Emergency Service Fee",
            "shape": "per_line",
            "fixed_amount": "0.50",
            "category_code": "telecom_local",
            "priority": 40,
            "effective_date": "2015-01-01",
        },
        {
            "rate_id": "ca-911",
            "jurisdiction_id": "US-CA",
            "tax_type": "e911_surcharge",
            "name": "California 911 Surcharge",
            "shape": "per_line",
            "fixed_amount": "0.30",
            "category_code": "telecom_local",
            "priority": 10,
            "effective_date": "2020-01-01",
        },
        {
            "rate_id": "ca-equipment-sales",
            "jurisdiction_id": "US-CA",
            "tax_type": "sales_tax",
            "name": "California Sales Tax",
            "shape": "percentage",
            "percentage": "7.25",
            "category_code": "equipment",
            "priority": 11,
            "effective_date": "2017-01-01",
        },
        {
            "rate_id": "ca-la-uut",
            "jurisdiction_id": "US-CA-LA",
            "tax_type": "utility_users_tax",
            "name": "Los Angeles Communication Users Tax",
            "shape": "percentage",
            "percentage": "9.0",
            "category_code": "telecom_local",
            "priority": 30,
            "effective_date": "2008-01-01",
        },
    ],
    "exemptions": [],
}


# -----------------------------------------------------------------------
# Reference data store
# -----------------------------------------------------------------------


class ReferenceData:
    """
    In-memory reference data set.

    Jurisdictions and categories are keyed by id/code. Rate definitions are
    append-only: a new rate window is a new definition, never an edit of a
    historical one. Exemptions are replaced by id when re-verified.
    """

    def __init__(
        self,
        jurisdictions: Iterable[Jurisdiction] = (),
        categories: Iterable[TaxCategory] = (),
        rates: Iterable[RateDefinition] = (),
        exemptions: Iterable[Exemption] = (),
    ) -> None:
        self._jurisdictions: dict[str, Jurisdiction] = {}
        self._categories: dict[str, TaxCategory] = {}
        self._rates: dict[str, RateDefinition] = {}
        self._exemptions: dict[str, Exemption] = {}
        for j in jurisdictions:
            self.add_jurisdiction(j)
        for c in categories:
            self.add_category(c)
        for r in rates:
            self.add_rate(r)
        for e in exemptions:
            self.put_exemption(e)

    # -- mutation (administrative) -------------------------------------

    def add_jurisdiction(self, jurisdiction: Jurisdiction) -> None:
        self._jurisdictions[jurisdiction.jurisdiction_id] = jurisdiction

    def add_category(self, category: TaxCategory) -> None:
        self._categories[category.code] = category

    def add_rate(self, rate: RateDefinition) -> None:
        if rate.rate_id in self._rates:
            raise ValueError(
                f"Rate {rate.rate_id} already exists; add a new definition "
                "with its own effective window instead"
            )
        self._rates[rate.rate_id] = rate

    def put_exemption(self, exemption: Exemption) -> None:
        self._exemptions[exemption.exemption_id] = exemption

    # -- queries -------------------------------------------------------

    def get_jurisdiction(self, jurisdiction_id: str) -> Optional[Jurisdiction]:
        return self._jurisdictions.get(jurisdiction_id)

    def jurisdictions(self) -> list[Jurisdiction]:
        return [self._jurisdictions[k] for k in sorted(self._jurisdictions)]

    def get_category(self, code: str) -> Optional[TaxCategory]:
        return self._categories.get(code)

    def categories(self) -> list[TaxCategory]:
        return sorted(self._categories.values(), key=lambda c: (c.priority, c.code))

    def category_for_service(self, service_type: str) -> Optional[TaxCategory]:
        """First category (by priority) that lists the service type."""
        for category in self.categories():
            if category.service_types and service_type in category.service_types:
                return category
        return None

    def get_rate(self, rate_id: str) -> Optional[RateDefinition]:
        return self._rates.get(rate_id)

    def rates(self) -> list[RateDefinition]:
        return [self._rates[k] for k in sorted(self._rates)]

    def get_exemption(self, exemption_id: str) -> Optional[Exemption]:
        return self._exemptions.get(exemption_id)

    def exemptions(self) -> list[Exemption]:
        return [self._exemptions[k] for k in sorted(self._exemptions)]

    def exemptions_for(self, customer_id: str) -> list[Exemption]:
        return sorted(
            (e for e in self._exemptions.values() if e.customer_id == customer_id),
            key=lambda e: (e.priority, e.exemption_id),
        )

    def active_exemptions(self, customer_id: Optional[str], as_of: date) -> list[Exemption]:
        """The customer's active, verified, unexpired exemptions as of a date."""
        if customer_id is None:
            return []
        return [e for e in self.exemptions_for(customer_id) if e.is_valid(as_of)]

    def expiring_exemptions(self, as_of: date, days: int = 30) -> list[Exemption]:
        return sorted(
            (e for e in self._exemptions.values() if e.is_expiring_soon(as_of, days)),
            key=lambda e: (e.expiry_date, e.exemption_id),
        )

    # -- loading -------------------------------------------------------

    def to_dict(self) -> dict[str, list[dict]]:
        return {
            "jurisdictions": [j.to_dict() for j in self.jurisdictions()],
            "categories": [c.to_dict() for c in self.categories()],
            "rates": [r.to_dict() for r in self.rates()],
            "exemptions": [e.to_dict() for e in self.exemptions()],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ReferenceData":
        return cls(
            jurisdictions=[Jurisdiction.from_dict(j) for j in data.get("jurisdictions", [])],
            categories=[TaxCategory.from_dict(c) for c in data.get("categories", [])],
            rates=[RateDefinition.from_dict(r) for r in data.get("rates", [])],
            exemptions=[Exemption.from_dict(e) for e in data.get("exemptions", [])],
        )

    @classmethod
    def from_json_file(cls, path: str | Path) -> "ReferenceData":
        return cls.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))

    @classmethod
    def us_telecom_sample(cls) -> "ReferenceData":
        return cls.from_dict(_SAMPLE_DATA)
