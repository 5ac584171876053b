"""
Typed errors and warnings raised by the tax engine.

Errors propagate to the caller:
- UnresolvableAddressError  - no jurisdiction matches the address (hard stop)
- InvalidTransitionError    - illegal lifecycle change on a calculation record
- CalculationNotFoundError  - unknown calculation id
- InvalidCalculationInputError - bad amount / quantity / usage counts
- ConfigurationError        - unusable environment settings

Warnings are raised inside the pipeline, caught there, and attached to the
calculation record so billing is never blocked by a single bad row:
- RateDataWarning           - malformed rate definition, rate skipped
- ExemptionConflictWarning  - two exemptions tie on percentage and priority
"""

from __future__ import annotations

from typing import Any, Optional


class TaxEngineError(Exception):
    """Base class for all engine errors. Carries a machine-readable code."""

    code: str = "TAX_ENGINE_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class UnresolvableAddressError(TaxEngineError):
    code = "UNRESOLVABLE_ADDRESS"

    def __init__(self, address: Any, reason: str) -> None:
        self.address = address
        self.reason = reason
        super().__init__(f"Tax could not be determined for this address: {reason}")


class InvalidTransitionError(TaxEngineError):
    code = "INVALID_TRANSITION"

    def __init__(
        self,
        calculation_id: str,
        current_status: str,
        attempted: str,
        detail: str = "",
    ) -> None:
        self.calculation_id = calculation_id
        self.current_status = current_status
        self.attempted = attempted
        msg = (
            f"Calculation {calculation_id} cannot go from "
            f"'{current_status}' to '{attempted}'"
        )
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class CalculationNotFoundError(TaxEngineError):
    code = "CALCULATION_NOT_FOUND"

    def __init__(self, calculation_id: str) -> None:
        self.calculation_id = calculation_id
        super().__init__(f"Calculation {calculation_id} not found")


class InvalidCalculationInputError(TaxEngineError):
    code = "INVALID_CALCULATION_INPUT"

    def __init__(self, field: str, value: Any, reason: str) -> None:
        self.field = field
        self.value = value
        super().__init__(f"Invalid {field}={value!r}: {reason}")


class ConfigurationError(TaxEngineError):
    code = "CONFIGURATION_ERROR"

    def __init__(self, variable: str, value: Optional[str], reason: str) -> None:
        self.variable = variable
        self.value = value
        super().__init__(f"{variable}={value!r}: {reason}")


# -----------------------------------------------------------------------
# Non-fatal conditions
# -----------------------------------------------------------------------


class TaxEngineWarning(Warning):
    """Base class for conditions recorded on a calculation, never fatal."""

    code: str = "TAX_ENGINE_WARNING"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}

    def log_fields(self) -> dict[str, Any]:
        """Fields for a log record's ``extra``; LogRecord reserves ``message``."""
        fields = self.to_dict()
        fields.pop("message", None)
        return fields


class RateDataWarning(TaxEngineWarning):
    code = "RATE_DATA"

    def __init__(self, rate_id: str, reason: str) -> None:
        self.rate_id = rate_id
        self.reason = reason
        super().__init__(f"Rate {rate_id} skipped: {reason}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "rate_id": self.rate_id,
            "reason": self.reason,
            "message": self.message,
        }


class ExemptionConflictWarning(TaxEngineWarning):
    code = "EXEMPTION_CONFLICT"

    def __init__(self, rate_id: str, exemption_ids: list[str], chosen_id: str) -> None:
        self.rate_id = rate_id
        self.exemption_ids = list(exemption_ids)
        self.chosen_id = chosen_id
        super().__init__(
            f"Exemptions {', '.join(self.exemption_ids)} tie on rate {rate_id}; "
            f"{chosen_id} applied"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "rate_id": self.rate_id,
            "exemption_ids": self.exemption_ids,
            "chosen_id": self.chosen_id,
            "message": self.message,
        }
