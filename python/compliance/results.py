"""
Result types returned by the compliance engine.

Expected business outcomes (a failed licence check, a reclassification that
is not pending, a blank justification) are never raised. They come back as a
ValidationResult carrying a structured list of violations.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from database.models import ViolationSeverity


class ErrorCodes:
    """Error codes used in violations and failure results."""

    # Not found
    CUSTOMER_NOT_FOUND = "CUSTOMER_NOT_FOUND"
    SUBSTANCE_NOT_FOUND = "SUBSTANCE_NOT_FOUND"
    LICENCE_NOT_FOUND = "LICENCE_NOT_FOUND"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    RECLASSIFICATION_NOT_FOUND = "RECLASSIFICATION_NOT_FOUND"
    IMPACT_NOT_FOUND = "IMPACT_NOT_FOUND"

    # Customer policy
    CUSTOMER_SUSPENDED = "CUSTOMER_SUSPENDED"
    CUSTOMER_NOT_APPROVED = "CUSTOMER_NOT_APPROVED"
    GDP_QUALIFICATION_INVALID = "GDP_QUALIFICATION_INVALID"
    CUSTOMER_REQUALIFICATION_REQUIRED = "CUSTOMER_REQUALIFICATION_REQUIRED"

    # Licence policy
    LICENCE_MISSING = "LICENCE_MISSING"
    LICENCE_EXPIRED = "LICENCE_EXPIRED"
    LICENCE_SUSPENDED = "LICENCE_SUSPENDED"
    LICENCE_REVOKED = "LICENCE_REVOKED"
    LICENCE_SCOPE_INSUFFICIENT = "LICENCE_SCOPE_INSUFFICIENT"

    # Cross-border
    IMPORT_PERMIT_REQUIRED = "IMPORT_PERMIT_REQUIRED"
    EXPORT_PERMIT_REQUIRED = "EXPORT_PERMIT_REQUIRED"

    # Thresholds
    THRESHOLD_EXCEEDED = "THRESHOLD_EXCEEDED"
    THRESHOLD_WARNING = "THRESHOLD_WARNING"
    FREQUENCY_THRESHOLD_EXCEEDED = "FREQUENCY_THRESHOLD_EXCEEDED"

    # State conflicts
    OVERRIDE_NOT_REQUIRED = "OVERRIDE_NOT_REQUIRED"
    OVERRIDE_NOT_PENDING = "OVERRIDE_NOT_PENDING"
    OVERRIDE_ALREADY_PROCESSED = "OVERRIDE_ALREADY_PROCESSED"
    RECLASSIFICATION_STATE_CONFLICT = "RECLASSIFICATION_STATE_CONFLICT"
    RECLASSIFICATION_NOT_PENDING = "RECLASSIFICATION_NOT_PENDING"
    DUPLICATE_ENTITY = "DUPLICATE_ENTITY"

    # Input
    VALIDATION_ERROR = "VALIDATION_ERROR"

    INTERNAL_ERROR = "INTERNAL_ERROR"


# Grouping used by the HTTP layer to pick a status code
NOT_FOUND_CODES = frozenset({
    ErrorCodes.CUSTOMER_NOT_FOUND,
    ErrorCodes.SUBSTANCE_NOT_FOUND,
    ErrorCodes.LICENCE_NOT_FOUND,
    ErrorCodes.TRANSACTION_NOT_FOUND,
    ErrorCodes.RECLASSIFICATION_NOT_FOUND,
    ErrorCodes.IMPACT_NOT_FOUND,
})

STATE_CONFLICT_CODES = frozenset({
    ErrorCodes.OVERRIDE_NOT_REQUIRED,
    ErrorCodes.OVERRIDE_NOT_PENDING,
    ErrorCodes.OVERRIDE_ALREADY_PROCESSED,
    ErrorCodes.RECLASSIFICATION_STATE_CONFLICT,
    ErrorCodes.RECLASSIFICATION_NOT_PENDING,
    ErrorCodes.DUPLICATE_ENTITY,
})


@dataclass
class ValidationViolation:
    """A single finding produced by a compliance check."""
    error_code: str
    message: str
    can_override: bool = False
    severity: ViolationSeverity = ViolationSeverity.ERROR
    line_number: Optional[int] = None
    substance_code: Optional[str] = None
    threshold_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "can_override": self.can_override,
            "severity": self.severity.value,
            "line_number": self.line_number,
            "substance_code": self.substance_code,
        }


@dataclass
class ValidationResult:
    """
    Outcome of an engine operation.

    ``violations`` are blocking findings; ``warnings`` are informational and
    never influence ``is_valid``.
    """
    violations: List[ValidationViolation] = field(default_factory=list)
    warnings: List[ValidationViolation] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.violations

    @property
    def error_codes(self) -> List[str]:
        return [v.error_code for v in self.violations]

    @property
    def all_overridable(self) -> bool:
        """True iff there is at least one violation and every one is overridable."""
        return bool(self.violations) and all(v.can_override for v in self.violations)

    def has_error(self, code: str) -> bool:
        return code in self.error_codes

    def first_error(self) -> Optional[ValidationViolation]:
        return self.violations[0] if self.violations else None

    @classmethod
    def success(cls, warnings: Optional[List[ValidationViolation]] = None) -> 'ValidationResult':
        return cls(violations=[], warnings=list(warnings or []))

    @classmethod
    def failure(cls, error_code: str, message: str, **kwargs) -> 'ValidationResult':
        """Single-violation failure."""
        return cls(violations=[ValidationViolation(error_code=error_code, message=message, **kwargs)])

    @classmethod
    def from_violations(
        cls,
        violations: List[ValidationViolation],
        warnings: Optional[List[ValidationViolation]] = None
    ) -> 'ValidationResult':
        return cls(violations=list(violations), warnings=list(warnings or []))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "violations": [v.to_dict() for v in self.violations],
            "warnings": [w.to_dict() for w in self.warnings],
        }
