"""
Compliance Engine Package

This package provides:
- Transaction validation against customer, licence and threshold rules
- The override approval workflow
- Substance reclassification with customer impact analysis
- Effective classification lookup for historical dates
- ComplianceService facade with FastAPI Dependency Injection support

Engine modules are imported directly (``compliance.validator``,
``compliance.service`` ...); the package root only exposes the result and
exception types.
"""

from compliance.exceptions import (
    ComplianceError,
    ConcurrencyError,
    IllegalStateTransition,
)
from compliance.results import (
    ErrorCodes,
    ValidationResult,
    ValidationViolation,
    NOT_FOUND_CODES,
    STATE_CONFLICT_CODES,
)

__all__ = [
    # Exceptions
    'ComplianceError',
    'ConcurrencyError',
    'IllegalStateTransition',
    # Results
    'ErrorCodes',
    'ValidationResult',
    'ValidationViolation',
    'NOT_FOUND_CODES',
    'STATE_CONFLICT_CODES',
]
