"""Exceptions raised by the compliance engine and its stores.

These signal programming or infrastructure problems only. Business-rule
failures are returned as ValidationResult instances.
"""


class ComplianceError(Exception):
    """Base exception for compliance engine errors."""
    pass


class ConcurrencyError(ComplianceError):
    """Raised when a row was modified by someone else since it was read."""
    pass


class IllegalStateTransition(ComplianceError):
    """Raised when code attempts a transition the state machine forbids."""

    def __init__(self, machine: str, current, target):
        self.machine = machine
        self.current = current
        self.target = target
        super().__init__(f"{machine}: cannot move from {current} to {target}")
