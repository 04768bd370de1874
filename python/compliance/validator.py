"""
Multi-rule transaction validation.

Checks run in a fixed order and accumulate violations rather than stopping
at the first one:

1. Customer exists
2. Customer not suspended (never overridable)
3. Customer approved (overridable)
4. GDP qualification for categories that need it (overridable)
5. No open re-qualification block for the line's substance
6. Each line's substance exists
7. Each line's substance is covered by a valid licence
8. Quantity thresholds
9. Company import/export permit for cross-border transactions (overridable)
10. Transaction frequency thresholds

The verdict is Passed only with zero violations. An override is requested
only when every violation is individually overridable.

Each line also records the classification its substance had on the
transaction date.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional, Set

from database.models import (
    ApprovalStatus,
    BusinessCategory,
    Customer,
    GdpQualificationStatus,
    HolderKey,
    HolderType,
    OverrideStatus,
    PermittedActivity,
    Transaction,
    TransactionLicenceUsage,
    TransactionLine,
    TransactionViolation,
    ValidationStatus,
    ViolationSeverity,
)
from compliance.classification import ClassificationResolver
from compliance.interfaces import (
    CustomerBlockCheck,
    CustomerLookup,
    SubstanceLookup,
    TransactionStore,
)
from compliance.licence_coverage import (
    CoverageDecision,
    CoverageStatus,
    LicenceCoverageResolver,
    required_activity,
)
from compliance.results import ErrorCodes, ValidationResult, ValidationViolation
from compliance.state import OVERRIDE_STATES
from compliance.thresholds import ThresholdEvaluator

logger = logging.getLogger(__name__)


DEFAULT_GDP_CATEGORIES: FrozenSet[BusinessCategory] = frozenset({
    BusinessCategory.WHOLESALER_EU,
    BusinessCategory.WHOLESALER_NON_EU,
    BusinessCategory.HOSPITAL_PHARMACY,
    BusinessCategory.COMMUNITY_PHARMACY,
})

GDP_ACCEPTED: FrozenSet[GdpQualificationStatus] = frozenset({
    GdpQualificationStatus.APPROVED,
    GdpQualificationStatus.CONDITIONALLY_APPROVED,
})


@dataclass
class ValidationPolicy:
    """Switches that change how findings are classified."""
    treat_activity_mismatch_as_failure: bool = False
    gdp_check_enabled: bool = True
    gdp_required_categories: FrozenSet[BusinessCategory] = DEFAULT_GDP_CATEGORIES
    cross_border_check_enabled: bool = True
    company_account: str = "COMPANY"
    company_jurisdiction: str = "NL"

    @property
    def company_key(self) -> HolderKey:
        return HolderKey(self.company_account, self.company_jurisdiction)


@dataclass
class TransactionValidationOutcome:
    """Verdict of a validation run together with the validated transaction."""
    result: ValidationResult
    can_proceed: bool
    transaction: Optional[Transaction] = None

    def to_dict(self):
        data = self.result.to_dict()
        data["can_proceed"] = self.can_proceed
        if self.transaction is not None:
            data["transaction_id"] = str(self.transaction.id)
            data["validation_status"] = self.transaction.validation_status.value
            data["requires_override"] = self.transaction.requires_override
            data["override_status"] = self.transaction.override_status.value
        return data


@dataclass
class _Usage:
    licence_number: str
    line_numbers: List[int] = field(default_factory=list)
    quantity: Decimal = Decimal("0")


def apply_verdict(transaction: Transaction, result: ValidationResult, validated_at: datetime) -> None:
    """
    Write the verdict of ``result`` onto the transaction.

    A pending override is requested only when the verdict needs one. An
    override that was already decided is left untouched.
    """
    transaction.validation_status = ValidationStatus.PASSED if result.is_valid else ValidationStatus.FAILED
    transaction.validation_date = validated_at
    transaction.requires_override = result.all_overridable

    current = transaction.override_status
    if transaction.requires_override and current == OverrideStatus.NONE:
        OVERRIDE_STATES.transition(transaction, OverrideStatus.PENDING)
    elif not transaction.requires_override and current == OverrideStatus.PENDING:
        OVERRIDE_STATES.transition(transaction, OverrideStatus.NONE)


class TransactionValidator:
    """Validates transactions and records the verdict."""

    def __init__(
        self,
        customers: CustomerLookup,
        substances: SubstanceLookup,
        coverage: LicenceCoverageResolver,
        thresholds: ThresholdEvaluator,
        block_check: CustomerBlockCheck,
        transactions: TransactionStore,
        policy: Optional[ValidationPolicy] = None,
        classification: Optional[ClassificationResolver] = None
    ):
        self._customers = customers
        self._substances = substances
        self._coverage = coverage
        self._thresholds = thresholds
        self._block_check = block_check
        self._transactions = transactions
        self.policy = policy or ValidationPolicy()
        self._classification = classification

    async def validate(self, transaction: Transaction, persist: bool = True) -> TransactionValidationOutcome:
        """
        Validate a transaction, record the verdict and optionally persist it.

        Args:
            transaction: Transaction with its lines
            persist: Store the transaction (create or update) after validation

        Returns:
            TransactionValidationOutcome with the result and whether the
            transaction may proceed
        """
        input_error = self._check_input(transaction)
        if input_error is not None:
            logger.warning("Rejected transaction %s: %s", transaction.external_id, input_error.message)
            return TransactionValidationOutcome(
                result=ValidationResult.from_violations([input_error]),
                can_proceed=False,
                transaction=transaction,
            )

        as_of = transaction.transaction_date.date()
        violations: List[ValidationViolation] = []
        warnings: List[ValidationViolation] = []

        customer = await self._customers.get_by_holder_key(
            transaction.customer_account, transaction.customer_jurisdiction
        )
        blocked_substances: Set[str] = set()
        if customer is None:
            violations.append(ValidationViolation(
                error_code=ErrorCodes.CUSTOMER_NOT_FOUND,
                message=f"Customer {transaction.customer_key} not found",
            ))
        else:
            if not transaction.customer_name:
                transaction.customer_name = customer.business_name
            violations.extend(self._check_customer(customer))
            is_blocked, impacts = await self._block_check.check_customer_blocked(customer.holder_key)
            if is_blocked:
                blocked_substances = {impact.substance_code for impact in impacts if impact.is_blocking}

        required = required_activity(transaction)
        usages: Dict[uuid.UUID, _Usage] = {}

        for line in transaction.lines:
            substance = await self._substances.get_by_substance_code(line.substance_code)
            if substance is None:
                line.licence_id = None
                line.opium_act_list = None
                line.precursor_category = None
                violations.append(ValidationViolation(
                    error_code=ErrorCodes.SUBSTANCE_NOT_FOUND,
                    message=f"Substance '{line.substance_code}' not found (Line {line.line_number})",
                    line_number=line.line_number,
                    substance_code=line.substance_code,
                ))
                continue

            await self._record_classification(line, as_of)

            if line.substance_code in blocked_substances:
                violations.append(ValidationViolation(
                    error_code=ErrorCodes.CUSTOMER_REQUALIFICATION_REQUIRED,
                    message=(
                        f"Customer requires re-qualification for substance '{line.substance_code}' "
                        f"after reclassification (Line {line.line_number})"
                    ),
                    line_number=line.line_number,
                    substance_code=line.substance_code,
                ))

            decision = await self._coverage.resolve(
                transaction.customer_key, line.substance_code, as_of, required
            )
            if decision.is_covered:
                line.licence_id = decision.licence.id
                usage = usages.setdefault(decision.licence.id, _Usage(decision.licence.licence_number))
                usage.line_numbers.append(line.line_number)
                usage.quantity += Decimal(line.quantity)
                if decision.activity_mismatch:
                    finding = self._activity_mismatch(decision, line.line_number, line.substance_code)
                    if finding.severity == ViolationSeverity.WARNING:
                        warnings.append(finding)
                    else:
                        violations.append(finding)
            else:
                line.licence_id = None
                violations.append(self._coverage_violation(decision, line.line_number, line.substance_code))

        evaluation = await self._thresholds.evaluate(transaction, customer)
        violations.extend(evaluation.violations)
        warnings.extend(evaluation.warnings)

        if self.policy.cross_border_check_enabled:
            violations.extend(await self._check_cross_border(transaction, as_of))
        violations.extend(await self._thresholds.evaluate_frequency(transaction, customer))

        result = ValidationResult.from_violations(violations, warnings)
        apply_verdict(transaction, result, datetime.now(timezone.utc))
        self._record(transaction, result, usages)

        logger.info(
            "Validated transaction %s: %s (%d violation(s), %d warning(s), requires_override=%s)",
            transaction.external_id,
            transaction.validation_status.value,
            len(result.violations),
            len(result.warnings),
            transaction.requires_override,
        )

        if persist:
            existing = await self._transactions.get_by_id(transaction.id)
            if existing is None:
                transaction = await self._transactions.create(transaction)
            else:
                transaction = await self._transactions.update(transaction)

        return TransactionValidationOutcome(
            result=result,
            can_proceed=transaction.can_proceed,
            transaction=transaction,
        )

    async def revalidate(self, transaction_id: uuid.UUID) -> TransactionValidationOutcome:
        """Reload a stored transaction and validate it afresh."""
        transaction = await self._transactions.get_by_id(transaction_id)
        if transaction is None:
            return TransactionValidationOutcome(
                result=ValidationResult.failure(
                    ErrorCodes.TRANSACTION_NOT_FOUND,
                    f"Transaction {transaction_id} not found",
                ),
                can_proceed=False,
            )
        return await self.validate(transaction)

    def _check_input(self, transaction: Transaction) -> Optional[ValidationViolation]:
        if not transaction.customer_account or not transaction.customer_jurisdiction:
            return ValidationViolation(
                error_code=ErrorCodes.VALIDATION_ERROR,
                message="Customer account and jurisdiction are required",
            )
        if not transaction.lines:
            return ValidationViolation(
                error_code=ErrorCodes.VALIDATION_ERROR,
                message="Transaction must contain at least one line",
            )
        seen = set()
        for line in transaction.lines:
            if line.line_number in seen:
                return ValidationViolation(
                    error_code=ErrorCodes.VALIDATION_ERROR,
                    message=f"Duplicate line number {line.line_number}",
                    line_number=line.line_number,
                )
            seen.add(line.line_number)
            if line.quantity is None or Decimal(line.quantity) <= 0:
                return ValidationViolation(
                    error_code=ErrorCodes.VALIDATION_ERROR,
                    message=f"Quantity must be positive (Line {line.line_number})",
                    line_number=line.line_number,
                    substance_code=line.substance_code,
                )
        return None

    def _check_customer(self, customer: Customer) -> List[ValidationViolation]:
        violations = []
        if customer.is_suspended:
            reason = f": {customer.suspension_reason}" if customer.suspension_reason else ""
            violations.append(ValidationViolation(
                error_code=ErrorCodes.CUSTOMER_SUSPENDED,
                message=f"Customer {customer.holder_key} is suspended{reason}",
            ))

        if customer.approval_status != ApprovalStatus.APPROVED:
            violations.append(ValidationViolation(
                error_code=ErrorCodes.CUSTOMER_NOT_APPROVED,
                message=(
                    f"Customer {customer.holder_key} is not approved "
                    f"(status: {customer.approval_status.value})"
                ),
                can_override=True,
            ))

        if (
            self.policy.gdp_check_enabled
            and customer.business_category in self.policy.gdp_required_categories
            and customer.gdp_qualification_status not in GDP_ACCEPTED
        ):
            violations.append(ValidationViolation(
                error_code=ErrorCodes.GDP_QUALIFICATION_INVALID,
                message=(
                    f"Customer {customer.holder_key} GDP qualification is "
                    f"{customer.gdp_qualification_status.value}"
                ),
                can_override=True,
            ))
        return violations

    async def _record_classification(self, line: TransactionLine, as_of: date) -> None:
        if self._classification is None:
            return
        classification = await self._classification.get_effective_classification(line.substance_code, as_of)
        if classification is not None:
            line.opium_act_list = classification.opium_act_list
            line.precursor_category = classification.precursor_category

    async def _check_cross_border(self, transaction: Transaction, as_of: date) -> List[ValidationViolation]:
        """The company needs a valid import or export permit for cross-border moves."""
        if transaction.requires_import_permit():
            activity = PermittedActivity.IMPORT
            error_code = ErrorCodes.IMPORT_PERMIT_REQUIRED
            message = f"Import from {transaction.origin_country.upper()} requires valid import permit"
        elif transaction.requires_export_permit():
            activity = PermittedActivity.EXPORT
            error_code = ErrorCodes.EXPORT_PERMIT_REQUIRED
            message = f"Export to {transaction.destination_country.upper()} requires valid export permit"
        else:
            return []

        permit = await self._coverage.find_permit(self.policy.company_key, activity, as_of, HolderType.COMPANY)
        if permit is not None:
            logger.debug(
                "Cross-border transaction %s covered by permit %s", transaction.external_id, permit.licence_number
            )
            return []
        return [ValidationViolation(error_code=error_code, message=message, can_override=True)]

    def _activity_mismatch(
        self,
        decision: CoverageDecision,
        line_number: int,
        substance_code: str
    ) -> ValidationViolation:
        missing = decision.required & ~decision.permitted
        names = ", ".join(a.name for a in PermittedActivity if a and a in missing)
        message = (
            f"Licence {decision.licence.licence_number} does not permit {names} "
            f"for substance '{substance_code}' (Line {line_number})"
        )
        if self.policy.treat_activity_mismatch_as_failure:
            return ValidationViolation(
                error_code=ErrorCodes.LICENCE_SCOPE_INSUFFICIENT,
                message=message,
                line_number=line_number,
                substance_code=substance_code,
            )
        return ValidationViolation(
            error_code=ErrorCodes.LICENCE_SCOPE_INSUFFICIENT,
            message=message,
            can_override=True,
            severity=ViolationSeverity.WARNING,
            line_number=line_number,
            substance_code=substance_code,
        )

    @staticmethod
    def _coverage_violation(decision: CoverageDecision, line_number: int, substance_code: str) -> ValidationViolation:
        licence = decision.licence
        if decision.status == CoverageStatus.EXPIRED:
            return ValidationViolation(
                error_code=ErrorCodes.LICENCE_EXPIRED,
                message=(
                    f"Licence {licence.licence_number} expired on {licence.expiry_date} "
                    f"for substance '{substance_code}' (Line {line_number})"
                ),
                can_override=True,
                line_number=line_number,
                substance_code=substance_code,
            )
        if decision.status == CoverageStatus.SUSPENDED:
            return ValidationViolation(
                error_code=ErrorCodes.LICENCE_SUSPENDED,
                message=(
                    f"Licence {licence.licence_number} is suspended "
                    f"for substance '{substance_code}' (Line {line_number})"
                ),
                line_number=line_number,
                substance_code=substance_code,
            )
        if decision.status == CoverageStatus.REVOKED:
            return ValidationViolation(
                error_code=ErrorCodes.LICENCE_REVOKED,
                message=(
                    f"Licence {licence.licence_number} has been revoked "
                    f"for substance '{substance_code}' (Line {line_number})"
                ),
                line_number=line_number,
                substance_code=substance_code,
            )
        return ValidationViolation(
            error_code=ErrorCodes.LICENCE_MISSING,
            message=f"No valid licence found for substance '{substance_code}' (Line {line_number})",
            can_override=True,
            line_number=line_number,
            substance_code=substance_code,
        )

    @staticmethod
    def _record(transaction: Transaction, result: ValidationResult, usages: Dict[uuid.UUID, _Usage]) -> None:
        """Replace the stored violations and licence usages with this run's."""
        transaction.violations = [
            TransactionViolation(
                error_code=v.error_code,
                message=v.message,
                severity=v.severity,
                can_override=v.can_override,
                line_number=v.line_number,
                substance_code=v.substance_code,
                threshold_id=uuid.UUID(v.threshold_id) if v.threshold_id else None,
            )
            for v in result.violations
        ]
        transaction.licence_usages = [
            TransactionLicenceUsage(
                licence_id=licence_id,
                licence_number=usage.licence_number,
                line_numbers=list(usage.line_numbers),
                covered_quantity=usage.quantity,
            )
            for licence_id, usage in usages.items()
        ]
