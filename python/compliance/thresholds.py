"""
Quantity and frequency threshold evaluation.

Quantity thresholds are matched per substance in a fixed precedence order,
substance first, then customer category, then global. Only the most specific
threshold is evaluated for each of the two limit dimensions: the
per-transaction cap and the per-period cap.

Frequency thresholds limit how many transactions a customer places per
period. Every applicable one is evaluated.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from database.models import (
    Customer,
    Threshold,
    ThresholdPeriod,
    ThresholdScope,
    ThresholdType,
    Transaction,
    TransactionLine,
    ViolationSeverity,
)
from compliance.interfaces import ThresholdLookup, TransactionStore
from compliance.results import ErrorCodes, ValidationViolation

logger = logging.getLogger(__name__)

# Most specific first
SCOPE_PRECEDENCE: Tuple[ThresholdScope, ...] = (
    ThresholdScope.SUBSTANCE,
    ThresholdScope.CATEGORY,
    ThresholdScope.GLOBAL,
)

HUNDRED = Decimal("100")


def period_window(period: ThresholdPeriod, reference: datetime) -> Tuple[datetime, datetime]:
    """
    Half-open window [start, end) containing ``reference``.

    Weeks run Sunday through Saturday.
    """
    day_start = reference.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == ThresholdPeriod.DAILY:
        return day_start, day_start + timedelta(days=1)
    if period == ThresholdPeriod.WEEKLY:
        start = day_start - timedelta(days=(reference.weekday() + 1) % 7)
        return start, start + timedelta(days=7)
    if period == ThresholdPeriod.MONTHLY:
        start = day_start.replace(day=1)
        if start.month == 12:
            return start, start.replace(year=start.year + 1, month=1)
        return start, start.replace(month=start.month + 1)
    if period == ThresholdPeriod.YEARLY:
        start = day_start.replace(month=1, day=1)
        return start, start.replace(year=start.year + 1)
    raise ValueError(f"Unknown threshold period: {period}")


def select_most_specific(
    thresholds: List[Threshold],
    has_limit: Callable[[Threshold], bool],
    limit_of: Callable[[Threshold], Decimal]
) -> Optional[Threshold]:
    """
    Pick the threshold to evaluate for one limit dimension.

    Walks SCOPE_PRECEDENCE and stops at the first scope with a candidate.
    Within a scope the lowest limit wins.
    """
    for scope in SCOPE_PRECEDENCE:
        candidates = [t for t in thresholds if t.scope == scope and has_limit(t)]
        if candidates:
            return min(candidates, key=limit_of)
    return None


@dataclass
class ThresholdEvaluation:
    """Breaches and warnings from threshold evaluation."""
    violations: List[ValidationViolation] = field(default_factory=list)
    warnings: List[ValidationViolation] = field(default_factory=list)


class ThresholdEvaluator:
    """Matches quantity limits to transaction lines and flags breaches."""

    def __init__(
        self,
        thresholds: ThresholdLookup,
        transactions: TransactionStore,
        default_warning_percent: Decimal = Decimal("80"),
        emit_warnings: bool = True
    ):
        self._thresholds = thresholds
        self._transactions = transactions
        self._default_warning_percent = Decimal(default_warning_percent)
        self._emit_warnings = emit_warnings

    async def evaluate(self, transaction: Transaction, customer: Optional[Customer]) -> ThresholdEvaluation:
        """
        Evaluate all lines of a transaction against applicable thresholds.

        Args:
            transaction: Transaction being validated
            customer: Customer record (category-scoped thresholds need it)

        Returns:
            ThresholdEvaluation with overridable breaches and warnings
        """
        evaluation = ThresholdEvaluation()
        if not transaction.lines:
            return evaluation

        as_of = transaction.transaction_date.date()
        category = customer.business_category if customer is not None else None
        by_substance: "OrderedDict[str, List[TransactionLine]]" = OrderedDict()
        for line in transaction.lines:
            by_substance.setdefault(line.substance_code, []).append(line)

        candidates = await self._thresholds.get_applicable(
            list(by_substance.keys()), transaction.customer_key, category
        )
        candidates = [t for t in candidates if t.is_effective(as_of)]

        for substance_code, lines in by_substance.items():
            applicable = [t for t in candidates if t.applies_to(substance_code, category)]
            if not applicable:
                continue

            per_transaction = select_most_specific(
                applicable,
                lambda t: t.max_quantity_per_transaction is not None,
                lambda t: t.max_quantity_per_transaction,
            )
            if per_transaction is not None:
                for line in lines:
                    self._check(
                        evaluation, per_transaction, per_transaction.max_quantity_per_transaction,
                        Decimal(line.quantity), substance_code, line.line_number, "per transaction"
                    )

            per_period = select_most_specific(
                applicable,
                lambda t: t.max_quantity_per_period is not None and t.period is not None,
                lambda t: t.max_quantity_per_period,
            )
            if per_period is not None:
                start, end = period_window(per_period.period, transaction.transaction_date)
                historical = await self._transactions.sum_substance_quantity(
                    transaction.customer_key,
                    substance_code,
                    start,
                    end,
                    exclude_transaction_id=transaction.id,
                )
                total = Decimal(historical or 0) + sum((Decimal(l.quantity) for l in lines), Decimal("0"))
                self._check(
                    evaluation, per_period, per_period.max_quantity_per_period,
                    total, substance_code, lines[0].line_number, per_period.period.value.lower()
                )

        return evaluation

    async def evaluate_frequency(
        self,
        transaction: Transaction,
        customer: Optional[Customer]
    ) -> List[ValidationViolation]:
        """
        Count the customer's transactions per period against frequency thresholds.

        The transaction being validated counts as one. Substance-scoped
        thresholds apply only when the transaction carries that substance and
        then count only the transactions that carried it too.
        """
        if customer is None:
            return []

        as_of = transaction.transaction_date.date()
        codes = {line.substance_code for line in transaction.lines}
        thresholds = await self._thresholds.get_by_type(ThresholdType.FREQUENCY)

        violations: List[ValidationViolation] = []
        for threshold in thresholds:
            if not threshold.is_effective(as_of):
                continue
            if threshold.max_transactions_per_period is None or threshold.period is None:
                continue
            if threshold.scope == ThresholdScope.CATEGORY \
                    and threshold.customer_category != customer.business_category:
                continue
            substance_code = threshold.substance_code if threshold.scope == ThresholdScope.SUBSTANCE else None
            if substance_code is not None and substance_code not in codes:
                continue

            start, end = period_window(threshold.period, transaction.transaction_date)
            count = await self._transactions.count_transactions(
                transaction.customer_key,
                start,
                end,
                exclude_transaction_id=transaction.id,
                substance_code=substance_code,
            ) + 1

            if count > threshold.max_transactions_per_period:
                logger.info(
                    "Frequency threshold %s exceeded for %s: %d > %d",
                    threshold.name, transaction.customer_key, count, threshold.max_transactions_per_period
                )
                violations.append(ValidationViolation(
                    error_code=ErrorCodes.FREQUENCY_THRESHOLD_EXCEEDED,
                    message=(
                        f"{threshold.name}: {count} transactions exceeds limit of "
                        f"{threshold.max_transactions_per_period} per {threshold.period.value}"
                    ),
                    can_override=bool(threshold.allow_override),
                    substance_code=substance_code,
                    threshold_id=str(threshold.id) if threshold.id else None,
                ))
        return violations

    def _check(
        self,
        evaluation: ThresholdEvaluation,
        threshold: Threshold,
        limit: Decimal,
        quantity: Decimal,
        substance_code: str,
        line_number: int,
        dimension: str
    ) -> None:
        limit = Decimal(limit)
        if quantity > limit:
            logger.info(
                "Threshold %s exceeded for %s: %s > %s (%s)",
                threshold.name, substance_code, quantity, limit, dimension
            )
            evaluation.violations.append(ValidationViolation(
                error_code=ErrorCodes.THRESHOLD_EXCEEDED,
                message=(
                    f"{threshold.name}: {quantity:.2f} {threshold.limit_unit} exceeds {dimension} "
                    f"limit of {limit:.2f} {threshold.limit_unit} for {substance_code}"
                ),
                can_override=self._is_overridable(threshold, limit, quantity),
                line_number=line_number,
                substance_code=substance_code,
                threshold_id=str(threshold.id) if threshold.id else None,
            ))
            return

        if not self._emit_warnings or limit <= 0:
            return
        percent = Decimal(threshold.warning_threshold_percent or self._default_warning_percent)
        if quantity >= limit * percent / HUNDRED:
            used = quantity / limit * HUNDRED
            evaluation.warnings.append(ValidationViolation(
                error_code=ErrorCodes.THRESHOLD_WARNING,
                message=f"Warning: approaching {threshold.name} {dimension} limit ({used:.0f}% used)",
                can_override=True,
                severity=ViolationSeverity.WARNING,
                line_number=line_number,
                substance_code=substance_code,
                threshold_id=str(threshold.id) if threshold.id else None,
            ))

    @staticmethod
    def _is_overridable(threshold: Threshold, limit: Decimal, quantity: Decimal) -> bool:
        if not threshold.allow_override:
            return False
        if threshold.max_override_percent is None:
            return True
        return quantity <= limit * Decimal(threshold.max_override_percent) / HUNDRED
