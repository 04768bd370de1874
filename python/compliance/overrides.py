"""
Override approval workflow.

An override request is opened only by validation. Operators then approve or
reject it exactly once; both outcomes are terminal. Two concurrent
decisions on the same transaction are serialized by the row version, so the
slower one fails with OVERRIDE_ALREADY_PROCESSED.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from database.models import OverrideStatus, Transaction
from compliance.exceptions import ConcurrencyError
from compliance.interfaces import TransactionStore
from compliance.results import ErrorCodes, ValidationResult
from compliance.state import OVERRIDE_STATES

logger = logging.getLogger(__name__)


class OverrideWorkflow:
    """Approves and rejects pending override requests."""

    def __init__(
        self,
        transactions: TransactionStore,
        min_justification_length: int = 1,
        enforce_min_length: bool = True
    ):
        self._transactions = transactions
        self.min_justification_length = max(1, int(min_justification_length))
        self.enforce_min_length = enforce_min_length

    async def approve_override(
        self,
        transaction_id: uuid.UUID,
        approver: str,
        justification: str
    ) -> ValidationResult:
        """
        Approve a pending override.

        Args:
            transaction_id: Transaction awaiting an override decision
            approver: User recording the approval
            justification: Business justification, must not be blank

        Returns:
            ValidationResult.success() or a failure describing why the
            decision was refused
        """
        return await self._decide(
            transaction_id, approver, justification, OverrideStatus.APPROVED, "Override justification"
        )

    async def reject_override(
        self,
        transaction_id: uuid.UUID,
        rejector: str,
        reason: str
    ) -> ValidationResult:
        """Reject a pending override. Same preconditions as approval."""
        return await self._decide(
            transaction_id, rejector, reason, OverrideStatus.REJECTED, "Rejection reason"
        )

    async def get_pending_overrides(self) -> List[Transaction]:
        """Transactions awaiting an override decision."""
        return await self._transactions.get_pending_overrides()

    async def _decide(
        self,
        transaction_id: uuid.UUID,
        decided_by: str,
        text: Optional[str],
        target: OverrideStatus,
        text_label: str
    ) -> ValidationResult:
        transaction = await self._transactions.get_by_id(transaction_id)
        if transaction is None:
            return ValidationResult.failure(
                ErrorCodes.TRANSACTION_NOT_FOUND,
                f"Transaction {transaction_id} not found",
            )

        if not transaction.requires_override:
            return ValidationResult.failure(
                ErrorCodes.OVERRIDE_NOT_REQUIRED,
                "Transaction does not require override",
            )

        if transaction.override_status != OverrideStatus.PENDING:
            return ValidationResult.failure(
                ErrorCodes.OVERRIDE_NOT_PENDING,
                f"Override is not pending (current status: {transaction.override_status.value})",
            )

        input_error = self._check_text(text, text_label)
        if input_error is not None:
            return input_error
        if not decided_by or not decided_by.strip():
            return ValidationResult.failure(ErrorCodes.VALIDATION_ERROR, "Decision maker is required")

        OVERRIDE_STATES.transition(transaction, target)
        transaction.override_decided_by = decided_by.strip()
        transaction.override_decided_at = datetime.now(timezone.utc)
        transaction.override_justification = text.strip() if text else None

        try:
            await self._transactions.update(transaction)
        except ConcurrencyError:
            logger.warning(
                "Override decision on transaction %s lost a concurrent update",
                transaction_id
            )
            return ValidationResult.failure(
                ErrorCodes.OVERRIDE_ALREADY_PROCESSED,
                f"Override for transaction {transaction_id} was already processed",
            )

        logger.info(
            "Override %s for transaction %s by %s",
            target.value.lower(), transaction.external_id, transaction.override_decided_by
        )
        return ValidationResult.success()

    def _check_text(self, text: Optional[str], label: str) -> Optional[ValidationResult]:
        stripped = (text or "").strip()
        if not stripped:
            return ValidationResult.failure(ErrorCodes.VALIDATION_ERROR, f"{label} is required")
        if self.enforce_min_length and len(stripped) < self.min_justification_length:
            return ValidationResult.failure(
                ErrorCodes.VALIDATION_ERROR,
                f"{label} must be at least {self.min_justification_length} characters",
            )
        return None
