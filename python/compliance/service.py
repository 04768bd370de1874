"""
Compliance Service for the Controlled Substance Compliance Engine

Facade over the engine components exposing the operations callers use: the
HTTP API, the CLI and batch jobs. It follows the dependency injection
pattern: the service is built over a bundle of stores, either the SQLAlchemy
repositories of one session or in-memory stores in tests.

Usage:
    # With FastAPI
    @app.post("/transactions/validate")
    async def validate(
        request: TransactionRequest,
        service: ComplianceService = Depends(get_compliance_service)
    ):
        return await service.validate_transaction(...)

    # Standalone
    async with db_provider.async_session_scope() as session:
        service = ComplianceService.from_session(session, config)
        outcome = await service.revalidate_transaction(transaction_id)
"""

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Any, List, Optional, Tuple

from database.models import (
    BusinessCategory,
    HolderKey,
    HolderType,
    Licence,
    ReclassificationCustomerImpact,
    SubstanceReclassification,
    Transaction,
)
from compliance.classification import Classification, ClassificationResolver
from compliance.licence_coverage import LicenceCoverageResolver
from compliance.overrides import OverrideWorkflow
from compliance.reclassification import (
    ComplianceNotification,
    ImpactAnalysis,
    ReclassificationImpactAnalyzer,
)
from compliance.results import ValidationResult
from compliance.thresholds import ThresholdEvaluator
from compliance.validator import (
    DEFAULT_GDP_CATEGORIES,
    TransactionValidationOutcome,
    TransactionValidator,
    ValidationPolicy,
)

logger = logging.getLogger(__name__)


class ComplianceService:
    """
    Entry point to transaction validation, overrides and reclassification.

    ``stores`` is any object exposing ``customers``, ``substances``,
    ``licences``, ``licence_types``, ``mappings``, ``thresholds``,
    ``transactions`` and ``reclassifications`` attributes.
    """

    def __init__(self, stores: Any, config: Optional[Any] = None):
        """
        Initialize the compliance service.

        Args:
            stores: Store bundle implementing the compliance interfaces
            config: Optional ConfigManager instance
        """
        self.stores = stores
        self.config = config

        # Defaults (can be overridden by config)
        self._policy = ValidationPolicy()
        self._min_justification_length = 1
        self._enforce_min_length = True
        self._default_warning_percent = Decimal("80")
        self._emit_warnings = True

        if config:
            self._apply_config(config)

        self.classification = ClassificationResolver(stores.substances, stores.reclassifications)
        self.coverage = LicenceCoverageResolver(stores.licences, stores.licence_types, stores.mappings)
        self.thresholds = ThresholdEvaluator(
            stores.thresholds,
            stores.transactions,
            default_warning_percent=self._default_warning_percent,
            emit_warnings=self._emit_warnings,
        )
        self.reclassification = ReclassificationImpactAnalyzer(
            stores.reclassifications,
            stores.substances,
            stores.licences,
            stores.licence_types,
            stores.customers,
            self.coverage,
        )
        self.validator = TransactionValidator(
            stores.customers,
            stores.substances,
            self.coverage,
            self.thresholds,
            self.reclassification,
            stores.transactions,
            policy=self._policy,
            classification=self.classification,
        )
        self.overrides = OverrideWorkflow(
            stores.transactions,
            min_justification_length=self._min_justification_length,
            enforce_min_length=self._enforce_min_length,
        )

    @classmethod
    def from_session(cls, session, config: Optional[Any] = None) -> "ComplianceService":
        """Build a service over the SQLAlchemy repositories of one session."""
        # Import here to avoid circular imports
        from database.repositories import ComplianceRepositories
        return cls(ComplianceRepositories(session), config)

    def _apply_config(self, config) -> None:
        """Apply configuration settings."""
        if hasattr(config, 'validation'):
            categories = config.validation.gdp_required_categories
            self._policy = ValidationPolicy(
                treat_activity_mismatch_as_failure=config.validation.treat_activity_mismatch_as_failure,
                gdp_check_enabled=config.validation.gdp_check_enabled,
                gdp_required_categories=(
                    frozenset(BusinessCategory(c) for c in categories)
                    if categories is not None else DEFAULT_GDP_CATEGORIES
                ),
                cross_border_check_enabled=config.validation.cross_border_check_enabled,
                company_account=config.validation.company_account,
                company_jurisdiction=config.validation.company_jurisdiction,
            )

        if hasattr(config, 'override'):
            self._min_justification_length = config.override.min_justification_length
            self._enforce_min_length = config.override.enforce_min_length

        if hasattr(config, 'thresholds'):
            self._default_warning_percent = Decimal(str(config.thresholds.default_warning_percent))
            self._emit_warnings = config.thresholds.emit_warnings

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def validate_transaction(self, transaction: Transaction) -> TransactionValidationOutcome:
        return await self.validator.validate(transaction)

    async def revalidate_transaction(self, transaction_id: uuid.UUID) -> TransactionValidationOutcome:
        return await self.validator.revalidate(transaction_id)

    async def get_transaction_by_id(self, transaction_id: uuid.UUID) -> Optional[Transaction]:
        return await self.stores.transactions.get_by_id(transaction_id)

    async def approve_override(self, transaction_id: uuid.UUID, approver: str, justification: str) -> ValidationResult:
        return await self.overrides.approve_override(transaction_id, approver, justification)

    async def reject_override(self, transaction_id: uuid.UUID, rejector: str, reason: str) -> ValidationResult:
        return await self.overrides.reject_override(transaction_id, rejector, reason)

    async def get_pending_overrides(self) -> List[Transaction]:
        return await self.overrides.get_pending_overrides()

    # ------------------------------------------------------------------
    # Licences and classification
    # ------------------------------------------------------------------

    async def is_substance_authorized(self, licence_id: uuid.UUID, substance_code: str, as_of: date) -> bool:
        return await self.coverage.is_substance_authorized(licence_id, substance_code, as_of)

    async def find_covering_licences(
        self,
        holder: HolderKey,
        substance_code: str,
        as_of: date,
        holder_type: HolderType = HolderType.CUSTOMER
    ) -> List[Licence]:
        return await self.coverage.find_covering_licences(holder, substance_code, as_of, holder_type)

    async def get_effective_classification(self, substance_code: str, as_of: date) -> Optional[Classification]:
        return await self.classification.get_effective_classification(substance_code, as_of)

    # ------------------------------------------------------------------
    # Reclassification
    # ------------------------------------------------------------------

    async def create_reclassification(
        self,
        reclassification: SubstanceReclassification
    ) -> Tuple[Optional[uuid.UUID], ValidationResult]:
        return await self.reclassification.create_reclassification(reclassification)

    async def get_reclassification(self, reclassification_id: uuid.UUID) -> Optional[SubstanceReclassification]:
        return await self.reclassification.get_reclassification(reclassification_id)

    async def get_pending_reclassifications(self) -> List[SubstanceReclassification]:
        return await self.reclassification.get_pending_reclassifications()

    async def analyze_customer_impact(
        self,
        reclassification_id: uuid.UUID
    ) -> Tuple[Optional[ImpactAnalysis], ValidationResult]:
        return await self.reclassification.analyze_customer_impact(reclassification_id)

    async def process_reclassification(self, reclassification_id: uuid.UUID) -> ValidationResult:
        return await self.reclassification.process_reclassification(reclassification_id)

    async def cancel_reclassification(self, reclassification_id: uuid.UUID) -> ValidationResult:
        return await self.reclassification.cancel_reclassification(reclassification_id)

    async def check_customer_blocked(
        self,
        customer: HolderKey
    ) -> Tuple[bool, List[ReclassificationCustomerImpact]]:
        return await self.reclassification.check_customer_blocked(customer)

    async def mark_customer_requalified(self, reclassification_id: uuid.UUID, customer: HolderKey) -> ValidationResult:
        return await self.reclassification.mark_customer_requalified(reclassification_id, customer)

    async def get_customers_requiring_requalification(self) -> List[ReclassificationCustomerImpact]:
        return await self.reclassification.get_customers_requiring_requalification()

    async def generate_compliance_notification(
        self,
        reclassification_id: uuid.UUID
    ) -> Tuple[Optional[ComplianceNotification], ValidationResult]:
        return await self.reclassification.generate_compliance_notification(reclassification_id)


# FastAPI Dependency Injection Support
_compliance_service_factory = None


def configure_compliance_service(db_provider, config=None):
    """
    Configure the compliance service factory for dependency injection.

    Call this during application startup.

    Args:
        db_provider: DatabaseSessionProvider instance
        config: Optional ConfigManager instance
    """
    global _compliance_service_factory
    _compliance_service_factory = (db_provider, config)


async def get_compliance_service():
    """
    FastAPI dependency yielding a ComplianceService bound to one session.

    The session commits when the request handler returns and rolls back if
    it raises.

    Yields:
        ComplianceService instance

    Raises:
        RuntimeError: If compliance service not configured
    """
    if _compliance_service_factory is None:
        raise RuntimeError(
            "Compliance service not configured. Call configure_compliance_service() first."
        )

    db_provider, config = _compliance_service_factory

    async with db_provider.async_session_scope() as session:
        yield ComplianceService.from_session(session, config)
