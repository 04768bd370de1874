"""
Substance reclassification and customer impact analysis.

When a substance moves to a stricter Opium Act list or precursor category,
every customer holding a licence for it is re-evaluated against the new
tier. Customers whose licences fall short are flagged for re-qualification
and blocked from transacting the substance until they are re-qualified.

Lifecycle: Pending -> Processing -> Completed, or Pending -> Cancelled.
Processing is the only step that writes the new classification to the
substance.
"""

import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from database.models import (
    HolderKey,
    HolderType,
    Licence,
    OpiumActList,
    PermittedActivity,
    PrecursorCategory,
    ReclassificationCustomerImpact,
    ReclassificationStatus,
    SubstanceReclassification,
)
from compliance.interfaces import (
    CustomerLookup,
    LicenceLookup,
    LicenceTypeLookup,
    ReclassificationStore,
    SubstanceLookup,
)
from compliance.licence_coverage import LicenceCoverageResolver
from compliance.results import ErrorCodes, ValidationResult, ValidationViolation
from compliance.state import RECLASSIFICATION_STATES

logger = logging.getLogger(__name__)


def covers_opium_act_list(activities: PermittedActivity, opium_list: OpiumActList) -> bool:
    """List I needs possession and storage; List II needs distribution."""
    if opium_list == OpiumActList.LIST_I:
        needed = PermittedActivity.POSSESS | PermittedActivity.STORE
        return (activities & needed) == needed
    if opium_list == OpiumActList.LIST_II:
        return bool(activities & PermittedActivity.DISTRIBUTE)
    return True


def covers_precursor_category(activities: PermittedActivity, category: PrecursorCategory) -> bool:
    """Category 1 needs precursor handling; Categories 2 and 3 accept distribution too."""
    if category == PrecursorCategory.CATEGORY_1:
        return bool(activities & PermittedActivity.HANDLE_PRECURSORS)
    if category in (PrecursorCategory.CATEGORY_2, PrecursorCategory.CATEGORY_3):
        return bool(activities & (PermittedActivity.HANDLE_PRECURSORS | PermittedActivity.DISTRIBUTE))
    return True


@dataclass
class ImpactAnalysis:
    """Per-customer impacts of a reclassification with aggregate counts."""
    reclassification: SubstanceReclassification
    impacts: List[ReclassificationCustomerImpact] = field(default_factory=list)

    @property
    def total_affected_customers(self) -> int:
        return len(self.impacts)

    @property
    def customers_flagged_for_requalification(self) -> int:
        return sum(1 for i in self.impacts if i.requires_requalification)

    @property
    def customers_with_sufficient_licences(self) -> int:
        return sum(1 for i in self.impacts if i.has_sufficient_licence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reclassification_id": str(self.reclassification.id),
            "substance_code": self.reclassification.substance_code,
            "total_affected_customers": self.total_affected_customers,
            "customers_flagged_for_requalification": self.customers_flagged_for_requalification,
            "customers_with_sufficient_licences": self.customers_with_sufficient_licences,
            "impacts": [impact_to_dict(i) for i in self.impacts],
        }


@dataclass
class CustomerActionRequired:
    customer_account: str
    customer_jurisdiction: str
    customer_name: Optional[str]
    action_required: str
    licence_gap_summary: Optional[str]
    relevant_licence_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_account": self.customer_account,
            "customer_jurisdiction": self.customer_jurisdiction,
            "customer_name": self.customer_name,
            "action_required": self.action_required,
            "licence_gap_summary": self.licence_gap_summary,
            "relevant_licence_ids": list(self.relevant_licence_ids),
        }


@dataclass
class ComplianceNotification:
    """Summary for the compliance team of customers needing action."""
    reclassification_id: uuid.UUID
    substance_code: str
    substance_name: str
    regulatory_reference: str
    effective_date: date
    total_affected_customers: int
    customers_requiring_action: int
    required_actions: List[CustomerActionRequired] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reclassification_id": str(self.reclassification_id),
            "substance_code": self.substance_code,
            "substance_name": self.substance_name,
            "regulatory_reference": self.regulatory_reference,
            "effective_date": self.effective_date.isoformat(),
            "total_affected_customers": self.total_affected_customers,
            "customers_requiring_action": self.customers_requiring_action,
            "required_actions": [a.to_dict() for a in self.required_actions],
        }


def impact_to_dict(impact: ReclassificationCustomerImpact) -> Dict[str, Any]:
    return {
        "customer_account": impact.customer_account,
        "customer_jurisdiction": impact.customer_jurisdiction,
        "customer_name": impact.customer_name,
        "substance_code": impact.substance_code,
        "has_sufficient_licence": impact.has_sufficient_licence,
        "requires_requalification": impact.requires_requalification,
        "licence_gap_summary": impact.licence_gap_summary,
        "relevant_licence_ids": list(impact.relevant_licence_ids or []),
        "requalification_date": (
            impact.requalification_date.isoformat() if impact.requalification_date else None
        ),
    }


class ReclassificationImpactAnalyzer:
    """Records reclassifications, analyzes their impact and applies them."""

    ACTION_REQUIRED = "Update licence to cover new classification requirements"

    def __init__(
        self,
        reclassifications: ReclassificationStore,
        substances: SubstanceLookup,
        licences: LicenceLookup,
        licence_types: LicenceTypeLookup,
        customers: CustomerLookup,
        coverage: LicenceCoverageResolver
    ):
        self._reclassifications = reclassifications
        self._substances = substances
        self._licences = licences
        self._licence_types = licence_types
        self._customers = customers
        self._coverage = coverage

    async def get_reclassification(self, reclassification_id: uuid.UUID) -> Optional[SubstanceReclassification]:
        return await self._reclassifications.get_by_id(reclassification_id)

    async def get_pending_reclassifications(self) -> List[SubstanceReclassification]:
        return await self._reclassifications.get_by_status(ReclassificationStatus.PENDING)

    async def create_reclassification(
        self,
        reclassification: SubstanceReclassification
    ) -> Tuple[Optional[uuid.UUID], ValidationResult]:
        """
        Record a new reclassification as Pending.

        The previous classification on the record must match the substance's
        current one, so a change prepared against stale data is refused.

        Returns:
            (id, success) or (None, failure)
        """
        logger.info("Creating reclassification for substance %s", reclassification.substance_code)

        input_errors = self._check_record(reclassification)
        if input_errors:
            return None, ValidationResult.from_violations(input_errors)

        substance = await self._substances.get_by_substance_code(reclassification.substance_code)
        if substance is None:
            return None, ValidationResult.failure(
                ErrorCodes.SUBSTANCE_NOT_FOUND,
                f"Substance with code '{reclassification.substance_code}' not found",
            )

        if (
            reclassification.previous_opium_act_list != substance.opium_act_list
            or reclassification.previous_precursor_category != substance.precursor_category
        ):
            return None, ValidationResult.failure(
                ErrorCodes.RECLASSIFICATION_STATE_CONFLICT,
                "Previous classification must match substance's current classification",
            )

        reclassification.status = ReclassificationStatus.PENDING
        created = await self._reclassifications.create(reclassification)
        logger.info("Created reclassification %s for substance %s", created.id, substance.substance_name)
        return created.id, ValidationResult.success()

    async def analyze_customer_impact(
        self,
        reclassification_id: uuid.UUID
    ) -> Tuple[Optional[ImpactAnalysis], ValidationResult]:
        """
        Evaluate every licence holder of the substance against the new tier.

        Nothing is persisted; ``process_reclassification`` stores the impacts.
        """
        reclassification = await self._reclassifications.get_by_id(reclassification_id)
        if reclassification is None:
            return None, self._not_found(reclassification_id)
        return await self._analyze(reclassification), ValidationResult.success()

    async def process_reclassification(self, reclassification_id: uuid.UUID) -> ValidationResult:
        """
        Analyze impacts, apply the new classification and complete the record.

        Failures raised midway return the record to Pending and propagate.
        """
        logger.info("Processing reclassification %s", reclassification_id)

        reclassification = await self._reclassifications.get_by_id(reclassification_id)
        if reclassification is None:
            return self._not_found(reclassification_id)

        if reclassification.status != ReclassificationStatus.PENDING:
            return ValidationResult.failure(
                ErrorCodes.RECLASSIFICATION_NOT_PENDING,
                f"Reclassification is already in status {reclassification.status.value}",
            )

        RECLASSIFICATION_STATES.transition(reclassification, ReclassificationStatus.PROCESSING)
        await self._reclassifications.update(reclassification)

        try:
            impacts = await self._reclassifications.get_impacts(reclassification.id)
            if impacts:
                analysis = ImpactAnalysis(reclassification=reclassification, impacts=list(impacts))
            else:
                analysis = await self._analyze(reclassification)
                await self._reclassifications.add_impacts(analysis.impacts)

            substance = await self._substances.get_by_substance_code(reclassification.substance_code)
            if substance is not None:
                substance.opium_act_list = reclassification.new_opium_act_list
                substance.precursor_category = reclassification.new_precursor_category
                await self._substances.update(substance)
            else:
                logger.warning(
                    "Substance %s of reclassification %s no longer exists",
                    reclassification.substance_code, reclassification.id
                )

            reclassification.affected_customer_count = analysis.total_affected_customers
            reclassification.flagged_customer_count = analysis.customers_flagged_for_requalification
            RECLASSIFICATION_STATES.transition(reclassification, ReclassificationStatus.COMPLETED)
            reclassification.processed_date = datetime.now(timezone.utc)
            await self._reclassifications.update(reclassification)
        except Exception:
            logger.exception("Error processing reclassification %s", reclassification_id)
            RECLASSIFICATION_STATES.transition(reclassification, ReclassificationStatus.PENDING)
            await self._reclassifications.update(reclassification)
            raise

        logger.info(
            "Reclassification %s processed: %d affected, %d flagged",
            reclassification_id,
            reclassification.affected_customer_count,
            reclassification.flagged_customer_count,
        )
        return ValidationResult.success()

    async def cancel_reclassification(self, reclassification_id: uuid.UUID) -> ValidationResult:
        """Cancel a reclassification that has not been processed."""
        reclassification = await self._reclassifications.get_by_id(reclassification_id)
        if reclassification is None:
            return self._not_found(reclassification_id)
        if reclassification.status != ReclassificationStatus.PENDING:
            return ValidationResult.failure(
                ErrorCodes.RECLASSIFICATION_NOT_PENDING,
                f"Reclassification is already in status {reclassification.status.value}",
            )
        RECLASSIFICATION_STATES.transition(reclassification, ReclassificationStatus.CANCELLED)
        await self._reclassifications.update(reclassification)
        logger.info("Cancelled reclassification %s", reclassification_id)
        return ValidationResult.success()

    async def check_customer_blocked(
        self,
        customer: HolderKey
    ) -> Tuple[bool, List[ReclassificationCustomerImpact]]:
        """
        Check whether the customer awaits re-qualification.

        Returns:
            (is_blocked, blocking impacts)
        """
        impacts = await self._reclassifications.get_impacts_for_customer(customer)
        blocking = [impact for impact in impacts if impact.is_blocking]
        return bool(blocking), blocking

    async def mark_customer_requalified(
        self,
        reclassification_id: uuid.UUID,
        customer: HolderKey
    ) -> ValidationResult:
        """Clear the re-qualification flag of one customer for one reclassification."""
        impact = await self._reclassifications.get_impact(reclassification_id, customer)
        if impact is None:
            return ValidationResult.failure(
                ErrorCodes.IMPACT_NOT_FOUND,
                f"Customer impact record not found for customer {customer} "
                f"and reclassification {reclassification_id}",
            )

        impact.requires_requalification = False
        impact.requalification_date = datetime.now(timezone.utc)
        await self._reclassifications.update_impact(impact)
        logger.info("Customer %s re-qualified for reclassification %s", customer, reclassification_id)
        return ValidationResult.success()

    async def get_customers_requiring_requalification(self) -> List[ReclassificationCustomerImpact]:
        impacts = await self._reclassifications.get_customers_requiring_requalification()
        return [impact for impact in impacts if impact.is_blocking]

    async def generate_compliance_notification(
        self,
        reclassification_id: uuid.UUID
    ) -> Tuple[Optional[ComplianceNotification], ValidationResult]:
        """Build the compliance team notification for a reclassification."""
        reclassification = await self._reclassifications.get_by_id(reclassification_id)
        if reclassification is None:
            return None, self._not_found(reclassification_id)

        substance = await self._substances.get_by_substance_code(reclassification.substance_code)
        impacts = await self._reclassifications.get_impacts(reclassification_id)
        requiring = [i for i in impacts if i.requires_requalification]

        notification = ComplianceNotification(
            reclassification_id=reclassification.id,
            substance_code=reclassification.substance_code,
            substance_name=substance.substance_name if substance is not None else "Unknown",
            regulatory_reference=reclassification.regulatory_reference,
            effective_date=reclassification.effective_date,
            total_affected_customers=len(impacts),
            customers_requiring_action=len(requiring),
            required_actions=[
                CustomerActionRequired(
                    customer_account=impact.customer_account,
                    customer_jurisdiction=impact.customer_jurisdiction,
                    customer_name=impact.customer_name,
                    action_required=self.ACTION_REQUIRED,
                    licence_gap_summary=impact.licence_gap_summary,
                    relevant_licence_ids=list(impact.relevant_licence_ids or []),
                )
                for impact in requiring
            ],
        )
        logger.info(
            "Generated compliance notification for reclassification %s: %d customer(s) require action",
            reclassification_id, notification.customers_requiring_action
        )
        return notification, ValidationResult.success()

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def _analyze(self, reclassification: SubstanceReclassification) -> ImpactAnalysis:
        logger.info("Analyzing customer impact for reclassification %s", reclassification.id)
        as_of = datetime.now(timezone.utc).date()

        licences = await self._licences.get_by_substance_code(reclassification.substance_code)
        by_holder: "OrderedDict[HolderKey, List[Licence]]" = OrderedDict()
        for licence in licences:
            if licence.holder_type == HolderType.CUSTOMER:
                by_holder.setdefault(licence.holder_key, []).append(licence)

        analysis = ImpactAnalysis(reclassification=reclassification)
        for holder, holder_licences in by_holder.items():
            analysis.impacts.append(
                await self._analyze_holder(reclassification, holder, holder_licences, as_of)
            )

        logger.info(
            "Impact analysis complete for reclassification %s: %d affected, %d sufficient, %d flagged",
            reclassification.id,
            analysis.total_affected_customers,
            analysis.customers_with_sufficient_licences,
            analysis.customers_flagged_for_requalification,
        )
        return analysis

    async def _analyze_holder(
        self,
        reclassification: SubstanceReclassification,
        holder: HolderKey,
        licences: List[Licence],
        as_of: date
    ) -> ReclassificationCustomerImpact:
        customer = await self._customers.get_by_holder_key(holder.account, holder.jurisdiction)
        sufficient = await self._is_sufficient(reclassification, licences, as_of)

        impact = ReclassificationCustomerImpact(
            reclassification_id=reclassification.id,
            customer_account=holder.account,
            customer_jurisdiction=holder.jurisdiction,
            customer_name=customer.business_name if customer is not None else None,
            substance_code=reclassification.substance_code,
            has_sufficient_licence=sufficient,
            requires_requalification=not sufficient,
            relevant_licence_ids=[str(licence.id) for licence in licences],
        )
        if not sufficient:
            impact.licence_gap_summary = await self._gap_summary(reclassification, licences)
        return impact

    async def _is_sufficient(
        self,
        reclassification: SubstanceReclassification,
        licences: List[Licence],
        as_of: date
    ) -> bool:
        if not reclassification.is_upgrade():
            return True

        # Only licences that still authorize the substance today count
        valid = [
            licence for licence in licences
            if await self._coverage.is_substance_authorized(licence.id, reclassification.substance_code, as_of)
        ]
        activities = [await self._coverage.permitted_activities(licence) for licence in valid]

        if reclassification.is_opium_act_upgrade and not any(
            covers_opium_act_list(a, reclassification.new_opium_act_list) for a in activities
        ):
            return False

        if reclassification.is_precursor_upgrade and not any(
            covers_precursor_category(a, reclassification.new_precursor_category) for a in activities
        ):
            return False

        return True

    async def _gap_summary(self, reclassification: SubstanceReclassification, licences: List[Licence]) -> str:
        gaps = []
        if reclassification.is_opium_act_upgrade:
            gaps.append(f"Requires licence covering Opium Act {reclassification.new_opium_act_list.value}")
        if reclassification.is_precursor_upgrade:
            gaps.append(f"Requires licence covering Precursor {reclassification.new_precursor_category.value}")

        type_names = []
        for licence in licences:
            licence_type = await self._licence_types.get_by_id(licence.licence_type_id)
            if licence_type is not None and licence_type.name not in type_names:
                type_names.append(licence_type.name)
        if type_names:
            gaps.append(f"Current licences: {', '.join(type_names)}")

        return "; ".join(gaps)

    @staticmethod
    def _check_record(reclassification: SubstanceReclassification) -> List[ValidationViolation]:
        errors = []

        def require(value, label):
            if value is None or (isinstance(value, str) and not value.strip()):
                errors.append(ValidationViolation(
                    error_code=ErrorCodes.VALIDATION_ERROR,
                    message=f"{label} is required",
                ))

        require(reclassification.substance_code, "Substance code")
        require(reclassification.regulatory_reference, "Regulatory reference")
        require(reclassification.regulatory_authority, "Regulatory authority")
        require(reclassification.effective_date, "Effective date")
        require(reclassification.previous_opium_act_list, "Previous Opium Act list")
        require(reclassification.previous_precursor_category, "Previous precursor category")
        require(reclassification.new_opium_act_list, "New Opium Act list")
        require(reclassification.new_precursor_category, "New precursor category")
        if errors:
            return errors

        if not reclassification.opium_act_changed and not reclassification.precursor_changed:
            errors.append(ValidationViolation(
                error_code=ErrorCodes.VALIDATION_ERROR,
                message="Reclassification must change at least one classification",
            ))
        if (
            reclassification.new_opium_act_list == OpiumActList.NONE
            and reclassification.new_precursor_category == PrecursorCategory.NONE
        ):
            errors.append(ValidationViolation(
                error_code=ErrorCodes.VALIDATION_ERROR,
                message="New classification must keep the substance controlled",
            ))
        return errors

    @staticmethod
    def _not_found(reclassification_id: uuid.UUID) -> ValidationResult:
        return ValidationResult.failure(
            ErrorCodes.RECLASSIFICATION_NOT_FOUND,
            f"Reclassification {reclassification_id} not found",
        )
