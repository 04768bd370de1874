"""
Tests for multi-rule transaction validation.

The validator is wired through ComplianceService over the in-memory stores,
so the tests exercise the same component graph the API uses.
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from compliance.results import ErrorCodes
from compliance.service import ComplianceService
from compliance.validator import ValidationPolicy
from database.models import (
    ApprovalStatus,
    BusinessCategory,
    GdpQualificationStatus,
    LicenceStatus,
    OpiumActList,
    OverrideStatus,
    PermittedActivity,
    PrecursorCategory,
    ReclassificationCustomerImpact,
    ReclassificationStatus,
    Threshold,
    ThresholdPeriod,
    ThresholdScope,
    ThresholdType,
    TransactionDirection,
    TransactionLine,
    TransactionType,
    ValidationStatus,
    ViolationSeverity,
)
from fakes import (
    build_world,
    licence_by_number,
    make_customer,
    make_licence,
    make_licence_type,
    make_mapping,
    make_reclassification,
    make_transaction,
)


@pytest.fixture
def stores():
    return build_world()


@pytest.fixture
def service(stores):
    return ComplianceService(stores)


def codes(outcome):
    return outcome.result.error_codes


class TestHappyPath:
    """A fully licensed order for an approved customer."""

    @pytest.mark.asyncio
    async def test_passes_and_proceeds(self, service, stores):
        outcome = await service.validate_transaction(make_transaction([("MORPH", 10)]))

        assert outcome.result.is_valid
        assert outcome.can_proceed
        transaction = outcome.transaction
        assert transaction.validation_status == ValidationStatus.PASSED
        assert transaction.validation_date is not None
        assert transaction.requires_override is False
        assert transaction.override_status == OverrideStatus.NONE
        assert transaction.customer_name == "Customer C-1001"
        assert await stores.transactions.get_by_id(transaction.id) is transaction

    @pytest.mark.asyncio
    async def test_records_licence_usage(self, service, stores):
        outcome = await service.validate_transaction(make_transaction([("MORPH", 10), ("DIAZ", 5)]))
        licence = licence_by_number(stores, "OW-1001")

        transaction = outcome.transaction
        assert all(line.licence_id == licence.id for line in transaction.lines)
        assert len(transaction.licence_usages) == 1
        usage = transaction.licence_usages[0]
        assert usage.licence_number == "OW-1001"
        assert usage.line_numbers == [1, 2]
        assert usage.covered_quantity == Decimal("15")

    @pytest.mark.asyncio
    async def test_to_dict(self, service):
        outcome = await service.validate_transaction(make_transaction([("MORPH", 10)]))
        data = outcome.to_dict()
        assert data["is_valid"] is True
        assert data["can_proceed"] is True
        assert data["validation_status"] == "Passed"
        assert data["override_status"] == "None"
        assert data["transaction_id"] == str(outcome.transaction.id)


class TestCustomerRules:
    @pytest.mark.asyncio
    async def test_unknown_customer(self, service):
        outcome = await service.validate_transaction(make_transaction([("MORPH", 10)], account="C-9999"))
        assert ErrorCodes.CUSTOMER_NOT_FOUND in codes(outcome)
        assert outcome.transaction.requires_override is False
        assert not outcome.can_proceed

    @pytest.mark.asyncio
    async def test_suspended_customer_is_never_overridable(self, service, stores):
        customer = stores.customers.items[make_transaction([]).customer_key]
        customer.is_suspended = True
        customer.suspension_reason = "Under investigation"

        outcome = await service.validate_transaction(make_transaction([("MORPH", 10)]))
        transaction = outcome.transaction
        assert codes(outcome) == [ErrorCodes.CUSTOMER_SUSPENDED]
        assert "Under investigation" in outcome.result.violations[0].message
        assert transaction.validation_status == ValidationStatus.FAILED
        assert transaction.requires_override is False
        assert transaction.override_status == OverrideStatus.NONE

    @pytest.mark.asyncio
    async def test_suspension_blocks_override_of_other_findings(self, service, stores):
        customer = stores.customers.items[make_transaction([]).customer_key]
        customer.is_suspended = True
        customer.approval_status = ApprovalStatus.PENDING

        outcome = await service.validate_transaction(make_transaction([("EPHED", 10)]))
        assert set(codes(outcome)) >= {
            ErrorCodes.CUSTOMER_SUSPENDED,
            ErrorCodes.CUSTOMER_NOT_APPROVED,
            ErrorCodes.LICENCE_MISSING,
        }
        assert outcome.transaction.requires_override is False

    @pytest.mark.asyncio
    async def test_unapproved_customer_requests_override(self, service, stores):
        customer = stores.customers.items[make_transaction([]).customer_key]
        customer.approval_status = ApprovalStatus.REJECTED

        outcome = await service.validate_transaction(make_transaction([("MORPH", 10)]))
        assert codes(outcome) == [ErrorCodes.CUSTOMER_NOT_APPROVED]
        assert outcome.transaction.requires_override is True
        assert outcome.transaction.override_status == OverrideStatus.PENDING
        assert not outcome.can_proceed

    @pytest.mark.asyncio
    async def test_gdp_required_for_wholesaler(self, service, stores):
        stores.customers.add(make_customer(
            "C-1001",
            business_category=BusinessCategory.WHOLESALER_EU,
            gdp_qualification_status=GdpQualificationStatus.EXPIRED,
        ))
        outcome = await service.validate_transaction(make_transaction([("MORPH", 10)]))
        assert codes(outcome) == [ErrorCodes.GDP_QUALIFICATION_INVALID]
        assert outcome.result.violations[0].can_override

    @pytest.mark.asyncio
    async def test_conditional_gdp_accepted(self, service, stores):
        stores.customers.add(make_customer(
            "C-1001", gdp_qualification_status=GdpQualificationStatus.CONDITIONALLY_APPROVED
        ))
        outcome = await service.validate_transaction(make_transaction([("MORPH", 10)]))
        assert outcome.result.is_valid

    @pytest.mark.asyncio
    async def test_gdp_not_required_for_research(self, service, stores):
        stores.customers.add(make_customer(
            "C-1001",
            business_category=BusinessCategory.RESEARCH_INSTITUTION,
            gdp_qualification_status=GdpQualificationStatus.NOT_REQUIRED,
        ))
        outcome = await service.validate_transaction(make_transaction([("MORPH", 10)]))
        assert outcome.result.is_valid


class TestLicenceRules:
    @pytest.mark.asyncio
    async def test_missing_licence_requests_override(self, service):
        outcome = await service.validate_transaction(make_transaction([("MORPH", 10), ("EPHED", 2)]))

        assert codes(outcome) == [ErrorCodes.LICENCE_MISSING]
        violation = outcome.result.violations[0]
        assert violation.line_number == 2
        assert violation.substance_code == "EPHED"
        assert violation.can_override
        assert outcome.transaction.validation_status == ValidationStatus.FAILED
        assert outcome.transaction.override_status == OverrideStatus.PENDING
        assert outcome.transaction.lines[1].licence_id is None

    @pytest.mark.asyncio
    async def test_expired_licence(self, service, stores):
        licence_by_number(stores, "OW-1001").expiry_date = date(2026, 3, 14)

        outcome = await service.validate_transaction(make_transaction([("MORPH", 10)]))
        assert codes(outcome) == [ErrorCodes.LICENCE_EXPIRED]
        assert outcome.result.violations[0].can_override

    @pytest.mark.asyncio
    async def test_suspended_licence_is_absolute(self, service, stores):
        licence_by_number(stores, "OW-1001").status = LicenceStatus.SUSPENDED

        outcome = await service.validate_transaction(make_transaction([("MORPH", 10)]))
        assert codes(outcome) == [ErrorCodes.LICENCE_SUSPENDED]
        assert not outcome.result.violations[0].can_override
        assert outcome.transaction.requires_override is False

    @pytest.mark.asyncio
    async def test_revoked_licence_is_absolute(self, service, stores):
        licence_by_number(stores, "OW-1001").status = LicenceStatus.REVOKED

        outcome = await service.validate_transaction(make_transaction([("MORPH", 10)]))
        assert codes(outcome) == [ErrorCodes.LICENCE_REVOKED]
        assert outcome.transaction.requires_override is False

    @pytest.mark.asyncio
    async def test_unknown_substance(self, service):
        outcome = await service.validate_transaction(make_transaction([("NOPE", 1)]))
        assert codes(outcome) == [ErrorCodes.SUBSTANCE_NOT_FOUND]
        assert outcome.transaction.requires_override is False

    @pytest.mark.asyncio
    async def test_activity_mismatch_is_a_warning(self, service, stores):
        licence_type = stores.licence_types.add(
            make_licence_type(name="Possession only", activities=PermittedActivity.POSSESS)
        )
        stores.customers.add(make_customer("C-3001"))
        licence = stores.licences.add(make_licence(licence_type, "P-3001", "C-3001"))
        stores.mappings.add(make_mapping(licence, "MORPH"))

        outcome = await service.validate_transaction(make_transaction([("MORPH", 10)], account="C-3001"))
        assert outcome.result.is_valid
        assert outcome.can_proceed
        assert [w.error_code for w in outcome.result.warnings] == [ErrorCodes.LICENCE_SCOPE_INSUFFICIENT]
        assert outcome.result.warnings[0].severity == ViolationSeverity.WARNING
        assert "DISTRIBUTE" in outcome.result.warnings[0].message

    @pytest.mark.asyncio
    async def test_activity_mismatch_as_failure(self, stores):
        licence_type = stores.licence_types.add(
            make_licence_type(name="Possession only", activities=PermittedActivity.POSSESS)
        )
        stores.customers.add(make_customer("C-3001"))
        licence = stores.licences.add(make_licence(licence_type, "P-3001", "C-3001"))
        stores.mappings.add(make_mapping(licence, "MORPH"))

        service = ComplianceService(stores)
        service.validator.policy = ValidationPolicy(treat_activity_mismatch_as_failure=True)

        outcome = await service.validate_transaction(make_transaction([("MORPH", 10)], account="C-3001"))
        assert codes(outcome) == [ErrorCodes.LICENCE_SCOPE_INSUFFICIENT]
        assert outcome.transaction.requires_override is False

    @pytest.mark.asyncio
    async def test_export_needs_export_activity(self, service):
        outcome = await service.validate_transaction(make_transaction(
            [("MORPH", 10)],
            transaction_type=TransactionType.SHIPMENT,
            direction=TransactionDirection.OUTBOUND,
            origin_country="NL",
            destination_country="DE",
        ))
        assert outcome.result.is_valid
        assert "EXPORT" in outcome.result.warnings[0].message


class TestRequalificationBlock:
    @pytest.mark.asyncio
    async def test_blocked_substance_fails_without_override(self, service, stores):
        reclassification = make_reclassification(substance_code="MORPH")
        stores.reclassifications.impacts.append(ReclassificationCustomerImpact(
            reclassification_id=reclassification.id,
            customer_account="C-1001",
            customer_jurisdiction="NL",
            substance_code="MORPH",
            has_sufficient_licence=False,
            requires_requalification=True,
        ))

        outcome = await service.validate_transaction(make_transaction([("DIAZ", 5), ("MORPH", 10)]))
        assert codes(outcome) == [ErrorCodes.CUSTOMER_REQUALIFICATION_REQUIRED]
        assert outcome.result.violations[0].line_number == 2
        assert outcome.transaction.requires_override is False

    @pytest.mark.asyncio
    async def test_requalified_customer_not_blocked(self, service, stores):
        reclassification = make_reclassification(substance_code="MORPH")
        stores.reclassifications.impacts.append(ReclassificationCustomerImpact(
            reclassification_id=reclassification.id,
            customer_account="C-1001",
            customer_jurisdiction="NL",
            substance_code="MORPH",
            requires_requalification=False,
            requalification_date=datetime(2026, 2, 1, tzinfo=timezone.utc),
        ))

        outcome = await service.validate_transaction(make_transaction([("MORPH", 10)]))
        assert outcome.result.is_valid


class TestThresholdRules:
    @pytest.mark.asyncio
    async def test_threshold_breach_requests_override(self, service, stores):
        stores.thresholds.add(Threshold(
            name="Morphine per order",
            scope=ThresholdScope.SUBSTANCE,
            substance_code="MORPH",
            max_quantity_per_transaction=Decimal("50"),
        ))
        outcome = await service.validate_transaction(make_transaction([("MORPH", 60)]))
        assert codes(outcome) == [ErrorCodes.THRESHOLD_EXCEEDED]
        assert outcome.transaction.override_status == OverrideStatus.PENDING

    @pytest.mark.asyncio
    async def test_warnings_do_not_fail(self, service, stores):
        stores.thresholds.add(Threshold(
            name="Morphine per order",
            scope=ThresholdScope.SUBSTANCE,
            substance_code="MORPH",
            max_quantity_per_transaction=Decimal("50"),
        ))
        outcome = await service.validate_transaction(make_transaction([("MORPH", 49)]))
        assert outcome.result.is_valid
        assert [w.error_code for w in outcome.result.warnings] == [ErrorCodes.THRESHOLD_WARNING]
        assert outcome.transaction.violations == []


class TestCrossBorderRules:
    """Cross-border moves need an import or export permit held by the company."""

    def _shipment(self, direction, origin, destination):
        return make_transaction(
            [("MORPH", 10)],
            transaction_type=TransactionType.SHIPMENT,
            direction=direction,
            origin_country=origin,
            destination_country=destination,
        )

    @pytest.mark.asyncio
    async def test_company_permit_covers_import(self, service):
        outcome = await service.validate_transaction(
            self._shipment(TransactionDirection.INBOUND, "US", "NL")
        )
        assert outcome.result.is_valid
        assert ErrorCodes.IMPORT_PERMIT_REQUIRED not in codes(outcome)

    @pytest.mark.asyncio
    async def test_import_without_permit(self, service, stores):
        del stores.licences.items[licence_by_number(stores, "IE-0001").id]

        outcome = await service.validate_transaction(
            self._shipment(TransactionDirection.INBOUND, "US", "NL")
        )

        assert codes(outcome) == [ErrorCodes.IMPORT_PERMIT_REQUIRED]
        violation = outcome.result.violations[0]
        assert violation.message == "Import from US requires valid import permit"
        assert violation.can_override is True
        assert outcome.transaction.override_status == OverrideStatus.PENDING

    @pytest.mark.asyncio
    async def test_export_with_expired_permit(self, service, stores):
        licence_by_number(stores, "IE-0001").expiry_date = date(2025, 12, 31)

        outcome = await service.validate_transaction(
            self._shipment(TransactionDirection.OUTBOUND, "NL", "de")
        )

        assert codes(outcome) == [ErrorCodes.EXPORT_PERMIT_REQUIRED]
        assert outcome.result.violations[0].message == "Export to DE requires valid export permit"

    @pytest.mark.asyncio
    async def test_import_only_permit_does_not_cover_export(self, service, stores):
        licence_by_number(stores, "IE-0001").permitted_activities = int(PermittedActivity.IMPORT)

        inbound = await service.validate_transaction(self._shipment(TransactionDirection.INBOUND, "US", "NL"))
        outbound = await service.validate_transaction(self._shipment(TransactionDirection.OUTBOUND, "NL", "DE"))

        assert inbound.result.is_valid
        assert codes(outbound) == [ErrorCodes.EXPORT_PERMIT_REQUIRED]

    @pytest.mark.asyncio
    async def test_customer_licence_is_not_a_company_permit(self, service, stores):
        del stores.licences.items[licence_by_number(stores, "IE-0001").id]
        licence_by_number(stores, "OW-1001").permitted_activities = int(
            PermittedActivity.DISTRIBUTE | PermittedActivity.IMPORT
        )

        outcome = await service.validate_transaction(
            self._shipment(TransactionDirection.INBOUND, "US", "NL")
        )
        assert codes(outcome) == [ErrorCodes.IMPORT_PERMIT_REQUIRED]

    @pytest.mark.asyncio
    async def test_domestic_shipment_not_checked(self, service, stores):
        del stores.licences.items[licence_by_number(stores, "IE-0001").id]

        outcome = await service.validate_transaction(
            self._shipment(TransactionDirection.OUTBOUND, "NL", "nl")
        )
        assert outcome.result.is_valid

    @pytest.mark.asyncio
    async def test_check_can_be_disabled(self, service, stores):
        del stores.licences.items[licence_by_number(stores, "IE-0001").id]
        service.validator.policy = ValidationPolicy(cross_border_check_enabled=False)

        outcome = await service.validate_transaction(
            self._shipment(TransactionDirection.INBOUND, "US", "NL")
        )
        assert outcome.result.is_valid


class TestFrequencyRules:
    """Transaction counts per period; the transaction being validated counts as one."""

    def _frequency(self, stores, limit=2, **overrides):
        data = dict(
            name="Monthly orders",
            threshold_type=ThresholdType.FREQUENCY,
            scope=ThresholdScope.GLOBAL,
            max_transactions_per_period=limit,
            period=ThresholdPeriod.MONTHLY,
        )
        data.update(overrides)
        return stores.thresholds.add(Threshold(**data))

    def _history(self, stores, count, lines=(("MORPH", 1),), status=ValidationStatus.PASSED):
        for day in range(1, count + 1):
            stores.transactions.add(make_transaction(
                list(lines),
                transaction_date=datetime(2026, 3, day, 9, 0, tzinfo=timezone.utc),
                validation_status=status,
            ))

    @pytest.mark.asyncio
    async def test_exceeding_limit_requests_override(self, service, stores):
        threshold = self._frequency(stores)
        self._history(stores, 2)

        outcome = await service.validate_transaction(make_transaction([("MORPH", 1)]))

        assert codes(outcome) == [ErrorCodes.FREQUENCY_THRESHOLD_EXCEEDED]
        violation = outcome.result.violations[0]
        assert violation.message == "Monthly orders: 3 transactions exceeds limit of 2 per Monthly"
        assert violation.can_override is True
        assert violation.threshold_id == str(threshold.id)
        assert outcome.transaction.override_status == OverrideStatus.PENDING
        assert outcome.transaction.violations[0].threshold_id == threshold.id

    @pytest.mark.asyncio
    async def test_reaching_limit_passes(self, service, stores):
        self._frequency(stores)
        self._history(stores, 1)

        outcome = await service.validate_transaction(make_transaction([("MORPH", 1)]))
        assert outcome.result.is_valid

    @pytest.mark.asyncio
    async def test_not_overridable_when_threshold_forbids(self, service, stores):
        self._frequency(stores, allow_override=False)
        self._history(stores, 2)

        outcome = await service.validate_transaction(make_transaction([("MORPH", 1)]))

        assert codes(outcome) == [ErrorCodes.FREQUENCY_THRESHOLD_EXCEEDED]
        assert outcome.result.violations[0].can_override is False
        assert outcome.transaction.requires_override is False
        assert outcome.transaction.override_status == OverrideStatus.NONE

    @pytest.mark.asyncio
    async def test_failed_transactions_not_counted(self, service, stores):
        self._frequency(stores)
        self._history(stores, 2, status=ValidationStatus.FAILED)

        outcome = await service.validate_transaction(make_transaction([("MORPH", 1)]))
        assert outcome.result.is_valid

    @pytest.mark.asyncio
    async def test_previous_period_not_counted(self, service, stores):
        self._frequency(stores)
        for day in (20, 25):
            stores.transactions.add(make_transaction(
                [("MORPH", 1)],
                transaction_date=datetime(2026, 2, day, 9, 0, tzinfo=timezone.utc),
                validation_status=ValidationStatus.PASSED,
            ))

        outcome = await service.validate_transaction(make_transaction([("MORPH", 1)]))
        assert outcome.result.is_valid

    @pytest.mark.asyncio
    async def test_substance_scope_counts_only_that_substance(self, service, stores):
        self._frequency(stores, limit=1, scope=ThresholdScope.SUBSTANCE, substance_code="MORPH")
        self._history(stores, 3, lines=(("DIAZ", 1),))

        morphine = await service.validate_transaction(make_transaction([("MORPH", 1)]))
        assert morphine.result.is_valid

        self._history(stores, 1)
        again = await service.validate_transaction(make_transaction([("MORPH", 1), ("DIAZ", 1)]))
        assert codes(again) == [ErrorCodes.FREQUENCY_THRESHOLD_EXCEEDED]
        assert again.result.violations[0].substance_code == "MORPH"

    @pytest.mark.asyncio
    async def test_category_scope_only_for_that_category(self, service, stores):
        self._frequency(
            stores, limit=1, scope=ThresholdScope.CATEGORY, customer_category=BusinessCategory.VETERINARIAN
        )
        self._history(stores, 2)

        outcome = await service.validate_transaction(make_transaction([("MORPH", 1)]))
        assert outcome.result.is_valid

    @pytest.mark.asyncio
    async def test_every_applicable_threshold_evaluated(self, service, stores):
        self._frequency(stores, name="Monthly orders")
        self._frequency(
            stores, name="Hospital monthly orders", scope=ThresholdScope.CATEGORY,
            customer_category=BusinessCategory.HOSPITAL_PHARMACY,
        )
        self._history(stores, 2)

        outcome = await service.validate_transaction(make_transaction([("MORPH", 1)]))
        assert codes(outcome) == [ErrorCodes.FREQUENCY_THRESHOLD_EXCEEDED] * 2

    @pytest.mark.asyncio
    async def test_frequency_threshold_ignored_for_quantity(self, service, stores):
        self._frequency(stores, limit=5, max_quantity_per_transaction=Decimal("1"))

        outcome = await service.validate_transaction(make_transaction([("MORPH", 10)]))
        assert outcome.result.is_valid
        assert outcome.result.warnings == []


class TestLineClassification:
    """Each line records the classification in force on the transaction date."""

    @pytest.mark.asyncio
    async def test_current_classification_recorded(self, service):
        outcome = await service.validate_transaction(make_transaction([("MORPH", 10), ("EPHED", 1)]))

        morphine, ephedrine = outcome.transaction.lines
        assert morphine.opium_act_list == OpiumActList.LIST_I
        assert morphine.precursor_category == PrecursorCategory.NONE
        assert ephedrine.opium_act_list == OpiumActList.NONE
        assert ephedrine.precursor_category == PrecursorCategory.CATEGORY_2

    @pytest.mark.asyncio
    async def test_classification_before_later_reclassification(self, service, stores):
        reclassification = make_reclassification(
            effective=date(2026, 6, 1), status=ReclassificationStatus.COMPLETED
        )
        stores.reclassifications.items[reclassification.id] = reclassification
        stores.substances.items["DIAZ"].opium_act_list = OpiumActList.LIST_I

        outcome = await service.validate_transaction(make_transaction([("DIAZ", 5)]))
        assert outcome.transaction.lines[0].opium_act_list == OpiumActList.LIST_II

        later = await service.validate_transaction(make_transaction(
            [("DIAZ", 5)], transaction_date=datetime(2026, 7, 1, 9, 0, tzinfo=timezone.utc)
        ))
        assert later.transaction.lines[0].opium_act_list == OpiumActList.LIST_I

    @pytest.mark.asyncio
    async def test_unknown_substance_has_no_classification(self, service):
        outcome = await service.validate_transaction(make_transaction([("NOPE", 1)]))
        assert outcome.transaction.lines[0].opium_act_list is None


class TestInputRules:
    """Malformed transactions are rejected before any rule runs and not stored."""

    @pytest.mark.asyncio
    async def test_no_lines(self, service, stores):
        transaction = make_transaction([])
        outcome = await service.validate_transaction(transaction)
        assert codes(outcome) == [ErrorCodes.VALIDATION_ERROR]
        assert not outcome.can_proceed
        assert await stores.transactions.get_by_id(transaction.id) is None

    @pytest.mark.asyncio
    async def test_duplicate_line_numbers(self, service):
        transaction = make_transaction([("MORPH", 1)])
        transaction.lines.append(TransactionLine(line_number=1, substance_code="DIAZ", quantity=Decimal("1")))
        outcome = await service.validate_transaction(transaction)
        assert codes(outcome) == [ErrorCodes.VALIDATION_ERROR]

    @pytest.mark.asyncio
    async def test_non_positive_quantity(self, service):
        outcome = await service.validate_transaction(make_transaction([("MORPH", 0)]))
        assert codes(outcome) == [ErrorCodes.VALIDATION_ERROR]
        assert outcome.transaction.validation_status == ValidationStatus.PENDING


class TestRevalidation:
    @pytest.mark.asyncio
    async def test_revalidation_is_idempotent(self, service):
        first = await service.validate_transaction(make_transaction([("MORPH", 10), ("EPHED", 1)]))
        transaction_id = first.transaction.id

        second = await service.revalidate_transaction(transaction_id)
        assert second.transaction.id == transaction_id
        assert codes(second) == codes(first)
        assert len(second.transaction.violations) == 1
        assert second.transaction.override_status == OverrideStatus.PENDING

    @pytest.mark.asyncio
    async def test_pending_override_withdrawn_when_fixed(self, service, stores):
        outcome = await service.validate_transaction(make_transaction([("EPHED", 1)]))
        assert outcome.transaction.override_status == OverrideStatus.PENDING

        stores.mappings.add(make_mapping(licence_by_number(stores, "OW-1001"), "EPHED"))
        revalidated = await service.revalidate_transaction(outcome.transaction.id)

        assert revalidated.result.is_valid
        assert revalidated.transaction.validation_status == ValidationStatus.PASSED
        assert revalidated.transaction.override_status == OverrideStatus.NONE
        assert revalidated.transaction.requires_override is False
        assert revalidated.transaction.violations == []

    @pytest.mark.asyncio
    async def test_approved_override_survives_revalidation(self, service):
        outcome = await service.validate_transaction(make_transaction([("EPHED", 1)]))
        result = await service.approve_override(outcome.transaction.id, "qa.officer", "Emergency supply")
        assert result.is_valid

        revalidated = await service.revalidate_transaction(outcome.transaction.id)
        assert not revalidated.result.is_valid
        assert revalidated.transaction.override_status == OverrideStatus.APPROVED
        assert revalidated.can_proceed

    @pytest.mark.asyncio
    async def test_revalidate_unknown_transaction(self, service):
        import uuid
        outcome = await service.revalidate_transaction(uuid.uuid4())
        assert codes(outcome) == [ErrorCodes.TRANSACTION_NOT_FOUND]
        assert outcome.transaction is None
        assert outcome.to_dict()["can_proceed"] is False
