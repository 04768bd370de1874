"""
Repository Pattern for Compliance Database Operations

Provides clean async data access layer with proper typing and error handling.
Each repository implements one of the lookup/store interfaces the compliance
engine depends on; ``ComplianceRepositories`` bundles them over one session.
"""

import logging
from typing import List, Optional, Dict, Any, Sequence
from uuid import UUID
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import select, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from database.models import (
    BusinessCategory,
    ControlledSubstance,
    Customer,
    HolderKey,
    HolderType,
    Licence,
    LicenceSubstanceMapping,
    LicenceType,
    OverrideStatus,
    ReclassificationCustomerImpact,
    ReclassificationStatus,
    SubstanceReclassification,
    Threshold,
    ThresholdScope,
    ThresholdType,
    Transaction,
    TransactionLine,
    ValidationStatus,
)
from compliance.exceptions import ConcurrencyError

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class EntityNotFoundError(RepositoryError):
    """Raised when an entity is not found."""
    pass


class DuplicateEntityError(RepositoryError):
    """Raised when attempting to create a duplicate entity."""
    pass


class InvalidEntityError(RepositoryError):
    """Raised when entity data fails a consistency check."""
    pass


# ============================================
# CUSTOMER REPOSITORY
# ============================================

class CustomerRepository:
    """Repository for customer compliance extensions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_holder_key(self, account: str, jurisdiction: str) -> Optional[Customer]:
        """
        Get customer by its composite key.

        Args:
            account: Customer account number
            jurisdiction: Jurisdiction of the account

        Returns:
            Customer or None
        """
        return await self.session.get(Customer, (account, jurisdiction))

    async def create(self, customer_data: Dict[str, Any]) -> Customer:
        """
        Create a customer compliance extension.

        Raises:
            DuplicateEntityError: If the account/jurisdiction pair exists
        """
        existing = await self.get_by_holder_key(
            customer_data.get('customer_account'), customer_data.get('jurisdiction')
        )
        if existing is not None:
            raise DuplicateEntityError(f"Customer already exists: {existing.holder_key}")

        customer = Customer(**customer_data)
        self.session.add(customer)
        await self.session.flush()
        logger.debug(f"Created customer: {customer.holder_key}")
        return customer

    async def update(self, customer: Customer) -> Customer:
        await self.session.flush()
        return customer

    async def list_by_category(self, category: BusinessCategory) -> List[Customer]:
        query = select(Customer).where(Customer.business_category == category).order_by(Customer.business_name)
        result = await self.session.execute(query)
        return list(result.scalars().all())


# ============================================
# SUBSTANCE REPOSITORY
# ============================================

class ControlledSubstanceRepository:
    """Repository for controlled substances."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_substance_code(self, code: str) -> Optional[ControlledSubstance]:
        return await self.session.get(ControlledSubstance, code)

    async def create(self, substance_data: Dict[str, Any]) -> ControlledSubstance:
        """
        Create a controlled substance.

        Raises:
            DuplicateEntityError: If the substance code exists
        """
        if await self.get_by_substance_code(substance_data.get('substance_code')) is not None:
            raise DuplicateEntityError(
                f"Substance with code '{substance_data.get('substance_code')}' already exists"
            )
        substance = ControlledSubstance(**substance_data)
        self.session.add(substance)
        await self.session.flush()
        return substance

    async def update(self, substance: ControlledSubstance) -> ControlledSubstance:
        await self.session.flush()
        logger.debug(f"Updated substance classification: {substance}")
        return substance

    async def list_active(self) -> List[ControlledSubstance]:
        query = select(ControlledSubstance).where(
            ControlledSubstance.is_active == True
        ).order_by(ControlledSubstance.substance_code)
        result = await self.session.execute(query)
        return list(result.scalars().all())


# ============================================
# LICENCE REPOSITORIES
# ============================================

class LicenceTypeRepository:
    """Repository for licence types."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, licence_type_id: UUID) -> Optional[LicenceType]:
        return await self.session.get(LicenceType, licence_type_id)

    async def get_by_name(self, name: str) -> Optional[LicenceType]:
        result = await self.session.execute(select(LicenceType).where(LicenceType.name == name))
        return result.scalar_one_or_none()

    async def create(self, type_data: Dict[str, Any]) -> LicenceType:
        """
        Create a licence type.

        Raises:
            DuplicateEntityError: If a type with the same name exists
        """
        try:
            licence_type = LicenceType(**type_data)
            self.session.add(licence_type)
            await self.session.flush()
            return licence_type
        except IntegrityError as e:
            await self.session.rollback()
            raise DuplicateEntityError(f"Licence type already exists: {e}")


class LicenceRepository:
    """Repository for licences."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, licence_id: UUID) -> Optional[Licence]:
        return await self.session.get(Licence, licence_id)

    async def get_by_number(self, licence_number: str) -> Optional[Licence]:
        result = await self.session.execute(
            select(Licence).where(Licence.licence_number == licence_number)
        )
        return result.scalar_one_or_none()

    async def get_by_holder(self, holder: HolderKey, holder_type: HolderType) -> List[Licence]:
        """
        Get all licences of a holder.

        Args:
            holder: Holder composite key
            holder_type: Customer or Company

        Returns:
            Licences ordered by licence number
        """
        query = select(Licence).where(
            and_(
                Licence.holder_type == holder_type,
                Licence.holder_account == holder.account,
                Licence.holder_jurisdiction == holder.jurisdiction,
            )
        ).order_by(Licence.licence_number)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_by_substance_code(self, code: str) -> List[Licence]:
        """Licences with any mapping for the substance."""
        query = select(Licence).join(
            LicenceSubstanceMapping,
            LicenceSubstanceMapping.licence_id == Licence.id
        ).where(
            LicenceSubstanceMapping.substance_code == code
        ).distinct().order_by(Licence.licence_number)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def create(self, licence_data: Dict[str, Any]) -> Licence:
        """
        Create a licence.

        Raises:
            DuplicateEntityError: If the licence number exists
            InvalidEntityError: If the expiry date precedes the issue date
        """
        number = licence_data.get('licence_number')
        if await self.get_by_number(number) is not None:
            raise DuplicateEntityError(f"Licence with number '{number}' already exists")

        issue_date = licence_data.get('issue_date')
        expiry_date = licence_data.get('expiry_date')
        if issue_date and expiry_date and expiry_date < issue_date:
            raise InvalidEntityError(
                f"Licence '{number}' expiry date {expiry_date} is before issue date {issue_date}"
            )

        licence = Licence(**licence_data)
        self.session.add(licence)
        await self.session.flush()
        logger.debug(f"Created licence: {licence.licence_number}")
        return licence

    async def update(self, licence_id: UUID, updates: Dict[str, Any]) -> Licence:
        """
        Update a licence.

        Raises:
            EntityNotFoundError: If licence not found
        """
        licence = await self.get_by_id(licence_id)
        if not licence:
            raise EntityNotFoundError(f"Licence not found: {licence_id}")

        # Increment version for optimistic locking
        updates['version'] = licence.version + 1

        for key, value in updates.items():
            if hasattr(licence, key):
                setattr(licence, key, value)

        await self.session.flush()
        return licence


class LicenceSubstanceMappingRepository:
    """Repository for licence/substance mappings."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_licence(self, licence_id: UUID) -> List[LicenceSubstanceMapping]:
        query = select(LicenceSubstanceMapping).where(
            LicenceSubstanceMapping.licence_id == licence_id
        ).order_by(LicenceSubstanceMapping.substance_code, LicenceSubstanceMapping.effective_date)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_active_mappings_by_licence(
        self,
        licence_id: UUID,
        as_of: date
    ) -> List[LicenceSubstanceMapping]:
        """
        Mappings of a licence active on a date (both ends inclusive).

        Args:
            licence_id: Licence UUID
            as_of: Date of the check

        Returns:
            Active mappings
        """
        query = select(LicenceSubstanceMapping).where(
            and_(
                LicenceSubstanceMapping.licence_id == licence_id,
                LicenceSubstanceMapping.effective_date <= as_of,
                or_(
                    LicenceSubstanceMapping.expiry_date.is_(None),
                    LicenceSubstanceMapping.expiry_date >= as_of
                )
            )
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def create(self, mapping_data: Dict[str, Any]) -> LicenceSubstanceMapping:
        """
        Create a mapping.

        Raises:
            DuplicateEntityError: If the licence already maps the substance from that date
            InvalidEntityError: If the expiry date precedes the effective date
        """
        effective = mapping_data.get('effective_date')
        expiry = mapping_data.get('expiry_date')
        if effective and expiry and expiry < effective:
            raise InvalidEntityError(
                f"Mapping expiry date {expiry} is before effective date {effective}"
            )

        query = select(func.count()).select_from(LicenceSubstanceMapping).where(
            and_(
                LicenceSubstanceMapping.licence_id == mapping_data.get('licence_id'),
                LicenceSubstanceMapping.substance_code == mapping_data.get('substance_code'),
                LicenceSubstanceMapping.effective_date == effective,
            )
        )
        if (await self.session.execute(query)).scalar_one():
            raise DuplicateEntityError(
                f"Licence already maps substance '{mapping_data.get('substance_code')}' from {effective}"
            )

        mapping = LicenceSubstanceMapping(**mapping_data)
        self.session.add(mapping)
        await self.session.flush()
        return mapping


# ============================================
# THRESHOLD REPOSITORY
# ============================================

class ThresholdRepository:
    """Repository for quantity and frequency thresholds."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, threshold_data: Dict[str, Any]) -> Threshold:
        threshold = Threshold(**threshold_data)
        self.session.add(threshold)
        await self.session.flush()
        return threshold

    async def get_applicable(
        self,
        substance_codes: Sequence[str],
        customer: HolderKey,
        category: Optional[BusinessCategory]
    ) -> List[Threshold]:
        """
        Active thresholds that may apply to the given substances and customer.

        Effective-date filtering is left to the caller.
        """
        scope_filters = [
            Threshold.scope == ThresholdScope.GLOBAL,
            and_(
                Threshold.scope == ThresholdScope.SUBSTANCE,
                Threshold.substance_code.in_(list(substance_codes))
            ),
        ]
        if category is not None:
            scope_filters.append(
                and_(
                    Threshold.scope == ThresholdScope.CATEGORY,
                    Threshold.customer_category == category
                )
            )

        query = select(Threshold).where(
            and_(
                Threshold.is_active == True,
                Threshold.threshold_type == ThresholdType.QUANTITY,
                or_(*scope_filters)
            )
        )
        result = await self.session.execute(query)
        thresholds = list(result.scalars().all())
        logger.debug(f"{len(thresholds)} threshold(s) applicable for {customer}")
        return thresholds

    async def get_by_type(self, threshold_type: ThresholdType) -> List[Threshold]:
        query = select(Threshold).where(
            and_(Threshold.threshold_type == threshold_type, Threshold.is_active == True)
        ).order_by(Threshold.name)
        result = await self.session.execute(query)
        return list(result.scalars().all())


# ============================================
# TRANSACTION REPOSITORY
# ============================================

class TransactionRepository:
    """Repository for transactions and their validation records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, transaction_id: UUID) -> Optional[Transaction]:
        return await self.session.get(Transaction, transaction_id)

    async def get_by_external_id(self, external_id: str) -> Optional[Transaction]:
        result = await self.session.execute(
            select(Transaction).where(Transaction.external_id == external_id)
        )
        return result.scalar_one_or_none()

    async def create(self, transaction: Transaction) -> Transaction:
        """
        Persist a new transaction with its lines.

        Raises:
            DuplicateEntityError: If the external id exists
        """
        try:
            self.session.add(transaction)
            await self.session.flush()
            logger.debug(f"Created transaction: {transaction.id} ({transaction.external_id})")
            return transaction
        except IntegrityError as e:
            await self.session.rollback()
            raise DuplicateEntityError(f"Transaction already exists: {e}")

    async def update(self, transaction: Transaction) -> Transaction:
        """
        Flush changes to a transaction.

        Raises:
            ConcurrencyError: If the row version changed since it was read
        """
        try:
            await self.session.flush()
            return transaction
        except StaleDataError as e:
            await self.session.rollback()
            raise ConcurrencyError(f"Transaction {transaction.id} was modified concurrently") from e

    async def get_pending_overrides(self) -> List[Transaction]:
        query = select(Transaction).where(
            Transaction.override_status == OverrideStatus.PENDING
        ).order_by(Transaction.transaction_date)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def sum_substance_quantity(
        self,
        customer: HolderKey,
        substance_code: str,
        start: datetime,
        end: datetime,
        exclude_transaction_id: Optional[UUID] = None
    ) -> Decimal:
        """
        Total quantity of a substance on the customer's transactions in [start, end).

        Only transactions that passed or had their override approved count.
        """
        conditions = [
            Transaction.customer_account == customer.account,
            Transaction.customer_jurisdiction == customer.jurisdiction,
            Transaction.transaction_date >= start,
            Transaction.transaction_date < end,
            TransactionLine.substance_code == substance_code,
            or_(
                Transaction.validation_status == ValidationStatus.PASSED,
                Transaction.override_status == OverrideStatus.APPROVED
            ),
        ]
        if exclude_transaction_id is not None:
            conditions.append(Transaction.id != exclude_transaction_id)

        query = select(
            func.coalesce(func.sum(TransactionLine.quantity), 0)
        ).select_from(TransactionLine).join(
            Transaction, TransactionLine.transaction_id == Transaction.id
        ).where(and_(*conditions))

        total = (await self.session.execute(query)).scalar_one()
        return Decimal(str(total))

    async def count_transactions(
        self,
        customer: HolderKey,
        start: datetime,
        end: datetime,
        exclude_transaction_id: Optional[UUID] = None,
        substance_code: Optional[str] = None
    ) -> int:
        """
        Number of the customer's transactions in [start, end).

        Counts the same transactions as sum_substance_quantity; with a
        substance code only transactions carrying a line of it count.
        """
        conditions = [
            Transaction.customer_account == customer.account,
            Transaction.customer_jurisdiction == customer.jurisdiction,
            Transaction.transaction_date >= start,
            Transaction.transaction_date < end,
            or_(
                Transaction.validation_status == ValidationStatus.PASSED,
                Transaction.override_status == OverrideStatus.APPROVED
            ),
        ]
        if exclude_transaction_id is not None:
            conditions.append(Transaction.id != exclude_transaction_id)

        query = select(func.count(func.distinct(Transaction.id))).select_from(Transaction)
        if substance_code is not None:
            query = query.join(TransactionLine, TransactionLine.transaction_id == Transaction.id)
            conditions.append(TransactionLine.substance_code == substance_code)

        return (await self.session.execute(query.where(and_(*conditions)))).scalar_one()


# ============================================
# RECLASSIFICATION REPOSITORY
# ============================================

class ReclassificationRepository:
    """Repository for substance reclassifications and their customer impacts."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, reclassification_id: UUID) -> Optional[SubstanceReclassification]:
        return await self.session.get(SubstanceReclassification, reclassification_id)

    async def create(self, reclassification: SubstanceReclassification) -> SubstanceReclassification:
        self.session.add(reclassification)
        await self.session.flush()
        logger.debug(f"Created reclassification: {reclassification.id}")
        return reclassification

    async def update(self, reclassification: SubstanceReclassification) -> SubstanceReclassification:
        reclassification.version = (reclassification.version or 0) + 1
        await self.session.flush()
        return reclassification

    async def get_by_substance_code(self, code: str) -> List[SubstanceReclassification]:
        query = select(SubstanceReclassification).where(
            SubstanceReclassification.substance_code == code
        ).order_by(SubstanceReclassification.effective_date, SubstanceReclassification.created_at)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_by_status(self, status: ReclassificationStatus) -> List[SubstanceReclassification]:
        query = select(SubstanceReclassification).where(
            SubstanceReclassification.status == status
        ).order_by(SubstanceReclassification.effective_date)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_effective_reclassification(
        self,
        code: str,
        as_of: date
    ) -> Optional[SubstanceReclassification]:
        """Latest Completed reclassification effective on or before ``as_of``."""
        query = select(SubstanceReclassification).where(
            and_(
                SubstanceReclassification.substance_code == code,
                SubstanceReclassification.status == ReclassificationStatus.COMPLETED,
                SubstanceReclassification.effective_date <= as_of
            )
        ).order_by(
            SubstanceReclassification.effective_date.desc(),
            SubstanceReclassification.created_at.desc()
        ).limit(1)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_customers_requiring_requalification(self) -> List[ReclassificationCustomerImpact]:
        query = select(ReclassificationCustomerImpact).where(
            and_(
                ReclassificationCustomerImpact.requires_requalification == True,
                ReclassificationCustomerImpact.requalification_date.is_(None)
            )
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_impacts(self, reclassification_id: UUID) -> List[ReclassificationCustomerImpact]:
        query = select(ReclassificationCustomerImpact).where(
            ReclassificationCustomerImpact.reclassification_id == reclassification_id
        ).order_by(
            ReclassificationCustomerImpact.customer_account,
            ReclassificationCustomerImpact.customer_jurisdiction
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_impacts_for_customer(self, customer: HolderKey) -> List[ReclassificationCustomerImpact]:
        query = select(ReclassificationCustomerImpact).where(
            and_(
                ReclassificationCustomerImpact.customer_account == customer.account,
                ReclassificationCustomerImpact.customer_jurisdiction == customer.jurisdiction
            )
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_impact(
        self,
        reclassification_id: UUID,
        customer: HolderKey
    ) -> Optional[ReclassificationCustomerImpact]:
        query = select(ReclassificationCustomerImpact).where(
            and_(
                ReclassificationCustomerImpact.reclassification_id == reclassification_id,
                ReclassificationCustomerImpact.customer_account == customer.account,
                ReclassificationCustomerImpact.customer_jurisdiction == customer.jurisdiction
            )
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def add_impacts(
        self,
        impacts: List[ReclassificationCustomerImpact]
    ) -> List[ReclassificationCustomerImpact]:
        """
        Store impact rows in one flush.

        Raises:
            DuplicateEntityError: If a customer already has an impact row
        """
        try:
            self.session.add_all(impacts)
            await self.session.flush()
            return impacts
        except IntegrityError as e:
            await self.session.rollback()
            raise DuplicateEntityError(f"Customer impact already recorded: {e}")

    async def update_impact(self, impact: ReclassificationCustomerImpact) -> ReclassificationCustomerImpact:
        await self.session.flush()
        return impact


# ============================================
# REPOSITORY BUNDLE
# ============================================

class ComplianceRepositories:
    """All compliance repositories bound to one session."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.customers = CustomerRepository(session)
        self.substances = ControlledSubstanceRepository(session)
        self.licence_types = LicenceTypeRepository(session)
        self.licences = LicenceRepository(session)
        self.mappings = LicenceSubstanceMappingRepository(session)
        self.thresholds = ThresholdRepository(session)
        self.transactions = TransactionRepository(session)
        self.reclassifications = ReclassificationRepository(session)
