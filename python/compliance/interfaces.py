"""
Narrow store interfaces the compliance engine depends on.

Each protocol covers one collaborator. The SQLAlchemy repositories in
``database.repositories`` satisfy them, and so do the in-memory stores used
by the test suite. All methods are coroutines, so a caller-side deadline
(``asyncio.wait_for``, task cancellation) aborts the engine at its next
store call.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Protocol, Sequence, Tuple

from database.models import (
    BusinessCategory,
    ControlledSubstance,
    Customer,
    HolderKey,
    HolderType,
    Licence,
    LicenceSubstanceMapping,
    LicenceType,
    ReclassificationCustomerImpact,
    ReclassificationStatus,
    SubstanceReclassification,
    Threshold,
    ThresholdType,
    Transaction,
)


class CustomerLookup(Protocol):
    async def get_by_holder_key(self, account: str, jurisdiction: str) -> Optional[Customer]:
        ...


class SubstanceLookup(Protocol):
    async def get_by_substance_code(self, code: str) -> Optional[ControlledSubstance]:
        ...

    async def update(self, substance: ControlledSubstance) -> ControlledSubstance:
        ...


class LicenceLookup(Protocol):
    async def get_by_holder(self, holder: HolderKey, holder_type: HolderType) -> List[Licence]:
        ...

    async def get_by_substance_code(self, code: str) -> List[Licence]:
        ...

    async def get_by_id(self, licence_id: uuid.UUID) -> Optional[Licence]:
        ...


class LicenceTypeLookup(Protocol):
    async def get_by_id(self, licence_type_id: uuid.UUID) -> Optional[LicenceType]:
        ...


class MappingLookup(Protocol):
    async def get_active_mappings_by_licence(
        self,
        licence_id: uuid.UUID,
        as_of: date
    ) -> List[LicenceSubstanceMapping]:
        ...


class ThresholdLookup(Protocol):
    async def get_applicable(
        self,
        substance_codes: Sequence[str],
        customer: HolderKey,
        category: Optional[BusinessCategory]
    ) -> List[Threshold]:
        ...

    async def get_by_type(self, threshold_type: ThresholdType) -> List[Threshold]:
        """Active thresholds of one type; effective-date filtering is left to the caller."""
        ...


class TransactionStore(Protocol):
    async def get_by_id(self, transaction_id: uuid.UUID) -> Optional[Transaction]:
        ...

    async def create(self, transaction: Transaction) -> Transaction:
        ...

    async def update(self, transaction: Transaction) -> Transaction:
        """Persist changes; raises ConcurrencyError on a stale row version."""
        ...

    async def get_pending_overrides(self) -> List[Transaction]:
        ...

    async def sum_substance_quantity(
        self,
        customer: HolderKey,
        substance_code: str,
        start: datetime,
        end: datetime,
        exclude_transaction_id: Optional[uuid.UUID] = None
    ) -> Decimal:
        """Total quantity of a substance on the customer's transactions in [start, end)."""
        ...

    async def count_transactions(
        self,
        customer: HolderKey,
        start: datetime,
        end: datetime,
        exclude_transaction_id: Optional[uuid.UUID] = None,
        substance_code: Optional[str] = None
    ) -> int:
        """Number of the customer's transactions in [start, end), optionally only those with a substance."""
        ...


class ReclassificationStore(Protocol):
    async def get_by_id(self, reclassification_id: uuid.UUID) -> Optional[SubstanceReclassification]:
        ...

    async def create(self, reclassification: SubstanceReclassification) -> SubstanceReclassification:
        ...

    async def update(self, reclassification: SubstanceReclassification) -> SubstanceReclassification:
        ...

    async def get_by_substance_code(self, code: str) -> List[SubstanceReclassification]:
        ...

    async def get_by_status(self, status: ReclassificationStatus) -> List[SubstanceReclassification]:
        ...

    async def get_effective_reclassification(
        self,
        code: str,
        as_of: date
    ) -> Optional[SubstanceReclassification]:
        """Latest Completed reclassification effective on or before ``as_of``."""
        ...

    async def get_customers_requiring_requalification(self) -> List[ReclassificationCustomerImpact]:
        ...

    async def get_impacts(self, reclassification_id: uuid.UUID) -> List[ReclassificationCustomerImpact]:
        ...

    async def get_impacts_for_customer(self, customer: HolderKey) -> List[ReclassificationCustomerImpact]:
        ...

    async def get_impact(
        self,
        reclassification_id: uuid.UUID,
        customer: HolderKey
    ) -> Optional[ReclassificationCustomerImpact]:
        ...

    async def add_impacts(
        self,
        impacts: List[ReclassificationCustomerImpact]
    ) -> List[ReclassificationCustomerImpact]:
        ...

    async def update_impact(self, impact: ReclassificationCustomerImpact) -> ReclassificationCustomerImpact:
        ...


class CustomerBlockCheck(Protocol):
    async def check_customer_blocked(
        self,
        customer: HolderKey
    ) -> Tuple[bool, List[ReclassificationCustomerImpact]]:
        """Whether open re-qualification impacts block the customer, and which."""
        ...
