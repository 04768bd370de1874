"""
In-memory stores and fixtures data for compliance engine tests.

The stores implement the same interfaces as database.repositories, keep
ORM instances in plain dicts, and emulate the row version check of the
transaction table so concurrency paths can be exercised without a database.
"""

import sys
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

sys.path.insert(0, str(Path(__file__).parent.parent))

from compliance.classification import select_effective_reclassification
from compliance.exceptions import ConcurrencyError
from database.models import (
    ApprovalStatus,
    BusinessCategory,
    ControlledSubstance,
    Customer,
    GdpQualificationStatus,
    HolderKey,
    HolderType,
    Licence,
    LicenceStatus,
    LicenceSubstanceMapping,
    LicenceType,
    OpiumActList,
    OverrideStatus,
    PermittedActivity,
    PrecursorCategory,
    ReclassificationStatus,
    SubstanceReclassification,
    Threshold,
    ThresholdScope,
    ThresholdType,
    Transaction,
    TransactionLine,
    TransactionType,
    ValidationStatus,
)
from database.repositories import DuplicateEntityError


TRANSACTION_DATE = datetime(2026, 3, 15, 10, 0, tzinfo=timezone.utc)

WHOLESALE_ACTIVITIES = PermittedActivity.POSSESS | PermittedActivity.STORE | PermittedActivity.DISTRIBUTE


class InMemoryCustomers:
    def __init__(self):
        self.items: Dict[HolderKey, Customer] = {}

    def add(self, customer: Customer) -> Customer:
        self.items[customer.holder_key] = customer
        return customer

    async def get_by_holder_key(self, account, jurisdiction):
        return self.items.get(HolderKey(account, jurisdiction))


class InMemorySubstances:
    def __init__(self):
        self.items: Dict[str, ControlledSubstance] = {}
        self.update_count = 0

    def add(self, substance: ControlledSubstance) -> ControlledSubstance:
        self.items[substance.substance_code] = substance
        return substance

    async def get_by_substance_code(self, code):
        return self.items.get(code)

    async def update(self, substance):
        self.update_count += 1
        return substance


class InMemoryLicenceTypes:
    def __init__(self):
        self.items: Dict[uuid.UUID, LicenceType] = {}

    def add(self, licence_type: LicenceType) -> LicenceType:
        self.items[licence_type.id] = licence_type
        return licence_type

    async def get_by_id(self, licence_type_id):
        return self.items.get(licence_type_id)


class InMemoryMappings:
    def __init__(self):
        self.items: List[LicenceSubstanceMapping] = []

    def add(self, mapping: LicenceSubstanceMapping) -> LicenceSubstanceMapping:
        self.items.append(mapping)
        return mapping

    async def get_active_mappings_by_licence(self, licence_id, as_of):
        return [m for m in self.items if m.licence_id == licence_id and m.is_active(as_of)]


class InMemoryLicences:
    def __init__(self, mappings: InMemoryMappings):
        self.items: Dict[uuid.UUID, Licence] = {}
        self._mappings = mappings

    def add(self, licence: Licence) -> Licence:
        self.items[licence.id] = licence
        return licence

    async def get_by_id(self, licence_id):
        return self.items.get(licence_id)

    async def get_by_holder(self, holder, holder_type):
        return sorted(
            (
                licence for licence in self.items.values()
                if licence.holder_key == holder and licence.holder_type == holder_type
            ),
            key=lambda licence: licence.licence_number,
        )

    async def get_by_substance_code(self, code):
        ids = {m.licence_id for m in self._mappings.items if m.substance_code == code}
        return sorted(
            (self.items[i] for i in ids if i in self.items),
            key=lambda licence: licence.licence_number,
        )


class InMemoryThresholds:
    def __init__(self):
        self.items: List[Threshold] = []

    def add(self, threshold: Threshold) -> Threshold:
        self.items.append(threshold)
        return threshold

    async def get_applicable(self, substance_codes, customer, category):
        result = []
        for threshold in self.items:
            if not threshold.is_active or threshold.threshold_type != ThresholdType.QUANTITY:
                continue
            if threshold.scope == ThresholdScope.GLOBAL:
                result.append(threshold)
            elif threshold.scope == ThresholdScope.SUBSTANCE and threshold.substance_code in substance_codes:
                result.append(threshold)
            elif threshold.scope == ThresholdScope.CATEGORY and category is not None \
                    and threshold.customer_category == category:
                result.append(threshold)
        return result

    async def get_by_type(self, threshold_type):
        return [t for t in self.items if t.threshold_type == threshold_type and t.is_active]


class InMemoryTransactions:
    """Transaction store with an emulated row version check."""

    def __init__(self):
        self.items: Dict[uuid.UUID, Transaction] = {}
        self._committed_versions: Dict[uuid.UUID, int] = {}

    def add(self, transaction: Transaction) -> Transaction:
        transaction.version = 1
        self.items[transaction.id] = transaction
        self._committed_versions[transaction.id] = 1
        return transaction

    def simulate_concurrent_write(self, transaction_id: uuid.UUID) -> None:
        """Another writer committed a change since the row was read."""
        self._committed_versions[transaction_id] += 1

    async def get_by_id(self, transaction_id):
        return self.items.get(transaction_id)

    async def create(self, transaction):
        if any(t.external_id == transaction.external_id for t in self.items.values()):
            raise DuplicateEntityError(f"Transaction already exists: {transaction.external_id}")
        return self.add(transaction)

    async def update(self, transaction):
        if self._committed_versions[transaction.id] != transaction.version:
            raise ConcurrencyError(f"Transaction {transaction.id} was modified concurrently")
        transaction.version += 1
        self._committed_versions[transaction.id] = transaction.version
        return transaction

    async def get_pending_overrides(self):
        return sorted(
            (t for t in self.items.values() if t.override_status == OverrideStatus.PENDING),
            key=lambda t: t.transaction_date,
        )

    def _counted(self, customer, start, end, exclude_transaction_id):
        for transaction in self.items.values():
            if transaction.id == exclude_transaction_id or transaction.customer_key != customer:
                continue
            if not start <= transaction.transaction_date < end:
                continue
            if transaction.validation_status != ValidationStatus.PASSED \
                    and transaction.override_status != OverrideStatus.APPROVED:
                continue
            yield transaction

    async def sum_substance_quantity(self, customer, substance_code, start, end, exclude_transaction_id=None):
        total = Decimal("0")
        for transaction in self._counted(customer, start, end, exclude_transaction_id):
            total += sum(
                (Decimal(line.quantity) for line in transaction.lines if line.substance_code == substance_code),
                Decimal("0"),
            )
        return total

    async def count_transactions(self, customer, start, end, exclude_transaction_id=None, substance_code=None):
        return sum(
            1 for transaction in self._counted(customer, start, end, exclude_transaction_id)
            if substance_code is None or any(line.substance_code == substance_code for line in transaction.lines)
        )


class InMemoryReclassifications:
    def __init__(self):
        self.items: Dict[uuid.UUID, SubstanceReclassification] = {}
        self.impacts: List = []

    async def get_by_id(self, reclassification_id):
        return self.items.get(reclassification_id)

    async def create(self, reclassification):
        self.items[reclassification.id] = reclassification
        return reclassification

    async def update(self, reclassification):
        reclassification.version = (reclassification.version or 0) + 1
        return reclassification

    async def get_by_substance_code(self, code):
        return sorted(
            (r for r in self.items.values() if r.substance_code == code),
            key=lambda r: (r.effective_date, r.created_at),
        )

    async def get_by_status(self, status):
        return [r for r in self.items.values() if r.status == status]

    async def get_effective_reclassification(self, code, as_of):
        return select_effective_reclassification(
            [r for r in self.items.values() if r.substance_code == code], as_of
        )

    async def get_customers_requiring_requalification(self):
        return [i for i in self.impacts if i.requires_requalification and i.requalification_date is None]

    async def get_impacts(self, reclassification_id):
        return [i for i in self.impacts if i.reclassification_id == reclassification_id]

    async def get_impacts_for_customer(self, customer):
        return [i for i in self.impacts if i.customer_key == customer]

    async def get_impact(self, reclassification_id, customer):
        for impact in self.impacts:
            if impact.reclassification_id == reclassification_id and impact.customer_key == customer:
                return impact
        return None

    async def add_impacts(self, impacts):
        self.impacts.extend(impacts)
        return impacts

    async def update_impact(self, impact):
        return impact


class InMemoryStores:
    """Store bundle accepted by ComplianceService."""

    def __init__(self):
        self.customers = InMemoryCustomers()
        self.substances = InMemorySubstances()
        self.licence_types = InMemoryLicenceTypes()
        self.mappings = InMemoryMappings()
        self.licences = InMemoryLicences(self.mappings)
        self.thresholds = InMemoryThresholds()
        self.transactions = InMemoryTransactions()
        self.reclassifications = InMemoryReclassifications()


# ============================================
# BUILDERS
# ============================================

def make_customer(account="C-1001", jurisdiction="NL", **overrides) -> Customer:
    data = dict(
        customer_account=account,
        jurisdiction=jurisdiction,
        business_name=f"Customer {account}",
        business_category=BusinessCategory.HOSPITAL_PHARMACY,
        approval_status=ApprovalStatus.APPROVED,
        gdp_qualification_status=GdpQualificationStatus.APPROVED,
    )
    data.update(overrides)
    return Customer(**data)


def make_licence_type(name="Opium Act Exemption", activities=WHOLESALE_ACTIVITIES) -> LicenceType:
    return LicenceType(name=name, issuing_authority="Farmatec", permitted_activities=int(activities))


def make_licence(licence_type: LicenceType, number="OW-1001", account="C-1001", jurisdiction="NL",
                 **overrides) -> Licence:
    data = dict(
        licence_number=number,
        licence_type_id=licence_type.id,
        holder_type=HolderType.CUSTOMER,
        holder_account=account,
        holder_jurisdiction=jurisdiction,
        issuing_authority="Farmatec",
        issue_date=date(2024, 1, 1),
        expiry_date=date(2030, 12, 31),
        status=LicenceStatus.VALID,
    )
    data.update(overrides)
    return Licence(**data)


def make_mapping(licence: Licence, substance_code: str, effective=date(2024, 1, 1), expiry=None):
    return LicenceSubstanceMapping(
        licence_id=licence.id,
        substance_code=substance_code,
        effective_date=effective,
        expiry_date=expiry,
    )


def make_transaction(lines, account="C-1001", jurisdiction="NL", external_id=None,
                     transaction_date=TRANSACTION_DATE, **overrides) -> Transaction:
    """Build a transaction from (substance_code, quantity) pairs."""
    data = dict(
        external_id=external_id or f"ERP-{uuid.uuid4().hex[:8]}",
        customer_account=account,
        customer_jurisdiction=jurisdiction,
        transaction_type=TransactionType.ORDER,
        transaction_date=transaction_date,
        lines=[
            TransactionLine(line_number=number, substance_code=code, quantity=Decimal(str(quantity)))
            for number, (code, quantity) in enumerate(lines, start=1)
        ],
    )
    data.update(overrides)
    return Transaction(**data)


def make_reclassification(substance_code="DIAZ", previous=OpiumActList.LIST_II, new=OpiumActList.LIST_I,
                          previous_precursor=PrecursorCategory.NONE, new_precursor=PrecursorCategory.NONE,
                          effective=date(2026, 1, 1), **overrides) -> SubstanceReclassification:
    data = dict(
        substance_code=substance_code,
        previous_opium_act_list=previous,
        new_opium_act_list=new,
        previous_precursor_category=previous_precursor,
        new_precursor_category=new_precursor,
        effective_date=effective,
        regulatory_reference="Stcrt. 2025-12345",
        regulatory_authority="Ministry of Health",
        status=ReclassificationStatus.PENDING,
    )
    data.update(overrides)
    return SubstanceReclassification(**data)


def build_world() -> InMemoryStores:
    """
    Standard data set.

    - C-1001@NL: approved hospital pharmacy holding OW-1001 (possess, store,
      distribute) for MORPH and DIAZ
    - C-2001@NL: approved EU wholesaler holding WDA-2001 (distribute only)
      for DIAZ
    - Substances MORPH (List I), DIAZ (List II), EPHED (precursor Category 2)
    - COMPANY@NL: the company itself, holding import/export permit IE-0001
    """
    stores = InMemoryStores()

    stores.substances.add(ControlledSubstance(
        substance_code="MORPH", substance_name="Morphine", opium_act_list=OpiumActList.LIST_I
    ))
    stores.substances.add(ControlledSubstance(
        substance_code="DIAZ", substance_name="Diazepam", opium_act_list=OpiumActList.LIST_II
    ))
    stores.substances.add(ControlledSubstance(
        substance_code="EPHED", substance_name="Ephedrine", precursor_category=PrecursorCategory.CATEGORY_2
    ))

    exemption = stores.licence_types.add(make_licence_type())
    wholesale = stores.licence_types.add(
        make_licence_type(name="Wholesale Distribution Authorisation", activities=PermittedActivity.DISTRIBUTE)
    )

    stores.customers.add(make_customer("C-1001"))
    licence = stores.licences.add(make_licence(exemption, "OW-1001", "C-1001"))
    stores.mappings.add(make_mapping(licence, "MORPH"))
    stores.mappings.add(make_mapping(licence, "DIAZ"))

    stores.customers.add(make_customer("C-2001", business_category=BusinessCategory.WHOLESALER_EU))
    wda = stores.licences.add(make_licence(wholesale, "WDA-2001", "C-2001", expiry_date=None))
    stores.mappings.add(make_mapping(wda, "DIAZ"))

    permit = stores.licence_types.add(make_licence_type(
        name="Import/Export Permit", activities=PermittedActivity.IMPORT | PermittedActivity.EXPORT
    ))
    stores.licences.add(make_licence(permit, "IE-0001", "COMPANY", holder_type=HolderType.COMPANY))

    return stores


def licence_by_number(stores: InMemoryStores, number: str) -> Optional[Licence]:
    for licence in stores.licences.items.values():
        if licence.licence_number == number:
            return licence
    return None
