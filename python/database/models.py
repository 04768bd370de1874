"""
SQLAlchemy ORM Models for the Controlled Substance Compliance Engine

This module defines the database schema for licence, customer, substance,
threshold, transaction and reclassification data:
- Composite natural key for customers (account + jurisdiction)
- UUID primary keys for everything else
- Check constraints for date windows and classification rules
- Row versions for optimistic concurrency
- Timestamps for all mutable records (created_at, updated_at)

Tables:
1. customers - Compliance extension of customer master data
2. licence_types - Licence categories and the activities they permit
3. licences - Licences held by customers or by the company
4. licence_substance_mappings - Substances authorized by a licence over a date window
5. controlled_substances - Substance master with Opium Act / precursor classification
6. substance_reclassifications - Regulatory classification changes
7. reclassification_customer_impacts - Per-customer impact ledger of a reclassification
8. thresholds - Quantity limits (substance, category or global scope)
9. transactions - Validated orders, shipments, returns and transfers
10. transaction_lines - Substance quantities per transaction
11. transaction_violations - Violations recorded at validation time
12. transaction_licence_usages - Licences that covered transaction lines
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum, IntFlag
from typing import List, Optional

from sqlalchemy import (
    String, Integer, Boolean, Date, DateTime, Text, Numeric,
    ForeignKey, Index, CheckConstraint, UniqueConstraint, Enum,
    JSON, Uuid
)
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column
from sqlalchemy.sql import func


def _constructor_with_defaults(self, **kwargs):
    """Declarative constructor that also applies Python-side column defaults.

    Transient instances (in-memory stores, freshly built transactions) then
    carry the same defaults a flush would assign.
    """
    cls = type(self)
    for column in cls.__table__.columns:
        if column.key in kwargs or column.default is None:
            continue
        if column.default.is_scalar:
            kwargs[column.key] = column.default.arg
        elif column.default.is_callable:
            kwargs[column.key] = column.default.arg(None)
    for key, value in kwargs.items():
        if not hasattr(cls, key):
            raise TypeError(f"{key!r} is an invalid keyword argument for {cls.__name__}")
        setattr(self, key, value)


# Base class for all models
Base = declarative_base(constructor=_constructor_with_defaults)


# ============================================
# ENUMS
# ============================================

class ApprovalStatus(str, PyEnum):
    """Customer approval status"""
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class GdpQualificationStatus(str, PyEnum):
    """Good Distribution Practice qualification of a customer"""
    NOT_REQUIRED = "NotRequired"
    PENDING = "Pending"
    APPROVED = "Approved"
    CONDITIONALLY_APPROVED = "ConditionallyApproved"
    REJECTED = "Rejected"
    EXPIRED = "Expired"


class BusinessCategory(str, PyEnum):
    """Business category of a customer"""
    HOSPITAL_PHARMACY = "HospitalPharmacy"
    COMMUNITY_PHARMACY = "CommunityPharmacy"
    VETERINARIAN = "Veterinarian"
    MANUFACTURER = "Manufacturer"
    WHOLESALER_EU = "WholesalerEU"
    WHOLESALER_NON_EU = "WholesalerNonEU"
    RESEARCH_INSTITUTION = "ResearchInstitution"


class HolderType(str, PyEnum):
    """Who holds a licence"""
    CUSTOMER = "Customer"
    COMPANY = "Company"


class LicenceStatus(str, PyEnum):
    """Status of a licence"""
    VALID = "Valid"
    EXPIRED = "Expired"
    SUSPENDED = "Suspended"
    REVOKED = "Revoked"


class PermittedActivity(IntFlag):
    """Activities a licence permits (stored as an integer bit set)"""
    NONE = 0
    POSSESS = 1
    STORE = 2
    DISTRIBUTE = 4
    IMPORT = 8
    EXPORT = 16
    MANUFACTURE = 32
    HANDLE_PRECURSORS = 64


class OpiumActList(str, PyEnum):
    """Opium Act schedule"""
    NONE = "None"
    LIST_I = "ListI"
    LIST_II = "ListII"

    @property
    def severity(self) -> int:
        """Regulatory strictness; List I is stricter than List II."""
        return _OPIUM_SEVERITY[self]


class PrecursorCategory(str, PyEnum):
    """EU drug precursor category"""
    NONE = "None"
    CATEGORY_1 = "Category1"
    CATEGORY_2 = "Category2"
    CATEGORY_3 = "Category3"

    @property
    def severity(self) -> int:
        """Regulatory strictness; Category 1 is the strictest."""
        return _PRECURSOR_SEVERITY[self]


_OPIUM_SEVERITY = {
    OpiumActList.NONE: 0,
    OpiumActList.LIST_II: 1,
    OpiumActList.LIST_I: 2,
}

_PRECURSOR_SEVERITY = {
    PrecursorCategory.NONE: 0,
    PrecursorCategory.CATEGORY_3: 1,
    PrecursorCategory.CATEGORY_2: 2,
    PrecursorCategory.CATEGORY_1: 3,
}


class ReclassificationStatus(str, PyEnum):
    """Lifecycle of a substance reclassification"""
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class ThresholdScope(str, PyEnum):
    """What a threshold applies to, most specific first"""
    SUBSTANCE = "Substance"
    CATEGORY = "Category"
    GLOBAL = "Global"


class ThresholdType(str, PyEnum):
    """What a threshold limits"""
    QUANTITY = "Quantity"
    FREQUENCY = "Frequency"


class ThresholdPeriod(str, PyEnum):
    """Accumulation window for per-period limits"""
    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"
    YEARLY = "Yearly"


class TransactionType(str, PyEnum):
    """Type of transaction"""
    ORDER = "Order"
    SHIPMENT = "Shipment"
    RETURN = "Return"
    TRANSFER = "Transfer"


class TransactionDirection(str, PyEnum):
    """Direction of goods flow"""
    INTERNAL = "Internal"
    INBOUND = "Inbound"
    OUTBOUND = "Outbound"


class ValidationStatus(str, PyEnum):
    """Outcome of transaction validation"""
    PENDING = "Pending"
    PASSED = "Passed"
    FAILED = "Failed"


class OverrideStatus(str, PyEnum):
    """Override decision for a failed transaction"""
    NONE = "None"
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class ViolationSeverity(str, PyEnum):
    """Severity of a validation finding"""
    ERROR = "Error"
    WARNING = "Warning"


# ============================================
# VALUE TYPES
# ============================================

@dataclass(frozen=True)
class HolderKey:
    """Composite natural key of a customer: account number plus jurisdiction.

    Master data and the compliance extension share no surrogate id, so every
    lookup goes through this pair.
    """
    account: str
    jurisdiction: str

    def __str__(self) -> str:
        return f"{self.account}@{self.jurisdiction}"


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )


# ============================================
# MASTER DATA
# ============================================

class Customer(Base, TimestampMixin):
    """
    Compliance extension of a customer.

    Keyed by (customer_account, jurisdiction) so that it joins to the
    external master-data record without a synthetic identity.
    """
    __tablename__ = "customers"

    customer_account: Mapped[str] = mapped_column(String(50), primary_key=True)
    jurisdiction: Mapped[str] = mapped_column(String(20), primary_key=True)

    business_name: Mapped[str] = mapped_column(String(300), nullable=False)
    business_category: Mapped[BusinessCategory] = mapped_column(
        Enum(BusinessCategory),
        nullable=False,
        index=True
    )

    approval_status: Mapped[ApprovalStatus] = mapped_column(
        Enum(ApprovalStatus),
        default=ApprovalStatus.PENDING,
        nullable=False
    )
    is_suspended: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    suspension_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    gdp_qualification_status: Mapped[GdpQualificationStatus] = mapped_column(
        Enum(GdpQualificationStatus),
        default=GdpQualificationStatus.NOT_REQUIRED,
        nullable=False
    )

    @property
    def holder_key(self) -> HolderKey:
        return HolderKey(self.customer_account, self.jurisdiction)

    def __repr__(self) -> str:
        return f"<Customer(key={self.holder_key}, name='{self.business_name}')>"


class LicenceType(Base, TimestampMixin):
    """Licence category (wholesale licence, Opium Act exemption, ...)"""
    __tablename__ = "licence_types"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    issuing_authority: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    permitted_activities: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    @property
    def activities(self) -> PermittedActivity:
        return PermittedActivity(self.permitted_activities or 0)

    def permits(self, required: PermittedActivity) -> bool:
        """True if every activity in ``required`` is permitted."""
        return (self.activities & required) == required

    def __repr__(self) -> str:
        return f"<LicenceType(name='{self.name}', activities={self.activities!r})>"


class Licence(Base, TimestampMixin):
    """
    A licence held by a customer or by the company itself.

    Validity as of a date requires status Valid and an expiry date on or
    after that date (or no expiry at all).
    """
    __tablename__ = "licences"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    licence_number: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    licence_type_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("licence_types.id"),
        nullable=False,
        index=True
    )

    holder_type: Mapped[HolderType] = mapped_column(
        Enum(HolderType),
        default=HolderType.CUSTOMER,
        nullable=False
    )
    holder_account: Mapped[str] = mapped_column(String(50), nullable=False)
    holder_jurisdiction: Mapped[str] = mapped_column(String(20), nullable=False)

    issuing_authority: Mapped[str] = mapped_column(String(200), nullable=False)
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    expiry_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    status: Mapped[LicenceStatus] = mapped_column(
        Enum(LicenceStatus),
        default=LicenceStatus.VALID,
        nullable=False,
        index=True
    )
    permitted_activities: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    scope: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Version for optimistic locking
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    licence_type: Mapped[Optional["LicenceType"]] = relationship(
        "LicenceType",
        lazy="selectin"
    )
    mappings: Mapped[List["LicenceSubstanceMapping"]] = relationship(
        "LicenceSubstanceMapping",
        back_populates="licence",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    __table_args__ = (
        CheckConstraint(
            "expiry_date IS NULL OR expiry_date >= issue_date",
            name="ck_licence_expiry_after_issue"
        ),
        Index('ix_licence_holder', 'holder_type', 'holder_account', 'holder_jurisdiction'),
    )

    @property
    def holder_key(self) -> HolderKey:
        return HolderKey(self.holder_account, self.holder_jurisdiction)

    @property
    def activities(self) -> PermittedActivity:
        return PermittedActivity(self.permitted_activities or 0)

    def is_expired(self, as_of: date) -> bool:
        return self.expiry_date is not None and self.expiry_date < as_of

    def is_valid(self, as_of: date) -> bool:
        return self.status == LicenceStatus.VALID and not self.is_expired(as_of)

    def __repr__(self) -> str:
        return f"<Licence(number='{self.licence_number}', status={self.status})>"


class LicenceSubstanceMapping(Base, TimestampMixin):
    """
    Authorizes a substance under a licence for a date window.

    A mapping is active for an as-of date when effective_date <= as_of and
    the expiry date is absent or >= as_of (both ends inclusive).
    """
    __tablename__ = "licence_substance_mappings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    licence_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("licences.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    substance_code: Mapped[str] = mapped_column(
        String(50),
        ForeignKey("controlled_substances.substance_code"),
        nullable=False,
        index=True
    )
    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    expiry_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    max_quantity_per_transaction: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 4), nullable=True)
    max_quantity_per_period: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 4), nullable=True)
    period_type: Mapped[Optional[ThresholdPeriod]] = mapped_column(Enum(ThresholdPeriod), nullable=True)

    licence: Mapped["Licence"] = relationship("Licence", back_populates="mappings")

    __table_args__ = (
        UniqueConstraint('licence_id', 'substance_code', 'effective_date', name='uq_mapping_licence_substance_date'),
        CheckConstraint(
            "expiry_date IS NULL OR expiry_date >= effective_date",
            name="ck_mapping_expiry_after_effective"
        ),
    )

    def is_active(self, as_of: date) -> bool:
        if self.effective_date > as_of:
            return False
        return self.expiry_date is None or self.expiry_date >= as_of

    def __repr__(self) -> str:
        return f"<LicenceSubstanceMapping(licence_id={self.licence_id}, substance='{self.substance_code}')>"


class ControlledSubstance(Base, TimestampMixin):
    """Controlled substance with its current regulatory classification."""
    __tablename__ = "controlled_substances"

    substance_code: Mapped[str] = mapped_column(String(50), primary_key=True)
    substance_name: Mapped[str] = mapped_column(String(300), nullable=False)
    opium_act_list: Mapped[OpiumActList] = mapped_column(
        Enum(OpiumActList),
        default=OpiumActList.NONE,
        nullable=False
    )
    precursor_category: Mapped[PrecursorCategory] = mapped_column(
        Enum(PrecursorCategory),
        default=PrecursorCategory.NONE,
        nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "NOT (opium_act_list = 'NONE' AND precursor_category = 'NONE')",
            name="ck_substance_is_classified"
        ),
    )

    def is_opium_act_controlled(self) -> bool:
        return self.opium_act_list != OpiumActList.NONE

    def is_precursor(self) -> bool:
        return self.precursor_category != PrecursorCategory.NONE

    def __repr__(self) -> str:
        return (
            f"<ControlledSubstance(code='{self.substance_code}', "
            f"opium={self.opium_act_list}, precursor={self.precursor_category})>"
        )


# ============================================
# RECLASSIFICATION
# ============================================

class SubstanceReclassification(Base, TimestampMixin):
    """
    A regulatory change of a substance's classification.

    Status moves Pending -> Processing -> Completed, or Pending -> Cancelled.
    The new classification reaches the substance only when processing completes.
    """
    __tablename__ = "substance_reclassifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    substance_code: Mapped[str] = mapped_column(
        String(50),
        ForeignKey("controlled_substances.substance_code"),
        nullable=False,
        index=True
    )

    previous_opium_act_list: Mapped[OpiumActList] = mapped_column(Enum(OpiumActList), nullable=False)
    new_opium_act_list: Mapped[OpiumActList] = mapped_column(Enum(OpiumActList), nullable=False)
    previous_precursor_category: Mapped[PrecursorCategory] = mapped_column(Enum(PrecursorCategory), nullable=False)
    new_precursor_category: Mapped[PrecursorCategory] = mapped_column(Enum(PrecursorCategory), nullable=False)

    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    regulatory_reference: Mapped[str] = mapped_column(String(300), nullable=False)
    regulatory_authority: Mapped[str] = mapped_column(String(200), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    initiated_by: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    status: Mapped[ReclassificationStatus] = mapped_column(
        Enum(ReclassificationStatus),
        default=ReclassificationStatus.PENDING,
        nullable=False,
        index=True
    )
    affected_customer_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    flagged_customer_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Version for optimistic locking
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    impacts: Mapped[List["ReclassificationCustomerImpact"]] = relationship(
        "ReclassificationCustomerImpact",
        back_populates="reclassification",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    __table_args__ = (
        Index('ix_reclassification_effective', 'substance_code', 'status', 'effective_date'),
    )

    @property
    def opium_act_changed(self) -> bool:
        return self.new_opium_act_list != self.previous_opium_act_list

    @property
    def precursor_changed(self) -> bool:
        return self.new_precursor_category != self.previous_precursor_category

    @property
    def is_opium_act_upgrade(self) -> bool:
        return self.new_opium_act_list.severity > self.previous_opium_act_list.severity

    @property
    def is_precursor_upgrade(self) -> bool:
        return self.new_precursor_category.severity > self.previous_precursor_category.severity

    def is_upgrade(self) -> bool:
        """True when either dimension becomes stricter."""
        return self.is_opium_act_upgrade or self.is_precursor_upgrade

    def __repr__(self) -> str:
        return (
            f"<SubstanceReclassification(id={self.id}, substance='{self.substance_code}', "
            f"status={self.status})>"
        )


class ReclassificationCustomerImpact(Base, TimestampMixin):
    """
    Impact of a reclassification on one licence holder.

    requires_requalification implies not has_sufficient_licence until a
    re-qualification stamps requalification_date and clears the flag.
    """
    __tablename__ = "reclassification_customer_impacts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reclassification_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("substance_reclassifications.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    customer_account: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_jurisdiction: Mapped[str] = mapped_column(String(20), nullable=False)
    customer_name: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)

    has_sufficient_licence: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    requires_requalification: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    licence_gap_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    relevant_licence_ids: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    requalification_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Denormalized so a blocked customer can be matched to the substance without a join
    substance_code: Mapped[str] = mapped_column(String(50), nullable=False)

    reclassification: Mapped["SubstanceReclassification"] = relationship(
        "SubstanceReclassification",
        back_populates="impacts"
    )

    __table_args__ = (
        UniqueConstraint(
            'reclassification_id', 'customer_account', 'customer_jurisdiction',
            name='uq_impact_reclassification_customer'
        ),
        CheckConstraint(
            "NOT (requires_requalification AND has_sufficient_licence)",
            name="ck_impact_requalification_consistent"
        ),
        Index('ix_impact_customer', 'customer_account', 'customer_jurisdiction', 'requires_requalification'),
    )

    @property
    def customer_key(self) -> HolderKey:
        return HolderKey(self.customer_account, self.customer_jurisdiction)

    @property
    def is_blocking(self) -> bool:
        return self.requires_requalification and self.requalification_date is None

    def __repr__(self) -> str:
        return (
            f"<ReclassificationCustomerImpact(customer={self.customer_key}, "
            f"sufficient={self.has_sufficient_licence})>"
        )


# ============================================
# THRESHOLDS
# ============================================

class Threshold(Base, TimestampMixin):
    """
    Quantity or frequency limit.

    Quantity thresholds cap line quantities per transaction and per period;
    scope decides precedence, substance-specific beats category beats global.
    Frequency thresholds cap the number of transactions a customer places per
    period and are each evaluated on their own.
    """
    __tablename__ = "thresholds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    threshold_type: Mapped[ThresholdType] = mapped_column(
        Enum(ThresholdType),
        default=ThresholdType.QUANTITY,
        nullable=False,
        index=True
    )
    scope: Mapped[ThresholdScope] = mapped_column(Enum(ThresholdScope), nullable=False, index=True)
    substance_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    customer_category: Mapped[Optional[BusinessCategory]] = mapped_column(Enum(BusinessCategory), nullable=True)

    max_quantity_per_transaction: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 4), nullable=True)
    max_quantity_per_period: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 4), nullable=True)
    max_transactions_per_period: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    period: Mapped[Optional[ThresholdPeriod]] = mapped_column(Enum(ThresholdPeriod), nullable=True)
    limit_unit: Mapped[str] = mapped_column(String(20), default="g", nullable=False)

    warning_threshold_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("80"), nullable=False)
    allow_override: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    max_override_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(7, 2), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    effective_from: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    effective_to: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "max_quantity_per_period IS NULL OR period IS NOT NULL",
            name="ck_threshold_period_required"
        ),
        CheckConstraint(
            "max_transactions_per_period IS NULL OR period IS NOT NULL",
            name="ck_threshold_frequency_period_required"
        ),
    )

    def is_effective(self, as_of: date) -> bool:
        if not self.is_active:
            return False
        if self.effective_from is not None and as_of < self.effective_from:
            return False
        if self.effective_to is not None and as_of > self.effective_to:
            return False
        return True

    def applies_to(self, substance_code: str, category: Optional[BusinessCategory]) -> bool:
        if self.scope == ThresholdScope.SUBSTANCE:
            return self.substance_code == substance_code
        if self.scope == ThresholdScope.CATEGORY:
            return category is not None and self.customer_category == category
        return True

    def __repr__(self) -> str:
        return f"<Threshold(name='{self.name}', scope={self.scope})>"


# ============================================
# TRANSACTIONS
# ============================================

class Transaction(Base, TimestampMixin):
    """
    A controlled-substance transaction submitted for validation.

    validation_status is written only by the validator and override_status
    only by the override workflow. The version column is SQLAlchemy's
    version counter, so two concurrent decisions cannot both commit.
    """
    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    external_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    customer_account: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_jurisdiction: Mapped[str] = mapped_column(String(20), nullable=False)
    customer_name: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)

    transaction_type: Mapped[TransactionType] = mapped_column(Enum(TransactionType), nullable=False)
    direction: Mapped[TransactionDirection] = mapped_column(
        Enum(TransactionDirection),
        default=TransactionDirection.INTERNAL,
        nullable=False
    )
    origin_country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    destination_country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    transaction_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    validation_status: Mapped[ValidationStatus] = mapped_column(
        Enum(ValidationStatus),
        default=ValidationStatus.PENDING,
        nullable=False,
        index=True
    )
    validation_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    requires_override: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    override_status: Mapped[OverrideStatus] = mapped_column(
        Enum(OverrideStatus),
        default=OverrideStatus.NONE,
        nullable=False,
        index=True
    )
    override_decided_by: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    override_decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    override_justification: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    lines: Mapped[List["TransactionLine"]] = relationship(
        "TransactionLine",
        back_populates="transaction",
        cascade="all, delete-orphan",
        order_by="TransactionLine.line_number",
        lazy="selectin"
    )
    violations: Mapped[List["TransactionViolation"]] = relationship(
        "TransactionViolation",
        back_populates="transaction",
        cascade="all, delete-orphan",
        lazy="selectin"
    )
    licence_usages: Mapped[List["TransactionLicenceUsage"]] = relationship(
        "TransactionLicenceUsage",
        back_populates="transaction",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('ix_transaction_customer_date', 'customer_account', 'customer_jurisdiction', 'transaction_date'),
    )

    @property
    def customer_key(self) -> HolderKey:
        return HolderKey(self.customer_account, self.customer_jurisdiction)

    def is_cross_border(self) -> bool:
        return bool(
            self.origin_country
            and self.destination_country
            and self.origin_country.upper() != self.destination_country.upper()
        )

    def requires_import_permit(self) -> bool:
        return self.is_cross_border() and self.direction == TransactionDirection.INBOUND

    def requires_export_permit(self) -> bool:
        return self.is_cross_border() and self.direction == TransactionDirection.OUTBOUND

    @property
    def can_proceed(self) -> bool:
        """Passed outright, or failed with an approved override."""
        if self.validation_status == ValidationStatus.PASSED:
            return True
        return bool(self.requires_override) and self.override_status == OverrideStatus.APPROVED

    def __repr__(self) -> str:
        return (
            f"<Transaction(external_id='{self.external_id}', status={self.validation_status}, "
            f"override={self.override_status})>"
        )


class TransactionLine(Base):
    """Quantity of one substance within a transaction."""
    __tablename__ = "transaction_lines"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    substance_code: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    unit: Mapped[str] = mapped_column(String(20), default="g", nullable=False)
    licence_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    # Effective classification of the substance on the transaction date
    opium_act_list: Mapped[Optional[OpiumActList]] = mapped_column(Enum(OpiumActList), nullable=True)
    precursor_category: Mapped[Optional[PrecursorCategory]] = mapped_column(Enum(PrecursorCategory), nullable=True)

    transaction: Mapped["Transaction"] = relationship("Transaction", back_populates="lines")

    __table_args__ = (
        UniqueConstraint('transaction_id', 'line_number', name='uq_line_transaction_number'),
        CheckConstraint("quantity > 0", name="ck_line_quantity_positive"),
    )

    def __repr__(self) -> str:
        return f"<TransactionLine({self.line_number}: {self.quantity} {self.unit} {self.substance_code})>"


class TransactionViolation(Base):
    """A violation recorded against a transaction."""
    __tablename__ = "transaction_violations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    error_code: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[ViolationSeverity] = mapped_column(
        Enum(ViolationSeverity),
        default=ViolationSeverity.ERROR,
        nullable=False
    )
    can_override: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    line_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    substance_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    threshold_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    transaction: Mapped["Transaction"] = relationship("Transaction", back_populates="violations")

    def __repr__(self) -> str:
        return f"<TransactionViolation(code='{self.error_code}', overridable={self.can_override})>"


class TransactionLicenceUsage(Base):
    """Records which licence covered which lines of a transaction."""
    __tablename__ = "transaction_licence_usages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    licence_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    licence_number: Mapped[str] = mapped_column(String(100), nullable=False)
    line_numbers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    covered_quantity: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=Decimal("0"))

    transaction: Mapped["Transaction"] = relationship("Transaction", back_populates="licence_usages")

    def __repr__(self) -> str:
        return f"<TransactionLicenceUsage(licence='{self.licence_number}', lines={self.line_numbers})>"
