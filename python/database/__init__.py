"""
Database Package for the Controlled Substance Compliance Engine

This package provides:
- SQLAlchemy ORM models for customers, licences, substances, thresholds,
  transactions and reclassifications
- Async session provider and FastAPI Dependency Injection for sessions
- Unit of Work pattern for transaction management
- Alembic integration for migrations

Repositories live in ``database.repositories`` and are not re-exported here.
"""

from database.models import (
    Base,
    HolderKey,
    # Enums
    ApprovalStatus,
    GdpQualificationStatus,
    BusinessCategory,
    HolderType,
    LicenceStatus,
    PermittedActivity,
    OpiumActList,
    PrecursorCategory,
    ReclassificationStatus,
    ThresholdScope,
    ThresholdPeriod,
    ThresholdType,
    TransactionType,
    TransactionDirection,
    ValidationStatus,
    OverrideStatus,
    ViolationSeverity,
    # Models
    Customer,
    LicenceType,
    Licence,
    LicenceSubstanceMapping,
    ControlledSubstance,
    SubstanceReclassification,
    ReclassificationCustomerImpact,
    Threshold,
    Transaction,
    TransactionLine,
    TransactionViolation,
    TransactionLicenceUsage,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    AsyncUnitOfWork,
    get_db_provider,
    # Initialization
    init_db,
    close_db,
    # Testing support
    create_test_provider,
)

__all__ = [
    # Base
    'Base',
    'HolderKey',
    # Enums
    'ApprovalStatus',
    'GdpQualificationStatus',
    'BusinessCategory',
    'HolderType',
    'LicenceStatus',
    'PermittedActivity',
    'OpiumActList',
    'PrecursorCategory',
    'ReclassificationStatus',
    'ThresholdScope',
    'ThresholdPeriod',
    'ThresholdType',
    'TransactionType',
    'TransactionDirection',
    'ValidationStatus',
    'OverrideStatus',
    'ViolationSeverity',
    # Master data
    'Customer',
    'LicenceType',
    'Licence',
    'LicenceSubstanceMapping',
    'ControlledSubstance',
    'Threshold',
    # Reclassification
    'SubstanceReclassification',
    'ReclassificationCustomerImpact',
    # Transactions
    'Transaction',
    'TransactionLine',
    'TransactionViolation',
    'TransactionLicenceUsage',
    # Session provider
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'AsyncUnitOfWork',
    'get_db_provider',
    # Initialization
    'init_db',
    'close_db',
    # Testing support
    'create_test_provider',
]
