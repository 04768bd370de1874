#!/usr/bin/env python3
"""
Reference Data Loading Script for the Compliance Engine

Loads reference data into the database including:
- Licence types and the activities they permit
- Controlled substances with their classification
- Default quantity thresholds
- Sample customers and licences (optional, for development)

Usage:
    python load_reference_data.py [--with-samples] [--create-tables]
"""

import sys
import asyncio
import argparse
import logging
from datetime import date
from decimal import Decimal
from pathlib import Path

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent))

from database.connection import get_db_provider, close_db
from database.models import (
    Base, LicenceType, ControlledSubstance, Threshold, Customer, Licence,
    LicenceSubstanceMapping, PermittedActivity, OpiumActList, PrecursorCategory,
    ThresholdScope, ThresholdPeriod, ThresholdType, BusinessCategory, ApprovalStatus,
    GdpQualificationStatus, HolderType, LicenceStatus
)

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


LICENCE_TYPES = [
    {
        "name": "Opium Act Exemption (List I)",
        "issuing_authority": "Farmatec",
        "permitted_activities": int(
            PermittedActivity.POSSESS | PermittedActivity.STORE | PermittedActivity.DISTRIBUTE
        ),
    },
    {
        "name": "Opium Act Exemption (List II)",
        "issuing_authority": "Farmatec",
        "permitted_activities": int(PermittedActivity.POSSESS | PermittedActivity.DISTRIBUTE),
    },
    {
        "name": "Wholesale Distribution Authorisation",
        "issuing_authority": "IGJ",
        "permitted_activities": int(PermittedActivity.STORE | PermittedActivity.DISTRIBUTE),
    },
    {
        "name": "Precursor Registration (Category 1)",
        "issuing_authority": "Douane",
        "permitted_activities": int(PermittedActivity.HANDLE_PRECURSORS | PermittedActivity.POSSESS),
    },
    {
        "name": "Import/Export Permit",
        "issuing_authority": "Farmatec",
        "permitted_activities": int(PermittedActivity.IMPORT | PermittedActivity.EXPORT),
    },
    {
        "name": "Manufacturing Licence",
        "issuing_authority": "IGJ",
        "permitted_activities": int(
            PermittedActivity.MANUFACTURE | PermittedActivity.POSSESS | PermittedActivity.STORE
        ),
    },
]

SUBSTANCES = [
    {"substance_code": "MORPH", "substance_name": "Morphine",
     "opium_act_list": OpiumActList.LIST_I, "precursor_category": PrecursorCategory.NONE},
    {"substance_code": "FENT", "substance_name": "Fentanyl",
     "opium_act_list": OpiumActList.LIST_I, "precursor_category": PrecursorCategory.NONE},
    {"substance_code": "OXY", "substance_name": "Oxycodone",
     "opium_act_list": OpiumActList.LIST_I, "precursor_category": PrecursorCategory.NONE},
    {"substance_code": "DIAZ", "substance_name": "Diazepam",
     "opium_act_list": OpiumActList.LIST_II, "precursor_category": PrecursorCategory.NONE},
    {"substance_code": "TEMAZ", "substance_name": "Temazepam",
     "opium_act_list": OpiumActList.LIST_II, "precursor_category": PrecursorCategory.NONE},
    {"substance_code": "EPHED", "substance_name": "Ephedrine",
     "opium_act_list": OpiumActList.NONE, "precursor_category": PrecursorCategory.CATEGORY_1},
    {"substance_code": "PSEPH", "substance_name": "Pseudoephedrine",
     "opium_act_list": OpiumActList.NONE, "precursor_category": PrecursorCategory.CATEGORY_1},
    {"substance_code": "ACAN", "substance_name": "Acetic anhydride",
     "opium_act_list": OpiumActList.NONE, "precursor_category": PrecursorCategory.CATEGORY_2},
]

THRESHOLDS = [
    {
        "name": "Fentanyl per-transaction limit",
        "scope": ThresholdScope.SUBSTANCE,
        "substance_code": "FENT",
        "max_quantity_per_transaction": Decimal("50"),
        "max_quantity_per_period": Decimal("200"),
        "period": ThresholdPeriod.MONTHLY,
        "allow_override": True,
        "max_override_percent": Decimal("120"),
    },
    {
        "name": "Community pharmacy monthly limit",
        "scope": ThresholdScope.CATEGORY,
        "customer_category": BusinessCategory.COMMUNITY_PHARMACY,
        "max_quantity_per_period": Decimal("1000"),
        "period": ThresholdPeriod.MONTHLY,
        "allow_override": True,
    },
    {
        "name": "Global per-transaction limit",
        "scope": ThresholdScope.GLOBAL,
        "max_quantity_per_transaction": Decimal("5000"),
        "allow_override": False,
    },
    {
        "name": "Weekly order frequency",
        "threshold_type": ThresholdType.FREQUENCY,
        "scope": ThresholdScope.GLOBAL,
        "max_transactions_per_period": 20,
        "period": ThresholdPeriod.WEEKLY,
        "allow_override": True,
    },
]


def load_licence_types(session):
    """Load default licence types."""
    created = 0
    for type_data in LICENCE_TYPES:
        existing = session.query(LicenceType).filter_by(name=type_data["name"]).first()
        if not existing:
            session.add(LicenceType(**type_data))
            created += 1
            logger.info(f"Created licence type: {type_data['name']}")
        else:
            logger.info(f"Licence type already exists: {type_data['name']}")

    return created


def load_substances(session):
    """Load controlled substances."""
    created = 0
    for substance_data in SUBSTANCES:
        existing = session.get(ControlledSubstance, substance_data["substance_code"])
        if not existing:
            session.add(ControlledSubstance(**substance_data))
            created += 1
            logger.info(f"Created substance: {substance_data['substance_code']}")
        else:
            logger.info(f"Substance already exists: {substance_data['substance_code']}")

    return created


def load_thresholds(session):
    """Load default thresholds."""
    created = 0
    for threshold_data in THRESHOLDS:
        existing = session.query(Threshold).filter_by(name=threshold_data["name"]).first()
        if not existing:
            session.add(Threshold(**threshold_data))
            created += 1
            logger.info(f"Created threshold: {threshold_data['name']}")
        else:
            logger.info(f"Threshold already exists: {threshold_data['name']}")

    return created


def load_sample_customers(session):
    """Load sample customers with licences for development/testing."""
    session.flush()
    list_one_type = session.query(LicenceType).filter_by(name="Opium Act Exemption (List I)").one()
    wholesale_type = session.query(LicenceType).filter_by(name="Wholesale Distribution Authorisation").one()

    samples = [
        {
            "customer": {
                "customer_account": "C-1001",
                "jurisdiction": "NL",
                "business_name": "Sample Hospital Pharmacy",
                "business_category": BusinessCategory.HOSPITAL_PHARMACY,
                "approval_status": ApprovalStatus.APPROVED,
                "gdp_qualification_status": GdpQualificationStatus.APPROVED,
            },
            "licence": {
                "licence_number": "OW-2024-1001",
                "licence_type_id": list_one_type.id,
                "issuing_authority": "Farmatec",
                "issue_date": date(2024, 1, 1),
                "expiry_date": date(2029, 12, 31),
            },
            "substances": ["MORPH", "FENT", "OXY"],
        },
        {
            "customer": {
                "customer_account": "C-2001",
                "jurisdiction": "NL",
                "business_name": "Sample Wholesaler BV",
                "business_category": BusinessCategory.WHOLESALER_EU,
                "approval_status": ApprovalStatus.APPROVED,
                "gdp_qualification_status": GdpQualificationStatus.APPROVED,
            },
            "licence": {
                "licence_number": "WDA-2024-2001",
                "licence_type_id": wholesale_type.id,
                "issuing_authority": "IGJ",
                "issue_date": date(2024, 1, 1),
                "expiry_date": None,
            },
            "substances": ["DIAZ", "TEMAZ"],
        },
    ]

    created = 0
    for sample in samples:
        customer_data = sample["customer"]
        existing = session.get(Customer, (customer_data["customer_account"], customer_data["jurisdiction"]))
        if existing:
            logger.info(f"Sample customer already exists: {customer_data['customer_account']}")
            continue

        session.add(Customer(**customer_data))
        licence = Licence(
            holder_type=HolderType.CUSTOMER,
            holder_account=customer_data["customer_account"],
            holder_jurisdiction=customer_data["jurisdiction"],
            status=LicenceStatus.VALID,
            **sample["licence"]
        )
        session.add(licence)
        session.flush()

        for code in sample["substances"]:
            session.add(LicenceSubstanceMapping(
                licence_id=licence.id,
                substance_code=code,
                effective_date=licence.issue_date,
                expiry_date=licence.expiry_date,
            ))
        created += 1
        logger.info(f"Created sample customer: {customer_data['business_name']}")

    return created


def load_company_permit(session, account="COMPANY", jurisdiction="NL"):
    """Load the company's own import/export permit for development/testing."""
    session.flush()
    existing = session.query(Licence).filter_by(
        holder_type=HolderType.COMPANY, holder_account=account, holder_jurisdiction=jurisdiction
    ).first()
    if existing:
        logger.info(f"Company permit already exists: {existing.licence_number}")
        return 0

    permit_type = session.query(LicenceType).filter_by(name="Import/Export Permit").one()
    session.add(Licence(
        licence_number="IE-2024-0001",
        licence_type_id=permit_type.id,
        holder_type=HolderType.COMPANY,
        holder_account=account,
        holder_jurisdiction=jurisdiction,
        issuing_authority="Farmatec",
        issue_date=date(2024, 1, 1),
        expiry_date=date(2029, 12, 31),
        status=LicenceStatus.VALID,
    ))
    logger.info(f"Created company permit for {account}@{jurisdiction}")
    return 1


def main():
    parser = argparse.ArgumentParser(description="Load reference data into the compliance database")
    parser.add_argument("--with-samples", action="store_true", help="Include sample customers for development")
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables first")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    logger.info("=" * 50)
    logger.info("Compliance Reference Data Loading")
    logger.info("=" * 50)

    db = get_db_provider()
    try:
        db.init_sync()
        if args.create_tables:
            Base.metadata.create_all(db.engine)
            logger.info("Tables created")

        with db.session_scope() as session:
            logger.info("[1/4] Loading licence types...")
            logger.info(f"Licence types created: {load_licence_types(session)}")

            logger.info("[2/4] Loading controlled substances...")
            logger.info(f"Substances created: {load_substances(session)}")

            logger.info("[3/4] Loading thresholds...")
            logger.info(f"Thresholds created: {load_thresholds(session)}")

            if args.with_samples:
                logger.info("[4/4] Loading sample customers...")
                logger.info(f"Sample customers created: {load_sample_customers(session)}")
                logger.info(f"Company permits created: {load_company_permit(session)}")
            else:
                logger.info("[4/4] Skipping sample customers (use --with-samples to include)")

        logger.info("=" * 50)
        logger.info("Reference data loading complete!")
        logger.info("=" * 50)
    except Exception as e:
        logger.error(f"Error loading reference data: {e}")
        raise
    finally:
        asyncio.run(close_db())


if __name__ == "__main__":
    main()
