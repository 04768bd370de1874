"""
Tests for the reference data loader and the compliance CLI argument parser.
"""

import pytest
import uuid

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

import load_reference_data as loader
from compliance_cli import build_parser
from database.models import (
    Base,
    ControlledSubstance,
    Licence,
    LicenceSubstanceMapping,
    LicenceType,
    OpiumActList,
    PermittedActivity,
    Threshold,
)


@pytest.fixture
def session():
    engine = create_engine("sqlite://")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        yield session
    engine.dispose()


class TestReferenceData:
    def test_loads_reference_data(self, session):
        assert loader.load_licence_types(session) == len(loader.LICENCE_TYPES)
        assert loader.load_substances(session) == len(loader.SUBSTANCES)
        assert loader.load_thresholds(session) == len(loader.THRESHOLDS)
        session.commit()

        morphine = session.get(ControlledSubstance, "MORPH")
        assert morphine.opium_act_list == OpiumActList.LIST_I

        wholesale = session.scalars(
            select(LicenceType).where(LicenceType.name == "Wholesale Distribution Authorisation")
        ).one()
        assert PermittedActivity.DISTRIBUTE in PermittedActivity(wholesale.permitted_activities)
        assert PermittedActivity.IMPORT not in PermittedActivity(wholesale.permitted_activities)

    def test_loading_twice_creates_nothing(self, session):
        loader.load_licence_types(session)
        loader.load_substances(session)
        loader.load_thresholds(session)
        session.commit()

        assert loader.load_licence_types(session) == 0
        assert loader.load_substances(session) == 0
        assert loader.load_thresholds(session) == 0
        assert len(session.scalars(select(Threshold)).all()) == len(loader.THRESHOLDS)

    def test_sample_customers(self, session):
        loader.load_licence_types(session)
        loader.load_substances(session)

        assert loader.load_sample_customers(session) == 2
        session.commit()
        assert loader.load_sample_customers(session) == 0

        licence = session.scalars(
            select(Licence).where(Licence.licence_number == "OW-2024-1001")
        ).one()
        codes = sorted(
            m.substance_code for m in session.scalars(
                select(LicenceSubstanceMapping).where(LicenceSubstanceMapping.licence_id == licence.id)
            )
        )
        assert codes == ["FENT", "MORPH", "OXY"]


class TestCliParser:
    def test_revalidate_parses_uuid(self):
        transaction_id = uuid.uuid4()
        args = build_parser().parse_args(["revalidate", str(transaction_id)])
        assert args.command == "revalidate"
        assert args.transaction_id == transaction_id

    def test_config_option(self):
        args = build_parser().parse_args(["--config", "other.yaml", "pending-overrides"])
        assert args.config == "other.yaml"
        assert args.command == "pending-overrides"

    def test_invalid_uuid_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["notification", "not-a-uuid"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])
