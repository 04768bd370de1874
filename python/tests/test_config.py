"""
Tests for configuration loading and its effect on the compliance service.
"""

import pytest
from decimal import Decimal

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from compliance.results import ErrorCodes
from compliance.service import ComplianceService
from config_manager import ConfigManager, ConfigurationError, get_config
from database.models import (
    BusinessCategory,
    GdpQualificationStatus,
    Threshold,
    ThresholdScope,
    TransactionDirection,
    TransactionType,
)
from fakes import build_world, make_customer, make_transaction

REPO_CONFIG = Path(__file__).parent.parent / "config.yaml"


def write_config(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return str(path)


@pytest.fixture(autouse=True)
def reset_singleton():
    ConfigManager.reset_instance()
    yield
    ConfigManager.reset_instance()


class TestConfigManager:
    def test_repository_config_loads(self):
        config = ConfigManager(str(REPO_CONFIG))
        assert config.override.min_justification_length == 10
        assert config.override.enforce_min_length is True
        assert config.validation.treat_activity_mismatch_as_failure is False
        assert "WholesalerEU" in config.validation.gdp_required_categories
        assert config.thresholds.default_warning_percent == 80
        assert config.validation.cross_border_check_enabled is True
        assert config.validation.company_account == "COMPANY"

    def test_missing_file_uses_defaults(self, tmp_path):
        config = ConfigManager(str(tmp_path / "missing.yaml"))
        assert config.override.min_justification_length == 1
        assert config.thresholds.emit_warnings is True

    def test_partial_file_keeps_defaults(self, tmp_path):
        config = ConfigManager(write_config(tmp_path, "thresholds:\n  emit_warnings: false\n"))
        assert config.thresholds.emit_warnings is False
        assert config.thresholds.default_warning_percent == 80.0
        assert config.validation.gdp_check_enabled is True

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ConfigManager(write_config(tmp_path, "validation: [unclosed\n"))

    def test_top_level_must_be_mapping(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ConfigManager(write_config(tmp_path, "- just\n- a list\n"))

    @pytest.mark.parametrize("text, fragment", [
        ("override:\n  min_justification_length: 0\n", "min_justification_length"),
        ("thresholds:\n  default_warning_percent: 150\n", "default_warning_percent"),
        ("validation:\n  gdp_required_categories: [Dentist]\n", "Dentist"),
        ("logging:\n  level: LOUD\n", "LOUD"),
        ("validation:\n  company_account: ' '\n", "company_account"),
        ("validation:\n  company_account: ' '\n", "company_account"),
    ])
    def test_out_of_range_values(self, tmp_path, text, fragment):
        with pytest.raises(ConfigurationError, match=fragment):
            ConfigManager(write_config(tmp_path, text))

    def test_to_dict_omits_password(self):
        data = ConfigManager(str(REPO_CONFIG)).to_dict()
        assert "password" not in data["database"]
        assert data["override"]["min_justification_length"] == 10

    def test_get_config_is_singleton(self):
        assert get_config(str(REPO_CONFIG)) is get_config()


class TestServiceConfiguration:
    """Config values flow into the engine components."""

    @pytest.mark.asyncio
    async def test_min_justification_length(self):
        service = ComplianceService(build_world(), ConfigManager(str(REPO_CONFIG)))
        outcome = await service.validate_transaction(make_transaction([("EPHED", 1)]))

        short = await service.approve_override(outcome.transaction.id, "qa.officer", "Urgent")
        assert short.error_codes == [ErrorCodes.VALIDATION_ERROR]

        ok = await service.approve_override(outcome.transaction.id, "qa.officer", "Urgent ICU supply")
        assert ok.is_valid

    @pytest.mark.asyncio
    async def test_activity_mismatch_policy(self, tmp_path):
        config = ConfigManager(write_config(
            tmp_path, "validation:\n  treat_activity_mismatch_as_failure: true\n"
        ))
        service = ComplianceService(build_world(), config)

        outcome = await service.validate_transaction(make_transaction(
            [("DIAZ", 1)], account="C-2001", transaction_type=TransactionType.TRANSFER
        ))
        assert outcome.result.error_codes == [ErrorCodes.LICENCE_SCOPE_INSUFFICIENT]
        assert not outcome.transaction.requires_override

    @pytest.mark.asyncio
    async def test_gdp_categories(self, tmp_path):
        config = ConfigManager(write_config(
            tmp_path, "validation:\n  gdp_required_categories: [Veterinarian]\n"
        ))
        stores = build_world()
        stores.customers.add(make_customer(
            "C-1001", gdp_qualification_status=GdpQualificationStatus.NOT_REQUIRED
        ))
        stores.customers.add(make_customer(
            "C-3001",
            business_category=BusinessCategory.VETERINARIAN,
            gdp_qualification_status=GdpQualificationStatus.NOT_REQUIRED,
        ))
        service = ComplianceService(stores, config)

        pharmacy = await service.validate_transaction(make_transaction([("MORPH", 1)]))
        assert pharmacy.result.is_valid

        vet = await service.validate_transaction(make_transaction([("MORPH", 1)], account="C-3001"))
        assert ErrorCodes.GDP_QUALIFICATION_INVALID in vet.result.error_codes

    @pytest.mark.asyncio
    async def test_warnings_disabled(self, tmp_path):
        config = ConfigManager(write_config(tmp_path, "thresholds:\n  emit_warnings: false\n"))
        stores = build_world()
        stores.thresholds.add(Threshold(
            name="Morphine per order",
            scope=ThresholdScope.SUBSTANCE,
            substance_code="MORPH",
            max_quantity_per_transaction=Decimal("50"),
        ))
        service = ComplianceService(stores, config)

        outcome = await service.validate_transaction(make_transaction([("MORPH", 49)]))
        assert outcome.result.is_valid
        assert outcome.result.warnings == []

    @pytest.mark.asyncio
    async def test_company_holder_for_permits(self, tmp_path):
        config = ConfigManager(write_config(
            tmp_path, "validation:\n  company_account: HQ\n  company_jurisdiction: BE\n"
        ))
        service = ComplianceService(build_world(), config)

        outcome = await service.validate_transaction(make_transaction(
            [("MORPH", 1)],
            transaction_type=TransactionType.SHIPMENT,
            direction=TransactionDirection.OUTBOUND,
            origin_country="NL",
            destination_country="DE",
        ))
        assert outcome.result.error_codes == [ErrorCodes.EXPORT_PERMIT_REQUIRED]
