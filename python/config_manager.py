"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, List

logger = logging.getLogger(__name__)


BUSINESS_CATEGORIES = (
    "HospitalPharmacy",
    "CommunityPharmacy",
    "Veterinarian",
    "Manufacturer",
    "WholesalerEU",
    "WholesalerNonEU",
    "ResearchInstitution",
)


@dataclass
class DatabaseConfig:
    """Database configuration"""
    host: str = "localhost"
    port: int = 5432
    user: str = "compliance_user"
    password: str = "compliance_password"
    name: str = "compliance"


@dataclass
class ValidationConfig:
    """Transaction validation policy"""
    treat_activity_mismatch_as_failure: bool = False
    gdp_check_enabled: bool = True
    gdp_required_categories: List[str] = field(default_factory=lambda: [
        'WholesalerEU',
        'WholesalerNonEU',
        'HospitalPharmacy',
        'CommunityPharmacy'
    ])
    cross_border_check_enabled: bool = True
    company_account: str = 'COMPANY'
    company_jurisdiction: str = 'NL'


@dataclass
class OverrideConfig:
    """Override workflow settings"""
    min_justification_length: int = 1
    enforce_min_length: bool = True


@dataclass
class ThresholdConfig:
    """Threshold evaluation settings"""
    default_warning_percent: float = 80.0
    emit_warnings: bool = True


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = "logs/compliance.log"
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.validation: ValidationConfig = ValidationConfig()
        self.override: OverrideConfig = OverrideConfig()
        self.thresholds: ThresholdConfig = ThresholdConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.database: DatabaseConfig = DatabaseConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
            Path.cwd() / "python" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        if not isinstance(self._raw_config, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

        self._parse_validation()
        self._parse_override()
        self._parse_thresholds()
        self._parse_logging()
        self._parse_database()
        self._validate()

    def _parse_database(self) -> None:
        """Parse database configuration"""
        cfg = self._raw_config.get('database', {})
        self.database = DatabaseConfig(
            host=cfg.get('host', self.database.host),
            port=cfg.get('port', self.database.port),
            user=cfg.get('user', self.database.user),
            password=cfg.get('password', self.database.password),
            name=cfg.get('name', self.database.name)
        )

    def _parse_validation(self) -> None:
        """Parse validation configuration"""
        cfg = self._raw_config.get('validation', {})
        self.validation = ValidationConfig(
            treat_activity_mismatch_as_failure=cfg.get('treat_activity_mismatch_as_failure', False),
            gdp_check_enabled=cfg.get('gdp_check_enabled', True),
            gdp_required_categories=cfg.get('gdp_required_categories',
                                            self.validation.gdp_required_categories),
            cross_border_check_enabled=cfg.get('cross_border_check_enabled', True),
            company_account=str(cfg.get('company_account', 'COMPANY')),
            company_jurisdiction=str(cfg.get('company_jurisdiction', 'NL'))
        )

    def _parse_override(self) -> None:
        """Parse override configuration"""
        cfg = self._raw_config.get('override', {})
        self.override = OverrideConfig(
            min_justification_length=cfg.get('min_justification_length', 1),
            enforce_min_length=cfg.get('enforce_min_length', True)
        )

    def _parse_thresholds(self) -> None:
        """Parse threshold configuration"""
        cfg = self._raw_config.get('thresholds', {})
        self.thresholds = ThresholdConfig(
            default_warning_percent=cfg.get('default_warning_percent', 80.0),
            emit_warnings=cfg.get('emit_warnings', True)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file', 'logs/compliance.log'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format)
        )

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary"""
        return {
            'validation': {
                'treat_activity_mismatch_as_failure': self.validation.treat_activity_mismatch_as_failure,
                'gdp_check_enabled': self.validation.gdp_check_enabled,
                'gdp_required_categories': list(self.validation.gdp_required_categories),
                'cross_border_check_enabled': self.validation.cross_border_check_enabled,
                'company_account': self.validation.company_account,
                'company_jurisdiction': self.validation.company_jurisdiction
            },
            'override': {
                'min_justification_length': self.override.min_justification_length,
                'enforce_min_length': self.override.enforce_min_length
            },
            'thresholds': {
                'default_warning_percent': self.thresholds.default_warning_percent,
                'emit_warnings': self.thresholds.emit_warnings
            },
            'logging': {
                'level': self.logging.level,
                'file': self.logging.file,
                'console': self.logging.console
            },
            'database': {
                'host': self.database.host,
                'port': self.database.port,
                'user': self.database.user,
                'name': self.database.name
            }
        }

    def _validate(self) -> None:
        """Validate configuration values

        Raises:
            ConfigurationError: If any value is out of range
        """
        errors = []

        if not isinstance(self.override.min_justification_length, int) \
                or self.override.min_justification_length < 1:
            errors.append("override.min_justification_length must be an integer >= 1")

        percent = self.thresholds.default_warning_percent
        if not isinstance(percent, (int, float)) or not 0 < percent <= 100:
            errors.append("thresholds.default_warning_percent must be in (0, 100]")

        unknown = [c for c in self.validation.gdp_required_categories if c not in BUSINESS_CATEGORIES]
        if unknown:
            errors.append(f"validation.gdp_required_categories has unknown categories: {unknown}")

        if not self.validation.company_account.strip() or not self.validation.company_jurisdiction.strip():
            errors.append("validation.company_account and company_jurisdiction must not be empty")

        if self.logging.level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            errors.append(f"logging.level '{self.logging.level}' is not a valid level")

        if errors:
            raise ConfigurationError("Invalid configuration: " + "; ".join(errors))


def configure_logging(config: Optional[ConfigManager] = None) -> None:
    """Configure root logging from the logging section (entry points only)"""
    cfg = (config or get_config()).logging
    handlers: List[logging.Handler] = []
    if cfg.console:
        handlers.append(logging.StreamHandler())
    if cfg.file:
        log_path = Path(cfg.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding='utf-8'))
    logging.basicConfig(
        level=getattr(logging, cfg.level.upper(), logging.INFO),
        format=cfg.format,
        handlers=handlers or None
    )


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
