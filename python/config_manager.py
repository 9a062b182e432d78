"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, List

from compliance.rules import RuleDefaults

logger = logging.getLogger(__name__)


@dataclass
class ComplianceConfig:
    """Rule defaults and evaluation limits"""
    role: str = "driver"
    default_required_doc_types: List[str] = field(
        default_factory=lambda: ["Driver License", "Background Check"]
    )
    default_alert_windows: List[int] = field(default_factory=lambda: [30, 15, 7])
    tenant_driver_limit: int = 1000
    top_issues_limit: int = 10

    def rule_defaults(self) -> RuleDefaults:
        return RuleDefaults(
            required_doc_types=tuple(self.default_required_doc_types),
            alert_windows=tuple(self.default_alert_windows)
        )


@dataclass
class AlertConfig:
    """Alert delivery configuration"""
    channel: str = "in_app"  # in_app, log
    max_concurrent_tenants: int = 4


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = None
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class DatabaseConfig:
    """Database monitoring thresholds (connection settings come from the environment)"""
    slow_query_threshold_ms: float = 1000.0
    warning_threshold_ms: float = 500.0
    enable_prometheus: bool = True


@dataclass
class ApiConfig:
    """HTTP API configuration"""
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])
    max_workers: int = 4


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
        self.compliance: ComplianceConfig = ComplianceConfig()
        self.alerts: AlertConfig = AlertConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.database: DatabaseConfig = DatabaseConfig()
        self.api: ApiConfig = ApiConfig()

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

        self._parse_compliance()
        self._parse_alerts()
        self._parse_logging()
        self._parse_database()
        self._parse_api()
        self._validate()

    def _section(self, name: str) -> Dict[str, Any]:
        cfg = self._raw_config.get(name) or {}
        if not isinstance(cfg, dict):
            raise ConfigurationError(f"Section '{name}' must be a mapping")
        return cfg

    def _parse_compliance(self) -> None:
        """Parse compliance configuration"""
        cfg = self._section('compliance')
        self.compliance = ComplianceConfig(
            role=cfg.get('role', self.compliance.role),
            default_required_doc_types=cfg.get('default_required_doc_types',
                                               self.compliance.default_required_doc_types),
            default_alert_windows=cfg.get('default_alert_windows',
                                          self.compliance.default_alert_windows),
            tenant_driver_limit=cfg.get('tenant_driver_limit', 1000),
            top_issues_limit=cfg.get('top_issues_limit', 10)
        )

    def _parse_alerts(self) -> None:
        """Parse alert configuration"""
        cfg = self._section('alerts')
        self.alerts = AlertConfig(
            channel=cfg.get('channel', 'in_app'),
            max_concurrent_tenants=cfg.get('max_concurrent_tenants', 4)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._section('logging')
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format)
        )

    def _parse_database(self) -> None:
        """Parse database monitoring configuration"""
        cfg = self._section('database')
        self.database = DatabaseConfig(
            slow_query_threshold_ms=cfg.get('slow_query_threshold_ms', 1000.0),
            warning_threshold_ms=cfg.get('warning_threshold_ms', 500.0),
            enable_prometheus=cfg.get('enable_prometheus', True)
        )

    def _parse_api(self) -> None:
        """Parse API configuration"""
        cfg = self._section('api')
        self.api = ApiConfig(
            host=cfg.get('host', '0.0.0.0'),
            port=cfg.get('port', 8000),
            cors_origins=cfg.get('cors_origins', self.api.cors_origins),
            max_workers=cfg.get('max_workers', 4)
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
            'compliance': {
                'role': self.compliance.role,
                'default_required_doc_types': self.compliance.default_required_doc_types,
                'default_alert_windows': self.compliance.default_alert_windows,
                'tenant_driver_limit': self.compliance.tenant_driver_limit,
                'top_issues_limit': self.compliance.top_issues_limit
            },
            'alerts': {
                'channel': self.alerts.channel,
                'max_concurrent_tenants': self.alerts.max_concurrent_tenants
            },
            'logging': {
                'level': self.logging.level,
                'file': self.logging.file,
                'console': self.logging.console
            },
            'database': {
                'slow_query_threshold_ms': self.database.slow_query_threshold_ms,
                'warning_threshold_ms': self.database.warning_threshold_ms,
                'enable_prometheus': self.database.enable_prometheus
            },
            'api': {
                'host': self.api.host,
                'port': self.api.port,
                'cors_origins': self.api.cors_origins,
                'max_workers': self.api.max_workers
            }
        }

    def _validate(self) -> None:
        """Validate configuration values"""
        errors = []

        doc_types = self.compliance.default_required_doc_types
        if not isinstance(doc_types, list) or not doc_types or \
                not all(isinstance(d, str) and d.strip() for d in doc_types):
            errors.append("compliance.default_required_doc_types must be a non-empty list of names")

        windows = self.compliance.default_alert_windows
        if not isinstance(windows, list) or not windows or \
                not all(isinstance(w, int) and not isinstance(w, bool) and w > 0 for w in windows):
            errors.append("compliance.default_alert_windows must be a non-empty list of positive integers")

        if not isinstance(self.compliance.tenant_driver_limit, int) or self.compliance.tenant_driver_limit < 1:
            errors.append("compliance.tenant_driver_limit must be >= 1")
        if not isinstance(self.compliance.top_issues_limit, int) or self.compliance.top_issues_limit < 0:
            errors.append("compliance.top_issues_limit must be >= 0")

        if self.alerts.channel not in ('in_app', 'log'):
            errors.append(f"alerts.channel must be 'in_app' or 'log', got '{self.alerts.channel}'")
        if not isinstance(self.alerts.max_concurrent_tenants, int) or self.alerts.max_concurrent_tenants < 1:
            errors.append("alerts.max_concurrent_tenants must be >= 1")

        if self.logging.level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            errors.append(f"logging.level is not a valid level: {self.logging.level}")

        if errors:
            raise ConfigurationError("; ".join(errors))


def configure_logging(config: LoggingConfig) -> None:
    """Configure root logging from the logging section"""
    handlers: List[logging.Handler] = []
    if config.console:
        handlers.append(logging.StreamHandler())
    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(config.file, encoding='utf-8'))

    logging.basicConfig(
        level=getattr(logging, config.level.upper(), logging.INFO),
        format=config.format,
        handlers=handlers or None
    )


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
