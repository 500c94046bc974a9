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


def _default_column_aliases() -> Dict[str, List[str]]:
    return {
        'identifier': ['iin/bin', 'iin_bin', 'iin', 'bin'],
        'document': ['doc', 'document', 'doc_number', 'document_number'],
        'status': ['status'],
        'application_id': ['appid', 'app_id', 'application_id'],
        'report_date': ['date', 'report_date'],
        'user_name': ['user', 'user_name'],
        'organization': ['org', 'organization'],
        'reject_reason': ['reject', 'reject_reason'],
        'reason': ['reason'],
    }


@dataclass
class DatabaseConfig:
    """Database configuration"""
    host: str = "localhost"
    port: int = 5432
    user: str = "ats_user"
    password: str = "ats_password"
    name: str = "ats_verify"
    # Full SQLAlchemy URL; overrides the fields above when set
    url: str = ""
    pool_size: int = 5
    echo: bool = False


@dataclass
class RiskAnalysisConfig:
    """Risk analysis (anomaly detection) parameters"""
    yellow_threshold: int = 5
    red_threshold: int = 10
    required_columns: List[str] = field(default_factory=lambda: ['identifier', 'document', 'status'])
    column_aliases: Dict[str, List[str]] = field(default_factory=_default_column_aliases)
    approved_keywords: List[str] = field(default_factory=lambda: ['одобрен', 'принят', 'выдан', 'утвержден'])
    rejected_keywords: List[str] = field(default_factory=lambda: ['отказ', 'отклонен'])
    historical_frequency_threshold: int = 5
    report_limit: int = 100
    archive_uploads: bool = True
    bulk_insert_chunk_size: int = 5000


@dataclass
class ImeiConfig:
    """IMEI verification parameters"""
    columns: List[str] = field(default_factory=lambda: ['imei', 'imei1', 'imei2', 'imei3', 'imei4', 'imei_number'])
    imei_length: int = 14
    candidate_length: int = 15
    placeholder: str = "(prefix matched in text)"
    require_digits: bool = False


@dataclass
class UploadConfig:
    """Upload limits for the HTTP layer"""
    max_upload_size_mb: int = 10
    max_declaration_size_mb: int = 50
    allowed_content_types: List[str] = field(default_factory=lambda: [
        'text/csv', 'text/plain', 'application/csv', 'application/octet-stream',
        'application/vnd.ms-excel',
    ])


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: str = ""
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class AlgorithmConfig:
    """Algorithm version information"""
    version: str = "1.0.0"
    name: str = "Set-Based Anomaly Detector"
    last_updated: str = "2025-01-01"


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
        self.risk_analysis: RiskAnalysisConfig = RiskAnalysisConfig()
        self.imei: ImeiConfig = ImeiConfig()
        self.upload: UploadConfig = UploadConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.algorithm: AlgorithmConfig = AlgorithmConfig()
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

        self._parse_risk_analysis()
        self._parse_imei()
        self._parse_upload()
        self._parse_logging()
        self._parse_algorithm()
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
            name=cfg.get('name', self.database.name),
            url=cfg.get('url') or self.database.url,
            pool_size=int(cfg.get('pool_size', self.database.pool_size)),
            echo=bool(cfg.get('echo', self.database.echo))
        )

    def _parse_risk_analysis(self) -> None:
        """Parse risk analysis configuration"""
        cfg = self._raw_config.get('risk_analysis', {})
        defaults = self.risk_analysis

        # Aliases from YAML extend/override the defaults per logical column
        aliases = dict(defaults.column_aliases)
        for column, names in (cfg.get('column_aliases') or {}).items():
            aliases[column] = [str(n).strip().lower() for n in names]

        self.risk_analysis = RiskAnalysisConfig(
            yellow_threshold=cfg.get('yellow_threshold', defaults.yellow_threshold),
            red_threshold=cfg.get('red_threshold', defaults.red_threshold),
            required_columns=cfg.get('required_columns', defaults.required_columns),
            column_aliases=aliases,
            approved_keywords=cfg.get('approved_keywords', defaults.approved_keywords),
            rejected_keywords=cfg.get('rejected_keywords', defaults.rejected_keywords),
            historical_frequency_threshold=cfg.get('historical_frequency_threshold',
                                                   defaults.historical_frequency_threshold),
            report_limit=cfg.get('report_limit', defaults.report_limit),
            archive_uploads=cfg.get('archive_uploads', defaults.archive_uploads),
            bulk_insert_chunk_size=cfg.get('bulk_insert_chunk_size', defaults.bulk_insert_chunk_size)
        )

    def _parse_imei(self) -> None:
        """Parse IMEI verification configuration"""
        cfg = self._raw_config.get('imei', {})
        self.imei = ImeiConfig(
            columns=[str(c).strip().lower() for c in cfg.get('columns', self.imei.columns)],
            imei_length=cfg.get('imei_length', 14),
            candidate_length=cfg.get('candidate_length', 15),
            placeholder=cfg.get('placeholder', self.imei.placeholder),
            require_digits=cfg.get('require_digits', False)
        )

    def _parse_upload(self) -> None:
        """Parse upload configuration"""
        cfg = self._raw_config.get('upload', {})
        self.upload = UploadConfig(
            max_upload_size_mb=cfg.get('max_upload_size_mb', 10),
            max_declaration_size_mb=cfg.get('max_declaration_size_mb', 50),
            allowed_content_types=cfg.get('allowed_content_types', self.upload.allowed_content_types)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file', ''),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format)
        )

    def _parse_algorithm(self) -> None:
        """Parse algorithm configuration"""
        cfg = self._raw_config.get('algorithm', {})
        self.algorithm = AlgorithmConfig(
            version=cfg.get('version', '1.0.0'),
            name=cfg.get('name', 'Set-Based Anomaly Detector'),
            last_updated=cfg.get('last_updated', '2025-01-01')
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
            'risk_analysis': {
                'yellow_threshold': self.risk_analysis.yellow_threshold,
                'red_threshold': self.risk_analysis.red_threshold,
                'required_columns': self.risk_analysis.required_columns,
                'column_aliases': self.risk_analysis.column_aliases,
                'approved_keywords': self.risk_analysis.approved_keywords,
                'rejected_keywords': self.risk_analysis.rejected_keywords,
                'historical_frequency_threshold': self.risk_analysis.historical_frequency_threshold,
                'report_limit': self.risk_analysis.report_limit,
                'archive_uploads': self.risk_analysis.archive_uploads
            },
            'imei': {
                'columns': self.imei.columns,
                'imei_length': self.imei.imei_length,
                'candidate_length': self.imei.candidate_length,
                'placeholder': self.imei.placeholder,
                'require_digits': self.imei.require_digits
            },
            'upload': {
                'max_upload_size_mb': self.upload.max_upload_size_mb,
                'max_declaration_size_mb': self.upload.max_declaration_size_mb
            },
            'algorithm': {
                'version': self.algorithm.version,
                'name': self.algorithm.name,
                'last_updated': self.algorithm.last_updated
            },
            'database': {
                'host': self.database.host,
                'port': self.database.port,
                'user': self.database.user,
                'name': self.database.name,
                'pool_size': self.database.pool_size
            }
        }

    def _validate(self) -> None:
        """Validate configuration values"""
        errors = []
        ra = self.risk_analysis

        if ra.yellow_threshold < 1:
            errors.append(f"risk_analysis.yellow_threshold must be >= 1, got {ra.yellow_threshold}")
        if ra.red_threshold <= ra.yellow_threshold:
            errors.append(
                f"risk_analysis.red_threshold ({ra.red_threshold}) must be greater than "
                f"yellow_threshold ({ra.yellow_threshold})"
            )
        for column in ra.required_columns:
            if not ra.column_aliases.get(column):
                errors.append(f"risk_analysis.column_aliases has no aliases for required column '{column}'")
        if ra.report_limit < 1:
            errors.append("risk_analysis.report_limit must be >= 1")
        if ra.bulk_insert_chunk_size < 1:
            errors.append("risk_analysis.bulk_insert_chunk_size must be >= 1")

        if self.imei.imei_length < 1:
            errors.append("imei.imei_length must be >= 1")
        if self.imei.candidate_length < self.imei.imei_length:
            errors.append("imei.candidate_length must not be shorter than imei.imei_length")
        if not self.imei.columns:
            errors.append("imei.columns must list at least one column name")

        if errors:
            raise ConfigurationError("Invalid configuration: " + "; ".join(errors))


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
