"""
Database Package for ATS Verify

This package provides:
- SQLAlchemy ORM models for risk profiles, the raw upload archive and audit logs
- FastAPI Dependency Injection for database sessions
- Repository pattern for data access
- The database-backed risk analysis service
- Alembic integration for migrations
"""

from database.models import (
    Base,
    RiskProfile,
    RiskRawData,
    AuditLog,
    RiskLevel,
    AuditAction
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    # FastAPI dependencies
    get_db,
    get_db_provider,
    # Initialization
    init_db,
    close_db,
    # Testing support
    create_test_provider,
)
from database.repositories import (
    RepositoryError,
    EntityNotFoundError,
    RiskProfileRepository,
    RiskRawDataRepository,
    AuditRepository,
)
from database.risk_analysis_service import (
    RiskAnalysisService,
    RiskAnalysisResult,
)

__all__ = [
    # Base
    'Base',
    # Models
    'RiskProfile',
    'RiskRawData',
    'AuditLog',
    'RiskLevel',
    'AuditAction',
    # Database provider
    'DatabaseSessionProvider',
    'DatabaseSettings',
    # FastAPI dependencies
    'get_db',
    'get_db_provider',
    # Initialization
    'init_db',
    'close_db',
    # Testing support
    'create_test_provider',
    # Repositories
    'RepositoryError',
    'EntityNotFoundError',
    'RiskProfileRepository',
    'RiskRawDataRepository',
    'AuditRepository',
    # Services
    'RiskAnalysisService',
    'RiskAnalysisResult',
]
