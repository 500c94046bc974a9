"""
Tests for the Alembic baseline migration.

Runs upgrade/downgrade of 001_initial against SQLite and checks the result
against the ORM metadata.
"""

import importlib.util

import pytest
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from database.models import Base

MIGRATION = Path(__file__).parent.parent / "alembic" / "versions" / "001_initial.py"


@pytest.fixture
def migration():
    spec = importlib.util.spec_from_file_location("migration_001_initial", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def run(engine, step):
    with engine.begin() as conn:
        ctx = MigrationContext.configure(conn)
        with Operations.context(ctx):
            step()


class TestInitialMigration:
    """Tests for the baseline schema migration."""

    def test_upgrade_creates_model_tables(self, migration):
        engine = create_engine("sqlite://")
        run(engine, migration.upgrade)

        tables = set(inspect(engine).get_table_names())
        assert set(Base.metadata.tables) <= tables

    def test_columns_match_models(self, migration):
        engine = create_engine("sqlite://")
        run(engine, migration.upgrade)

        inspector = inspect(engine)
        for name, table in Base.metadata.tables.items():
            migrated = {c['name'] for c in inspector.get_columns(name)}
            assert migrated == {c.name for c in table.columns}, name

    def test_unique_identifier(self, migration):
        engine = create_engine("sqlite://")
        run(engine, migration.upgrade)

        constraints = inspect(engine).get_unique_constraints('iin_bin_risks')
        assert any(c['column_names'] == ['iin_bin'] for c in constraints)

    def test_downgrade(self, migration):
        engine = create_engine("sqlite://")
        run(engine, migration.upgrade)
        run(engine, migration.downgrade)

        assert inspect(engine).get_table_names() == []

    def test_revision(self, migration):
        assert migration.revision == '001_initial'
        assert migration.down_revision is None
