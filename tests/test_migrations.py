"""
Tests for schema migrations.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

import migrations


def _conn(applied=()):
    conn = MagicMock()
    conn.execute = AsyncMock()
    conn.fetch = AsyncMock(return_value=[{"version": v, "checksum": c} for v, c in applied])
    return conn


class TestLoadMigrations:
    """Tests for load_migrations"""

    def test_numeric_order(self, tmp_path):
        """010 sorts after 002"""
        (tmp_path / "010_later.sql").write_text("SELECT 10;")
        (tmp_path / "002_first.sql").write_text("SELECT 2;")
        (tmp_path / "notes.txt").write_text("ignored")

        loaded = migrations.load_migrations(tmp_path)

        assert [(m.version, m.name) for m in loaded] == [(2, "first"), (10, "later")]

    def test_bad_names_ignored(self, tmp_path):
        (tmp_path / "init.sql").write_text("SELECT 1;")
        assert migrations.load_migrations(tmp_path) == []

    def test_duplicate_version(self, tmp_path):
        """Two files with one version number are rejected"""
        (tmp_path / "001_a.sql").write_text("SELECT 1;")
        (tmp_path / "001_b.sql").write_text("SELECT 1;")

        with pytest.raises(ValueError):
            migrations.load_migrations(tmp_path)

    def test_missing_directory(self, tmp_path):
        assert migrations.load_migrations(tmp_path / "nope") == []

    def test_shipped_migrations(self):
        """The packaged schema loads"""
        loaded = migrations.load_migrations()
        assert loaded[0].version == 1
        assert "trial_subscriptions" in loaded[0].sql


class TestApplyPending:
    """Tests for apply_pending"""

    @pytest.mark.asyncio
    async def test_applies_only_new(self):
        """Recorded versions are skipped"""
        first = migrations.Migration(1, "trial_lifecycle", "CREATE TABLE a ();")
        second = migrations.Migration(2, "indexes", "CREATE INDEX b ON a ();")
        conn = _conn(applied=[(1, first.checksum)])

        done = await migrations.apply_pending(conn, [first, second])

        assert done == [2]
        executed = [c.args[0] for c in conn.execute.await_args_list]
        assert "CREATE INDEX b ON a ();" in executed
        assert "CREATE TABLE a ();" not in executed

    @pytest.mark.asyncio
    async def test_edited_migration_rejected(self):
        """An applied file whose content changed stops the pass"""
        migration = migrations.Migration(1, "trial_lifecycle", "CREATE TABLE a (id INT);")
        conn = _conn(applied=[(1, "0" * 64)])

        with pytest.raises(migrations.MigrationChecksumError):
            await migrations.apply_pending(conn, [migration])
