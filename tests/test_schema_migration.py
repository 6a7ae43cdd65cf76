import os
import sqlite3
import sys

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import Database


class TestSchemaMigration:
    def test_adds_missing_columns_and_keeps_rows(self, tmp_path):
        db_file = tmp_path / "test.db"
        conn = sqlite3.connect(str(db_file))
        conn.execute(
            "CREATE TABLE template_groups (id INTEGER PRIMARY KEY AUTOINCREMENT, template_id INTEGER, name TEXT, rest_seconds INTEGER, position TEXT)"
        )
        conn.execute(
            "INSERT INTO template_groups (template_id, name, rest_seconds, position) VALUES (1, 'A', 90, '0000000001.0000000000')"
        )
        conn.execute("CREATE TABLE template_groups_old (id INTEGER)")
        conn.commit()
        conn.close()

        Database(str(db_file))

        conn = sqlite3.connect(str(db_file))
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='template_groups_old'"
        )
        assert cur.fetchone() is None
        cur = conn.execute("PRAGMA table_info(template_groups)")
        cols = [row[1] for row in cur.fetchall()]
        assert cols == ["id", "template_id", "name", "kind", "rest_seconds", "position"]
        rows = conn.execute("SELECT name, kind, rest_seconds FROM template_groups").fetchall()
        assert rows == [("A", "single", 90)]
        conn.close()

    def test_creates_indexes(self, tmp_path):
        db_file = tmp_path / "fresh.db"
        Database(str(db_file))
        conn = sqlite3.connect(str(db_file))
        names = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='index'")
        }
        conn.close()
        assert "idx_template_items_flatpos" in names
        assert "idx_session_items_flatpos" in names

    def test_old_sessions_table_gains_cycle_and_deleted_columns(self, tmp_path):
        db_file = tmp_path / "sessions.db"
        conn = sqlite3.connect(str(db_file))
        conn.execute(
            "CREATE TABLE sessions (id INTEGER PRIMARY KEY AUTOINCREMENT, template_id INTEGER, title TEXT, started_at TEXT, finished_at TEXT, total_sets INTEGER, total_volume REAL, duration_seconds INTEGER)"
        )
        conn.execute(
            "INSERT INTO sessions (template_id, title, started_at, total_sets, total_volume) VALUES (NULL, 'Old', '2024-01-01T08:00:00', 4, 1200.0)"
        )
        conn.commit()
        conn.close()

        Database(str(db_file))

        conn = sqlite3.connect(str(db_file))
        cols = [row[1] for row in conn.execute("PRAGMA table_info(sessions)").fetchall()]
        assert cols[-2:] == ["cycle_id", "deleted_at"]
        rows = conn.execute(
            "SELECT title, total_sets, total_volume, cycle_id, deleted_at FROM sessions"
        ).fetchall()
        conn.close()
        assert rows == [("Old", 4, 1200.0, None, None)]
