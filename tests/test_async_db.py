import os
import sys
import sqlite3
import pytest
from decimal import Decimal

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from algorithms import FlatPosition, PositionAllocator
from db import (
    AsyncBaseRepository,
    AsyncTemplateTreeRepository,
    ExerciseRepository,
    TemplateRepository,
    TemplateGroupRepository,
    TemplateItemRepository,
    TEMPLATE_GROUPS_QUERY,
)
from errors import NotFound
from hierarchy_service import HierarchyService, build_template_tree

class NumberRepository(AsyncBaseRepository):
    async def init_db(self) -> None:
        async with self._async_connection() as conn:
            await conn.execute("CREATE TABLE IF NOT EXISTS numbers (val INTEGER)")
            await conn.commit()

    async def add(self, val: int) -> int:
        return await self.execute("INSERT INTO numbers (val) VALUES (?)", (val,))

    async def all(self):
        rows = await self.fetch_all("SELECT val FROM numbers")
        return [r[0] for r in rows]


class InterleavedWriteRepository(AsyncTemplateTreeRepository):
    """Adds a group with one item right after the group rows were read."""

    def __init__(self, db_path: str, template_id: int, exercise_id: int) -> None:
        super().__init__(db_path)
        self.template_id = template_id
        self.exercise_id = exercise_id
        self.write_committed = None

    async def _fetch(self, conn, query, params):
        rows = await super()._fetch(conn, query, params)
        if query == TEMPLATE_GROUPS_QUERY:
            self.write_committed = self._write_group_with_item()
        return rows

    def _write_group_with_item(self) -> bool:
        group_key = Decimal(50)
        writer = sqlite3.connect(self._db_path, timeout=0)
        try:
            cur = writer.execute(
                "INSERT INTO template_groups (template_id, name, kind, rest_seconds, position) "
                "VALUES (?, 'Z', 'single', 30, ?);",
                (self.template_id, PositionAllocator.encode_key(group_key)),
            )
            writer.execute(
                "INSERT INTO template_items (template_id, group_id, exercise_id, group_position, position) "
                "VALUES (?, ?, ?, ?, ?);",
                (
                    self.template_id,
                    cur.lastrowid,
                    self.exercise_id,
                    PositionAllocator.encode_key(Decimal(1)),
                    FlatPosition.combine(group_key, Decimal(1)),
                ),
            )
            writer.commit()
            return True
        except sqlite3.OperationalError:
            writer.rollback()
            return False
        finally:
            writer.close()


def _service(db_file):
    exercises = ExerciseRepository(db_file)
    service = HierarchyService(
        TemplateRepository(db_file),
        TemplateGroupRepository(db_file),
        TemplateItemRepository(db_file),
        exercises,
    )
    return service, exercises


@pytest.mark.asyncio
async def test_async_repository(tmp_path):
    repo = NumberRepository(str(tmp_path / "test.db"))
    await repo.init_db()
    await repo.add(5)
    assert await repo.all() == [5]


@pytest.mark.asyncio
async def test_async_tree_matches_sync_tree(tmp_path):
    db_file = str(tmp_path / "tree.db")
    service, exercises = _service(db_file)
    tid = service.create_template("Push")
    a = service.insert_group(tid)
    b = service.insert_group(tid, rest_seconds=60)
    service.insert_item(a["id"], exercises.add("Bench Press"))
    service.insert_item(b["id"], exercises.add("Dip"), rest_seconds_override=30)
    service.move_group(tid, b["id"], a["id"])

    repo = AsyncTemplateTreeRepository(db_file)
    tree = build_template_tree(*await repo.fetch_tree(tid))
    assert tree == service.get_template_tree(tid)
    assert [g["name"] for g in tree["groups"]] == ["B", "A"]
    assert tree["groups"][0]["items"][0]["rest_seconds_effective"] == 30


@pytest.mark.asyncio
async def test_async_tree_reads_one_consistent_state(tmp_path):
    db_file = str(tmp_path / "tree.db")
    service, exercises = _service(db_file)
    tid = service.create_template("Pull")
    a = service.insert_group(tid)
    row = exercises.add("Barbell Row")
    service.insert_item(a["id"], row)
    before = service.get_template_tree(tid)

    repo = InterleavedWriteRepository(db_file, tid, row)
    tree = build_template_tree(*await repo.fetch_tree(tid))
    assert repo.write_committed is not None
    assert tree == before
    if repo.write_committed:
        assert [g["name"] for g in service.get_template_tree(tid)["groups"]] == ["A", "Z"]


@pytest.mark.asyncio
async def test_async_tree_missing_template(tmp_path):
    repo = AsyncTemplateTreeRepository(str(tmp_path / "empty.db"))
    with pytest.raises(NotFound):
        await repo.fetch_tree(1)
