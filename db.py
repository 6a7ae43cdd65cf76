import sqlite3
import aiosqlite
import datetime
import logging
from contextlib import closing, contextmanager, asynccontextmanager
from decimal import Decimal
from typing import List, Tuple, Optional

from algorithms import PositionAllocator, FlatPosition
from errors import NotFound, InstanceClosed

logger = logging.getLogger(__name__)

GROUP_KINDS = ("single", "paired", "triple", "circuit")
EXERCISE_CATEGORIES = ("strength", "cardio", "mobility", "balance")


class Database:
    """Provides SQLite connection management and schema initialization."""

    _TABLE_DEFINITIONS = {
        "exercises": (
            """CREATE TABLE exercises (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    category TEXT NOT NULL DEFAULT 'strength',
                    instructions TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                );""",
            ["id", "name", "category", "instructions", "created_at"],
        ),
        "templates": (
            """CREATE TABLE templates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    notes TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL,
                    last_used TEXT
                );""",
            ["id", "name", "notes", "created_at", "last_used"],
        ),
        "template_groups": (
            """CREATE TABLE template_groups (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    template_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    kind TEXT NOT NULL DEFAULT 'single',
                    rest_seconds INTEGER NOT NULL CHECK (rest_seconds > 0),
                    position TEXT NOT NULL,
                    UNIQUE (template_id, name),
                    FOREIGN KEY(template_id) REFERENCES templates(id) ON DELETE CASCADE
                );""",
            ["id", "template_id", "name", "kind", "rest_seconds", "position"],
        ),
        "template_items": (
            """CREATE TABLE template_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    template_id INTEGER NOT NULL,
                    group_id INTEGER NOT NULL,
                    exercise_id INTEGER NOT NULL,
                    group_position TEXT NOT NULL,
                    position TEXT NOT NULL,
                    target_sets INTEGER NOT NULL DEFAULT 3 CHECK (target_sets > 0),
                    target_reps INTEGER NOT NULL DEFAULT 10 CHECK (target_reps > 0),
                    target_weight REAL,
                    rest_seconds_override INTEGER CHECK (rest_seconds_override > 0),
                    FOREIGN KEY(template_id) REFERENCES templates(id) ON DELETE CASCADE,
                    FOREIGN KEY(group_id) REFERENCES template_groups(id) ON DELETE CASCADE,
                    FOREIGN KEY(exercise_id) REFERENCES exercises(id) ON DELETE RESTRICT
                );""",
            [
                "id",
                "template_id",
                "group_id",
                "exercise_id",
                "group_position",
                "position",
                "target_sets",
                "target_reps",
                "target_weight",
                "rest_seconds_override",
            ],
        ),
        "cycles": (
            """CREATE TABLE cycles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    template_id INTEGER NOT NULL,
                    name TEXT NOT NULL CHECK (length(name) <= 200),
                    duration_weeks INTEGER NOT NULL CHECK (duration_weeks BETWEEN 1 AND 52),
                    started_at TEXT NOT NULL,
                    ended_at TEXT,
                    deleted_at TEXT,
                    CHECK (ended_at IS NULL OR ended_at > started_at),
                    FOREIGN KEY(template_id) REFERENCES templates(id) ON DELETE RESTRICT
                );""",
            [
                "id",
                "template_id",
                "name",
                "duration_weeks",
                "started_at",
                "ended_at",
                "deleted_at",
            ],
        ),
        "sessions": (
            """CREATE TABLE sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    template_id INTEGER,
                    title TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    total_sets INTEGER NOT NULL DEFAULT 0,
                    total_volume REAL NOT NULL DEFAULT 0,
                    duration_seconds INTEGER,
                    cycle_id INTEGER,
                    deleted_at TEXT,
                    FOREIGN KEY(template_id) REFERENCES templates(id) ON DELETE SET NULL,
                    FOREIGN KEY(cycle_id) REFERENCES cycles(id) ON DELETE SET NULL
                );""",
            [
                "id",
                "template_id",
                "title",
                "started_at",
                "finished_at",
                "total_sets",
                "total_volume",
                "duration_seconds",
                "cycle_id",
                "deleted_at",
            ],
        ),
        "session_groups": (
            """CREATE TABLE session_groups (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    rest_seconds INTEGER NOT NULL CHECK (rest_seconds > 0),
                    position TEXT NOT NULL,
                    FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
                );""",
            ["id", "session_id", "name", "kind", "rest_seconds", "position"],
        ),
        "session_items": (
            """CREATE TABLE session_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id INTEGER NOT NULL,
                    group_id INTEGER NOT NULL,
                    exercise_id INTEGER,
                    exercise_name TEXT NOT NULL,
                    group_position TEXT NOT NULL,
                    position TEXT NOT NULL,
                    target_sets INTEGER,
                    target_reps INTEGER,
                    target_weight REAL,
                    rest_seconds INTEGER NOT NULL CHECK (rest_seconds > 0),
                    FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE,
                    FOREIGN KEY(group_id) REFERENCES session_groups(id) ON DELETE CASCADE,
                    FOREIGN KEY(exercise_id) REFERENCES exercises(id) ON DELETE SET NULL
                );""",
            [
                "id",
                "session_id",
                "group_id",
                "exercise_id",
                "exercise_name",
                "group_position",
                "position",
                "target_sets",
                "target_reps",
                "target_weight",
                "rest_seconds",
            ],
        ),
        "logged_sets": (
            """CREATE TABLE logged_sets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_item_id INTEGER NOT NULL,
                    set_index INTEGER NOT NULL CHECK (set_index >= 1),
                    reps INTEGER NOT NULL CHECK (reps >= 0),
                    weight REAL NOT NULL CHECK (weight >= 0),
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(session_item_id) REFERENCES session_items(id) ON DELETE CASCADE
                );""",
            ["id", "session_item_id", "set_index", "reps", "weight", "created_at"],
        ),
    }

    _INDEX_DEFINITIONS = [
        "CREATE INDEX IF NOT EXISTS idx_template_groups_order ON template_groups(template_id, position);",
        "CREATE INDEX IF NOT EXISTS idx_template_items_groupord ON template_items(group_id, group_position);",
        "CREATE INDEX IF NOT EXISTS idx_template_items_flatpos ON template_items(template_id, position);",
        "CREATE INDEX IF NOT EXISTS idx_session_groups_order ON session_groups(session_id, position);",
        "CREATE INDEX IF NOT EXISTS idx_session_items_flatpos ON session_items(session_id, position);",
        "CREATE INDEX IF NOT EXISTS idx_logged_sets_item ON logged_sets(session_item_id, set_index);",
        "CREATE INDEX IF NOT EXISTS idx_cycles_started ON cycles(started_at DESC);",
        "CREATE INDEX IF NOT EXISTS idx_sessions_cycle ON sessions(cycle_id);",
    ]

    def __init__(self, db_path: str = "workout.db") -> None:
        self._db_path = db_path
        self._ensure_schema()
        self._ensure_indexes()

    @contextmanager
    def _connection(self):
        connection = sqlite3.connect(self._db_path)
        connection.execute("PRAGMA foreign_keys=ON;")
        try:
            yield connection
            connection.commit()
        except BaseException:
            connection.rollback()
            raise
        finally:
            connection.close()

    @contextmanager
    def transaction(self):
        """Yield a connection holding the write lock until the block commits.

        Reads made through the yielded connection observe one consistent state
        of the database; nothing written inside the block is visible to other
        connections unless the block exits without an exception.
        """
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE;")
            yield conn

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            conn.execute("PRAGMA foreign_keys=off;")
            conn.execute("PRAGMA legacy_alter_table=ON;")
            for table, (sql, columns) in self._TABLE_DEFINITIONS.items():
                self._ensure_table(conn, table, sql, columns)
            conn.execute("PRAGMA foreign_keys=on;")

    def _ensure_indexes(self) -> None:
        with self._connection() as conn:
            for sql in self._INDEX_DEFINITIONS:
                conn.execute(sql)

    def _ensure_table(
        self, conn: sqlite3.Connection, table: str, sql: str, columns: List[str]
    ) -> None:
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
        )
        if cur.fetchone() is None:
            conn.execute(sql)
            return

        cur = conn.execute(f"PRAGMA table_info({table});")
        existing_cols = [row[1] for row in cur.fetchall()]
        if existing_cols == columns:
            return

        logger.info("migrating table %s", table)
        conn.execute(f"DROP TABLE IF EXISTS {table}_old;")
        conn.execute(f"ALTER TABLE {table} RENAME TO {table}_old;")
        conn.execute(sql)

        common = [c for c in existing_cols if c in columns]
        if common:
            cols = ", ".join(common)
            missing = [c for c in columns if c not in existing_cols]
            if missing:
                def default_val(col: str) -> str:
                    if col == "kind":
                        return "'single'"
                    if col in ("notes", "instructions"):
                        return "''"
                    if col in ("total_sets", "total_volume"):
                        return "0"
                    if col in ("created_at", "started_at"):
                        return "datetime('now')"
                    return "NULL"

                defaults = ", ".join(default_val(c) for c in missing)
                conn.execute(
                    f"INSERT INTO {table} ({cols}, {', '.join(missing)}) SELECT {cols}, {defaults} FROM {table}_old;"
                )
            else:
                conn.execute(
                    f"INSERT INTO {table} ({cols}) SELECT {cols} FROM {table}_old;"
                )
        conn.execute(f"DROP TABLE {table}_old;")


class BaseRepository(Database):
    """Base repository providing helper methods.

    Every helper accepts an optional open connection so that services can run
    several repository calls inside one :meth:`Database.transaction`.
    """

    def execute(
        self, query: str, params: Tuple = (), conn: sqlite3.Connection | None = None
    ) -> int:
        if conn is not None:
            with closing(conn.cursor()) as cursor:
                cursor.execute(query, params)
                return cursor.lastrowid
        with self._connection() as conn:
            with closing(conn.cursor()) as cursor:
                cursor.execute(query, params)
                return cursor.lastrowid

    def fetch_all(
        self, query: str, params: Tuple = (), conn: sqlite3.Connection | None = None
    ) -> List[Tuple]:
        if conn is not None:
            with closing(conn.cursor()) as cursor:
                cursor.execute(query, params)
                return cursor.fetchall()
        with self._connection() as conn:
            with closing(conn.cursor()) as cursor:
                cursor.execute(query, params)
                return cursor.fetchall()

    @staticmethod
    def _now() -> str:
        return datetime.datetime.now().isoformat(timespec="seconds")


class AsyncDatabase(Database):
    """Provides asynchronous connection management."""

    @asynccontextmanager
    async def _async_connection(self):
        conn = await aiosqlite.connect(self._db_path)
        try:
            await conn.execute("PRAGMA foreign_keys=ON;")
            yield conn
            await conn.commit()
        except BaseException:
            await conn.rollback()
            raise
        finally:
            await conn.close()


class AsyncBaseRepository(AsyncDatabase):
    """Asynchronous variant of BaseRepository using aiosqlite."""

    async def execute(self, query: str, params: Tuple = ()) -> int:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor.lastrowid

    async def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            return list(rows)


class ExerciseRepository(BaseRepository):
    """Repository for the exercise library."""

    def add(self, name: str, category: str = "strength", instructions: str = "") -> int:
        name = name.strip()
        if not name:
            raise ValueError("name must not be empty")
        if category not in EXERCISE_CATEGORIES:
            raise ValueError(f"category must be one of {', '.join(EXERCISE_CATEGORIES)}")
        try:
            return self.execute(
                "INSERT INTO exercises (name, category, instructions, created_at) VALUES (?, ?, ?, ?);",
                (name, category, instructions, self._now()),
            )
        except sqlite3.IntegrityError:
            raise ValueError("exercise already exists")

    def fetch_all_exercises(self) -> List[Tuple[int, str, str, str]]:
        return self.fetch_all(
            "SELECT id, name, category, instructions FROM exercises ORDER BY name;"
        )

    def fetch_detail(
        self, exercise_id: int, conn: sqlite3.Connection | None = None
    ) -> Tuple[int, str, str, str]:
        rows = self.fetch_all(
            "SELECT id, name, category, instructions FROM exercises WHERE id = ?;",
            (exercise_id,),
            conn,
        )
        if not rows:
            raise NotFound("exercise not found")
        return rows[0]

    def update(
        self,
        exercise_id: int,
        name: str | None = None,
        category: str | None = None,
        instructions: str | None = None,
    ) -> None:
        self.fetch_detail(exercise_id)
        if category is not None and category not in EXERCISE_CATEGORIES:
            raise ValueError(f"category must be one of {', '.join(EXERCISE_CATEGORIES)}")
        with self._connection() as conn:
            try:
                if name is not None:
                    conn.execute(
                        "UPDATE exercises SET name = ? WHERE id = ?;",
                        (name.strip(), exercise_id),
                    )
            except sqlite3.IntegrityError:
                raise ValueError("exercise already exists")
            if category is not None:
                conn.execute(
                    "UPDATE exercises SET category = ? WHERE id = ?;",
                    (category, exercise_id),
                )
            if instructions is not None:
                conn.execute(
                    "UPDATE exercises SET instructions = ? WHERE id = ?;",
                    (instructions, exercise_id),
                )

    def delete(self, exercise_id: int) -> None:
        self.fetch_detail(exercise_id)
        try:
            self.execute("DELETE FROM exercises WHERE id = ?;", (exercise_id,))
        except sqlite3.IntegrityError:
            raise ValueError("exercise is used by a template")


class TemplateRepository(BaseRepository):
    """Repository for template tree roots."""

    def create(
        self, name: str, notes: str = "", conn: sqlite3.Connection | None = None
    ) -> int:
        name = name.strip()
        if not name:
            raise ValueError("name must not be empty")
        try:
            return self.execute(
                "INSERT INTO templates (name, notes, created_at) VALUES (?, ?, ?);",
                (name, notes, self._now()),
                conn,
            )
        except sqlite3.IntegrityError:
            raise ValueError("template already exists")

    def fetch_all_templates(self) -> List[Tuple[int, str, str, Optional[str], int, int]]:
        return self.fetch_all(
            "SELECT t.id, t.name, t.notes, t.last_used, "
            "(SELECT COUNT(*) FROM template_groups g WHERE g.template_id = t.id), "
            "(SELECT COUNT(*) FROM template_items i WHERE i.template_id = t.id) "
            "FROM templates t ORDER BY t.name;"
        )

    def fetch_detail(
        self, template_id: int, conn: sqlite3.Connection | None = None
    ) -> Tuple[int, str, str, str, Optional[str]]:
        rows = self.fetch_all(TEMPLATE_DETAIL_QUERY, (template_id,), conn)
        if not rows:
            raise NotFound("template not found")
        return rows[0]

    def update(
        self, template_id: int, name: str | None = None, notes: str | None = None
    ) -> None:
        self.fetch_detail(template_id)
        with self._connection() as conn:
            if name is not None:
                try:
                    conn.execute(
                        "UPDATE templates SET name = ? WHERE id = ?;",
                        (name.strip(), template_id),
                    )
                except sqlite3.IntegrityError:
                    raise ValueError("template already exists")
            if notes is not None:
                conn.execute(
                    "UPDATE templates SET notes = ? WHERE id = ?;",
                    (notes, template_id),
                )

    def delete(self, template_id: int) -> None:
        self.fetch_detail(template_id)
        try:
            self.execute("DELETE FROM templates WHERE id = ?;", (template_id,))
        except sqlite3.IntegrityError:
            raise ValueError("template is used by a cycle")

    def update_last_used(
        self, template_id: int, timestamp: str, conn: sqlite3.Connection | None = None
    ) -> None:
        self.execute(
            "UPDATE templates SET last_used = ? WHERE id = ?;",
            (timestamp, template_id),
            conn,
        )


class OrderedGroupRepository(BaseRepository):
    """Groups of one hierarchy side, ordered within their parent.

    Subclasses name the group table, its parent column and the item table
    whose flat positions depend on the group's order key.
    """

    TABLE = ""
    PARENT_COLUMN = ""
    ITEM_TABLE = ""

    def add(
        self,
        parent_id: int,
        name: str,
        kind: str,
        rest_seconds: int,
        position: Decimal,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        if kind not in GROUP_KINDS:
            raise ValueError(f"kind must be one of {', '.join(GROUP_KINDS)}")
        if rest_seconds <= 0:
            raise ValueError("rest_seconds must be positive")
        try:
            return self.execute(
                f"INSERT INTO {self.TABLE} ({self.PARENT_COLUMN}, name, kind, rest_seconds, position) VALUES (?, ?, ?, ?, ?);",
                (parent_id, name, kind, rest_seconds, PositionAllocator.encode_key(position)),
                conn,
            )
        except sqlite3.IntegrityError:
            raise ValueError("group name already used")

    def fetch_for_parent(
        self, parent_id: int, conn: sqlite3.Connection | None = None
    ) -> List[Tuple[int, str, str, int, Decimal]]:
        rows = self.fetch_all(
            f"SELECT id, name, kind, rest_seconds, position FROM {self.TABLE} "
            f"WHERE {self.PARENT_COLUMN} = ? ORDER BY position;",
            (parent_id,),
            conn,
        )
        return [
            (gid, name, kind, rest, PositionAllocator.decode_key(pos))
            for gid, name, kind, rest, pos in rows
        ]

    def fetch_detail(
        self, group_id: int, conn: sqlite3.Connection | None = None
    ) -> Tuple[int, int, str, str, int, Decimal]:
        rows = self.fetch_all(
            f"SELECT id, {self.PARENT_COLUMN}, name, kind, rest_seconds, position FROM {self.TABLE} WHERE id = ?;",
            (group_id,),
            conn,
        )
        if not rows:
            raise NotFound("group not found")
        gid, parent_id, name, kind, rest, pos = rows[0]
        return gid, parent_id, name, kind, rest, PositionAllocator.decode_key(pos)

    def update(
        self,
        group_id: int,
        name: str | None = None,
        kind: str | None = None,
        rest_seconds: int | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        if kind is not None and kind not in GROUP_KINDS:
            raise ValueError(f"kind must be one of {', '.join(GROUP_KINDS)}")
        if rest_seconds is not None and rest_seconds <= 0:
            raise ValueError("rest_seconds must be positive")
        try:
            if name is not None:
                self.execute(
                    f"UPDATE {self.TABLE} SET name = ? WHERE id = ?;",
                    (name, group_id),
                    conn,
                )
        except sqlite3.IntegrityError:
            raise ValueError("group name already used")
        if kind is not None:
            self.execute(
                f"UPDATE {self.TABLE} SET kind = ? WHERE id = ?;", (kind, group_id), conn
            )
        if rest_seconds is not None:
            self.execute(
                f"UPDATE {self.TABLE} SET rest_seconds = ? WHERE id = ?;",
                (rest_seconds, group_id),
                conn,
            )

    def set_position(
        self, group_id: int, position: Decimal, conn: sqlite3.Connection | None = None
    ) -> None:
        """Store a new order key and re-derive the flat key of every item below."""
        self.execute(
            f"UPDATE {self.TABLE} SET position = ? WHERE id = ?;",
            (PositionAllocator.encode_key(position), group_id),
            conn,
        )
        rows = self.fetch_all(
            f"SELECT id, group_position FROM {self.ITEM_TABLE} WHERE group_id = ?;",
            (group_id,),
            conn,
        )
        for item_id, local in rows:
            self.execute(
                f"UPDATE {self.ITEM_TABLE} SET position = ? WHERE id = ?;",
                (FlatPosition.combine(position, PositionAllocator.decode_key(local)), item_id),
                conn,
            )

    def delete(self, group_id: int, conn: sqlite3.Connection | None = None) -> None:
        self.execute(f"DELETE FROM {self.TABLE} WHERE id = ?;", (group_id,), conn)


class OrderedItemRepository(BaseRepository):
    """Items of one hierarchy side, ordered within their group."""

    TABLE = ""
    PARENT_COLUMN = ""
    GROUP_TABLE = ""

    def _group_key(self, group_id: int, conn: sqlite3.Connection | None) -> Decimal:
        rows = self.fetch_all(
            f"SELECT position FROM {self.GROUP_TABLE} WHERE id = ?;", (group_id,), conn
        )
        if not rows:
            raise NotFound("group not found")
        return PositionAllocator.decode_key(rows[0][0])

    def fetch_for_group(
        self, group_id: int, conn: sqlite3.Connection | None = None
    ) -> List[Tuple[int, Decimal]]:
        rows = self.fetch_all(
            f"SELECT id, group_position FROM {self.TABLE} WHERE group_id = ? ORDER BY group_position;",
            (group_id,),
            conn,
        )
        return [(iid, PositionAllocator.decode_key(pos)) for iid, pos in rows]

    def fetch_location(
        self, item_id: int, conn: sqlite3.Connection | None = None
    ) -> Tuple[int, int, int, Decimal]:
        """Return ``(item_id, parent_id, group_id, group_position)``."""
        rows = self.fetch_all(
            f"SELECT id, {self.PARENT_COLUMN}, group_id, group_position FROM {self.TABLE} WHERE id = ?;",
            (item_id,),
            conn,
        )
        if not rows:
            raise NotFound("item not found")
        iid, parent_id, group_id, pos = rows[0]
        return iid, parent_id, group_id, PositionAllocator.decode_key(pos)

    def set_position(
        self,
        item_id: int,
        group_id: int,
        position: Decimal,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """Attach the item to ``group_id`` at ``position`` and re-derive its flat key."""
        flat = FlatPosition.combine(self._group_key(group_id, conn), position)
        self.execute(
            f"UPDATE {self.TABLE} SET group_id = ?, group_position = ?, position = ? WHERE id = ?;",
            (group_id, PositionAllocator.encode_key(position), flat, item_id),
            conn,
        )

    def delete(self, item_id: int, conn: sqlite3.Connection | None = None) -> None:
        self.execute(f"DELETE FROM {self.TABLE} WHERE id = ?;", (item_id,), conn)


class TemplateGroupRepository(OrderedGroupRepository):
    """Repository for groups inside templates."""

    TABLE = "template_groups"
    PARENT_COLUMN = "template_id"
    ITEM_TABLE = "template_items"


class SessionGroupRepository(OrderedGroupRepository):
    """Repository for groups copied into sessions."""

    TABLE = "session_groups"
    PARENT_COLUMN = "session_id"
    ITEM_TABLE = "session_items"


class TemplateItemRepository(OrderedItemRepository):
    """Repository for exercise items inside template groups."""

    TABLE = "template_items"
    PARENT_COLUMN = "template_id"
    GROUP_TABLE = "template_groups"

    def add(
        self,
        template_id: int,
        group_id: int,
        exercise_id: int,
        position: Decimal,
        target_sets: int = 3,
        target_reps: int = 10,
        target_weight: float | None = None,
        rest_seconds_override: int | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        self._validate_targets(target_sets, target_reps, target_weight, rest_seconds_override)
        flat = FlatPosition.combine(self._group_key(group_id, conn), position)
        return self.execute(
            "INSERT INTO template_items (template_id, group_id, exercise_id, group_position, position, "
            "target_sets, target_reps, target_weight, rest_seconds_override) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);",
            (
                template_id,
                group_id,
                exercise_id,
                PositionAllocator.encode_key(position),
                flat,
                target_sets,
                target_reps,
                target_weight,
                rest_seconds_override,
            ),
            conn,
        )

    @staticmethod
    def _validate_targets(
        target_sets: int | None,
        target_reps: int | None,
        target_weight: float | None,
        rest_seconds_override: int | None,
    ) -> None:
        if target_sets is not None and target_sets <= 0:
            raise ValueError("target_sets must be positive")
        if target_reps is not None and target_reps <= 0:
            raise ValueError("target_reps must be positive")
        if target_weight is not None and target_weight < 0:
            raise ValueError("target_weight must be non-negative")
        if rest_seconds_override is not None and rest_seconds_override <= 0:
            raise ValueError("rest_seconds_override must be positive")

    def update(
        self,
        item_id: int,
        target_sets: int | None = None,
        target_reps: int | None = None,
        target_weight: float | None = None,
        rest_seconds_override: int | None = None,
        clear_override: bool = False,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        self._validate_targets(target_sets, target_reps, target_weight, rest_seconds_override)
        query = "UPDATE template_items SET "
        fields: list[str] = []
        params: list = []
        for column, value in (
            ("target_sets", target_sets),
            ("target_reps", target_reps),
            ("target_weight", target_weight),
            ("rest_seconds_override", rest_seconds_override),
        ):
            if value is not None:
                fields.append(f"{column} = ?")
                params.append(value)
        if clear_override:
            fields.append("rest_seconds_override = NULL")
        if not fields:
            return
        query += ", ".join(fields) + " WHERE id = ?;"
        params.append(item_id)
        self.execute(query, tuple(params), conn)

    def fetch_for_template(
        self, template_id: int, conn: sqlite3.Connection | None = None
    ) -> List[Tuple]:
        """Return every item of a template in flat order with its exercise name.

        Columns: id, group_id, exercise_id, exercise_name, group_position,
        position, target_sets, target_reps, target_weight,
        rest_seconds_override, group rest_seconds.
        """
        return self.fetch_all(TEMPLATE_ITEMS_QUERY, (template_id,), conn)

    def fetch_detail(self, item_id: int, conn: sqlite3.Connection | None = None) -> Tuple:
        """Same columns as :meth:`fetch_for_template` for a single item."""
        rows = self.fetch_all(TEMPLATE_ITEM_QUERY, (item_id,), conn)
        if not rows:
            raise NotFound("item not found")
        return rows[0]


class SessionItemRepository(OrderedItemRepository):
    """Repository for resolved items inside session groups."""

    TABLE = "session_items"
    PARENT_COLUMN = "session_id"
    GROUP_TABLE = "session_groups"

    def add(
        self,
        session_id: int,
        group_id: int,
        exercise_id: int | None,
        exercise_name: str,
        position: Decimal,
        target_sets: int | None,
        target_reps: int | None,
        target_weight: float | None,
        rest_seconds: int,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        if rest_seconds is None or rest_seconds <= 0:
            raise ValueError("rest_seconds must be resolved to a positive value")
        flat = FlatPosition.combine(self._group_key(group_id, conn), position)
        return self.execute(
            "INSERT INTO session_items (session_id, group_id, exercise_id, exercise_name, group_position, position, "
            "target_sets, target_reps, target_weight, rest_seconds) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);",
            (
                session_id,
                group_id,
                exercise_id,
                exercise_name,
                PositionAllocator.encode_key(position),
                flat,
                target_sets,
                target_reps,
                target_weight,
                rest_seconds,
            ),
            conn,
        )

    def fetch_for_session(
        self, session_id: int, conn: sqlite3.Connection | None = None
    ) -> List[Tuple]:
        """Columns: id, group_id, exercise_id, exercise_name, group_position,
        position, target_sets, target_reps, target_weight, rest_seconds."""
        return self.fetch_all(
            "SELECT id, group_id, exercise_id, exercise_name, group_position, position, "
            "target_sets, target_reps, target_weight, rest_seconds "
            "FROM session_items WHERE session_id = ? ORDER BY position;",
            (session_id,),
            conn,
        )


class SoftDeleteRepository(BaseRepository):
    """Root records hidden by a ``deleted_at`` stamp instead of being removed.

    Live reads filter on ``deleted_at IS NULL``. A hidden record can be
    restored, or purged for good, which only works on hidden records.
    """

    TABLE = ""
    LABEL_COLUMN = "name"
    NOUN = "record"

    def _exists(
        self, record_id: int, deleted: bool, conn: sqlite3.Connection | None = None
    ) -> bool:
        state = "IS NOT NULL" if deleted else "IS NULL"
        rows = self.fetch_all(
            f"SELECT id FROM {self.TABLE} WHERE id = ? AND deleted_at {state};",
            (record_id,),
            conn,
        )
        return bool(rows)

    def soft_delete(self, record_id: int, deleted_at: str | None = None) -> None:
        with self.transaction() as conn:
            if not self._exists(record_id, False, conn):
                raise NotFound(f"{self.NOUN} not found")
            self.execute(
                f"UPDATE {self.TABLE} SET deleted_at = ? WHERE id = ?;",
                (deleted_at or self._now(), record_id),
                conn,
            )

    def restore(self, record_id: int) -> None:
        with self.transaction() as conn:
            if not self._exists(record_id, True, conn):
                raise NotFound(f"deleted {self.NOUN} not found")
            self.execute(
                f"UPDATE {self.TABLE} SET deleted_at = NULL WHERE id = ?;",
                (record_id,),
                conn,
            )

    def purge(self, record_id: int) -> None:
        with self.transaction() as conn:
            if not self._exists(record_id, True, conn):
                raise NotFound(f"deleted {self.NOUN} not found")
            self.execute(f"DELETE FROM {self.TABLE} WHERE id = ?;", (record_id,), conn)

    def fetch_deleted(self) -> List[Tuple[int, str, str]]:
        return self.fetch_all(
            f"SELECT id, {self.LABEL_COLUMN}, deleted_at FROM {self.TABLE} "
            "WHERE deleted_at IS NOT NULL ORDER BY deleted_at DESC, id DESC;"
        )


_SESSION_COLUMNS = (
    "id, template_id, title, started_at, finished_at, total_sets, total_volume, "
    "duration_seconds, cycle_id"
)


class SessionRepository(SoftDeleteRepository):
    """Repository for session roots."""

    TABLE = "sessions"
    LABEL_COLUMN = "title"
    NOUN = "session"

    def create(
        self,
        template_id: int | None,
        title: str,
        started_at: str | None = None,
        conn: sqlite3.Connection | None = None,
        cycle_id: int | None = None,
    ) -> int:
        if cycle_id is not None:
            rows = self.fetch_all(
                "SELECT id FROM cycles WHERE id = ? AND deleted_at IS NULL;",
                (cycle_id,),
                conn,
            )
            if not rows:
                raise NotFound("cycle not found")
        return self.execute(
            "INSERT INTO sessions (template_id, title, started_at, cycle_id) VALUES (?, ?, ?, ?);",
            (template_id, title, started_at or self._now(), cycle_id),
            conn,
        )

    def fetch_detail(
        self, session_id: int, conn: sqlite3.Connection | None = None
    ) -> Tuple[int, Optional[int], str, str, Optional[str], int, float, Optional[int], Optional[int]]:
        rows = self.fetch_all(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ? AND deleted_at IS NULL;",
            (session_id,),
            conn,
        )
        if not rows:
            raise NotFound("session not found")
        return rows[0]

    def fetch_all_sessions(
        self, template_id: int | None = None, cycle_id: int | None = None
    ) -> List[Tuple[int, Optional[int], str, str, Optional[str], int, float, Optional[int], Optional[int]]]:
        query = f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE deleted_at IS NULL"
        params: list = []
        if template_id is not None:
            query += " AND template_id = ?"
            params.append(template_id)
        if cycle_id is not None:
            query += " AND cycle_id = ?"
            params.append(cycle_id)
        query += " ORDER BY started_at DESC, id DESC;"
        return self.fetch_all(query, tuple(params))

    def ensure_open(self, session_id: int, conn: sqlite3.Connection | None = None) -> None:
        if self.fetch_detail(session_id, conn)[4] is not None:
            raise InstanceClosed("session already finished")

    def finish(
        self,
        session_id: int,
        finished_at: str,
        total_sets: int,
        total_volume: float,
        duration_seconds: int | None,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        self.execute(
            "UPDATE sessions SET finished_at = ?, total_sets = ?, total_volume = ?, duration_seconds = ? WHERE id = ?;",
            (finished_at, total_sets, total_volume, duration_seconds, session_id),
            conn,
        )


_CYCLE_SELECT = (
    "SELECT c.id, c.template_id, t.name, c.name, c.duration_weeks, c.started_at, c.ended_at "
    "FROM cycles c JOIN templates t ON t.id = c.template_id "
)


class CycleRepository(SoftDeleteRepository):
    """Repository for multi-week cycles running one template.

    Rows are ``(id, template_id, template_name, name, duration_weeks,
    started_at, ended_at)``.
    """

    TABLE = "cycles"
    NOUN = "cycle"

    def create(
        self,
        template_id: int,
        name: str,
        duration_weeks: int,
        started_at: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        name = name.strip()
        if not name:
            raise ValueError("name must not be empty")
        if len(name) > 200:
            raise ValueError("name must be at most 200 characters")
        if not 1 <= duration_weeks <= 52:
            raise ValueError("duration_weeks must be between 1 and 52")
        return self.execute(
            "INSERT INTO cycles (template_id, name, duration_weeks, started_at) VALUES (?, ?, ?, ?);",
            (template_id, name, duration_weeks, started_at or self._now()),
            conn,
        )

    def fetch_detail(self, cycle_id: int, conn: sqlite3.Connection | None = None) -> Tuple:
        rows = self.fetch_all(
            _CYCLE_SELECT + "WHERE c.id = ? AND c.deleted_at IS NULL;", (cycle_id,), conn
        )
        if not rows:
            raise NotFound("cycle not found")
        return rows[0]

    def fetch_all_cycles(self) -> List[Tuple]:
        return self.fetch_all(
            _CYCLE_SELECT + "WHERE c.deleted_at IS NULL ORDER BY c.started_at DESC, c.id DESC;"
        )

    def fetch_active(self) -> Optional[Tuple]:
        """Return the most recently started cycle that has not ended."""
        rows = self.fetch_all(
            _CYCLE_SELECT
            + "WHERE c.ended_at IS NULL AND c.deleted_at IS NULL "
            "ORDER BY c.started_at DESC, c.id DESC LIMIT 1;"
        )
        return rows[0] if rows else None

    def count_sessions(self, cycle_id: int, conn: sqlite3.Connection | None = None) -> int:
        rows = self.fetch_all(
            "SELECT COUNT(*) FROM sessions WHERE cycle_id = ? AND deleted_at IS NULL;",
            (cycle_id,),
            conn,
        )
        return int(rows[0][0])

    def end(self, cycle_id: int, ended_at: str, conn: sqlite3.Connection | None = None) -> None:
        self.execute(
            "UPDATE cycles SET ended_at = ? WHERE id = ?;", (ended_at, cycle_id), conn
        )


class LoggedSetRepository(BaseRepository):
    """Repository for sets performed during a session."""

    def add(
        self,
        session_item_id: int,
        reps: int,
        weight: float,
        created_at: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        if reps < 0:
            raise ValueError("reps must be non-negative")
        if weight < 0:
            raise ValueError("weight must be non-negative")
        rows = self.fetch_all(
            "SELECT COALESCE(MAX(set_index), 0) + 1 FROM logged_sets WHERE session_item_id = ?;",
            (session_item_id,),
            conn,
        )
        set_index = int(rows[0][0]) if rows else 1
        return self.execute(
            "INSERT INTO logged_sets (session_item_id, set_index, reps, weight, created_at) VALUES (?, ?, ?, ?, ?);",
            (session_item_id, set_index, reps, weight, created_at or self._now()),
            conn,
        )

    def fetch_session_id(
        self, set_id: int, conn: sqlite3.Connection | None = None
    ) -> int:
        rows = self.fetch_all(
            "SELECT si.session_id FROM logged_sets s JOIN session_items si ON si.id = s.session_item_id WHERE s.id = ?;",
            (set_id,),
            conn,
        )
        if not rows:
            raise NotFound("set not found")
        return int(rows[0][0])

    def fetch_for_session(
        self, session_id: int, conn: sqlite3.Connection | None = None
    ) -> List[Tuple[int, int, int, int, float, str]]:
        """Columns: id, session_item_id, set_index, reps, weight, created_at."""
        return self.fetch_all(
            "SELECT s.id, s.session_item_id, s.set_index, s.reps, s.weight, s.created_at "
            "FROM logged_sets s JOIN session_items si ON si.id = s.session_item_id "
            "WHERE si.session_id = ? ORDER BY si.position, s.set_index;",
            (session_id,),
            conn,
        )

    def delete(self, set_id: int, conn: sqlite3.Connection | None = None) -> None:
        self.execute("DELETE FROM logged_sets WHERE id = ?;", (set_id,), conn)


_TEMPLATE_ITEM_SELECT = (
    "SELECT i.id, i.group_id, i.exercise_id, e.name, i.group_position, i.position, "
    "i.target_sets, i.target_reps, i.target_weight, i.rest_seconds_override, g.rest_seconds "
    "FROM template_items i "
    "JOIN template_groups g ON g.id = i.group_id "
    "JOIN exercises e ON e.id = i.exercise_id "
)

TEMPLATE_ITEMS_QUERY = _TEMPLATE_ITEM_SELECT + "WHERE i.template_id = ? ORDER BY i.position;"

TEMPLATE_ITEM_QUERY = _TEMPLATE_ITEM_SELECT + "WHERE i.id = ?;"

TEMPLATE_GROUPS_QUERY = (
    "SELECT id, name, kind, rest_seconds, position FROM template_groups "
    "WHERE template_id = ? ORDER BY position;"
)

TEMPLATE_DETAIL_QUERY = (
    "SELECT id, name, notes, created_at, last_used FROM templates WHERE id = ?;"
)


class AsyncTemplateTreeRepository(AsyncBaseRepository):
    """Async read access to a template tree for the non-blocking endpoint."""

    async def fetch_tree(
        self, template_id: int
    ) -> Tuple[Tuple[int, str, str, str, Optional[str]], List[Tuple], List[Tuple]]:
        """Return ``(template_row, group_rows, item_rows)`` read in one transaction."""
        async with self._async_connection() as conn:
            await conn.execute("BEGIN;")
            rows = await self._fetch(conn, TEMPLATE_DETAIL_QUERY, (template_id,))
            if not rows:
                raise NotFound("template not found")
            groups = await self._fetch(conn, TEMPLATE_GROUPS_QUERY, (template_id,))
            items = await self._fetch(conn, TEMPLATE_ITEMS_QUERY, (template_id,))
        return tuple(rows[0]), groups, items

    async def _fetch(
        self, conn: aiosqlite.Connection, query: str, params: Tuple
    ) -> List[Tuple]:
        cursor = await conn.execute(query, params)
        try:
            return list(await cursor.fetchall())
        finally:
            await cursor.close()
