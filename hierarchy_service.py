from __future__ import annotations

import logging
import sqlite3
from decimal import Decimal
from typing import Iterable, List, Sequence, Tuple

from algorithms import PositionAllocator
from db import (
    ExerciseRepository,
    TemplateRepository,
    TemplateGroupRepository,
    TemplateItemRepository,
    TEMPLATE_GROUPS_QUERY,
)
from errors import InvalidMove, StructuralMismatch
from tools import GroupLabels

logger = logging.getLogger(__name__)


def item_to_dict(row: Sequence) -> dict:
    """Convert a template item row into its read-contract shape."""
    (
        item_id,
        group_id,
        exercise_id,
        exercise_name,
        group_position,
        position,
        target_sets,
        target_reps,
        target_weight,
        override,
        group_rest,
    ) = row
    return {
        "id": item_id,
        "group_id": group_id,
        "exercise_id": exercise_id,
        "exercise_name": exercise_name,
        "group_position": PositionAllocator.key_to_str(
            PositionAllocator.decode_key(group_position)
        ),
        "position": position,
        "target_sets": target_sets,
        "target_reps": target_reps,
        "target_weight": target_weight,
        "rest_seconds_override": override,
        "rest_seconds_effective": override if override is not None else group_rest,
    }


def group_to_dict(row: Sequence) -> dict:
    group_id, name, kind, rest_seconds, position = row
    if not isinstance(position, Decimal):
        position = PositionAllocator.decode_key(position)
    return {
        "id": group_id,
        "name": name,
        "kind": kind,
        "rest_seconds": rest_seconds,
        "position": PositionAllocator.key_to_str(position),
        "items": [],
    }


def build_template_tree(
    template_row: Sequence, group_rows: Iterable[Sequence], item_rows: Iterable[Sequence]
) -> dict:
    """Assemble the nested template tree from flat, pre-sorted rows.

    ``item_rows`` must be in flat-position order; appending each item to its
    group then leaves every group's items in local order.
    """
    template_id, name, notes, _created, last_used = template_row
    groups = [group_to_dict(row) for row in group_rows]
    by_id = {g["id"]: g for g in groups}
    for row in item_rows:
        item = item_to_dict(row)
        by_id[item["group_id"]]["items"].append(item)
    return {
        "id": template_id,
        "name": name,
        "notes": notes,
        "last_used": last_used,
        "groups": groups,
    }


class HierarchyService:
    """Ordered two-level tree of groups and items inside templates.

    Every operation runs inside a single transaction. Keys come from the
    :class:`PositionAllocator`; whenever allocation runs out of room the
    affected sibling list is compacted in the same transaction, so callers
    never see :class:`~errors.PrecisionExhausted`.
    """

    def __init__(
        self,
        template_repo: TemplateRepository,
        group_repo: TemplateGroupRepository,
        item_repo: TemplateItemRepository,
        exercise_repo: ExerciseRepository,
        allocator: PositionAllocator | None = None,
        default_rest_seconds: int = 90,
    ) -> None:
        self.templates = template_repo
        self.groups = group_repo
        self.items = item_repo
        self.exercises = exercise_repo
        self.allocator = allocator or PositionAllocator()
        self.default_rest_seconds = default_rest_seconds

    # templates

    def create_template(self, name: str, notes: str = "") -> int:
        template_id = self.templates.create(name, notes)
        logger.info("created template %s (%s)", template_id, name)
        return template_id

    def list_templates(self) -> list[dict]:
        return [
            {
                "id": tid,
                "name": name,
                "notes": notes,
                "last_used": last_used,
                "group_count": group_count,
                "item_count": item_count,
            }
            for tid, name, notes, last_used, group_count, item_count in self.templates.fetch_all_templates()
        ]

    def rename_template(
        self, template_id: int, name: str | None = None, notes: str | None = None
    ) -> None:
        self.templates.update(template_id, name, notes)

    def delete_template(self, template_id: int) -> None:
        self.templates.delete(template_id)
        logger.info("deleted template %s", template_id)

    def clone_template(self, template_id: int, new_name: str) -> int:
        """Copy a template with all its groups and items, keeping their keys."""
        with self.templates.transaction() as conn:
            _tid, _name, notes, _created, _last = self.templates.fetch_detail(template_id, conn)
            new_id = self.templates.create(new_name, notes, conn)
            groups = self.groups.fetch_for_parent(template_id, conn)
            mapping: dict[int, int] = {}
            for gid, name, kind, rest, position in groups:
                mapping[gid] = self.groups.add(new_id, name, kind, rest, position, conn)
            for row in self.items.fetch_for_template(template_id, conn):
                (
                    _iid,
                    group_id,
                    exercise_id,
                    _ex_name,
                    group_position,
                    _flat,
                    target_sets,
                    target_reps,
                    target_weight,
                    override,
                    _group_rest,
                ) = row
                self.items.add(
                    new_id,
                    mapping[group_id],
                    exercise_id,
                    PositionAllocator.decode_key(group_position),
                    target_sets,
                    target_reps,
                    target_weight,
                    override,
                    conn,
                )
        logger.info("cloned template %s into %s", template_id, new_id)
        return new_id

    def get_template_tree(self, template_id: int) -> dict:
        """Return the template with groups in order and items in flat order."""
        with self.templates.transaction() as conn:
            template_row = self.templates.fetch_detail(template_id, conn)
            group_rows = self.groups.fetch_all(TEMPLATE_GROUPS_QUERY, (template_id,), conn)
            item_rows = self.items.fetch_for_template(template_id, conn)
        return build_template_tree(template_row, group_rows, item_rows)

    # groups

    def insert_group(
        self,
        template_id: int,
        after_group_id: int | None = None,
        name: str | None = None,
        kind: str = "single",
        rest_seconds: int | None = None,
    ) -> dict:
        """Create a group directly after ``after_group_id`` or at the end."""
        with self.groups.transaction() as conn:
            self.templates.fetch_detail(template_id, conn)
            siblings = self.groups.fetch_for_parent(template_id, conn)
            if after_group_id is None:
                index = len(siblings)
            else:
                index = self._group_index(siblings, after_group_id, conn) + 1
            if name is None:
                name = GroupLabels.next_unused(row[1] for row in siblings)
            key = self._place_group(siblings, index, conn)
            group_id = self.groups.add(
                template_id,
                name,
                kind,
                rest_seconds if rest_seconds is not None else self.default_rest_seconds,
                key,
                conn,
            )
            row = self.groups.fetch_detail(group_id, conn)
        logger.info("inserted group %s into template %s", group_id, template_id)
        _gid, _parent, g_name, g_kind, g_rest, g_pos = row
        return group_to_dict((group_id, g_name, g_kind, g_rest, g_pos))

    def update_group(
        self,
        group_id: int,
        name: str | None = None,
        kind: str | None = None,
        rest_seconds: int | None = None,
    ) -> None:
        with self.groups.transaction() as conn:
            self.groups.fetch_detail(group_id, conn)
            self.groups.update(group_id, name, kind, rest_seconds, conn)

    def move_group(
        self, template_id: int, group_id: int, before_group_id: int | None = None
    ) -> None:
        """Move a group in front of ``before_group_id``; ``None`` means the end."""
        if before_group_id == group_id:
            raise InvalidMove("a group cannot be moved before itself")
        with self.groups.transaction() as conn:
            group = self.groups.fetch_detail(group_id, conn)
            if group[1] != template_id:
                raise StructuralMismatch("group belongs to another template")
            siblings = [
                row for row in self.groups.fetch_for_parent(template_id, conn) if row[0] != group_id
            ]
            if before_group_id is None:
                index = len(siblings)
            else:
                index = self._group_index(siblings, before_group_id, conn)
            key = self._place_group(siblings, index, conn)
            self.groups.set_position(group_id, key, conn)
        logger.info("moved group %s in template %s", group_id, template_id)

    def delete_group(self, group_id: int) -> None:
        with self.groups.transaction() as conn:
            self.groups.fetch_detail(group_id, conn)
            self.groups.delete(group_id, conn)
        logger.info("deleted group %s", group_id)

    # items

    def insert_item(
        self,
        group_id: int,
        exercise_id: int,
        after_item_id: int | None = None,
        target_sets: int = 3,
        target_reps: int = 10,
        target_weight: float | None = None,
        rest_seconds_override: int | None = None,
    ) -> dict:
        """Create an item directly after ``after_item_id`` or at the end of the group."""
        with self.items.transaction() as conn:
            group = self.groups.fetch_detail(group_id, conn)
            self.exercises.fetch_detail(exercise_id, conn)
            siblings = self.items.fetch_for_group(group_id, conn)
            if after_item_id is None:
                index = len(siblings)
            else:
                index = self._item_index(siblings, after_item_id, conn) + 1
            key = self._place_item(group_id, siblings, index, conn)
            item_id = self.items.add(
                group[1],
                group_id,
                exercise_id,
                key,
                target_sets,
                target_reps,
                target_weight,
                rest_seconds_override,
                conn,
            )
            row = self.items.fetch_detail(item_id, conn)
        logger.info("inserted item %s into group %s", item_id, group_id)
        return item_to_dict(row)

    def update_item(
        self,
        item_id: int,
        target_sets: int | None = None,
        target_reps: int | None = None,
        target_weight: float | None = None,
        rest_seconds_override: int | None = None,
        clear_override: bool = False,
    ) -> None:
        with self.items.transaction() as conn:
            self.items.fetch_location(item_id, conn)
            self.items.update(
                item_id,
                target_sets,
                target_reps,
                target_weight,
                rest_seconds_override,
                clear_override,
                conn,
            )

    def move_item(
        self, item_id: int, target_group_id: int, before_item_id: int | None = None
    ) -> None:
        """Move an item in front of ``before_item_id`` inside ``target_group_id``.

        ``None`` appends to the end of the target group. The target group must
        belong to the same template as the item.
        """
        if before_item_id == item_id:
            raise InvalidMove("an item cannot be moved before itself")
        with self.items.transaction() as conn:
            _iid, template_id, _group_id, _pos = self.items.fetch_location(item_id, conn)
            target = self.groups.fetch_detail(target_group_id, conn)
            if target[1] != template_id:
                raise StructuralMismatch("target group belongs to another template")
            siblings = [
                row for row in self.items.fetch_for_group(target_group_id, conn) if row[0] != item_id
            ]
            if before_item_id is None:
                index = len(siblings)
            else:
                index = self._item_index(siblings, before_item_id, conn)
            key = self._place_item(target_group_id, siblings, index, conn)
            self.items.set_position(item_id, target_group_id, key, conn)
        logger.info("moved item %s to group %s", item_id, target_group_id)

    def delete_item(self, item_id: int) -> None:
        with self.items.transaction() as conn:
            self.items.fetch_location(item_id, conn)
            self.items.delete(item_id, conn)
        logger.info("deleted item %s", item_id)

    def compact_template(self, template_id: int) -> None:
        """Renumber every sibling list of a template with even gaps."""
        with self.groups.transaction() as conn:
            self.templates.fetch_detail(template_id, conn)
            groups = self.groups.fetch_for_parent(template_id, conn)
            for (gid, *_rest), key in zip(groups, self.allocator.compact(len(groups))):
                self.groups.set_position(gid, key, conn)
            for gid, *_rest in groups:
                items = self.items.fetch_for_group(gid, conn)
                for (iid, _pos), key in zip(items, self.allocator.compact(len(items))):
                    self.items.set_position(iid, gid, key, conn)
        logger.info("compacted template %s", template_id)

    # helpers

    def _group_index(
        self, siblings: List[Tuple], sibling_id: int, conn: sqlite3.Connection
    ) -> int:
        for index, row in enumerate(siblings):
            if row[0] == sibling_id:
                return index
        self.groups.fetch_detail(sibling_id, conn)
        raise StructuralMismatch("sibling group belongs to another template")

    def _item_index(
        self, siblings: List[Tuple], sibling_id: int, conn: sqlite3.Connection
    ) -> int:
        for index, row in enumerate(siblings):
            if row[0] == sibling_id:
                return index
        self.items.fetch_location(sibling_id, conn)
        raise StructuralMismatch("sibling item belongs to another group")

    def _place_group(
        self, siblings: List[Tuple], index: int, conn: sqlite3.Connection
    ) -> Decimal:
        key, compacted = self.allocator.place([row[4] for row in siblings], index)
        if compacted is not None:
            logger.warning("compacting %d groups", len(compacted))
            others = compacted[:index] + compacted[index + 1:]
            for row, new_key in zip(siblings, others):
                self.groups.set_position(row[0], new_key, conn)
        return key

    def _place_item(
        self, group_id: int, siblings: List[Tuple], index: int, conn: sqlite3.Connection
    ) -> Decimal:
        key, compacted = self.allocator.place([row[1] for row in siblings], index)
        if compacted is not None:
            logger.warning("compacting %d items in group %s", len(compacted), group_id)
            others = compacted[:index] + compacted[index + 1:]
            for row, new_key in zip(siblings, others):
                self.items.set_position(row[0], group_id, new_key, conn)
        return key
