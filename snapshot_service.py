from __future__ import annotations

import datetime
import logging

from algorithms import PositionAllocator
from db import (
    TemplateRepository,
    TemplateGroupRepository,
    TemplateItemRepository,
    SessionRepository,
    SessionGroupRepository,
    SessionItemRepository,
)
from errors import NotFound, SourceNotFound

logger = logging.getLogger(__name__)


class SnapshotCopier:
    """Copy a template tree into a new, independent session tree.

    The whole copy runs in one ``BEGIN IMMEDIATE`` transaction: the template
    is read at a single point in time and either every session row is
    committed or none is.
    """

    def __init__(
        self,
        template_repo: TemplateRepository,
        template_group_repo: TemplateGroupRepository,
        template_item_repo: TemplateItemRepository,
        session_repo: SessionRepository,
        session_group_repo: SessionGroupRepository,
        session_item_repo: SessionItemRepository,
    ) -> None:
        self.templates = template_repo
        self.template_groups = template_group_repo
        self.template_items = template_item_repo
        self.sessions = session_repo
        self.session_groups = session_group_repo
        self.session_items = session_item_repo

    def snapshot(
        self,
        template_id: int,
        title: str | None = None,
        started_at: str | None = None,
        cycle_id: int | None = None,
    ) -> int:
        """Create a session from ``template_id`` and return its id.

        With ``cycle_id`` the session counts towards that cycle; an unknown
        or deleted cycle raises :class:`~errors.NotFound` before anything is
        written.
        """
        with self.sessions.transaction() as conn:
            try:
                _tid, name, _notes, _created, _last = self.templates.fetch_detail(
                    template_id, conn
                )
            except NotFound:
                raise SourceNotFound(f"template {template_id} not found")
            groups = self.template_groups.fetch_for_parent(template_id, conn)
            items = self.template_items.fetch_for_template(template_id, conn)

            session_id = self.sessions.create(
                template_id, title or name, started_at, conn, cycle_id=cycle_id
            )
            group_map: dict[int, int] = {}
            for gid, g_name, kind, rest_seconds, position in groups:
                group_map[gid] = self.session_groups.add(
                    session_id, g_name, kind, rest_seconds, position, conn
                )
            for (
                _iid,
                group_id,
                exercise_id,
                exercise_name,
                group_position,
                _flat,
                target_sets,
                target_reps,
                target_weight,
                override,
                group_rest,
            ) in items:
                if group_id not in group_map:
                    raise SourceNotFound(f"group {group_id} vanished during snapshot")
                self.session_items.add(
                    session_id,
                    group_map[group_id],
                    exercise_id,
                    exercise_name,
                    PositionAllocator.decode_key(group_position),
                    target_sets,
                    target_reps,
                    target_weight,
                    override if override is not None else group_rest,
                    conn,
                )
            self.templates.update_last_used(
                template_id, datetime.datetime.now().isoformat(timespec="seconds"), conn
            )
        logger.info(
            "snapshot of template %s created session %s with %d groups and %d items",
            template_id,
            session_id,
            len(groups),
            len(items),
        )
        return session_id
