from __future__ import annotations

import datetime
import logging
from collections import defaultdict

from algorithms import PositionAllocator
from db import (
    SessionRepository,
    SessionGroupRepository,
    SessionItemRepository,
    LoggedSetRepository,
)
from errors import InstanceClosed
from snapshot_service import SnapshotCopier
from tools import MathTools

logger = logging.getLogger(__name__)


class SessionService:
    """Runs sessions created from templates: logging sets and finishing."""

    def __init__(
        self,
        copier: SnapshotCopier,
        session_repo: SessionRepository,
        group_repo: SessionGroupRepository,
        item_repo: SessionItemRepository,
        set_repo: LoggedSetRepository,
    ) -> None:
        self.copier = copier
        self.sessions = session_repo
        self.groups = group_repo
        self.items = item_repo
        self.sets = set_repo

    def start_instance(
        self, template_id: int, title: str | None = None, cycle_id: int | None = None
    ) -> int:
        return self.copier.snapshot(template_id, title, cycle_id=cycle_id)

    def log_set(self, session_item_id: int, reps: int, weight: float) -> int:
        with self.sets.transaction() as conn:
            _iid, session_id, _gid, _pos = self.items.fetch_location(session_item_id, conn)
            self.sessions.ensure_open(session_id, conn)
            set_id = self.sets.add(session_item_id, reps, weight, None, conn)
        logger.debug("logged set %s on item %s", set_id, session_item_id)
        return set_id

    def delete_set(self, set_id: int) -> None:
        with self.sets.transaction() as conn:
            session_id = self.sets.fetch_session_id(set_id, conn)
            self.sessions.ensure_open(session_id, conn)
            self.sets.delete(set_id, conn)

    def finish_instance(self, session_id: int, finished_at: str | None = None) -> dict:
        """Close the session and recompute its totals from the logged sets."""
        finished_at = finished_at or datetime.datetime.now().isoformat(timespec="seconds")
        with self.sessions.transaction() as conn:
            detail = self.sessions.fetch_detail(session_id, conn)
            if detail[4] is not None:
                raise InstanceClosed("session already finished")
            rows = self.sets.fetch_for_session(session_id, conn)
            total_volume = MathTools.volume((reps, weight) for _sid, _iid, _idx, reps, weight, _ts in rows)
            duration = MathTools.duration_seconds(detail[3], finished_at)
            self.sessions.finish(session_id, finished_at, len(rows), total_volume, duration, conn)
        logger.info(
            "finished session %s: %d sets, volume %.1f", session_id, len(rows), total_volume
        )
        return {
            "id": session_id,
            "finished_at": finished_at,
            "total_sets": len(rows),
            "total_volume": total_volume,
            "duration_seconds": duration,
        }

    def list_sessions(
        self, template_id: int | None = None, cycle_id: int | None = None
    ) -> list[dict]:
        return [
            {
                "id": sid,
                "template_id": tid,
                "title": title,
                "started_at": started,
                "finished_at": finished,
                "total_sets": total_sets,
                "total_volume": total_volume,
                "duration_seconds": duration,
                "cycle_id": cycle,
            }
            for sid, tid, title, started, finished, total_sets, total_volume, duration, cycle in self.sessions.fetch_all_sessions(template_id, cycle_id)
        ]

    def delete_session(self, session_id: int) -> None:
        """Hide a session from history; :meth:`restore_session` brings it back."""
        self.sessions.soft_delete(session_id)
        logger.info("deleted session %s", session_id)

    def restore_session(self, session_id: int) -> None:
        self.sessions.restore(session_id)

    def purge_session(self, session_id: int) -> None:
        self.sessions.purge(session_id)
        logger.info("purged session %s", session_id)

    def list_deleted_sessions(self) -> list[dict]:
        return [
            {"id": sid, "title": title, "deleted_at": deleted_at}
            for sid, title, deleted_at in self.sessions.fetch_deleted()
        ]

    def get_instance_tree(self, session_id: int) -> dict:
        """Return the session with groups, items, logged sets and volumes."""
        with self.sessions.transaction() as conn:
            sid, template_id, title, started, finished, total_sets, total_volume, duration, cycle_id = self.sessions.fetch_detail(session_id, conn)
            groups = self.groups.fetch_for_parent(session_id, conn)
            items = self.items.fetch_for_session(session_id, conn)
            set_rows = self.sets.fetch_for_session(session_id, conn)

        sets_by_item: dict[int, list[dict]] = defaultdict(list)
        for set_id, item_id, set_index, reps, weight, created_at in set_rows:
            sets_by_item[item_id].append(
                {
                    "id": set_id,
                    "set_index": set_index,
                    "reps": reps,
                    "weight": weight,
                    "volume": reps * weight,
                    "created_at": created_at,
                }
            )

        group_dicts = [
            {
                "id": gid,
                "name": name,
                "kind": kind,
                "rest_seconds": rest,
                "position": PositionAllocator.key_to_str(position),
                "items": [],
                "group_volume": 0.0,
            }
            for gid, name, kind, rest, position in groups
        ]
        by_id = {g["id"]: g for g in group_dicts}
        for (
            item_id,
            group_id,
            exercise_id,
            exercise_name,
            group_position,
            position,
            target_sets,
            target_reps,
            target_weight,
            rest_seconds,
        ) in items:
            sets = sets_by_item.get(item_id, [])
            item_volume = MathTools.volume((s["reps"], s["weight"]) for s in sets)
            group = by_id[group_id]
            group["items"].append(
                {
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
                    "rest_seconds": rest_seconds,
                    "sets": sets,
                    "sets_completed": len(sets),
                    "item_volume": item_volume,
                }
            )
            group["group_volume"] += item_volume

        return {
            "id": sid,
            "template_id": template_id,
            "cycle_id": cycle_id,
            "title": title,
            "started_at": started,
            "finished_at": finished,
            "duration_seconds": duration,
            "total_sets": total_sets if finished else len(set_rows),
            "total_volume": total_volume if finished else sum(g["group_volume"] for g in group_dicts),
            "groups": group_dicts,
        }
