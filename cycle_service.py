from __future__ import annotations

import datetime
import logging
from typing import Sequence

from db import CycleRepository, TemplateRepository
from errors import InstanceClosed
from tools import CycleCalendar

logger = logging.getLogger(__name__)


def cycle_to_dict(row: Sequence) -> dict:
    cycle_id, template_id, template_name, name, weeks, started_at, ended_at = row
    return {
        "id": cycle_id,
        "template_id": template_id,
        "template_name": template_name,
        "name": name,
        "duration_weeks": weeks,
        "started_at": started_at,
        "ended_at": ended_at,
    }


class CycleService:
    """Multi-week cycles: one template repeated for a number of weeks.

    Sessions join a cycle when they are started with its id. A cycle is
    active until it is ended; the most recently started active cycle is the
    one reported by :meth:`get_active_cycle`.
    """

    def __init__(self, cycle_repo: CycleRepository, template_repo: TemplateRepository) -> None:
        self.cycles = cycle_repo
        self.templates = template_repo

    def start_cycle(
        self,
        template_id: int,
        name: str,
        duration_weeks: int,
        started_at: str | None = None,
    ) -> int:
        with self.cycles.transaction() as conn:
            self.templates.fetch_detail(template_id, conn)
            cycle_id = self.cycles.create(template_id, name, duration_weeks, started_at, conn)
        logger.info("started cycle %s on template %s for %d weeks", cycle_id, template_id, duration_weeks)
        return cycle_id

    def end_cycle(self, cycle_id: int, ended_at: str | None = None) -> None:
        ended_at = ended_at or datetime.datetime.now().isoformat(timespec="seconds")
        with self.cycles.transaction() as conn:
            detail = self.cycles.fetch_detail(cycle_id, conn)
            if detail[6] is not None:
                raise InstanceClosed("cycle already ended")
            if ended_at <= detail[5]:
                raise ValueError("ended_at must be after started_at")
            self.cycles.end(cycle_id, ended_at, conn)
        logger.info("ended cycle %s", cycle_id)

    def list_cycles(self) -> list[dict]:
        return [cycle_to_dict(row) for row in self.cycles.fetch_all_cycles()]

    def get_active_cycle(self, now: datetime.datetime | None = None) -> dict | None:
        row = self.cycles.fetch_active()
        if row is None:
            return None
        cycle = cycle_to_dict(row)
        week, day = CycleCalendar.current_week(
            cycle["started_at"], cycle["duration_weeks"], now or datetime.datetime.now()
        )
        cycle["current_week"] = week
        cycle["days_in_current_week"] = day
        return cycle

    def get_progress(self, cycle_id: int) -> dict:
        """Return the cycle with its planned end and the number of sessions done."""
        with self.cycles.transaction() as conn:
            cycle = cycle_to_dict(self.cycles.fetch_detail(cycle_id, conn))
            cycle["sessions_done"] = self.cycles.count_sessions(cycle_id, conn)
        cycle["target_end"] = CycleCalendar.target_end(
            cycle["started_at"], cycle["duration_weeks"]
        )
        return cycle

    def delete_cycle(self, cycle_id: int) -> None:
        self.cycles.soft_delete(cycle_id)
        logger.info("deleted cycle %s", cycle_id)

    def restore_cycle(self, cycle_id: int) -> None:
        self.cycles.restore(cycle_id)

    def purge_cycle(self, cycle_id: int) -> None:
        self.cycles.purge(cycle_id)
        logger.info("purged cycle %s", cycle_id)

    def list_deleted_cycles(self) -> list[dict]:
        return [
            {"id": cid, "name": name, "deleted_at": deleted_at}
            for cid, name, deleted_at in self.cycles.fetch_deleted()
        ]
