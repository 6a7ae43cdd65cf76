import logging

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from algorithms import PositionAllocator
from config import load_settings
from db import (
    ExerciseRepository,
    TemplateRepository,
    TemplateGroupRepository,
    TemplateItemRepository,
    SessionRepository,
    SessionGroupRepository,
    SessionItemRepository,
    LoggedSetRepository,
    CycleRepository,
    AsyncTemplateTreeRepository,
)
from cycle_service import CycleService
from hierarchy_service import HierarchyService, build_template_tree
from session_service import SessionService
from snapshot_service import SnapshotCopier

logger = logging.getLogger(__name__)


class TrackerAPI:
    """Provides REST endpoints for workout templates and sessions."""

    def __init__(
        self,
        db_path: str | None = None,
        yaml_path: str = "settings.yaml",
    ) -> None:
        self.config = load_settings(yaml_path)
        self.db_path = db_path or self.config.db_path
        self.exercises = ExerciseRepository(self.db_path)
        self.templates = TemplateRepository(self.db_path)
        self.template_groups = TemplateGroupRepository(self.db_path)
        self.template_items = TemplateItemRepository(self.db_path)
        self.sessions = SessionRepository(self.db_path)
        self.session_groups = SessionGroupRepository(self.db_path)
        self.session_items = SessionItemRepository(self.db_path)
        self.logged_sets = LoggedSetRepository(self.db_path)
        self.tree_reader = AsyncTemplateTreeRepository(self.db_path)
        self.hierarchy = HierarchyService(
            self.templates,
            self.template_groups,
            self.template_items,
            self.exercises,
            allocator=PositionAllocator(
                self.config.position_scale, self.config.position_step
            ),
            default_rest_seconds=self.config.default_rest_seconds,
        )
        self.copier = SnapshotCopier(
            self.templates,
            self.template_groups,
            self.template_items,
            self.sessions,
            self.session_groups,
            self.session_items,
        )
        self.session_service = SessionService(
            self.copier,
            self.sessions,
            self.session_groups,
            self.session_items,
            self.logged_sets,
        )
        self.cycles = CycleRepository(self.db_path)
        self.cycle_service = CycleService(self.cycles, self.templates)
        self.app = FastAPI(
            title="Workout Tree API",
            description="REST API for ordered workout templates and sessions",
        )
        self.app.add_exception_handler(ValueError, self._value_error_handler)
        self._setup_routes()

    @staticmethod
    async def _value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        status = getattr(exc, "status_code", 400)
        if status >= 404:
            logger.info("%s %s -> %s: %s", request.method, request.url.path, status, exc)
        return JSONResponse(
            status_code=status,
            content={"detail": str(exc), "error": type(exc).__name__},
        )

    def _setup_routes(self) -> None:
        exercises_router = APIRouter(prefix="/exercises", tags=["Exercises"])
        templates_router = APIRouter(prefix="/templates", tags=["Templates"])
        groups_router = APIRouter(prefix="/groups", tags=["Groups"])
        items_router = APIRouter(prefix="/items", tags=["Items"])
        sessions_router = APIRouter(prefix="/sessions", tags=["Sessions"])
        cycles_router = APIRouter(prefix="/cycles", tags=["Cycles"])

        @self.app.get(
            "/health",
            summary="Health check",
            description="Verify API and database connectivity.",
        )
        def health():
            """Return API and database connection status."""
            try:
                self.templates.fetch_all_templates()
                return {"status": "ok"}
            except Exception as e:  # pragma: no cover - connectivity failure
                raise HTTPException(status_code=500, detail=str(e))

        @exercises_router.post("")
        def create_exercise(name: str, category: str = "strength", instructions: str = ""):
            eid = self.exercises.add(name, category, instructions)
            return {"id": eid}

        @exercises_router.get("")
        def list_exercises():
            return [
                {"id": eid, "name": name, "category": category, "instructions": instructions}
                for eid, name, category, instructions in self.exercises.fetch_all_exercises()
            ]

        @exercises_router.put("/{exercise_id}")
        def update_exercise(
            exercise_id: int,
            name: str = None,
            category: str = None,
            instructions: str = None,
        ):
            self.exercises.update(exercise_id, name, category, instructions)
            return {"status": "updated"}

        @exercises_router.delete("/{exercise_id}")
        def delete_exercise(exercise_id: int):
            self.exercises.delete(exercise_id)
            return {"status": "deleted"}

        @templates_router.post("")
        def create_template(name: str, notes: str = ""):
            return {"id": self.hierarchy.create_template(name, notes)}

        @templates_router.get("")
        def list_templates():
            return self.hierarchy.list_templates()

        @templates_router.put("/{template_id}")
        def update_template(template_id: int, name: str = None, notes: str = None):
            self.hierarchy.rename_template(template_id, name, notes)
            return {"status": "updated"}

        @templates_router.delete("/{template_id}")
        def delete_template(template_id: int):
            self.hierarchy.delete_template(template_id)
            return {"status": "deleted"}

        @templates_router.post("/{template_id}/clone")
        def clone_template(template_id: int, name: str):
            return {"id": self.hierarchy.clone_template(template_id, name)}

        @templates_router.post("/{template_id}/compact")
        def compact_template(template_id: int):
            self.hierarchy.compact_template(template_id)
            return {"status": "updated"}

        @templates_router.get("/{template_id}/tree")
        def template_tree(template_id: int):
            return self.hierarchy.get_template_tree(template_id)

        @templates_router.get("/{template_id}/tree_async")
        async def template_tree_async(template_id: int):
            return build_template_tree(*await self.tree_reader.fetch_tree(template_id))

        @templates_router.post("/{template_id}/groups")
        def insert_group(
            template_id: int,
            after_group_id: int = None,
            name: str = None,
            kind: str = "single",
            rest_seconds: int = None,
        ):
            return self.hierarchy.insert_group(
                template_id, after_group_id, name, kind, rest_seconds
            )

        @templates_router.post("/{template_id}/groups/{group_id}/move")
        def move_group(template_id: int, group_id: int, before_group_id: int = None):
            self.hierarchy.move_group(template_id, group_id, before_group_id)
            return {"status": "moved"}

        @templates_router.post("/{template_id}/sessions")
        def start_session(template_id: int, title: str = None, cycle_id: int = None):
            return {"id": self.session_service.start_instance(template_id, title, cycle_id)}

        @groups_router.put("/{group_id}")
        def update_group(
            group_id: int, name: str = None, kind: str = None, rest_seconds: int = None
        ):
            self.hierarchy.update_group(group_id, name, kind, rest_seconds)
            return {"status": "updated"}

        @groups_router.delete("/{group_id}")
        def delete_group(group_id: int):
            self.hierarchy.delete_group(group_id)
            return {"status": "deleted"}

        @groups_router.post("/{group_id}/items")
        def insert_item(
            group_id: int,
            exercise_id: int,
            after_item_id: int = None,
            target_sets: int = 3,
            target_reps: int = 10,
            target_weight: float = None,
            rest_seconds_override: int = None,
        ):
            return self.hierarchy.insert_item(
                group_id,
                exercise_id,
                after_item_id,
                target_sets,
                target_reps,
                target_weight,
                rest_seconds_override,
            )

        @items_router.put("/{item_id}")
        def update_item(
            item_id: int,
            target_sets: int = None,
            target_reps: int = None,
            target_weight: float = None,
            rest_seconds_override: int = None,
            clear_override: bool = False,
        ):
            self.hierarchy.update_item(
                item_id,
                target_sets,
                target_reps,
                target_weight,
                rest_seconds_override,
                clear_override,
            )
            return {"status": "updated"}

        @items_router.post("/{item_id}/move")
        def move_item(item_id: int, target_group_id: int, before_item_id: int = None):
            self.hierarchy.move_item(item_id, target_group_id, before_item_id)
            return {"status": "moved"}

        @items_router.delete("/{item_id}")
        def delete_item(item_id: int):
            self.hierarchy.delete_item(item_id)
            return {"status": "deleted"}

        @sessions_router.get("")
        def list_sessions(template_id: int = None, cycle_id: int = None):
            return self.session_service.list_sessions(template_id, cycle_id)

        @sessions_router.get("/deleted")
        def list_deleted_sessions():
            return self.session_service.list_deleted_sessions()

        @sessions_router.get("/{session_id}")
        def get_session(session_id: int):
            return self.session_service.get_instance_tree(session_id)

        @sessions_router.post("/{session_id}/finish")
        def finish_session(session_id: int):
            return self.session_service.finish_instance(session_id)

        @sessions_router.delete("/{session_id}")
        def delete_session(session_id: int):
            self.session_service.delete_session(session_id)
            return {"status": "deleted"}

        @sessions_router.post("/{session_id}/restore")
        def restore_session(session_id: int):
            self.session_service.restore_session(session_id)
            return {"status": "restored"}

        @sessions_router.delete("/{session_id}/purge")
        def purge_session(session_id: int):
            self.session_service.purge_session(session_id)
            return {"status": "purged"}

        @cycles_router.post("")
        def start_cycle(
            template_id: int, name: str, duration_weeks: int, started_at: str = None
        ):
            return {
                "id": self.cycle_service.start_cycle(
                    template_id, name, duration_weeks, started_at
                )
            }

        @cycles_router.get("")
        def list_cycles():
            return self.cycle_service.list_cycles()

        @cycles_router.get("/active")
        def active_cycle():
            return self.cycle_service.get_active_cycle()

        @cycles_router.get("/deleted")
        def list_deleted_cycles():
            return self.cycle_service.list_deleted_cycles()

        @cycles_router.get("/{cycle_id}/progress")
        def cycle_progress(cycle_id: int):
            return self.cycle_service.get_progress(cycle_id)

        @cycles_router.post("/{cycle_id}/end")
        def end_cycle(cycle_id: int, ended_at: str = None):
            self.cycle_service.end_cycle(cycle_id, ended_at)
            return {"status": "updated"}

        @cycles_router.delete("/{cycle_id}")
        def delete_cycle(cycle_id: int):
            self.cycle_service.delete_cycle(cycle_id)
            return {"status": "deleted"}

        @cycles_router.post("/{cycle_id}/restore")
        def restore_cycle(cycle_id: int):
            self.cycle_service.restore_cycle(cycle_id)
            return {"status": "restored"}

        @cycles_router.delete("/{cycle_id}/purge")
        def purge_cycle(cycle_id: int):
            self.cycle_service.purge_cycle(cycle_id)
            return {"status": "purged"}

        @self.app.post("/session_items/{item_id}/sets")
        def log_set(item_id: int, reps: int, weight: float):
            return {"id": self.session_service.log_set(item_id, reps, weight)}

        @self.app.delete("/sets/{set_id}")
        def delete_set(set_id: int):
            self.session_service.delete_set(set_id)
            return {"status": "deleted"}

        self.app.include_router(exercises_router)
        self.app.include_router(templates_router)
        self.app.include_router(groups_router)
        self.app.include_router(items_router)
        self.app.include_router(sessions_router)
        self.app.include_router(cycles_router)


def create_app(yaml_path: str = "settings.yaml") -> FastAPI:
    return TrackerAPI(yaml_path=yaml_path).app


if __name__ == "__main__":
    import uvicorn

    settings = load_settings()
    logging.basicConfig(level=settings.log_level)
    uvicorn.run(create_app(), log_level=settings.log_level.lower())
