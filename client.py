import requests
from typing import Optional

from errors import ERRORS_BY_NAME, TrackerError
from settings_schema import Settings


class TrackerClient:
    """Simple REST client for the workout tree API.

    ``session`` may be any object with the ``requests.Session`` call style;
    tests pass a FastAPI ``TestClient`` with an empty ``base_url``.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        session=None,
        token: Optional[str] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.headers = {"Authorization": f"Bearer {token}"} if token else {}

    @classmethod
    def from_settings(cls, settings: Settings, session=None) -> "TrackerClient":
        """Build a client for ``api_base_url`` sending ``api_token`` if one is stored."""
        return cls(settings.api_base_url, session=session, token=settings.api_token)

    def _request(self, method: str, path: str, **params):
        params = {k: v for k, v in params.items() if v is not None}
        resp = self.session.request(
            method, f"{self.base_url}{path}", params=params, headers=self.headers
        )
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            error = ERRORS_BY_NAME.get(body.get("error"))
            if error is None and resp.status_code < 500:
                error = TrackerError
            if error is not None:
                raise error(str(body.get("detail", resp.text)))
            resp.raise_for_status()
        return resp.json()

    def health(self) -> dict:
        return self._request("GET", "/health")

    def create_exercise(self, name: str, category: str = "strength", instructions: str = "") -> int:
        return self._request(
            "POST", "/exercises", name=name, category=category, instructions=instructions
        )["id"]

    def list_exercises(self) -> list:
        return self._request("GET", "/exercises")

    def create_template(self, name: str, notes: str = "") -> int:
        return self._request("POST", "/templates", name=name, notes=notes)["id"]

    def list_templates(self) -> list:
        return self._request("GET", "/templates")

    def rename_template(self, template_id: int, name: Optional[str] = None, notes: Optional[str] = None) -> None:
        self._request("PUT", f"/templates/{template_id}", name=name, notes=notes)

    def delete_template(self, template_id: int) -> None:
        self._request("DELETE", f"/templates/{template_id}")

    def clone_template(self, template_id: int, name: str) -> int:
        return self._request("POST", f"/templates/{template_id}/clone", name=name)["id"]

    def compact_template(self, template_id: int) -> None:
        self._request("POST", f"/templates/{template_id}/compact")

    def get_template_tree(self, template_id: int) -> dict:
        return self._request("GET", f"/templates/{template_id}/tree")

    def insert_group(
        self,
        template_id: int,
        after_group_id: Optional[int] = None,
        name: Optional[str] = None,
        kind: str = "single",
        rest_seconds: Optional[int] = None,
    ) -> dict:
        return self._request(
            "POST",
            f"/templates/{template_id}/groups",
            after_group_id=after_group_id,
            name=name,
            kind=kind,
            rest_seconds=rest_seconds,
        )

    def update_group(self, group_id: int, **params) -> None:
        self._request("PUT", f"/groups/{group_id}", **params)

    def move_group(self, template_id: int, group_id: int, before_group_id: Optional[int] = None) -> None:
        self._request(
            "POST",
            f"/templates/{template_id}/groups/{group_id}/move",
            before_group_id=before_group_id,
        )

    def delete_group(self, group_id: int) -> None:
        self._request("DELETE", f"/groups/{group_id}")

    def insert_item(
        self,
        group_id: int,
        exercise_id: int,
        after_item_id: Optional[int] = None,
        **targets,
    ) -> dict:
        return self._request(
            "POST",
            f"/groups/{group_id}/items",
            exercise_id=exercise_id,
            after_item_id=after_item_id,
            **targets,
        )

    def update_item(self, item_id: int, **params) -> None:
        self._request("PUT", f"/items/{item_id}", **params)

    def move_item(self, item_id: int, target_group_id: int, before_item_id: Optional[int] = None) -> None:
        self._request(
            "POST",
            f"/items/{item_id}/move",
            target_group_id=target_group_id,
            before_item_id=before_item_id,
        )

    def delete_item(self, item_id: int) -> None:
        self._request("DELETE", f"/items/{item_id}")

    def start_instance(
        self, template_id: int, title: Optional[str] = None, cycle_id: Optional[int] = None
    ) -> int:
        return self._request(
            "POST", f"/templates/{template_id}/sessions", title=title, cycle_id=cycle_id
        )["id"]

    def list_sessions(
        self, template_id: Optional[int] = None, cycle_id: Optional[int] = None
    ) -> list:
        return self._request("GET", "/sessions", template_id=template_id, cycle_id=cycle_id)

    def get_instance_tree(self, session_id: int) -> dict:
        return self._request("GET", f"/sessions/{session_id}")

    def log_set(self, session_item_id: int, reps: int, weight: float) -> int:
        return self._request(
            "POST", f"/session_items/{session_item_id}/sets", reps=reps, weight=weight
        )["id"]

    def delete_set(self, set_id: int) -> None:
        self._request("DELETE", f"/sets/{set_id}")

    def finish_instance(self, session_id: int) -> dict:
        return self._request("POST", f"/sessions/{session_id}/finish")

    def delete_session(self, session_id: int) -> None:
        self._request("DELETE", f"/sessions/{session_id}")

    def restore_session(self, session_id: int) -> None:
        self._request("POST", f"/sessions/{session_id}/restore")

    def purge_session(self, session_id: int) -> None:
        self._request("DELETE", f"/sessions/{session_id}/purge")

    def list_deleted_sessions(self) -> list:
        return self._request("GET", "/sessions/deleted")

    def start_cycle(
        self,
        template_id: int,
        name: str,
        duration_weeks: int,
        started_at: Optional[str] = None,
    ) -> int:
        return self._request(
            "POST",
            "/cycles",
            template_id=template_id,
            name=name,
            duration_weeks=duration_weeks,
            started_at=started_at,
        )["id"]

    def list_cycles(self) -> list:
        return self._request("GET", "/cycles")

    def get_active_cycle(self) -> Optional[dict]:
        return self._request("GET", "/cycles/active")

    def get_cycle_progress(self, cycle_id: int) -> dict:
        return self._request("GET", f"/cycles/{cycle_id}/progress")

    def end_cycle(self, cycle_id: int, ended_at: Optional[str] = None) -> None:
        self._request("POST", f"/cycles/{cycle_id}/end", ended_at=ended_at)

    def delete_cycle(self, cycle_id: int) -> None:
        self._request("DELETE", f"/cycles/{cycle_id}")

    def restore_cycle(self, cycle_id: int) -> None:
        self._request("POST", f"/cycles/{cycle_id}/restore")

    def purge_cycle(self, cycle_id: int) -> None:
        self._request("DELETE", f"/cycles/{cycle_id}/purge")

    def list_deleted_cycles(self) -> list:
        return self._request("GET", "/cycles/deleted")
