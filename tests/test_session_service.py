import os
import sys
import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import (
    ExerciseRepository,
    TemplateRepository,
    TemplateGroupRepository,
    TemplateItemRepository,
    SessionRepository,
    SessionGroupRepository,
    SessionItemRepository,
    LoggedSetRepository,
)
from errors import InstanceClosed, NotFound
from hierarchy_service import HierarchyService
from session_service import SessionService
from snapshot_service import SnapshotCopier


@pytest.fixture
def env(tmp_path):
    db_file = str(tmp_path / "sessions.db")
    exercises = ExerciseRepository(db_file)
    templates = TemplateRepository(db_file)
    groups = TemplateGroupRepository(db_file)
    items = TemplateItemRepository(db_file)
    sessions = SessionRepository(db_file)
    session_groups = SessionGroupRepository(db_file)
    session_items = SessionItemRepository(db_file)
    hierarchy = HierarchyService(templates, groups, items, exercises)
    copier = SnapshotCopier(
        templates, groups, items, sessions, session_groups, session_items
    )
    service = SessionService(
        copier, sessions, session_groups, session_items, LoggedSetRepository(db_file)
    )
    tid = hierarchy.create_template("Legs")
    g1 = hierarchy.insert_group(tid)
    g2 = hierarchy.insert_group(tid, kind="paired")
    hierarchy.insert_item(g1["id"], exercises.add("Back Squat"))
    hierarchy.insert_item(g2["id"], exercises.add("Leg Curl"))
    hierarchy.insert_item(g2["id"], exercises.add("Leg Extension"))
    return {"service": service, "copier": copier, "hierarchy": hierarchy, "tid": tid}


def _item_ids(tree):
    return [i["id"] for g in tree["groups"] for i in g["items"]]


def test_log_sets_and_read(env):
    service = env["service"]
    sid = service.start_instance(env["tid"])
    squat, curl, extension = _item_ids(service.get_instance_tree(sid))
    service.log_set(squat, 5, 100.0)
    service.log_set(squat, 5, 105.0)
    service.log_set(curl, 12, 30.0)
    tree = service.get_instance_tree(sid)
    first = tree["groups"][0]["items"][0]
    assert [s["set_index"] for s in first["sets"]] == [1, 2]
    assert first["sets_completed"] == 2
    assert first["item_volume"] == 1025.0
    assert tree["groups"][1]["group_volume"] == 360.0
    assert tree["groups"][1]["items"][1]["sets"] == []
    assert tree["total_sets"] == 3
    assert tree["total_volume"] == 1385.0
    assert tree["finished_at"] is None
    assert extension not in (squat, curl)


def test_log_set_validation(env):
    service = env["service"]
    sid = service.start_instance(env["tid"])
    item = _item_ids(service.get_instance_tree(sid))[0]
    with pytest.raises(ValueError):
        service.log_set(item, -1, 50.0)
    with pytest.raises(ValueError):
        service.log_set(item, 5, -2.5)
    with pytest.raises(NotFound):
        service.log_set(9999, 5, 50.0)


def test_delete_set_keeps_indices_growing(env):
    service = env["service"]
    sid = service.start_instance(env["tid"])
    item = _item_ids(service.get_instance_tree(sid))[0]
    first = service.log_set(item, 5, 100.0)
    service.log_set(item, 5, 100.0)
    service.delete_set(first)
    service.log_set(item, 3, 110.0)
    sets = service.get_instance_tree(sid)["groups"][0]["items"][0]["sets"]
    assert [s["set_index"] for s in sets] == [2, 3]
    with pytest.raises(NotFound):
        service.delete_set(first)


def test_finish_instance(env):
    service = env["service"]
    sid = env["copier"].snapshot(env["tid"], started_at="2024-03-01T10:00:00")
    squat, curl, _ = _item_ids(service.get_instance_tree(sid))
    set_id = service.log_set(squat, 5, 100.0)
    service.log_set(curl, 10, 40.0)
    summary = service.finish_instance(sid, finished_at="2024-03-01T11:15:00")
    assert summary == {
        "id": sid,
        "finished_at": "2024-03-01T11:15:00",
        "total_sets": 2,
        "total_volume": 900.0,
        "duration_seconds": 4500,
    }
    tree = service.get_instance_tree(sid)
    assert tree["total_volume"] == 900.0
    assert tree["duration_seconds"] == 4500

    with pytest.raises(InstanceClosed):
        service.log_set(squat, 5, 100.0)
    with pytest.raises(InstanceClosed):
        service.delete_set(set_id)
    with pytest.raises(InstanceClosed):
        service.finish_instance(sid)


def test_list_sessions(env):
    service = env["service"]
    copier = env["copier"]
    first = copier.snapshot(env["tid"], started_at="2024-03-01T10:00:00")
    second = copier.snapshot(env["tid"], title="Heavy legs", started_at="2024-03-03T10:00:00")
    other = env["hierarchy"].create_template("Empty")
    copier.snapshot(other, started_at="2024-03-02T10:00:00")
    listing = service.list_sessions()
    assert [s["started_at"][:10] for s in listing] == ["2024-03-03", "2024-03-02", "2024-03-01"]
    by_template = service.list_sessions(env["tid"])
    assert [s["id"] for s in by_template] == [second, first]
    assert by_template[0]["title"] == "Heavy legs"


def test_unknown_session(env):
    with pytest.raises(NotFound):
        env["service"].get_instance_tree(404)
    with pytest.raises(NotFound):
        env["service"].finish_instance(404)


def test_soft_delete_and_restore_session(env):
    service = env["service"]
    sid = service.start_instance(env["tid"], "Monday")
    item = _item_ids(service.get_instance_tree(sid))[0]
    service.log_set(item, 5, 100.0)

    service.delete_session(sid)
    assert service.list_sessions() == []
    assert [d["id"] for d in service.list_deleted_sessions()] == [sid]
    assert service.list_deleted_sessions()[0]["title"] == "Monday"
    with pytest.raises(NotFound):
        service.get_instance_tree(sid)
    with pytest.raises(NotFound):
        service.log_set(item, 5, 100.0)
    with pytest.raises(NotFound):
        service.delete_session(sid)

    service.restore_session(sid)
    assert service.list_deleted_sessions() == []
    assert service.get_instance_tree(sid)["total_sets"] == 1
    with pytest.raises(NotFound):
        service.restore_session(sid)


def test_purge_only_deleted_sessions(env):
    service = env["service"]
    sid = service.start_instance(env["tid"])
    with pytest.raises(NotFound):
        service.purge_session(sid)
    service.delete_session(sid)
    service.purge_session(sid)
    assert service.list_deleted_sessions() == []
    with pytest.raises(NotFound):
        service.restore_session(sid)
    rows = service.items.fetch_all("SELECT id FROM session_items WHERE session_id = ?;", (sid,))
    assert rows == []
