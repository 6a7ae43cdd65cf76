import argparse
import logging

from client import TrackerClient
from config import load_settings
from rest_api import TrackerAPI

logger = logging.getLogger(__name__)


def demo_data(db_path: str, yaml_path: str) -> int:
    """Populate the database with a demo template if none exists."""
    api = TrackerAPI(db_path=db_path, yaml_path=yaml_path)
    existing = api.templates.fetch_all_templates()
    if existing:
        print("Database already contains templates")
        return existing[0][0]
    exercise_ids = {
        name: api.exercises.add(name, category)
        for name, category in (
            ("Back Squat", "strength"),
            ("Bench Press", "strength"),
            ("Barbell Row", "strength"),
            ("Plank", "mobility"),
        )
    }
    tid = api.hierarchy.create_template("Full Body A", "demo template")
    squat = api.hierarchy.insert_group(tid, rest_seconds=180)
    superset = api.hierarchy.insert_group(tid, kind="paired", rest_seconds=120)
    core = api.hierarchy.insert_group(tid, rest_seconds=60)
    api.hierarchy.insert_item(squat["id"], exercise_ids["Back Squat"], target_sets=5, target_reps=5, target_weight=100.0)
    bench = api.hierarchy.insert_item(superset["id"], exercise_ids["Bench Press"], target_weight=70.0)
    api.hierarchy.insert_item(superset["id"], exercise_ids["Barbell Row"], after_item_id=bench["id"], target_weight=60.0)
    api.hierarchy.insert_item(core["id"], exercise_ids["Plank"], target_sets=3, target_reps=1, rest_seconds_override=45)
    print(f"Demo template {tid} inserted")
    return tid


def render_tree(tree: dict) -> None:
    print(tree["name"])
    for group in tree["groups"]:
        print(f"  {group['name']} [{group['kind']}] rest {group['rest_seconds']}s  @{group['position']}")
        for item in group["items"]:
            weight = "" if item["target_weight"] is None else f" @ {item['target_weight']}"
            print(
                f"    {item['position']}  {item['exercise_name']} "
                f"{item['target_sets']}x{item['target_reps']}{weight} "
                f"rest {item['rest_seconds_effective']}s"
            )


def print_tree(db_path: str, yaml_path: str, template_id: int) -> None:
    api = TrackerAPI(db_path=db_path, yaml_path=yaml_path)
    render_tree(api.hierarchy.get_template_tree(template_id))


def print_remote_tree(yaml_path: str, template_id: int, session=None) -> None:
    """Fetch the tree from the server named by ``api_base_url``."""
    client = TrackerClient.from_settings(load_settings(yaml_path), session=session)
    render_tree(client.get_template_tree(template_id))


def start_session(
    db_path: str,
    yaml_path: str,
    template_id: int,
    title: str | None,
    cycle_id: int | None = None,
) -> None:
    api = TrackerAPI(db_path=db_path, yaml_path=yaml_path)
    sid = api.session_service.start_instance(template_id, title, cycle_id)
    print(f"Started session {sid}")


def start_cycle(db_path: str, yaml_path: str, template_id: int, name: str, weeks: int) -> None:
    api = TrackerAPI(db_path=db_path, yaml_path=yaml_path)
    cid = api.cycle_service.start_cycle(template_id, name, weeks)
    print(f"Started cycle {cid}")


def show_active_cycle(db_path: str, yaml_path: str) -> None:
    api = TrackerAPI(db_path=db_path, yaml_path=yaml_path)
    cycle = api.cycle_service.get_active_cycle()
    if cycle is None:
        print("No active cycle")
        return
    progress = api.cycle_service.get_progress(cycle["id"])
    print(
        f"{cycle['name']} ({cycle['template_name']}): week {cycle['current_week']} "
        f"of {cycle['duration_weeks']}, {progress['sessions_done']} sessions, "
        f"ends {progress['target_end']}"
    )


def compact(db_path: str, yaml_path: str, template_id: int) -> None:
    api = TrackerAPI(db_path=db_path, yaml_path=yaml_path)
    api.hierarchy.compact_template(template_id)
    print(f"Compacted template {template_id}")


def serve(db_path: str, yaml_path: str, host: str, port: int) -> None:
    import uvicorn

    api = TrackerAPI(db_path=db_path, yaml_path=yaml_path)
    uvicorn.run(api.app, host=host, port=port, log_level=api.config.log_level.lower())


def main() -> None:
    parser = argparse.ArgumentParser(description="Workout template commands")
    parser.add_argument("--db", default=None)
    parser.add_argument("--yaml", default="settings.yaml")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("demo")

    tree = sub.add_parser("tree")
    tree.add_argument("template_id", type=int)
    tree.add_argument("--remote", action="store_true", help="read from api_base_url")

    start = sub.add_parser("start")
    start.add_argument("template_id", type=int)
    start.add_argument("--title", default=None)
    start.add_argument("--cycle", type=int, default=None)

    cycle = sub.add_parser("cycle-start")
    cycle.add_argument("template_id", type=int)
    cycle.add_argument("name")
    cycle.add_argument("--weeks", type=int, default=4)

    sub.add_parser("active-cycle")

    comp = sub.add_parser("compact")
    comp.add_argument("template_id", type=int)

    srv = sub.add_parser("serve")
    srv.add_argument("--host", default="127.0.0.1")
    srv.add_argument("--port", type=int, default=8000)

    args = parser.parse_args()
    settings = load_settings(args.yaml)
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.cmd == "demo":
            demo_data(args.db, args.yaml)
        elif args.cmd == "tree":
            if args.remote:
                print_remote_tree(args.yaml, args.template_id)
            else:
                print_tree(args.db, args.yaml, args.template_id)
        elif args.cmd == "start":
            start_session(args.db, args.yaml, args.template_id, args.title, args.cycle)
        elif args.cmd == "cycle-start":
            start_cycle(args.db, args.yaml, args.template_id, args.name, args.weeks)
        elif args.cmd == "active-cycle":
            show_active_cycle(args.db, args.yaml)
        elif args.cmd == "compact":
            compact(args.db, args.yaml, args.template_id)
        elif args.cmd == "serve":
            serve(args.db, args.yaml, args.host, args.port)
    except ValueError as e:
        logger.error("%s failed: %s", args.cmd, e)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
