import os
import sys
import random
import unittest
from decimal import Decimal

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from algorithms import FlatPosition, PositionAllocator
from db import (
    ExerciseRepository,
    TemplateRepository,
    TemplateGroupRepository,
    TemplateItemRepository,
)
from errors import InvalidMove, NotFound, StructuralMismatch
from hierarchy_service import HierarchyService


class HierarchyTestBase(unittest.TestCase):
    db_path = "test_hierarchy.db"
    scale = PositionAllocator.MAX_SCALE

    def setUp(self) -> None:
        if os.path.exists(self.db_path):
            os.remove(self.db_path)
        self.exercises = ExerciseRepository(self.db_path)
        self.templates = TemplateRepository(self.db_path)
        self.groups = TemplateGroupRepository(self.db_path)
        self.items = TemplateItemRepository(self.db_path)
        self.service = HierarchyService(
            self.templates,
            self.groups,
            self.items,
            self.exercises,
            allocator=PositionAllocator(scale=self.scale),
        )
        self.bench = self.exercises.add("Bench Press")
        self.row = self.exercises.add("Barbell Row")
        self.squat = self.exercises.add("Back Squat")
        self.tid = self.service.create_template("Push Day")

    def tearDown(self) -> None:
        if os.path.exists(self.db_path):
            os.remove(self.db_path)

    def tree(self, template_id: int | None = None) -> dict:
        return self.service.get_template_tree(template_id or self.tid)

    def group_names(self) -> list[str]:
        return [g["name"] for g in self.tree()["groups"]]

    def assert_well_ordered(self, tree: dict) -> None:
        group_keys = [Decimal(g["position"]) for g in tree["groups"]]
        self.assertEqual(group_keys, sorted(set(group_keys)))
        nested = []
        for group in tree["groups"]:
            local_keys = [Decimal(i["group_position"]) for i in group["items"]]
            self.assertEqual(local_keys, sorted(set(local_keys)))
            for item in group["items"]:
                self.assertEqual(
                    FlatPosition.split(item["position"]),
                    (Decimal(group["position"]), Decimal(item["group_position"])),
                )
                nested.append(item["position"])
        self.assertEqual(nested, sorted(nested))


class HierarchyServiceTestCase(HierarchyTestBase):
    def test_insert_groups_default_names_and_keys(self) -> None:
        a = self.service.insert_group(self.tid)
        b = self.service.insert_group(self.tid)
        self.assertEqual((a["name"], a["position"]), ("A", "1"))
        self.assertEqual((b["name"], b["position"]), ("B", "2"))
        self.assertEqual(a["rest_seconds"], 90)
        c = self.service.insert_group(self.tid, after_group_id=a["id"], kind="paired", rest_seconds=120)
        self.assertEqual(c["name"], "C")
        self.assertEqual(c["position"], "1.5")
        self.assertEqual(self.group_names(), ["A", "C", "B"])

    def test_scenario_move_b_before_a(self) -> None:
        a = self.service.insert_group(self.tid, name="A")
        b = self.service.insert_group(self.tid, after_group_id=a["id"], name="B")
        self.service.move_group(self.tid, b["id"], a["id"])
        self.assertEqual(self.group_names(), ["B", "A"])

    def test_scenario_move_item_before_sibling(self) -> None:
        a = self.service.insert_group(self.tid)
        x = self.service.insert_item(a["id"], self.bench)
        y = self.service.insert_item(a["id"], self.row, after_item_id=x["id"])
        self.service.move_item(y["id"], a["id"], x["id"])
        tree = self.tree()
        self.assertEqual([i["id"] for i in tree["groups"][0]["items"]], [y["id"], x["id"]])
        self.assert_well_ordered(tree)

    def test_move_to_end_and_back_restores_order(self) -> None:
        a = self.service.insert_group(self.tid)
        b = self.service.insert_group(self.tid)
        c = self.service.insert_group(self.tid)
        self.service.move_group(self.tid, a["id"], None)
        self.assertEqual(self.group_names(), ["B", "C", "A"])
        self.service.move_group(self.tid, a["id"], b["id"])
        self.assertEqual(self.group_names(), ["A", "B", "C"])
        self.assertIsNotNone(c)

    def test_group_move_rederives_item_flat_keys(self) -> None:
        a = self.service.insert_group(self.tid)
        b = self.service.insert_group(self.tid)
        self.service.insert_item(a["id"], self.bench)
        self.service.insert_item(b["id"], self.squat)
        self.service.insert_item(b["id"], self.row)
        self.service.move_group(self.tid, b["id"], a["id"])
        tree = self.tree()
        self.assert_well_ordered(tree)
        names = [i["exercise_name"] for g in tree["groups"] for i in g["items"]]
        self.assertEqual(names, ["Back Squat", "Barbell Row", "Bench Press"])

    def test_cross_group_move_inherits_rest(self) -> None:
        a = self.service.insert_group(self.tid, rest_seconds=60)
        b = self.service.insert_group(self.tid, rest_seconds=150)
        item = self.service.insert_item(a["id"], self.bench)
        self.assertEqual(item["rest_seconds_effective"], 60)
        first_b = self.service.insert_item(b["id"], self.squat)
        self.service.move_item(item["id"], b["id"], first_b["id"])
        tree = self.tree()
        self.assertEqual(tree["groups"][0]["items"], [])
        moved = tree["groups"][1]["items"][0]
        self.assertEqual(moved["id"], item["id"])
        self.assertEqual(moved["group_id"], b["id"])
        self.assertEqual(moved["rest_seconds_effective"], 150)
        self.assertIsNone(moved["rest_seconds_override"])
        self.assert_well_ordered(tree)

    def test_rest_override(self) -> None:
        a = self.service.insert_group(self.tid, rest_seconds=60)
        item = self.service.insert_item(a["id"], self.bench, rest_seconds_override=30)
        self.assertEqual(item["rest_seconds_effective"], 30)
        self.service.update_item(item["id"], clear_override=True)
        self.assertEqual(self.tree()["groups"][0]["items"][0]["rest_seconds_effective"], 60)
        self.service.update_item(item["id"], target_sets=5, target_reps=5, target_weight=80.0)
        updated = self.tree()["groups"][0]["items"][0]
        self.assertEqual(
            (updated["target_sets"], updated["target_reps"], updated["target_weight"]),
            (5, 5, 80.0),
        )

    def test_update_group(self) -> None:
        a = self.service.insert_group(self.tid)
        self.service.update_group(a["id"], name="Warm-up", kind="circuit", rest_seconds=30)
        group = self.tree()["groups"][0]
        self.assertEqual((group["name"], group["kind"], group["rest_seconds"]), ("Warm-up", "circuit", 30))
        with self.assertRaises(ValueError):
            self.service.update_group(a["id"], kind="pyramid")
        with self.assertRaises(NotFound):
            self.service.update_group(999, name="x")

    def test_invalid_moves(self) -> None:
        a = self.service.insert_group(self.tid)
        x = self.service.insert_item(a["id"], self.bench)
        with self.assertRaises(InvalidMove):
            self.service.move_group(self.tid, a["id"], a["id"])
        with self.assertRaises(InvalidMove):
            self.service.move_item(x["id"], a["id"], x["id"])
        with self.assertRaises(NotFound):
            self.service.move_group(self.tid, 999, None)
        with self.assertRaises(NotFound):
            self.service.move_item(999, a["id"], None)

    def test_structural_mismatch(self) -> None:
        other = self.service.create_template("Pull Day")
        a = self.service.insert_group(self.tid)
        b = self.service.insert_group(self.tid)
        foreign = self.service.insert_group(other)
        x = self.service.insert_item(a["id"], self.bench)
        y = self.service.insert_item(b["id"], self.row)
        with self.assertRaises(StructuralMismatch):
            self.service.insert_group(self.tid, after_group_id=foreign["id"])
        with self.assertRaises(StructuralMismatch):
            self.service.move_group(self.tid, a["id"], foreign["id"])
        with self.assertRaises(StructuralMismatch):
            self.service.move_group(other, a["id"], None)
        with self.assertRaises(StructuralMismatch):
            self.service.move_item(x["id"], foreign["id"], None)
        with self.assertRaises(StructuralMismatch):
            self.service.move_item(x["id"], a["id"], y["id"])
        with self.assertRaises(StructuralMismatch):
            self.service.insert_item(a["id"], self.squat, after_item_id=y["id"])
        self.assertEqual(self.group_names(), ["A", "B"])

    def test_missing_references(self) -> None:
        a = self.service.insert_group(self.tid)
        with self.assertRaises(NotFound):
            self.service.insert_group(999)
        with self.assertRaises(NotFound):
            self.service.insert_group(self.tid, after_group_id=999)
        with self.assertRaises(NotFound):
            self.service.insert_item(a["id"], 999)
        with self.assertRaises(NotFound):
            self.service.insert_item(999, self.bench)
        with self.assertRaises(NotFound):
            self.service.get_template_tree(999)

    def test_item_validation(self) -> None:
        a = self.service.insert_group(self.tid)
        with self.assertRaises(ValueError):
            self.service.insert_item(a["id"], self.bench, target_sets=0)
        with self.assertRaises(ValueError):
            self.service.insert_item(a["id"], self.bench, rest_seconds_override=0)
        with self.assertRaises(ValueError):
            self.service.insert_group(self.tid, kind="pyramid")
        self.assertEqual(self.tree()["groups"][0]["items"], [])

    def test_duplicate_group_name(self) -> None:
        self.service.insert_group(self.tid, name="Main")
        with self.assertRaises(ValueError):
            self.service.insert_group(self.tid, name="Main")

    def test_delete_group_cascades_items(self) -> None:
        a = self.service.insert_group(self.tid)
        b = self.service.insert_group(self.tid)
        self.service.insert_item(a["id"], self.bench)
        kept = self.service.insert_item(b["id"], self.row)
        self.service.delete_group(a["id"])
        tree = self.tree()
        self.assertEqual([g["id"] for g in tree["groups"]], [b["id"]])
        self.assertEqual(tree["groups"][0]["items"][0]["id"], kept["id"])
        self.assertEqual(tree["groups"][0]["position"], "2")
        with self.assertRaises(NotFound):
            self.service.delete_group(a["id"])

    def test_delete_item(self) -> None:
        a = self.service.insert_group(self.tid)
        x = self.service.insert_item(a["id"], self.bench)
        y = self.service.insert_item(a["id"], self.row)
        self.service.delete_item(x["id"])
        items = self.tree()["groups"][0]["items"]
        self.assertEqual([i["id"] for i in items], [y["id"]])
        self.assertEqual(items[0]["group_position"], "2")
        with self.assertRaises(NotFound):
            self.service.delete_item(x["id"])

    def test_exercise_in_use_cannot_be_deleted(self) -> None:
        a = self.service.insert_group(self.tid)
        self.service.insert_item(a["id"], self.bench)
        with self.assertRaises(ValueError):
            self.exercises.delete(self.bench)
        self.exercises.delete(self.squat)

    def test_list_rename_delete_templates(self) -> None:
        a = self.service.insert_group(self.tid)
        self.service.insert_item(a["id"], self.bench)
        self.service.rename_template(self.tid, name="Upper", notes="heavy")
        listing = self.service.list_templates()
        self.assertEqual(listing[0]["name"], "Upper")
        self.assertEqual(listing[0]["notes"], "heavy")
        self.assertEqual((listing[0]["group_count"], listing[0]["item_count"]), (1, 1))
        self.service.delete_template(self.tid)
        self.assertEqual(self.service.list_templates(), [])
        self.assertEqual(self.items.fetch_all("SELECT id FROM template_items;"), [])

    def test_clone_template(self) -> None:
        a = self.service.insert_group(self.tid, rest_seconds=60)
        b = self.service.insert_group(self.tid, kind="paired")
        self.service.insert_item(a["id"], self.squat, rest_seconds_override=45)
        self.service.insert_item(b["id"], self.bench)
        self.service.insert_item(b["id"], self.row)
        clone_id = self.service.clone_template(self.tid, "Push Day (copy)")
        original, clone = self.tree(), self.tree(clone_id)

        def shape(tree):
            return [
                (
                    g["name"],
                    g["kind"],
                    g["rest_seconds"],
                    g["position"],
                    [(i["exercise_id"], i["group_position"], i["rest_seconds_effective"]) for i in g["items"]],
                )
                for g in tree["groups"]
            ]

        self.assertEqual(shape(original), shape(clone))
        self.service.delete_group(b["id"])
        self.assertEqual(len(self.tree(clone_id)["groups"]), 2)


class CompactionTestCase(HierarchyTestBase):
    scale = 0

    def test_group_insert_compacts_and_rederives_items(self) -> None:
        a = self.service.insert_group(self.tid)
        b = self.service.insert_group(self.tid)
        item = self.service.insert_item(b["id"], self.bench)
        self.assertEqual(item["position"], FlatPosition.combine(Decimal(2), Decimal(1)))
        c = self.service.insert_group(self.tid, after_group_id=a["id"])
        tree = self.tree()
        self.assertEqual([g["name"] for g in tree["groups"]], ["A", "C", "B"])
        self.assertEqual([g["position"] for g in tree["groups"]], ["1", "2", "3"])
        self.assertEqual(c["position"], "2")
        self.assertEqual(
            tree["groups"][2]["items"][0]["position"],
            FlatPosition.combine(Decimal(3), Decimal(1)),
        )
        self.assert_well_ordered(tree)

    def test_item_move_compacts(self) -> None:
        a = self.service.insert_group(self.tid)
        x = self.service.insert_item(a["id"], self.bench)
        y = self.service.insert_item(a["id"], self.row)
        self.service.move_item(y["id"], a["id"], x["id"])
        items = self.tree()["groups"][0]["items"]
        self.assertEqual([i["id"] for i in items], [y["id"], x["id"]])
        self.assertEqual([i["group_position"] for i in items], ["1", "2"])

    def test_compact_template(self) -> None:
        service = HierarchyService(self.templates, self.groups, self.items, self.exercises)
        a = service.insert_group(self.tid)
        b = service.insert_group(self.tid)
        service.move_group(self.tid, b["id"], a["id"])
        service.insert_item(a["id"], self.bench)
        service.insert_item(a["id"], self.row, after_item_id=None)
        self.assertEqual([g["position"] for g in self.tree()["groups"]], ["0.5", "1"])
        service.compact_template(self.tid)
        tree = self.tree()
        self.assertEqual([g["name"] for g in tree["groups"]], ["B", "A"])
        self.assertEqual([g["position"] for g in tree["groups"]], ["1", "2"])
        self.assertEqual([i["group_position"] for i in tree["groups"][1]["items"]], ["1", "2"])
        self.assert_well_ordered(tree)


class RandomOperationsTestCase(HierarchyTestBase):
    """Random insert/move sequences checked against a plain list model."""

    scale = 2

    def test_random_operations_keep_order(self) -> None:
        rng = random.Random(1234)
        model: dict[int, list[int]] = {}
        order: list[int] = []
        exercise_ids = [self.bench, self.row, self.squat]
        for _ in range(4):
            group = self.service.insert_group(self.tid)
            order.append(group["id"])
            model[group["id"]] = []

        for step in range(150):
            op = rng.choice(["move_group", "insert_item", "move_item", "move_item"])
            if op == "move_group":
                gid = rng.choice(order)
                rest = [g for g in order if g != gid]
                before = rng.choice(rest + [None])
                self.service.move_group(self.tid, gid, before)
                order.remove(gid)
                order.insert(len(order) if before is None else order.index(before), gid)
            elif op == "insert_item" or not any(model.values()):
                gid = rng.choice(order)
                after = rng.choice(model[gid] + [None])
                item = self.service.insert_item(gid, rng.choice(exercise_ids), after_item_id=after)
                index = len(model[gid]) if after is None else model[gid].index(after) + 1
                model[gid].insert(index, item["id"])
            else:
                source = rng.choice([g for g in order if model[g]])
                iid = rng.choice(model[source])
                target = rng.choice(order)
                candidates = [i for i in model[target] if i != iid]
                before = rng.choice(candidates + [None])
                self.service.move_item(iid, target, before)
                model[source].remove(iid)
                index = len(model[target]) if before is None else model[target].index(before)
                model[target].insert(index, iid)

            tree = self.tree()
            self.assertEqual([g["id"] for g in tree["groups"]], order, f"step {step}")
            self.assertEqual(
                [[i["id"] for i in g["items"]] for g in tree["groups"]],
                [model[g] for g in order],
                f"step {step}",
            )
            self.assert_well_ordered(tree)


if __name__ == "__main__":
    unittest.main()
