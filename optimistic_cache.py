"""Client-side cache with optimistic mutations.

A mutation installs the value it predicts the server will produce, sends the
authoritative write, rolls the cache back if the write fails and finally
re-reads the entry from the server. Each pending mutation is its own
:class:`OptimisticMutation`, so mutations against different cache keys run
independently; mutations against the same key are expected to be issued one
after another by the caller.
"""

from __future__ import annotations

import asyncio
import copy
import enum
import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Hashable, Optional

from algorithms import FlatPosition, PositionAllocator
from client import TrackerClient
from errors import ConcurrentModification, NotFound
from settings_schema import Settings

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]


class QueryKeys:
    """Hierarchical cache keys; a prefix names every key below it."""

    @staticmethod
    def templates() -> tuple:
        return ("templates",)

    @staticmethod
    def template_list() -> tuple:
        return ("templates", "list")

    @staticmethod
    def template_detail(template_id: int) -> tuple:
        return ("templates", "detail", template_id)

    @staticmethod
    def session_list() -> tuple:
        return ("sessions", "list")

    @staticmethod
    def session_detail(session_id: int) -> tuple:
        return ("sessions", "detail", session_id)

    @staticmethod
    def cycles() -> tuple:
        return ("cycles",)

    @staticmethod
    def cycle_active() -> tuple:
        return ("cycles", "active")


class QueryCache:
    """Key/value store of server reads with advisory read cancellation."""

    def __init__(self) -> None:
        self._data: dict[Hashable, Any] = {}
        self._stale: set[Hashable] = set()
        self._pending: dict[Hashable, object] = {}

    def get(self, key: Hashable) -> Any:
        return self._data.get(key)

    def set(self, key: Hashable, value: Any) -> None:
        self._data[key] = value
        self._stale.discard(key)

    def remove(self, key: Hashable) -> None:
        self._data.pop(key, None)
        self._stale.discard(key)

    def invalidate(self, prefix: tuple) -> list:
        """Mark every cached key starting with ``prefix`` as stale."""
        marked = [
            key
            for key in self._data
            if isinstance(key, tuple) and key[: len(prefix)] == prefix
        ]
        self._stale.update(marked)
        return marked

    def is_stale(self, key: Hashable) -> bool:
        return key in self._stale

    def is_fetching(self, key: Hashable) -> bool:
        return key in self._pending

    def cancel(self, key: Hashable) -> bool:
        """Stop an in-flight read of ``key`` from writing its result.

        The request itself keeps running; only applying its result is
        suppressed. Returns whether a read was pending.
        """
        return self._pending.pop(key, None) is not None

    async def fetch(self, key: Hashable, fetcher: Fetcher) -> Any:
        """Run ``fetcher`` and store its result unless the read was superseded."""
        token = object()
        self._pending[key] = token
        try:
            data = await fetcher()
        except BaseException:
            if self._pending.get(key) is token:
                del self._pending[key]
            raise
        if self._pending.get(key) is token:
            del self._pending[key]
            self.set(key, data)
        else:
            logger.debug("discarding superseded read of %s", key)
        return data


class MutationState(enum.Enum):
    IDLE = "idle"
    PREDICTING = "predicting"
    IN_FLIGHT = "in_flight"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    SETTLING = "settling"


class OptimisticMutation:
    """One pending write against one cache entry.

    ``predict`` receives a deep copy of the cached value and returns the value
    the write is expected to produce; ``None`` skips prediction. ``write``
    performs the authoritative request and ``refetch`` reads the entry back.
    """

    def __init__(
        self,
        cache: QueryCache,
        key: Hashable,
        predict: Optional[Callable[[Any], Any]],
        write: Fetcher,
        refetch: Fetcher,
    ) -> None:
        self.cache = cache
        self.key = key
        self.predict = predict
        self.write = write
        self.refetch = refetch
        self.state = MutationState.IDLE
        self.history: list[MutationState] = [MutationState.IDLE]
        self.rollback_point: Any = None
        self.error: Optional[Exception] = None

    def _enter(self, state: MutationState) -> None:
        self.state = state
        self.history.append(state)

    async def run(self) -> Any:
        if len(self.history) > 1:
            raise RuntimeError("mutation has already run")

        self._enter(MutationState.PREDICTING)
        self.cache.cancel(self.key)
        previous = self.cache.get(self.key)
        self.rollback_point = copy.deepcopy(previous)
        if previous is not None and self.predict is not None:
            try:
                self.cache.set(self.key, self.predict(copy.deepcopy(previous)))
            except (KeyError, ValueError) as e:
                logger.warning("no prediction for %s: %s", self.key, e)

        self._enter(MutationState.IN_FLIGHT)
        result = None
        try:
            result = await self.write()
        except Exception as e:
            self._enter(MutationState.ROLLED_BACK)
            self._restore()
            self.error = self._surface(e)
            logger.warning("write for %s failed, rolled back: %s", self.key, e)
        except BaseException:
            # the write may or may not have reached the server
            self._enter(MutationState.ROLLED_BACK)
            self._restore()
            self._abandon()
            logger.warning("write for %s interrupted, rolled back", self.key)
            raise
        else:
            self._enter(MutationState.COMMITTED)

        self._enter(MutationState.SETTLING)
        try:
            await self.cache.fetch(self.key, self.refetch)
        except Exception as e:
            self.cache.invalidate(self.key)
            logger.warning("settle read for %s failed: %s", self.key, e)
        except BaseException:
            self._abandon()
            raise
        self._enter(MutationState.IDLE)

        if self.error is not None:
            raise self.error
        return result

    def _abandon(self) -> None:
        self.cache.invalidate(self.key)
        self._enter(MutationState.IDLE)

    def _restore(self) -> None:
        if self.rollback_point is None:
            self.cache.remove(self.key)
        else:
            self.cache.set(self.key, self.rollback_point)

    @staticmethod
    def _surface(error: Exception) -> Exception:
        if isinstance(error, NotFound):
            surfaced = ConcurrentModification(f"server state changed: {error}")
            surfaced.__cause__ = error
            return surfaced
        return error


# predictions on the tree shapes returned by the read endpoints

def _find_index(nodes: list[dict], node_id: int) -> int:
    for index, node in enumerate(nodes):
        if node["id"] == node_id:
            return index
    raise KeyError(node_id)


def _rederive_items(group: dict) -> None:
    group_key = Decimal(group["position"])
    for item in group["items"]:
        item["position"] = FlatPosition.combine(group_key, Decimal(item["group_position"]))


def predict_move_group(
    tree: dict,
    group_id: int,
    before_group_id: int | None,
    allocator: PositionAllocator | None = None,
) -> dict:
    allocator = allocator or PositionAllocator()
    groups = tree["groups"]
    moved = groups.pop(_find_index(groups, group_id))
    index = len(groups) if before_group_id is None else _find_index(groups, before_group_id)
    key, compacted = allocator.place([Decimal(g["position"]) for g in groups], index)
    groups.insert(index, moved)
    if compacted is None:
        moved["position"] = PositionAllocator.key_to_str(key)
        _rederive_items(moved)
    else:
        for group, new_key in zip(groups, compacted):
            group["position"] = PositionAllocator.key_to_str(new_key)
            _rederive_items(group)
    return tree


def predict_move_item(
    tree: dict,
    item_id: int,
    target_group_id: int,
    before_item_id: int | None,
    allocator: PositionAllocator | None = None,
) -> dict:
    allocator = allocator or PositionAllocator()
    moved = None
    for group in tree["groups"]:
        for index, item in enumerate(group["items"]):
            if item["id"] == item_id:
                moved = group["items"].pop(index)
                break
        if moved is not None:
            break
    if moved is None:
        raise KeyError(item_id)
    target = tree["groups"][_find_index(tree["groups"], target_group_id)]
    items = target["items"]
    index = len(items) if before_item_id is None else _find_index(items, before_item_id)
    key, compacted = allocator.place([Decimal(i["group_position"]) for i in items], index)
    items.insert(index, moved)
    moved["group_id"] = target_group_id
    if "rest_seconds_override" in moved and moved["rest_seconds_override"] is None:
        moved["rest_seconds_effective"] = target["rest_seconds"]
    if compacted is None:
        moved["group_position"] = PositionAllocator.key_to_str(key)
    else:
        for item, new_key in zip(items, compacted):
            item["group_position"] = PositionAllocator.key_to_str(new_key)
    _rederive_items(target)
    return tree


def predict_delete_group(tree: dict, group_id: int) -> dict:
    tree["groups"].pop(_find_index(tree["groups"], group_id))
    return tree


def predict_delete_item(tree: dict, item_id: int) -> dict:
    for group in tree["groups"]:
        for index, item in enumerate(group["items"]):
            if item["id"] == item_id:
                group["items"].pop(index)
                return tree
    raise KeyError(item_id)


def predict_log_set(session: dict, item_id: int, reps: int, weight: float) -> dict:
    if session.get("finished_at"):
        raise ValueError("session already finished")
    volume = reps * weight
    for group in session["groups"]:
        for item in group["items"]:
            if item["id"] == item_id:
                item["sets"].append(
                    {
                        "id": None,
                        "set_index": len(item["sets"]) + 1,
                        "reps": reps,
                        "weight": weight,
                        "volume": volume,
                        "created_at": None,
                    }
                )
                item["sets_completed"] += 1
                item["item_volume"] += volume
                group["group_volume"] += volume
                session["total_sets"] += 1
                session["total_volume"] += volume
                return session
    raise KeyError(item_id)


class TreeCacheController:
    """Async façade pairing the HTTP client with a :class:`QueryCache`.

    The client is blocking, so every request runs in a worker thread.
    """

    def __init__(
        self,
        client: TrackerClient,
        cache: QueryCache | None = None,
        allocator: PositionAllocator | None = None,
    ) -> None:
        self.client = client
        self.cache = cache or QueryCache()
        self.allocator = allocator or PositionAllocator()

    @classmethod
    def from_settings(cls, settings: Settings, session=None) -> "TreeCacheController":
        return cls(
            TrackerClient.from_settings(settings, session=session),
            allocator=PositionAllocator(settings.position_scale, settings.position_step),
        )

    def _call(self, func: Callable, *args) -> Fetcher:
        return lambda: asyncio.to_thread(func, *args)

    async def load_template(self, template_id: int) -> dict:
        return await self.cache.fetch(
            QueryKeys.template_detail(template_id),
            self._call(self.client.get_template_tree, template_id),
        )

    async def load_session(self, session_id: int) -> dict:
        return await self.cache.fetch(
            QueryKeys.session_detail(session_id),
            self._call(self.client.get_instance_tree, session_id),
        )

    async def load_sessions(self) -> list:
        return await self.cache.fetch(
            QueryKeys.session_list(), self._call(self.client.list_sessions)
        )

    async def load_active_cycle(self) -> dict | None:
        return await self.cache.fetch(
            QueryKeys.cycle_active(), self._call(self.client.get_active_cycle)
        )

    def _template_mutation(
        self, template_id: int, predict: Optional[Callable], write: Fetcher
    ) -> OptimisticMutation:
        return OptimisticMutation(
            self.cache,
            QueryKeys.template_detail(template_id),
            predict,
            write,
            self._call(self.client.get_template_tree, template_id),
        )

    async def move_group(
        self, template_id: int, group_id: int, before_group_id: int | None = None
    ) -> None:
        await self._template_mutation(
            template_id,
            lambda tree: predict_move_group(tree, group_id, before_group_id, self.allocator),
            self._call(self.client.move_group, template_id, group_id, before_group_id),
        ).run()

    async def move_item(
        self,
        template_id: int,
        item_id: int,
        target_group_id: int,
        before_item_id: int | None = None,
    ) -> None:
        await self._template_mutation(
            template_id,
            lambda tree: predict_move_item(
                tree, item_id, target_group_id, before_item_id, self.allocator
            ),
            self._call(self.client.move_item, item_id, target_group_id, before_item_id),
        ).run()

    async def delete_group(self, template_id: int, group_id: int) -> None:
        await self._template_mutation(
            template_id,
            lambda tree: predict_delete_group(tree, group_id),
            self._call(self.client.delete_group, group_id),
        ).run()

    async def delete_item(self, template_id: int, item_id: int) -> None:
        await self._template_mutation(
            template_id,
            lambda tree: predict_delete_item(tree, item_id),
            self._call(self.client.delete_item, item_id),
        ).run()

    async def insert_group(self, template_id: int, **params) -> dict:
        """Insert without prediction; the server assigns the id and key."""
        return await self._template_mutation(
            template_id,
            None,
            lambda: asyncio.to_thread(self.client.insert_group, template_id, **params),
        ).run()

    async def insert_item(self, template_id: int, group_id: int, exercise_id: int, **params) -> dict:
        return await self._template_mutation(
            template_id,
            None,
            lambda: asyncio.to_thread(self.client.insert_item, group_id, exercise_id, **params),
        ).run()

    async def log_set(self, session_id: int, item_id: int, reps: int, weight: float) -> int:
        return await OptimisticMutation(
            self.cache,
            QueryKeys.session_detail(session_id),
            lambda session: predict_log_set(session, item_id, reps, weight),
            self._call(self.client.log_set, item_id, reps, weight),
            self._call(self.client.get_instance_tree, session_id),
        ).run()

    async def start_session(
        self, template_id: int, title: str | None = None, cycle_id: int | None = None
    ) -> int:
        """Start a session; history, template usage and cycle progress go stale."""
        session_id = await asyncio.to_thread(
            self.client.start_instance, template_id, title, cycle_id
        )
        self.cache.invalidate(QueryKeys.session_list())
        self.cache.invalidate(QueryKeys.templates())
        self.cache.invalidate(QueryKeys.cycles())
        return session_id

    async def finish_session(self, session_id: int) -> dict:
        summary = await OptimisticMutation(
            self.cache,
            QueryKeys.session_detail(session_id),
            None,
            self._call(self.client.finish_instance, session_id),
            self._call(self.client.get_instance_tree, session_id),
        ).run()
        self.cache.invalidate(QueryKeys.session_list())
        return summary
