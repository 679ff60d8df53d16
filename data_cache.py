"""
Client-side cache for gateway reads, with optimistic mutations.

A CacheStore holds one slot per entity type ("subjects", "tasks", "profile",
"analytics"). Coordinators read through the store and share it, so every
consumer of the same store sees the same value and a slot is fetched at most
once at a time.

Slot lifecycle:

    EMPTY -> LOADING -> FRESH -> (ttl elapsed) STALE -> LOADING -> FRESH | ERROR

STALE is not stored; it is a FRESH slot whose last successful fetch is older
than the ttl. Reading a STALE slot returns the cached value right away and
refreshes it in the background.

The server is always the authority. The cache is only a shortcut that avoids
a round trip within the staleness window.
"""

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import CACHE_TTL_SECONDS

logger = logging.getLogger(__name__)

Fetch = Callable[[], Awaitable[Any]]
Listener = Callable[["CacheSlot"], None]

IMMUTABLE_FIELDS = ("id", "user_id", "created_at")


class SlotState(str, Enum):
    EMPTY = "empty"
    LOADING = "loading"
    FRESH = "fresh"
    STALE = "stale"
    ERROR = "error"


@dataclass
class CacheSlot:
    value: Any = None
    status: SlotState = SlotState.EMPTY
    fetched_at: Optional[float] = None
    error: Optional[BaseException] = None
    inflight: Optional["asyncio.Future[Any]"] = None
    invalidated: bool = False
    # bumped by invalidate(); fetches started under an older epoch never write back
    epoch: int = 0


@dataclass
class CacheStore:
    """
    Slot storage shared by coordinators.

    clear() resets every slot and bumps the generation; fetches started under
    an older generation still resolve for their callers but never write back.
    """

    slots: Dict[str, CacheSlot] = field(default_factory=dict)
    listeners: Dict[str, List[Listener]] = field(default_factory=lambda: defaultdict(list))
    generation: int = 0

    def slot(self, key: str) -> CacheSlot:
        if key not in self.slots:
            self.slots[key] = CacheSlot()
        return self.slots[key]

    def subscribe(self, key: str, listener: Listener) -> Callable[[], None]:
        self.listeners[key].append(listener)

        def unsubscribe() -> None:
            if listener in self.listeners[key]:
                self.listeners[key].remove(listener)

        return unsubscribe

    def notify(self, key: str) -> None:
        slot = self.slot(key)
        for listener in list(self.listeners[key]):
            listener(slot)

    def clear(self) -> None:
        self.generation += 1
        for key in list(self.slots):
            self.slots[key] = CacheSlot()
            self.notify(key)
        logger.debug("cache cleared generation=%d", self.generation)


_default_store = CacheStore()


def default_store() -> CacheStore:
    """The process-wide store used when a coordinator is not given one."""
    return _default_store


def clear_data_cache() -> None:
    _default_store.clear()


def _consume_exception(fut: "asyncio.Future[Any]") -> None:
    # failures are reported through the slot and to awaiting callers
    if not fut.cancelled():
        fut.exception()


class CacheCoordinator:
    """Read-through access to one cache slot."""

    def __init__(
        self,
        key: str,
        fetch: Fetch,
        store: Optional[CacheStore] = None,
        ttl: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.key = key
        self.fetch = fetch
        self.store = store if store is not None else default_store()
        self.ttl = ttl
        self.clock = clock
        self._dependents: List["CacheCoordinator"] = []

    @property
    def slot(self) -> CacheSlot:
        return self.store.slot(self.key)

    @property
    def state(self) -> SlotState:
        slot = self.slot
        if slot.status == SlotState.FRESH and self._expired(slot):
            return SlotState.STALE
        return slot.status

    @property
    def value(self) -> Any:
        return self.slot.value

    @property
    def error(self) -> Optional[BaseException]:
        return self.slot.error

    @property
    def loading(self) -> bool:
        return self.slot.status == SlotState.LOADING

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.store.subscribe(self.key, listener)

    def _expired(self, slot: CacheSlot) -> bool:
        return slot.fetched_at is None or self.clock() - slot.fetched_at >= self.ttl

    async def read(self, force_refresh: bool = False) -> Any:
        """
        Return the cached value, fetching it first when there is none.

        A FRESH slot is returned as is. A STALE slot is returned as is and a
        background refresh is started unless one is already running. An
        EMPTY, ERROR or invalidated slot, or force_refresh, waits for a fetch;
        concurrent callers share the same request.
        """
        slot = self.slot
        if slot.status == SlotState.FRESH and not slot.invalidated and not force_refresh:
            if self._expired(slot) and slot.inflight is None:
                logger.debug("%s is stale, refreshing in background", self.key)
                self._start_fetch(slot)
            return slot.value
        return await self._fetch_now(slot)

    async def refresh(self) -> Any:
        return await self.read(force_refresh=True)

    def invalidate(self) -> None:
        """
        Make the next read wait for a fresh fetch.

        A fetch already running is detached from the slot. Its callers still
        get its result, but it never writes back.
        """
        slot = self.slot
        if slot.status == SlotState.EMPTY and slot.inflight is None:
            return
        self._detach_fetch(slot)
        slot.invalidated = True
        self.store.notify(self.key)

    def _detach_fetch(self, slot: CacheSlot) -> None:
        if slot.inflight is None:
            return
        slot.epoch += 1
        slot.inflight = None
        if slot.status == SlotState.LOADING:
            slot.status = SlotState.FRESH if slot.fetched_at is not None else SlotState.EMPTY

    def invalidates(self, *others: "CacheCoordinator") -> None:
        """Invalidate the given coordinators after every mutation made here."""
        self._dependents.extend(others)

    def _invalidate_dependents(self) -> None:
        for other in self._dependents:
            other.invalidate()

    async def _fetch_now(self, slot: CacheSlot) -> Any:
        if slot.inflight is None:
            self._start_fetch(slot)
        if slot.status != SlotState.LOADING:
            slot.status = SlotState.LOADING
            self.store.notify(self.key)
        return await asyncio.shield(slot.inflight)

    def _start_fetch(self, slot: CacheSlot) -> None:
        fut = asyncio.ensure_future(self._load(slot, self.store.generation, slot.epoch))
        fut.add_done_callback(_consume_exception)
        slot.inflight = fut

    async def _load(self, slot: CacheSlot, generation: int, epoch: int) -> Any:
        try:
            value = await self.fetch()
        except Exception as e:
            logger.warning("fetching %s failed: %s", self.key, e)
            if self.store.generation == generation and slot.epoch == epoch:
                slot.inflight = None
                slot.error = e
                if slot.status == SlotState.LOADING:
                    slot.status = SlotState.ERROR
                self.store.notify(self.key)
            raise
        if self.store.generation == generation and slot.epoch == epoch:
            slot.value = value
            slot.status = SlotState.FRESH
            slot.fetched_at = self.clock()
            slot.error = None
            slot.inflight = None
            slot.invalidated = False
            self.store.notify(self.key)
        else:
            logger.debug("dropping %s response from a cleared or invalidated slot", self.key)
        return value

    def _publish(self, value: Any, generation: int) -> None:
        # a sign-out in between means the slot belongs to another session now
        if self.store.generation != generation:
            return
        self.slot.value = value
        self.store.notify(self.key)

    async def _resync(self, snapshot: Any, generation: int) -> None:
        """Throw away local changes and reload from the server."""
        if self.store.generation != generation:
            return
        self._publish(snapshot, generation)
        try:
            await self.refresh()
        except Exception as e:
            logger.warning("resync of %s after a failed mutation also failed: %s", self.key, e)


def _patched(entity: Any, changes: Dict[str, Any]) -> Any:
    allowed = {k: v for k, v in changes.items() if k not in IMMUTABLE_FIELDS and k in type(entity).model_fields}
    return entity.model_copy(update=allowed)


class CollectionCoordinator(CacheCoordinator):
    """
    Cache for a list of entities with create/update/delete.

    update and delete change the cached list before the request is sent;
    create appends only once the server returned the new entity. When the
    request fails the local change is dropped, the list is reloaded and the
    original error is raised again. A fetch already running when a mutation
    starts is detached so its older answer cannot overwrite the change.
    Mutations are not serialized against each other.
    """

    def __init__(
        self,
        key: str,
        fetch: Fetch,
        create: Callable[[Dict[str, Any]], Awaitable[Any]],
        update: Callable[[str, Dict[str, Any]], Awaitable[Any]],
        delete: Callable[[str], Awaitable[None]],
        store: Optional[CacheStore] = None,
        ttl: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(key, fetch, store=store, ttl=ttl, clock=clock)
        self._create = create
        self._update = update
        self._delete = delete

    def _edit(self, change: Callable[[List[Any]], List[Any]], generation: int) -> None:
        # nothing to edit before the first load
        if self.slot.value is not None:
            self._publish(change(list(self.slot.value)), generation)

    async def create(self, draft: Dict[str, Any]) -> Any:
        generation = self.store.generation
        snapshot = self.slot.value
        self._detach_fetch(self.slot)
        try:
            entity = await self._create(draft)
        except Exception:
            await self._resync(snapshot, generation)
            raise
        self._publish(list(self.slot.value or []) + [entity], generation)
        self._invalidate_dependents()
        return entity

    async def update(self, entity_id: str, changes: Dict[str, Any]) -> Any:
        generation = self.store.generation
        snapshot = self.slot.value
        self._detach_fetch(self.slot)
        self._edit(lambda items: [_patched(e, changes) if e.id == entity_id else e for e in items], generation)
        try:
            entity = await self._update(entity_id, changes)
        except Exception:
            await self._resync(snapshot, generation)
            raise
        self._edit(lambda items: [entity if e.id == entity_id else e for e in items], generation)
        self._invalidate_dependents()
        return entity

    async def delete(self, entity_id: str) -> None:
        generation = self.store.generation
        snapshot = self.slot.value
        self._detach_fetch(self.slot)
        self._edit(lambda items: [e for e in items if e.id != entity_id], generation)
        try:
            await self._delete(entity_id)
        except Exception:
            await self._resync(snapshot, generation)
            # the server may have deleted part of a cascade
            self._invalidate_dependents()
            raise
        self._invalidate_dependents()


class ProfileCoordinator(CacheCoordinator):
    """Cache for the signed-in user's profile; only name and avatar change."""

    def __init__(
        self,
        key: str,
        fetch: Fetch,
        update: Callable[[Dict[str, Any]], Awaitable[Any]],
        store: Optional[CacheStore] = None,
        ttl: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(key, fetch, store=store, ttl=ttl, clock=clock)
        self._update = update

    async def update(self, changes: Dict[str, Any]) -> Any:
        generation = self.store.generation
        snapshot = self.slot.value
        self._detach_fetch(self.slot)
        if snapshot is not None:
            local = {}
            if changes.get("name"):
                local["name"] = changes["name"]
            if "avatar" in changes:
                local["avatar"] = changes["avatar"]
            self._publish(snapshot.model_copy(update=local), generation)
        try:
            profile = await self._update(changes)
        except Exception:
            await self._resync(snapshot, generation)
            raise
        self._publish(profile, generation)
        self._invalidate_dependents()
        return profile
