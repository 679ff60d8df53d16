from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from data_cache import CacheCoordinator, CacheStore, CollectionCoordinator, ProfileCoordinator, SlotState
from errors import StoreError, TransportError, ValidationError
from schemas import Profile

from .fakes import FakeSubjectsGateway, ManualClock, make_subject

TTL = 30.0


@pytest.fixture()
def gateway() -> FakeSubjectsGateway:
    return FakeSubjectsGateway(make_subject("s1", "Calculus"), make_subject("s2", "Biology"))


@pytest.fixture()
def ttl_clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def cache() -> CacheStore:
    return CacheStore()


@pytest.fixture()
def subjects(gateway, cache, ttl_clock) -> CollectionCoordinator:
    return CollectionCoordinator(
        "subjects",
        gateway.list,
        gateway.create,
        gateway.update,
        gateway.delete,
        store=cache,
        ttl=TTL,
        clock=ttl_clock,
    )


def _names(items) -> list[str]:
    return [s.name for s in items]


@pytest.mark.asyncio
async def test_first_read_fetches_then_serves_from_cache(subjects, gateway) -> None:
    assert subjects.state == SlotState.EMPTY

    first = await subjects.read()
    second = await subjects.read()

    assert _names(first) == ["Calculus", "Biology"]
    assert second is first
    assert gateway.calls["list"] == 1
    assert subjects.state == SlotState.FRESH


@pytest.mark.asyncio
async def test_coordinators_sharing_a_store_share_the_value(subjects, gateway, cache, ttl_clock) -> None:
    other_view = CollectionCoordinator(
        "subjects", gateway.list, gateway.create, gateway.update, gateway.delete, store=cache, ttl=TTL, clock=ttl_clock
    )

    first = await subjects.read()
    assert await other_view.read() is first
    assert gateway.calls["list"] == 1


@pytest.mark.asyncio
async def test_separate_stores_are_isolated(gateway, ttl_clock) -> None:
    a = CacheCoordinator("subjects", gateway.list, store=CacheStore(), clock=ttl_clock)
    b = CacheCoordinator("subjects", gateway.list, store=CacheStore(), clock=ttl_clock)

    await a.read()
    await b.read()

    assert gateway.calls["list"] == 2


@pytest.mark.asyncio
async def test_concurrent_reads_share_one_fetch(subjects, gateway) -> None:
    gateway.hold = asyncio.Event()

    readers = [asyncio.ensure_future(subjects.read()) for _ in range(3)]
    await asyncio.sleep(0)
    assert subjects.state == SlotState.LOADING

    gateway.hold.set()
    results = await asyncio.gather(*readers)

    assert gateway.calls["list"] == 1
    assert results[0] is results[1] is results[2]


@pytest.mark.asyncio
async def test_stale_read_returns_cached_value_and_refreshes_in_background(subjects, gateway, ttl_clock) -> None:
    cached = await subjects.read()
    gateway.items["s3"] = make_subject("s3", "Chemistry")
    ttl_clock.advance(TTL + 1)
    assert subjects.state == SlotState.STALE

    updates = []
    subjects.subscribe(lambda slot: updates.append(slot.value))
    gateway.hold = asyncio.Event()

    stale = await subjects.read()
    again = await subjects.read()
    # let the background fetch start
    await asyncio.sleep(0)

    assert stale is cached
    assert again is cached
    assert subjects.state == SlotState.STALE
    assert gateway.calls["list"] == 2

    gateway.hold.set()
    await subjects.slot.inflight

    assert _names(subjects.value) == ["Calculus", "Biology", "Chemistry"]
    assert subjects.state == SlotState.FRESH
    assert _names(updates[-1]) == ["Calculus", "Biology", "Chemistry"]


@pytest.mark.asyncio
async def test_force_refresh_always_fetches(subjects, gateway) -> None:
    await subjects.read()
    await subjects.read(force_refresh=True)
    await subjects.refresh()

    assert gateway.calls["list"] == 3


@pytest.mark.asyncio
async def test_failed_fetch_keeps_previous_value(gateway, cache, ttl_clock) -> None:
    calls = {"n": 0}

    async def flaky_fetch():
        calls["n"] += 1
        if calls["n"] > 1:
            raise TransportError()
        return await gateway.list()

    coord = CacheCoordinator("subjects", flaky_fetch, store=cache, ttl=TTL, clock=ttl_clock)
    before = await coord.read()

    with pytest.raises(TransportError):
        await coord.refresh()

    assert coord.state == SlotState.ERROR
    assert isinstance(coord.error, TransportError)
    assert coord.value is before


@pytest.mark.asyncio
async def test_failed_first_fetch_leaves_slot_in_error(cache, ttl_clock) -> None:
    async def broken():
        raise StoreError()

    coord = CacheCoordinator("analytics", broken, store=cache, ttl=TTL, clock=ttl_clock)

    with pytest.raises(StoreError):
        await coord.read()

    assert coord.state == SlotState.ERROR
    assert coord.value is None
    assert not coord.loading


@pytest.mark.asyncio
async def test_create_appends_server_entity(subjects, gateway) -> None:
    await subjects.read()

    created = await subjects.create({"name": "Chemistry", "color_tag": "#F59E0B"})

    assert created.id in gateway.items
    assert _names(subjects.value) == ["Calculus", "Biology", "Chemistry"]
    assert gateway.calls["list"] == 1


@pytest.mark.asyncio
async def test_create_is_not_applied_before_the_server_answers(subjects, gateway) -> None:
    await subjects.read()
    gateway.hold = asyncio.Event()

    pending = asyncio.ensure_future(subjects.create({"name": "Chemistry"}))
    await asyncio.sleep(0)
    assert _names(subjects.value) == ["Calculus", "Biology"]

    gateway.hold.set()
    await pending
    assert _names(subjects.value) == ["Calculus", "Biology", "Chemistry"]


@pytest.mark.asyncio
async def test_update_is_visible_before_the_server_answers(subjects, gateway) -> None:
    await subjects.read()
    gateway.hold = asyncio.Event()

    pending = asyncio.ensure_future(subjects.update("s1", {"name": "Calculus II"}))
    await asyncio.sleep(0)
    assert _names(subjects.value) == ["Calculus II", "Biology"]

    gateway.hold.set()
    updated = await pending
    assert updated.name == "Calculus II"
    assert subjects.value[0] is updated


@pytest.mark.asyncio
async def test_failed_update_rolls_back_to_server_state(subjects, gateway) -> None:
    await subjects.read()
    gateway.fail_with = ValidationError("Name and color are required")

    with pytest.raises(ValidationError, match="Name and color"):
        await subjects.update("s1", {"name": "Calculus II"})

    assert _names(subjects.value) == ["Calculus", "Biology"]
    assert gateway.calls["list"] == 2
    assert _names(await subjects.refresh()) == _names(subjects.value)


@pytest.mark.asyncio
async def test_failed_delete_rolls_back(subjects, gateway) -> None:
    await subjects.read()
    gateway.hold = asyncio.Event()
    gateway.fail_with = StoreError()

    pending = asyncio.ensure_future(subjects.delete("s1"))
    await asyncio.sleep(0)
    assert _names(subjects.value) == ["Biology"]

    gateway.hold.set()
    with pytest.raises(StoreError):
        await pending

    assert _names(subjects.value) == ["Calculus", "Biology"]
    assert subjects.state == SlotState.FRESH


@pytest.mark.asyncio
async def test_failed_create_forces_refresh(subjects, gateway) -> None:
    await subjects.read()
    gateway.fail_with = TransportError()

    with pytest.raises(TransportError):
        await subjects.create({"name": "Chemistry"})

    assert gateway.calls["list"] == 2
    assert _names(subjects.value) == ["Calculus", "Biology"]


@pytest.mark.asyncio
async def test_original_error_survives_a_failed_resync(gateway, cache, ttl_clock) -> None:
    calls = {"n": 0}

    async def fetch_once():
        calls["n"] += 1
        if calls["n"] > 1:
            raise TransportError()
        return await gateway.list()

    coord = CollectionCoordinator(
        "subjects", fetch_once, gateway.create, gateway.update, gateway.delete, store=cache, ttl=TTL, clock=ttl_clock
    )
    await coord.read()
    gateway.fail_with = ValidationError("bad")

    with pytest.raises(ValidationError):
        await coord.update("s1", {"name": "x"})

    assert _names(coord.value) == ["Calculus", "Biology"]
    assert coord.state == SlotState.ERROR


@pytest.mark.asyncio
async def test_mutation_before_first_read_does_not_invent_a_list(subjects, gateway) -> None:
    await subjects.delete("s1")

    assert subjects.value is None
    assert _names(await subjects.read()) == ["Biology"]


@pytest.mark.asyncio
async def test_clear_resets_every_slot(subjects, gateway, cache, ttl_clock) -> None:
    analytics = CacheCoordinator("analytics", gateway.list, store=cache, ttl=TTL, clock=ttl_clock)
    await subjects.read()
    await analytics.read()

    cache.clear()

    assert subjects.state == SlotState.EMPTY
    assert analytics.state == SlotState.EMPTY
    assert subjects.value is None


@pytest.mark.asyncio
async def test_clear_drops_late_responses(subjects, gateway, cache) -> None:
    gateway.hold = asyncio.Event()
    pending = asyncio.ensure_future(subjects.read())
    await asyncio.sleep(0)

    cache.clear()
    gateway.hold.set()
    await pending

    assert subjects.state == SlotState.EMPTY
    assert subjects.value is None


@pytest.mark.asyncio
async def test_clear_during_mutation_does_not_leak(subjects, gateway, cache) -> None:
    await subjects.read()
    gateway.hold = asyncio.Event()
    pending = asyncio.ensure_future(subjects.create({"name": "Chemistry"}))
    await asyncio.sleep(0)

    cache.clear()
    gateway.hold.set()
    await pending

    assert subjects.value is None


@pytest.mark.asyncio
async def test_registered_dependents_refetch_after_mutation(subjects, gateway, cache, ttl_clock) -> None:
    fetches = {"n": 0}

    async def count_tasks():
        fetches["n"] += 1
        return []

    tasks = CacheCoordinator("tasks", count_tasks, store=cache, ttl=TTL, clock=ttl_clock)
    subjects.invalidates(tasks)
    await subjects.read()
    await tasks.read()

    await subjects.delete("s1")
    await tasks.read()

    assert fetches["n"] == 2


@pytest.mark.asyncio
async def test_without_registration_other_slots_are_untouched(subjects, cache, ttl_clock) -> None:
    fetches = {"n": 0}

    async def count_tasks():
        fetches["n"] += 1
        return []

    tasks = CacheCoordinator("tasks", count_tasks, store=cache, ttl=TTL, clock=ttl_clock)
    await subjects.read()
    await tasks.read()

    await subjects.delete("s1")
    await tasks.read()

    assert fetches["n"] == 1


@pytest.mark.asyncio
async def test_invalidate_wins_over_a_fetch_already_running(cache, ttl_clock) -> None:
    server = {"tasks": ["t1-orphan"]}
    release = asyncio.Event()
    calls = {"n": 0}

    async def fetch_tasks():
        calls["n"] += 1
        answer = list(server["tasks"])
        if calls["n"] == 2:
            await release.wait()
        return answer

    tasks = CacheCoordinator("tasks", fetch_tasks, store=cache, ttl=TTL, clock=ttl_clock)
    assert await tasks.read() == ["t1-orphan"]
    ttl_clock.advance(TTL + 1)

    # stale read starts a background refresh that answers with the old list
    assert await tasks.read() == ["t1-orphan"]
    await asyncio.sleep(0)
    background = tasks.slot.inflight
    assert calls["n"] == 2

    server["tasks"] = []
    tasks.invalidate()
    release.set()
    assert await background == ["t1-orphan"]
    assert tasks.value == ["t1-orphan"]

    assert await tasks.read() == []
    assert calls["n"] == 3
    assert tasks.state == SlotState.FRESH


@pytest.mark.asyncio
async def test_failed_profile_update_rolls_back(cache, ttl_clock) -> None:
    server = Profile(
        id="u1",
        email="alice@example.com",
        name="Alice",
        created_at=datetime(2025, 3, 1, tzinfo=timezone.utc),
    )
    hold = asyncio.Event()
    fetches = {"n": 0}

    async def get_profile():
        fetches["n"] += 1
        return server

    async def update_profile(changes):
        await hold.wait()
        raise ValidationError("Invalid avatar")

    profile = ProfileCoordinator("profile", get_profile, update_profile, store=cache, ttl=TTL, clock=ttl_clock)
    await profile.read()

    pending = asyncio.ensure_future(profile.update({"name": "Alicia", "avatar": "https://img/a.png"}))
    await asyncio.sleep(0)
    assert (profile.value.name, profile.value.avatar) == ("Alicia", "https://img/a.png")

    hold.set()
    with pytest.raises(ValidationError, match="Invalid avatar"):
        await pending

    assert profile.value.name == "Alice"
    assert profile.value.avatar is None
    assert fetches["n"] == 2
    assert profile.state == SlotState.FRESH


@pytest.mark.asyncio
async def test_older_background_fetch_does_not_undo_an_update(gateway, cache, ttl_clock) -> None:
    release = asyncio.Event()
    calls = {"n": 0}

    async def fetch_subjects():
        calls["n"] += 1
        answer = list(gateway.items.values())
        if calls["n"] == 2:
            await release.wait()
        return answer

    coord = CollectionCoordinator(
        "subjects", fetch_subjects, gateway.create, gateway.update, gateway.delete, store=cache, ttl=TTL, clock=ttl_clock
    )
    await coord.read()
    ttl_clock.advance(TTL + 1)
    await coord.read()
    await asyncio.sleep(0)
    background = coord.slot.inflight

    await coord.update("s1", {"name": "Calculus II"})
    release.set()
    await background

    assert _names(coord.value) == ["Calculus II", "Biology"]
