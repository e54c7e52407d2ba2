import asyncio

import pytest

from content_inventory.core.errors import ImportSessionForbidden, ImportSessionNotFound
from content_inventory.sessions.store import ImportSessionStore, purge_expired_sessions_task


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return ImportSessionStore(ttl_seconds=900, clock=clock)


def test_create_then_get(store):
    store.create("s1", "alice", [{"current_url": "https://a.example"}])

    session = store.get("s1", user_id="alice")

    assert session.user_id == "alice"
    assert session.rows == ({"current_url": "https://a.example"},)
    assert len(store) == 1


def test_unknown_session_not_found(store):
    with pytest.raises(ImportSessionNotFound):
        store.get("missing")


def test_other_user_forbidden(store):
    store.create("s1", "alice", [])

    with pytest.raises(ImportSessionForbidden):
        store.get("s1", user_id="mallory")


def test_expired_session_treated_as_missing(store, clock):
    store.create("s1", "alice", [])
    clock.now += 901

    with pytest.raises(ImportSessionNotFound):
        store.get("s1", user_id="alice")
    assert len(store) == 0


def test_delete_makes_session_single_use(store):
    store.create("s1", "alice", [])

    assert store.delete("s1") is True
    assert store.delete("s1") is False
    with pytest.raises(ImportSessionNotFound):
        store.get("s1")


def test_owner_can_replace_pending_batch(store):
    store.create("s1", "alice", [{"n": 1}])
    store.create("s1", "alice", [{"n": 2}, {"n": 3}])

    assert len(store.get("s1").rows) == 2


def test_cannot_take_over_live_session(store):
    store.create("s1", "alice", [])

    with pytest.raises(ImportSessionForbidden):
        store.create("s1", "mallory", [])


def test_expired_session_id_can_be_reused(store, clock):
    store.create("s1", "alice", [])
    clock.now += 1000

    store.create("s1", "bob", [])

    assert store.get("s1", user_id="bob").user_id == "bob"


def test_stored_rows_are_a_snapshot(store):
    rows = [{"n": 1}]
    store.create("s1", "alice", rows)
    rows.append({"n": 2})

    assert len(store.get("s1").rows) == 1


def test_purge_expired(store, clock):
    store.create("old", "alice", [])
    clock.now += 600
    store.create("new", "alice", [])
    clock.now += 400

    assert store.purge_expired() == 1
    assert len(store) == 1
    assert store.get("new").session_id == "new"


async def test_purge_task_runs_until_cancelled(store, clock):
    store.create("s1", "alice", [])
    clock.now += 1000

    task = asyncio.create_task(purge_expired_sessions_task(store, interval_seconds=0.01))
    await asyncio.sleep(0.05)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert len(store) == 0
    assert task.done()
