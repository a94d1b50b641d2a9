"""
Tests de la persistance : regroupement des écritures, flush à l'arrêt, stores.
"""
import asyncio
import json
import threading
import time

import pytest

from conftest import SERVER, room, user
from core.config import RoomConfig
from core.errors import PersistenceError
from core.gate.manager import setup_admission_gate
from core.gate.models import PendingChallenge, Snapshot
from core.gate.persistence import JsonFileStore, PersistenceManager
from core.gate.trust import TrustStore
from db import snapshot_file


class MemoryStore:
    def __init__(self, fail=False):
        self.saved = []
        self.fail = fail

    async def load(self):
        return Snapshot()

    async def save(self, snapshot):
        if self.fail:
            raise PersistenceError("disque plein")
        self.saved.append(snapshot.to_dict())


def _counter_snapshot():
    state = {"n": 0}

    def snapshot():
        state["n"] += 1
        return Snapshot(verified={"r": list(range(state["n"]))})

    return snapshot


def test_first_change_flushes_immediately_then_batches():
    async def scenario():
        store = MemoryStore()
        manager = PersistenceManager(store, _counter_snapshot(), window=0.05)
        manager.note_change()
        await asyncio.sleep(0.01)
        assert len(store.saved) == 1

        manager.note_change()
        manager.note_change()
        manager.note_change()
        await asyncio.sleep(0.01)
        assert len(store.saved) == 1
        assert manager.dirty

        await asyncio.sleep(0.08)
        assert len(store.saved) == 2
        assert not manager.dirty
        return manager

    manager = asyncio.run(scenario())
    assert manager.flush_count == 2


def test_change_after_window_flushes_immediately():
    async def scenario():
        store = MemoryStore()
        manager = PersistenceManager(store, _counter_snapshot(), window=0.02)
        manager.note_change()
        await asyncio.sleep(0.05)
        manager.note_change()
        await asyncio.sleep(0.005)
        return len(store.saved)

    assert asyncio.run(scenario()) == 2


def test_close_flushes_unconditionally():
    async def scenario():
        store = MemoryStore()
        manager = PersistenceManager(store, _counter_snapshot(), window=60)
        manager.note_change()
        await asyncio.sleep(0.01)
        manager.note_change()
        await manager.close()
        await manager.close()
        return store.saved

    assert len(asyncio.run(scenario())) == 3


def test_failed_flush_is_logged_and_stays_dirty(caplog):
    async def scenario():
        manager = PersistenceManager(MemoryStore(fail=True), _counter_snapshot(), window=0)
        manager.note_change()
        await asyncio.sleep(0.01)
        assert manager.dirty
        with pytest.raises(PersistenceError):
            await manager.close()

    asyncio.run(scenario())
    assert "Echec persistance" in caplog.text


def test_json_store_round_trip(tmp_path):
    store = JsonFileStore(tmp_path / "db.json")
    trust = TrustStore()
    trust.add_room("r1")
    trust.mark_verified("r1", 5)
    trust.mark_verified("r1", 3)
    trust.set_pending("r1", "05aa", PendingChallenge(answer="ABCD", issued_at=12.5, message_id=44))
    trust.set_pending("r1", "05bb", PendingChallenge())
    snap = trust.snapshot()
    snap.sessions = {"r1": "11" * 32}

    async def scenario():
        await store.save(snap)
        return await store.load()

    loaded = asyncio.run(scenario())
    assert loaded == snap

    reloaded = TrustStore()
    reloaded.load(loaded)
    assert reloaded.rooms == trust.rooms


def test_json_store_creates_missing_and_reads_empty(tmp_path):
    path = tmp_path / "nested" / "db.json"
    store = JsonFileStore(path)
    assert asyncio.run(store.load()) == Snapshot()
    assert json.loads(path.read_text()) == {}

    path.write_text("   ")
    assert asyncio.run(store.load()) == Snapshot()


def test_json_store_rejects_garbage(tmp_path):
    path = tmp_path / "db.json"
    path.write_text("{not json")
    with pytest.raises(PersistenceError):
        asyncio.run(JsonFileStore(path).load())


def test_setup_persists_new_identities_and_state(tmp_path, host):
    path = tmp_path / "db.json"
    rooms = {"r1": RoomConfig(message="hi")}

    async def scenario():
        gate = await setup_admission_gate(host, rooms, JsonFileStore(path), send_delay=0)
        assert set(host.handlers) == {"userVisible", "beforePost", "load", "shutdown"}
        await gate.user_visible(user(1), room("r1"), SERVER)
        await gate.shutdown()
        return gate

    gate = asyncio.run(scenario())
    data = json.loads(path.read_text())
    assert data["sessions"]["r1"] == gate.seeds["r1"]
    assert data["verified"] == {"r1": [1]}
    assert data["db"]["r1"] == {user(1)["session_id"]: {}}

    async def restart():
        return await setup_admission_gate(host, rooms, JsonFileStore(path), send_delay=0)

    again = asyncio.run(restart())
    assert again.seeds == gate.seeds
    assert again.trust.is_verified("r1", 1)
    assert again.contexts["r1"].identity.handle(SERVER["pk"]) == gate.contexts["r1"].identity.handle(SERVER["pk"])


def test_close_waits_for_write_in_progress(tmp_path, monkeypatch):
    path = tmp_path / "db.json"
    guard = threading.Lock()
    writes = {"active": 0, "max": 0}
    real_write = snapshot_file.write_snapshot

    def slow_write(target, snapshot):
        with guard:
            writes["active"] += 1
            writes["max"] = max(writes["max"], writes["active"])
        try:
            time.sleep(0.2)
            real_write(target, snapshot)
        finally:
            with guard:
                writes["active"] -= 1

    monkeypatch.setattr(snapshot_file, "write_snapshot", slow_write)

    async def scenario():
        manager = PersistenceManager(JsonFileStore(path), _counter_snapshot(), window=60)
        manager.note_change()
        await asyncio.sleep(0.05)
        await manager.close()
        return manager

    manager = asyncio.run(scenario())
    assert writes["max"] == 1
    assert manager.flush_count == 2
    assert json.loads(path.read_text())["verified"] == {"r": [0, 1]}
    assert list(tmp_path.glob("*.tmp")) == []


def test_close_cancels_pending_delayed_flush():
    async def scenario():
        store = MemoryStore()
        manager = PersistenceManager(store, _counter_snapshot(), window=60)
        manager.note_change()
        await asyncio.sleep(0.01)
        manager.note_change()
        await asyncio.sleep(0.01)
        await manager.close()
        manager.note_change()
        await asyncio.sleep(0.01)
        return store.saved

    assert len(asyncio.run(scenario())) == 2


def test_concurrent_file_writes_use_distinct_temp_files(tmp_path):
    path = tmp_path / "db.json"
    snapshots = [Snapshot(verified={"r": [i]}) for i in range(8)]
    threads = [threading.Thread(target=snapshot_file.write_snapshot, args=(path, s)) for s in snapshots]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    data = json.loads(path.read_text())
    assert data["verified"]["r"][0] in range(8)
    assert list(tmp_path.glob("*.tmp")) == []
