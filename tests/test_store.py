import json

import pytest

from conftest import FakeClock
from dropfolio.store import FileSnapshotStore, MemorySnapshotStore, build_store


@pytest.mark.anyio
async def test_file_store_round_trip_and_expiry(tmp_path):
    clock = FakeClock()
    store = FileSnapshotStore(tmp_path / "state", clock=clock)

    await store.put("bucket:baseImages", {"images": [1, 2]}, ttl_seconds=60)
    assert await store.get("bucket:baseImages") == {"images": [1, 2]}
    assert store.keys() == ["bucket:baseImages"]

    on_disk = json.loads(store.path_for("bucket:baseImages").read_text(encoding="utf-8"))
    assert on_disk["expires_at"] == clock() + 60

    clock.advance(61)
    assert await store.get("bucket:baseImages") is None
    assert not store.path_for("bucket:baseImages").exists()


@pytest.mark.anyio
async def test_file_store_ignores_corrupt_files(tmp_path):
    store = FileSnapshotStore(tmp_path)
    store.path_for("bucket:x").write_text("{not json", encoding="utf-8")

    assert await store.get("bucket:x") is None
    assert await store.get("bucket:missing") is None


@pytest.mark.anyio
async def test_memory_store_honours_per_entry_ttl():
    clock = FakeClock()
    store = MemorySnapshotStore(timer=clock)

    await store.put("short", {"v": 1}, ttl_seconds=10)
    await store.put("long", {"v": 2}, ttl_seconds=100)
    clock.advance(11)

    assert await store.get("short") is None
    assert await store.get("long") == {"v": 2}


def test_build_store_kinds(tmp_path):
    assert build_store("none", tmp_path) is None
    assert isinstance(build_store("memory", tmp_path), MemorySnapshotStore)
    assert isinstance(build_store("file", tmp_path), FileSnapshotStore)
    with pytest.raises(ValueError):
        build_store("redis", tmp_path)


@pytest.mark.anyio
async def test_file_store_ignores_non_object_payloads(tmp_path):
    store = FileSnapshotStore(tmp_path)
    store.path_for("bucket:x").write_text("[1]", encoding="utf-8")

    assert await store.get("bucket:x") is None
