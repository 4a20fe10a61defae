import pytest

from conftest import make_config
from dropfolio.cache import snapshot_key
from dropfolio.errors import AggregateFetchError, CredentialError
from dropfolio.models import BucketSnapshot, ImageAsset
from dropfolio.store import MemorySnapshotStore


@pytest.mark.anyio
async def test_needs_refresh_lifecycle(context_factory, clock):
    context = context_factory()
    cache = context.cache
    try:
        assert cache.needs_refresh("baseImages")

        await cache.refresh(["baseImages"])
        assert not cache.needs_refresh("baseImages")
        assert len(cache.get("baseImages")) == 5

        clock.advance(cache.settings.timeout_seconds + 1)
        assert cache.needs_refresh("baseImages")
    finally:
        await context.aclose()


@pytest.mark.anyio
async def test_empty_bucket_always_needs_refresh(context_factory, fake_dropbox):
    fake_dropbox.set_folder("/base", [])
    context = context_factory()
    try:
        results = await context.cache.refresh(["baseImages"])
        assert results["baseImages"].ok
        assert context.cache.get("baseImages") == ()
        assert context.cache.needs_refresh("baseImages")
    finally:
        await context.aclose()


@pytest.mark.anyio
async def test_refresh_replaces_contents_and_bumps_generation(context_factory, fake_dropbox):
    context = context_factory()
    cache = context.cache
    try:
        await cache.refresh()
        first = cache.bucket("overlayImages").generation

        fake_dropbox.set_folder("/overlay", ["new.png"])
        await cache.refresh(["overlayImages"])

        state = cache.bucket("overlayImages")
        assert state.generation == first + 1
        assert [asset.name for asset in state.assets] == ["new.png"]
        assert state.assets[0].url.endswith("/overlay/new.png")
    finally:
        await context.aclose()


@pytest.mark.anyio
async def test_total_failure_keeps_previous_contents(context_factory, fake_dropbox):
    context = context_factory()
    cache = context.cache
    try:
        await cache.refresh()
        fake_dropbox.failing_folders = {"/base"}

        results = await cache.refresh(["baseImages"])

        assert not results["baseImages"].ok
        assert results["baseImages"].kept_previous
        assert len(cache.get("baseImages")) == 5
        assert cache.diagnostics.errors[-1]["type"] == "refresh"
    finally:
        await context.aclose()


@pytest.mark.anyio
async def test_total_failure_without_fallback_raises(context_factory, fake_dropbox):
    fake_dropbox.failing_folders = {"/base"}
    context = context_factory()
    cache = context.cache
    try:
        with pytest.raises(AggregateFetchError) as excinfo:
            await cache.refresh()

        assert "baseImages" in excinfo.value.failures
        assert len(cache.get("overlayImages")) == 3
    finally:
        await context.aclose()


@pytest.mark.anyio
async def test_failure_falls_back_to_durable_snapshot(context_factory, fake_dropbox, clock):
    store = MemorySnapshotStore(timer=clock)
    saved = BucketSnapshot(
        bucket="baseImages",
        folder="/base",
        fetched_at=clock() - 60,
        images=(ImageAsset(name="kept.jpg", path="/base/kept.jpg", url="https://dl/kept.jpg"),),
    )
    await store.put(snapshot_key("baseImages"), saved.to_dict(), 3600)
    fake_dropbox.failing_folders = {"/base"}

    context = context_factory(store=store)
    try:
        results = await context.cache.refresh(["baseImages"])
        assert results["baseImages"].kept_previous
        assert [asset.name for asset in context.cache.get("baseImages")] == ["kept.jpg"]
    finally:
        await context.aclose()


@pytest.mark.anyio
async def test_ensure_fresh_hydrates_from_store_without_listing(context_factory, fake_dropbox, clock):
    store = MemorySnapshotStore(timer=clock)
    for name, folder in (("baseImages", "/base"), ("overlayImages", "/overlay")):
        snapshot = BucketSnapshot(
            bucket=name,
            folder=folder,
            fetched_at=clock(),
            images=(ImageAsset(name=f"{name}.jpg", path=f"{folder}/{name}.jpg", url="https://dl/x"),),
        )
        await store.put(snapshot_key(name), snapshot.to_dict(), 3600)

    context = context_factory(store=store)
    try:
        cached = await context.cache.ensure_fresh(["baseImages", "overlayImages"])

        assert cached is True
        assert fake_dropbox.calls == []
        assert context.cache.bucket("baseImages").source == "store"
    finally:
        await context.aclose()


@pytest.mark.anyio
async def test_successful_refresh_is_persisted(context_factory, clock):
    store = MemorySnapshotStore(timer=clock)
    context = context_factory(store=store)
    try:
        await context.cache.refresh(["overlayImages"])
        payload = await store.get(snapshot_key("overlayImages"))
        assert len(BucketSnapshot.from_dict(payload).images) == 3
    finally:
        await context.aclose()


@pytest.mark.anyio
async def test_stale_bucket_is_served_then_revalidated(context_factory, fake_dropbox, clock):
    context = context_factory()
    cache = context.cache
    try:
        await cache.ensure_fresh(["overlayImages"])
        generation = cache.bucket("overlayImages").generation

        clock.advance(cache.settings.stale_after_seconds + 1)
        fake_dropbox.set_folder("/overlay", ["fresh.png"])
        cached = await cache.ensure_fresh(["overlayImages"])

        assert cached is True
        assert len(cache.get("overlayImages")) == 3
        assert len(cache.pending_refreshes) == 1

        await cache.wait_for_background()
        assert cache.bucket("overlayImages").generation == generation + 1
        assert [asset.name for asset in cache.get("overlayImages")] == ["fresh.png"]
    finally:
        await context.aclose()


@pytest.mark.anyio
async def test_forced_refresh_bypasses_freshness(context_factory, fake_dropbox):
    context = context_factory()
    try:
        await context.cache.ensure_fresh(["baseImages"])
        before = len(fake_dropbox.endpoint_calls("files/list_folder"))

        cached = await context.cache.ensure_fresh(["baseImages"], force=True)

        assert cached is False
        assert len(fake_dropbox.endpoint_calls("files/list_folder")) == before + 1
    finally:
        await context.aclose()


@pytest.mark.anyio
async def test_credential_failure_propagates(tmp_path, context_factory):
    config = make_config(tmp_path, dropbox={"access_token": None})
    context = context_factory(config)
    try:
        with pytest.raises(CredentialError):
            await context.cache.refresh()
    finally:
        await context.aclose()


@pytest.mark.anyio
async def test_diagnostics_track_scan(context_factory, fake_dropbox):
    fake_dropbox.set_folder("/base", ["a.jpg", "notes.txt", "gone.jpg"])
    fake_dropbox.failing_links = {"/base/gone.jpg"}
    context = context_factory()
    try:
        await context.cache.refresh()
        report = context.cache.diagnostics.to_dict()

        assert report["lastScan"]
        assert report["totalApiCalls"] == 2
        assert report["uniqueFileExtensions"] == ["jpg", "png", "txt"]
        assert report["errors"][0]["path"] == "/base/gone.jpg"
    finally:
        await context.aclose()


@pytest.mark.anyio
async def test_stale_durable_snapshot_is_served_then_revalidated(context_factory, fake_dropbox, clock):
    store = MemorySnapshotStore(timer=clock)
    saved = BucketSnapshot(
        bucket="overlayImages",
        folder="/overlay",
        fetched_at=clock() - 40 * 60,
        images=(ImageAsset(name="old.png", path="/overlay/old.png", url="https://dl/old.png"),),
    )
    await store.put(snapshot_key("overlayImages"), saved.to_dict(), 3600)

    context = context_factory(store=store)
    cache = context.cache
    try:
        cached = await cache.ensure_fresh(["overlayImages"])

        assert cached is True
        assert [asset.name for asset in cache.get("overlayImages")] == ["old.png"]
        assert fake_dropbox.calls == []
        assert len(cache.pending_refreshes) == 1

        await cache.wait_for_background()
        assert len(cache.get("overlayImages")) == 3
        assert cache.bucket("overlayImages").source == "live"
    finally:
        await context.aclose()


@pytest.mark.anyio
async def test_background_revalidation_skips_freshly_refreshed_buckets(context_factory, fake_dropbox, clock):
    context = context_factory()
    cache = context.cache
    try:
        await cache.refresh(["overlayImages"])
        clock.advance(cache.settings.stale_after_seconds + 1)
        await cache.refresh(["overlayImages"])
        listings = len(fake_dropbox.endpoint_calls("files/list_folder"))

        await cache.schedule_background_refresh(["overlayImages"])

        assert len(fake_dropbox.endpoint_calls("files/list_folder")) == listings
    finally:
        await context.aclose()
