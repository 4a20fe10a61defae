import pytest

from conftest import make_config
from dropfolio.scheduler import JOB_ID, RefreshScheduler, parse_interval, resolve_timezone


@pytest.mark.parametrize(
    "expression, seconds",
    [("30s", 30), ("15m", 900), ("1h30m", 5400), ("2d", 172800), (" 1H ", 3600)],
)
def test_parse_interval(expression, seconds):
    assert parse_interval(expression) == seconds


@pytest.mark.parametrize("expression", ["", "0m", "10", "m5", "5m junk", "1w"])
def test_parse_interval_rejects_invalid(expression):
    with pytest.raises(ValueError):
        parse_interval(expression)


def test_unknown_timezone_falls_back_to_utc():
    _, label = resolve_timezone("Mars/Olympus_Mons")
    assert label == "UTC"


@pytest.mark.anyio
async def test_run_once_refreshes_all_buckets(context_factory):
    context = context_factory()
    scheduler = RefreshScheduler(context.cache, "30m")
    try:
        await scheduler.run_once()
        assert scheduler.runs == 1
        assert scheduler.failures == 0
        assert len(context.cache.get("baseImages")) == 5
    finally:
        await context.aclose()


@pytest.mark.anyio
async def test_run_once_logs_failures_without_raising(context_factory, fake_dropbox):
    fake_dropbox.failing_folders = {"/base", "/overlay"}
    context = context_factory()
    scheduler = RefreshScheduler(context.cache, "30m")
    try:
        await scheduler.run_once()
        assert scheduler.failures == 1
    finally:
        await context.aclose()


@pytest.mark.anyio
async def test_start_registers_coalesced_job(tmp_path, context_factory):
    context = context_factory(make_config(tmp_path, schedule={"interval": "15m"}))
    scheduler = context.scheduler
    try:
        scheduler.start()
        job = scheduler._scheduler.get_job(JOB_ID)
        assert job.coalesce is True
        assert job.max_instances == 1
        assert job.trigger.interval.total_seconds() == 900
        assert scheduler.snapshot()["nextRun"] is not None
    finally:
        await context.aclose()
    assert not scheduler.running


@pytest.mark.anyio
async def test_shutdown_has_stopped_when_awaited(tmp_path, context_factory):
    context = context_factory(make_config(tmp_path, schedule={"interval": "1h"}))
    scheduler = context.scheduler
    try:
        scheduler.start()
        assert scheduler.running

        await scheduler.shutdown()

        assert not scheduler.running
        assert scheduler.snapshot()["running"] is False
    finally:
        await context.aclose()
