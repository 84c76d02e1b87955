from pathlib import Path

import pytest

from iptv_manager_api.observability.scheduler import get_scheduler_store
from iptv_manager_api.scheduling import JobDefinition, LoyaltyJobScheduler, load_job_definitions
from iptv_manager_api.scheduling.runner import backoff_delay, resolve_task


def _scheduler(sleeps: list[float]) -> LoyaltyJobScheduler:
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    return LoyaltyJobScheduler(
        session_factory=lambda: None,
        config_path=Path("unused.toml"),
        sleep=fake_sleep,
    )


@pytest.mark.asyncio
async def test_run_retries_until_success() -> None:
    sleeps: list[float] = []
    scheduler = _scheduler(sleeps)
    calls = {"count": 0}

    async def flaky(*, session_factory, limit: int) -> dict[str, int]:
        calls["count"] += 1
        if calls["count"] < 3:
            raise RuntimeError("database unavailable")
        return {"expired": limit}

    job = JobDefinition(
        id="redemption_expiry",
        task="tests.flaky",
        cron="*/15 * * * *",
        kwargs={"limit": 7},
        max_attempts=3,
        base_backoff_seconds=1.0,
        backoff_multiplier=2.0,
        max_backoff_seconds=10.0,
        jitter_seconds=0.0,
    )

    result = await scheduler.run(job, flaky)

    assert result == {"expired": 7}
    assert sleeps == [1.0, 2.0]
    state = get_scheduler_store().snapshot().jobs["redemption_expiry"]
    assert state.runs == 1
    assert state.success == 1
    assert state.retries == 2
    assert state.attempt_failures == 2
    assert state.consecutive_failures == 0


@pytest.mark.asyncio
async def test_run_reports_final_failure() -> None:
    sleeps: list[float] = []
    scheduler = _scheduler(sleeps)

    async def broken(*, session_factory) -> None:
        raise RuntimeError("boom")

    job = JobDefinition(
        id="redemption_expiry",
        task="tests.broken",
        cron="0 * * * *",
        max_attempts=2,
        base_backoff_seconds=0.0,
        jitter_seconds=0.0,
    )

    assert await scheduler.run(job, broken) is None

    snapshot = get_scheduler_store().snapshot()
    assert snapshot.failing_jobs() == ["redemption_expiry"]
    assert snapshot.totals["run_failures"] == 1
    assert snapshot.jobs["redemption_expiry"].last_error == "boom"
    assert sleeps == []


def test_backoff_delay_is_capped() -> None:
    job = JobDefinition(
        id="job",
        task="a.b",
        cron="* * * * *",
        base_backoff_seconds=10.0,
        backoff_multiplier=3.0,
        max_backoff_seconds=25.0,
        jitter_seconds=0.0,
    )

    assert backoff_delay(job, 1) == 10.0
    assert backoff_delay(job, 2) == 25.0


def test_resolve_task_imports_coroutines() -> None:
    func = resolve_task("iptv_manager_api.jobs.loyalty.expire_redemptions")
    assert func.__name__ == "expire_redemptions"

    with pytest.raises(ValueError):
        resolve_task("expire_redemptions")
    with pytest.raises(AttributeError):
        resolve_task("iptv_manager_api.jobs.loyalty.missing")
    with pytest.raises(TypeError):
        resolve_task("iptv_manager_api.scheduling.runner.backoff_delay")


def test_load_job_definitions_skips_disabled_and_malformed(tmp_path: Path) -> None:
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
timezone = "America/Sao_Paulo"

[jobs.redemption_expiry]
task = "iptv_manager_api.jobs.loyalty.expire_redemptions"
cron = "*/15 * * * *"
kwargs = { limit = 100 }
max_attempts = 3

[jobs.paused]
task = "iptv_manager_api.jobs.loyalty.expire_redemptions"
cron = "0 0 * * *"
enabled = false

[jobs.incomplete]
task = "iptv_manager_api.jobs.loyalty.expire_redemptions"
"""
    )

    config = load_job_definitions(config_path)

    assert config.timezone == "America/Sao_Paulo"
    assert [job.id for job in config.jobs] == ["redemption_expiry"]
    job = config.get("redemption_expiry")
    assert job.kwargs == {"limit": 100}
    assert job.max_attempts == 3
    assert config.get("paused") is None


def test_load_job_definitions_rejects_duplicate_ids(tmp_path: Path) -> None:
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
[jobs.first]
id = "sweep"
task = "a.b"
cron = "* * * * *"

[jobs.second]
id = "sweep"
task = "a.c"
cron = "* * * * *"
"""
    )

    with pytest.raises(ValueError):
        load_job_definitions(config_path)

    with pytest.raises(FileNotFoundError):
        load_job_definitions(tmp_path / "missing.toml")


def test_bundled_schedule_registers_expiry_sweep() -> None:
    config_path = Path(__file__).resolve().parents[1] / "config" / "schedules.toml"

    config = load_job_definitions(config_path)

    job = config.get("redemption_expiry")
    assert job is not None
    assert resolve_task(job.task).__name__ == "expire_redemptions"


@pytest.mark.asyncio
async def test_health_lists_configured_jobs(tmp_path: Path) -> None:
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
timezone = "UTC"

[jobs.redemption_expiry]
task = "iptv_manager_api.jobs.loyalty.expire_redemptions"
cron = "*/15 * * * *"
"""
    )
    scheduler = LoyaltyJobScheduler(session_factory=lambda: None, config_path=config_path)

    scheduler.start()
    try:
        health = scheduler.health()
    finally:
        await scheduler.stop()

    assert health["running"] is True
    assert health["configured_jobs"] == 1
    assert health["jobs"][0]["id"] == "redemption_expiry"
    assert scheduler.is_running is False
