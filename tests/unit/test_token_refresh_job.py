"""
Tests for the proactive token refresh sweep.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from app.jobs import token_refresh_job
from app.jobs.token_refresh_job import (
    TokenRefreshJob,
    TokenRefreshJobError,
    build_token_refresh_jobs,
    run_scheduled_sweep,
    run_sweep,
    run_token_refresh_once,
)
from app.models.domain.crm_domain import Provider
from app.services.crm.credential_store import CredentialStoreError
from app.services.crm.errors import TokenRefreshError
from tests.fakes import FakeCredentialStore, make_credential, make_provider_configs


class FakeRefresher:
    def __init__(self, failing_users=(), delay=0.0):
        self.failing_users = set(failing_users)
        self.delay = delay
        self.refreshed = []

    async def refresh_credential(self, credential):
        if self.delay:
            await asyncio.sleep(self.delay)
        if credential.user_id in self.failing_users:
            raise TokenRefreshError(
                "invalid_grant",
                provider=credential.provider,
                user_id=credential.user_id,
                status_code=400,
                recoverable=False,
            )
        self.refreshed.append(credential.user_id)
        return credential

    async def close(self):
        return None


def _job(store, refresher, provider=Provider.HUBSPOT, **kwargs):
    return TokenRefreshJob(make_provider_configs()[provider], store, refresher, **kwargs)


@pytest.mark.asyncio
async def test_sweep_refreshes_only_credentials_inside_margin():
    store = FakeCredentialStore(
        make_credential(user_id="soon", expires_in=timedelta(minutes=5)),
        make_credential(user_id="expired", expires_in=timedelta(minutes=-30)),
        make_credential(user_id="later", expires_in=timedelta(hours=1)),
        make_credential(Provider.SALESFORCE, user_id="other-provider", expires_in=timedelta(minutes=1)),
    )
    refresher = FakeRefresher()

    metrics = await _job(store, refresher).run_once()

    assert sorted(refresher.refreshed) == ["expired", "soon"]
    assert metrics["credentials_found"] == 2
    assert metrics["tokens_refreshed"] == 2
    assert metrics["provider"] == "hubspot"


@pytest.mark.asyncio
async def test_sweep_skips_credentials_without_refresh_token():
    store = FakeCredentialStore(
        make_credential(user_id="no-refresh", expires_in=timedelta(minutes=2), refresh_token=None),
        make_credential(user_id="ok", expires_in=timedelta(minutes=2)),
    )
    refresher = FakeRefresher()

    metrics = await _job(store, refresher).run_once()

    assert refresher.refreshed == ["ok"]
    assert metrics["skipped"] == 1


@pytest.mark.asyncio
async def test_sweep_failure_does_not_abort_other_refreshes():
    store = FakeCredentialStore(
        make_credential(user_id="revoked", expires_in=timedelta(minutes=2)),
        make_credential(user_id="fine", expires_in=timedelta(minutes=3)),
    )
    refresher = FakeRefresher(failing_users={"revoked"})
    job = _job(store, refresher)

    metrics = await job.run_once()

    assert refresher.refreshed == ["fine"]
    assert metrics["tokens_refreshed"] == 1
    assert metrics["refresh_failures"] == 1
    assert job.job_metrics.errors[0]["reason"] == "token_refresh_failed"
    assert job.job_metrics.errors[0]["recoverable"] is False


@pytest.mark.asyncio
async def test_sweep_times_out_slow_refresh():
    store = FakeCredentialStore(make_credential(user_id="slow", expires_in=timedelta(minutes=2)))
    job = _job(store, FakeRefresher(delay=1.0), refresh_timeout_seconds=0.05)

    metrics = await job.run_once()

    assert metrics["processing_errors"] == 1
    assert metrics["tokens_refreshed"] == 0


@pytest.mark.asyncio
async def test_reentrant_run_is_skipped():
    job = _job(FakeCredentialStore(), FakeRefresher())
    job.is_running = True

    result = await job.run_once()

    assert result == {"skipped": True, "reason": "already_running", "provider": "hubspot"}


class BrokenStore(FakeCredentialStore):
    async def list_expiring(self, provider, expires_before):
        raise CredentialStoreError("connection refused")


@pytest.mark.asyncio
async def test_listing_failure_raises_job_error_and_resets_running_flag():
    job = _job(BrokenStore(), FakeRefresher())

    with pytest.raises(TokenRefreshJobError):
        await job.run_once()

    assert job.is_running is False


@pytest.mark.asyncio
async def test_run_sweep_continues_past_failing_provider():
    refresher = FakeRefresher()
    store = FakeCredentialStore(
        make_credential(Provider.SALESFORCE, user_id="sf", expires_in=timedelta(minutes=2))
    )
    jobs = [
        _job(BrokenStore(), refresher, Provider.HUBSPOT),
        _job(store, refresher, Provider.SALESFORCE),
    ]

    results = await run_sweep(jobs)

    assert results[0]["provider"] == "hubspot"
    assert "job_error" in results[0]
    assert results[1]["tokens_refreshed"] == 1


def test_build_jobs_one_per_provider():
    refresher = FakeRefresher()

    jobs = build_token_refresh_jobs(FakeCredentialStore(), refresher)

    assert [job.provider for job in jobs] == [Provider.HUBSPOT, Provider.SALESFORCE]
    assert all(job.refresher is refresher for job in jobs)
    assert all(job.config.sweep_buffer_minutes == 10 for job in jobs)


@pytest.mark.asyncio
async def test_job_status_and_health():
    job = _job(FakeCredentialStore(), FakeRefresher())

    assert job.get_job_status()["last_run_time"] is None
    await job.run_once()

    status = job.get_job_status()
    assert status["last_run_metrics"]["credentials_found"] == 0
    assert job.health_check()["healthy"] is True


@pytest.mark.asyncio
async def test_scheduled_sweep_recovers_overdue_job_and_reports_status():
    store = FakeCredentialStore(make_credential(user_id="soon", expires_in=timedelta(minutes=2)))
    refresher = FakeRefresher()
    hubspot = _job(store, refresher, interval_minutes=5)
    salesforce = _job(store, refresher, Provider.SALESFORCE, interval_minutes=5)
    hubspot.last_run_time = datetime.now(UTC) - timedelta(hours=1)

    assert hubspot.health_check()["is_overdue"] is True

    statuses = await run_scheduled_sweep([hubspot, salesforce])

    assert [s["provider"] for s in statuses] == ["hubspot", "salesforce"]
    assert statuses[0]["last_run_metrics"]["tokens_refreshed"] == 1
    assert statuses[1]["last_run_metrics"]["credentials_found"] == 0
    assert hubspot.health_check()["healthy"] is True
    assert refresher.refreshed == ["soon"]


class FakePool:
    def __init__(self):
        self.events = []

    async def initialize(self):
        self.events.append("initialize")

    async def close(self):
        self.events.append("close")


@pytest.mark.asyncio
async def test_one_shot_run_sweeps_every_provider_and_closes_pool(monkeypatch):
    pool = FakePool()
    store = FakeCredentialStore(
        make_credential(user_id="hs", expires_in=timedelta(minutes=3)),
        make_credential(Provider.SALESFORCE, user_id="sf", expires_in=timedelta(minutes=3)),
    )
    refresher = FakeRefresher()
    monkeypatch.setattr(token_refresh_job, "db_pool", pool)
    monkeypatch.setattr(token_refresh_job, "PostgresCredentialStore", lambda: store)
    monkeypatch.setattr(
        token_refresh_job,
        "build_token_refresh_jobs",
        lambda s: [_job(s, refresher, provider) for provider in Provider],
    )

    await run_token_refresh_once()

    assert sorted(refresher.refreshed) == ["hs", "sf"]
    assert pool.events == ["initialize", "close"]
