"""
Token Refresh Job for proactive CRM token management.
Runs independently of request traffic and refreshes provider tokens that
expire within the sweep margin, before a chat request has to do it inline.
"""

import asyncio
import time
from datetime import UTC, datetime, timedelta

from app.config import ProviderConfig, settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger
from app.models.domain.crm_domain import Credential, Provider
from app.services.crm.credential_store import (
    CredentialStore,
    CredentialStoreError,
    PostgresCredentialStore,
)
from app.services.crm.errors import CrmError
from app.services.crm.token_refresher import TokenRefresher

logger = get_logger(__name__)

MAX_CONCURRENT_REFRESHES = 10
REFRESH_TIMEOUT_SECONDS = 30


class TokenRefreshJobError(Exception):
    """Custom exception for token refresh job operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class TokenRefreshMetrics:
    """Metrics for one sweep over one provider."""

    def __init__(self, provider: Provider):
        self.provider = provider
        self.reset()

    def reset(self):
        self.start_time = datetime.now(UTC)
        self.credentials_found = 0
        self.tokens_refreshed = 0
        self.refresh_failures = 0
        self.skipped = 0
        self.processing_errors = 0
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def record_success(self, user_id: str, duration_ms: float):
        self.tokens_refreshed += 1
        logger.debug(
            "Token refresh successful",
            user_id=user_id,
            provider=self.provider.value,
            duration_ms=round(duration_ms, 2),
            job_run="token_refresh",
        )

    def record_skipped(self, user_id: str, reason: str):
        self.skipped += 1
        logger.info(
            "Credential skipped by refresh sweep",
            user_id=user_id,
            provider=self.provider.value,
            reason=reason,
            job_run="token_refresh",
        )

    def record_failure(self, user_id: str, reason: str, error: str, recoverable: bool = True):
        self.refresh_failures += 1
        self.errors.append(
            {
                "user_id": user_id,
                "reason": reason,
                "error": error,
                "recoverable": recoverable,
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )
        logger.warning(
            "Token refresh failed",
            user_id=user_id,
            provider=self.provider.value,
            reason=reason,
            error=error,
            recoverable=recoverable,
            job_run="token_refresh",
        )

    def record_processing_error(self, user_id: str, error: str):
        self.processing_errors += 1
        self.errors.append(
            {
                "user_id": user_id,
                "error": error,
                "error_type": "processing",
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )
        logger.error(
            "Token refresh processing error",
            user_id=user_id,
            provider=self.provider.value,
            error=error,
            job_run="token_refresh",
        )

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        attempted = self.tokens_refreshed + self.refresh_failures + self.processing_errors
        return {
            "job_run": "token_refresh",
            "provider": self.provider.value,
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "credentials_found": self.credentials_found,
            "tokens_refreshed": self.tokens_refreshed,
            "refresh_failures": self.refresh_failures,
            "skipped": self.skipped,
            "processing_errors": self.processing_errors,
            "success_rate_percent": round(
                (self.tokens_refreshed / attempted * 100) if attempted else 0, 2
            ),
            "errors_count": len(self.errors),
        }


class TokenRefreshJob:
    """
    Proactive refresh sweep for one provider.

    Each run lists credentials expiring within the sweep margin and refreshes
    them with bounded concurrency. One failing credential never aborts the
    rest of the sweep.
    """

    def __init__(
        self,
        config: ProviderConfig,
        store: CredentialStore,
        refresher: TokenRefresher,
        interval_minutes: int | None = None,
        max_concurrent: int = MAX_CONCURRENT_REFRESHES,
        refresh_timeout_seconds: float = REFRESH_TIMEOUT_SECONDS,
    ):
        self.config = config
        self.provider = config.provider
        self.store = store
        self.refresher = refresher
        self.interval_minutes = interval_minutes or settings.TOKEN_SWEEP_INTERVAL_MINUTES
        self.max_concurrent = max_concurrent
        self.refresh_timeout_seconds = refresh_timeout_seconds

        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = TokenRefreshMetrics(self.provider)

    async def run_once(self) -> dict:
        """
        Run a single sweep.

        Returns:
            Dict: Sweep metrics, or a skip marker if a sweep is already running

        Raises:
            TokenRefreshJobError: If expiring credentials cannot be listed
        """
        if self.is_running:
            logger.warning(
                "Token refresh job already running, skipping this iteration",
                provider=self.provider.value,
            )
            return {"skipped": True, "reason": "already_running", "provider": self.provider.value}

        try:
            self.is_running = True
            self.job_metrics.reset()

            cutoff = datetime.now(UTC) + timedelta(minutes=self.config.sweep_buffer_minutes)
            credentials = await self._get_expiring_credentials(cutoff)
            self.job_metrics.credentials_found = len(credentials)

            if credentials:
                logger.info(
                    "Found expiring credentials",
                    provider=self.provider.value,
                    count=len(credentials),
                    buffer_minutes=self.config.sweep_buffer_minutes,
                )
                semaphore = asyncio.Semaphore(self.max_concurrent)
                await asyncio.gather(
                    *(self._refresh_with_semaphore(semaphore, c) for c in credentials)
                )
            else:
                logger.info("No tokens found requiring refresh", provider=self.provider.value)

            self.job_metrics.finalize()
            self.last_run_time = datetime.now(UTC)
            metrics = self.job_metrics.to_dict()
            logger.info("Token refresh job completed", **metrics)
            return metrics

        finally:
            self.is_running = False

    async def _get_expiring_credentials(self, cutoff: datetime) -> list[Credential]:
        try:
            return await self.store.list_expiring(self.provider, cutoff)
        except CredentialStoreError as e:
            logger.error(
                "Failed to list expiring credentials",
                provider=self.provider.value,
                error=str(e),
            )
            raise TokenRefreshJobError(
                f"Failed to get expiring credentials: {e}", operation="list_expiring"
            ) from e

    async def _refresh_with_semaphore(
        self, semaphore: asyncio.Semaphore, credential: Credential
    ) -> None:
        async with semaphore:
            await self._refresh_credential(credential)

    async def _refresh_credential(self, credential: Credential) -> None:
        if not credential.refresh_token:
            self.job_metrics.record_skipped(credential.user_id, "no_refresh_token")
            return

        start_time = time.time()
        try:
            await asyncio.wait_for(
                self.refresher.refresh_credential(credential),
                timeout=self.refresh_timeout_seconds,
            )
            self.job_metrics.record_success(credential.user_id, (time.time() - start_time) * 1000)

        except TimeoutError:
            self.job_metrics.record_processing_error(
                credential.user_id,
                f"Token refresh timed out after {self.refresh_timeout_seconds}s",
            )
        except CrmError as e:
            self.job_metrics.record_failure(credential.user_id, e.reason, str(e), e.recoverable)
        except Exception as e:
            self.job_metrics.record_processing_error(
                credential.user_id, f"Unexpected error: {type(e).__name__}: {e}"
            )

    def get_job_status(self) -> dict:
        return {
            "job_name": "token_refresh",
            "provider": self.provider.value,
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_minutes": self.interval_minutes,
            "buffer_minutes": self.config.sweep_buffer_minutes,
            "max_concurrent": self.max_concurrent,
            "last_run_metrics": self.job_metrics.to_dict() if self.last_run_time else None,
        }

    def health_check(self) -> dict:
        """Unhealthy when the sweep has not run for twice its interval."""
        now = datetime.now(UTC)
        overdue_threshold = timedelta(minutes=self.interval_minutes * 2)
        is_overdue = self.last_run_time is not None and (now - self.last_run_time) > overdue_threshold

        health_status = {
            "healthy": not is_overdue,
            "service": "token_refresh_job",
            "provider": self.provider.value,
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "is_overdue": is_overdue,
        }
        if is_overdue:
            health_status["warning"] = (
                f"Job overdue by {(now - self.last_run_time).total_seconds() / 60:.1f} minutes"
            )
        return health_status


def build_token_refresh_jobs(
    store: CredentialStore, refresher: TokenRefresher | None = None
) -> list[TokenRefreshJob]:
    """One sweep job per provider, configured from settings."""
    configs = {provider: settings.provider_config(provider) for provider in Provider}
    refresher = refresher or TokenRefresher(store, configs)
    return [TokenRefreshJob(configs[provider], store, refresher) for provider in Provider]


async def run_sweep(jobs: list[TokenRefreshJob]) -> list[dict]:
    """Run every provider's sweep once; a failing provider does not stop the others."""
    results = []
    for job in jobs:
        try:
            results.append(await job.run_once())
        except TokenRefreshJobError as e:
            logger.error("Token refresh sweep failed", provider=job.provider.value, error=str(e))
            results.append({"provider": job.provider.value, "job_error": str(e)})
    return results


async def run_scheduled_sweep(jobs: list[TokenRefreshJob]) -> list[dict]:
    """One scheduler tick: flag stalled jobs, sweep, then report each job's status."""
    for job in jobs:
        health = job.health_check()
        if not health["healthy"]:
            logger.warning("Token refresh sweep overdue", **health)

    await run_sweep(jobs)

    statuses = [job.get_job_status() for job in jobs]
    for status in statuses:
        logger.info("Token refresh sweep status", **status)
    return statuses


async def start_token_refresh_scheduler():
    """
    Run the sweep for every provider on a fixed interval.

    Intended for a dedicated worker process (see app.jobs.worker).
    """
    interval_minutes = settings.TOKEN_SWEEP_INTERVAL_MINUTES
    logger.info("Starting token refresh job scheduler", interval_minutes=interval_minutes)

    await db_pool.initialize()
    store = PostgresCredentialStore()
    jobs = build_token_refresh_jobs(store)

    try:
        while True:
            await run_scheduled_sweep(jobs)
            await asyncio.sleep(interval_minutes * 60)
    finally:
        await jobs[0].refresher.close()
        await db_pool.close()


async def run_token_refresh_once():
    """Single sweep across providers, for cron-style deployments."""
    await db_pool.initialize()
    store = PostgresCredentialStore()
    jobs = build_token_refresh_jobs(store)

    try:
        results = await run_sweep(jobs)
    finally:
        await jobs[0].refresher.close()
        await db_pool.close()

    logger.info(
        "One-shot token refresh finished",
        tokens_refreshed=sum(r.get("tokens_refreshed", 0) for r in results),
        failed_providers=[r["provider"] for r in results if "job_error" in r],
    )
