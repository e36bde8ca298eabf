"""
Lease-based job claiming.

A lease is an ownership-tagged, time-bounded claim on a running job. Every
claim, renewal and release is a single guarded store update, so two workers
racing for the same job cannot both succeed: the loser's update matches no row
(``LeaseConflict``) and it moves on to the next candidate.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Optional

from core.job_state import LEASED_STATUSES, ensure_transition
from core.types import CrawlJob, JobStatus, JobStore
from utils.error_handling import LeaseConflict

logger = logging.getLogger(__name__)

DEFAULT_LEASE_DURATION = timedelta(minutes=5)
DEFAULT_CLAIM_CANDIDATES = 5
DEFAULT_CLAIM_ROUNDS = 3


def utc_now() -> datetime:
    return datetime.now(UTC)


class LeaseManager:
    """Claims, renews and releases job leases on behalf of one worker."""

    def __init__(
        self,
        store: JobStore,
        worker_id: str,
        lease_duration: timedelta = DEFAULT_LEASE_DURATION,
        clock: Callable[[], datetime] = utc_now,
        max_candidates: int = DEFAULT_CLAIM_CANDIDATES,
        max_rounds: int = DEFAULT_CLAIM_ROUNDS,
    ):
        self.store = store
        self.worker_id = worker_id
        self.lease_duration = lease_duration
        self.clock = clock
        self.max_candidates = max_candidates
        self.max_rounds = max_rounds

    async def claim(self) -> Optional[CrawlJob]:
        """Claim the oldest queued job or a running job with an expired lease.

        Returns None when nothing is claimable or every candidate was taken by
        another worker first.
        """
        for _ in range(self.max_rounds):
            now = self.clock()
            candidates = await self.store.find_claimable_jobs(now, self.max_candidates)
            if not candidates:
                return None

            for candidate in candidates:
                try:
                    return await self._try_claim(candidate, now)
                except LeaseConflict as conflict:
                    logger.debug(
                        f"Claim conflict on job {candidate.id}: {conflict}",
                        extra={"job_id": candidate.id, "worker_id": self.worker_id},
                    )
        return None

    async def _try_claim(self, candidate: CrawlJob, now: datetime) -> CrawlJob:
        if candidate.status == JobStatus.QUEUED:
            ensure_transition(candidate.status, JobStatus.RUNNING, candidate.id)
        elif candidate.status == JobStatus.RUNNING:
            if not candidate.lease_expired(now):
                raise LeaseConflict(f"Lease on job {candidate.id} has not expired")
        else:
            raise LeaseConflict(f"Job {candidate.id} is {candidate.status.value}")

        claimed = await self.store.update_job_if(
            candidate.id,
            expected_version=candidate.version,
            expected_statuses=[candidate.status],
            status=JobStatus.RUNNING,
            lease_owner=self.worker_id,
            lease_expires_at=now + self.lease_duration,
            started_at=candidate.started_at or now,
        )
        if claimed is None:
            raise LeaseConflict(f"Job {candidate.id} was claimed by another worker")

        logger.info(
            f"Claimed job {claimed.id} (previous status: {candidate.status.value}, "
            f"previous owner: {candidate.lease_owner})",
            extra={"job_id": claimed.id, "worker_id": self.worker_id},
        )
        return claimed

    async def renew(self, job_id: int) -> bool:
        """Extend the lease if this worker still owns the running job."""
        renewed = await self.store.update_job_if(
            job_id,
            expected_statuses=list(LEASED_STATUSES),
            expected_owner=self.worker_id,
            lease_expires_at=self.clock() + self.lease_duration,
        )
        if renewed is None:
            logger.warning(
                f"Lost lease on job {job_id}",
                extra={"job_id": job_id, "worker_id": self.worker_id},
            )
            return False
        logger.debug(f"Renewed lease on job {job_id}", extra={"job_id": job_id})
        return True

    async def release(
        self, job_id: int, status: JobStatus, **fields: Any
    ) -> Optional[CrawlJob]:
        """Move an owned running job to ``status`` and clear the lease fields.

        Returns None if the lease was lost or the job left ``running`` first.
        """
        ensure_transition(JobStatus.RUNNING, status, job_id)
        now = self.clock()
        if status == JobStatus.PAUSED:
            fields.setdefault("paused_at", now)
        elif status == JobStatus.CANCELED:
            fields.setdefault("canceled_at", now)
        elif status in (JobStatus.SUCCEEDED, JobStatus.FAILED):
            fields.setdefault("completed_at", now)

        released = await self.store.update_job_if(
            job_id,
            expected_statuses=[JobStatus.RUNNING],
            expected_owner=self.worker_id,
            status=status,
            lease_owner=None,
            lease_expires_at=None,
            **fields,
        )
        if released is None:
            logger.warning(
                f"Could not release job {job_id} as {status.value}; lease no longer held",
                extra={"job_id": job_id, "worker_id": self.worker_id},
            )
        return released
