"""
Job repository for database operations.
Implements the job store (creation, narrow updates, cancellation, leasing)
and the asset catalogue written by the download processor.
"""

import logging
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from renderqueue.config import Settings, get_settings
from renderqueue.constants import ASSET_KINDS, TERMINAL_STATUSES, JobStatus
from renderqueue.db.models import Asset, AssetImage, Job, is_terminal_status, utcnow
from renderqueue.exceptions import InvalidJobError

logger = logging.getLogger(__name__)

# Fields a caller may write through update(); everything else is fixed at creation
UPDATABLE_FIELDS: frozenset[str] = frozenset(
    [
        "status",
        "progress",
        "result",
        "error",
        "retry_count",
        "last_retry",
        "lease_owner",
    ]
)

_TERMINAL = sorted(TERMINAL_STATUSES)


def _clamp_progress(progress: float) -> float:
    return max(0.0, min(1.0, float(progress)))


class JobRepository:
    """
    Repository for job database operations.

    Every multi-field mutation is a single UPDATE statement, so callers get
    atomicity from the statement itself and only need the surrounding session
    for grouping writes that belong to one transition. Writes never touch a
    job that is already terminal.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
            settings: Optional settings override.
        """
        self._session = session
        self._settings = settings or get_settings()

    async def create(
        self,
        workflow: str,
        request: dict[str, Any] | None = None,
        webhook_url: str | None = None,
        webhook_key: str | None = None,
        job_uuid: UUID | None = None,
        status: str = JobStatus.PENDING,
    ) -> Job:
        """
        Create a new job.

        Args:
            workflow: Workflow key the job follows. Required.
            request: Opaque request payload.
            webhook_url: Optional callback target.
            webhook_key: Optional secret sent with the callback.
            job_uuid: Optional caller-chosen identifier.
            status: Initial status, "pending" unless a workflow starts elsewhere.

        Returns:
            The created Job.

        Raises:
            InvalidJobError: If no workflow is given.
        """
        if not workflow:
            raise InvalidJobError("Job workflow must be set")

        job = Job(
            workflow=workflow,
            status=status,
            progress=0.0,
            request=request or {},
            webhook_url=webhook_url,
            webhook_key=webhook_key,
            retry_count=0,
        )
        if job_uuid is not None:
            job.uuid = job_uuid

        self._session.add(job)
        await self._session.flush()

        logger.info(
            "Created new job",
            extra={"job_uuid": str(job.uuid), "workflow": workflow}
        )
        return job

    async def get(self, job_uuid: UUID) -> Job | None:
        """
        Get a job by uuid.

        Returns:
            The Job or None if not found.
        """
        stmt = select(Job).where(Job.uuid == job_uuid).execution_options(
            populate_existing=True
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def update(
        self,
        job_uuid: UUID,
        fields: Mapping[str, Any],
        expected_status: str | None = None,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Update allow-listed fields of a non-terminal job.

        A terminal status forces progress to 1 and stamps completed_at,
        whatever the caller passed.

        Args:
            job_uuid: The job uuid.
            fields: Column values to write; keys must be in UPDATABLE_FIELDS.
            expected_status: Only write if the job currently has this status.
            now: Timestamp to use for bookkeeping columns.

        Returns:
            The updated Job, or None if it is missing, terminal, or not in
            the expected status.

        Raises:
            InvalidJobError: If a field outside the allow-list is given.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidJobError(f"Fields cannot be updated: {sorted(unknown)}")

        now = now or utcnow()
        values = dict(fields)
        if "progress" in values:
            values["progress"] = _clamp_progress(values["progress"])

        status = values.get("status")
        if status is not None and is_terminal_status(status):
            values["progress"] = 1.0
            values["lease_owner"] = None
            values["completed_at"] = now
        values["updated_at"] = now

        conditions = [Job.uuid == job_uuid, Job.status.not_in(_TERMINAL)]
        if expected_status is not None:
            conditions.append(Job.status == expected_status)

        stmt = (
            update(Job)
            .where(*conditions)
            .values(**values)
            .returning(Job)
            .execution_options(populate_existing=True, synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        job = result.scalar_one_or_none()

        if job is not None and job.is_terminal:
            logger.info(
                "Job reached terminal status",
                extra={"job_uuid": str(job_uuid), "status": job.status}
            )
        return job

    async def update_status(
        self,
        job_uuid: UUID,
        status: str,
        expected_status: str | None = None,
    ) -> bool:
        """
        Set only the status of a non-terminal job.

        Returns:
            True if the job was updated.
        """
        if is_terminal_status(status):
            job = await self.update(job_uuid, {"status": status}, expected_status)
            return job is not None

        conditions = [Job.uuid == job_uuid, Job.status.not_in(_TERMINAL)]
        if expected_status is not None:
            conditions.append(Job.status == expected_status)

        stmt = (
            update(Job)
            .where(*conditions)
            .values(status=status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def update_progress(self, job_uuid: UUID, progress: float) -> bool:
        """
        Set only the progress of a non-terminal job.

        Used by running processors, which must not overwrite any other column.
        The updated_at stamp doubles as a liveness signal for the lease.

        Returns:
            True if the job was updated.
        """
        stmt = (
            update(Job)
            .where(Job.uuid == job_uuid, Job.status.not_in(_TERMINAL))
            .values(progress=_clamp_progress(progress), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def increment_failure_counter(
        self,
        job_uuid: UUID,
        now: datetime | None = None,
    ) -> bool:
        """
        Bump retry_count and stamp last_retry in one statement.

        Never changes status; the caller writes the accompanying status in
        the same transaction.

        Returns:
            True if the job was updated.
        """
        now = now or utcnow()
        stmt = (
            update(Job)
            .where(Job.uuid == job_uuid, Job.status.not_in(_TERMINAL))
            .values(
                retry_count=Job.retry_count + 1,
                last_retry=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def cancel(self, job_uuid: UUID) -> Job | None:
        """
        Cancel a job that has not reached a terminal status.

        A worker already running the job is not interrupted; its final write
        is conditional on the active status and will be discarded.

        Returns:
            The canceled Job, or None if missing or already terminal.
        """
        job = await self.update(job_uuid, {"status": JobStatus.CANCELED})
        if job is not None:
            logger.info("Job canceled", extra={"job_uuid": str(job_uuid)})
        return job

    async def get_next_ready(
        self,
        worker_id: str,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Lease the oldest ready and due job.

        Selection and claim happen in one UPDATE statement: the candidate
        subquery uses FOR UPDATE SKIP LOCKED where the dialect supports it and
        the outer WHERE re-checks that the job is still unleased, so two
        concurrent callers can never both receive the same job.

        Args:
            worker_id: The worker claiming the job.
            now: Evaluation time for readiness.

        Returns:
            The leased Job with its pre-lease status, or None if no job is
            ready.
        """
        now = now or utcnow()
        due = Job.due_clause(now)

        candidate = (
            select(Job.uuid)
            .where(Job.ready, due, Job.lease_owner.is_(None))
            .order_by(Job.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(Job)
            .where(Job.uuid == candidate, Job.lease_owner.is_(None))
            .values(lease_owner=worker_id, updated_at=now)
            .returning(Job)
            .execution_options(populate_existing=True, synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        job = result.scalar_one_or_none()

        if job is not None:
            logger.info(
                "Acquired lease on job",
                extra={
                    "job_uuid": str(job.uuid),
                    "worker_id": worker_id,
                    "status": job.status,
                }
            )
        return job

    async def list_active(self, limit: int | None = None) -> Sequence[Job]:
        """
        List jobs that have not reached a terminal status, newest first.
        """
        stmt = (
            select(Job)
            .where(Job.status.not_in(_TERMINAL))
            .order_by(Job.created_at.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_recent_failures(self, limit: int = 20) -> Sequence[Job]:
        """
        List the most recent jobs that ended in terminal error.

        Args:
            limit: Maximum number of jobs to return.
        """
        stmt = (
            select(Job)
            .where(Job.status == JobStatus.ERROR)
            .order_by(Job.completed_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_stale_leases(
        self,
        stale_after: timedelta,
        now: datetime | None = None,
    ) -> Sequence[Job]:
        """
        List leased jobs whose worker has not written to them for a while.

        A worker that dies mid-step leaves its job leased in the active
        status; nothing reclaims it automatically. Running processors report
        progress, which refreshes updated_at, so a long quiet lease usually
        means the worker is gone. Oldest first.

        Args:
            stale_after: How long a lease may go without a write.
            now: Evaluation time.
        """
        now = now or utcnow()
        stmt = (
            select(Job)
            .where(
                Job.lease_owner.is_not(None),
                Job.status.not_in(_TERMINAL),
                Job.updated_at <= now - stale_after,
            )
            .order_by(Job.updated_at.asc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def get_ready_count(self, now: datetime | None = None) -> int:
        """
        Get the number of jobs that could be leased right now.
        """
        now = now or utcnow()
        stmt = select(func.count()).select_from(Job).where(
            Job.ready,
            Job.due_clause(now),
            Job.lease_owner.is_(None),
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def get_status_counts(self) -> dict[str, int]:
        """
        Get job counts by status.
        """
        stmt = select(Job.status, func.count()).group_by(Job.status)
        result = await self._session.execute(stmt)
        return {status: count for status, count in result.all()}


class AssetRepository:
    """
    Repository for the asset catalogue.

    Assets are created once, after their file has been downloaded, and are
    read back through the API; there is no update path.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(
        self,
        kind: str,
        source_url: str,
        name: str | None = None,
        example_prompt: str | None = None,
        local_path: str | None = None,
        min_weight: float = 1.0,
        max_weight: float = 1.0,
    ) -> Asset:
        """
        Create an asset record.

        Raises:
            InvalidJobError: If the kind is not "model" or "lora".
        """
        if kind not in ASSET_KINDS:
            raise InvalidJobError(f"Unknown asset kind: {kind}")

        asset = Asset(
            kind=kind,
            name=name,
            source_url=source_url,
            example_prompt=example_prompt,
            local_path=local_path,
            min_weight=min_weight,
            max_weight=max_weight,
        )
        self._session.add(asset)
        await self._session.flush()

        logger.info(
            "Created asset",
            extra={"asset_id": asset.id, "kind": kind, "source_url": source_url}
        )
        return asset

    async def add_image(
        self,
        asset_id: int,
        url: str,
        is_nsfw: bool = False,
        width: int | None = None,
        height: int | None = None,
        meta: dict[str, Any] | None = None,
    ) -> AssetImage:
        """Attach example image metadata to an asset."""
        image = AssetImage(
            asset_id=asset_id,
            url=url,
            is_nsfw=is_nsfw,
            width=width,
            height=height,
            meta=meta,
        )
        self._session.add(image)
        await self._session.flush()
        return image

    async def get(self, asset_id: int) -> Asset | None:
        """
        Get an asset with its images.

        Returns:
            The Asset or None if not found.
        """
        stmt = select(Asset).where(Asset.id == asset_id).execution_options(
            populate_existing=True
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()
