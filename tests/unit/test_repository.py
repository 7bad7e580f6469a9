"""
Unit tests for the job repository.
"""

import asyncio
from datetime import datetime, timedelta
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from renderqueue.constants import JobStatus
from renderqueue.db.connection import Database
from renderqueue.db.models import Job, utcnow
from renderqueue.db.repository import AssetRepository, JobRepository
from renderqueue.exceptions import InvalidJobError


async def set_created_at(session: AsyncSession, job_uuid: UUID, created_at: datetime) -> None:
    await session.execute(
        update(Job).where(Job.uuid == job_uuid).values(created_at=created_at)
    )


class TestJobRepository:
    """Tests for creation, reads and guarded updates."""

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession) -> JobRepository:
        """Create a repository instance."""
        return JobRepository(db_session)

    async def test_create_job_defaults(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        job = await repo.create(
            workflow="txt2img",
            request={"prompt": "a cat"},
            webhook_url="http://hooks.test/done",
            webhook_key="secret",
        )
        await db_session.commit()

        assert job.status == JobStatus.PENDING
        assert job.progress == 0.0
        assert job.retry_count == 0
        assert job.last_retry is None
        assert job.lease_owner is None
        assert job.completed_at is None
        assert job.request == {"prompt": "a cat"}
        assert job.ready is True

    async def test_create_requires_workflow(self, repo: JobRepository):
        with pytest.raises(InvalidJobError):
            await repo.create(workflow="", request={})

    async def test_create_with_caller_uuid(self, repo: JobRepository):
        job_uuid = uuid4()
        job = await repo.create(workflow="noop", job_uuid=job_uuid)
        assert job.uuid == job_uuid

    async def test_get_missing_returns_none(self, repo: JobRepository):
        assert await repo.get(uuid4()) is None

    async def test_get_job(self, repo: JobRepository, db_session: AsyncSession):
        job = await repo.create(workflow="noop")
        await db_session.commit()

        retrieved = await repo.get(job.uuid)

        assert retrieved is not None
        assert retrieved.uuid == job.uuid
        assert retrieved.workflow == "noop"

    async def test_update_rejects_fields_outside_allow_list(self, repo: JobRepository):
        job = await repo.create(workflow="noop")

        with pytest.raises(InvalidJobError):
            await repo.update(job.uuid, {"workflow": "txt2img"})
        with pytest.raises(InvalidJobError):
            await repo.update(job.uuid, {"created_at": utcnow()})

    async def test_terminal_status_forces_progress_and_completed_at(
        self,
        repo: JobRepository,
    ):
        job = await repo.create(workflow="noop")
        await repo.update(job.uuid, {"lease_owner": "worker-1", "progress": 0.4})

        now = utcnow()
        updated = await repo.update(
            job.uuid,
            {"status": JobStatus.COMPLETED, "progress": 0.2},
            now=now,
        )

        assert updated is not None
        assert updated.status == JobStatus.COMPLETED
        assert updated.progress == 1.0
        assert updated.completed_at == now
        assert updated.lease_owner is None

    async def test_terminal_job_is_immutable(self, repo: JobRepository):
        job = await repo.create(workflow="noop")
        await repo.update(job.uuid, {"status": JobStatus.ERROR, "error": "boom"})

        assert await repo.update(job.uuid, {"status": JobStatus.PENDING}) is None
        assert await repo.update_status(job.uuid, "ready-for-webhook") is False
        assert await repo.update_progress(job.uuid, 0.5) is False
        assert await repo.increment_failure_counter(job.uuid) is False

        current = await repo.get(job.uuid)
        assert current.status == JobStatus.ERROR
        assert current.progress == 1.0

    async def test_update_with_expected_status(self, repo: JobRepository):
        job = await repo.create(workflow="noop")

        assert await repo.update(
            job.uuid, {"status": "ready-for-webhook"}, expected_status="generating"
        ) is None

        updated = await repo.update(
            job.uuid, {"status": "ready-for-webhook"}, expected_status=JobStatus.PENDING
        )
        assert updated.status == "ready-for-webhook"

    async def test_update_status_only_touches_status(self, repo: JobRepository):
        job = await repo.create(workflow="noop")
        await repo.update_progress(job.uuid, 0.3)

        assert await repo.update_status(job.uuid, "generating") is True

        current = await repo.get(job.uuid)
        assert current.status == "generating"
        assert current.progress == pytest.approx(0.3)

    async def test_update_status_to_terminal_forces_progress(self, repo: JobRepository):
        job = await repo.create(workflow="noop")

        assert await repo.update_status(job.uuid, JobStatus.COMPLETED) is True

        current = await repo.get(job.uuid)
        assert current.progress == 1.0
        assert current.completed_at is not None

    async def test_update_progress_clamps(self, repo: JobRepository):
        job = await repo.create(workflow="noop")

        await repo.update_progress(job.uuid, 1.7)
        assert (await repo.get(job.uuid)).progress == 1.0

        await repo.update_progress(job.uuid, -0.5)
        assert (await repo.get(job.uuid)).progress == 0.0

    async def test_increment_failure_counter(self, repo: JobRepository):
        job = await repo.create(workflow="noop")
        await repo.update_status(job.uuid, "generating")
        now = utcnow()

        assert await repo.increment_failure_counter(job.uuid, now=now) is True
        assert await repo.increment_failure_counter(job.uuid, now=now) is True

        current = await repo.get(job.uuid)
        assert current.retry_count == 2
        assert current.last_retry == now
        assert current.status == "generating"

    async def test_cancel_non_terminal_job(self, repo: JobRepository):
        job = await repo.create(workflow="noop")

        canceled = await repo.cancel(job.uuid)

        assert canceled is not None
        assert canceled.status == JobStatus.CANCELED
        assert canceled.progress == 1.0
        assert canceled.completed_at is not None

    async def test_cancel_terminal_or_missing_job(self, repo: JobRepository):
        job = await repo.create(workflow="noop")
        await repo.update_status(job.uuid, JobStatus.COMPLETED)

        assert await repo.cancel(job.uuid) is None
        assert await repo.cancel(uuid4()) is None


class TestLeasing:
    """Tests for get_next_ready."""

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession) -> JobRepository:
        return JobRepository(db_session)

    async def test_no_ready_jobs_returns_none(self, repo: JobRepository):
        assert await repo.get_next_ready("worker-1") is None

    async def test_lease_marks_owner_and_keeps_status(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        job = await repo.create(workflow="txt2img")
        await repo.update_status(job.uuid, "ready-for-tagging")
        await db_session.commit()

        leased = await repo.get_next_ready("worker-1")

        assert leased.uuid == job.uuid
        assert leased.status == "ready-for-tagging"
        assert leased.lease_owner == "worker-1"
        assert await repo.get_next_ready("worker-2") is None

    async def test_lease_is_fifo_by_creation(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        base = utcnow() - timedelta(minutes=10)
        newer = await repo.create(workflow="noop")
        older = await repo.create(workflow="noop")
        await set_created_at(db_session, newer.uuid, base + timedelta(seconds=5))
        await set_created_at(db_session, older.uuid, base)
        await db_session.commit()

        first = await repo.get_next_ready("worker-1")
        second = await repo.get_next_ready("worker-1")

        assert first.uuid == older.uuid
        assert second.uuid == newer.uuid

    async def test_skips_jobs_that_are_not_ready(self, repo: JobRepository):
        running = await repo.create(workflow="noop")
        await repo.update_status(running.uuid, "generating")
        done = await repo.create(workflow="noop")
        await repo.update_status(done.uuid, JobStatus.COMPLETED)

        assert await repo.get_next_ready("worker-1") is None

    async def test_backoff_delays_lease(self, repo: JobRepository):
        job = await repo.create(workflow="noop")
        failed_at = utcnow()
        await repo.update(job.uuid, {"retry_count": 3, "last_retry": failed_at})

        assert await repo.get_next_ready("w", now=failed_at + timedelta(minutes=7)) is None
        assert await repo.get_ready_count(now=failed_at + timedelta(minutes=7)) == 0

        leased = await repo.get_next_ready("w", now=failed_at + timedelta(minutes=8))
        assert leased is not None
        assert leased.uuid == job.uuid

    async def test_retry_count_without_last_retry_is_due_from_creation(
        self,
        repo: JobRepository,
    ):
        job = await repo.create(workflow="noop")
        updated = await repo.update(job.uuid, {"retry_count": 2})

        assert updated.last_retry is None
        assert updated.ready_at == updated.created_at

        leased = await repo.get_next_ready("w", now=updated.created_at)
        assert leased is not None
        assert leased.uuid == job.uuid

    @pytest.mark.parametrize("retry_count", [1, 5, 8, 25])
    async def test_lease_waits_exactly_until_ready_at(
        self,
        repo: JobRepository,
        retry_count: int,
    ):
        job = await repo.create(workflow="noop")
        updated = await repo.update(
            job.uuid, {"retry_count": retry_count, "last_retry": utcnow()}
        )
        ready_at = updated.ready_at

        assert await repo.get_next_ready("w", now=ready_at - timedelta(seconds=1)) is None
        assert await repo.get_ready_count(now=ready_at - timedelta(seconds=1)) == 0

        leased = await repo.get_next_ready("w", now=ready_at)
        assert leased is not None
        assert leased.uuid == job.uuid

    async def test_retry_count_above_ceiling_reports_its_own_backoff(
        self,
        repo: JobRepository,
    ):
        job = await repo.create(workflow="noop")
        failed_at = utcnow()
        updated = await repo.update(job.uuid, {"retry_count": 8, "last_retry": failed_at})

        assert updated.ready_at == failed_at + timedelta(minutes=256)
        assert await repo.get_next_ready("w", now=failed_at + timedelta(minutes=33)) is None

    async def test_concurrent_leases_are_exclusive(self, database: Database):
        async with database.session() as session:
            repo = JobRepository(session)
            created = [await repo.create(workflow="noop") for _ in range(3)]

        async def lease(worker_id: str) -> Job | None:
            async with database.session() as session:
                return await JobRepository(session).get_next_ready(worker_id)

        results = await asyncio.gather(*(lease(f"worker-{i}") for i in range(6)))
        leased = [job.uuid for job in results if job is not None]

        assert sorted(leased) == sorted(job.uuid for job in created)
        assert len(set(leased)) == len(leased)


class TestListings:
    """Tests for operational listings."""

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession) -> JobRepository:
        return JobRepository(db_session)

    async def test_list_active_excludes_terminal(self, repo: JobRepository):
        active = await repo.create(workflow="noop")
        finished = await repo.create(workflow="noop")
        await repo.cancel(finished.uuid)

        jobs = await repo.list_active()

        assert [job.uuid for job in jobs] == [active.uuid]

    async def test_list_recent_failures(self, repo: JobRepository):
        now = utcnow()
        old = await repo.create(workflow="noop")
        recent = await repo.create(workflow="noop")
        ok = await repo.create(workflow="noop")
        await repo.update(old.uuid, {"status": JobStatus.ERROR, "error": "old"}, now=now)
        await repo.update(
            recent.uuid,
            {"status": JobStatus.ERROR, "error": "recent"},
            now=now + timedelta(seconds=1),
        )
        await repo.update_status(ok.uuid, JobStatus.COMPLETED)

        failures = await repo.list_recent_failures(limit=20)

        assert [job.error for job in failures] == ["recent", "old"]
        assert len(await repo.list_recent_failures(limit=1)) == 1

    async def test_status_counts(self, repo: JobRepository):
        await repo.create(workflow="noop")
        await repo.create(workflow="noop")
        done = await repo.create(workflow="noop")
        await repo.update_status(done.uuid, JobStatus.COMPLETED)

        counts = await repo.get_status_counts()

        assert counts == {"pending": 2, "completed": 1}

    async def test_list_stale_leases(self, repo: JobRepository):
        await repo.create(workflow="noop")
        await repo.create(workflow="noop")
        leased = await repo.get_next_ready("dead-worker")

        later = utcnow() + timedelta(hours=2)
        stale = await repo.list_stale_leases(timedelta(hours=1), now=later)

        assert [job.uuid for job in stale] == [leased.uuid]
        assert stale[0].lease_owner == "dead-worker"
        assert await repo.list_stale_leases(timedelta(hours=3), now=later) == []

    async def test_canceled_lease_is_not_stale(self, repo: JobRepository):
        job = await repo.create(workflow="noop")
        await repo.get_next_ready("dead-worker")
        await repo.cancel(job.uuid)

        later = utcnow() + timedelta(hours=2)
        assert await repo.list_stale_leases(timedelta(hours=1), now=later) == []


class TestAssetRepository:
    """Tests for the asset catalogue."""

    @pytest_asyncio.fixture
    async def assets(self, db_session: AsyncSession) -> AssetRepository:
        return AssetRepository(db_session)

    async def test_create_with_images(self, assets: AssetRepository, db_session: AsyncSession):
        asset = await assets.create(
            kind="model",
            source_url="https://civitai.com/models/1?modelVersionId=123",
            name="Base",
            local_path="/models/base.safetensors",
        )
        await assets.add_image(asset.id, url="https://image.civitai.com/a.jpeg", is_nsfw=True)
        await assets.add_image(asset.id, url="https://image.civitai.com/b.jpeg")
        await db_session.commit()

        loaded = await assets.get(asset.id)

        assert loaded.kind == "model"
        assert loaded.name == "Base"
        assert loaded.example_prompt is None
        assert loaded.min_weight == 1.0
        assert loaded.max_weight == 1.0
        assert [(i.url, i.is_nsfw) for i in loaded.images] == [
            ("https://image.civitai.com/a.jpeg", True),
            ("https://image.civitai.com/b.jpeg", False),
        ]

    async def test_rejects_unknown_kind(self, assets: AssetRepository):
        with pytest.raises(InvalidJobError):
            await assets.create(kind="vae", source_url="https://civitai.com/models/1")

    async def test_get_missing(self, assets: AssetRepository):
        assert await assets.get(12345) is None
