"""
Integration tests for the worker loop against a real SQLite store.
"""

from collections.abc import Callable
from datetime import timedelta
from typing import Any
from uuid import UUID

import httpx
import pytest
import pytest_asyncio

from renderqueue.config import Settings
from renderqueue.constants import WEBHOOK_HOLD_STATUS, Capability, JobStatus
from renderqueue.db.connection import Database
from renderqueue.db.models import Job, utcnow
from renderqueue.db.repository import JobRepository
from renderqueue.exceptions import ProcessorError, UnrecoverableError
from renderqueue.processors.webhook import process_webhook
from renderqueue.types.job import ProcessorContext
from renderqueue.worker.main import Worker
from renderqueue.workflow.registry import WORKFLOWS, WorkflowRegistry, WorkflowStep

TEST_WORKFLOWS = {
    "render": {
        JobStatus.PENDING: WorkflowStep(
            Capability.GENERATE,
            WEBHOOK_HOLD_STATUS,
            success_progress=0.9,
        ),
        WEBHOOK_HOLD_STATUS: WorkflowStep(Capability.WEBHOOK, JobStatus.COMPLETED),
    },
    "noop": WORKFLOWS["noop"],
}


class FakeProcessor:
    """Records invocations and returns or raises what it is told to."""

    def __init__(self, output: dict[str, Any] | None = None, error: Exception | None = None):
        self.output = output or {}
        self.error = error
        self.calls: list[ProcessorContext] = []

    async def __call__(self, context: ProcessorContext) -> dict[str, Any]:
        self.calls.append(context)
        if self.error is not None:
            raise self.error
        return self.output


def always(status_code: int) -> Callable[[httpx.Request], httpx.Response]:
    return lambda request: httpx.Response(status_code)


async def create_job(database: Database, workflow: str = "render", **kwargs) -> Job:
    async with database.session() as session:
        return await JobRepository(session).create(workflow=workflow, **kwargs)


async def load_job(database: Database, job_uuid: UUID) -> Job:
    async with database.session() as session:
        return await JobRepository(session).get(job_uuid)


class TestWorkerSteps:
    """Tests for single worker iterations."""

    @pytest.fixture
    def generate(self) -> FakeProcessor:
        return FakeProcessor(output={"images": ["aW1n"], "seed": 1})

    @pytest_asyncio.fixture
    async def make_worker(
        self,
        database: Database,
        test_settings: Settings,
        generate: FakeProcessor,
    ):
        clients: list[httpx.AsyncClient] = []

        def factory(
            handler: Callable[[httpx.Request], httpx.Response] = always(200),
            processors: dict[str, Any] | None = None,
        ) -> Worker:
            http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            clients.append(http)
            registry = WorkflowRegistry(
                TEST_WORKFLOWS,
                processors or {
                    Capability.GENERATE: generate,
                    Capability.WEBHOOK: process_webhook,
                    Capability.NOOP: FakeProcessor(),
                },
            )
            return Worker(
                database,
                registry=registry,
                http_client=http,
                worker_id="worker-1",
                settings=test_settings,
            )

        yield factory

        for http in clients:
            await http.aclose()

    async def test_idle_returns_none(self, make_worker):
        assert await make_worker().run_once() is None

    async def test_success_walks_workflow(self, make_worker, database: Database):
        worker = make_worker()
        job = await create_job(database, request={"prompt": "a cat"})

        first = await worker.run_once()
        held = await load_job(database, job.uuid)

        assert first.from_status == JobStatus.PENDING
        assert first.to_status == WEBHOOK_HOLD_STATUS
        assert held.status == WEBHOOK_HOLD_STATUS
        assert held.progress == pytest.approx(0.9)
        assert held.result == {"images": ["aW1n"], "seed": 1}
        assert held.lease_owner is None

        second = await worker.run_once()
        done = await load_job(database, job.uuid)

        assert second.to_status == JobStatus.COMPLETED
        assert done.status == JobStatus.COMPLETED
        assert done.progress == 1.0
        assert done.completed_at is not None
        assert done.result == {"images": ["aW1n"], "seed": 1}

    async def test_processor_sees_active_marker_and_reports_progress(
        self,
        make_worker,
        database: Database,
    ):
        seen: dict[str, Any] = {}

        async def generate(context: ProcessorContext) -> dict[str, Any]:
            await context.report_progress(0.5)
            current = await load_job(database, context.job_uuid)
            seen["status"] = current.status
            seen["progress"] = current.progress
            seen["lease_owner"] = current.lease_owner
            return {}

        worker = make_worker(
            processors={
                Capability.GENERATE: generate,
                Capability.WEBHOOK: process_webhook,
                Capability.NOOP: FakeProcessor(),
            }
        )
        job = await create_job(database)
        await worker.run_once()

        assert seen == {"status": "generating", "progress": 0.5, "lease_owner": "worker-1"}
        assert (await load_job(database, job.uuid)).status == WEBHOOK_HOLD_STATUS

    async def test_recoverable_failure_backs_off(
        self,
        make_worker,
        database: Database,
        generate: FakeProcessor,
    ):
        generate.error = ProcessorError("backend down")
        worker = make_worker()
        job = await create_job(database)
        now = utcnow()

        outcome = await worker.run_once(now=now)
        failed = await load_job(database, job.uuid)

        assert outcome.failed
        assert failed.status == JobStatus.PENDING
        assert failed.error == "backend down"
        assert failed.retry_count == 1
        assert failed.last_retry == now
        assert failed.lease_owner is None

        # Not due until last_retry + 2 minutes
        assert await worker.run_once(now=now + timedelta(minutes=1)) is None
        assert len(generate.calls) == 1

        generate.error = None
        retried = await worker.run_once(now=now + timedelta(minutes=2))
        recovered = await load_job(database, job.uuid)

        assert retried.to_status == WEBHOOK_HOLD_STATUS
        assert recovered.retry_count == 0
        assert recovered.last_retry is None
        assert recovered.error is None

    async def test_unrecoverable_failure_is_terminal(
        self,
        make_worker,
        database: Database,
        generate: FakeProcessor,
    ):
        generate.error = UnrecoverableError("bad request")
        job = await create_job(database)

        await make_worker().run_once()
        failed = await load_job(database, job.uuid)

        assert failed.status == JobStatus.ERROR
        assert failed.error == "bad request"
        assert failed.retry_count == 0
        assert failed.progress == 1.0
        assert failed.completed_at is not None

    async def test_retry_ceiling_escalates(
        self,
        make_worker,
        database: Database,
        generate: FakeProcessor,
        test_settings: Settings,
    ):
        generate.error = ProcessorError("still down")
        job = await create_job(database)
        now = utcnow()
        async with database.session() as session:
            await JobRepository(session).update(
                job.uuid,
                {
                    "retry_count": test_settings.worker_max_retries,
                    "last_retry": now - timedelta(days=1),
                },
            )

        await make_worker().run_once(now=now)
        failed = await load_job(database, job.uuid)

        assert failed.status == JobStatus.ERROR
        assert failed.error == "still down"
        assert failed.retry_count == test_settings.worker_max_retries

    async def test_unknown_status_fails_without_processor(
        self,
        make_worker,
        database: Database,
        generate: FakeProcessor,
    ):
        job = await create_job(database, status="ready-for-nothing")

        outcome = await make_worker().run_once()
        failed = await load_job(database, job.uuid)

        assert outcome.failed
        assert failed.status == JobStatus.ERROR
        assert "ready-for-nothing" in failed.error
        assert generate.calls == []

    async def test_unknown_workflow_fails_without_processor(
        self,
        make_worker,
        database: Database,
        generate: FakeProcessor,
    ):
        job = await create_job(database, workflow="upscale")

        await make_worker().run_once()
        failed = await load_job(database, job.uuid)

        assert failed.status == JobStatus.ERROR
        assert "upscale" in failed.error
        assert generate.calls == []

    async def test_noop_failure_completes(self, make_worker, database: Database):
        worker = make_worker(
            processors={
                Capability.GENERATE: FakeProcessor(),
                Capability.WEBHOOK: process_webhook,
                Capability.NOOP: FakeProcessor(error=ProcessorError("ignored")),
            }
        )
        job = await create_job(database, workflow="noop")

        await worker.run_once()
        done = await load_job(database, job.uuid)

        assert done.status == JobStatus.COMPLETED
        assert done.retry_count == 0

    async def test_cancel_during_step_discards_result(
        self,
        make_worker,
        database: Database,
    ):
        async def generate(context: ProcessorContext) -> dict[str, Any]:
            async with database.session() as session:
                await JobRepository(session).cancel(context.job_uuid)
            return {"images": ["late"]}

        worker = make_worker(
            processors={
                Capability.GENERATE: generate,
                Capability.WEBHOOK: process_webhook,
                Capability.NOOP: FakeProcessor(),
            }
        )
        job = await create_job(database)

        outcome = await worker.run_once()
        canceled = await load_job(database, job.uuid)

        assert outcome.discarded
        assert outcome.to_status == JobStatus.CANCELED
        assert canceled.status == JobStatus.CANCELED
        assert canceled.result is None
        assert canceled.progress == 1.0


class TestWebhookConfirmation:
    """Tests for the at-least-once webhook phase."""

    async def test_completes_on_fourth_attempt(self, database: Database, test_settings: Settings):
        attempts: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(500 if len(attempts) <= 3 else 200)

        registry = WorkflowRegistry(
            TEST_WORKFLOWS,
            {
                Capability.GENERATE: FakeProcessor(output={"images": ["aW1n"]}),
                Capability.WEBHOOK: process_webhook,
                Capability.NOOP: FakeProcessor(),
            },
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            worker = Worker(
                database,
                registry=registry,
                http_client=http,
                worker_id="worker-1",
                settings=test_settings,
            )
            job = await create_job(
                database,
                webhook_url="http://hooks.test/done",
                webhook_key="secret",
            )

            now = utcnow()
            await worker.run_once(now=now)

            for expected_retries in (1, 2, 3):
                await worker.run_once(now=now)
                held = await load_job(database, job.uuid)
                assert held.status == WEBHOOK_HOLD_STATUS
                assert held.progress == pytest.approx(0.9)
                assert held.retry_count == expected_retries
                # Jump past this attempt's backoff
                now = held.ready_at

            await worker.run_once(now=now)

        done = await load_job(database, job.uuid)
        assert len(attempts) == 4
        assert all(r.headers["x-webhook-key"] == "secret" for r in attempts)
        assert done.status == JobStatus.COMPLETED
        assert done.progress == 1.0
        assert done.retry_count == 0
