"""
Worker process for executing jobs.

The worker leases one ready job at a time, runs the processor bound to the
job's current state and writes the transition the outcome calls for:
- success: the step's success edge, with the processor output merged into
  the result and the retry counter reset
- recoverable failure: the step's failure edge, advancing the backoff
- unrecoverable failure or retry ceiling reached: terminal "error"
"""

import asyncio
import logging
import os
import signal
import time
from datetime import datetime
from typing import Any
from uuid import UUID

import httpx

from renderqueue.config import Settings, get_settings
from renderqueue.constants import SPAN_ACQUIRE_LEASE, SPAN_EXECUTE_STEP, JobStatus
from renderqueue.db.connection import Database
from renderqueue.db.migrations import run_migrations
from renderqueue.db.models import Job, is_terminal_status, utcnow
from renderqueue.db.repository import JobRepository
from renderqueue.exceptions import (
    ProcessorError,
    UnrecoverableError,
    WorkflowConfigurationError,
)
from renderqueue.observability.logging import job_context, setup_logging
from renderqueue.observability.metrics import get_metrics
from renderqueue.observability.tracing import get_tracer, instrument_sqlalchemy
from renderqueue.types.job import ProcessorContext, ProgressReporter, StepOutcome
from renderqueue.workflow.registry import WorkflowRegistry, WorkflowStep

logger = logging.getLogger(__name__)


class Worker:
    """
    Job worker that polls for and executes jobs.

    Features:
    - Atomic lease acquisition through JobRepository.get_next_ready
    - One job in flight per worker; scale out by running more workers
    - Final writes conditional on the active status, so a job canceled
      while its step runs stays canceled
    - Graceful shutdown on SIGTERM/SIGINT after the current step
    """

    def __init__(
        self,
        database: Database,
        registry: WorkflowRegistry | None = None,
        http_client: httpx.AsyncClient | None = None,
        worker_id: str | None = None,
        poll_interval: float | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the worker.

        Args:
            database: Database holding the job table.
            registry: Workflow registry. Defaults to the built-in workflows.
            http_client: Shared client for processors. Created if not given.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            poll_interval: Seconds between polls when no job is ready.
            settings: Optional settings override.
        """
        self.settings = settings or get_settings()
        self.database = database
        self.registry = registry or WorkflowRegistry()

        self.worker_id = (
            worker_id
            or self.settings.worker_id
            or f"{os.uname().nodename}-{os.getpid()}"
        )
        self.poll_interval = poll_interval or self.settings.worker_poll_interval_seconds
        self.max_retries = self.settings.worker_max_retries

        self._owns_http = http_client is None
        self.http = http_client or httpx.AsyncClient(
            timeout=self.settings.http_timeout_seconds
        )

        self._running = False
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Run the polling loop until stop() is called."""
        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "poll_interval": self.poll_interval}
        )

        self._running = True

        while self._running:
            try:
                outcome = await self.run_once()

                # Nothing ready, wait before polling again
                if outcome is None:
                    await asyncio.sleep(self.poll_interval)

            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id}
                )
                await asyncio.sleep(self.poll_interval)

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker after the step in flight."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False

    async def close(self) -> None:
        """Release the HTTP client if the worker created it."""
        if self._owns_http:
            await self.http.aclose()

    async def run_once(self, now: datetime | None = None) -> StepOutcome | None:
        """
        Lease and execute at most one job.

        Args:
            now: Evaluation time for readiness and bookkeeping timestamps.

        Returns:
            What happened to the leased job, or None if no job was ready.
        """
        now = now or utcnow()

        with get_tracer().start_as_current_span(SPAN_ACQUIRE_LEASE) as span:
            span.set_attribute("worker_id", self.worker_id)
            async with self.database.session() as session:
                repo = JobRepository(session, self.settings)
                job = await repo.get_next_ready(self.worker_id, now=now)
                ready_count = await repo.get_ready_count(now=now)

        self._metrics.update_ready_jobs(ready_count)
        if job is None:
            return None

        self._metrics.record_lease_acquired(self.worker_id)
        with job_context(job.uuid, job.workflow, job.status, worker_id=self.worker_id):
            return await self._execute(job, now)

    async def _execute(self, job: Job, now: datetime) -> StepOutcome:
        """
        Run the step for a leased job and write its transition.

        Args:
            job: The leased job, carrying its pre-lease status.
            now: Timestamp for bookkeeping columns.
        """
        pre_status = job.status

        try:
            step = self.registry.resolve(job.workflow, pre_status)
            processor = self.registry.get_processor(step.process)
        except WorkflowConfigurationError as e:
            logger.error(
                "Job cannot be mapped to a workflow step",
                extra={"workflow": job.workflow, "status": pre_status, "error": str(e)}
            )
            return await self._fail_unresolvable(job, str(e), now)

        # Mark the job as running this capability
        async with self.database.session() as session:
            repo = JobRepository(session, self.settings)
            started = await repo.update_status(
                job.uuid, step.process, expected_status=pre_status
            )
        if not started:
            logger.info("Job changed before the step started", extra={"status": pre_status})
            return StepOutcome(
                job_uuid=job.uuid,
                workflow=job.workflow,
                from_status=pre_status,
                to_status=await self._current_status(job.uuid),
                process=step.process,
                discarded=True,
            )

        context = ProcessorContext(
            job=job,
            settings=self.settings,
            http=self.http,
            database=self.database,
            report_progress=self._progress_reporter(job.uuid),
        )

        logger.info(
            "Executing step",
            extra={
                "workflow": job.workflow,
                "status": pre_status,
                "capability": str(step.process),
                "retry_count": job.retry_count,
            }
        )

        start_time = time.monotonic()
        error: Exception | None = None
        output: dict[str, Any] | None = None

        with get_tracer().start_as_current_span(SPAN_EXECUTE_STEP) as span:
            span.set_attribute("job_uuid", str(job.uuid))
            span.set_attribute("workflow", job.workflow)
            span.set_attribute("capability", str(step.process))
            span.set_attribute("retry_count", job.retry_count)

            try:
                output = await processor(context)
            except Exception as e:
                error = e
                span.record_exception(e)

        duration = time.monotonic() - start_time

        if error is None:
            outcome = await self._apply_success(job, step, pre_status, output, now)
        else:
            outcome = await self._apply_failure(job, step, pre_status, error, now)

        if outcome.discarded:
            step_result = "discarded"
        elif outcome.failed:
            step_result = "failure"
        else:
            step_result = "success"
        self._metrics.record_step(str(step.process), step_result, duration)
        return outcome

    async def _apply_success(
        self,
        job: Job,
        step: WorkflowStep,
        pre_status: str,
        output: dict[str, Any] | None,
        now: datetime,
    ) -> StepOutcome:
        result = {**(job.result or {}), **(output or {})}
        fields: dict[str, Any] = {
            "status": step.success,
            "result": result,
            "error": None,
            "retry_count": 0,
            "last_retry": None,
            "lease_owner": None,
        }
        if step.success_progress is not None:
            fields["progress"] = step.success_progress

        async with self.database.session() as session:
            repo = JobRepository(session, self.settings)
            updated = await repo.update(
                job.uuid, fields, expected_status=step.process, now=now
            )

        if updated is None:
            return await self._discarded(job, step, pre_status)

        logger.info(
            "Step succeeded",
            extra={"capability": str(step.process), "next_status": step.success}
        )
        self._record_finished(updated)
        return StepOutcome(
            job_uuid=job.uuid,
            workflow=job.workflow,
            from_status=pre_status,
            to_status=updated.status,
            process=step.process,
        )

    async def _apply_failure(
        self,
        job: Job,
        step: WorkflowStep,
        pre_status: str,
        error: Exception,
        now: datetime,
    ) -> StepOutcome:
        message = str(error) or error.__class__.__name__
        unrecoverable = isinstance(error, UnrecoverableError)
        exhausted = job.retry_count >= self.max_retries

        async with self.database.session() as session:
            repo = JobRepository(session, self.settings)

            if unrecoverable or exhausted:
                updated = await repo.update(
                    job.uuid,
                    {"status": JobStatus.ERROR, "error": message},
                    expected_status=step.process,
                    now=now,
                )
            else:
                target = step.failure_target(pre_status)
                updated = await repo.update(
                    job.uuid,
                    {"status": target, "error": message, "lease_owner": None},
                    expected_status=step.process,
                    now=now,
                )
                if (
                    updated is not None
                    and step.increment_failure_counter
                    and not is_terminal_status(target)
                ):
                    await repo.increment_failure_counter(job.uuid, now=now)

        if updated is None:
            return await self._discarded(job, step, pre_status, message)

        if unrecoverable or exhausted:
            logger.error(
                "Step failed permanently",
                extra={
                    "capability": str(step.process),
                    "error": message,
                    "retry_count": job.retry_count,
                    "unrecoverable": unrecoverable,
                }
            )
        else:
            logger.warning(
                "Step failed, will retry",
                extra={
                    "capability": str(step.process),
                    "error": message,
                    "retry_count": job.retry_count,
                    "next_status": updated.status,
                },
                exc_info=None if isinstance(error, ProcessorError) else error,
            )

        self._record_finished(updated)
        return StepOutcome(
            job_uuid=job.uuid,
            workflow=job.workflow,
            from_status=pre_status,
            to_status=updated.status,
            process=step.process,
            error=message,
        )

    async def _fail_unresolvable(self, job: Job, message: str, now: datetime) -> StepOutcome:
        async with self.database.session() as session:
            repo = JobRepository(session, self.settings)
            updated = await repo.update(
                job.uuid,
                {"status": JobStatus.ERROR, "error": message},
                expected_status=job.status,
                now=now,
            )

        if updated is not None:
            self._record_finished(updated)
        return StepOutcome(
            job_uuid=job.uuid,
            workflow=job.workflow,
            from_status=job.status,
            to_status=updated.status if updated else await self._current_status(job.uuid),
            error=message,
            discarded=updated is None,
        )

    async def _discarded(
        self,
        job: Job,
        step: WorkflowStep,
        pre_status: str,
        message: str | None = None,
    ) -> StepOutcome:
        current = await self._current_status(job.uuid)
        logger.info(
            "Discarding step outcome, job changed while it ran",
            extra={"capability": str(step.process), "status": current}
        )
        return StepOutcome(
            job_uuid=job.uuid,
            workflow=job.workflow,
            from_status=pre_status,
            to_status=current,
            process=step.process,
            error=message,
            discarded=True,
        )

    async def _current_status(self, job_uuid: UUID) -> str:
        async with self.database.session() as session:
            job = await JobRepository(session, self.settings).get(job_uuid)
        return job.status if job is not None else ""

    def _progress_reporter(self, job_uuid: UUID) -> ProgressReporter:
        """Bind a progress writer to one job; each report is its own transaction."""
        async def report(progress: float) -> None:
            async with self.database.session() as session:
                await JobRepository(session, self.settings).update_progress(
                    job_uuid, progress
                )
        return report

    def _record_finished(self, job: Job) -> None:
        if job.is_terminal:
            self._metrics.record_job_finished(job.workflow, job.status)


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging(settings, component="worker")

    database = Database(settings=settings)
    instrument_sqlalchemy(database.engine.sync_engine)

    report = await run_migrations(database)
    if not report.ok:
        logger.error("Some migrations failed", extra={"failed": sorted(report.failed)})

    worker = Worker(database, settings=settings)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await worker.start()
    finally:
        await worker.close()
        await database.dispose()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
