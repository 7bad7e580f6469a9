"""
Job-related type definitions for internal use.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any
from uuid import UUID

import httpx

from renderqueue.config import Settings
from renderqueue.db.connection import Database
from renderqueue.db.models import Job

# Writes a progress value (0..1) for the running job
ProgressReporter = Callable[[float], Awaitable[None]]


@dataclass
class ProcessorContext:
    """
    Context passed to processors during execution.

    Carries the full job record as leased, the shared outbound HTTP client,
    the database for processors that keep their own records and a progress
    reporter bound to the job.
    """

    job: Job
    settings: Settings
    http: httpx.AsyncClient
    database: Database
    report_progress: ProgressReporter

    @property
    def job_uuid(self) -> UUID:
        return self.job.uuid

    @property
    def workflow(self) -> str:
        return self.job.workflow

    @property
    def request(self) -> dict[str, Any]:
        return dict(self.job.request or {})

    @property
    def result(self) -> dict[str, Any]:
        """Result written by earlier steps, or an empty dict."""
        return dict(self.job.result or {})


@dataclass(frozen=True)
class StepOutcome:
    """
    What the worker did with one leased job.
    Returned by the worker for logging, metrics and tests.
    """

    job_uuid: UUID
    workflow: str
    from_status: str
    to_status: str
    process: str | None = None
    error: str | None = None
    discarded: bool = False

    @property
    def failed(self) -> bool:
        return self.error is not None
