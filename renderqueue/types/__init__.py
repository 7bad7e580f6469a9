"""
Type definitions for the job queue.
Contains input/output type definitions grouped by module.
"""

from renderqueue.types.api import (
    AssetDownloadRequest,
    AssetImageResponse,
    AssetResponse,
    CreateJobRequest,
    CreateJobResponse,
    FailureSummary,
    HealthResponse,
    JobResponse,
    JobSummary,
    StaleLeaseSummary,
)
from renderqueue.types.job import (
    ProcessorContext,
    ProgressReporter,
    StepOutcome,
)

__all__ = [
    # API types
    "CreateJobRequest",
    "CreateJobResponse",
    "AssetDownloadRequest",
    "AssetResponse",
    "AssetImageResponse",
    "JobResponse",
    "JobSummary",
    "FailureSummary",
    "StaleLeaseSummary",
    "HealthResponse",
    # Job types
    "ProcessorContext",
    "ProgressReporter",
    "StepOutcome",
]
