"""
Job submission and management routes.
"""

import logging
from datetime import timedelta
from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from renderqueue.api.auth import require_token
from renderqueue.api.dependencies import get_app_settings, get_registry, get_session
from renderqueue.clients.civitai import is_civitai_url
from renderqueue.config import Settings
from renderqueue.constants import API_V1_PREFIX, DEFAULT_FAILURE_LISTING_LIMIT
from renderqueue.db.models import Job
from renderqueue.db.repository import JobRepository
from renderqueue.observability.metrics import get_metrics
from renderqueue.types.api import (
    AssetDownloadRequest,
    CreateJobRequest,
    CreateJobResponse,
    FailureSummary,
    JobResponse,
    JobSummary,
    StaleLeaseSummary,
)
from renderqueue.workflow.registry import WorkflowRegistry

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix=API_V1_PREFIX,
    tags=["Jobs"],
    dependencies=[Depends(require_token)],
)

SessionDep = Annotated[AsyncSession, Depends(get_session)]
RegistryDep = Annotated[WorkflowRegistry, Depends(get_registry)]
SettingsDep = Annotated[Settings, Depends(get_app_settings)]


def _job_to_response(job: Job) -> JobResponse:
    """Convert a Job model to a JobResponse."""
    result = job.result or {}
    images = result.get("images")
    return JobResponse(
        uuid=job.uuid,
        workflow=job.workflow,
        job_status=job.status,
        progress=job.progress,
        images=images if isinstance(images, list) else [],
        info=result.get("info") or job.error,
        result=job.result,
        error=job.error,
        retry_count=job.retry_count,
        ready_at=job.ready_at,
        created_at=job.created_at,
        completed_at=job.completed_at,
    )


async def _submit(
    session: AsyncSession,
    registry: WorkflowRegistry,
    workflow: str,
    request: dict[str, Any],
    webhook_url: str | None = None,
    webhook_key: str | None = None,
) -> CreateJobResponse:
    if not registry.has_workflow(workflow):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown workflow: {workflow}",
        )

    repo = JobRepository(session)
    job = await repo.create(
        workflow=workflow,
        request=request,
        webhook_url=webhook_url,
        webhook_key=webhook_key,
    )
    await session.commit()

    get_metrics().record_job_submitted(workflow)
    return CreateJobResponse(uuid=job.uuid)


async def _submit_generation(
    workflow: str,
    body: dict[str, Any],
    session: AsyncSession,
    registry: WorkflowRegistry,
) -> CreateJobResponse:
    request = dict(body)
    webhook_url = request.pop("webhookUrl", None)
    webhook_key = request.pop("webhookKey", None)
    return await _submit(session, registry, workflow, request, webhook_url, webhook_key)


@router.post(
    "/jobs",
    response_model=CreateJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a job",
    description="Queue a job for any registered workflow.",
)
async def create_job(
    body: CreateJobRequest,
    session: SessionDep,
    registry: RegistryDep,
) -> CreateJobResponse:
    """
    Create a new job.

    Raises:
        HTTPException: 400 if the workflow is not registered.
    """
    return await _submit(
        session,
        registry,
        body.workflow,
        body.request,
        body.webhook_url,
        body.webhook_key,
    )


@router.post(
    "/txt2img",
    response_model=CreateJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a txt2img job",
)
async def create_txt2img(
    session: SessionDep,
    registry: RegistryDep,
    body: dict[str, Any] = Body(default={}),
) -> CreateJobResponse:
    """
    Queue a text-to-image generation.

    The body is the backend's txt2img payload plus optional ``webhookUrl``
    and ``webhookKey``, which are stored on the job instead of the request.
    """
    return await _submit_generation("txt2img", body, session, registry)


@router.post(
    "/img2img",
    response_model=CreateJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit an img2img job",
)
async def create_img2img(
    session: SessionDep,
    registry: RegistryDep,
    body: dict[str, Any] = Body(default={}),
) -> CreateJobResponse:
    """Queue an image-to-image generation; same body rules as txt2img."""
    return await _submit_generation("img2img", body, session, registry)


@router.post(
    "/assets/download",
    response_model=CreateJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Download a model or LoRA",
)
async def create_asset_download(
    body: AssetDownloadRequest,
    session: SessionDep,
    registry: RegistryDep,
) -> CreateJobResponse:
    request = {
        "type": "asset-download",
        "kind": body.kind,
        "source_url": body.url,
        "civitai": is_civitai_url(body.url),
    }
    return await _submit(session, registry, "asset-download", request)


@router.get(
    "/jobs",
    response_model=list[JobSummary],
    summary="List active jobs",
)
async def list_jobs(session: SessionDep) -> list[JobSummary]:
    """Jobs that have not reached a terminal status, newest first."""
    jobs = await JobRepository(session).list_active()
    return [
        JobSummary(uuid=job.uuid, job_status=job.status, progress=job.progress)
        for job in jobs
    ]


@router.get(
    "/jobs/failures",
    response_model=list[FailureSummary],
    summary="List recent failures",
)
async def list_failures(
    session: SessionDep,
    limit: int = Query(default=DEFAULT_FAILURE_LISTING_LIMIT, ge=1, le=100),
) -> list[FailureSummary]:
    jobs = await JobRepository(session).list_recent_failures(limit=limit)
    return [
        FailureSummary(
            uuid=job.uuid,
            workflow=job.workflow,
            error=job.error,
            retry_count=job.retry_count,
            completed_at=job.completed_at,
        )
        for job in jobs
    ]


@router.get(
    "/jobs/stale",
    response_model=list[StaleLeaseSummary],
    summary="List stale leases",
    description="Leased jobs with no write for longer than the threshold.",
)
async def list_stale_leases(
    session: SessionDep,
    settings: SettingsDep,
    older_than: float | None = Query(
        default=None,
        gt=0,
        description="Seconds without a write; defaults to WORKER_STALE_LEASE_SECONDS",
    ),
) -> list[StaleLeaseSummary]:
    """
    Jobs probably stranded by a worker that died mid-step.

    Nothing reclaims them automatically; cancel them to clear them.
    """
    stale_after = timedelta(seconds=older_than or settings.worker_stale_lease_seconds)
    jobs = await JobRepository(session, settings).list_stale_leases(stale_after)
    return [
        StaleLeaseSummary(
            uuid=job.uuid,
            workflow=job.workflow,
            job_status=job.status,
            lease_owner=job.lease_owner,
            progress=job.progress,
            updated_at=job.updated_at,
        )
        for job in jobs
    ]


@router.get(
    "/jobs/{job_uuid}",
    response_model=JobResponse,
    summary="Get job details",
)
async def get_job(job_uuid: UUID, session: SessionDep) -> JobResponse:
    """
    Get job details by uuid.

    Raises:
        HTTPException: If the job is not found.
    """
    job = await JobRepository(session).get(job_uuid)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )
    return _job_to_response(job)


@router.delete(
    "/jobs/{job_uuid}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Cancel a job",
)
async def cancel_job(job_uuid: UUID, session: SessionDep) -> Response:
    """
    Cancel a job that has not finished.

    A step already running is not interrupted; its result is discarded.

    Raises:
        HTTPException: 404 if the job is missing or already terminal.
    """
    job = await JobRepository(session).cancel(job_uuid)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found or already finished",
        )
    await session.commit()

    get_metrics().record_job_finished(job.workflow, job.status)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
