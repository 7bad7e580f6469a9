"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class CreateJobRequest(BaseModel):
    """Request body for submitting a job to any registered workflow."""

    model_config = ConfigDict(populate_by_name=True)

    workflow: str = Field(..., min_length=1, description="Workflow key")
    request: dict[str, Any] = Field(default_factory=dict, description="Opaque job input")
    webhook_url: str | None = Field(
        default=None, alias="webhookUrl", description="Callback target for completion"
    )
    webhook_key: str | None = Field(
        default=None, alias="webhookKey", description="Secret sent in the x-webhook-key header"
    )


class AssetDownloadRequest(BaseModel):
    """Request body for downloading a model or LoRA."""

    kind: Literal["model", "lora"]
    url: str = Field(..., min_length=1)


class CreateJobResponse(BaseModel):
    """Response body after submitting a job."""

    uuid: UUID


class JobSummary(BaseModel):
    """Short job listing entry."""

    uuid: UUID
    job_status: str
    progress: float


class JobResponse(BaseModel):
    """Full job details response."""

    uuid: UUID
    workflow: str
    job_status: str
    progress: float
    images: list[Any]
    info: Any = None
    result: dict[str, Any] | None = None
    error: str | None = None
    retry_count: int
    ready_at: datetime
    created_at: datetime
    completed_at: datetime | None = None


class StaleLeaseSummary(BaseModel):
    """Leased job whose worker has not written to it recently."""

    uuid: UUID
    workflow: str
    job_status: str
    lease_owner: str
    progress: float
    updated_at: datetime | None


class AssetImageResponse(BaseModel):
    """Example image published with an asset."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    url: str
    is_nsfw: bool
    width: int | None = None
    height: int | None = None
    meta: dict[str, Any] | None = None


class AssetResponse(BaseModel):
    """Asset catalogue entry."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    kind: str
    name: str | None = None
    source_url: str
    example_prompt: str | None = None
    min: float = Field(validation_alias="min_weight")
    max: float = Field(validation_alias="max_weight")
    local_path: str | None = None
    images: list[AssetImageResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class FailureSummary(BaseModel):
    """Terminal failure listing entry."""

    uuid: UUID
    workflow: str
    error: str | None
    retry_count: int
    completed_at: datetime | None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    timestamp: datetime

