"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Well-known job statuses.

    Status is a free-form string: workflows introduce their own waiting
    states (``ready-for-*``) and every capability name doubles as the
    "currently active" marker. Only the members below carry meaning for
    the store itself.
    """

    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELED = "canceled"


class Capability(StrEnum):
    """
    Closed set of processor capabilities a workflow step can invoke.

    The value is also written to the job status while the step runs.
    """

    GENERATE = "generating"
    UPLOAD = "uploading"
    WEBHOOK = "webhook"
    DOWNLOAD_ASSET = "downloading"
    TAG = "tagging"
    NOOP = "noop"


TERMINAL_STATUSES: frozenset[str] = frozenset(
    [JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELED]
)

# Statuses matching this prefix (or equal to "pending") are waiting to be leased
READY_STATUS_PREFIX = "ready-for-"

# Holding state entered before webhook confirmation
WEBHOOK_HOLD_STATUS = "ready-for-webhook"
WEBHOOK_HOLD_PROGRESS = 0.9
WEBHOOK_KEY_HEADER = "x-webhook-key"

# Backoff base: ready_at = last_retry + 2^retry_count minutes
BACKOFF_BASE_MINUTES = 1

# Retry counts above this exponent all wait 2^20 minutes (about two years)
BACKOFF_MAX_EXPONENT = 20

# Generation progress window reported while the backend is rendering
GENERATION_PROGRESS_START = 0.1
GENERATION_PROGRESS_END = 0.9

# Asset kinds accepted for download; models go to models_dir, loras to loras_dir
ASSET_KINDS: tuple[str, ...] = ("model", "lora")

# Default values
DEFAULT_FAILURE_LISTING_LIMIT = 20

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_READY_JOBS = "job_queue_ready_jobs"
METRIC_JOBS_SUBMITTED = "jobs_submitted_total"
METRIC_JOBS_FINISHED = "jobs_finished_total"
METRIC_STEP_DURATION = "job_step_duration_seconds"
METRIC_LEASE_ACQUIRED = "lease_acquired_total"
METRIC_WEBHOOK_DELIVERIES = "webhook_deliveries_total"
METRIC_API_REQUESTS = "api_requests_total"
METRIC_API_LATENCY = "api_request_latency_seconds"

# Trace span names
SPAN_ACQUIRE_LEASE = "acquire_lease"
SPAN_EXECUTE_STEP = "execute_step"
SPAN_DELIVER_WEBHOOK = "deliver_webhook"
