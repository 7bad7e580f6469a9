"""
Webhook confirmation processor.

Runs in the ``ready-for-webhook`` holding state. One delivery is attempted
per invocation; only a 2xx answer lets the job complete. Anything else is a
recoverable failure and the worker puts the job back into the holding state
with backoff.
"""

import logging
from typing import Any

import httpx

from renderqueue.constants import (
    SPAN_DELIVER_WEBHOOK,
    WEBHOOK_KEY_HEADER,
    Capability,
    JobStatus,
)
from renderqueue.exceptions import ProcessorError
from renderqueue.observability.metrics import get_metrics
from renderqueue.observability.tracing import get_tracer
from renderqueue.processors.registry import register_processor
from renderqueue.types.job import ProcessorContext

logger = logging.getLogger(__name__)


def build_payload(context: ProcessorContext) -> dict[str, Any]:
    """Body posted to the job's webhook: the finished job as the client sees it."""
    result = context.result
    return {
        "uuid": str(context.job_uuid),
        "job_status": str(JobStatus.COMPLETED),
        "progress": 1,
        "images": result.get("images"),
        "seed": result.get("seed"),
        "info": result.get("info"),
        "tags": result.get("tags"),
        "result": result,
    }


@register_processor(Capability.WEBHOOK)
async def process_webhook(context: ProcessorContext) -> dict[str, Any]:
    """
    Deliver the job's result to its webhook.

    Raises:
        ProcessorError: If the receiver does not answer 2xx or cannot be reached.
    """
    job = context.job
    if not job.webhook_url:
        logger.debug("No webhook configured", extra={"job_uuid": str(job.uuid)})
        return {}

    headers = {"content-type": "application/json"}
    if job.webhook_key:
        headers[WEBHOOK_KEY_HEADER] = job.webhook_key

    metrics = get_metrics()
    with get_tracer().start_as_current_span(SPAN_DELIVER_WEBHOOK) as span:
        span.set_attribute("job_uuid", str(job.uuid))
        try:
            response = await context.http.post(
                job.webhook_url,
                json=build_payload(context),
                headers=headers,
                timeout=context.settings.webhook_timeout_seconds,
            )
        except httpx.HTTPError as e:
            metrics.record_webhook_delivery("transport_error")
            raise ProcessorError(f"Webhook delivery failed: {e}") from e

        span.set_attribute("http.status_code", response.status_code)

    if not response.is_success:
        metrics.record_webhook_delivery("rejected")
        raise ProcessorError(f"Webhook answered {response.status_code}")

    metrics.record_webhook_delivery("delivered")
    logger.info(
        "Webhook delivered",
        extra={"job_uuid": str(job.uuid), "status_code": response.status_code}
    )
    return {}
