"""
Auto-tagging processor.

Tags are a nice-to-have: a tagger outage records empty tags instead of
failing the job.
"""

import logging
from typing import Any

import httpx

from renderqueue.clients.autotag import AutoTagClient
from renderqueue.constants import Capability
from renderqueue.exceptions import ProcessorError
from renderqueue.processors.registry import register_processor
from renderqueue.types.job import ProcessorContext

logger = logging.getLogger(__name__)


@register_processor(Capability.TAG)
async def process_tagging(context: ProcessorContext) -> dict[str, Any]:
    """Tag the first generated image and store the tags in the result."""
    images = context.result.get("images") or []
    if not images:
        logger.warning("No images to tag", extra={"job_uuid": str(context.job_uuid)})
        return {"tags": {}}

    client = AutoTagClient(
        context.http,
        context.settings.autotag_endpoint,
        timeout=context.settings.http_timeout_seconds,
    )
    try:
        tags = await client.evaluate(images[0])
    except (httpx.HTTPError, ProcessorError, ValueError) as e:
        logger.error(
            "Auto-tagging failed",
            extra={"job_uuid": str(context.job_uuid), "error": str(e)}
        )
        return {"tags": {}}

    logger.debug(
        "Auto-tagging completed",
        extra={"job_uuid": str(context.job_uuid), "tag_count": len(tags)}
    )
    return {"tags": tags}
