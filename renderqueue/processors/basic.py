"""
Processors that do no external work.
"""

import logging
from typing import Any

from renderqueue.constants import Capability
from renderqueue.processors.registry import register_processor
from renderqueue.types.job import ProcessorContext

logger = logging.getLogger(__name__)


@register_processor(Capability.NOOP)
async def process_noop(context: ProcessorContext) -> dict[str, Any]:
    """Does nothing; used by the noop workflow to exercise the queue."""
    logger.info("Noop job executing", extra={"job_uuid": str(context.job_uuid)})
    return {}


@register_processor(Capability.UPLOAD)
async def process_upload(context: ProcessorContext) -> dict[str, Any]:
    """
    Upload step of the image workflows.

    Images are delivered inline in the result and the webhook payload, so
    there is no separate storage target to push to yet.
    """
    logger.info(
        "Upload step passthrough",
        extra={"job_uuid": str(context.job_uuid), "workflow": context.workflow}
    )
    return {}
