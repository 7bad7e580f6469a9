"""
Image generation processor backed by the Automatic1111 API.
"""

import asyncio
import json
import logging
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from typing import Any

from renderqueue.clients.automatic1111 import Automatic1111Client
from renderqueue.constants import (
    GENERATION_PROGRESS_END,
    GENERATION_PROGRESS_START,
    Capability,
)
from renderqueue.processors.registry import register_processor
from renderqueue.types.job import ProcessorContext, ProgressReporter

logger = logging.getLogger(__name__)

MAX_SEED = 0xFFFFFFFF


def generate_seed() -> int:
    """Random unsigned 32-bit seed."""
    return secrets.randbelow(MAX_SEED)


def scale_progress(raw: float) -> float:
    """Map backend progress (0..1) into the generation window of the job's progress."""
    span = GENERATION_PROGRESS_END - GENERATION_PROGRESS_START
    scaled = GENERATION_PROGRESS_START + float(raw) * span
    return max(GENERATION_PROGRESS_START, min(GENERATION_PROGRESS_END, scaled))


def normalize_info(info: Any) -> str | None:
    if info is None or info == "":
        return None
    if isinstance(info, str):
        return info
    return json.dumps(info)


@asynccontextmanager
async def sample_progress(
    client: Automatic1111Client,
    report: ProgressReporter,
    interval: float,
) -> AsyncIterator[None]:
    """
    Poll backend progress in the background for the duration of the block.

    The sampling task is cancelled and awaited on every exit path.
    """
    async def _sample() -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                state = await client.progress()
                await report(scale_progress(state.get("progress") or 0))
            except Exception as e:
                logger.debug("Progress sample failed", extra={"error": str(e)})

    task = asyncio.create_task(_sample())
    try:
        yield
    finally:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


@register_processor(Capability.GENERATE)
async def process_generation(context: ProcessorContext) -> dict[str, Any]:
    """
    Render images for a txt2img or img2img job.

    A missing or negative seed is replaced by a random one so the result
    always records the seed that produced it.

    Returns:
        ``images`` (base64 strings), ``seed`` and ``info``.
    """
    settings = context.settings
    client = Automatic1111Client(
        context.http,
        settings.automatic1111_api_base,
        timeout=settings.http_timeout_seconds,
    )

    payload = context.request
    seed = payload.get("seed")
    if not isinstance(seed, int) or seed < 0:
        payload["seed"] = generate_seed()

    await context.report_progress(GENERATION_PROGRESS_START)
    logger.info(
        "Generating images",
        extra={
            "job_uuid": str(context.job_uuid),
            "workflow": context.workflow,
            "seed": payload["seed"],
        }
    )

    async with sample_progress(
        client, context.report_progress, settings.worker_progress_interval_seconds
    ):
        if context.workflow == "img2img":
            response = await client.img2img(payload)
        else:
            response = await client.txt2img(payload)

    response = response if isinstance(response, dict) else {}
    images = response.get("images")

    await context.report_progress(GENERATION_PROGRESS_END)
    return {
        "images": images if isinstance(images, list) else [],
        "seed": payload["seed"],
        "info": normalize_info(response.get("info")),
    }
