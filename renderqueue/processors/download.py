"""
Asset download processor.

Downloads a model or LoRA file referenced by a CivitAI model-version URL
into the configured directory, records it in the asset catalogue and asks
Automatic1111 to rescan it.
"""

import logging
from pathlib import Path
from typing import Any

import httpx

from renderqueue.clients.automatic1111 import Automatic1111Client
from renderqueue.clients.civitai import (
    CivitaiClient,
    extract_version_id,
    is_air_tag,
    is_civitai_url,
    unique_path,
)
from renderqueue.constants import ASSET_KINDS, Capability
from renderqueue.db.repository import AssetRepository
from renderqueue.exceptions import ProcessorError, UnrecoverableError
from renderqueue.processors.registry import register_processor
from renderqueue.types.job import ProcessorContext

logger = logging.getLogger(__name__)


def _choose_file(version: dict[str, Any], version_id: str) -> tuple[str, str]:
    """Pick the primary file of a model version; returns (filename, download url)."""
    files = version.get("files") or []
    if not files:
        raise UnrecoverableError("No downloadable files found for this CivitAI version")

    primary = next((f for f in files if f.get("primary")), files[0])
    filename = primary.get("name") or f"civitai_{version_id}"
    download_url = primary.get("downloadUrl") or version.get("downloadUrl")
    if not download_url:
        raise UnrecoverableError("No downloadUrl provided by CivitAI")
    return filename, download_url


async def _save_preview(
    civitai: CivitaiClient,
    version: dict[str, Any],
    destination: Path,
) -> None:
    images = version.get("images") or []
    if not images or not images[0].get("url"):
        return
    preview = destination.with_name(f"{destination.stem}.preview.jpeg")
    try:
        await civitai.download(images[0]["url"], preview, authenticated=False)
    except (httpx.HTTPError, ProcessorError, OSError) as e:
        logger.warning("Failed to save preview image", extra={"error": str(e)})


def _is_nsfw(image: dict[str, Any]) -> bool:
    # Older API versions send a bool, newer ones a level name such as "None" or "Soft"
    nsfw = image.get("nsfw")
    if isinstance(nsfw, bool):
        return nsfw
    return str(nsfw or "").lower() not in ("", "none", "false")


async def _store_asset(
    context: ProcessorContext,
    version: dict[str, Any],
    kind: str,
    source_url: str,
    destination: Path,
) -> tuple[int, str | None, str | None]:
    """Record the downloaded file and its example images; returns (asset id, name, prompt)."""
    trained_words = version.get("trainedWords") or []
    name = (version.get("model") or {}).get("name") or version.get("name")
    example_prompt = ", ".join(trained_words) or None

    async with context.database.session() as session:
        assets = AssetRepository(session)
        asset = await assets.create(
            kind=kind,
            source_url=source_url,
            name=name,
            example_prompt=example_prompt,
            local_path=str(destination),
        )
        for image in version.get("images") or []:
            if not image.get("url"):
                continue
            await assets.add_image(
                asset.id,
                url=str(image["url"]),
                is_nsfw=_is_nsfw(image),
                width=image.get("width"),
                height=image.get("height"),
                meta=image.get("meta"),
            )
        asset_id = asset.id

    return asset_id, name, example_prompt


async def _refresh_backend(context: ProcessorContext, kind: str) -> None:
    client = Automatic1111Client(
        context.http,
        context.settings.automatic1111_api_base,
        timeout=context.settings.http_timeout_seconds,
    )
    try:
        if kind == "lora":
            await client.refresh_loras()
        else:
            await client.refresh_checkpoints()
    except (httpx.HTTPError, ProcessorError) as e:
        logger.warning(
            "Refresh request failed after asset download",
            extra={"job_uuid": str(context.job_uuid), "error": str(e)}
        )


@register_processor(Capability.DOWNLOAD_ASSET)
async def process_asset_download(context: ProcessorContext) -> dict[str, Any]:
    """
    Download the asset named by the job request.

    The request carries ``kind`` ("model" or "lora") and ``source_url``.

    Raises:
        UnrecoverableError: For AIR tags, non-CivitAI URLs, URLs without a
            model version and versions without a downloadable file.
    """
    request = context.request
    kind = str(request.get("kind") or "model")
    source_url = str(request.get("source_url") or "")
    settings = context.settings

    if is_air_tag(source_url):
        raise UnrecoverableError("AIR tags must be resolved to a URL before download")
    if not is_civitai_url(source_url):
        raise UnrecoverableError("Non CivitAI downloads are not supported at the moment")
    if kind not in ASSET_KINDS:
        raise UnrecoverableError(f"Unknown asset kind: {kind}")

    version_id = extract_version_id(source_url)
    if not version_id:
        raise UnrecoverableError("CivitAI version id not specified")

    civitai = CivitaiClient(
        context.http,
        settings.civitai_endpoint,
        settings.civitai_token,
        timeout=settings.http_timeout_seconds,
    )
    version = await civitai.get_model_version(version_id)
    filename, download_url = _choose_file(version, version_id)

    directory = Path(settings.loras_dir if kind == "lora" else settings.models_dir)
    destination = unique_path(directory, filename)

    logger.info(
        "Downloading asset",
        extra={
            "job_uuid": str(context.job_uuid),
            "kind": kind,
            "destination": str(destination),
        }
    )
    await civitai.download(download_url, destination, on_progress=context.report_progress)
    await _save_preview(civitai, version, destination)
    asset_id, name, example_prompt = await _store_asset(
        context, version, kind, source_url, destination
    )
    await _refresh_backend(context, kind)

    return {
        "asset_id": asset_id,
        "kind": kind,
        "name": name,
        "local_path": str(destination),
        "source_url": source_url,
        "example_prompt": example_prompt,
    }
