"""
CivitAI API client and URL helpers.
"""

import logging
import os
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, quote, urlparse

import httpx

from renderqueue.exceptions import BackendError, ProcessorError

logger = logging.getLogger(__name__)

DownloadProgress = Callable[[float], Awaitable[None]]


def is_air_tag(source: str | None) -> bool:
    """AIR tags (``urn:air:...``) must be resolved to URLs before queueing."""
    return str(source or "").lower().startswith("urn:air:")


def is_civitai_url(source: str | None) -> bool:
    try:
        host = urlparse(str(source or "")).hostname or ""
    except ValueError:
        return False
    return "civitai.com" in host


def extract_version_id(source: str | None) -> str | None:
    """Read ``modelVersionId`` from a CivitAI model URL."""
    try:
        query = parse_qs(urlparse(str(source or "")).query)
    except ValueError:
        return None
    values = query.get("modelVersionId")
    return values[0] if values else None


def unique_path(directory: Path, filename: str) -> Path:
    """First free path for ``filename`` in ``directory``, suffixed " (n)" on clashes."""
    candidate = directory / filename
    stem, suffix = os.path.splitext(filename)
    counter = 1
    while candidate.exists():
        candidate = directory / f"{stem} ({counter}){suffix}"
        counter += 1
    return candidate


class CivitaiClient:
    """Fetches model-version metadata and downloads files from CivitAI."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        endpoint: str | None,
        token: str | None,
        timeout: float = 60.0,
    ):
        self._http = http
        self._endpoint = (endpoint or "").rstrip("/")
        self._token = token or ""
        self._timeout = timeout

    def _auth_headers(self) -> dict[str, str]:
        if not self._endpoint:
            raise ProcessorError("CIVIT_AI_ENDPOINT not configured")
        if not self._token:
            raise ProcessorError("CIVIT_AI_TOKEN not configured")
        return {"authorization": f"Bearer {self._token}"}

    async def get_model_version(self, version_id: str) -> dict[str, Any]:
        headers = self._auth_headers()
        url = f"{self._endpoint}/model-versions/{quote(version_id)}"
        logger.debug("Fetching CivitAI version metadata", extra={"url": url})

        response = await self._http.get(url, headers=headers, timeout=self._timeout)
        if not response.is_success:
            raise BackendError(
                f"CivitAI fetch failed: {response.status_code}",
                status_code=response.status_code,
                body=response.text[:300],
            )
        return response.json()

    async def download(
        self,
        url: str,
        destination: Path,
        on_progress: DownloadProgress | None = None,
        authenticated: bool = True,
    ) -> Path:
        """
        Stream ``url`` into ``destination``.

        The body is written to a ``.part`` file that is renamed into place
        only after the last chunk; a failed download leaves nothing behind.
        """
        headers = self._auth_headers() if authenticated else {}
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + ".part")

        try:
            async with self._http.stream(
                "GET", url, headers=headers, timeout=self._timeout, follow_redirects=True
            ) as response:
                if not response.is_success:
                    raise BackendError(
                        f"Download failed: {response.status_code}",
                        status_code=response.status_code,
                    )
                total = int(response.headers.get("content-length") or 0)
                received = 0
                with open(partial, "wb") as out:
                    async for chunk in response.aiter_bytes():
                        out.write(chunk)
                        received += len(chunk)
                        if on_progress is not None and total > 0:
                            await on_progress(min(1.0, received / total))
            partial.replace(destination)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise

        if on_progress is not None:
            await on_progress(1.0)
        return destination
