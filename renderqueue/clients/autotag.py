"""
Client for the booru auto-tagging service.
"""

import base64
import logging

import httpx

from renderqueue.exceptions import BackendError

logger = logging.getLogger(__name__)


class AutoTagClient:
    """Posts an image to the tagger and returns tag confidences."""

    def __init__(self, http: httpx.AsyncClient, endpoint: str, timeout: float = 60.0):
        self._http = http
        self._endpoint = endpoint
        self._timeout = timeout

    async def evaluate(self, image_b64: str) -> dict[str, float]:
        """
        Tag one base64 encoded PNG.

        Returns:
            Mapping of tag to confidence for the first evaluated file.
        """
        files = {"file": ("image.png", base64.b64decode(image_b64), "image/png")}
        response = await self._http.post(
            self._endpoint,
            files=files,
            data={"format": "json"},
            timeout=self._timeout,
        )
        if not response.is_success:
            raise BackendError(
                f"Auto-tag API failed: {response.status_code}",
                status_code=response.status_code,
            )
        evaluated = response.json()
        if not evaluated:
            return {}
        return evaluated[0].get("tags") or {}
