"""
Automatic1111 web UI API client.
"""

import logging
from typing import Any

import httpx

from renderqueue.exceptions import BackendError, ProcessorError

logger = logging.getLogger(__name__)


class Automatic1111Client:
    """Thin async wrapper around the ``/sdapi/v1`` endpoints."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str | None,
        timeout: float = 60.0,
    ):
        self._http = http
        self._base_url = (base_url or "").rstrip("/")
        self._timeout = timeout

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        if not self._base_url:
            raise ProcessorError("AUTOMATIC1111_API_BASE is not configured")

        response = await self._http.request(
            method,
            self._base_url + path,
            json=json,
            params=params,
            headers={"accept": "application/json"},
            timeout=timeout or self._timeout,
        )
        if not response.is_success:
            raise BackendError(
                f"Automatic1111 API error {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        try:
            return response.json()
        except ValueError:
            return response.text

    async def txt2img(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/sdapi/v1/txt2img", json=payload)

    async def img2img(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/sdapi/v1/img2img", json=payload)

    async def progress(self, skip_current_image: bool = True) -> dict[str, Any]:
        """Progress of the generation currently running on the backend."""
        return await self._request(
            "GET",
            "/sdapi/v1/progress",
            params={"skip_current_image": str(skip_current_image).lower()},
            timeout=10.0,
        )

    async def refresh_loras(self) -> None:
        await self._request("POST", "/sdapi/v1/refresh-loras")

    async def refresh_checkpoints(self) -> None:
        await self._request("POST", "/sdapi/v1/refresh-checkpoints")
