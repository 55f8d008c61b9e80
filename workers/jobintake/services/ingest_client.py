from __future__ import annotations

from typing import Any

import httpx

from jobintake.core.contracts import IngestRequest


class IngestApiClient:
    """``Ingest`` implementation that forwards kept URLs to the job-tracking API."""

    def __init__(self, base_url: str, api_key: str | None = None, timeout_seconds: float = 60.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.headers = {"X-API-Key": api_key} if api_key else {}

    async def __call__(self, request: IngestRequest) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.post(
                f"{self.base_url}/ingest",
                json=request.as_payload(),
                headers=self.headers,
            )
            response.raise_for_status()
            payload = response.json()
            return payload if isinstance(payload, dict) else {}
