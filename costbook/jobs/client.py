"""HTTP client for the remote job functions."""

from __future__ import annotations

from typing import Any

import httpx

from costbook.config import JobsConfig


class FunctionsClient:
    """Invokes named remote functions with ``POST {base_url}/{name}``."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not base_url:
            raise ValueError("FUNCTIONS_URL environment variable not set")

        self.base_url = base_url.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls, config: JobsConfig, transport: httpx.AsyncBaseTransport | None = None
    ) -> FunctionsClient:
        return cls(
            base_url=config.functions_url,
            api_key=config.api_key,
            timeout=config.timeout_seconds,
            transport=transport,
        )

    async def invoke(self, name: str, body: dict[str, Any] | None = None) -> Any:
        """Call function ``name`` and return its decoded JSON response.

        Raises:
            httpx.HTTPError: On transport failure or a non-2xx response
            ValueError: If the response body is not valid JSON
        """
        response = await self.client.post(f"/{name}", json=body or {})
        response.raise_for_status()
        if not response.content:
            return None
        return response.json()

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> FunctionsClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
