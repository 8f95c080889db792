"""HTTP client for the OpenAI Responses and Embeddings APIs."""

import json
from typing import Any

import httpx

from app.providers.base import ProviderError


class OpenAIHTTPProvider:
    """Provider bound to one API key, calling ``/v1/responses`` and ``/v1/embeddings``."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com",
        timeout_s: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_s
        self._transport = transport

    async def create_response(self, body: dict[str, Any]) -> dict[str, Any]:
        return await self._post("/v1/responses", body)

    async def create_embeddings(self, model: str, inputs: list[str]) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "input": inputs,
        }
        return await self._post("/v1/embeddings", body)

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.post(url, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProviderError(
                status_code=504,
                code="upstream_timeout",
                message=f"Provider request timed out: {exc}",
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(
                status_code=502,
                code="upstream_connection_error",
                message=f"Cannot connect to provider: {exc}",
            ) from exc

        payload = self._decode_payload(resp)
        if resp.status_code >= 300:
            raise ProviderError(
                status_code=resp.status_code,
                code=f"openai_{resp.status_code}",
                message=f"Provider returned {resp.status_code}",
                payload=payload,
            )
        if not isinstance(payload, dict):
            raise ProviderError(
                status_code=resp.status_code,
                code="upstream_malformed_payload",
                message="Provider returned a non-object JSON payload",
                payload=payload,
            )
        return payload

    @staticmethod
    def _decode_payload(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return {"raw": resp.text[:2000]}


class OpenAIProviderFactory:
    def __init__(
        self,
        base_url: str = "https://api.openai.com",
        timeout_s: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url
        self._timeout_s = timeout_s
        self._transport = transport

    def __call__(self, api_key: str) -> OpenAIHTTPProvider:
        return OpenAIHTTPProvider(
            api_key=api_key,
            base_url=self._base_url,
            timeout_s=self._timeout_s,
            transport=self._transport,
        )
