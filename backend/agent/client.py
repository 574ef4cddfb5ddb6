# agent/client.py — OpenAI-compatible chat completions over httpx
import os
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

import httpx
from fastapi import Request

from errors import ModelClientError, ModelRateLimited

logger = logging.getLogger("taskflow.agent.client")

OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
AGENT_MODEL = os.getenv("AGENT_MODEL", "gpt-4o")
AGENT_TIMEOUT_SECONDS = float(os.getenv("AGENT_TIMEOUT_SECONDS", "60"))


@dataclass
class ModelResponse:
    message: Dict[str, Any]
    usage: Dict[str, int] = field(default_factory=dict)

    @property
    def tool_calls(self) -> List[Dict[str, Any]]:
        return self.message.get("tool_calls") or []

    @property
    def content(self) -> Optional[str]:
        return self.message.get("content")


class ModelClient:
    """Thin async client for /chat/completions with function calling.

    The API key is checked on first use so the service can start without one.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = OPENAI_BASE_URL,
        model: str = AGENT_MODEL,
        organization: Optional[str] = None,
        timeout: float = AGENT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.organization = organization
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_env(cls) -> "ModelClient":
        return cls(
            api_key=os.getenv("OPENAI_API_KEY"),
            organization=os.getenv("OPENAI_ORG_ID"),
        )

    def _http(self) -> httpx.AsyncClient:
        if not self.api_key:
            raise ModelClientError(
                "OPENAI_API_KEY is missing. Set it in the environment to enable agents."
            )
        if self._client is None:
            headers = {
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            }
            if self.organization:
                headers["OpenAI-Organization"] = self.organization
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> ModelResponse:
        client = self._http()
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "response_format": {"type": "json_object"},
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        try:
            resp = await client.post("/chat/completions", json=payload)
        except httpx.TimeoutException:
            raise ModelClientError("Model request timed out")
        except httpx.HTTPError as e:
            logger.warning(f"Model transport error: {e}")
            raise ModelClientError("Model service is unreachable")

        if resp.status_code == 429:
            raise ModelRateLimited("Model rate limit exceeded, please retry later")
        if resp.status_code >= 400:
            logger.warning(f"Model HTTP {resp.status_code}: {resp.text[:500]}")
            raise ModelClientError(f"Model request failed with HTTP {resp.status_code}")

        try:
            data = resp.json()
            message = data["choices"][0]["message"]
        except (ValueError, KeyError, IndexError, TypeError):
            raise ModelClientError("Malformed response from model")

        usage = data.get("usage") or {}
        return ModelResponse(
            message=message,
            usage={
                "prompt_tokens": int(usage.get("prompt_tokens", 0)),
                "completion_tokens": int(usage.get("completion_tokens", 0)),
                "total_tokens": int(usage.get("total_tokens", 0)),
            },
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def get_model_client(request: Request) -> ModelClient:
    """FastAPI dependency; the client is built once in the app lifespan."""
    client = getattr(request.app.state, "model_client", None)
    if client is None:
        client = ModelClient.from_env()
        request.app.state.model_client = client
    return client
