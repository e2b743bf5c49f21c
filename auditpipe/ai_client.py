"""AI completion service boundary.

The pipeline only needs two things from a model backend: whether it is
reachable, and a text completion for a structured prompt. HttpCompletionService
speaks the OpenAI-compatible chat completions API over httpx.
"""

import json
import os
from typing import Any, Protocol, runtime_checkable

import httpx

from auditpipe.errors import ConfigError, ExecutionError
from auditpipe.utils.constants import ENV_AI_API_KEY
from auditpipe.utils.logging import logger

SYSTEM_PROMPT = (
    "You review static-analysis findings for a code base. "
    "Answer with a single JSON object and nothing else."
)


@runtime_checkable
class AICompletionService(Protocol):
    model: str

    async def is_available(self) -> bool: ...

    async def complete(self, prompt: dict[str, Any]) -> str: ...


class HttpCompletionService:
    """OpenAI-compatible /chat/completions client."""

    def __init__(
        self,
        base_url: str,
        model: str = "gpt-4o-mini",
        api_key: str | None = None,
        timeout: float = 30.0,
        max_tokens: int = 1024,
        temperature: float = 0.2,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not base_url:
            raise ConfigError("AI base_url is not configured")
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._transport = transport

    @classmethod
    def from_runtime(cls, cfg: dict[str, Any], **kwargs) -> "HttpCompletionService":
        section = cfg.get("ai", {})
        return cls(
            base_url=section.get("base_url", ""),
            model=section.get("model", "gpt-4o-mini"),
            api_key=os.environ.get(ENV_AI_API_KEY),
            timeout=float(section.get("timeout_seconds", 30.0)),
            max_tokens=int(section.get("max_tokens", 1024)),
            temperature=float(section.get("temperature", 0.2)),
            **kwargs,
        )

    def _client(self) -> httpx.AsyncClient:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def is_available(self) -> bool:
        """Probe GET /models. Any transport error or non-2xx means unavailable."""
        try:
            async with self._client() as client:
                resp = await client.get("/models")
        except httpx.HTTPError as e:
            logger.warning(f"AI service at {self.base_url} unreachable: {type(e).__name__}: {e}")
            return False
        if resp.is_success:
            return True
        logger.warning(f"AI service at {self.base_url} answered {resp.status_code} to /models")
        return False

    async def complete(self, prompt: dict[str, Any]) -> str:
        """Send one prompt and return the assistant message text.

        Raises:
            ExecutionError: transport failure, non-2xx status, or malformed body
        """
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": json.dumps(prompt, ensure_ascii=False)},
            ],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "response_format": {"type": "json_object"},
        }
        try:
            async with self._client() as client:
                resp = await client.post("/chat/completions", json=body)
        except httpx.HTTPError as e:
            raise ExecutionError(f"AI request failed: {type(e).__name__}: {e}") from e

        if not resp.is_success:
            raise ExecutionError(f"AI service returned HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExecutionError(f"AI response has unexpected shape: {e}") from e
        if not isinstance(content, str):
            raise ExecutionError("AI response content is not text")
        return content
