from __future__ import annotations

from typing import Any, List, Optional, Protocol

import httpx

from flowkernel.logging import get_logger
from flowkernel.service.errors import CollaboratorError

logger = get_logger(__name__)


class CompletionService(Protocol):
    """Interface for model completion backends used by ``llm`` nodes.

    Implementations may define ``complete`` as a plain or ``async`` method.
    """

    def complete(
        self,
        prompt: str,
        model_id: str,
        temperature: float,
        max_tokens: int,
        *,
        system_prompt: Optional[str] = None,
    ) -> Any: ...


class OpenAICompatibleCompletionService:
    """Chat completions over any OpenAI-compatible HTTP endpoint."""

    def __init__(
        self,
        *,
        api_key: Optional[str],
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                headers={"Authorization": f"Bearer {self.api_key}"},
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def complete(
        self,
        prompt: str,
        model_id: str,
        temperature: float,
        max_tokens: int,
        *,
        system_prompt: Optional[str] = None,
    ) -> dict:
        if not self.is_configured:
            raise CollaboratorError("completion service has no API key configured")

        messages: List[dict] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        payload = {
            "model": model_id,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        client = await self._get_client()
        try:
            response = await client.post(f"{self.base_url}/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "completion_api_error",
                status_code=e.response.status_code,
                model=model_id,
                error=str(e),
            )
            raise CollaboratorError(
                f"Completion failed: {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            logger.error("completion_timeout", model=model_id, error=str(e))
            raise CollaboratorError("Completion timed out") from e
        except httpx.HTTPError as e:
            logger.error(
                "completion_connect_error", api_base=self.base_url, error=str(e)
            )
            raise CollaboratorError("Failed to connect to completion service") from e

        choices = data.get("choices") or []
        first_choice = next(iter(choices), None)
        if not first_choice:
            logger.warning("completion_no_choices", model=model_id)
            text = ""
        else:
            text = (first_choice.get("message") or {}).get("content") or ""
        usage = data.get("usage") or {}
        return {
            "text": text,
            "usage": {
                "prompt_tokens": usage.get("prompt_tokens", 0),
                "completion_tokens": usage.get("completion_tokens", 0),
                "total_tokens": usage.get("total_tokens", 0),
            },
            "model": data.get("model", model_id),
        }


class StubCompletionService:
    """Deterministic completions for tests and offline runs.

    Replies with ``response`` when given, otherwise echoes the prompt. Every
    call is recorded in ``calls``.
    """

    def __init__(self, response: Optional[str] = None) -> None:
        self.response = response
        self.calls: List[dict] = []

    def complete(
        self,
        prompt: str,
        model_id: str,
        temperature: float,
        max_tokens: int,
        *,
        system_prompt: Optional[str] = None,
    ) -> dict:
        self.calls.append(
            {
                "prompt": prompt,
                "model_id": model_id,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "system_prompt": system_prompt,
            }
        )
        text = self.response if self.response is not None else f"[stub:{model_id}] {prompt}"
        prompt_tokens = len(prompt.split())
        completion_tokens = min(max_tokens, len(text.split()))
        return {
            "text": text,
            "usage": {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
            "model": model_id,
        }
