from __future__ import annotations

from typing import Any, List, Optional, Protocol

import httpx

from flowkernel.logging import get_logger
from flowkernel.service.errors import CollaboratorError

logger = get_logger(__name__)


class WebSearchService(Protocol):
    """Interface for web search backends; ``search`` may be sync or async."""

    def search(self, query: str, result_count: int, provider: Optional[str] = None) -> Any: ...


class BraveSearchService:
    """Brave Search web results API.

    Results are normalized to ``{title, url, snippet, position}`` with
    positions starting at 1.
    """

    provider = "brave"

    def __init__(
        self,
        *,
        api_key: Optional[str],
        base_url: str = "https://api.search.brave.com/res/v1",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=5.0),
                headers={
                    "Accept": "application/json",
                    "X-Subscription-Token": self.api_key or "",
                },
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def search(
        self, query: str, result_count: int, provider: Optional[str] = None
    ) -> dict:
        if provider and provider != self.provider:
            logger.warning(
                "web_search_provider_mismatch", requested=provider, using=self.provider
            )
        if not self.api_key:
            raise CollaboratorError("web search has no API key configured")

        client = await self._get_client()
        try:
            response = await client.get(
                f"{self.base_url}/web/search",
                params={"q": query, "count": result_count},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "web_search_api_error",
                status_code=e.response.status_code,
                error=str(e),
            )
            raise CollaboratorError(
                f"Web search failed: {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            logger.error("web_search_timeout", error=str(e))
            raise CollaboratorError("Web search timed out") from e
        except httpx.HTTPError as e:
            logger.error("web_search_connect_error", api_base=self.base_url, error=str(e))
            raise CollaboratorError("Failed to connect to web search service") from e

        raw_results = ((data.get("web") or {}).get("results")) or []
        results = [
            {
                "title": item.get("title", ""),
                "url": item.get("url", ""),
                "snippet": item.get("description", ""),
                "position": position,
            }
            for position, item in enumerate(raw_results[:result_count], start=1)
        ]
        return {"results": results, "totalResults": len(raw_results)}


class StubWebSearchService:
    """Deterministic search hits derived from the query text."""

    provider = "stub"

    _ANGLES = (
        ("Overview", "Comprehensive information about {query}, its definition and applications."),
        ("Research", "Recent studies and findings related to {query}."),
        ("Guide", "Step-by-step guide on implementing {query} with practical examples."),
        ("Comparison", "Comparative analysis of {query} against alternative approaches."),
    )

    def __init__(self) -> None:
        self.calls: List[dict] = []

    def search(self, query: str, result_count: int, provider: Optional[str] = None) -> dict:
        self.calls.append({"query": query, "result_count": result_count, "provider": provider})
        slug = "-".join(query.lower().split()) or "query"
        results = [
            {
                "title": f"{title}: {query}",
                "url": f"https://example.com/{slug}/{title.lower()}",
                "snippet": snippet.format(query=query),
                "position": position,
            }
            for position, (title, snippet) in enumerate(
                self._ANGLES[: max(result_count, 0)], start=1
            )
        ]
        return {"results": results, "totalResults": len(results)}
