"""Memory search collaborator for memory_search steps.

The default implementation calls a similarity-search service over HTTP:

    POST {MEMORY_SEARCH_URL}/search
    {"query": ..., "top_k": ..., "collection": ..., "filters": {...}}
    -> {"results": [{"id": ..., "content": ..., "score": ..., "metadata": {...}}]}
"""

from typing import Any, Dict, List, Optional, Protocol

import httpx
import structlog

from app.config import Settings, get_settings

logger = structlog.get_logger(__name__)


class MemorySearchError(Exception):
    """The search service could not answer."""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class MemorySearchService(Protocol):
    async def search(
        self,
        query: str,
        top_k: int = 5,
        collection: Optional[str] = None,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]: ...


class MemorySearchClient:
    """HTTP client for the similarity-search service."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.base_url = (base_url or self.settings.MEMORY_SEARCH_URL).rstrip("/")
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    def _headers(self) -> Dict[str, str]:
        headers = {"content-type": "application/json"}
        if self.settings.MEMORY_SEARCH_API_KEY:
            headers["Authorization"] = f"Bearer {self.settings.MEMORY_SEARCH_API_KEY}"
        return headers

    async def search(
        self,
        query: str,
        top_k: int = 5,
        collection: Optional[str] = None,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        if not self.is_configured:
            raise MemorySearchError("Memory search URL not configured", retryable=False)

        payload: Dict[str, Any] = {"query": query, "top_k": top_k}
        if collection:
            payload["collection"] = collection
        if filters:
            payload["filters"] = filters

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.settings.HTTP_STEP_TIMEOUT,
                transport=self._transport,
            ) as client:
                response = await client.post("/search", json=payload)
        except httpx.HTTPError as e:
            raise MemorySearchError(f"Memory search request failed: {e}")

        if response.status_code >= 500 or response.status_code == 429:
            raise MemorySearchError(f"Memory search unavailable: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise MemorySearchError(
                f"Memory search rejected query: HTTP {response.status_code}",
                retryable=False,
            )

        results = response.json().get("results", [])
        logger.debug("Memory search completed", collection=collection, hits=len(results))
        return results


_memory_client: Optional[MemorySearchClient] = None


def get_memory_search_client() -> MemorySearchClient:
    """Get or create the singleton memory search client."""
    global _memory_client
    if _memory_client is None:
        _memory_client = MemorySearchClient()
    return _memory_client
