"""Memory search handler."""

from typing import Any, Dict, List, Optional

from core.exceptions import HandlerError
from handlers.base_handler import BaseHandler, HandlerResult, StepContext
from integrations.memory_search import (
    MemorySearchError,
    MemorySearchService,
    get_memory_search_client,
)


class MemorySearchHandler(BaseHandler):
    """Look up related records in the similarity-search service.

    Config:
        query: Query template; falls back to ``resolved_input["query"]``
        top_k: Number of results (default 5)
        collection: Optional collection/namespace
        filters: Optional metadata filters
        min_score: Drop results scoring below this
    """

    handler_type = "memory_search"
    display_name = "Memory Search"
    description = "Find similar records in organizational memory"

    def __init__(self, memory_service: Optional[MemorySearchService] = None):
        self._memory_service = memory_service

    @property
    def memory_service(self) -> MemorySearchService:
        return self._memory_service or get_memory_search_client()

    async def execute(self, resolved_input: Any, context: StepContext) -> HandlerResult:
        query = context.render_config("query")
        if not query and isinstance(resolved_input, dict):
            query = resolved_input.get("query")
        if not query and isinstance(resolved_input, str):
            query = resolved_input
        if not query:
            return HandlerResult(success=False, error="Search query is required", retryable=False)

        top_k = int(context.config.get("top_k", 5))
        collection = context.render_config("collection")
        try:
            results = await self.memory_service.search(
                query=str(query),
                top_k=top_k,
                collection=collection,
                filters=context.render_config("filters"),
            )
        except MemorySearchError as e:
            raise HandlerError(str(e), retryable=e.retryable)

        min_score = context.config.get("min_score")
        if min_score is not None:
            results = [r for r in results if (r.get("score") or 0) >= min_score]

        return HandlerResult(
            success=True,
            output={
                "query": query,
                "collection": collection,
                "results": results[:top_k],
                "count": min(len(results), top_k),
            },
        )

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        top_k = config.get("top_k", 5)
        if not isinstance(top_k, int) or top_k < 1:
            return [f"top_k must be a positive integer, got {top_k!r}"]
        return []

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "query": {"type": "string"},
                "top_k": {"type": "integer", "default": 5},
                "collection": {"type": "string"},
                "filters": {"type": "object"},
                "min_score": {"type": "number"},
            },
        }


# Export for handler registry
MEMORY_HANDLER_TYPES = {
    "memory_search": MemorySearchHandler,
}
