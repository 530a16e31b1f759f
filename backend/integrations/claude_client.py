"""
Claude AI Client: generation collaborator for agent_invocation steps.

Talks to the Anthropic Messages API over httpx. Retrying is left to the
engine's retry controller; this client makes exactly one request per call
and reports whether a failure is worth retrying.
"""

import json
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx
import structlog

from app.config import Settings, get_settings

logger = structlog.get_logger(__name__)


# ─── Smart JSON Extractor ──────────────────────────────────────
#
# Claude sometimes wraps JSON in explanation text or markdown fences.

def extract_json(text: str) -> Any:
    """Extract clean JSON from a response that may contain markdown or prose.

    Tries, in order: a direct parse, the first fenced code block, then the
    first bracket-balanced ``{...}`` or ``[...]`` block.

    Raises:
        ValueError: if nothing parses
    """
    if not text or not text.strip():
        raise ValueError("Empty response")

    clean = text.strip()

    try:
        return json.loads(clean)
    except json.JSONDecodeError:
        pass

    fence = re.search(r'```(?:json|JSON)?\s*\n?(.*?)```', clean, re.DOTALL)
    if fence:
        try:
            return json.loads(fence.group(1).strip())
        except json.JSONDecodeError:
            pass

    for opener, closer in [('{', '}'), ('[', ']')]:
        start = clean.find(opener)
        if start == -1:
            continue
        depth = 0
        in_string = False
        escape_next = False
        for i in range(start, len(clean)):
            c = clean[i]
            if escape_next:
                escape_next = False
                continue
            if c == '\\':
                escape_next = True
                continue
            if c == '"':
                in_string = not in_string
                continue
            if in_string:
                continue
            if c == opener:
                depth += 1
            elif c == closer:
                depth -= 1
                if depth == 0:
                    try:
                        return json.loads(clean[start:i + 1])
                    except json.JSONDecodeError:
                        break

    raise ValueError(f"Could not extract JSON from response: {clean[:200]}")


# ─── Collaborator interface ───────────────────────────────────

class GenerationError(Exception):
    """The generation service could not produce a response."""

    def __init__(self, message: str, retryable: bool = True, status_code: Optional[int] = None):
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


@dataclass
class GenerationResult:
    text: str
    model: str
    usage: Dict[str, int] = field(default_factory=dict)
    stop_reason: Optional[str] = None


class GenerationService(Protocol):
    """Anything that turns a prompt into text."""

    @property
    def is_configured(self) -> bool: ...

    async def generate(
        self,
        prompt: str,
        system: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> GenerationResult: ...


# ─── Main Claude Client ───────────────────────────────────────

class ClaudeClient:
    """Claude Messages API client used as the default GenerationService."""

    API_BASE = "https://api.anthropic.com/v1"
    API_VERSION = "2023-06-01"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self._api_key = api_key
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def api_key(self) -> str:
        return self._api_key or self.settings.ANTHROPIC_API_KEY or ""

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.API_BASE,
                headers={
                    "x-api-key": self.api_key,
                    "anthropic-version": self.API_VERSION,
                    "content-type": "application/json",
                },
                timeout=httpx.Timeout(
                    connect=10.0,
                    read=float(self.settings.CLAUDE_TIMEOUT),
                    write=30.0,
                    pool=10.0,
                ),
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the underlying connection pool."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _make_request(
        self,
        messages: List[Dict[str, Any]],
        system: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Dict[str, Any]:
        """POST /messages once and return the decoded body."""
        if not self.is_configured:
            raise GenerationError("Claude API key not configured", retryable=False)

        settings = self.settings
        payload: Dict[str, Any] = {
            "model": model or settings.CLAUDE_MODEL,
            "max_tokens": max_tokens or settings.CLAUDE_MAX_TOKENS,
            "temperature": temperature if temperature is not None else settings.CLAUDE_TEMPERATURE,
            "messages": messages,
        }
        if system:
            payload["system"] = system

        start_time = time.monotonic()
        try:
            response = await self._get_client().post("/messages", json=payload)
        except httpx.TimeoutException:
            raise GenerationError("Claude request timed out")
        except httpx.HTTPError as e:
            raise GenerationError(f"Claude request failed: {e}")

        duration_ms = round((time.monotonic() - start_time) * 1000, 2)

        if response.status_code == 200:
            data = response.json()
            logger.info(
                "Claude request completed",
                model=payload["model"],
                input_tokens=data.get("usage", {}).get("input_tokens", 0),
                output_tokens=data.get("usage", {}).get("output_tokens", 0),
                duration_ms=duration_ms,
            )
            return data

        body = response.text[:200]
        if response.status_code in (429, 529) or response.status_code >= 500:
            logger.warning("Claude API unavailable", status=response.status_code, duration_ms=duration_ms)
            raise GenerationError(
                f"API error {response.status_code}: {body}",
                retryable=True,
                status_code=response.status_code,
            )

        logger.error("Claude API error", status=response.status_code, body=body)
        raise GenerationError(
            f"API error {response.status_code}: {body}",
            retryable=False,
            status_code=response.status_code,
        )

    async def generate(
        self,
        prompt: str,
        system: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> GenerationResult:
        """Send a single-turn prompt and return the concatenated text blocks."""
        response = await self._make_request(
            messages=[{"role": "user", "content": prompt}],
            system=system or self.settings.CLAUDE_SYSTEM_PROMPT,
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
        )

        text = ""
        for block in response.get("content", []):
            if block.get("type") == "text":
                text += block.get("text", "")

        return GenerationResult(
            text=text,
            model=response.get("model", model or self.settings.CLAUDE_MODEL),
            usage=response.get("usage", {}),
            stop_reason=response.get("stop_reason"),
        )


# ─── Singleton ─────────────────────────────────────────────────

_claude_client: Optional[ClaudeClient] = None


def get_claude_client() -> ClaudeClient:
    """Get or create the singleton Claude client."""
    global _claude_client
    if _claude_client is None:
        _claude_client = ClaudeClient()
    return _claude_client
