"""External call handler.

Makes HTTP requests to external APIs/services. URL, headers, params and
body are rendered against execution data before the request is sent.
"""

import base64
import ipaddress
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import httpx
import structlog

from app.config import get_settings
from core.exceptions import HandlerError
from handlers.base_handler import BaseHandler, HandlerResult, StepContext
from handlers.implementations.transform_handler import get_path

logger = structlog.get_logger(__name__)

FORBIDDEN_PORTS = (5432, 6379, 9000)


def _is_private_ip(ip_str: str) -> bool:
    """Check if an IP address is private, loopback, link-local or reserved."""
    try:
        ip = ipaddress.ip_address(ip_str)
    except (ValueError, AttributeError):
        return False
    return ip.is_private or ip.is_loopback or ip.is_reserved or ip.is_link_local


def validate_url_safety(url: str) -> None:
    """Validate a URL for SSRF protection.

    Blocks non-HTTP(S) schemes, localhost, literal private/loopback IPs and
    well-known internal ports. Hostnames are not resolved.

    Raises:
        ValueError: If URL is unsafe
    """
    parsed = urlparse(url)

    if parsed.scheme.lower() not in ("http", "https"):
        raise ValueError(f"Unsupported scheme: {parsed.scheme or '(none)'}. Only HTTP and HTTPS allowed.")

    hostname = parsed.hostname
    if not hostname:
        raise ValueError("URL must have a valid hostname")

    if hostname.lower() in ("localhost", "localhost.localdomain"):
        raise ValueError("Connections to localhost are not allowed")

    if _is_private_ip(hostname):
        raise ValueError(f"Connections to private IP {hostname} are not allowed")

    try:
        port = parsed.port
    except ValueError:
        raise ValueError("URL has an invalid port")
    if port in FORBIDDEN_PORTS:
        raise ValueError(f"Connections to internal port {port} are not allowed")


class ExternalCallHandler(BaseHandler):
    """Execute HTTP requests to external services.

    Config:
        url: Target URL (required, may contain ``{{ references }}``)
        method: GET, POST, PUT, PATCH, DELETE (default: GET)
        headers: Dict of HTTP headers
        params: URL query parameters
        body: Request body; defaults to the resolved input for POST/PUT/PATCH
        body_type: "json" | "form" | "text" (default: json)
        auth: {"type": "bearer|basic|api_key", ...}
        timeout: Request timeout in seconds, capped by HTTP_STEP_TIMEOUT
        expected_status: List of acceptable status codes (default: any 2xx/3xx)
        extract: {"json_path": "data.items", "headers": ["X-Request-Id"]}
    """

    handler_type = "external_call"
    display_name = "External Call"
    description = "Make HTTP requests to APIs and web services"

    METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD")

    def __init__(
        self,
        client_factory: Optional[Callable[..., httpx.AsyncClient]] = None,
        block_private_networks: Optional[bool] = None,
    ):
        self._client_factory = client_factory or httpx.AsyncClient
        self._block_private_networks = block_private_networks

    @property
    def block_private_networks(self) -> bool:
        if self._block_private_networks is not None:
            return self._block_private_networks
        return get_settings().HTTP_BLOCK_PRIVATE_NETWORKS

    async def _check_hop(self, request: httpx.Request) -> None:
        try:
            validate_url_safety(str(request.url))
        except ValueError as e:
            raise HandlerError(f"Redirect blocked: {e}", retryable=False)

    def _apply_auth(self, headers: Dict[str, str], auth_config: Dict[str, Any]) -> None:
        auth_type = auth_config.get("type", "")
        if auth_type == "bearer":
            headers["Authorization"] = f"Bearer {auth_config['token']}"
        elif auth_type == "basic":
            creds = base64.b64encode(
                f"{auth_config['username']}:{auth_config['password']}".encode()
            ).decode()
            headers["Authorization"] = f"Basic {creds}"
        elif auth_type == "api_key":
            headers[auth_config.get("header", "X-API-Key")] = auth_config["key"]

    def build_request(self, resolved_input: Any, context: StepContext) -> Dict[str, Any]:
        url = context.render_config("url")
        if not url:
            raise HandlerError("Missing required config: url", retryable=False)
        url = str(url)

        if self.block_private_networks:
            try:
                validate_url_safety(url)
            except ValueError as e:
                raise HandlerError(str(e), retryable=False)

        method = str(context.config.get("method", "GET")).upper()
        headers = {str(k): str(v) for k, v in (context.render_config("headers") or {}).items()}
        params = context.render_config("params") or {}
        body = context.render_config("body")
        body_type = context.config.get("body_type", "json")

        try:
            self._apply_auth(headers, context.render_config("auth") or {})
        except KeyError as e:
            raise HandlerError(f"Incomplete auth config: missing {e}", retryable=False)

        hard_limit = get_settings().HTTP_STEP_TIMEOUT
        timeout = min(float(context.config.get("timeout", hard_limit)), hard_limit)

        kwargs: Dict[str, Any] = {
            "method": method,
            "url": url,
            "headers": headers,
            "params": params,
            "timeout": timeout,
        }

        if body is None and method in ("POST", "PUT", "PATCH"):
            body = resolved_input
        if body is not None and method in ("POST", "PUT", "PATCH"):
            if body_type == "form":
                kwargs["data"] = body
            elif body_type == "text":
                kwargs["content"] = str(body)
            else:
                kwargs["json"] = body
        return kwargs

    async def execute(self, resolved_input: Any, context: StepContext) -> HandlerResult:
        request = self.build_request(resolved_input, context)
        timeout = request["timeout"]

        client_options: Dict[str, Any] = {"follow_redirects": True}
        if self.block_private_networks:
            # Every hop, redirects included, must pass the same URL check
            client_options["event_hooks"] = {"request": [self._check_hop]}

        try:
            async with self._client_factory(**client_options) as client:
                response = await client.request(**request)
        except httpx.TimeoutException:
            return HandlerResult(success=False, error=f"Request timed out after {timeout}s")
        except httpx.ConnectError as e:
            return HandlerResult(success=False, error=f"Connection failed: {e}")
        except httpx.HTTPError as e:
            return HandlerResult(success=False, error=f"HTTP request failed: {e}")

        try:
            response_data = response.json()
        except ValueError:
            response_data = response.text

        output: Dict[str, Any] = {
            "status_code": response.status_code,
            "headers": dict(response.headers),
            "data": response_data,
            "url": str(response.url),
        }

        extract = context.config.get("extract") or {}
        if extract:
            extracted: Dict[str, Any] = {}
            if "headers" in extract:
                extracted["headers"] = {h: response.headers.get(h) for h in extract["headers"]}
            if "json_path" in extract:
                extracted["data"] = get_path(response_data, extract["json_path"].lstrip("$."))
            output["extracted"] = extracted

        expected = context.config.get("expected_status")
        if expected:
            success = response.status_code in expected
        else:
            success = 200 <= response.status_code < 400

        if success:
            return HandlerResult(success=True, output=output)

        # Client errors will not fix themselves on retry
        retryable = response.status_code >= 500 or response.status_code in (408, 429)
        return HandlerResult(
            success=False,
            output=output,
            error=f"HTTP {response.status_code} from {request['method']} {request['url']}",
            retryable=retryable,
        )

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        problems = []
        if not config.get("url"):
            problems.append("external_call requires 'url'")
        method = str(config.get("method", "GET")).upper()
        if method not in self.METHODS:
            problems.append(f"unsupported HTTP method '{method}'")
        return problems

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["url"],
            "properties": {
                "url": {"type": "string", "description": "Target URL"},
                "method": {"type": "string", "enum": list(cls.METHODS)},
                "headers": {"type": "object"},
                "params": {"type": "object"},
                "body": {"description": "Request body"},
                "body_type": {"type": "string", "enum": ["json", "form", "text"]},
                "auth": {"type": "object"},
                "timeout": {"type": "number"},
                "expected_status": {"type": "array", "items": {"type": "integer"}},
                "extract": {"type": "object"},
            },
        }


# Export for handler registry
HTTP_HANDLER_TYPES = {
    "external_call": ExternalCallHandler,
}
