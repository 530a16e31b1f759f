"""Run completion webhooks.

An execution created with a ``webhook_url`` gets one POST when it reaches a
terminal status. Delivery is best-effort: a failed or rejected delivery is
logged and never changes the execution.
"""

import json
import logging
from typing import Any, Callable, Optional

import httpx

from app.config import Settings, get_settings
from handlers.implementations.http_handler import validate_url_safety

logger = logging.getLogger(__name__)


class RunWebhookNotifier:
    """POSTs ``run.<status>`` events to per-execution webhook URLs."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client_factory: Optional[Callable[..., httpx.AsyncClient]] = None,
    ):
        self.settings = settings or get_settings()
        self._client_factory = client_factory or httpx.AsyncClient

    @property
    def enabled(self) -> bool:
        return self.settings.RUN_WEBHOOKS_ENABLED

    async def send(self, url: str, payload: dict[str, Any]) -> bool:
        """Deliver one event. Returns True on a 2xx response."""
        if not self.enabled:
            return False

        try:
            if self.settings.HTTP_BLOCK_PRIVATE_NETWORKS:
                validate_url_safety(url)

            headers = {
                "Content-Type": "application/json",
                "X-Playbook-Event": str(payload.get("type", "")),
            }
            # Redirects are not followed so the URL check covers the only hop
            async with self._client_factory(
                timeout=self.settings.RUN_WEBHOOK_TIMEOUT,
                follow_redirects=False,
            ) as client:
                response = await client.post(url, content=json.dumps(payload, default=str), headers=headers)
                response.raise_for_status()

            logger.info(f"Webhook {payload.get('type')} delivered to {url} (HTTP {response.status_code})")
            return True

        except Exception as e:
            logger.error(f"Webhook send failed: {e}")
            return False
