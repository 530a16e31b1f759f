"""Agent invocation handler.

Sends a prompt to the generation collaborator (Claude by default) and
returns the response. The prompt comes from ``config.prompt`` rendered
against execution data, from ``resolved_input["prompt"]``, or, failing
both, from the resolved input serialized as JSON.
"""

import json
from typing import Any, Dict, List, Optional

from core.exceptions import HandlerError
from handlers.base_handler import BaseHandler, HandlerResult, StepContext
from integrations.claude_client import (
    GenerationError,
    GenerationService,
    extract_json,
    get_claude_client,
)


class AgentInvocationHandler(BaseHandler):
    """Invoke an AI agent with a prompt built from execution data.

    Config:
        prompt: Prompt template (``{{ input.x }}``, ``{{ step_1_output.y }}``)
        system_prompt: Optional system prompt override
        model / max_tokens / temperature: Generation overrides
        response_format: "text" (default) or "json"; json also fills ``parsed``
    """

    handler_type = "agent_invocation"
    display_name = "Agent Invocation"
    description = "Send a prompt to the AI generation service"

    def __init__(self, generation_service: Optional[GenerationService] = None):
        self._generation_service = generation_service

    @property
    def generation_service(self) -> GenerationService:
        return self._generation_service or get_claude_client()

    def build_prompt(self, resolved_input: Any, context: StepContext) -> str:
        prompt = context.render_config("prompt")
        if prompt:
            if isinstance(prompt, str):
                return prompt
            return json.dumps(prompt, default=str)
        if isinstance(resolved_input, dict) and isinstance(resolved_input.get("prompt"), str):
            return resolved_input["prompt"]
        if isinstance(resolved_input, str):
            return resolved_input
        return json.dumps(resolved_input, default=str)

    async def execute(self, resolved_input: Any, context: StepContext) -> HandlerResult:
        service = self.generation_service
        if not service.is_configured:
            return HandlerResult(
                success=False,
                error="Generation service not configured",
                retryable=False,
            )

        prompt = self.build_prompt(resolved_input, context)
        if not prompt or prompt in ("null", "{}"):
            return HandlerResult(success=False, error="Prompt is required", retryable=False)

        config = context.config
        try:
            generated = await service.generate(
                prompt=prompt,
                system=context.render_config("system_prompt"),
                model=config.get("model"),
                max_tokens=config.get("max_tokens"),
                temperature=config.get("temperature"),
            )
        except GenerationError as e:
            raise HandlerError(str(e), retryable=e.retryable)

        output: Dict[str, Any] = {
            "response": generated.text,
            "model": generated.model,
            "usage": generated.usage,
        }

        if config.get("response_format") == "json":
            try:
                output["parsed"] = extract_json(generated.text)
            except ValueError as e:
                # A malformed answer may well be fine on the next attempt
                return HandlerResult(success=False, output=output, error=str(e))

        return HandlerResult(
            success=True,
            output=output,
            metadata={"stop_reason": generated.stop_reason},
        )

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        fmt = config.get("response_format", "text")
        if fmt not in ("text", "json"):
            return [f"response_format must be 'text' or 'json', got '{fmt}'"]
        return []

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "prompt": {"type": "string", "description": "Prompt template"},
                "system_prompt": {"type": "string"},
                "model": {"type": "string"},
                "max_tokens": {"type": "integer"},
                "temperature": {"type": "number"},
                "response_format": {"type": "string", "enum": ["text", "json"]},
            },
        }


# Export for handler registry
AGENT_HANDLER_TYPES = {
    "agent_invocation": AgentInvocationHandler,
}
