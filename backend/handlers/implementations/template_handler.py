"""Template resolution handler."""

import json
import re
from typing import Any, Dict, List

from handlers.base_handler import BaseHandler, HandlerResult, StepContext
from handlers.implementations.transform_handler import get_path
from workflow.expressions import REFERENCE_RE, render_deep

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")


class TemplateResolutionHandler(BaseHandler):
    """Fill a text (or nested object) template.

    Placeholders may be execution references (``{{ input.name }}``,
    ``{{ step_2_output.total }}``) or bare field names of the resolved input
    (``{{ name }}``). Unknown placeholders render as empty strings.

    Config:
        template: String or object containing placeholders (required)
        output_format: "text" (default) or "json" to parse the rendered text
    """

    handler_type = "template_resolution"
    display_name = "Template Resolution"
    description = "Render a template from step input and earlier outputs"

    def _fill_fields(self, value: Any, fields: Any) -> Any:
        if isinstance(value, dict):
            return {k: self._fill_fields(v, fields) for k, v in value.items()}
        if isinstance(value, list):
            return [self._fill_fields(v, fields) for v in value]
        if not isinstance(value, str):
            return value

        def _replace(match: re.Match) -> str:
            name = match.group(1)
            if REFERENCE_RE.match(name):
                return match.group(0)
            found = get_path(fields, name) if isinstance(fields, dict) else None
            if found is None:
                return ""
            if isinstance(found, (dict, list)):
                return json.dumps(found, default=str)
            return str(found)

        return _PLACEHOLDER_RE.sub(_replace, value)

    async def execute(self, resolved_input: Any, context: StepContext) -> HandlerResult:
        template = context.config.get("template")
        if template is None:
            return HandlerResult(success=False, error="Missing required config: template", retryable=False)

        rendered = render_deep(template, context.expressions)
        rendered = self._fill_fields(rendered, resolved_input or {})

        output: Dict[str, Any] = {"rendered": rendered}
        if context.config.get("output_format") == "json" and isinstance(rendered, str):
            try:
                output["parsed"] = json.loads(rendered)
            except json.JSONDecodeError as e:
                return HandlerResult(success=False, error=f"Rendered template is not JSON: {e}", retryable=False)

        return HandlerResult(success=True, output=output)

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        if config.get("template") is None:
            return ["template_resolution requires 'template'"]
        return []


# Export for handler registry
TEMPLATE_HANDLER_TYPES = {
    "template_resolution": TemplateResolutionHandler,
}
