"""webSearch: answer a query through the generation service's search mode."""

import json

from taskpilot.core.generation import GenerateConfig, ModelTier, PartType, ResponseShape
from taskpilot.core.models import FunctionCall, Role, Turn, call_turns
from taskpilot.core.schema import FunctionDef, object_schema
from taskpilot.task.types import CommandContext, CommandResult

WEB_SEARCH_DEF = FunctionDef(
    name="webSearch",
    description="Search the web for documentation, error messages or package details.",
    parameters=object_schema(
        {"query": {"type": "string", "minLength": 1, "description": "The search query."}},
        required=["query"],
    ),
)


def handle_web_search(call: FunctionCall, ctx: CommandContext) -> CommandResult:
    query = call.args["query"]
    ctx.bus.container_log("info", f'Performing web search for: "{query}"')

    ctx.cancel_token.raise_if_cancelled()
    parts = ctx.generate_content(
        [Turn(role=Role.USER, text=query)],
        GenerateConfig(
            temperature=0.7,
            model_tier=ModelTier.LITE,
            expected_response=ResponseShape(web_search=True),
        ),
        ctx.options,
    )
    ctx.cancel_token.raise_if_cancelled()

    result = next((p for p in parts if p.type == PartType.WEB_SEARCH and p.search), None)
    if result is None:
        ctx.bus.container_log("warning", "Web search did not return any results.")
        return CommandResult(turns=call_turns(call, "Web search failed: No results found"))

    ctx.bus.container_log("info", "Web search completed.", {"sources": result.search.sources})
    content = json.dumps(result.search.model_dump())
    return CommandResult(turns=call_turns(call, content))
