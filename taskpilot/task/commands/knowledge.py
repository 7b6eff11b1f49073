"""gainKnowledge / queryKnowledge / knowledgeBase: the cross-task knowledge store."""

import json
import logging

from taskpilot.core.errors import KnowledgeError
from taskpilot.core.knowledge import namespaced_key
from taskpilot.core.models import FunctionCall, call_turns
from taskpilot.core.schema import FunctionDef, object_schema
from taskpilot.task.types import CommandContext, CommandResult

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "task"
QUERY_LIMIT = 5

GAIN_KNOWLEDGE_DEF = FunctionDef(
    name="gainKnowledge",
    description=(
        "Persist a knowledge entry: a problem or question and its validated answer. "
        "Record solutions that will help future tasks. Never store secrets. "
        "Check with queryKnowledge first that the entry does not exist yet."
    ),
    parameters=object_schema(
        {
            "prompt": {"type": "string", "minLength": 1, "description": "The problem or question."},
            "answer": {"type": "string", "minLength": 1, "description": "The validated solution or insight."},
            "metadata": {"type": "object", "description": "Optional structured data."},
            "explanation": {"type": "string", "description": "Why this knowledge is worth keeping."},
        },
        required=["prompt", "answer"],
    ),
)

QUERY_KNOWLEDGE_DEF = FunctionDef(
    name="queryKnowledge",
    description="Search knowledge gained in past tasks before attempting a complex step.",
    parameters=object_schema(
        {
            "query": {"type": "string", "minLength": 1},
            "explanation": {"type": "string"},
        },
        required=["query"],
    ),
)

KNOWLEDGE_BASE_DEF = FunctionDef(
    name="knowledgeBase",
    description="Manage namespaced key/value entries that persist across tasks.",
    parameters=object_schema(
        {
            "op": {"type": "string", "enum": ["upsert", "append", "remove", "get"]},
            "namespace": {"type": "string", "minLength": 1},
            "key": {"type": "string", "minLength": 1},
            "value": {"description": "JSON-serializable value for upsert/append."},
            "tags": {"type": "array", "items": {"type": "string"}},
        },
        required=["op", "key"],
    ),
)


def format_entries(entries: list) -> str:
    """Render prompt/answer entries for the transcript."""
    return json.dumps(
        [
            {
                "prompt": entry.value.get("prompt"),
                "answer": entry.value.get("answer"),
                "timestamp": entry.timestamp.isoformat(),
            }
            for entry in entries
        ],
        indent=2,
    )


def handle_gain_knowledge(call: FunctionCall, ctx: CommandContext) -> CommandResult:
    args = call.args
    metadata = dict(args.get("metadata") or {})
    if args.get("explanation"):
        metadata["explanation"] = args["explanation"]
    entry = ctx.knowledge.append_knowledge(args["prompt"], args["answer"], metadata)
    ctx.bus.container_log("info", "Knowledge entry stored.", {"key": entry.key})
    return CommandResult(
        turns=call_turns(call, json.dumps({"success": True, "key": entry.key})),
        commands_executed_increment=0,
    )


def handle_query_knowledge(call: FunctionCall, ctx: CommandContext) -> CommandResult:
    entries = ctx.knowledge.query_knowledge(call.args["query"], limit=QUERY_LIMIT)
    if entries:
        content = f"Found {len(entries)} relevant knowledge entries:\n{format_entries(entries)}"
    else:
        content = "No relevant knowledge found."
    ctx.bus.container_log("info", content.splitlines()[0], {"query": call.args["query"]})
    return CommandResult(turns=call_turns(call, content), commands_executed_increment=0)


def handle_knowledge_base(call: FunctionCall, ctx: CommandContext) -> CommandResult:
    args = call.args
    op = args["op"]
    try:
        key = namespaced_key(args.get("namespace") or DEFAULT_NAMESPACE, args["key"])
        if op == "get":
            entry = ctx.knowledge.get(key)
            content = (
                json.dumps({"key": key, "value": entry.value, "tags": entry.tags})
                if entry
                else f"No entry for {key}."
            )
        elif op == "remove":
            removed = ctx.knowledge.delete(key)
            content = f"Removed {key}." if removed else f"No entry for {key}."
        elif "value" not in args:
            content = f"Error: op '{op}' requires a value."
        elif op == "upsert":
            ctx.knowledge.set(key, args["value"], args.get("tags"))
            content = f"Stored {key}."
        else:
            existing = ctx.knowledge.get(key)
            values = existing.value if existing and isinstance(existing.value, list) else (
                [existing.value] if existing else []
            )
            values.append(args["value"])
            ctx.knowledge.set(key, values, args.get("tags") or (existing.tags if existing else None))
            content = f"Appended to {key} ({len(values)} values)."
    except KnowledgeError as e:
        content = f"Error: {e}"
    ctx.bus.container_log("info", f"knowledgeBase {op}", {"key": args["key"]})
    return CommandResult(turns=call_turns(call, content), commands_executed_increment=0)
