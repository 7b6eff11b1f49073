"""Context budget and transcript compaction.

Metrics are a pure function of the transcript. Thresholds come from
configuration so callers can tune them per deployment.
"""

import math
from dataclasses import dataclass
from typing import Any

from taskpilot.core.models import (
    ContextMetrics,
    FunctionCall,
    FunctionResponse,
    Role,
    Turn,
)

WRAP_CONTEXT = "wrapContext"

# Fraction of a limit at which checkContext starts warning
NEAR_LIMIT_RATIO = 0.8

# Rough characters-per-token ratio for serialized turns
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def compute_context_metrics(transcript: list[Turn]) -> ContextMetrics:
    """Count turns and estimate tokens of the serialized transcript."""
    tokens = sum(
        estimate_tokens(turn.model_dump_json(exclude_defaults=True)) for turn in transcript
    )
    return ContextMetrics(message_count=len(transcript), estimated_tokens=tokens)


@dataclass(frozen=True)
class ContextBudget:
    """Message and token ceilings for one command loop."""

    max_messages: int
    max_tokens: int

    def exceeded(self, metrics: ContextMetrics) -> bool:
        return (
            metrics.message_count > self.max_messages
            or metrics.estimated_tokens > self.max_tokens
        )

    def nearing(self, metrics: ContextMetrics, ratio: float = NEAR_LIMIT_RATIO) -> bool:
        return (
            metrics.message_count >= self.max_messages * ratio
            or metrics.estimated_tokens >= self.max_tokens * ratio
        )

    def describe(self, metrics: ContextMetrics) -> str:
        return (
            f"messages: {metrics.message_count}/{self.max_messages}, "
            f"estimated tokens: {metrics.estimated_tokens}/{self.max_tokens}"
        )


def _is_wrap_call(turn: Turn) -> bool:
    return turn.role == Role.ASSISTANT and any(
        c.name == WRAP_CONTEXT for c in turn.function_calls
    )


def _is_wrap_response(turn: Turn) -> bool:
    return turn.role == Role.USER and any(
        r.name == WRAP_CONTEXT for r in turn.function_responses
    )


def prior_wrap_pairs(transcript: list[Turn]) -> list[Turn]:
    """Return earlier wrapContext call/response pairs, in order."""
    kept: list[Turn] = []
    for i, turn in enumerate(transcript):
        if not _is_wrap_call(turn):
            continue
        if i + 1 < len(transcript) and _is_wrap_response(transcript[i + 1]):
            kept.extend([turn, transcript[i + 1]])
    return kept


def render_wrap_summary(args: dict[str, Any]) -> str:
    """Format the summary fields of a wrapContext call."""
    files = args.get("importantFiles") or []
    plan = args.get("plan") or ""
    if isinstance(plan, list):
        plan = "\n".join(
            f"- {step.get('id')}: {step.get('description', '')}"
            + (f" [{step['state']}]" if step.get("state") else "")
            for step in plan
            if isinstance(step, dict)
        )
    sections = [
        ("Summary", args.get("summary", "")),
        ("Plan", plan),
        ("Progress", args.get("progress", "")),
        ("Important files", "\n".join(f"- {f}" for f in files) if files else "(none)"),
        ("Next step", args.get("nextStep", "")),
    ]
    return "\n\n".join(f"## {title}\n{body}" for title, body in sections)


def compact_transcript(
    transcript: list[Turn],
    call: FunctionCall,
    budget: ContextBudget,
) -> tuple[list[Turn], ContextMetrics]:
    """Replace history with one summary pair built from a wrapContext call.

    Earlier wrapContext pairs are kept so the result grows only with the number
    of wraps. Returns a new transcript; the input is not modified.
    """
    summary = render_wrap_summary(call.args)
    kept = [turn.model_copy(deep=True) for turn in prior_wrap_pairs(transcript)]

    def build(content: str) -> list[Turn]:
        return [
            *kept,
            Turn(role=Role.ASSISTANT, function_calls=[call.model_copy(deep=True)]),
            Turn(
                role=Role.USER,
                function_responses=[
                    FunctionResponse(name=WRAP_CONTEXT, call_id=call.id, content=content)
                ],
            ),
        ]

    metrics = compute_context_metrics(build(summary))
    if budget.exceeded(metrics):
        status = (
            f"Context has been wrapped but still exceeds limits ({budget.describe(metrics)}). "
            "Shorten the summary on the next wrapContext."
        )
    else:
        status = f"Context has been wrapped and is within limits ({budget.describe(metrics)})."
    next_step = call.args.get("nextStep")
    content = f"{status}\n\n{summary}"
    if next_step:
        content += f"\n\nPlease continue with the next step: {next_step}"
    compacted = build(content)
    return compacted, compute_context_metrics(compacted)
