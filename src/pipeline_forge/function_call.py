"""Structured function calls validated against their tool schema and repaired in place."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from pipeline_forge.context import PipelineContext
from pipeline_forge.correction import CorrectionLoop, CorrectionOutcome, format_diagnostics
from pipeline_forge.llm_client import ModelTurn
from pipeline_forge.models import Diagnostic, ValidationResult
from pipeline_forge.schemas import validate_against_schema

LOGGER = logging.getLogger("pipeline_forge.function_call")


@dataclass(frozen=True)
class FunctionCallResult:
    """Validated arguments of one function call, or the reason there are none."""

    arguments: Any
    success: bool
    outcome: CorrectionOutcome
    history: tuple[dict[str, Any], ...]

    @property
    def turn(self) -> ModelTurn:
        return self.outcome.artifact

    def explanation(self) -> str:
        return self.outcome.explanation()


def check_turn(turn: ModelTurn, tool_schema: dict[str, Any]) -> ValidationResult:
    """Check that a model turn is a well-formed call of `tool_schema`."""
    tool_name = tool_schema["name"]
    if turn.kind != "tool_invocation":
        return ValidationResult.failure(
            [Diagnostic(location="$turn", message=f"Expected a call to function {tool_name!r}, got a plain message.")]
        )
    if turn.tool_name is not None and turn.tool_name != tool_name:
        return ValidationResult.failure(
            [Diagnostic(location="$turn", message=f"Unknown function {turn.tool_name!r}; call {tool_name!r}.")]
        )
    if turn.arguments_error is not None:
        return ValidationResult.failure([Diagnostic(location="$input", message=turn.arguments_error)])
    return validate_against_schema(turn.payload, tool_schema["parameters"])


def _feedback_message(tool_name: str, diagnostics: tuple[Diagnostic, ...]) -> str:
    return (
        f"Your call to {tool_name!r} did not match its schema.\n"
        "Problems found so far:\n"
        f"{format_diagnostics(diagnostics)}\n\n"
        f"Call {tool_name!r} again with corrected arguments."
    )


async def request_function_call(
    ctx: PipelineContext,
    source: str,
    history: list[dict[str, Any]],
    tool_schema: dict[str, Any],
    cache_key: str | None = None,
    *,
    max_attempts: int | None = None,
) -> FunctionCallResult:
    """Ask the model to call `tool_schema` and repair invalid calls.

    Failed calls are echoed back with the accumulated diagnostics and the
    model is asked again, up to the context's retry budget.
    """
    conversation = list(history)
    tool_name = tool_schema["name"]
    attempts = ctx.settings.retry if max_attempts is None else max_attempts

    async def generate() -> ModelTurn:
        return await ctx.conversate(source, conversation, tool_schema, cache_key)

    def validate(turn: ModelTurn) -> ValidationResult:
        result = check_turn(turn, tool_schema)
        ctx.usage.record_call(
            source,
            success=result.ok,
            validation_failure=not result.ok and turn.arguments_error is None,
            invalid_json=turn.arguments_error is not None,
        )
        return result

    async def repair(turn: ModelTurn, diagnostics: tuple[Diagnostic, ...]) -> ModelTurn:
        echoed = turn.raw_arguments if turn.kind == "tool_invocation" else str(turn.payload)
        conversation.append({"role": "assistant", "content": echoed or ""})
        conversation.append({"role": "user", "content": _feedback_message(tool_name, diagnostics)})
        return await ctx.conversate(source, conversation, tool_schema, cache_key)

    loop = CorrectionLoop(source=source, step=ctx.step, on_event=ctx.dispatch)
    outcome = await loop.run(generate, validate, repair, attempts)
    if not outcome.success:
        LOGGER.warning("function_call_failed source=%s tool=%s attempts=%d", source, tool_name, len(outcome.attempts))
    return FunctionCallResult(
        arguments=outcome.artifact.payload if outcome.success else None,
        success=outcome.success,
        outcome=outcome,
        history=tuple(conversation),
    )
