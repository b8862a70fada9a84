"""Budget-limited supplementary context retrieval before a generation step completes.

Each model turn is a call of one function whose `request` argument is either
a retrieval request for one kind of context or the completion of the step.
The offered variants shrink as kinds run dry, and once the round budget is
spent only the completion variant is offered for a final turn.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Any, Awaitable, Callable, Literal, Mapping, Sequence, Union

from pipeline_forge.context import PipelineContext
from pipeline_forge.correction import maybe_await
from pipeline_forge.function_call import request_function_call
from pipeline_forge.models import make_retrieval_event
from pipeline_forge.schemas import COMPLETE_TYPE, completion_variant, request_tool, retrieval_variant

LOGGER = logging.getLogger("pipeline_forge.retrieval")

RETRIEVAL_KINDS = (
    "analysis_files",
    "database_schemas",
    "interface_operations",
    "interface_schemas",
    "realize_collectors",
    "realize_transformers",
    "previous_analysis_files",
    "previous_database_schemas",
    "previous_interface_operations",
    "previous_interface_schemas",
)

# Kinds that read the record a phase replaced; useless before that phase has run twice.
PREVIOUS_KIND_PHASES = {
    "previous_analysis_files": "analysis",
    "previous_database_schemas": "schema-design",
    "previous_interface_operations": "interface-design",
    "previous_interface_schemas": "interface-design",
}

RetrievalStatus = Literal["completed", "budget_exhausted", "failed"]


@dataclass(frozen=True)
class RetrievalRequest:
    kind: str
    keys: tuple[str, ...]


@dataclass(frozen=True)
class Completion:
    payload: Any


RetrievalResponse = Union[RetrievalRequest, Completion]


def parse_response(arguments: Mapping[str, Any]) -> RetrievalResponse:
    """Decode validated function arguments into the closed response union."""
    request = arguments["request"]
    if request["type"] == COMPLETE_TYPE:
        return Completion(payload=request["payload"])
    return RetrievalRequest(kind=request["type"], keys=tuple(request["keys"]))


@dataclass
class RetrievalBudget:
    max: int
    used: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.max - self.used)

    @property
    def exhausted(self) -> bool:
        return self.used >= self.max


@dataclass(frozen=True)
class RetrievalOutcome:
    """Terminal state of one controller run."""

    status: RetrievalStatus
    result: Any = None
    used: int = 0
    max: int = 0
    local: dict[str, dict[str, Any]] = field(default_factory=dict)
    exhausted_kinds: tuple[str, ...] = ()
    message: str = ""

    @property
    def completed(self) -> bool:
        return self.status == "completed"


class MappingContextProvider:
    """Context provider backed by an in-memory `{kind: {key: content}}` mapping."""

    def __init__(self, data: Mapping[str, Mapping[str, Any]]) -> None:
        self._data = {kind: dict(items) for kind, items in data.items()}

    def get_files(self, options: Mapping[str, Any]) -> dict[str, Any]:
        available = self._data.get(options["kind"], {})
        return {key: available[key] for key in options["keys"] if key in available}


def _render_loaded(kind: str, data: Mapping[str, Any]) -> str:
    body = json.dumps(dict(data), ensure_ascii=False, indent=2, default=str)
    return f"Loaded {kind} ({len(data)} item(s)):\n{body}"


class BudgetedRetrievalController:
    """Drive one generation step that may ask for more context before completing."""

    def __init__(
        self,
        *,
        source: str,
        kinds: Sequence[str],
        completion_schema: dict[str, Any],
        tool_name: str = "process",
        description: str = "Request more context, or complete the task.",
        max_rounds: int | None = None,
        local: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> None:
        if COMPLETE_TYPE in kinds:
            raise ValueError(f"Retrieval kind name is reserved: {COMPLETE_TYPE!r}")
        if max_rounds is not None and max_rounds < 0:
            raise ValueError("max_rounds must be >= 0")
        self.source = source
        self.kinds = list(dict.fromkeys(kinds))
        self.completion_schema = completion_schema
        self.tool_name = tool_name
        self.description = description
        self.max_rounds = max_rounds
        self.local: dict[str, dict[str, Any]] = {kind: dict(items) for kind, items in (local or {}).items()}
        self.exhausted: list[str] = []
        self.budget = RetrievalBudget(max=max_rounds or 0)

    def available_kinds(self) -> list[str]:
        return [kind for kind in self.kinds if kind not in self.exhausted]

    def tool_schema(self) -> dict[str, Any]:
        """Function tool offered on the next turn."""
        variants: list[dict[str, Any]] = []
        if not self.budget.exhausted:
            variants.extend(retrieval_variant(kind) for kind in self.available_kinds())
        variants.append(completion_variant(self.completion_schema))
        return request_tool(self.tool_name, self.description, variants)

    def _prune_previous_kinds(self, ctx: PipelineContext) -> None:
        for kind, phase in PREVIOUS_KIND_PHASES.items():
            if kind in self.kinds and kind not in self.exhausted and ctx.state.previous(phase) is None:
                self.exhausted.append(kind)

    def _outcome(self, status: RetrievalStatus, *, result: Any = None, message: str = "") -> RetrievalOutcome:
        return RetrievalOutcome(
            status=status,
            result=result,
            used=self.budget.used,
            max=self.budget.max,
            local={kind: dict(items) for kind, items in self.local.items()},
            exhausted_kinds=tuple(self.exhausted),
            message=message,
        )

    async def _fetch(self, ctx: PipelineContext, kind: str, keys: list[str]) -> dict[str, Any]:
        if ctx.provider is None:
            return {}
        try:
            data = await maybe_await(ctx.provider.get_files({"kind": kind, "keys": list(keys)}))
        except Exception:
            LOGGER.warning("retrieval_provider_failed source=%s kind=%s", self.source, kind, exc_info=True)
            return {}
        return dict(data or {})

    async def orchestrate(
        self,
        ctx: PipelineContext,
        finalize: Callable[[Any], Any | Awaitable[Any]],
        *,
        history: Sequence[dict[str, Any]] = (),
        cache_key: str | None = None,
    ) -> RetrievalOutcome:
        """Run turns until completion, a failed call, or the final turn after the budget."""
        self.budget = RetrievalBudget(
            max=ctx.settings.retrieval_limit if self.max_rounds is None else self.max_rounds
        )
        self._prune_previous_kinds(ctx)
        conversation = list(history)

        while True:
            final_turn = self.budget.exhausted
            call = await request_function_call(ctx, self.source, conversation, self.tool_schema(), cache_key)
            if not call.success:
                status: RetrievalStatus = "budget_exhausted" if final_turn else "failed"
                LOGGER.warning("retrieval_%s source=%s used=%d", status, self.source, self.budget.used)
                return self._outcome(status, message=call.explanation())

            conversation = list(call.history)
            response = parse_response(call.arguments)
            if isinstance(response, Completion):
                result = await maybe_await(finalize(response.payload))
                LOGGER.info("retrieval_completed source=%s used=%d", self.source, self.budget.used)
                return self._outcome("completed", result=result)

            conversation.append({"role": "assistant", "content": call.turn.raw_arguments or ""})
            self.budget.used += 1
            conversation.append({"role": "user", "content": await self._serve(ctx, response)})

    async def _serve(self, ctx: PipelineContext, request: RetrievalRequest) -> str:
        loaded = self.local.setdefault(request.kind, {})
        existing = list(loaded)
        new_keys = [key for key in dict.fromkeys(request.keys) if key not in loaded]
        ctx.dispatch(
            make_retrieval_event(
                source=self.source,
                step=ctx.step,
                kind=request.kind,
                requested=list(request.keys),
                existing=existing,
                trial=self.budget.used,
            )
        )
        LOGGER.info(
            "retrieval_round source=%s kind=%s requested=%d new=%d round=%d/%d",
            self.source,
            request.kind,
            len(request.keys),
            len(new_keys),
            self.budget.used,
            self.budget.max,
        )
        if not new_keys:
            return f"All requested {request.kind} are already loaded: {', '.join(request.keys)}. Do not request them again."

        data = await self._fetch(ctx, request.kind, new_keys)
        if not data:
            self.exhausted.append(request.kind)
            return (
                f"No {request.kind} found for: {', '.join(new_keys)}. "
                f"{request.kind} can no longer be requested."
            )
        loaded.update(data)
        return _render_loaded(request.kind, data)
