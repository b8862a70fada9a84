"""Explicit run context passed to every phase, loop and controller."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol

from pipeline_forge.config import EngineSettings
from pipeline_forge.events import EventLog, UsageAggregate
from pipeline_forge.llm_client import ModelTurn
from pipeline_forge.models import PipelineEvent
from pipeline_forge.state import PipelineState

ConverseFn = Callable[[list[dict[str, Any]], "dict[str, Any] | None", "str | None"], Awaitable[ModelTurn]]


class ContextProvider(Protocol):
    """Source of supplementary context for retrieval rounds."""

    def get_files(self, options: Mapping[str, Any]) -> Mapping[str, Any] | Awaitable[Mapping[str, Any]]:
        ...


@dataclass
class PipelineContext:
    """Everything a pipeline run shares, passed explicitly by parameter."""

    converse: ConverseFn
    state: PipelineState = field(default_factory=PipelineState)
    events: EventLog = field(default_factory=EventLog)
    usage: UsageAggregate = field(default_factory=UsageAggregate)
    settings: EngineSettings = field(default_factory=EngineSettings)
    provider: ContextProvider | None = None
    # Set by the engine while a phase handler runs.
    current_step: int | None = None

    @property
    def step(self) -> int:
        """Requirements version the current run is working against.

        Inside a phase handler this is the step the new record will carry;
        outside one it is the stored requirements step.
        """
        if self.current_step is not None:
            return self.current_step
        root = self.state.root
        return root.step if root is not None else 0

    def dispatch(self, event: PipelineEvent) -> PipelineEvent:
        self.events.append(event)
        return event

    async def conversate(
        self,
        source: str,
        history: list[dict[str, Any]],
        tool_schema: dict[str, Any] | None = None,
        cache_key: str | None = None,
    ) -> ModelTurn:
        """Call the generator and charge the token usage to `source`."""
        turn = await self.converse(history, tool_schema, cache_key)
        self.usage.record_tokens(source, turn.usage_input_tokens, turn.usage_output_tokens)
        return turn
