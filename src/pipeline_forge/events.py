"""Append-only event log and usage accumulator shared by a pipeline run."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Callable

from pipeline_forge.models import PipelineEvent, format_event_label

LOGGER = logging.getLogger("pipeline_forge.events")

EventListener = Callable[[PipelineEvent], None]


class EventLog:
    """Append-only list of events with observe-only listeners."""

    def __init__(self) -> None:
        self._events: list[PipelineEvent] = []
        self._listeners: list[EventListener] = []

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def append(self, event: PipelineEvent) -> None:
        self._events.append(event)
        LOGGER.debug("event %s", format_event_label(event))
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                # Listeners observe only; a broken one must not change the run.
                LOGGER.exception("event listener failed event_type=%s source=%s", event.event_type, event.source)

    def events(self, event_type: str | None = None) -> list[PipelineEvent]:
        if event_type is None:
            return list(self._events)
        return [event for event in self._events if event.event_type == event_type]

    def __len__(self) -> int:
        return len(self._events)


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, input_tokens: int | None, output_tokens: int | None) -> None:
        self.input_tokens += int(input_tokens or 0)
        self.output_tokens += int(output_tokens or 0)


@dataclass
class FunctionCallingMetric:
    """Counters for structured function calls made on behalf of one source."""

    attempt: int = 0
    success: int = 0
    validation_failure: int = 0
    invalid_json: int = 0


@dataclass
class SourceUsage:
    metric: FunctionCallingMetric = field(default_factory=FunctionCallingMetric)
    token_usage: TokenUsage = field(default_factory=TokenUsage)


class UsageAggregate:
    """Per-source and total token/attempt counters."""

    def __init__(self) -> None:
        self.total = SourceUsage()
        self._sources: dict[str, SourceUsage] = {}

    def source(self, name: str) -> SourceUsage:
        if name not in self._sources:
            self._sources[name] = SourceUsage()
        return self._sources[name]

    def sources(self) -> dict[str, SourceUsage]:
        return dict(self._sources)

    def record_tokens(self, source: str, input_tokens: int | None, output_tokens: int | None) -> None:
        self.source(source).token_usage.add(input_tokens, output_tokens)
        self.total.token_usage.add(input_tokens, output_tokens)

    def record_call(
        self,
        source: str,
        *,
        success: bool,
        validation_failure: bool = False,
        invalid_json: bool = False,
    ) -> None:
        for usage in (self.source(source), self.total):
            usage.metric.attempt += 1
            if success:
                usage.metric.success += 1
            if validation_failure:
                usage.metric.validation_failure += 1
            if invalid_json:
                usage.metric.invalid_json += 1
