"""Canonical pipeline records, validation results and event models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Sequence

ResultKind = Literal["success", "failure", "exception"]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


EVENT_PHASE_START = "phase_start"
EVENT_PHASE_COMPLETE = "phase_complete"
EVENT_VALIDATION_FAILURE = "validation_failure"
EVENT_REPAIR = "repair"
EVENT_RETRIEVAL = "retrieval"
EVENT_PROGRESS = "progress"


@dataclass(frozen=True)
class Diagnostic:
    """One problem reported by a validator or compiler."""

    location: str
    message: str
    severity: str = "error"
    # Sub-artifact (file, table, type) the problem is attributed to.
    unit: str | None = None

    def render(self) -> str:
        prefix = f"[{self.unit}] " if self.unit else ""
        return f"{prefix}{self.location}: {self.message}"


@dataclass(frozen=True)
class ValidationResult:
    """Normalized validator/compiler response.

    `failure` is retryable and carries diagnostics; `exception` is fatal and
    carries the error text of a validator that could not run at all.
    """

    kind: ResultKind
    diagnostics: tuple[Diagnostic, ...] = ()
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.kind == "success"

    @classmethod
    def success(cls) -> ValidationResult:
        return cls(kind="success")

    @classmethod
    def failure(cls, diagnostics: list[Diagnostic] | tuple[Diagnostic, ...]) -> ValidationResult:
        if not diagnostics:
            raise ValueError("A failure result needs at least one diagnostic.")
        return cls(kind="failure", diagnostics=tuple(diagnostics))

    @classmethod
    def exception(cls, error: str) -> ValidationResult:
        return cls(kind="exception", error=error)


@dataclass(frozen=True)
class PhaseRecord:
    """Completed artifact of one phase, tagged with the requirements step it matches."""

    phase: str
    step: int
    artifact: Any
    completed_at: str = field(default_factory=_utc_now_iso)
    started_at: str | None = None
    reason: str = ""


@dataclass
class Progress:
    """Shared completed/total counter for one phase fan-out."""

    total: int
    completed: int = 0

    def advance(self) -> int:
        self.completed += 1
        return self.completed


@dataclass(frozen=True)
class PipelineEvent:
    """Append-only record of something the engine did."""

    event_type: str
    source: str
    step: int
    phase: str = ""
    completed: int | None = None
    total: int | None = None
    note: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_utc_now_iso)


def make_phase_start_event(*, phase: str, step: int, reason: str = "") -> PipelineEvent:
    """Create the event announcing that a phase handler is about to run."""
    return PipelineEvent(
        event_type=EVENT_PHASE_START,
        source=phase,
        phase=phase,
        step=step,
        note=reason.strip(),
    )


def make_phase_complete_event(*, record: PhaseRecord) -> PipelineEvent:
    return PipelineEvent(
        event_type=EVENT_PHASE_COMPLETE,
        source=record.phase,
        phase=record.phase,
        step=record.step,
        created_at=record.completed_at,
    )


def make_validation_failure_event(
    *,
    source: str,
    step: int,
    attempt: int,
    diagnostics: tuple[Diagnostic, ...],
    progress: Progress | None = None,
) -> PipelineEvent:
    """Create a non-fatal event for one failed validation inside a correction loop."""
    return PipelineEvent(
        event_type=EVENT_VALIDATION_FAILURE,
        source=source,
        step=step,
        completed=progress.completed if progress is not None else None,
        total=progress.total if progress is not None else None,
        note=f"attempt {attempt}: {len(diagnostics)} diagnostic(s)",
        payload={"attempt": attempt, "diagnostics": [item.render() for item in diagnostics]},
    )


def make_repair_event(
    *,
    source: str,
    step: int,
    attempt: int,
    units: Sequence[str] | None = None,
    progress: Progress | None = None,
) -> PipelineEvent:
    note = f"attempt {attempt} repaired"
    if units is not None:
        note = f"{note} ({', '.join(units)})"
    return PipelineEvent(
        event_type=EVENT_REPAIR,
        source=source,
        step=step,
        completed=progress.completed if progress is not None else None,
        total=progress.total if progress is not None else None,
        note=note,
        payload={"attempt": attempt, "units": list(units) if units is not None else None},
    )


def make_retrieval_event(
    *,
    source: str,
    step: int,
    kind: str,
    requested: list[str],
    existing: list[str],
    trial: int,
) -> PipelineEvent:
    """Create the event describing one supplementary-context round."""
    return PipelineEvent(
        event_type=EVENT_RETRIEVAL,
        source=source,
        step=step,
        note=f"{kind} round {trial}",
        payload={
            "kind": kind,
            "requested": list(requested),
            "existing": list(existing),
            "trial": trial,
        },
    )


def make_progress_event(*, source: str, step: int, progress: Progress) -> PipelineEvent:
    return PipelineEvent(
        event_type=EVENT_PROGRESS,
        source=source,
        step=step,
        completed=progress.completed,
        total=progress.total,
    )


def format_event_label(event: PipelineEvent) -> str:
    """Format an event row label for logs and reports."""
    if event.completed is not None and event.total is not None:
        return f"{event.source} {event.event_type} - step {event.step} ({event.completed}/{event.total})"
    return f"{event.source} {event.event_type} - step {event.step}"
