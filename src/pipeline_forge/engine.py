"""Phase engine: waterfall gating, phase events and tracked fan-out."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Callable, Literal, Mapping, Sequence, TypeVar

from pipeline_forge.batch import execute_cached_batch, tolerant
from pipeline_forge.context import PipelineContext
from pipeline_forge.correction import maybe_await
from pipeline_forge.models import (
    PhaseRecord,
    Progress,
    _utc_now_iso,
    make_phase_complete_event,
    make_phase_start_event,
    make_progress_event,
)
from pipeline_forge.state import PHASE_SEQUENCE

LOGGER = logging.getLogger("pipeline_forge.engine")

T = TypeVar("T")
U = TypeVar("U")

PhaseHandler = Callable[[PipelineContext, int], Any]


@dataclass(frozen=True)
class PhaseRunResult:
    """Outcome of one phase run; a blocked run carries the user-facing reason."""

    phase: str
    status: Literal["completed", "blocked"]
    record: PhaseRecord | None = None
    message: str = ""

    @property
    def completed(self) -> bool:
        return self.status == "completed"


@dataclass(frozen=True)
class RunPhasesResult:
    """Result for multi-phase runs."""

    results: tuple[PhaseRunResult, ...]
    phases_completed: int
    cancelled: bool

    @property
    def blocked(self) -> PhaseRunResult | None:
        for result in self.results:
            if not result.completed:
                return result
        return None


async def run_phase(
    ctx: PipelineContext,
    phase: str,
    handler: PhaseHandler,
    reason: str = "",
) -> PhaseRunResult:
    """Run one phase if its predecessors are present and current.

    `handler(ctx, step)` produces the phase artifact; the step is the
    requirements version the new record will carry.
    """
    check = ctx.state.can_run(phase)
    if not check.allowed:
        LOGGER.info("phase_blocked phase=%s status=%s blocking=%s", phase, check.status, check.phase)
        return PhaseRunResult(phase=phase, status="blocked", message=check.message)

    step = ctx.state.next_step(phase)
    started_at = _utc_now_iso()
    ctx.dispatch(make_phase_start_event(phase=phase, step=step, reason=reason))
    LOGGER.info("phase_start phase=%s step=%d", phase, step)
    outer_step = ctx.current_step
    ctx.current_step = step
    try:
        artifact = await maybe_await(handler(ctx, step))
    finally:
        ctx.current_step = outer_step
    record = ctx.state.complete(phase, step, artifact, started_at=started_at, reason=reason)
    ctx.dispatch(make_phase_complete_event(record=record))
    LOGGER.info("phase_complete phase=%s step=%d", phase, step)
    return PhaseRunResult(phase=phase, status="completed", record=record)


async def run_phases(
    ctx: PipelineContext,
    handlers: Mapping[str, PhaseHandler],
    *,
    reason: str = "",
    should_stop: Callable[[], bool] | None = None,
) -> RunPhasesResult:
    """Run the given phases in waterfall order with cooperative cancellation.

    Stops at the first blocked phase.
    """
    unknown = [phase for phase in handlers if phase not in PHASE_SEQUENCE]
    if unknown:
        raise ValueError(f"Unsupported phase name: {unknown[0]}")

    results: list[PhaseRunResult] = []
    for phase in PHASE_SEQUENCE:
        if phase not in handlers:
            continue
        if should_stop is not None and should_stop():
            return RunPhasesResult(results=tuple(results), phases_completed=len(results), cancelled=True)
        result = await run_phase(ctx, phase, handlers[phase], reason)
        results.append(result)
        if not result.completed:
            break

    completed = sum(1 for result in results if result.completed)
    return RunPhasesResult(results=tuple(results), phases_completed=completed, cancelled=False)


async def fan_out(
    ctx: PipelineContext,
    units: Sequence[U],
    worker: Callable[[U, str], Awaitable[T]],
    *,
    source: str,
    fallback: Any = None,
    tolerate: bool = True,
    cache_key: str | None = None,
) -> list[T]:
    """Run `worker(unit, cache_key)` for every unit through the cached batch.

    With `tolerate` a failing unit yields `fallback` instead of aborting the
    batch. A progress event follows every finished unit.
    """
    progress = Progress(total=len(units))

    def make_task(unit: U) -> Callable[[str], Awaitable[T]]:
        async def task(key: str) -> T:
            value = await worker(unit, key)
            progress.advance()
            ctx.dispatch(make_progress_event(source=source, step=ctx.step, progress=progress))
            return value

        return tolerant(task, fallback, label=source) if tolerate else task

    results = await execute_cached_batch(ctx, [make_task(unit) for unit in units], cache_key)
    LOGGER.info("fan_out_complete source=%s units=%d completed=%d", source, len(units), progress.completed)
    return results
