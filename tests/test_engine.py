"""Phase engine behavior tests."""

from __future__ import annotations

import asyncio

import pytest

from pipeline_forge.config import EngineSettings
from pipeline_forge.context import PipelineContext
from pipeline_forge.correction import CorrectionLoop
from pipeline_forge.engine import fan_out, run_phase, run_phases
from pipeline_forge.models import (
    EVENT_PHASE_COMPLETE,
    EVENT_PHASE_START,
    EVENT_PROGRESS,
    EVENT_REPAIR,
    EVENT_VALIDATION_FAILURE,
    Diagnostic,
    ValidationResult,
)


async def _unused_converse(history, tool_schema, cache_key):
    raise AssertionError("model must not be called")


def _ctx(**kwargs) -> PipelineContext:
    return PipelineContext(converse=_unused_converse, **kwargs)


def test_run_phase_records_artifact_and_emits_start_and_complete() -> None:
    ctx = _ctx()

    result = asyncio.run(run_phase(ctx, "analysis", lambda ctx, step: f"spec@{step}", reason="initial request"))

    assert result.completed is True
    assert result.record is not None
    assert result.record.artifact == "spec@0"
    assert result.record.reason == "initial request"
    assert ctx.state.get("analysis") == result.record
    assert [event.event_type for event in ctx.events.events()] == [EVENT_PHASE_START, EVENT_PHASE_COMPLETE]
    assert ctx.events.events()[0].note == "initial request"


def test_blocked_phase_returns_message_without_running_handler() -> None:
    ctx = _ctx()
    calls: list[int] = []

    result = asyncio.run(run_phase(ctx, "interface-design", lambda ctx, step: calls.append(step)))

    assert result.status == "blocked"
    assert "Requirements analysis not completed yet." in result.message
    assert calls == []
    assert len(ctx.events) == 0


def test_stale_phase_is_blocked_after_requirements_change() -> None:
    ctx = _ctx()
    asyncio.run(run_phase(ctx, "analysis", lambda ctx, step: "v0"))
    asyncio.run(run_phase(ctx, "schema-design", lambda ctx, step: "schema v0"))
    asyncio.run(run_phase(ctx, "analysis", lambda ctx, step: "v1"))

    result = asyncio.run(run_phase(ctx, "interface-design", lambda ctx, step: "ops"))

    assert result.status == "blocked"
    assert "Database schema is outdated (step 0)." in result.message


def test_async_handler_receives_the_step_it_will_be_stored_under() -> None:
    ctx = _ctx()
    asyncio.run(run_phase(ctx, "analysis", lambda ctx, step: "v0"))
    asyncio.run(run_phase(ctx, "analysis", lambda ctx, step: "v1"))

    async def schema_handler(ctx: PipelineContext, step: int) -> str:
        return f"schema@{step}"

    result = asyncio.run(run_phase(ctx, "schema-design", schema_handler))

    assert result.record is not None
    assert result.record.step == 1
    assert result.record.artifact == "schema@1"


def test_events_inside_a_rerun_root_phase_carry_the_new_step() -> None:
    ctx = _ctx()
    asyncio.run(run_phase(ctx, "analysis", lambda ctx, step: "v0"))

    async def handler(ctx: PipelineContext, step: int) -> str:
        results = [ValidationResult.failure([Diagnostic(location="$", message="empty")]), ValidationResult.success()]
        loop = CorrectionLoop.for_context(ctx, "analysis")
        outcome = await loop.run(lambda: "draft", lambda artifact: results.pop(0), lambda a, d: "fixed", 2)
        return outcome.artifact

    asyncio.run(run_phase(ctx, "analysis", handler))

    rerun = ctx.events.events()[2:]
    assert [(event.event_type, event.step) for event in rerun] == [
        (EVENT_PHASE_START, 1),
        (EVENT_VALIDATION_FAILURE, 1),
        (EVENT_REPAIR, 1),
        (EVENT_PHASE_COMPLETE, 1),
    ]
    assert ctx.current_step is None
    assert ctx.step == 1


def test_run_phases_runs_in_waterfall_order() -> None:
    ctx = _ctx()
    handlers = {
        "schema-design": lambda ctx, step: "schema",
        "analysis": lambda ctx, step: "spec",
        "interface-design": lambda ctx, step: "ops",
    }

    result = asyncio.run(run_phases(ctx, handlers))

    assert result.cancelled is False
    assert result.phases_completed == 3
    assert [item.phase for item in result.results] == ["analysis", "schema-design", "interface-design"]
    assert result.blocked is None


def test_run_phases_stops_at_first_blocked_phase() -> None:
    ctx = _ctx()

    result = asyncio.run(run_phases(ctx, {"schema-design": lambda ctx, step: "schema", "test-writing": lambda c, s: "t"}))

    assert result.phases_completed == 0
    assert result.blocked is not None
    assert result.blocked.phase == "schema-design"
    assert len(result.results) == 1


def test_run_phases_stops_between_phases_when_cancel_requested() -> None:
    ctx = _ctx()
    stop_requested = {"value": False}

    def analysis(ctx: PipelineContext, step: int) -> str:
        stop_requested["value"] = True
        return "spec"

    result = asyncio.run(
        run_phases(
            ctx,
            {"analysis": analysis, "schema-design": lambda ctx, step: "schema"},
            should_stop=lambda: stop_requested["value"],
        )
    )

    assert result.cancelled is True
    assert result.phases_completed == 1
    assert ctx.state.get("schema-design") is None


def test_run_phases_rejects_unknown_phase() -> None:
    with pytest.raises(ValueError, match="deployment"):
        asyncio.run(run_phases(_ctx(), {"deployment": lambda ctx, step: None}))


def test_fan_out_tracks_progress_and_tolerates_failures() -> None:
    ctx = _ctx(settings=EngineSettings(concurrency=2))

    async def worker(unit: int, cache_key: str) -> int:
        if unit == 3:
            raise RuntimeError("unit failed")
        return unit * unit

    results = asyncio.run(fan_out(ctx, [1, 2, 3, 4], worker, source="tables", fallback=-1))

    assert results == [1, 4, -1, 16]
    progress = ctx.events.events(EVENT_PROGRESS)
    assert [event.completed for event in progress] == [1, 2, 3]
    assert {event.total for event in progress} == {4}


def test_fan_out_without_tolerance_propagates_failures() -> None:
    ctx = _ctx()

    async def worker(unit: int, cache_key: str) -> int:
        raise RuntimeError("unit failed")

    with pytest.raises(RuntimeError, match="unit failed"):
        asyncio.run(fan_out(ctx, [1, 2], worker, source="tables", tolerate=False))
