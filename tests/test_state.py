"""Waterfall gating and staleness tests for pipeline state."""

from __future__ import annotations

import pytest

from pipeline_forge.models import PhaseRecord
from pipeline_forge.state import PHASE_SEQUENCE, PipelineState, predicate_state_message


def _state_with(*records: tuple[str, int]) -> PipelineState:
    return PipelineState.from_records(
        PhaseRecord(phase=phase, step=step, artifact=f"{phase}@{step}") for phase, step in records
    )


def test_root_phase_is_always_ready() -> None:
    check = PipelineState().can_run("analysis")

    assert check.allowed is True
    assert check.status == "ready"
    assert check.message == ""


def test_second_phase_without_root_explains_analysis_is_missing() -> None:
    check = PipelineState().can_run("schema-design")

    assert check.status == "missing"
    assert check.phase == "analysis"
    assert "Requirements analysis not started." in check.message


def test_missing_predecessor_enumerates_remaining_steps_in_order() -> None:
    state = _state_with(("analysis", 0))

    check = state.can_run("test-writing")

    assert check.status == "missing"
    assert check.phase == "schema-design"
    assert check.message.startswith("Database design not completed yet.")
    assert "To create tests, complete these steps:" in check.message
    assert "    1. Database design\n    2. API interface design\n    3. E2E test creation\n" in check.message
    assert "Requirements analysis" not in check.message
    assert check.message.endswith("Start with step 2.")


def test_stale_immediate_predecessor_blocks_next_phase() -> None:
    state = _state_with(("analysis", 2), ("schema-design", 2), ("analysis", 3))

    check = state.can_run("interface-design")

    assert check.status == "stale"
    assert check.phase == "schema-design"
    assert "Database schema is outdated (step 2)." in check.message
    assert "Requirements are now at step 3." in check.message


def test_all_predecessors_current_allows_every_phase() -> None:
    state = _state_with(
        ("analysis", 1),
        ("schema-design", 1),
        ("interface-design", 1),
        ("test-writing", 1),
    )

    assert all(state.can_run(phase).allowed for phase in PHASE_SEQUENCE)
    assert predicate_state_message(state, "implementation") is None


def test_can_run_messages_are_deterministic() -> None:
    state = _state_with(("analysis", 0))

    assert state.can_run("implementation").message == state.can_run("implementation").message
    assert predicate_state_message(state, "implementation") == state.can_run("implementation").message


def test_next_step_advances_root_and_aligns_other_phases() -> None:
    state = PipelineState()
    assert state.next_step("analysis") == 0

    state.complete("analysis", state.next_step("analysis"), "spec v0")
    state.complete("analysis", state.next_step("analysis"), "spec v1")

    assert state.root is not None and state.root.step == 1
    assert state.next_step("analysis") == 2
    assert state.next_step("schema-design") == 1


def test_complete_refuses_to_skip_a_phase() -> None:
    state = _state_with(("analysis", 0))

    with pytest.raises(ValueError, match="schema-design"):
        state.complete("interface-design", 0, "ops")

    assert state.get("interface-design") is None


def test_complete_keeps_replaced_record_as_previous() -> None:
    state = PipelineState()
    first = state.complete("analysis", 0, "first")
    second = state.complete("analysis", 1, "second")

    assert state.get("analysis") == second
    assert state.previous("analysis") == first
    assert state.previous("schema-design") is None


def test_regenerating_predecessor_clears_staleness() -> None:
    state = _state_with(("analysis", 1), ("schema-design", 1), ("analysis", 2))
    assert state.can_run("interface-design").status == "stale"

    state.complete("schema-design", state.next_step("schema-design"), "schema v2")

    assert state.can_run("interface-design").allowed is True


def test_unknown_phase_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unsupported phase name"):
        PipelineState().can_run("deployment")
