"""Event log and usage accumulator tests."""

from __future__ import annotations

from pipeline_forge.events import EventLog, UsageAggregate
from pipeline_forge.models import (
    EVENT_PHASE_START,
    PhaseRecord,
    Progress,
    format_event_label,
    make_phase_complete_event,
    make_phase_start_event,
    make_progress_event,
)


def test_event_log_is_append_only_and_filterable() -> None:
    log = EventLog()
    log.append(make_phase_start_event(phase="analysis", step=0))
    log.append(make_phase_complete_event(record=PhaseRecord(phase="analysis", step=0, artifact="spec")))

    assert len(log) == 2
    assert [event.phase for event in log.events(EVENT_PHASE_START)] == ["analysis"]

    snapshot = log.events()
    snapshot.clear()
    assert len(log) == 2


def test_failing_listener_does_not_interrupt_other_listeners() -> None:
    log = EventLog()
    seen: list[str] = []

    def broken(event) -> None:
        raise RuntimeError("observer failed")

    log.subscribe(broken)
    log.subscribe(lambda event: seen.append(event.event_type))

    log.append(make_phase_start_event(phase="analysis", step=0))

    assert seen == [EVENT_PHASE_START]
    assert len(log) == 1


def test_phase_complete_event_reuses_record_timestamp() -> None:
    record = PhaseRecord(phase="schema-design", step=2, artifact={}, completed_at="2024-01-01T00:00:00+00:00")

    event = make_phase_complete_event(record=record)

    assert event.created_at == record.completed_at
    assert event.step == 2


def test_progress_event_label_includes_counts() -> None:
    progress = Progress(total=5)
    progress.advance()

    event = make_progress_event(source="tables", step=1, progress=progress)

    assert format_event_label(event) == "tables progress - step 1 (1/5)"


def test_usage_aggregate_tracks_sources_and_total() -> None:
    usage = UsageAggregate()

    usage.record_tokens("schema", 100, 20)
    usage.record_tokens("interface", 50, None)
    usage.record_call("schema", success=False, validation_failure=True)
    usage.record_call("schema", success=True)
    usage.record_call("interface", success=False, invalid_json=True)

    assert usage.source("schema").token_usage.total == 120
    assert usage.total.token_usage.input_tokens == 150
    assert usage.source("schema").metric.attempt == 2
    assert usage.source("schema").metric.success == 1
    assert usage.total.metric.validation_failure == 1
    assert usage.total.metric.invalid_json == 1
    assert sorted(usage.sources()) == ["interface", "schema"]
