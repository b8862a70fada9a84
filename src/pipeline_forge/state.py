"""Waterfall phase state with step-based staleness detection."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Iterable, Literal

from pipeline_forge.models import PhaseRecord, _utc_now_iso

LOGGER = logging.getLogger("pipeline_forge.state")

PHASE_SEQUENCE = ("analysis", "schema-design", "interface-design", "test-writing", "implementation")
ROOT_PHASE = PHASE_SEQUENCE[0]

PHASE_DESCRIPTIONS = {
    "analysis": "Requirements analysis",
    "schema-design": "Database design",
    "interface-design": "API interface design",
    "test-writing": "E2E test creation",
    "implementation": "Implementation",
}

PHASE_NAMES = {
    "analysis": "Requirements analysis",
    "schema-design": "Database schema",
    "interface-design": "API interface",
    "test-writing": "Test functions",
    "implementation": "Implementation",
}

PHASE_ACTIONS = {
    "analysis": "analyze requirements",
    "schema-design": "design database",
    "interface-design": "design API interface",
    "test-writing": "create tests",
    "implementation": "implement the program",
}

CheckStatus = Literal["ready", "missing", "stale"]


@dataclass(frozen=True)
class StateCheck:
    """Outcome of asking whether a phase may run.

    `phase` names the predecessor that blocks the run (the first missing one,
    or the stale immediate predecessor) and is empty when the run is allowed.
    """

    status: CheckStatus
    phase: str = ""
    message: str = ""

    @property
    def allowed(self) -> bool:
        return self.status == "ready"


def phase_index(phase: str) -> int:
    try:
        return PHASE_SEQUENCE.index(phase)
    except ValueError as exc:
        raise ValueError(f"Unsupported phase name: {phase}") from exc


def _missing_steps_message(target: str, missing: str) -> str:
    target_index = phase_index(target)
    missing_index = phase_index(missing)
    if missing_index == 0 and target_index == 1:
        return (
            "Requirements analysis not started.\n\n"
            "Discuss your project to generate requirements analysis.\n"
            f"{PHASE_DESCRIPTIONS[target]} will follow after requirements are ready."
        )
    remaining = "\n".join(
        f"    {number}. {PHASE_DESCRIPTIONS[phase]}"
        for number, phase in enumerate(PHASE_SEQUENCE[missing_index : target_index + 1], start=1)
    )
    return (
        f"{PHASE_DESCRIPTIONS[missing]} not completed yet.\n\n"
        f"To {PHASE_ACTIONS[target]}, complete these steps:\n\n"
        f"{remaining}\n\n"
        f"Start with step {missing_index + 1}."
    )


def _stale_message(outdated: PhaseRecord, root: PhaseRecord) -> str:
    return (
        f"{PHASE_NAMES[outdated.phase]} is outdated (step {outdated.step}).\n\n"
        f"Requirements are now at step {root.step}.\n\n"
        f"Please regenerate {outdated.phase} to match current requirements."
    )


class PipelineState:
    """Latest (and previous) completed record of every phase, in waterfall order."""

    def __init__(self) -> None:
        self._slots: dict[str, PhaseRecord | None] = {phase: None for phase in PHASE_SEQUENCE}
        self._previous: dict[str, PhaseRecord | None] = {phase: None for phase in PHASE_SEQUENCE}

    @classmethod
    def from_records(cls, records: Iterable[PhaseRecord]) -> PipelineState:
        """Rebuild state by replaying completed records in stored order."""
        state = cls()
        for record in records:
            state._store(record)
        return state

    def get(self, phase: str) -> PhaseRecord | None:
        phase_index(phase)
        return self._slots[phase]

    def previous(self, phase: str) -> PhaseRecord | None:
        """Return the record the latest completion of `phase` replaced."""
        phase_index(phase)
        return self._previous[phase]

    @property
    def root(self) -> PhaseRecord | None:
        return self._slots[ROOT_PHASE]

    def records(self) -> list[PhaseRecord]:
        return [record for record in self._slots.values() if record is not None]

    def can_run(self, phase: str) -> StateCheck:
        target_index = phase_index(phase)
        if target_index == 0:
            return StateCheck(status="ready")

        for predecessor in PHASE_SEQUENCE[:target_index]:
            if self._slots[predecessor] is None:
                return StateCheck(
                    status="missing",
                    phase=predecessor,
                    message=_missing_steps_message(phase, predecessor),
                )

        root = self._slots[ROOT_PHASE]
        immediate = self._slots[PHASE_SEQUENCE[target_index - 1]]
        assert root is not None and immediate is not None
        if immediate.step != root.step:
            return StateCheck(status="stale", phase=immediate.phase, message=_stale_message(immediate, root))
        return StateCheck(status="ready")

    def next_step(self, phase: str) -> int:
        """Step number a fresh completion of `phase` should carry.

        The root phase advances the requirements version; every other phase
        adopts whatever version the root is at.
        """
        phase_index(phase)
        root = self._slots[ROOT_PHASE]
        if phase == ROOT_PHASE:
            return 0 if root is None else root.step + 1
        return 0 if root is None else root.step

    def complete(
        self,
        phase: str,
        step: int,
        artifact: Any,
        *,
        started_at: str | None = None,
        reason: str = "",
    ) -> PhaseRecord:
        """Store the artifact of a finished phase run and return its record."""
        target_index = phase_index(phase)
        for predecessor in PHASE_SEQUENCE[:target_index]:
            if self._slots[predecessor] is None:
                raise ValueError(f"Cannot complete {phase}: {predecessor} has no record yet.")
        record = PhaseRecord(
            phase=phase,
            step=int(step),
            artifact=artifact,
            completed_at=_utc_now_iso(),
            started_at=started_at,
            reason=reason,
        )
        self._store(record)
        return record

    def _store(self, record: PhaseRecord) -> None:
        phase_index(record.phase)
        self._previous[record.phase] = self._slots[record.phase]
        self._slots[record.phase] = record
        LOGGER.info("phase_record phase=%s step=%d", record.phase, record.step)


def predicate_state_message(state: PipelineState, phase: str) -> str | None:
    """Return the blocking message for `phase`, or None when it may run."""
    check = state.can_run(phase)
    return None if check.allowed else check.message
