"""Generate-validate-repair loop with accumulated diagnostics."""

from __future__ import annotations

from dataclasses import dataclass
import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable

from pipeline_forge.models import (
    Diagnostic,
    PipelineEvent,
    Progress,
    ValidationResult,
    make_repair_event,
    make_validation_failure_event,
)

LOGGER = logging.getLogger("pipeline_forge.correction")


class _Decline:
    def __repr__(self) -> str:
        return "DECLINE"


# Returned by a repairer to say the failure is not one it can fix.
DECLINE: Any = _Decline()


class CompileException(Exception):
    """A validator or compiler could not run at all; the artifact cannot be judged."""

    def __init__(self, message: str, error: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.error = error


@dataclass(frozen=True)
class CorrectionAttempt:
    draft: Any
    diagnostics: tuple[Diagnostic, ...]
    revision: Any = None


@dataclass(frozen=True)
class CorrectionOutcome:
    """Terminal result of one correction loop.

    A failed outcome still carries the last artifact; the caller decides
    whether to keep it or abort the phase.
    """

    artifact: Any
    success: bool
    declined: bool
    attempts: tuple[CorrectionAttempt, ...]
    diagnostics: tuple[Diagnostic, ...]
    validate_calls: int
    repair_calls: int

    @property
    def remaining_diagnostics(self) -> tuple[Diagnostic, ...]:
        if self.success or not self.attempts:
            return ()
        return self.attempts[-1].diagnostics

    def explanation(self) -> str:
        if self.success:
            return "Artifact is valid."
        reason = "Repair declined" if self.declined else "Correction attempts exhausted"
        return f"{reason}; unresolved diagnostics:\n{format_diagnostics(self.remaining_diagnostics)}"


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def format_diagnostics(diagnostics: Iterable[Diagnostic]) -> str:
    """Render diagnostics as a numbered list for repair prompts and reports."""
    lines = [f"{index}. {item.render()}" for index, item in enumerate(diagnostics, start=1)]
    return "\n".join(lines) if lines else "(none)"


def filter_diagnostics(result: ValidationResult, unit: str) -> ValidationResult:
    """Keep only the diagnostics attributed to one file or sub-artifact."""
    if result.kind != "failure":
        return result
    kept = [item for item in result.diagnostics if item.unit == unit or item.location == unit]
    if not kept:
        return ValidationResult.success()
    return ValidationResult.failure(kept)


GenerateFn = Callable[[], Any]
ValidateFn = Callable[[Any], "ValidationResult | Awaitable[ValidationResult]"]
RepairFn = Callable[[Any, tuple[Diagnostic, ...]], Any]


class CorrectionLoop:
    """Iterative correction loop bounded by an attempt counter.

    `generate`, `validate` and `repair` may be plain or async callables.
    `repair(artifact, diagnostics)` receives every diagnostic seen so far and
    returns a revised artifact or `DECLINE`. With a `capacity`, a failure
    spanning more units than that is repaired one capacity-sized group per
    attempt, re-validating after each group.
    """

    def __init__(
        self,
        *,
        source: str = "correction",
        capacity: int | None = None,
        step: int = 0,
        on_event: Callable[[PipelineEvent], Any] | None = None,
        progress: Progress | None = None,
    ) -> None:
        if capacity is not None and capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.source = source
        self.capacity = capacity
        self.step = step
        self.on_event = on_event
        self.progress = progress

    @classmethod
    def for_context(cls, ctx: Any, source: str, *, progress: Progress | None = None) -> CorrectionLoop:
        return cls(
            source=source,
            capacity=ctx.settings.correction_capacity,
            step=ctx.step,
            on_event=ctx.dispatch,
            progress=progress,
        )

    def _emit(self, event: PipelineEvent) -> None:
        if self.on_event is not None:
            self.on_event(event)

    async def run(
        self,
        generate: GenerateFn,
        validate: ValidateFn,
        repair: RepairFn,
        max_attempts: int,
    ) -> CorrectionOutcome:
        if max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")

        artifact = await maybe_await(generate())
        accumulated: list[Diagnostic] = []
        attempts: list[CorrectionAttempt] = []
        validate_calls = 0
        repair_calls = 0
        attempt = 0

        def outcome(*, success: bool, declined: bool = False) -> CorrectionOutcome:
            return CorrectionOutcome(
                artifact=artifact,
                success=success,
                declined=declined,
                attempts=tuple(attempts),
                diagnostics=tuple(accumulated),
                validate_calls=validate_calls,
                repair_calls=repair_calls,
            )

        while True:
            result = await maybe_await(validate(artifact))
            validate_calls += 1
            if result.kind == "exception":
                LOGGER.error("correction_exception source=%s attempt=%d error=%s", self.source, attempt, result.error)
                raise CompileException(
                    f"{self.source}: validator could not process the artifact: {result.error}",
                    result.error,
                )
            if result.ok:
                LOGGER.info("correction_success source=%s attempt=%d", self.source, attempt)
                return outcome(success=True)

            accumulated.extend(result.diagnostics)
            if attempt >= max_attempts:
                attempts.append(CorrectionAttempt(draft=artifact, diagnostics=result.diagnostics))
                LOGGER.warning(
                    "correction_exhausted source=%s attempts=%d diagnostics=%d",
                    self.source,
                    attempt,
                    len(result.diagnostics),
                )
                return outcome(success=False)

            attempt += 1
            self._emit(
                make_validation_failure_event(
                    source=self.source,
                    step=self.step,
                    attempt=attempt,
                    diagnostics=result.diagnostics,
                    progress=self.progress,
                )
            )
            revised = await self._repair(artifact, result.diagnostics, tuple(accumulated), repair, attempt)
            repair_calls += 1
            if revised is DECLINE:
                attempts.append(CorrectionAttempt(draft=artifact, diagnostics=result.diagnostics))
                LOGGER.info("correction_declined source=%s attempt=%d", self.source, attempt)
                return outcome(success=False, declined=True)

            attempts.append(CorrectionAttempt(draft=artifact, diagnostics=result.diagnostics, revision=revised))
            artifact = revised

    async def _repair(
        self,
        artifact: Any,
        current: tuple[Diagnostic, ...],
        accumulated: tuple[Diagnostic, ...],
        repair: RepairFn,
        attempt: int,
    ) -> Any:
        """Repair once; over capacity, only the first `capacity` failing units are handed over.

        The next validation decides which units still fail, so later groups
        are taken from fresh diagnostics rather than a stale partition.
        """
        keys = list(dict.fromkeys(item.unit for item in current))
        if self.capacity is None or len(keys) <= self.capacity:
            revised = await maybe_await(repair(artifact, accumulated))
            if revised is not DECLINE:
                self._emit(make_repair_event(source=self.source, step=self.step, attempt=attempt, progress=self.progress))
            return revised

        members = set(keys[: self.capacity])
        LOGGER.info(
            "correction_partition source=%s attempt=%d units=%d capacity=%d",
            self.source,
            attempt,
            len(keys),
            self.capacity,
        )
        # Unattributed diagnostics count as one unit of their own.
        group_diagnostics = tuple(item for item in accumulated if item.unit in members)
        revised = await maybe_await(repair(artifact, group_diagnostics))
        if revised is not DECLINE:
            self._emit(
                make_repair_event(
                    source=self.source,
                    step=self.step,
                    attempt=attempt,
                    units=[str(key) for key in keys[: self.capacity] if key is not None],
                    progress=self.progress,
                )
            )
        return revised
