"""Built-in validators for machine-checkable artifacts."""

from __future__ import annotations

import ast
import json
from typing import Mapping

from pipeline_forge.models import Diagnostic, ValidationResult


def validate_json(text: str, *, location: str = "$input") -> ValidationResult:
    """Validate that text is syntactically valid JSON."""
    candidate = str(text or "")
    try:
        json.loads(candidate)
    except json.JSONDecodeError as exc:
        return ValidationResult.failure(
            [
                Diagnostic(
                    location=f"{location}:{exc.lineno}:{exc.colno}",
                    message=f"Invalid JSON: {exc.msg} at line {exc.lineno}, column {exc.colno}.",
                )
            ]
        )
    return ValidationResult.success()


def _python_diagnostic(path: str, exc: SyntaxError) -> Diagnostic:
    line = int(getattr(exc, "lineno", 0) or 0)
    column = int(getattr(exc, "offset", 0) or 0)
    details = str(exc.msg or "syntax error").strip() or "syntax error"
    return Diagnostic(
        location=f"{path}:{line}:{column}",
        message=f"Invalid Python: {details} at line {line}, column {column}.",
        unit=path,
    )


def validate_python(text: str, *, path: str = "<artifact>") -> ValidationResult:
    """Validate that text is syntactically valid Python code."""
    candidate = str(text or "")
    try:
        ast.parse(candidate, filename=path)
    except SyntaxError as exc:
        return ValidationResult.failure([_python_diagnostic(path, exc)])
    return ValidationResult.success()


def compile_python_files(files: Mapping[str, str]) -> ValidationResult:
    """Compile a set of Python sources, attributing each syntax error to its file.

    Syntax errors are retryable failures. Anything that stops the compiler
    itself (a non-text source, a null byte) is reported as an exception.
    """
    diagnostics: list[Diagnostic] = []
    for path, source in files.items():
        if not isinstance(source, str):
            return ValidationResult.exception(f"{path}: source must be text, got {type(source).__name__}.")
        if "\x00" in source:
            return ValidationResult.exception(f"{path}: source contains a null byte.")
        try:
            compile(source, path, "exec", dont_inherit=True)
        except SyntaxError as exc:
            diagnostics.append(_python_diagnostic(path, exc))
        except ValueError as exc:
            return ValidationResult.exception(f"{path}: {exc}")
    if diagnostics:
        return ValidationResult.failure(diagnostics)
    return ValidationResult.success()
