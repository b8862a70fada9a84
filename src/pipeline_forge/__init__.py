"""Pipeline Forge: waterfall generation with validate-and-repair loops."""

from __future__ import annotations

__all__ = [
    "config",
    "models",
    "state",
    "events",
    "context",
    "llm_client",
    "batch",
    "correction",
    "schemas",
    "validators",
    "function_call",
    "retrieval",
    "naming",
    "engine",
]
