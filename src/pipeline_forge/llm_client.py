"""LLM client contract, model routing, and normalized API errors."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import logging
from typing import Any, Literal

from pipeline_forge.config import AppConfig

ModelTier = Literal["budget", "premium"]
ErrorCategory = Literal["auth", "rate_limit", "network", "invalid_request", "server", "unknown"]
TurnKind = Literal["message", "tool_invocation"]

LOGGER = logging.getLogger("pipeline_forge.llm_client")
if not LOGGER.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    LOGGER.addHandler(handler)
LOGGER.setLevel(logging.INFO)
LOGGER.propagate = False


@dataclass(frozen=True)
class ModelTurn:
    """One model reply: plain text, or a function call with parsed arguments.

    For a tool invocation `payload` is the decoded argument object; when the
    arguments were not valid JSON `payload` is None and `arguments_error`
    describes the decode failure.
    """

    kind: TurnKind
    payload: Any
    model_used: str = ""
    tool_name: str | None = None
    raw_arguments: str | None = None
    arguments_error: str | None = None
    request_id: str | None = None
    usage_input_tokens: int | None = None
    usage_output_tokens: int | None = None


class LLMError(Exception):
    """Normalized error carrying a user-readable message and category."""

    def __init__(self, message: str, category: ErrorCategory) -> None:
        super().__init__(message)
        self.message = message
        self.category = category


def _history_chars(history: list[dict[str, Any]]) -> int:
    total = 0
    for message in history:
        content = message.get("content")
        if isinstance(content, str):
            total += len(content)
    return total


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[: max_chars - 3]}..."


class LLMClient:
    """Chat-completions transport implementing `converse` with tier routing."""

    def __init__(
        self,
        config: AppConfig,
        *,
        tier: ModelTier = "budget",
        timeout_seconds: float | None = None,
        max_retries: int = 2,
        max_output_tokens: int = 8000,
    ) -> None:
        self.config = config
        self.tier = tier
        self.timeout_seconds = config.engine.timeout_seconds if timeout_seconds is None else timeout_seconds
        self.max_retries = max(0, max_retries)
        self.max_output_tokens = max_output_tokens

    def resolve_model(self, tier: ModelTier, model_override: str | None = None) -> str:
        """Resolve a model name from tier selection and optional override."""
        if model_override:
            return model_override
        if tier == "budget":
            return self.config.budget_model
        if tier == "premium":
            return self.config.premium_model
        raise ValueError(f"Unsupported tier: {tier}")

    def resolve_reasoning_effort(self, tier: ModelTier) -> str | None:
        """Resolve reasoning effort for the selected tier."""
        if tier == "budget":
            return self.config.budget_reasoning_effort
        if tier == "premium":
            return self.config.premium_reasoning_effort
        raise ValueError(f"Unsupported tier: {tier}")

    def _log_request(
        self,
        *,
        tier: ModelTier,
        model: str,
        history: list[dict[str, Any]],
        tool_name: str | None,
        outcome: Literal["success", "error"],
        error_category: ErrorCategory | None,
    ) -> None:
        LOGGER.info(
            "llm_request tier=%s model=%s prompt_chars=%d messages=%d tool=%s outcome=%s error_category=%s",
            tier,
            model,
            _history_chars(history),
            len(history),
            tool_name or "none",
            outcome,
            error_category or "none",
        )

    def _log_verbose(self, label: str, text: str) -> None:
        if not self.config.verbose_llm_logging:
            return
        LOGGER.info("llm_%s text=%s", label, _truncate(text, self.config.verbose_llm_log_max_chars))

    @staticmethod
    def _extract_token_count(usage: object, primary_key: str, fallback_key: str) -> int | None:
        if usage is None:
            return None
        value = getattr(usage, primary_key, None)
        if value is None:
            value = getattr(usage, fallback_key, None)
        return value if isinstance(value, int) else None

    @staticmethod
    def _compact_error_message(error: BaseException, *, max_chars: int = 320) -> str:
        compact = " ".join(str(error).split())
        if len(compact) <= max_chars:
            return compact
        return f"{compact[: max_chars - 3]}..."

    @classmethod
    def _parse_completion(cls, completion: Any, model_used: str) -> ModelTurn:
        """Turn a chat completion into a ModelTurn, decoding tool arguments."""
        message = completion.choices[0].message
        request_id_raw = getattr(completion, "id", None)
        usage = getattr(completion, "usage", None)
        common = {
            "model_used": model_used,
            "request_id": str(request_id_raw) if request_id_raw is not None else None,
            "usage_input_tokens": cls._extract_token_count(usage, "prompt_tokens", "input_tokens"),
            "usage_output_tokens": cls._extract_token_count(usage, "completion_tokens", "output_tokens"),
        }
        tool_calls = getattr(message, "tool_calls", None) or []
        if not tool_calls:
            return ModelTurn(kind="message", payload=message.content or "", **common)

        function = tool_calls[0].function
        raw_arguments = function.arguments or ""
        try:
            arguments = json.loads(raw_arguments) if raw_arguments.strip() else {}
        except json.JSONDecodeError as exc:
            return ModelTurn(
                kind="tool_invocation",
                payload=None,
                tool_name=function.name,
                raw_arguments=raw_arguments,
                arguments_error=f"Invalid JSON: {exc.msg} at line {exc.lineno}, column {exc.colno}.",
                **common,
            )
        return ModelTurn(
            kind="tool_invocation",
            payload=arguments,
            tool_name=function.name,
            raw_arguments=raw_arguments,
            **common,
        )

    def _build_client(self) -> Any:
        try:
            from openai import AsyncOpenAI
        except ModuleNotFoundError as exc:
            raise LLMError(
                "OpenAI client dependency is missing. Install project requirements.",
                "unknown",
            ) from exc
        return AsyncOpenAI(api_key=self.config.openai_api_key, timeout=self.timeout_seconds)

    async def converse(
        self,
        history: list[dict[str, Any]],
        tool_schema: dict[str, Any] | None,
        cache_key: str | None = None,
        *,
        tier: ModelTier | None = None,
        temperature: float = 0.2,
        model_override: str | None = None,
    ) -> ModelTurn:
        """Send the conversation and return the model's next turn.

        When `tool_schema` is given the model is required to call that
        function; `cache_key` is forwarded so related calls share a prompt
        cache on the provider side.
        """
        resolved_tier = tier or self.tier
        resolved_model = self.resolve_model(tier=resolved_tier, model_override=model_override)
        reasoning_effort = self.resolve_reasoning_effort(tier=resolved_tier)
        tool_name = tool_schema.get("name") if tool_schema else None

        try:
            from openai import (
                APIConnectionError,
                APIStatusError,
                APITimeoutError,
                AuthenticationError,
                BadRequestError,
                RateLimitError,
            )
        except ModuleNotFoundError as exc:
            raise LLMError(
                "OpenAI client dependency is missing. Install project requirements.",
                "unknown",
            ) from exc

        client = self._build_client()
        if history:
            self._log_verbose("request", str(history[-1].get("content", "")))

        def fail(category: ErrorCategory) -> None:
            self._log_request(
                tier=resolved_tier,
                model=resolved_model,
                history=history,
                tool_name=tool_name,
                outcome="error",
                error_category=category,
            )

        for attempt in range(self.max_retries + 1):
            try:
                token_field = "max_completion_tokens"
                include_temperature = True
                include_cache_key = cache_key is not None
                completion = None
                for _ in range(4):
                    request_base: dict[str, object] = {
                        "model": resolved_model,
                        "messages": history,
                    }
                    if tool_schema is not None:
                        request_base["tools"] = [{"type": "function", "function": tool_schema}]
                        request_base["tool_choice"] = "required"
                    if reasoning_effort is not None:
                        request_base["reasoning_effort"] = reasoning_effort
                    if include_temperature:
                        request_base["temperature"] = temperature
                    if include_cache_key:
                        request_base["prompt_cache_key"] = cache_key
                    request_base[token_field] = self.max_output_tokens

                    try:
                        completion = await client.chat.completions.create(**request_base)
                        break
                    except BadRequestError as retry_exc:
                        message = str(retry_exc)
                        changed = False

                        if token_field == "max_completion_tokens" and "max_completion_tokens" in message:
                            token_field = "max_tokens"
                            changed = True
                        elif token_field == "max_tokens" and "max_tokens" in message and "max_completion_tokens" in message:
                            token_field = "max_completion_tokens"
                            changed = True

                        if include_temperature and "temperature" in message and "default (1)" in message:
                            include_temperature = False
                            changed = True

                        if include_cache_key and "prompt_cache_key" in message:
                            include_cache_key = False
                            changed = True

                        if not changed:
                            raise
                    except TypeError as retry_exc:
                        if include_cache_key and "prompt_cache_key" in str(retry_exc):
                            include_cache_key = False
                            continue
                        raise
                if completion is None:
                    raise LLMError("Unable to prepare a compatible OpenAI request.", "invalid_request")

                turn = self._parse_completion(completion, resolved_model)
                self._log_request(
                    tier=resolved_tier,
                    model=resolved_model,
                    history=history,
                    tool_name=tool_name,
                    outcome="success",
                    error_category=None,
                )
                self._log_verbose("response", turn.raw_arguments or str(turn.payload))
                return turn
            except AuthenticationError as exc:
                fail("auth")
                raise LLMError(
                    "Authentication failed. Check OPENAI_API_KEY and model access.",
                    "auth",
                ) from exc
            except BadRequestError as exc:
                fail("invalid_request")
                detail = self._compact_error_message(exc)
                raise LLMError(
                    f"Invalid request sent to OpenAI: {detail}",
                    "invalid_request",
                ) from exc
            except RateLimitError as exc:
                if attempt < self.max_retries:
                    await asyncio.sleep(0.4 * (attempt + 1))
                    continue
                fail("rate_limit")
                raise LLMError("Rate limit reached. Retry in a moment.", "rate_limit") from exc
            except (APIConnectionError, APITimeoutError) as exc:
                if attempt < self.max_retries:
                    await asyncio.sleep(0.4 * (attempt + 1))
                    continue
                fail("network")
                raise LLMError("Network or timeout error while contacting OpenAI.", "network") from exc
            except APIStatusError as exc:
                status_code = getattr(exc, "status_code", None)
                if status_code is not None and status_code >= 500:
                    if attempt < self.max_retries:
                        await asyncio.sleep(0.4 * (attempt + 1))
                        continue
                    fail("server")
                    raise LLMError("OpenAI server error.", "server") from exc
                detail = self._compact_error_message(exc)
                if status_code is not None and 400 <= status_code < 500:
                    fail("invalid_request")
                    raise LLMError(
                        f"OpenAI API error (status {status_code}): {detail}",
                        "invalid_request",
                    ) from exc
                fail("unknown")
                raise LLMError(f"Unexpected OpenAI API error: {detail}", "unknown") from exc
            except LLMError as exc:
                fail(exc.category)
                raise
            except Exception as exc:
                fail("unknown")
                raise LLMError("Unexpected LLM request failure.", "unknown") from exc

        fail("unknown")
        raise LLMError("Unexpected LLM request failure.", "unknown")
