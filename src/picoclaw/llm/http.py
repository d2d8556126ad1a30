"""
OpenAI-compatible HTTP transport with retry and automatic failover.

Works with any backend exposing ``{base}/chat/completions`` (OpenRouter,
OpenAI, Gemini's compatibility endpoint, Zhipu, Groq, Moonshot, vLLM).
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
import structlog

from .base import (
    RAW_ARGUMENTS_KEY,
    BaseLLM,
    ChatOptions,
    LLMMessage,
    LLMResponse,
    ToolArgument,
    ToolCall,
    ToolDefinition,
    UsageInfo,
)
from .errors import ErrorKind, LLMError

logger = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE_SECONDS = 2.0

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 529})
OVERLOAD_MARKERS = ("engine_overloaded", "overloaded")

# Models that reject max_tokens and expect max_completion_tokens instead.
COMPLETION_TOKENS_MODEL_MARKERS = ("glm", "o1")


@dataclass
class Endpoint:
    """A backend the transport can talk to."""

    api_base: str
    model: str
    api_key: str = ""

    @property
    def url(self) -> str:
        return self.api_base.rstrip("/") + "/chat/completions"


def strip_orphaned_tool_messages(messages: list[LLMMessage]) -> list[LLMMessage]:
    """Drop tool results whose call id was never announced by an assistant turn.

    Backends reject a ``tool`` message that does not answer a preceding
    ``tool_calls`` entry, so these are removed before every attempt.
    """
    valid_ids: set[str] = set()
    cleaned: list[LLMMessage] = []

    for msg in messages:
        if msg.role == "assistant" and msg.tool_calls:
            valid_ids.update(tc.id for tc in msg.tool_calls)
            cleaned.append(msg)
        elif msg.role == "tool":
            if msg.tool_call_id and msg.tool_call_id in valid_ids:
                cleaned.append(msg)
            else:
                logger.warning(
                    "Stripping orphaned tool message from history",
                    tool_call_id=msg.tool_call_id,
                )
        else:
            cleaned.append(msg)

    return cleaned


def decode_tool_arguments(raw: Any) -> dict[str, ToolArgument]:
    """Decode a tool-call arguments payload, keeping malformed input verbatim."""
    if isinstance(raw, dict):
        return raw
    if raw is None or raw == "":
        return {}
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError):
        return {RAW_ARGUMENTS_KEY: raw}
    if not isinstance(decoded, dict):
        return {RAW_ARGUMENTS_KEY: raw}
    return decoded


def parse_response(payload: dict[str, Any], model: str = "") -> LLMResponse:
    """Convert a chat-completion payload into an LLMResponse."""
    usage = None
    if isinstance(payload.get("usage"), dict):
        raw_usage = payload["usage"]
        usage = UsageInfo(
            prompt_tokens=raw_usage.get("prompt_tokens") or 0,
            completion_tokens=raw_usage.get("completion_tokens") or 0,
            total_tokens=raw_usage.get("total_tokens") or 0,
        )

    choices = payload.get("choices") or []
    if not choices:
        return LLMResponse(content="", finish_reason="stop", usage=usage, model=model)

    choice = choices[0]
    message = choice.get("message") or {}

    tool_calls = []
    for tc in message.get("tool_calls") or []:
        function = tc.get("function") or {}
        tool_calls.append(ToolCall(
            id=tc.get("id") or "",
            name=function.get("name") or "",
            arguments=decode_tool_arguments(function.get("arguments")),
        ))

    return LLMResponse(
        content=message.get("content") or "",
        tool_calls=tool_calls,
        finish_reason=choice.get("finish_reason") or "stop",
        usage=usage,
        model=payload.get("model") or model,
    )


def _is_overload_text(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in OVERLOAD_MARKERS)


def _preview(text: str, limit: int = 300) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class HTTPProvider(BaseLLM):
    """Chat-completion client for OpenAI-compatible backends.

    Each attempt is retried with exponential backoff on transient failures.
    When a fallback endpoint is configured, a failover-eligible error from
    the primary re-issues the request once against the fallback, which has
    its own retry budget.
    """

    def __init__(
        self,
        primary: Endpoint,
        fallback: Endpoint | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: float = DEFAULT_BACKOFF_BASE_SECONDS,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.primary = primary
        self.fallback = fallback
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    @property
    def default_model(self) -> str:
        return self.primary.model

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HTTPProvider":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def chat(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        model: str | None = None,
        options: ChatOptions | None = None,
    ) -> LLMResponse:
        """Send a request to the primary backend, failing over if allowed."""
        if not self.primary.api_base:
            raise LLMError("API base not configured", ErrorKind.CONFIGURATION)

        model = model or self.primary.model

        try:
            return await self._chat_direct(self.primary, model, messages, tools, options)
        except LLMError as e:
            if self.fallback is None or not e.failover_eligible:
                raise
            logger.warning(
                "Primary model failed, switching to fallback",
                primary_model=model,
                primary_error=str(e),
                error_kind=e.kind.value,
                fallback_model=self.fallback.model,
            )

        return await self._chat_direct(
            self.fallback, self.fallback.model, messages, tools, options
        )

    def build_request(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None,
        model: str,
        options: ChatOptions | None,
    ) -> dict[str, Any]:
        """Serialize a request body in the chat-completions wire format."""
        options = options or ChatOptions()
        body: dict[str, Any] = {
            "model": model,
            "messages": [self._convert_message(m) for m in messages],
        }

        if tools:
            body["tools"] = [tool.to_wire() for tool in tools]
            body["tool_choice"] = "auto"

        if options.max_tokens is not None:
            lowered = model.lower()
            if any(marker in lowered for marker in COMPLETION_TOKENS_MODEL_MARKERS):
                body["max_completion_tokens"] = options.max_tokens
            else:
                body["max_tokens"] = options.max_tokens

        if options.temperature is not None:
            body["temperature"] = options.temperature

        return body

    def _convert_message(self, msg: LLMMessage) -> dict[str, Any]:
        if msg.role == "tool":
            return {
                "role": "tool",
                "tool_call_id": msg.tool_call_id,
                "content": msg.content,
            }
        if msg.role == "assistant" and msg.tool_calls:
            return {
                "role": "assistant",
                "content": msg.content,
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": json.dumps(tc.arguments, ensure_ascii=False),
                        },
                    }
                    for tc in msg.tool_calls
                ],
            }
        return {"role": msg.role, "content": msg.content}

    async def _chat_direct(
        self,
        endpoint: Endpoint,
        model: str,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None,
        options: ChatOptions | None,
    ) -> LLMResponse:
        """Issue one logical call against a single endpoint, with retries."""
        body = self.build_request(strip_orphaned_tool_messages(messages), tools, model, options)
        headers = {"Content-Type": "application/json"}
        if endpoint.api_key:
            headers["Authorization"] = f"Bearer {endpoint.api_key}"

        last_error: LLMError | None = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                backoff = self.backoff_base * (2 ** (attempt - 1))
                logger.warning(
                    "Retrying API call",
                    attempt=attempt,
                    max_retries=self.max_retries,
                    backoff_seconds=backoff,
                    model=model,
                )
                await self._sleep(backoff)

            try:
                response = await self._client.post(endpoint.url, json=body, headers=headers)
            except httpx.TimeoutException as e:
                last_error = LLMError(
                    f"Request timed out: {e}", ErrorKind.TRANSIENT, model=model
                )
                continue
            except httpx.HTTPError as e:
                last_error = LLMError(
                    f"Failed to send request: {e}", ErrorKind.TRANSIENT, model=model
                )
                continue

            status = response.status_code
            text = response.text

            if 200 <= status < 300:
                try:
                    payload = self._decode_payload(text, status, model)
                except LLMError:
                    if not _is_overload_text(text):
                        raise
                    payload = {}

                if payload.get("choices"):
                    return parse_response(payload, model)
                if _is_overload_text(text):
                    logger.warning(
                        "Backend reported overload in a successful response",
                        status=status,
                        body=_preview(text),
                    )
                    last_error = LLMError(
                        f"API overloaded (status {status}): {text}",
                        ErrorKind.TRANSIENT,
                        status_code=status,
                        body=text,
                        model=model,
                    )
                    continue
                if payload.get("error") is None:
                    return parse_response(payload, model)
                raise LLMError(
                    f"API error (status {status}): {text}",
                    ErrorKind.INVALID_RESPONSE,
                    status_code=status,
                    body=text,
                    model=model,
                )

            if status in RETRYABLE_STATUSES or status >= 500 or _is_overload_text(text):
                logger.warning(
                    "Transient API error",
                    status=status,
                    body=_preview(text),
                    will_retry=attempt < self.max_retries,
                )
                last_error = LLMError(
                    f"API error (status {status}): {text}",
                    ErrorKind.TRANSIENT,
                    status_code=status,
                    body=text,
                    model=model,
                )
                continue

            raise LLMError(
                f"API error (status {status}): {text}",
                ErrorKind.CLIENT,
                status_code=status,
                body=text,
                model=model,
            )

        if last_error is None:
            raise LLMError(
                f"No request attempted (max_retries={self.max_retries})",
                ErrorKind.CONFIGURATION,
                model=model,
            )
        raise LLMError(
            f"API call failed after {self.max_retries} retries: {last_error}",
            ErrorKind.RETRIES_EXHAUSTED,
            status_code=last_error.status_code,
            body=last_error.body,
            model=model,
        )

    def _decode_payload(self, text: str, status: int, model: str) -> dict[str, Any]:
        try:
            payload = json.loads(text)
        except ValueError as e:
            raise LLMError(
                f"Failed to decode response: {e}",
                ErrorKind.INVALID_RESPONSE,
                status_code=status,
                body=text,
                model=model,
            ) from e
        if not isinstance(payload, dict):
            raise LLMError(
                "Unexpected response shape",
                ErrorKind.INVALID_RESPONSE,
                status_code=status,
                body=text,
                model=model,
            )
        return payload
