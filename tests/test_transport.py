"""
Tests for the HTTP transport: retries, failover and wire format.
"""

import asyncio
import json

import httpx
import pytest

from picoclaw.llm.base import ChatOptions, LLMMessage, ToolCall, ToolDefinition
from picoclaw.llm.errors import ErrorKind, LLMError
from picoclaw.llm.http import (
    Endpoint,
    HTTPProvider,
    decode_tool_arguments,
    parse_response,
    strip_orphaned_tool_messages,
)

PRIMARY = Endpoint(api_base="https://primary.test/v1", model="primary-model", api_key="pk")
FALLBACK = Endpoint(api_base="https://fallback.test/v1", model="fallback-model", api_key="fk")


def ok_payload(content="Hello", tool_calls=None):
    message = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "choices": [{"message": message, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 5, "completion_tokens": 3, "total_tokens": 8},
    }


class Recorder:
    """Collects requests and backoff sleeps made by the provider."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []
        self.sleeps: list[float] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.responses.pop(0)
        if isinstance(body, (dict, list)):
            return httpx.Response(status, json=body)
        return httpx.Response(status, text=body)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def provider(self, fallback=None) -> HTTPProvider:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return HTTPProvider(PRIMARY, fallback=fallback, client=client, sleep=self.sleep)

    def hosts(self) -> list[str]:
        return [r.url.host for r in self.requests]


@pytest.mark.asyncio
async def test_success_parses_content_and_usage():
    """A 200 response is decoded into an LLMResponse."""
    recorder = Recorder([(200, ok_payload("Hi there"))])
    provider = recorder.provider()

    response = await provider.chat([LLMMessage(role="user", content="Hello")])

    assert response.content == "Hi there"
    assert response.tool_calls == []
    assert response.usage.total_tokens == 8
    assert recorder.requests[0].headers["authorization"] == "Bearer pk"
    assert str(recorder.requests[0].url) == "https://primary.test/v1/chat/completions"


@pytest.mark.asyncio
async def test_503_then_success_waits_two_seconds():
    """A transient failure is retried once after the first backoff."""
    recorder = Recorder([(503, "unavailable"), (200, ok_payload("ok"))])
    provider = recorder.provider()

    response = await provider.chat([LLMMessage(role="user", content="Hello")])

    assert response.content == "ok"
    assert len(recorder.requests) == 2
    assert recorder.sleeps == [2.0]


@pytest.mark.asyncio
async def test_retries_exhausted_uses_exponential_backoff():
    """Three retries after the first attempt, waiting 2, 4 and 8 seconds."""
    recorder = Recorder([(500, "boom")] * 4)
    provider = recorder.provider()

    with pytest.raises(LLMError) as exc_info:
        await provider.chat([LLMMessage(role="user", content="Hello")])

    assert exc_info.value.kind == ErrorKind.RETRIES_EXHAUSTED
    assert exc_info.value.status_code == 500
    assert len(recorder.requests) == 4
    assert recorder.sleeps == [2.0, 4.0, 8.0]


@pytest.mark.asyncio
async def test_unauthorized_is_not_retried_or_failed_over():
    """401 surfaces immediately with the backend's body."""
    recorder = Recorder([(401, "invalid api key")])
    provider = recorder.provider(fallback=FALLBACK)

    with pytest.raises(LLMError) as exc_info:
        await provider.chat([LLMMessage(role="user", content="Hello")])

    assert exc_info.value.kind == ErrorKind.CLIENT
    assert exc_info.value.failover_eligible is False
    assert "invalid api key" in str(exc_info.value)
    assert recorder.hosts() == ["primary.test"]
    assert recorder.sleeps == []


@pytest.mark.asyncio
async def test_overloaded_primary_fails_over_once():
    """Repeated 529s exhaust the primary, then exactly one fallback call succeeds."""
    recorder = Recorder([(529, "overloaded")] * 4 + [(200, ok_payload("from fallback"))])
    provider = recorder.provider(fallback=FALLBACK)

    response = await provider.chat([LLMMessage(role="user", content="Hello")], model="primary-model")

    assert response.content == "from fallback"
    assert recorder.hosts() == ["primary.test"] * 4 + ["fallback.test"]
    fallback_body = json.loads(recorder.requests[-1].content)
    assert fallback_body["model"] == "fallback-model"
    assert recorder.requests[-1].headers["authorization"] == "Bearer fk"


@pytest.mark.asyncio
async def test_fallback_failure_is_surfaced():
    """The fallback has its own retry budget and its error propagates."""
    recorder = Recorder([(503, "down")] * 8)
    provider = recorder.provider(fallback=FALLBACK)

    with pytest.raises(LLMError) as exc_info:
        await provider.chat([LLMMessage(role="user", content="Hello")])

    assert exc_info.value.kind == ErrorKind.RETRIES_EXHAUSTED
    assert exc_info.value.model == "fallback-model"
    assert recorder.hosts().count("fallback.test") == 4


@pytest.mark.asyncio
async def test_overload_error_in_successful_response_is_retried():
    """Some backends report overload inside a 200 body."""
    overloaded = {"error": {"code": "engine_overloaded", "message": "Engine overloaded"}}
    recorder = Recorder([(200, overloaded), (200, ok_payload("recovered"))])
    provider = recorder.provider()

    response = await provider.chat([LLMMessage(role="user", content="Hello")])

    assert response.content == "recovered"
    assert recorder.sleeps == [2.0]


@pytest.mark.asyncio
async def test_plain_text_overload_in_successful_response_is_retried():
    """A 200 whose body is not JSON but says the backend is overloaded."""
    recorder = Recorder([(200, "Service overloaded, try again"), (200, ok_payload("recovered"))])
    provider = recorder.provider()

    response = await provider.chat([LLMMessage(role="user", content="Hello")])

    assert response.content == "recovered"
    assert len(recorder.requests) == 2
    assert recorder.sleeps == [2.0]


@pytest.mark.asyncio
async def test_overload_message_without_error_field_is_retried():
    recorder = Recorder([
        (200, {"message": "Model is overloaded, please retry"}),
        (200, ok_payload("recovered")),
    ])
    provider = recorder.provider()

    response = await provider.chat([LLMMessage(role="user", content="Hello")])

    assert response.content == "recovered"
    assert recorder.sleeps == [2.0]


@pytest.mark.asyncio
async def test_persistent_overload_in_successful_response_fails_over():
    recorder = Recorder([(200, "overloaded")] * 4 + [(200, ok_payload("from fallback"))])
    provider = recorder.provider(fallback=FALLBACK)

    response = await provider.chat([LLMMessage(role="user", content="Hello")])

    assert response.content == "from fallback"
    assert recorder.hosts() == ["primary.test"] * 4 + ["fallback.test"]


@pytest.mark.asyncio
async def test_error_payload_in_successful_response_is_not_retried():
    recorder = Recorder([(200, {"error": {"message": "bad model"}})])
    provider = recorder.provider()

    with pytest.raises(LLMError) as exc_info:
        await provider.chat([LLMMessage(role="user", content="Hello")])

    assert exc_info.value.kind == ErrorKind.INVALID_RESPONSE
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_cancel_during_backoff_stops_retrying():
    """Cancelling a call that is waiting to retry neither retries nor fails over."""
    requests = []
    sleeping = asyncio.Event()

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(503, text="unavailable")

    async def sleep(seconds):
        sleeping.set()
        await asyncio.Event().wait()

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = HTTPProvider(PRIMARY, fallback=FALLBACK, client=client, sleep=sleep)

    task = asyncio.create_task(provider.chat([LLMMessage(role="user", content="Hello")]))
    await sleeping.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert [r.url.host for r in requests] == ["primary.test"]


@pytest.mark.asyncio
async def test_cancel_during_request_stops_retrying():
    """Cancelling an in-flight POST propagates without another attempt."""
    requests = []
    in_flight = asyncio.Event()
    sleeps = []

    async def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        in_flight.set()
        await asyncio.Event().wait()
        return httpx.Response(200, json=ok_payload())

    async def sleep(seconds):
        sleeps.append(seconds)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = HTTPProvider(PRIMARY, fallback=FALLBACK, client=client, sleep=sleep)

    task = asyncio.create_task(provider.chat([LLMMessage(role="user", content="Hello")]))
    await in_flight.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert [r.url.host for r in requests] == ["primary.test"]
    assert sleeps == []


@pytest.mark.asyncio
async def test_negative_retry_budget_is_configuration_error():
    recorder = Recorder([])
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder.handler))
    provider = HTTPProvider(PRIMARY, client=client, max_retries=-1, sleep=recorder.sleep)

    with pytest.raises(LLMError) as exc_info:
        await provider.chat([LLMMessage(role="user", content="Hello")])

    assert exc_info.value.kind == ErrorKind.CONFIGURATION
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_invalid_json_is_not_retried():
    """An undecodable body is reported as an invalid response."""
    recorder = Recorder([(200, "<html>not json</html>")])
    provider = recorder.provider(fallback=FALLBACK)

    with pytest.raises(LLMError) as exc_info:
        await provider.chat([LLMMessage(role="user", content="Hello")])

    assert exc_info.value.kind == ErrorKind.INVALID_RESPONSE
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_network_error_is_transient():
    """Connection failures count against the retry budget."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json=ok_payload("up again"))

    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = HTTPProvider(PRIMARY, client=client, sleep=sleep)

    response = await provider.chat([LLMMessage(role="user", content="Hello")])

    assert response.content == "up again"
    assert sleeps == [2.0]


@pytest.mark.asyncio
async def test_missing_api_base_is_configuration_error():
    provider = HTTPProvider(Endpoint(api_base="", model="m"), client=httpx.AsyncClient())

    with pytest.raises(LLMError) as exc_info:
        await provider.chat([LLMMessage(role="user", content="Hello")])

    assert exc_info.value.kind == ErrorKind.CONFIGURATION


@pytest.mark.asyncio
async def test_orphaned_tool_messages_are_not_sent():
    """Tool results without a matching assistant call are dropped from the request."""
    recorder = Recorder([(200, ok_payload())])
    provider = recorder.provider()

    messages = [
        LLMMessage(role="system", content="sys"),
        LLMMessage(role="tool", content="stale", tool_call_id="gone"),
        LLMMessage(
            role="assistant",
            content="",
            tool_calls=[ToolCall(id="call_1", name="echo", arguments={"text": "hi"})],
        ),
        LLMMessage(role="tool", content="hi", tool_call_id="call_1", name="echo"),
        LLMMessage(role="user", content="thanks"),
    ]
    await provider.chat(messages)

    sent = json.loads(recorder.requests[0].content)["messages"]
    assert [m["role"] for m in sent] == ["system", "assistant", "tool", "user"]
    assert sent[2]["tool_call_id"] == "call_1"
    assert json.loads(sent[1]["tool_calls"][0]["function"]["arguments"]) == {"text": "hi"}


def test_strip_orphaned_tool_messages_keeps_order():
    messages = [
        LLMMessage(role="user", content="a"),
        LLMMessage(role="tool", content="x", tool_call_id=None),
        LLMMessage(role="assistant", content="b"),
    ]

    cleaned = strip_orphaned_tool_messages(messages)

    assert [m.content for m in cleaned] == ["a", "b"]


def test_build_request_uses_max_completion_tokens_for_glm():
    provider = HTTPProvider(PRIMARY, client=httpx.AsyncClient())
    options = ChatOptions(max_tokens=512, temperature=0.2)

    glm = provider.build_request([], None, "glm-4.7", options)
    gpt = provider.build_request([], None, "gpt-4o", options)

    assert glm["max_completion_tokens"] == 512
    assert "max_tokens" not in glm
    assert gpt["max_tokens"] == 512
    assert gpt["temperature"] == 0.2


def test_build_request_includes_tools():
    provider = HTTPProvider(PRIMARY, client=httpx.AsyncClient())
    tool = ToolDefinition(
        name="echo",
        description="Echo text",
        parameters={"type": "object", "properties": {"text": {"type": "string"}}},
    )

    body = provider.build_request([], [tool], "gpt-4o", None)

    assert body["tool_choice"] == "auto"
    assert body["tools"][0]["type"] == "function"
    assert body["tools"][0]["function"]["name"] == "echo"
    assert "max_tokens" not in body


def test_parse_response_with_no_choices():
    response = parse_response({"choices": []}, model="m")

    assert response.content == ""
    assert response.finish_reason == "stop"
    assert response.tool_calls == []


def test_parse_response_keeps_malformed_arguments_raw():
    payload = ok_payload(
        content="",
        tool_calls=[{
            "id": "call_9",
            "type": "function",
            "function": {"name": "echo", "arguments": "{not json"},
        }],
    )

    response = parse_response(payload)

    assert response.has_tool_calls
    assert response.tool_calls[0].id == "call_9"
    assert response.tool_calls[0].arguments == {"raw": "{not json"}


def test_decode_tool_arguments():
    assert decode_tool_arguments('{"a": 1}') == {"a": 1}
    assert decode_tool_arguments("") == {}
    assert decode_tool_arguments("[1, 2]") == {"raw": "[1, 2]"}
    assert decode_tool_arguments({"b": True}) == {"b": True}


def test_failover_eligibility():
    assert LLMError("x", ErrorKind.TRANSIENT, status_code=503).failover_eligible
    assert LLMError("x", ErrorKind.RETRIES_EXHAUSTED, status_code=429).failover_eligible
    assert not LLMError("x", ErrorKind.CLIENT, status_code=400).failover_eligible
    assert not LLMError("x", ErrorKind.RETRIES_EXHAUSTED, status_code=403).failover_eligible
    assert not LLMError("x", ErrorKind.INVALID_RESPONSE).failover_eligible
