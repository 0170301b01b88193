from __future__ import annotations

import base64
import json

import httpx
import pytest

from hypolab.cancellation import CancellationContext
from hypolab.model_client import HttpModelClient, StageRequest, StreamEvent, raise_on_llm_event_error
from hypolab.models import InvocationError, OperationCancelled


def _request() -> StageRequest:
    return StageRequest(
        scope="runners",
        app_name="HypolabV1_Experimentrunners",
        user_id="hypolab-main-user",
        session_id="hyp_abc",
        model="test-model",
        message="go",
    )


def _client(handler) -> HttpModelClient:
    return HttpModelClient("https://model.example/", api_key="secret", transport=httpx.MockTransport(handler))


def test_stream_parses_ndjson_and_sse_lines() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        lines = [
            json.dumps({"author": "runner", "text": "partial", "partial": True}),
            "",
            "data: " + json.dumps({"text": "final", "final": True, "state_delta": {"k": 1}}),
            "data: [DONE]",
            json.dumps({"text": "after done"}),
        ]
        return httpx.Response(200, content="\n".join(lines).encode("utf-8"))

    events = list(_client(handler).stream(_request(), CancellationContext()))

    assert seen["url"] == "https://model.example/stages/runners:stream"
    assert seen["auth"] == "Bearer secret"
    assert seen["body"]["session_id"] == "hyp_abc"
    assert [event.text for event in events] == ["partial", "final"]
    assert events[0].partial is True
    assert events[1].state_delta == {"k": 1}


def test_stream_raises_with_status_on_http_error() -> None:
    client = _client(lambda request: httpx.Response(503, content=b"overloaded"))

    with pytest.raises(InvocationError, match="HTTP 503: overloaded") as info:
        list(client.stream(_request(), CancellationContext()))

    assert info.value.status == 503


def test_stream_rejects_invalid_json_lines() -> None:
    client = _client(lambda request: httpx.Response(200, content=b"{not json}\n"))

    with pytest.raises(InvocationError, match="invalid json event"):
        list(client.stream(_request(), CancellationContext()))


def test_stream_maps_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(InvocationError, match="network error contacting model endpoint"):
        list(_client(handler).stream(_request(), CancellationContext()))


def test_stream_stops_when_cancelled() -> None:
    cancel = CancellationContext()
    cancel.cancel()
    client = _client(lambda request: httpx.Response(200, content=b'{"text": "x"}\n'))

    with pytest.raises(OperationCancelled):
        list(client.stream(_request(), cancel))


def test_client_requires_endpoint() -> None:
    with pytest.raises(InvocationError, match="HYPOLAB_MODEL_ENDPOINT"):
        HttpModelClient("")


def test_best_text_falls_back_to_function_response_then_inline_data() -> None:
    from_response = StreamEvent(function_responses=[{"name": "search", "response": {"result": " found it "}}])
    from_inline = StreamEvent(inline_data=base64.b64encode(b"inline text").decode("ascii"))
    structured = StreamEvent(function_responses=[{"name": "t", "response": {"output": {"a": 1}}}])

    assert from_response.best_text() == "found it"
    assert from_inline.best_text() == "inline text"
    assert structured.best_text() == '{"a": 1}'
    assert StreamEvent(inline_data="***").best_text() == ""


def test_from_payload_ignores_malformed_fields() -> None:
    event = StreamEvent.from_payload({"text": None, "function_calls": "nope", "interrupted": "yes", "state_delta": []})

    assert event.text == ""
    assert event.function_calls == []
    assert event.interrupted is False
    assert event.state_delta == {}


@pytest.mark.parametrize(
    ("event", "message"),
    [
        (StreamEvent(interrupted=True), "interrupted"),
        (StreamEvent(error_message="quota"), "LLM error: quota"),
        (StreamEvent(finish_reason="SAFETY"), "safety filters"),
    ],
)
def test_raise_on_llm_event_error(event: StreamEvent, message: str) -> None:
    with pytest.raises(InvocationError, match=message):
        raise_on_llm_event_error(event)


def test_safety_finish_with_text_is_accepted() -> None:
    raise_on_llm_event_error(StreamEvent(finish_reason="SAFETY", text="ok"))
