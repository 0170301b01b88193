"""Model invocation boundary: stream events, requests, and the HTTP client."""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from typing import Any, Iterator, Protocol

import httpx

from hypolab.cancellation import CancellationContext
from hypolab.models import InvocationError


@dataclass
class StreamEvent:
    author: str = ""
    text: str = ""
    partial: bool = False
    final: bool = False
    function_calls: list[dict[str, Any]] = field(default_factory=list)
    function_responses: list[dict[str, Any]] = field(default_factory=list)
    finish_reason: str = ""
    error_code: str = ""
    error_message: str = ""
    interrupted: bool = False
    state_delta: dict[str, Any] = field(default_factory=dict)
    artifact_delta: dict[str, Any] = field(default_factory=dict)
    inline_data: str = ""  # base64 payload, decoded as UTF-8 text when no text part exists

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "StreamEvent":
        def _dict_list(value: Any) -> list[dict[str, Any]]:
            return [item for item in value if isinstance(item, dict)] if isinstance(value, list) else []

        def _dict(value: Any) -> dict[str, Any]:
            return dict(value) if isinstance(value, dict) else {}

        return cls(
            author=str(payload.get("author", "") or ""),
            text=str(payload.get("text", "") or ""),
            partial=bool(payload.get("partial", False)),
            final=bool(payload.get("final", False)),
            function_calls=_dict_list(payload.get("function_calls")),
            function_responses=_dict_list(payload.get("function_responses")),
            finish_reason=str(payload.get("finish_reason", "") or ""),
            error_code=str(payload.get("error_code", "") or ""),
            error_message=str(payload.get("error_message", "") or ""),
            interrupted=payload.get("interrupted") is True,
            state_delta=_dict(payload.get("state_delta")),
            artifact_delta=_dict(payload.get("artifact_delta")),
            inline_data=str(payload.get("inline_data", "") or ""),
        )

    def best_text(self) -> str:
        """Text content, else the latest function-response result, else decoded inline data."""
        direct = self.text.strip()
        if direct:
            return direct
        for response in reversed(self.function_responses):
            candidate = _function_response_text(response)
            if candidate:
                return candidate
        if self.inline_data:
            try:
                return base64.b64decode(self.inline_data).decode("utf-8").strip()
            except (ValueError, UnicodeDecodeError):
                return ""
        return ""


def _function_response_text(response: dict[str, Any]) -> str:
    payload = response.get("response")
    if isinstance(payload, str):
        return payload.strip()
    if not isinstance(payload, dict):
        return ""
    result = payload.get("result", payload.get("output"))
    if isinstance(result, str):
        return result.strip()
    if not isinstance(result, (dict, list)):
        return ""
    return json.dumps(result)


def raise_on_llm_event_error(event: StreamEvent) -> None:
    if event.interrupted:
        raise InvocationError("LLM generation was interrupted.")
    message = event.error_message.strip()
    code = event.error_code.strip()
    if message or code:
        prefix = f"LLM error ({code})" if code else "LLM error"
        raise InvocationError(f"{prefix}: {message or 'Unknown error'}")
    if event.finish_reason == "SAFETY" and not event.text.strip():
        raise InvocationError("LLM output was blocked by safety filters.")


@dataclass(frozen=True)
class StageRequest:
    scope: str
    app_name: str
    user_id: str
    session_id: str
    model: str
    message: str
    instruction: str = ""
    state: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "app_name": self.app_name,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "model": self.model,
            "instruction": self.instruction,
            "message": self.message,
            "state": self.state,
        }


class ModelClient(Protocol):
    def stream(self, request: StageRequest, cancel: CancellationContext) -> Iterator[StreamEvent]:
        ...


class HttpModelClient:
    """Streams newline-delimited JSON events from ``POST {endpoint}/stages/{scope}:stream``.

    Lines may carry an SSE ``data:`` prefix; ``[DONE]`` ends the stream.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        api_key: str = "",
        timeout_seconds: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not endpoint:
            raise InvocationError("model endpoint is not configured (set HYPOLAB_MODEL_ENDPOINT)")
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/x-ndjson"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def stream(self, request: StageRequest, cancel: CancellationContext) -> Iterator[StreamEvent]:
        url = f"{self.endpoint}/stages/{request.scope}:stream"
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
                with client.stream("POST", url, json=request.to_payload(), headers=self._headers()) as response:
                    if response.status_code >= 400:
                        body = response.read().decode("utf-8", errors="replace")
                        raise InvocationError(
                            f"model endpoint returned HTTP {response.status_code}: {body[:300]}",
                            status=response.status_code,
                        )
                    for line in response.iter_lines():
                        cancel.raise_if_cancelled()
                        text = line.strip()
                        if text.startswith("data:"):
                            text = text[5:].strip()
                        if not text:
                            continue
                        if text == "[DONE]":
                            break
                        try:
                            payload = json.loads(text)
                        except json.JSONDecodeError as exc:
                            raise InvocationError(f"invalid json event from model endpoint: {exc}") from exc
                        if isinstance(payload, dict):
                            yield StreamEvent.from_payload(payload)
        except httpx.TimeoutException as exc:
            raise InvocationError(f"model endpoint timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise InvocationError(f"network error contacting model endpoint: {exc}") from exc
