"""Tests for BedrockService event normalisation, using a stubbed runtime client."""

import json

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from bedrock_service import BedrockError, BedrockService, GenerationConfig
from orchestrator.errors import TransportError
from orchestrator.stream import classify_exception

MODEL = "us.anthropic.claude-sonnet-4-5-20250929-v1:0"


def _chunk(payload):
    return {"chunk": {"bytes": json.dumps(payload).encode()}}


class StubRuntime:
    def __init__(self, body=None, error=None):
        self.body = body or []
        self.error = error
        self.kwargs = None

    def invoke_model_with_response_stream(self, **kwargs):
        self.kwargs = kwargs
        if self.error:
            raise self.error
        return {"body": iter(self.body)}


def _service(runtime):
    service = BedrockService.__new__(BedrockService)
    service.model_id = MODEL
    service.region = "us-east-1"
    service.client = runtime
    return service


def _collect(service, **kwargs):
    return list(service.generate_response_stream(
        [{"role": "user", "content": "hi"}],
        config=GenerationConfig(max_tokens=1000),
        **kwargs,
    ))


def test_text_and_tool_use_are_normalised():
    runtime = StubRuntime([
        _chunk({"type": "message_start", "message": {"usage": {"input_tokens": 42, "output_tokens": 1}}}),
        _chunk({"type": "content_block_start", "content_block": {"type": "text"}}),
        _chunk({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Editing."}}),
        _chunk({"type": "content_block_stop"}),
        _chunk({"type": "content_block_start",
                "content_block": {"type": "tool_use", "id": "toolu_1", "name": "edit_file"}}),
        _chunk({"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": '{"path"'}}),
        _chunk({"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": ': "a.py"}'}}),
        _chunk({"type": "content_block_stop"}),
        _chunk({"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 17}}),
        _chunk({"type": "message_stop"}),
    ])

    events = _collect(_service(runtime), tools=[{"name": "edit_file"}], system_prompt="be brief")

    assert [e["type"] for e in events] == [
        "usage", "text", "tool_call_start", "tool_call_delta", "tool_call_delta",
        "tool_call_end", "usage", "done",
    ]
    assert events[0]["input_tokens"] == 42
    assert events[2] == {"type": "tool_call_start", "id": "toolu_1", "name": "edit_file"}
    assert events[4]["id"] == "toolu_1"
    assert events[-1] == {"type": "done", "stop_reason": "tool_use"}

    body = json.loads(runtime.kwargs["body"])
    assert runtime.kwargs["modelId"] == MODEL
    assert body["system"] == "be brief"
    assert body["tools"] == [{"name": "edit_file"}]
    assert body["max_tokens"] == 1000


def test_empty_content_is_padded():
    runtime = StubRuntime([_chunk({"type": "message_stop"})])
    service = _service(runtime)
    list(service.generate_response_stream([{"role": "user", "content": "  "}]))

    body = json.loads(runtime.kwargs["body"])
    assert body["messages"][0]["content"] == "(no content)"


def test_in_band_stream_exception_becomes_an_error_event():
    runtime = StubRuntime([
        _chunk({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "par"}}),
        {"throttlingException": {"message": "Rate exceeded"}},
        _chunk({"type": "message_stop"}),
    ])

    events = _collect(_service(runtime))

    assert events[-1] == {"type": "error", "message": "Rate exceeded", "code": "THROTTLED", "retryable": True}


def test_stream_without_message_stop_still_ends_with_done():
    runtime = StubRuntime([_chunk({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "x"}})])
    assert _collect(_service(runtime))[-1] == {"type": "done", "stop_reason": None}


@pytest.mark.parametrize("code, expected", [
    ("ThrottlingException", TransportError.THROTTLED),
    ("ValidationException", TransportError.API),
])
def test_client_errors_carry_a_transport_code(code, expected):
    error = ClientError({"Error": {"Code": code, "Message": "nope"}}, "InvokeModelWithResponseStream")
    with pytest.raises(BedrockError) as info:
        _collect(_service(StubRuntime(error=error)))

    assert info.value.code == expected
    transport = classify_exception(info.value)
    assert transport.code == expected
    assert transport.retryable == (expected == TransportError.THROTTLED)


def test_connection_errors_are_network_errors():
    error = EndpointConnectionError(endpoint_url="https://bedrock-runtime.us-east-1.amazonaws.com")
    with pytest.raises(BedrockError) as info:
        _collect(_service(StubRuntime(error=error)))

    assert info.value.code == TransportError.NETWORK
    assert classify_exception(info.value).retryable
