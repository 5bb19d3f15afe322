import json

import httpx
import pytest

from evalharness.services.assistant import (
    AssistantClient,
    AssistantHTTPError,
    AssistantResponseError,
    AssistantTransportError,
)

URL = "https://assistant.test/functions/v1/ai-chat"


def _client(handler, **kwargs):
    kwargs.setdefault("max_attempts", 2)
    kwargs.setdefault("backoff_seconds", 0)
    return AssistantClient(kwargs.pop("authorization", None), url=URL, transport=httpx.MockTransport(handler), **kwargs)


def test_ask_posts_prompt_and_forwards_credential():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        seen["authorization"] = request.headers.get("authorization")
        return httpx.Response(200, json={"output": "Use a reefer."})

    with _client(handler, authorization="Bearer user-token") as client:
        assert client.ask("What trailer?") == "Use a reefer."
    assert seen == {"body": {"prompt": "What trailer?"}, "authorization": "Bearer user-token"}


def test_answer_field_is_configurable():
    def handler(request):
        return httpx.Response(200, json={"answer": "42"})

    with _client(handler, answer_field="answer") as client:
        assert client.ask("q") == "42"


def test_null_answer_is_empty_text():
    with _client(lambda request: httpx.Response(200, json={"output": None})) as client:
        assert client.ask("q") == ""


def test_missing_answer_field_is_a_response_error():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"text": "wrong field"})

    with _client(handler) as client:
        with pytest.raises(AssistantResponseError):
            client.ask("q")
    assert len(calls) == 1


def test_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401, json={"error": "unauthorized"})

    with _client(handler, max_attempts=3) as client:
        with pytest.raises(AssistantHTTPError) as excinfo:
            client.ask("q")
    assert excinfo.value.status_code == 401
    assert str(excinfo.value) == "assistant returned 401"
    assert len(calls) == 1


def test_server_errors_are_retried_then_succeed():
    responses = [httpx.Response(503), httpx.Response(200, json={"output": "ok"})]

    def handler(request):
        return responses.pop(0)

    with _client(handler) as client:
        assert client.ask("q") == "ok"
    assert responses == []


def test_retries_are_bounded():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    with _client(handler, max_attempts=3) as client:
        with pytest.raises(AssistantTransportError):
            client.ask("q")
    assert len(calls) == 3
