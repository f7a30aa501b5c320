from __future__ import annotations

import json

import httpx
import pytest

from callgenie.voice.client import RetellClient
from callgenie.voice.errors import VoiceProviderConfigError, VoiceProviderError


def _client(handler, api_key: str = "key_test") -> RetellClient:  # type: ignore[no-untyped-def]
    return RetellClient(api_key=api_key, base_url="https://retell.test/", transport=httpx.MockTransport(handler))


def test_create_phone_call_sends_expected_request() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(201, json={"call_id": "call_1", "call_status": "registered"})

    client = _client(handler)
    payload = client.create_phone_call(
        from_number="+14385331002",
        to_number="+918777562720",
        agent_id="agent_default",
        dynamic_variables={"name": "Pramit", "subject": ""},
    )

    assert payload == {"call_id": "call_1", "call_status": "registered"}
    request = captured[0]
    assert request.method == "POST"
    assert str(request.url) == "https://retell.test/v2/create-phone-call"
    assert request.headers["authorization"] == "Bearer key_test"
    assert json.loads(request.content) == {
        "from_number": "+14385331002",
        "to_number": "+918777562720",
        "override_agent_id": "agent_default",
        "retell_llm_dynamic_variables": {"name": "Pramit", "subject": ""},
    }


def test_create_phone_call_without_agent_uses_number_binding() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(201, json={"call_id": "call_2"})

    _client(handler).create_phone_call(
        from_number="+14385331002",
        to_number="+918777562720",
        agent_id="",
        dynamic_variables={},
    )
    assert "override_agent_id" not in bodies[0]


def test_retrieve_call_and_batch_call_paths() -> None:
    seen: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        if request.url.path == "/create-batch-call":
            body = json.loads(request.content)
            assert body == {
                "from_number": "+14385331002",
                "tasks": [{"to_number": "+12137774445"}],
                "trigger_timestamp": 1234567890,
            }
            return httpx.Response(201, json={"batch_call_id": "batch_1"})
        return httpx.Response(200, json={"call_id": "call_9", "call_status": "ended"})

    client = _client(handler)
    assert client.retrieve_call("call_9")["call_status"] == "ended"
    batch = client.create_batch_call(
        from_number="+14385331002",
        tasks=[{"to_number": "+12137774445"}],
        trigger_timestamp=1234567890,
    )
    assert batch["batch_call_id"] == "batch_1"
    assert seen == [("GET", "/v2/get-call/call_9"), ("POST", "/create-batch-call")]


def test_provider_rejection_raises_with_detail_and_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"message": "to_number is not a valid E.164 number"})

    with pytest.raises(VoiceProviderError) as exc_info:
        _client(handler).retrieve_call("call_bad")

    assert exc_info.value.status_code == 422
    assert exc_info.value.operation == "retrieve_call"
    assert "not a valid E.164 number" in str(exc_info.value)


def test_transport_failure_raises_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(VoiceProviderError) as exc_info:
        _client(handler).retrieve_call("call_1")

    assert exc_info.value.status_code is None
    assert "connection refused" in str(exc_info.value)


def test_missing_api_key_fails_before_any_request() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    with pytest.raises(VoiceProviderConfigError) as exc_info:
        _client(handler, api_key="").retrieve_call("call_1")

    assert str(exc_info.value) == "RETELL_API_KEY is not set"
    assert calls == []
