"""
Tests for the connectivity test client: URL joining, key tests for each
protocol variant and single-message model tests.
"""
import asyncio

import orjson
import pytest
from datetime import datetime, timezone

from navigator_keyvault.exceptions import NetworkFailure
from navigator_keyvault.models import ApiType, Provider
from navigator_keyvault.network import (
    ConnectivityTestClient,
    HttpResponse,
    ProbeStatus,
    smart_join_url,
)
from navigator_keyvault.network.tester import normalize_model

from .conftest import StubTransport, json_response

TS = datetime(2024, 1, 1, tzinfo=timezone.utc)

MODEL_LIST = {
    "object": "list",
    "data": [
        {"id": "gpt-4o", "object": "model", "owned_by": "openai", "created": 1715367049},
        {"id": "text-embedding-3", "owned_by": "openai"},
        {"object": "model"},
    ],
}


def make_provider(api_type=ApiType.OPENAI, base_url="https://api.openai.com/v1"):
    return Provider(
        id="p1", name="P", base_url=base_url, api_type=api_type,
        created_at=TS, updated_at=TS,
    )


@pytest.fixture
def client(transport):
    return ConnectivityTestClient(transport)


class TestSmartJoinUrl:

    @pytest.mark.parametrize("base,path,expected", [
        ("https://api.openai.com", "/v1/models", "https://api.openai.com/v1/models"),
        ("https://api.openai.com/", "/v1/models", "https://api.openai.com/v1/models"),
        ("https://api.openai.com/v1", "/v1/models", "https://api.openai.com/v1/models"),
        ("https://api.openai.com/v1/", "/v1/models", "https://api.openai.com/v1/models"),
        ("https://host/api/coding/v3", "/v1/chat/completions",
         "https://host/api/coding/v3/chat/completions"),
        ("https://host/v1", "models", "https://host/v1/models"),
        ("https://host/v2", "/v1", "https://host/v2"),
        ("https://host/v1beta", "/v1/models", "https://host/v1beta/v1/models"),
        ("https://host/openai", "/v1/models", "https://host/openai/v1/models"),
    ])
    def test_join(self, base, path, expected):
        assert smart_join_url(base, path) == expected


class TestNormalizeModel:

    def test_entry_without_id(self):
        assert normalize_model({"object": "model"}) is None
        assert normalize_model("gpt-4o") is None

    def test_name_defaults_to_id(self):
        model = normalize_model({"id": "gpt-4o", "owned_by": "openai"})
        assert model.name == "gpt-4o"
        assert model.owned_by == "openai"

    def test_extended_fields(self):
        model = normalize_model({
            "id": "qwen-max",
            "display_name": "Qwen Max",
            "task_type": ["chat", "tools"],
            "modalities": {"input_modalities": ["text", "image"], "output_modalities": ["text"]},
            "token_limits": {
                "context_window": 131072,
                "max_input_token_length": 129024,
                "max_output_token_length": 8192,
            },
        })
        assert model.name == "Qwen Max"
        assert model.task_type == ["chat", "tools"]
        assert model.input_modalities == ["text", "image"]
        assert model.token_limits.max_input == 129024
        assert model.token_limits.max_output == 8192


class TestOpenAIKey:

    @pytest.mark.asyncio
    async def test_valid_key_lists_models(self, client, transport):
        transport.queue(json_response(200, MODEL_LIST))
        result = await client.test_api_key("https://api.openai.com/v1", "sk-a", ApiType.OPENAI)
        assert result.status is ProbeStatus.SUCCESS
        assert result.message == "valid-key"
        assert [m.id for m in result.models] == ["gpt-4o", "text-embedding-3"]
        request = transport.requests[0]
        assert request.method == "GET"
        assert request.url == "https://api.openai.com/v1/models"
        assert request.headers["Authorization"] == "Bearer sk-a"
        assert request.timeout == 10.0

    @pytest.mark.asyncio
    async def test_invalid_key(self, client, transport):
        transport.queue(json_response(401, {"error": {"message": "bad key"}}))
        result = await client.test_api_key("https://api.openai.com", "sk-a", "openai")
        assert result.status is ProbeStatus.ERROR
        assert result.message == "invalid-key"

    @pytest.mark.asyncio
    async def test_other_status(self, client, transport):
        transport.queue(HttpResponse(status=500, status_text="Internal Server Error"))
        result = await client.test_api_key("https://api.openai.com", "sk-a")
        assert result.message == "request-failed"
        assert result.details == "HTTP 500: Internal Server Error"

    @pytest.mark.asyncio
    async def test_connection_failure(self, client, transport):
        transport.queue(NetworkFailure("refused"))
        result = await client.test_api_key("https://api.openai.com", "sk-a")
        assert result.status is ProbeStatus.ERROR
        assert result.message == "connection-failed"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [{"data": 5}, {"data": {"id": "gpt-4o"}}, ["gpt-4o"], "ok"])
    async def test_malformed_model_list(self, client, transport, payload):
        transport.queue(json_response(200, payload))
        result = await client.test_api_key("https://api.openai.com", "sk-a")
        assert result.status is ProbeStatus.ERROR
        assert result.message == "request-failed"
        assert result.details.startswith("Unexpected response shape")

    @pytest.mark.asyncio
    async def test_missing_model_list_means_no_models(self, client, transport):
        transport.queue(json_response(200, {"object": "list"}))
        result = await client.test_api_key("https://api.openai.com", "sk-a")
        assert result.status is ProbeStatus.SUCCESS
        assert result.models == []

    @pytest.mark.asyncio
    async def test_unknown_type_uses_openai(self, client, transport):
        transport.queue(json_response(200, {"data": []}))
        result = await client.test_api_key("https://api.openai.com", "sk-a", "mystery")
        assert result.status is ProbeStatus.SUCCESS
        assert result.models == []


class TestClaudeKey:

    @pytest.mark.asyncio
    async def test_model_list_when_available(self, client, transport):
        transport.queue(json_response(200, {"data": [{"id": "claude-3-5-sonnet", "display_name": "Sonnet"}]}))
        result = await client.test_api_key("https://api.anthropic.com", "sk-ant", ApiType.CLAUDE)
        assert result.status is ProbeStatus.SUCCESS
        assert result.models[0].name == "Sonnet"
        request = transport.requests[0]
        assert request.headers["x-api-key"] == "sk-ant"
        assert request.headers["anthropic-version"] == "2023-06-01"
        assert "Authorization" not in request.headers

    @pytest.mark.asyncio
    async def test_falls_back_to_messages_probe(self, client, transport):
        transport.queue(
            HttpResponse(status=404, status_text="Not Found"),
            json_response(200, {"content": [{"type": "text", "text": "H"}]}),
        )
        result = await client.test_api_key("https://api.anthropic.com", "sk-ant", ApiType.CLAUDE)
        assert result.status is ProbeStatus.SUCCESS
        assert result.message == "valid-key"
        assert result.models is None
        probe = transport.requests[1]
        assert probe.method == "POST"
        assert probe.url == "https://api.anthropic.com/v1/messages"
        assert probe.timeout == 15.0
        body = orjson.loads(probe.body)
        assert body["max_tokens"] == 1
        assert body["model"] == "claude-3-haiku-20240307"

    @pytest.mark.asyncio
    async def test_fallback_after_list_network_error(self, client, transport):
        transport.queue(NetworkFailure("timeout"), json_response(401, {}))
        result = await client.test_api_key("https://api.anthropic.com", "sk-ant", ApiType.CLAUDE)
        assert result.message == "invalid-key"
        assert len(transport.requests) == 2

    @pytest.mark.asyncio
    async def test_fallback_after_malformed_list(self, client, transport):
        transport.queue(
            json_response(200, {"data": 5}),
            json_response(200, {"content": [{"type": "text", "text": "H"}]}),
        )
        result = await client.test_api_key("https://api.anthropic.com", "sk-ant", ApiType.CLAUDE)
        assert result.status is ProbeStatus.SUCCESS
        assert transport.requests[1].method == "POST"

    @pytest.mark.asyncio
    async def test_probe_unreachable(self, client, transport):
        transport.queue(HttpResponse(status=404), NetworkFailure("refused"))
        result = await client.test_api_key("https://api.anthropic.com", "sk-ant", ApiType.CLAUDE)
        assert result.message == "connection-failed"


class TestGenericKey:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [200, 401])
    async def test_reachable(self, client, transport, status):
        transport.queue(HttpResponse(status=status))
        result = await client.test_api_key("https://llm.internal", "tok", ApiType.GENERIC)
        assert result.status is ProbeStatus.SUCCESS
        assert result.message == "provider-reachable"
        assert transport.requests[0].url == "https://llm.internal"

    @pytest.mark.asyncio
    async def test_unhealthy(self, client, transport):
        transport.queue(HttpResponse(status=503, status_text="Service Unavailable"))
        result = await client.test_api_key("https://llm.internal", "tok", ApiType.GENERIC)
        assert result.status is ProbeStatus.ERROR
        assert result.message == "provider-unreachable"

    @pytest.mark.asyncio
    async def test_unreachable(self, client, transport):
        transport.queue(NetworkFailure("dns"))
        result = await client.test_api_key("https://llm.internal", "tok", ApiType.GENERIC)
        assert result.message == "provider-unreachable"


class TestModelTest:

    @pytest.mark.asyncio
    async def test_openai_chat(self, client, transport):
        transport.queue(json_response(200, {
            "choices": [{"message": {"role": "assistant", "content": "I am GPT-4o."}}],
        }))
        result = await client.test_model(make_provider(), "sk-a", "gpt-4o", "Who are you?")
        assert result.status is ProbeStatus.SUCCESS
        assert result.message == "model-test-success"
        assert result.response == "I am GPT-4o."
        request = transport.requests[0]
        assert request.url == "https://api.openai.com/v1/chat/completions"
        assert request.timeout == 30.0
        body = orjson.loads(request.body)
        assert body["model"] == "gpt-4o"
        assert body["messages"] == [{"role": "user", "content": "Who are you?"}]

    @pytest.mark.asyncio
    async def test_claude_messages(self, client, transport):
        transport.queue(json_response(200, {"content": [{"type": "text", "text": "Claude here."}]}))
        provider = make_provider(ApiType.CLAUDE, "https://api.anthropic.com")
        result = await client.test_model(provider, "sk-ant", "claude-3-5-sonnet")
        assert result.response == "Claude here."
        request = transport.requests[0]
        assert request.url == "https://api.anthropic.com/v1/messages"
        assert orjson.loads(request.body)["messages"][0]["content"] == "Which model are you?"

    @pytest.mark.asyncio
    async def test_generic_uses_chat_protocol(self, client, transport):
        transport.queue(json_response(200, {"choices": []}))
        provider = make_provider(ApiType.GENERIC, "https://llm.internal/v1")
        result = await client.test_model(provider, "tok", "local-model")
        assert result.status is ProbeStatus.SUCCESS
        assert result.response == ""
        assert transport.requests[0].url == "https://llm.internal/v1/chat/completions"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("api_type,payload", [
        (ApiType.OPENAI, {"choices": [{"message": "hi"}]}),
        (ApiType.OPENAI, {"choices": "hi"}),
        (ApiType.OPENAI, {"choices": ["hi"]}),
        (ApiType.OPENAI, {"choices": [{"message": {"content": 42}}]}),
        (ApiType.OPENAI, ["hi"]),
        (ApiType.CLAUDE, {"content": "hi"}),
        (ApiType.CLAUDE, {"content": ["hi"]}),
        (ApiType.CLAUDE, {"content": [{"type": "text", "text": {"value": "hi"}}]}),
    ])
    async def test_malformed_reply(self, client, transport, api_type, payload):
        transport.queue(json_response(200, payload))
        result = await client.test_model(make_provider(api_type), "sk-a", "m1")
        assert result.status is ProbeStatus.ERROR
        assert result.message == "model-test-failed"
        assert result.error.startswith("Unexpected response shape")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,message", [
        (401, "invalid-key"),
        (429, "rate-limited"),
        (500, "model-test-failed"),
    ])
    async def test_error_statuses(self, client, transport, status, message):
        transport.queue(json_response(status, {}))
        result = await client.test_model(make_provider(), "sk-a", "gpt-4o")
        assert result.status is ProbeStatus.ERROR
        assert result.message == message
        assert result.timestamp is not None

    @pytest.mark.asyncio
    async def test_server_error_message(self, client, transport):
        transport.queue(json_response(400, {"error": {"message": "model not found"}}))
        result = await client.test_model(make_provider(), "sk-a", "gpt-9")
        assert result.error == "model not found"

    @pytest.mark.asyncio
    async def test_plain_text_error_uses_status_line(self, client, transport):
        transport.queue(HttpResponse(status=502, status_text="Bad Gateway", body="<html>"))
        result = await client.test_model(make_provider(), "sk-a", "gpt-4o")
        assert result.error == "HTTP 502: Bad Gateway"

    @pytest.mark.asyncio
    async def test_network_failure(self, client, transport):
        transport.queue(NetworkFailure("refused"))
        result = await client.test_model(make_provider(), "sk-a", "gpt-4o")
        assert result.message == "model-test-failed"
        assert "refused" in result.error

    @pytest.mark.asyncio
    async def test_cancelled_before_dispatch(self, client, transport):
        cancel = asyncio.Event()
        cancel.set()
        result = await client.test_model(make_provider(), "sk-a", "gpt-4o", cancel=cancel)
        assert result.message == "test-cancelled"
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_cancelled_in_flight(self, client, transport):
        cancel = asyncio.Event()

        def respond(request):
            cancel.set()
            return json_response(200, {"choices": [{"message": {"content": "late"}}]})

        transport.queue(respond)
        result = await client.test_model(make_provider(), "sk-a", "gpt-4o", cancel=cancel)
        assert result.status is ProbeStatus.ERROR
        assert result.message == "test-cancelled"
        assert result.response is None
        assert len(transport.requests) == 1


class TestStubTransportIsolation:
    """The client never needs more than the queued responses."""

    @pytest.mark.asyncio
    async def test_no_extra_requests(self):
        transport = StubTransport(json_response(200, MODEL_LIST))
        client = ConnectivityTestClient(transport)
        await client.test_api_key("https://api.openai.com", "sk-a")
        assert len(transport.requests) == 1
        assert transport.responses == []
