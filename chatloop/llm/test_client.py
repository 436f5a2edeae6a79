import json
from unittest.mock import patch

import aiohttp
import pytest

from chatloop.llm.client import LLMClient, LLMStreamError
from chatloop.models import GenerationRequest, ToolSchema, TranscriptEntry
from chatloop.streaming.aggregator import StreamAggregator


@pytest.fixture
def llm_client():
    return LLMClient(
        url="https://api.test-llm.com/v1/",
        token="test-token-123",
        model_name="test-model",
        temperature=0.6,
    )


def _request(**kwargs):
    return GenerationRequest(
        transcript=[
            TranscriptEntry(role="user", text="what's the weather in Oslo?"),
            TranscriptEntry(role="model", text="Checking."),
        ],
        system_preamble="You are Chatloop.",
        **kwargs,
    )


class MockContent:
    def __init__(self, lines):
        self.lines = lines

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for line in self.lines:
            yield line


class MockResponse:
    def __init__(self, lines=(), status=200, text=""):
        self.status = status
        self.ok = 200 <= status < 300
        self.content = MockContent(list(lines))
        self._text = text

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        pass


def _mock_session(response, sent):
    class MockSession:
        def __init__(self, *args, **kwargs):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            pass

        def post(self, url, headers, data=None):
            sent.append((url, headers, json.loads(data)))
            if isinstance(response, Exception):
                raise response
            return response

    return MockSession


def test_init_strips_trailing_slash(llm_client):
    assert llm_client.url == "https://api.test-llm.com/v1"


def test_headers_fall_back_to_placeholder_token():
    client = LLMClient(url="http://llm", token="")

    assert client._get_headers()["Authorization"] == "Bearer fake"


def test_payload_maps_transcript_and_tools(llm_client):
    payload = llm_client._generate_llm_payload(
        _request(
            tool_schemas=[
                ToolSchema(
                    name="get_weather",
                    description="Weather by city",
                    parameters={
                        "type": "object",
                        "properties": {"city": {"type": "string"}},
                    },
                )
            ]
        )
    )

    assert payload["messages"] == [
        {"role": "system", "content": "You are Chatloop."},
        {"role": "user", "content": "what's the weather in Oslo?"},
        {"role": "assistant", "content": "Checking."},
    ]
    assert payload["stream"] is True
    assert payload["temperature"] == 0.6
    assert payload["model"] == "test-model"
    assert payload["tools"][0]["function"]["name"] == "get_weather"
    assert payload["tool_choice"] == "auto"


def test_payload_without_tools_omits_tool_choice(llm_client):
    payload = llm_client._generate_llm_payload(_request())

    assert "tools" not in payload
    assert "tool_choice" not in payload


@pytest.mark.asyncio
async def test_stream_yields_events(llm_client):
    lines = [
        b'data: {"choices": [{"delta": {"content": "Sunny"}}]}\n',
        b'data: {"choices": [{"delta": {"content": " in Oslo"}}]}\n',
        b"data: [DONE]\n",
    ]
    sent = []

    with patch(
        "chatloop.llm.client.aiohttp.ClientSession",
        _mock_session(MockResponse(lines), sent),
    ):
        response = await StreamAggregator().aggregate(llm_client.stream(_request()))

    assert response.narrative_text == "Sunny in Oslo"
    url, headers, payload = sent[0]
    assert url == "https://api.test-llm.com/v1/chat/completions"
    assert headers["Authorization"] == "Bearer test-token-123"
    assert payload["stream"] is True


@pytest.mark.asyncio
async def test_non_ok_status_raises(llm_client):
    with patch(
        "chatloop.llm.client.aiohttp.ClientSession",
        _mock_session(MockResponse(status=500, text="Internal Server Error"), []),
    ):
        with pytest.raises(LLMStreamError, match="500 Internal Server Error"):
            async for _ in llm_client.stream(_request()):
                pass


@pytest.mark.asyncio
async def test_transport_errors_are_wrapped(llm_client):
    with patch(
        "chatloop.llm.client.aiohttp.ClientSession",
        _mock_session(aiohttp.ClientConnectionError("refused"), []),
    ):
        with pytest.raises(LLMStreamError, match="refused"):
            async for _ in llm_client.stream(_request()):
                pass
