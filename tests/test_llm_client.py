"""
Tests for the provider-agnostic chat client
"""

import json

import httpx
import pytest

from botfleet.errors import ExternalUnavailable
from botfleet.services.llm_client import ChatCompleter

MESSAGES = [
    {"role": "system", "content": "Be brief."},
    {"role": "user", "content": "Hello"},
]


def openai_reply(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(200, json={
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": body["model"],
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": "Hi!"},
            "finish_reason": "stop",
        }],
        "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
    })


class Recorder:
    def __init__(self, handler):
        self.handler = handler
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


@pytest.mark.asyncio
async def test_openai_completion():
    recorder = Recorder(openai_reply)
    completer = ChatCompleter(transport=httpx.MockTransport(recorder))

    reply = await completer.complete("openai", "sk-test", None, MESSAGES)

    assert reply.content == "Hi!"
    assert reply.model == "gpt-4o"
    assert reply.tokens_total == 5
    request = recorder.requests[0]
    assert request.url.host == "api.openai.com"
    assert request.headers["authorization"] == "Bearer sk-test"
    assert json.loads(request.content)["messages"] == MESSAGES


@pytest.mark.asyncio
async def test_openrouter_uses_its_base_url():
    recorder = Recorder(openai_reply)
    completer = ChatCompleter(transport=httpx.MockTransport(recorder))

    reply = await completer.complete("openrouter", "or-key", "anthropic/claude-3.5-sonnet", MESSAGES)

    assert reply.model == "anthropic/claude-3.5-sonnet"
    assert recorder.requests[0].url.host == "openrouter.ai"


@pytest.mark.asyncio
async def test_openai_rejection_is_external_unavailable():
    completer = ChatCompleter(
        transport=httpx.MockTransport(
            lambda r: httpx.Response(401, json={"error": {"message": "bad key", "type": "invalid_request_error"}})
        )
    )
    with pytest.raises(ExternalUnavailable):
        await completer.complete("openai", "sk-wrong", "gpt-4o", MESSAGES)


@pytest.mark.asyncio
async def test_anthropic_moves_system_prompt():
    def anthropic_reply(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        return httpx.Response(200, json={
            "id": "msg_1",
            "type": "message",
            "role": "assistant",
            "model": body["model"],
            "content": [{"type": "text", "text": "Hey"}],
            "stop_reason": "end_turn",
            "stop_sequence": None,
            "usage": {"input_tokens": 4, "output_tokens": 1},
        })

    recorder = Recorder(anthropic_reply)
    completer = ChatCompleter(transport=httpx.MockTransport(recorder))

    reply = await completer.complete("anthropic", "sk-ant", None, MESSAGES)

    assert reply.content == "Hey"
    assert reply.model == "claude-3-5-sonnet-latest"
    assert reply.tokens_total == 5
    body = json.loads(recorder.requests[0].content)
    assert body["system"] == "Be brief."
    assert body["messages"] == [{"role": "user", "content": "Hello"}]
    assert recorder.requests[0].headers["x-api-key"] == "sk-ant"


@pytest.mark.asyncio
async def test_anthropic_rejection_is_external_unavailable():
    completer = ChatCompleter(
        transport=httpx.MockTransport(
            lambda r: httpx.Response(400, json={"type": "error", "error": {"type": "invalid_request_error", "message": "no"}})
        )
    )
    with pytest.raises(ExternalUnavailable):
        await completer.complete("anthropic", "sk-ant", "claude-3-haiku-latest", MESSAGES)
