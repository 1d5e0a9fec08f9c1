"""Tests for the Claude text generator against a mock transport."""

import json

import httpx
import pytest
import pytest_asyncio

from core.exceptions import TextGenerationError, ValidationError
from integrations.text_generator import (
    PREFIX_TAGS,
    TAG_CHARS,
    ClaudeTextGenerator,
    strip_tags,
)


def message(text):
    return {"content": [{"type": "text", "text": text}], "usage": {"input_tokens": 5, "output_tokens": 7}}


class ClaudeStub:
    """Queued responses for POST /v1/messages."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)

    def body(self, index=-1):
        return json.loads(self.requests[index].content)


@pytest.fixture
def stub():
    return ClaudeStub(message("say hi i dont bite"))


@pytest_asyncio.fixture
async def generator(stub, accounts):
    generator = ClaudeTextGenerator(
        accounts=accounts,
        api_key="sk-test",
        max_retries=3,
        retry_delay=0,
        transport=httpx.MockTransport(stub.handler),
    )
    yield generator
    await generator.close()


@pytest.mark.unit
class TestRequests:

    async def test_ask_sends_messages_request(self, generator, stub):
        text = await generator.ask("hello", system="be brief", max_tokens=50)

        assert text == "say hi i dont bite"
        request = stub.requests[0]
        assert request.url.path == "/v1/messages"
        assert request.headers["x-api-key"] == "sk-test"
        assert request.headers["anthropic-version"] == "2023-06-01"
        body = stub.body()
        assert body["system"] == "be brief"
        assert body["max_tokens"] == 50
        assert body["messages"] == [{"role": "user", "content": "hello"}]

    async def test_rate_limit_then_success(self, generator, stub):
        stub.responses = [
            httpx.Response(429, headers={"retry-after": "0"}, json={"error": "slow down"}),
            message("second try"),
        ]
        assert await generator.ask("hello") == "second try"
        assert len(stub.requests) == 2

    async def test_persistent_server_error(self, generator, stub):
        stub.responses = [httpx.Response(500, text="upstream broke")]

        with pytest.raises(TextGenerationError, match="after 3 retries") as exc_info:
            await generator.ask("hello")

        assert exc_info.value.code == "text_generation_failed"
        assert exc_info.value.status_code == 500
        assert len(stub.requests) == 3

    async def test_client_error_not_retried(self, generator, stub):
        stub.responses = [httpx.Response(401, text="invalid x-api-key")]
        with pytest.raises(TextGenerationError, match="401"):
            await generator.ask("hello")
        assert len(stub.requests) == 1

    async def test_empty_response(self, generator, stub):
        stub.responses = [{"content": []}]
        with pytest.raises(TextGenerationError, match="no text"):
            await generator.ask("hello")

    async def test_not_configured(self, generator, stub, monkeypatch):
        monkeypatch.setattr(generator, "api_key", "")
        with pytest.raises(TextGenerationError, match="not configured"):
            await generator.generate_bio("acct-1")
        assert stub.requests == []


@pytest.mark.unit
class TestGenerators:

    async def test_bio(self, generator, stub):
        stub.responses = [message("  just moved here and kinda lost lol  ")]
        assert await generator.generate_bio("acct-1") == "just moved here and kinda lost lol"

    async def test_prompt_trimmed_and_obfuscated(self, generator, stub, accounts):
        accounts.add("acct-1", channel="gram", extra={"username": "aurora.x"})
        stub.responses = [message("this line is far too long to fit the forty char limit\nsecond line")]

        visible, obfuscated = await generator.generate_prompt("acct-1", "aurora", "gram")

        assert visible == "this line is far too long to fit the for"
        assert len(visible) <= 40
        assert strip_tags(obfuscated) == f"Grαm;aurora.x {visible}"
        prefix_block = "Grαm;aurora.x "
        tags = sum(1 for char in obfuscated if char in TAG_CHARS)
        assert tags == len(prefix_block) * PREFIX_TAGS + len(visible)

    async def test_prompt_handle_falls_back_to_model(self, generator, stub):
        visible, obfuscated = await generator.generate_prompt("acct-1", "aurora", "snap")
        assert strip_tags(obfuscated) == "Snαp;aurora say hi i dont bite"
        assert visible == "say hi i dont bite"

    async def test_unknown_channel(self, generator, stub):
        with pytest.raises(ValidationError, match="Unknown channel"):
            await generator.generate_prompt("acct-1", "aurora", "fax")
        assert stub.requests == []
