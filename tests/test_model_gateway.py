"""
Tests for OpenRouterGateway.

The HTTP layer is replaced with httpx.MockTransport.
"""

import json

import httpx
import pytest

from chatbot.exceptions import (
    ModelAuthenticationError,
    ModelGatewayError,
    UpstreamConfigurationError,
)
from chatbot.models.api import MessageRole
from chatbot.models.domain import PromptMessage
from chatbot.services.model_gateway import OpenRouterGateway

PROMPT = [
    PromptMessage(role=MessageRole.SYSTEM, content="be helpful"),
    PromptMessage(role=MessageRole.USER, content="hi"),
]


def make_gateway(handler, api_key: str = "or-test-key") -> OpenRouterGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenRouterGateway(api_key=api_key, http_client=client)


def completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class TestGenerate:
    """Tests for chat completion requests."""

    async def test_returns_generated_text_and_sends_headers(self) -> None:
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=completion("  Hello!  "))

        gateway = make_gateway(handler)
        text = await gateway.generate("openai/gpt-4", PROMPT)

        assert text == "Hello!"
        assert seen["url"].endswith("/chat/completions")
        assert seen["headers"]["Authorization"] == "Bearer or-test-key"
        assert seen["headers"]["X-Title"] == "Chatbot API"
        assert seen["body"]["model"] == "openai/gpt-4"
        assert seen["body"]["temperature"] == 0.7
        assert seen["body"]["max_tokens"] == 500
        assert seen["body"]["messages"][1] == {"role": "user", "content": "hi"}

    async def test_unconfigured_gateway_raises_configuration_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        gateway = make_gateway(handler, api_key="")

        with pytest.raises(UpstreamConfigurationError):
            await gateway.generate("openai/gpt-4", PROMPT)

    async def test_401_raises_authentication_error(self) -> None:
        gateway = make_gateway(lambda r: httpx.Response(401, json={"error": {"message": "bad key"}}))

        with pytest.raises(ModelAuthenticationError) as exc_info:
            await gateway.generate("openai/gpt-4", PROMPT)
        assert exc_info.value.message == "Invalid OpenRouter API key"

    async def test_server_error_raises_gateway_error_with_status(self) -> None:
        gateway = make_gateway(lambda r: httpx.Response(500, text="upstream down"))

        with pytest.raises(ModelGatewayError) as exc_info:
            await gateway.generate("openai/gpt-4", PROMPT)
        assert exc_info.value.status == 500

    async def test_timeout_raises_gateway_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        gateway = make_gateway(handler)

        with pytest.raises(ModelGatewayError, match="timed out"):
            await gateway.generate("openai/gpt-4", PROMPT)

    async def test_empty_choices_raise_gateway_error(self) -> None:
        gateway = make_gateway(lambda r: httpx.Response(200, json={"choices": []}))

        with pytest.raises(ModelGatewayError, match="No response content"):
            await gateway.generate("openai/gpt-4", PROMPT)


class TestListModels:
    async def test_lists_models_with_ids(self) -> None:
        payload = {
            "data": [
                {"id": "openai/gpt-4", "name": "GPT-4", "context_length": 8192},
                {"name": "missing id"},
            ]
        }
        gateway = make_gateway(lambda r: httpx.Response(200, json=payload))

        models = await gateway.list_models()

        assert [m.id for m in models] == ["openai/gpt-4"]
        assert models[0].context_length == 8192

    async def test_list_models_failure_raises_gateway_error(self) -> None:
        gateway = make_gateway(lambda r: httpx.Response(503))

        with pytest.raises(ModelGatewayError):
            await gateway.list_models()
