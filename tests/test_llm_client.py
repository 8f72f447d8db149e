"""Tests for the Ollama client using a mocked HTTP transport."""
import json

import httpx
import pytest

from supportdesk.errors import ConfigurationError
from supportdesk.llm_client import OllamaClient


def _client(handler, **kwargs):
    options = {
        "base_url": "http://ollama.test",
        "chat_model": "chat-model",
        "embedding_model": "embed-model",
    }
    options.update(kwargs)
    return OllamaClient(transport=httpx.MockTransport(handler), **options)


async def test_generate_sends_system_prompt_first():
    requests = []

    def handler(request):
        requests.append(json.loads(request.content))
        return httpx.Response(200, json={"message": {"role": "assistant", "content": "Hi!"}})

    client = _client(handler)
    answer = await client.generate("Be helpful.", [{"role": "user", "content": "Hello"}])

    assert answer == "Hi!"
    payload = requests[0]
    assert payload["model"] == "chat-model"
    assert payload["stream"] is False
    assert payload["messages"][0] == {"role": "system", "content": "Be helpful."}
    assert payload["messages"][1] == {"role": "user", "content": "Hello"}


async def test_embed_returns_vector():
    def handler(request):
        assert request.url.path == "/api/embeddings"
        assert json.loads(request.content) == {"model": "embed-model", "prompt": "hello"}
        return httpx.Response(200, json={"embedding": [0.1, 0.2]})

    assert await _client(handler).embed("hello") == [0.1, 0.2]


async def test_api_key_sent_as_bearer_token():
    seen = []

    def handler(request):
        seen.append(request.headers.get("Authorization"))
        return httpx.Response(200, json={"embedding": [1.0]})

    await _client(handler, api_key="secret").embed("hello")
    assert seen == ["Bearer secret"]


async def test_http_errors_propagate():
    def handler(request):
        return httpx.Response(500, json={"error": "model crashed"})

    with pytest.raises(httpx.HTTPStatusError):
        await _client(handler).generate("prompt", [])


async def test_missing_model_is_configuration_error():
    def handler(request):
        raise AssertionError("no request expected")

    client = _client(handler, chat_model="")

    assert client.is_configured is False
    with pytest.raises(ConfigurationError):
        await client.generate("prompt", [])


async def test_list_models():
    def handler(request):
        return httpx.Response(200, json={"models": [{"name": "chat-model"}, {"name": "embed-model"}]})

    assert await _client(handler).list_models() == ["chat-model", "embed-model"]
