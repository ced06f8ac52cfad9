"""HTTP clients exercised against httpx.MockTransport."""

import json

import httpx
import pytest

from shop_agent.agent.client import AnthropicCompletionClient
from shop_agent.agent.tools.commerce import HttpCommerceBackend
from shop_agent.config import AnthropicConfig, CommerceConfig, EmbeddingsConfig
from shop_agent.errors import CompletionError, EmbeddingError, ToolExecutionError, TransientCompletionError
from shop_agent.routing.embeddings import OpenAIEmbeddingClient


def _embeddings_client(handler, dimensions=3):
    config = EmbeddingsConfig(api_key="k", base_url="https://emb.test/v1", dimensions=dimensions)
    http = httpx.AsyncClient(base_url=config.base_url, transport=httpx.MockTransport(handler))
    return OpenAIEmbeddingClient(config, client=http)


@pytest.mark.asyncio
async def test_embed_batch_orders_by_index():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "data": [
                    {"index": 1, "embedding": [0.0, 1.0, 0.0]},
                    {"index": 0, "embedding": [1.0, 0.0, 0.0]},
                ]
            },
        )

    client = _embeddings_client(handler)

    vectors = await client.embed_batch(["first", "second"])

    assert vectors == [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]
    assert seen["body"]["input"] == ["first", "second"]
    assert seen["body"]["model"] == "text-embedding-3-small"
    assert await client.embed_batch([]) == []


@pytest.mark.asyncio
async def test_embed_errors():
    client = _embeddings_client(lambda request: httpx.Response(429, text="slow down"))
    with pytest.raises(EmbeddingError, match="429"):
        await client.embed("hello")

    wrong_size = _embeddings_client(
        lambda request: httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]})
    )
    with pytest.raises(EmbeddingError, match="dimensions"):
        await wrong_size.embed("hello")


def _commerce(handler):
    config = CommerceConfig(base_url="https://shop.test/api", token="t")
    http = httpx.AsyncClient(base_url=config.base_url, transport=httpx.MockTransport(handler))
    return HttpCommerceBackend(config, client=http)


@pytest.mark.asyncio
async def test_commerce_request_round_trip():
    def handler(request):
        assert request.method == "POST"
        assert request.url.path == "/api/orders/1001/refunds"
        assert json.loads(request.content) == {"amount": 25.0}
        return httpx.Response(201, json={"refund_id": "r-1"})

    backend = _commerce(handler)

    assert await backend.request("POST", "/orders/1001/refunds", json={"amount": 25.0}) == {
        "refund_id": "r-1"
    }


@pytest.mark.asyncio
async def test_commerce_wraps_list_and_errors():
    backend = _commerce(lambda request: httpx.Response(200, json=[{"sku": "A"}]))
    assert await backend.request("GET", "/inventory") == {"items": [{"sku": "A"}]}

    failing = _commerce(lambda request: httpx.Response(404, text="no such order"))
    with pytest.raises(ToolExecutionError, match="404"):
        await failing.request("GET", "/orders/9")


MESSAGE_RESPONSE = {
    "id": "msg_1",
    "type": "message",
    "role": "assistant",
    "model": "claude-test",
    "content": [
        {"type": "text", "text": "Checking."},
        {"type": "tool_use", "id": "tu_1", "name": "get_orders", "input": {"status": "open"}},
    ],
    "stop_reason": "tool_use",
    "stop_sequence": None,
    "usage": {"input_tokens": 12, "output_tokens": 7},
}


def _anthropic(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AnthropicCompletionClient(AnthropicConfig(api_key="sk-test", model="claude-test"), http)


@pytest.mark.asyncio
async def test_anthropic_completion_parsed():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=MESSAGE_RESPONSE)

    client = _anthropic(handler)
    tools = [{"name": "get_orders", "description": "d", "input_schema": {"type": "object"}}]

    completion = await client.send("sys", [{"role": "user", "content": "orders?"}], tools)

    assert completion.text == "Checking."
    assert completion.tool_uses[0].name == "get_orders"
    assert completion.tool_uses[0].input == {"status": "open"}
    assert (completion.input_tokens, completion.output_tokens) == (12, 7)
    assert completion.stop_reason == "tool_use"
    assert seen["body"]["system"] == "sys"
    assert seen["body"]["tools"] == tools


@pytest.mark.asyncio
async def test_anthropic_error_classification():
    error_body = {"type": "error", "error": {"type": "rate_limit_error", "message": "slow down"}}
    limited = _anthropic(lambda request: httpx.Response(429, json=error_body))
    with pytest.raises(TransientCompletionError):
        await limited.send("sys", [{"role": "user", "content": "hi"}])

    error_body = {"type": "error", "error": {"type": "invalid_request_error", "message": "bad"}}
    invalid = _anthropic(lambda request: httpx.Response(400, json=error_body))
    with pytest.raises(CompletionError) as exc:
        await invalid.send("sys", [{"role": "user", "content": "hi"}])
    assert not isinstance(exc.value, TransientCompletionError)
