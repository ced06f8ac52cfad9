"""Shared test fixtures: temporary SQLite storage, a settable clock and in-process fakes."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

import pytest
import pytest_asyncio

from shop_agent.agent.client import Completion, CompletionClient, ToolUse
from shop_agent.agent.orchestrator import ChatOrchestrator
from shop_agent.agent.tools.commerce import CommerceBackend, commerce_tools
from shop_agent.agent.tools.registry import ToolRegistry
from shop_agent.approvals.channel import LogChannel
from shop_agent.approvals.gateway import ApprovalGateway
from shop_agent.approvals.queue import ActionQueue
from shop_agent.config import OrchestratorConfig, RouterConfig
from shop_agent.errors import ToolExecutionError
from shop_agent.routing.classifier import DomainClassifier
from shop_agent.routing.embeddings import EmbeddingClient
from shop_agent.routing.router import ToolRouter
from shop_agent.storage.chat_repo import ChatRepository
from shop_agent.storage.database import Database
from shop_agent.storage.embedding_store import EmbeddingStore

DIM = 8


def vec(*weights: float) -> list[float]:
    """An 8-dimensional vector from the leading weights, zero-padded."""
    values = list(weights) + [0.0] * (DIM - len(weights))
    return values[:DIM]


def basis(i: int) -> list[float]:
    values = [0.0] * DIM
    values[i] = 1.0
    return values


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeEmbedder(EmbeddingClient):
    """Looks vectors up by exact text; unknown text embeds to the zero vector."""

    def __init__(self, vectors: Optional[dict[str, list[float]]] = None):
        self.vectors = dict(vectors or {})
        self.calls: list[str] = []
        self.error: Optional[Exception] = None

    @property
    def dimensions(self) -> int:
        return DIM

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return list(self.vectors.get(text, [0.0] * DIM))


class FakeCompletion(CompletionClient):
    """Replays scripted replies; an Exception in the script is raised instead."""

    def __init__(self, replies: Iterable[Completion | Exception] = ()):
        self.replies = list(replies)
        self.requests: list[dict[str, Any]] = []

    def queue(self, *replies: Completion | Exception) -> None:
        self.replies.extend(replies)

    async def send(self, system, messages, tools=None) -> Completion:
        self.requests.append({"system": system, "messages": messages, "tools": tools})
        if not self.replies:
            raise AssertionError("unexpected completion request")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def text_reply(text: str, input_tokens: int = 10, output_tokens: int = 5) -> Completion:
    return Completion(
        text=text,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        stop_reason="end_turn",
        model="test-model",
    )


def tool_reply(*tool_uses: ToolUse, text: str = "", input_tokens: int = 20, output_tokens: int = 8) -> Completion:
    return Completion(
        text=text,
        tool_uses=list(tool_uses),
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        stop_reason="tool_use",
        model="test-model",
    )


class FakeCommerce(CommerceBackend):
    def __init__(self) -> None:
        self.requests: list[tuple[str, str, Optional[dict], Optional[dict]]] = []
        self.responses: dict[tuple[str, str], dict[str, Any]] = {}
        self.fail_paths: set[str] = set()

    async def request(self, method, path, params=None, json=None) -> dict[str, Any]:
        self.requests.append((method, path, params, json))
        if path in self.fail_paths:
            raise ToolExecutionError(f"{method} {path} returned 500: boom")
        return self.responses.get((method, path), {"ok": True})


def ref_sequence(*refs: str):
    remaining = list(refs)
    counter = iter(range(1, 10_000))

    def _next() -> str:
        return remaining.pop(0) if remaining else f"ref-{next(counter)}"

    return _next


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture()
async def db(tmp_path):
    database = Database(str(tmp_path / "test.db"))
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture()
def chat_repo(db, clock) -> ChatRepository:
    return ChatRepository(db, clock=clock)


@pytest.fixture()
def store(db, clock) -> EmbeddingStore:
    return EmbeddingStore(db, dimensions=DIM, clock=clock)


@pytest.fixture()
def queue(db, clock) -> ActionQueue:
    return ActionQueue(db, ttl_seconds=3600, clock=clock)


@pytest.fixture()
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture()
def router_config() -> RouterConfig:
    return RouterConfig(threshold=0.8, margin=0.05, top_k=5, learning=True)


@pytest.fixture()
def router(store, embedder, router_config) -> ToolRouter:
    return ToolRouter(store, embedder, router_config)


@pytest.fixture()
def channel() -> LogChannel:
    return LogChannel(ref_factory=ref_sequence("ext-42"))


@pytest.fixture()
def gateway(queue, channel) -> ApprovalGateway:
    return ApprovalGateway(queue, channel)


@pytest.fixture()
def commerce() -> FakeCommerce:
    return FakeCommerce()


@pytest.fixture()
def tools(commerce) -> ToolRegistry:
    registry = ToolRegistry()
    for tool in commerce_tools(commerce):
        registry.register(tool)
    return registry


@pytest.fixture()
def completion() -> FakeCompletion:
    return FakeCompletion()


@pytest.fixture()
def make_orchestrator(chat_repo, router, queue, gateway, tools, completion):
    """Builds an orchestrator over the shared fakes and subscribes it to the gateway."""

    async def _no_sleep(_: float) -> None:
        return None

    def _make(classifier: Optional[DomainClassifier] = None) -> ChatOrchestrator:
        orch = ChatOrchestrator(
            chat_repo=chat_repo,
            router=router,
            queue=queue,
            gateway=gateway,
            tools=tools,
            completion=completion,
            config=OrchestratorConfig(max_tool_iterations=4, retry_backoff_seconds=0.0),
            system_prompt="You are a test assistant.",
            classifier=classifier,
            sleep=_no_sleep,
        )
        gateway.on_resolution(orch.resume_after_decision)
        return orch

    return _make


@pytest.fixture()
def orchestrator(make_orchestrator) -> ChatOrchestrator:
    return make_orchestrator()
