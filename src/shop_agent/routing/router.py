"""Map a free-text admin request to the tool(s) most likely to serve it.

The router embeds the utterance, pulls the nearest examples from the
:class:`EmbeddingStore`, keeps the best-scoring example per tool and then
applies two knobs from :class:`RouterConfig`:

* ``threshold``: the best tool must score at least this much, else ``NoMatch``;
* ``margin``: the best tool must beat the runner-up tool by more than this,
  else the decision is ``Ambiguous`` and carries every tool within the margin.

Confirmed matches feed back into the store (see :meth:`ToolRouter.confirm`).
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional, Sequence, Union

from shop_agent.config import RouterConfig
from shop_agent.log import get_logger
from shop_agent.routing.embeddings import EmbeddingClient
from shop_agent.storage.embedding_store import EmbeddingStore
from shop_agent.storage.models import ToolExample

logger = get_logger(__name__)

_EMBEDDING_CACHE_SIZE = 256


@dataclass(frozen=True)
class RouteCandidate:
    tool_name: str
    example: ToolExample
    score: float


@dataclass(frozen=True)
class Confident:
    tool_name: str
    matched_example: ToolExample
    score: float

    @property
    def tool_names(self) -> list[str]:
        return [self.tool_name]


@dataclass(frozen=True)
class Ambiguous:
    candidates: tuple[RouteCandidate, ...]

    @property
    def tool_names(self) -> list[str]:
        return [c.tool_name for c in self.candidates]


@dataclass(frozen=True)
class NoMatch:
    best_score: Optional[float] = None

    @property
    def tool_names(self) -> list[str]:
        return []


RouteDecision = Union[Confident, Ambiguous, NoMatch]


class ToolRouter:
    """Embedding-based tool selection with confidence thresholding and learning."""

    def __init__(self, store: EmbeddingStore, embedder: EmbeddingClient, config: RouterConfig):
        self._store = store
        self._embedder = embedder
        self._config = config
        self._embeddings: OrderedDict[str, list[float]] = OrderedDict()

    @property
    def config(self) -> RouterConfig:
        return self._config

    async def resolve(
        self, utterance: str, domain_hint: Optional[str | Sequence[str]] = None
    ) -> RouteDecision:
        """Route *utterance*, searching only *domain_hint* (one domain or several) when given."""
        embedding = await self._embed(utterance)
        decision = await self.resolve_embedding(embedding, domain_hint)
        logger.info(
            "route_resolved",
            decision=type(decision).__name__,
            tools=decision.tool_names,
            domain_hint=domain_hint,
        )
        return decision

    async def resolve_embedding(
        self, embedding: list[float], domain_hint: Optional[str | Sequence[str]] = None
    ) -> RouteDecision:
        hits = await self._store.search(embedding, self._config.top_k, domain_hint)

        # hits are already ranked, so the first hit seen for a tool is its best
        best_per_tool: dict[str, RouteCandidate] = {}
        for example, score in hits:
            if example.tool_name not in best_per_tool:
                best_per_tool[example.tool_name] = RouteCandidate(example.tool_name, example, score)
        ranked = list(best_per_tool.values())

        if not ranked:
            return NoMatch()
        top = ranked[0]
        if top.score < self._config.threshold:
            return NoMatch(best_score=top.score)
        if len(ranked) == 1 or top.score - ranked[1].score > self._config.margin:
            return Confident(top.tool_name, top.example, top.score)
        tied = tuple(c for c in ranked if top.score - c.score <= self._config.margin)
        return Ambiguous(tied)

    async def confirm(
        self,
        utterance: str,
        tool_name: str,
        domain: str,
        matched_example_id: Optional[int] = None,
    ) -> Optional[ToolExample]:
        """Record that routing *utterance* to *tool_name* was correct.

        Bumps the matched example's usage count and, with learning enabled,
        promotes the utterance to a learned example (or bumps the existing
        example with identical text). Never removes or rewrites examples.
        Returns the learned example when one was inserted.
        """
        if matched_example_id is not None:
            await self._store.record_usage(matched_example_id)

        if not self._config.learning or not utterance.strip():
            return None

        existing = await self._store.find_example(tool_name, utterance)
        if existing is not None:
            if existing.id != matched_example_id:
                await self._store.record_usage(existing.id)
            logger.debug("learned_example_reinforced", tool=tool_name, example_id=existing.id)
            return None

        embedding = await self._embed(utterance)
        learned = await self._store.upsert_example(
            tool_name, domain, utterance, embedding, is_learned=True, usage_count=1
        )
        logger.info("learned_example_added", tool=tool_name, domain=domain, example_id=learned.id)
        return learned

    async def _embed(self, text: str) -> list[float]:
        cached = self._embeddings.get(text)
        if cached is not None:
            self._embeddings.move_to_end(text)
            return cached
        embedding = await self._embedder.embed(text)
        self._embeddings[text] = embedding
        if len(self._embeddings) > _EMBEDDING_CACHE_SIZE:
            self._embeddings.popitem(last=False)
        return embedding
