"""Append-only store of tool example queries with cosine-similarity search.

Vectors are kept as float32 BLOBs in ``tool_examples``. Search is exact: the
store keeps an in-memory matrix of every example as a read-through cache,
rebuilt lazily after any insert or delete, so new examples are visible to the
next search without a blocking rebuild step.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Sequence

import numpy as np

from shop_agent.errors import StorageError
from shop_agent.log import get_logger
from shop_agent.storage.database import Database, format_ts, parse_ts, utcnow
from shop_agent.storage.models import DomainCount, ToolExample

logger = get_logger(__name__)

EMBEDDING_DIMENSIONS = 1536


@dataclass(frozen=True)
class _Snapshot:
    ids: np.ndarray
    usage: np.ndarray
    domains: np.ndarray
    unit_vectors: np.ndarray  # one L2-normalised row per example
    examples: dict[int, ToolExample]


class EmbeddingStore:
    """Durable nearest-neighbour lookup over :class:`ToolExample` vectors."""

    def __init__(
        self,
        db: Database,
        dimensions: int = EMBEDDING_DIMENSIONS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._db = db
        self._dimensions = dimensions
        self._clock = clock
        self._snapshot: _Snapshot | None = None
        self._generation = 0
        self._load_lock = asyncio.Lock()

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def upsert_example(
        self,
        tool_name: str,
        domain: str,
        query_text: str,
        embedding: list[float],
        is_learned: bool = False,
        usage_count: int = 0,
    ) -> ToolExample:
        """Insert a reference example. Duplicate query text is allowed."""
        vector = self._validate(embedding)
        now = format_ts(self._clock())
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                """INSERT INTO tool_examples
                   (tool_name, domain, example_query, embedding, dimensions,
                    is_learned, usage_count, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    tool_name,
                    domain,
                    query_text,
                    vector.tobytes(),
                    self._dimensions,
                    int(is_learned),
                    usage_count,
                    now,
                ),
            )
            example_id = cursor.lastrowid
        self._invalidate()
        logger.debug("tool_example_inserted", id=example_id, tool=tool_name, domain=domain)
        return ToolExample(
            id=example_id,  # type: ignore[arg-type]
            tool_name=tool_name,
            domain=domain,
            example_query=query_text,
            embedding=vector.tolist(),
            is_learned=is_learned,
            usage_count=usage_count,
            created_at=parse_ts(now),
        )

    async def search(
        self,
        query_embedding: list[float],
        top_k: int,
        domain_filter: Optional[str | Sequence[str]] = None,
    ) -> tuple[tuple[ToolExample, float], ...]:
        """Return the *top_k* examples most similar to *query_embedding*.

        Ordered by cosine similarity descending, then ``usage_count``
        descending, then id ascending. Empty when the store (or the filtered
        domain) has no examples.
        """
        query = self._validate(query_embedding)
        snapshot = await self._load()
        if top_k <= 0 or snapshot.ids.size == 0:
            return ()

        mask = np.ones(snapshot.ids.size, dtype=bool)
        if domain_filter:
            domains = [domain_filter] if isinstance(domain_filter, str) else list(domain_filter)
            mask = np.isin(snapshot.domains, domains)
            if not mask.any():
                return ()

        norm = float(np.linalg.norm(query))
        if norm == 0.0:
            scores = np.zeros(snapshot.ids.size, dtype=np.float64)
        else:
            scores = snapshot.unit_vectors @ (query.astype(np.float64) / norm)
        scores = np.clip(scores, -1.0, 1.0)

        candidates = np.flatnonzero(mask)
        # lexsort uses the last key as primary
        order = np.lexsort(
            (snapshot.ids[candidates], -snapshot.usage[candidates], -scores[candidates])
        )
        picked = candidates[order[:top_k]]
        return tuple(
            (snapshot.examples[int(snapshot.ids[i])], float(scores[i])) for i in picked
        )

    async def record_usage(self, example_id: int) -> None:
        """Increment ``usage_count`` by one in a single atomic update."""
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE tool_examples SET usage_count = usage_count + 1 WHERE id = ?",
                (example_id,),
            )
            if cursor.rowcount == 0:
                raise StorageError(f"tool example {example_id} does not exist")
        self._invalidate()

    async def get_example(self, example_id: int) -> ToolExample | None:
        row = await self._db.fetchone("SELECT * FROM tool_examples WHERE id = ?", (example_id,))
        return self._row_to_example(row) if row else None

    async def find_example(self, tool_name: str, query_text: str) -> ToolExample | None:
        row = await self._db.fetchone(
            """SELECT * FROM tool_examples WHERE tool_name = ? AND example_query = ?
               ORDER BY id ASC LIMIT 1""",
            (tool_name, query_text),
        )
        return self._row_to_example(row) if row else None

    async def example_exists(self, tool_name: str, query_text: str) -> bool:
        return await self.find_example(tool_name, query_text) is not None

    async def domain_counts(self) -> list[DomainCount]:
        rows = await self._db.fetchall(
            "SELECT domain, COUNT(*) AS n FROM tool_examples GROUP BY domain ORDER BY domain"
        )
        return [DomainCount(domain=row["domain"], count=row["n"]) for row in rows]

    async def total_count(self) -> int:
        row = await self._db.fetchone("SELECT COUNT(*) AS n FROM tool_examples")
        return int(row["n"]) if row else 0

    async def delete_preseeded(self) -> int:
        """Administrative cleanup: drop curated examples, keep learned ones."""
        async with self._db.transaction() as conn:
            cursor = await conn.execute("DELETE FROM tool_examples WHERE is_learned = 0")
            deleted = cursor.rowcount
        self._invalidate()
        logger.info("preseeded_examples_deleted", count=deleted)
        return deleted

    def _validate(self, embedding: list[float]) -> np.ndarray:
        vector = np.asarray(embedding, dtype=np.float32)
        if vector.ndim != 1 or vector.shape[0] != self._dimensions:
            raise ValueError(
                f"expected a {self._dimensions}-dimensional embedding, got shape {vector.shape}"
            )
        return vector

    def _invalidate(self) -> None:
        self._generation += 1
        self._snapshot = None

    async def _load(self) -> _Snapshot:
        snapshot = self._snapshot
        if snapshot is not None:
            return snapshot
        async with self._load_lock:
            if self._snapshot is not None:
                return self._snapshot
            generation = self._generation
            rows = await self._db.fetchall("SELECT * FROM tool_examples ORDER BY id ASC")
            examples = {row["id"]: self._row_to_example(row) for row in rows}
            if rows:
                matrix = np.vstack(
                    [np.frombuffer(row["embedding"], dtype=np.float32) for row in rows]
                ).astype(np.float64)
                norms = np.linalg.norm(matrix, axis=1, keepdims=True)
                norms[norms == 0.0] = 1.0
                unit = matrix / norms
            else:
                unit = np.zeros((0, self._dimensions), dtype=np.float64)
            snapshot = _Snapshot(
                ids=np.array([row["id"] for row in rows], dtype=np.int64),
                usage=np.array([row["usage_count"] for row in rows], dtype=np.int64),
                domains=np.array([row["domain"] for row in rows], dtype=object),
                unit_vectors=unit,
                examples=examples,
            )
            # A write that landed during the read leaves the cache empty for the next search.
            if generation == self._generation:
                self._snapshot = snapshot
            logger.debug("embedding_index_loaded", examples=len(rows))
            return snapshot

    @staticmethod
    def _row_to_example(row) -> ToolExample:
        return ToolExample(
            id=row["id"],
            tool_name=row["tool_name"],
            domain=row["domain"],
            example_query=row["example_query"],
            embedding=np.frombuffer(row["embedding"], dtype=np.float32).tolist(),
            is_learned=bool(row["is_learned"]),
            usage_count=row["usage_count"],
            created_at=parse_ts(row["created_at"]),
        )
