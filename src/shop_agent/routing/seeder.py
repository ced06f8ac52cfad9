"""Pre-seed curated tool examples from YAML.

File format::

    get_orders:
      domain: orders
      examples:
        - "Show me recent orders"
        - "What orders came in today?"

    cancel_order:
      domain: orders
      examples:
        - "Cancel order #1001"
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml

from shop_agent.errors import EmbeddingError, SeedConfigError, StorageError
from shop_agent.log import get_logger
from shop_agent.routing.domains import is_known_domain
from shop_agent.routing.embeddings import EmbeddingClient
from shop_agent.storage.embedding_store import EmbeddingStore

logger = get_logger(__name__)

EMBEDDING_BATCH_SIZE = 50


@dataclass
class SeedResult:
    inserted: int = 0
    skipped: int = 0
    tools_processed: int = 0
    errors: list[tuple[str, str]] = field(default_factory=list)


def load_seed_file(path: str | Path) -> dict[str, dict[str, Any]]:
    """Read and shape-check a seed YAML file."""
    seed_path = Path(path)
    try:
        text = seed_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SeedConfigError(f"failed to read {seed_path}: {e}") from e
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise SeedConfigError(f"failed to parse YAML: {e}") from e

    if not isinstance(data, dict):
        raise SeedConfigError("seed file must map tool names to {domain, examples}")
    for tool_name, entry in data.items():
        if not isinstance(entry, dict) or "domain" not in entry:
            raise SeedConfigError(f"tool '{tool_name}' needs a 'domain' and an 'examples' list")
        examples = entry.get("examples") or []
        if not isinstance(examples, list):
            raise SeedConfigError(f"'examples' for tool '{tool_name}' must be a list")
        entry["examples"] = [str(e) for e in examples]
    return data


def validate_seed_config(
    config: dict[str, dict[str, Any]], known_tools: Optional[Iterable[str]] = None
) -> list[str]:
    """Return human-readable problems with *config*; empty when it is valid."""
    tools = set(known_tools) if known_tools is not None else None
    errors: list[str] = []
    for tool_name, entry in config.items():
        if tools is not None and tool_name not in tools:
            errors.append(f"Unknown tool: {tool_name}")
        domain = entry.get("domain", "")
        if not is_known_domain(domain):
            errors.append(f"Invalid domain '{domain}' for tool '{tool_name}'")
        examples = entry.get("examples") or []
        if not examples:
            errors.append(f"No examples provided for tool: {tool_name}")
        for i, example in enumerate(examples):
            if not str(example).strip():
                errors.append(f"Empty example string at index {i} for tool: {tool_name}")
    return errors


async def seed_from_file(
    store: EmbeddingStore,
    embedder: EmbeddingClient,
    path: str | Path,
    clear_existing: bool = False,
) -> SeedResult:
    config = load_seed_file(path)
    return await seed_from_config(store, embedder, config, clear_existing)


async def seed_from_config(
    store: EmbeddingStore,
    embedder: EmbeddingClient,
    config: dict[str, dict[str, Any]],
    clear_existing: bool = False,
) -> SeedResult:
    """Embed and insert every example not already in the store.

    With *clear_existing*, curated examples are deleted first; learned
    examples always survive a re-seed.
    """
    if clear_existing:
        deleted = await store.delete_preseeded()
        logger.info("preseeded_examples_cleared", deleted=deleted)

    result = SeedResult()
    pending: list[tuple[str, str, str]] = []
    seen: set[tuple[str, str]] = set()
    for tool_name, entry in config.items():
        for example in entry.get("examples") or []:
            if not str(example).strip():
                continue
            if (tool_name, example) in seen:
                # repeated in the file; the first copy is the one seeded
                result.skipped += 1
                continue
            seen.add((tool_name, example))
            pending.append((tool_name, entry["domain"], example))
    logger.info("seeding_examples", total=len(pending), tools=len(config))

    for start in range(0, len(pending), EMBEDDING_BATCH_SIZE):
        batch = pending[start : start + EMBEDDING_BATCH_SIZE]
        try:
            await _seed_batch(store, embedder, batch, result)
        except EmbeddingError as e:
            # The rest of the file can still be seeded
            logger.warning("seed_batch_failed", error=str(e), batch_start=start)
            result.errors.extend((tool_name, str(e)) for tool_name, _, _ in batch)

    result.tools_processed = len(config)
    logger.info(
        "seeding_complete",
        inserted=result.inserted,
        skipped=result.skipped,
        tools=result.tools_processed,
        errors=len(result.errors),
    )
    return result


async def _seed_batch(
    store: EmbeddingStore,
    embedder: EmbeddingClient,
    batch: list[tuple[str, str, str]],
    result: SeedResult,
) -> None:
    to_embed: list[tuple[str, str, str]] = []
    for tool_name, domain, query in batch:
        if await store.example_exists(tool_name, query):
            result.skipped += 1
            logger.debug("seed_example_skipped", tool=tool_name, query=query)
        else:
            to_embed.append((tool_name, domain, query))
    if not to_embed:
        return

    vectors = await embedder.embed_batch([query for _, _, query in to_embed])
    for (tool_name, domain, query), vector in zip(to_embed, vectors):
        try:
            await store.upsert_example(tool_name, domain, query, vector)
        except (StorageError, ValueError) as e:
            result.errors.append((tool_name, str(e)))
            logger.warning("seed_example_failed", tool=tool_name, error=str(e))
        else:
            result.inserted += 1
