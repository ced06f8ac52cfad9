"""First routing stage: narrow a request to a few business domains with a small model."""

from __future__ import annotations

from shop_agent.agent.client import CompletionClient
from shop_agent.log import get_logger
from shop_agent.routing.domains import DOMAIN_DESCRIPTIONS

logger = get_logger(__name__)

MAX_DOMAINS = 3


def build_system_prompt() -> str:
    lines = [
        "You are a classifier that categorizes e-commerce admin queries into domains.",
        "",
        "Available domains:",
    ]
    lines += [f"- {domain}: {description}" for domain, description in DOMAIN_DESCRIPTIONS.items()]
    lines += [
        "",
        "Rules:",
        "1. Return 1-3 most relevant domains",
        '2. Return ONLY domain names, comma-separated (e.g., "orders, customers")',
        "3. Most queries need only 1-2 domains",
        "4. Choose based on what data/actions the query requires",
    ]
    return "\n".join(lines)


def parse_domains(reply: str) -> list[str]:
    """Known domains from a comma-separated reply, lowercased, first three, no repeats."""
    domains: list[str] = []
    for part in reply.split(","):
        name = part.strip().lower()
        if name in DOMAIN_DESCRIPTIONS and name not in domains:
            domains.append(name)
        if len(domains) == MAX_DOMAINS:
            break
    return domains


class DomainClassifier:
    """Asks the completion backend which domains a request belongs to.

    Returns an empty list when the reply names no known domain; callers
    then search every domain. Completion errors propagate.
    """

    def __init__(self, completion: CompletionClient):
        self._completion = completion
        self._system_prompt = build_system_prompt()

    async def classify(self, query: str) -> list[str]:
        content = (
            "Classify this query into 1-3 relevant domains. "
            f"Return ONLY the domain names, comma-separated.\n\nQuery: {query}"
        )
        reply = await self._completion.send(self._system_prompt, [{"role": "user", "content": content}])
        domains = parse_domains(reply.text)
        if not domains:
            logger.debug("domain_classification_empty", reply=reply.text)
        else:
            logger.debug("domains_classified", domains=domains)
        return domains
