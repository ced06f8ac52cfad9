"""Tests for the domain classification stage of routing."""

import pytest

from shop_agent.routing.classifier import DomainClassifier, build_system_prompt, parse_domains
from shop_agent.routing.domains import DOMAINS

from conftest import FakeCompletion, text_reply


@pytest.mark.parametrize(
    "reply, expected",
    [
        ("orders", ["orders"]),
        ("orders, customers, products", ["orders", "customers", "products"]),
        ("  orders  ,  customers  ", ["orders", "customers"]),
        ("orders, invalid_domain, customers", ["orders", "customers"]),
        ("ORDERS, Customers", ["orders", "customers"]),
        ("orders, orders, inventory", ["orders", "inventory"]),
        ("I think the weather", []),
    ],
)
def test_parse_domains(reply, expected):
    assert parse_domains(reply) == expected


def test_parse_domains_keeps_at_most_three():
    assert parse_domains("orders, customers, products, inventory, discounts") == [
        "orders",
        "customers",
        "products",
    ]


def test_system_prompt_lists_every_domain():
    prompt = build_system_prompt()

    for domain in DOMAINS:
        assert f"- {domain}: " in prompt


@pytest.mark.asyncio
async def test_classify_sends_query_without_tools():
    completion = FakeCompletion([text_reply("Inventory, products")])

    domains = await DomainClassifier(completion).classify("how many blue mugs are left?")

    assert domains == ["inventory", "products"]
    (request,) = completion.requests
    assert request["tools"] is None
    assert request["system"] == build_system_prompt()
    assert request["messages"][0]["content"].endswith("Query: how many blue mugs are left?")
