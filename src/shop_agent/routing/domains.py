"""Business domains that tools and examples are grouped under."""

from __future__ import annotations

DOMAINS: tuple[str, ...] = (
    "analytics",
    "orders",
    "customers",
    "products",
    "inventory",
    "collections",
    "discounts",
    "gift_cards",
    "fulfillment",
    "finance",
    "order_editing",
)

DOMAIN_DESCRIPTIONS: dict[str, str] = {
    "analytics": "Business analytics: sales summaries, revenue trends, top products, customer insights",
    "orders": "Order management: viewing, searching, updating, canceling, refunding orders",
    "customers": "Customer management: profiles, addresses, marketing, segments, merging",
    "products": "Product catalog: products, variants, pricing, media, publishing",
    "inventory": "Inventory tracking: stock levels, adjustments, transfers between locations",
    "collections": "Collection management: smart/manual collections, product organization",
    "discounts": "Promotions: discount codes, automatic discounts, bulk operations",
    "gift_cards": "Gift card operations: issuing, crediting, debiting, notifications",
    "fulfillment": "Shipping: fulfillment orders, tracking, holds, returns",
    "finance": "Financial: payouts, disputes, bank accounts, payment capture",
    "order_editing": "Order editing: adding or removing line items, changing quantities on open orders",
}


def is_known_domain(domain: str) -> bool:
    return domain in DOMAIN_DESCRIPTIONS
