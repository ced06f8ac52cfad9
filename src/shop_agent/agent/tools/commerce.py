"""Store-admin tools backed by the commerce REST API."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from shop_agent.agent.tools.base import Tool
from shop_agent.config import CommerceConfig
from shop_agent.errors import ToolExecutionError
from shop_agent.log import get_logger

logger = get_logger(__name__)


class CommerceBackend(ABC):
    @abstractmethod
    async def request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        ...

    async def close(self) -> None:
        return None


class HttpCommerceBackend(CommerceBackend):
    def __init__(self, config: CommerceConfig, client: httpx.AsyncClient | None = None):
        headers = {"Accept": "application/json"}
        if config.token:
            headers["Authorization"] = f"Bearer {config.token}"
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"), headers=headers, timeout=config.timeout
        )

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, params=params, json=json)
            response.raise_for_status()
            data = response.json() if response.content else {}
        except httpx.HTTPStatusError as e:
            raise ToolExecutionError(
                f"{method} {path} returned {e.response.status_code}: {e.response.text[:500]}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ToolExecutionError(f"{method} {path} failed: {e}") from e
        logger.debug("commerce_request", method=method, path=path, status=response.status_code)
        return data if isinstance(data, dict) else {"items": data}

    async def close(self) -> None:
        await self._client.aclose()


def _drop_none(values: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


class CommerceTool(Tool):
    def __init__(self, backend: CommerceBackend):
        self._backend = backend


class GetOrdersTool(CommerceTool):
    @property
    def name(self) -> str:
        return "get_orders"

    @property
    def description(self) -> str:
        return "List recent orders, optionally filtered by status or customer email."

    @property
    def domain(self) -> str:
        return "orders"

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "status": {
                    "type": "string",
                    "enum": ["open", "closed", "cancelled", "any"],
                    "description": "Order status filter (default: any)",
                },
                "customer_email": {"type": "string", "description": "Only this customer's orders"},
                "limit": {"type": "integer", "description": "Maximum orders to return (default: 20)"},
            },
        }

    async def execute(self, **kwargs: Any) -> dict[str, Any]:
        params = _drop_none(
            {
                "status": kwargs.get("status", "any"),
                "customer_email": kwargs.get("customer_email"),
                "limit": kwargs.get("limit", 20),
            }
        )
        return await self._backend.request("GET", "/orders", params=params)


class GetOrderTool(CommerceTool):
    @property
    def name(self) -> str:
        return "get_order"

    @property
    def description(self) -> str:
        return "Get one order with its line items, payments and fulfillment status."

    @property
    def domain(self) -> str:
        return "orders"

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {"order_id": {"type": "string", "description": "Order id or number"}},
            "required": ["order_id"],
        }

    async def execute(self, **kwargs: Any) -> dict[str, Any]:
        return await self._backend.request("GET", f"/orders/{kwargs['order_id']}")


class GetCustomersTool(CommerceTool):
    @property
    def name(self) -> str:
        return "get_customers"

    @property
    def description(self) -> str:
        return "Search customers by name or email."

    @property
    def domain(self) -> str:
        return "customers"

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Name or email fragment"},
                "limit": {"type": "integer", "description": "Maximum customers to return (default: 20)"},
            },
        }

    async def execute(self, **kwargs: Any) -> dict[str, Any]:
        params = _drop_none({"query": kwargs.get("query"), "limit": kwargs.get("limit", 20)})
        return await self._backend.request("GET", "/customers", params=params)


class GetProductsTool(CommerceTool):
    @property
    def name(self) -> str:
        return "get_products"

    @property
    def description(self) -> str:
        return "Search the product catalog by title, SKU or vendor."

    @property
    def domain(self) -> str:
        return "products"

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Title, SKU or vendor"},
                "limit": {"type": "integer", "description": "Maximum products to return (default: 20)"},
            },
        }

    async def execute(self, **kwargs: Any) -> dict[str, Any]:
        params = _drop_none({"query": kwargs.get("query"), "limit": kwargs.get("limit", 20)})
        return await self._backend.request("GET", "/products", params=params)


class GetInventoryTool(CommerceTool):
    @property
    def name(self) -> str:
        return "get_inventory"

    @property
    def description(self) -> str:
        return "Get stock levels per location for a SKU, or every SKU below a threshold."

    @property
    def domain(self) -> str:
        return "inventory"

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "sku": {"type": "string", "description": "SKU to look up"},
                "below": {"type": "integer", "description": "Only SKUs with fewer units than this"},
            },
        }

    async def execute(self, **kwargs: Any) -> dict[str, Any]:
        params = _drop_none({"sku": kwargs.get("sku"), "below": kwargs.get("below")})
        return await self._backend.request("GET", "/inventory", params=params)


class IssueRefundTool(CommerceTool):
    mutating = True

    @property
    def name(self) -> str:
        return "issue_refund"

    @property
    def description(self) -> str:
        return (
            "Refund part or all of an order's payment. Requires human approval; "
            "the refund runs only after an admin approves it."
        )

    @property
    def domain(self) -> str:
        return "orders"

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "order_id": {"type": "string", "description": "Order id or number"},
                "amount": {"type": "number", "description": "Amount to refund in the order currency"},
                "reason": {"type": "string", "description": "Reason shown to the customer"},
            },
            "required": ["order_id", "amount"],
        }

    async def execute(self, **kwargs: Any) -> dict[str, Any]:
        amount = float(kwargs["amount"])
        if amount <= 0:
            raise ToolExecutionError("refund amount must be positive")
        body = _drop_none({"amount": amount, "reason": kwargs.get("reason")})
        return await self._backend.request("POST", f"/orders/{kwargs['order_id']}/refunds", json=body)


class CancelOrderTool(CommerceTool):
    mutating = True

    @property
    def name(self) -> str:
        return "cancel_order"

    @property
    def description(self) -> str:
        return "Cancel an open order, optionally restocking its items. Requires human approval."

    @property
    def domain(self) -> str:
        return "orders"

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "order_id": {"type": "string", "description": "Order id or number"},
                "reason": {
                    "type": "string",
                    "enum": ["customer", "fraud", "inventory", "declined", "other"],
                },
                "restock": {"type": "boolean", "description": "Return items to stock (default: true)"},
            },
            "required": ["order_id"],
        }

    async def execute(self, **kwargs: Any) -> dict[str, Any]:
        body = {"reason": kwargs.get("reason", "other"), "restock": kwargs.get("restock", True)}
        return await self._backend.request("POST", f"/orders/{kwargs['order_id']}/cancel", json=body)


class AdjustInventoryTool(CommerceTool):
    mutating = True

    @property
    def name(self) -> str:
        return "adjust_inventory"

    @property
    def description(self) -> str:
        return "Add or remove units of a SKU at a location. Requires human approval."

    @property
    def domain(self) -> str:
        return "inventory"

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "sku": {"type": "string"},
                "delta": {"type": "integer", "description": "Units to add (negative to remove)"},
                "location": {"type": "string", "description": "Location name (default: primary)"},
                "reason": {"type": "string"},
            },
            "required": ["sku", "delta"],
        }

    async def execute(self, **kwargs: Any) -> dict[str, Any]:
        body = _drop_none(
            {
                "sku": kwargs["sku"],
                "delta": int(kwargs["delta"]),
                "location": kwargs.get("location"),
                "reason": kwargs.get("reason"),
            }
        )
        return await self._backend.request("POST", "/inventory/adjustments", json=body)


def commerce_tools(backend: CommerceBackend) -> list[Tool]:
    return [
        GetOrdersTool(backend),
        GetOrderTool(backend),
        GetCustomersTool(backend),
        GetProductsTool(backend),
        GetInventoryTool(backend),
        IssueRefundTool(backend),
        CancelOrderTool(backend),
        AdjustInventoryTool(backend),
    ]
