# Overview: Read-only commerce platform (Shopify Admin REST) client used by reconciliation.

from __future__ import annotations

import time

import httpx
from flask import current_app

from .errors import LedgerError, TransientNetworkError, UpstreamNotFound
from .order_store import normalize_order_number

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class ShopifyClient:
    """
    Minimal Admin API client.

    - get_order includes cancelled/archived/closed orders (status=any)
    - timeouts and connection errors are retried with exponential backoff,
      as are 429/5xx responses
    - a 404 is definitive and is never retried
    """

    def __init__(
        self,
        shop: str,
        access_token: str,
        *,
        api_version: str = "2024-01",
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_base: float = 0.25,
        transport: httpx.BaseTransport | None = None,
    ):
        if not shop:
            raise LedgerError("SHOPIFY_SHOP is not configured")
        self.max_retries = max(1, int(max_retries))
        self.backoff_base = backoff_base
        self._client = httpx.Client(
            base_url=f"https://{shop}/admin/api/{api_version}",
            headers={
                "X-Shopify-Access-Token": access_token or "",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config, *, transport: httpx.BaseTransport | None = None) -> "ShopifyClient":
        return cls(
            config.get("SHOPIFY_SHOP", ""),
            config.get("SHOPIFY_ACCESS_TOKEN", ""),
            api_version=config.get("SHOPIFY_API_VERSION", "2024-01"),
            timeout=config.get("PLATFORM_TIMEOUT_SECONDS", 10.0),
            max_retries=config.get("PLATFORM_MAX_RETRIES", 3),
            backoff_base=config.get("PLATFORM_BACKOFF_SECONDS", 0.25),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _get(self, path: str, params: dict) -> httpx.Response:
        last_error = None
        for attempt in range(self.max_retries):
            try:
                response = self._client.get(path, params=params)
            except httpx.TransportError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                if response.status_code not in RETRYABLE_STATUS:
                    return response
                last_error = f"HTTP {response.status_code}"

            current_app.logger.warning(
                "Platform GET %s failed (attempt %d/%d): %s",
                path, attempt + 1, self.max_retries, last_error,
            )
            if attempt < self.max_retries - 1:
                time.sleep(self.backoff_base * (2 ** attempt))

        raise TransientNetworkError(
            f"Platform unavailable for {path}",
            details={"path": path, "attempts": self.max_retries, "last_error": last_error},
        )

    @staticmethod
    def _check(response: httpx.Response, path: str) -> None:
        if response.status_code >= 400:
            raise LedgerError(
                f"Platform rejected {path} with HTTP {response.status_code}",
                details={"path": path, "status_code": response.status_code},
            )

    def get_order(self, order_id: str) -> dict:
        path = f"/orders/{order_id}.json"
        response = self._get(path, {"status": "any"})
        if response.status_code == 404:
            raise UpstreamNotFound(f"Order {order_id} not found upstream", details={"order_id": order_id})
        self._check(response, path)
        return response.json()["order"]

    def search_by_name(self, name: str) -> dict | None:
        response = self._get("/orders.json", {"name": name, "status": "any", "limit": 1})
        if response.status_code == 404:
            return None
        self._check(response, "/orders.json")
        orders = response.json().get("orders") or []
        return orders[0] if orders else None

    def find_order(self, order_id: str, order_number=None) -> dict:
        """
        Stable id first, then the human-facing number as '#N' and 'N'
        (platform search may index either form).
        """
        try:
            return self.get_order(order_id)
        except UpstreamNotFound:
            pass

        number = normalize_order_number(order_number)
        if number:
            for term in (f"#{number}", number):
                found = self.search_by_name(term)
                if found:
                    return found

        raise UpstreamNotFound(
            f"Order {order_id} not found upstream",
            details={"order_id": order_id, "order_number": number},
        )
