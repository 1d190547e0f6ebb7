"""
Shopify Catalog Resource Client
Thin async wrapper over the Admin REST/GraphQL APIs and the storefront read path.

Every public method is a single round trip (the cached lookups and the
paginated rule listing aside) and never retries on its own; callers own the retry policy (see utils.with_retry).
Failures surface as Unauthorized, RateLimited, NotFound or RemoteError.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

import httpx

import settings
from schemas import DiscountRuleRecord, DiscountRuleSpec, ItemSpec, SkuRecord, numeric_id
from services.errors import NotFound, RateLimited, RemoteError, Unauthorized

logger = logging.getLogger(__name__)

ONLINE_STORE_CATALOG_TITLE = "Online Store"

FIND_PRODUCT_BY_TAG = """
query FindProductByTag($q: String!) {
  products(first: 1, query: $q) { nodes { id title } }
}
"""

CREATE_PRODUCT = """
mutation CreateProduct($input: ProductInput!) {
  productCreate(input: $input) {
    product { id }
    userErrors { field message }
  }
}
"""

LIST_PUBLICATIONS = """
query GetPublications {
  publications(first: 10) { nodes { id catalog { title } } }
}
"""

PUBLISH_PRODUCT = """
mutation Publish($id: ID!, $pub: ID!) {
  publishablePublish(id: $id, input: { publicationId: $pub }) {
    userErrors { field message }
  }
}
"""


def cents_to_price(cents: int) -> str:
    """1999 -> '19.99'"""
    return str((Decimal(int(cents)) / Decimal(100)).quantize(Decimal("0.01")))


def price_to_cents(price: Any) -> Optional[int]:
    if price in (None, ""):
        return None
    try:
        return int((Decimal(str(price)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except Exception:
        return None


def _parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _first_user_error(payload: Dict[str, Any]) -> Optional[str]:
    errors = payload.get("userErrors") or []
    if not errors:
        return None
    first = errors[0] or {}
    return str(first.get("message") or first)


class ShopifyCatalogClient:
    """
    Stateless client for one shop; all state lives remotely.

    Usage:
        async with ShopifyCatalogClient("demo.myshopify.com", token) as client:
            item_id = await client.find_item_by_tag("bundle-charge:abc")
    """

    # Process-lifetime caches keyed by shop; a miss simply re-fetches and
    # callers invalidate an entry once a call using it fails.
    _online_channel_cache: Dict[str, str] = {}
    _location_cache: Dict[str, str] = {}

    def __init__(
        self,
        shop: str,
        access_token: str,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.shop = shop
        self.api_version = api_version or settings.SHOPIFY_API_VERSION
        request_timeout = timeout if timeout is not None else settings.SHOPIFY_HTTP_TIMEOUT_SECONDS
        self.client = httpx.AsyncClient(
            base_url=f"https://{shop}/admin/api/{self.api_version}",
            headers={
                "X-Shopify-Access-Token": access_token,
                "Content-Type": "application/json",
            },
            timeout=request_timeout,
            follow_redirects=True,
            transport=transport,
        )
        # Storefront read path: no admin credentials
        self.storefront = httpx.AsyncClient(
            base_url=f"https://{shop}",
            timeout=request_timeout,
            follow_redirects=True,
            transport=transport,
        )

    async def close(self):
        await self.client.aclose()
        await self.storefront.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    @classmethod
    def clear_caches(cls) -> None:
        cls._online_channel_cache.clear()
        cls._location_cache.clear()

    def invalidate_online_channel(self) -> None:
        if self._online_channel_cache.pop(self.shop, None):
            logger.info(f"Dropped cached online store publication for {self.shop}")

    def invalidate_location(self) -> None:
        if self._location_cache.pop(self.shop, None):
            logger.info(f"Dropped cached primary location for {self.shop}")

    # =========================================================================
    # Transport
    # =========================================================================

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        status = resp.status_code
        if status < 400:
            return
        if status in (401, 403):
            raise Unauthorized(f"{resp.request.method} {resp.request.url.path} rejected ({status})")
        if status == 404:
            raise NotFound(f"{resp.request.url.path} not found")
        if status == 429:
            retry_after = resp.headers.get("Retry-After")
            try:
                delay = float(retry_after) if retry_after else None
            except ValueError:
                delay = None
            raise RateLimited(f"throttled on {resp.request.url.path}", retry_after=delay)
        raise RemoteError(status, resp.text)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        storefront: bool = False,
    ) -> httpx.Response:
        http = self.storefront if storefront else self.client
        try:
            resp = await http.request(method, path, json=json, params=params)
        except httpx.TimeoutException as exc:
            raise RemoteError(0, f"timeout calling {path}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise RemoteError(0, f"transport error calling {path}: {exc}") from exc
        self._raise_for_status(resp)
        return resp

    @staticmethod
    def _json_body(resp: httpx.Response) -> Dict[str, Any]:
        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteError(resp.status_code, resp.text) from exc

    @staticmethod
    def _next_page_info(resp: httpx.Response) -> Optional[str]:
        """page_info cursor from a REST `Link: <...>; rel="next"` header."""
        next_link = resp.links.get("next") or {}
        url = next_link.get("url")
        if not url:
            return None
        return httpx.URL(url).params.get("page_info") or None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        storefront: bool = False,
    ) -> Dict[str, Any]:
        resp = await self._send(method, path, json=json, params=params, storefront=storefront)
        return self._json_body(resp)

    async def _graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        body = await self._request("POST", "/graphql.json", json={"query": query, "variables": variables or {}})
        errors = body.get("errors")
        if errors:
            codes = {
                (err.get("extensions") or {}).get("code")
                for err in errors
                if isinstance(err, dict)
            }
            if "THROTTLED" in codes:
                raise RateLimited("graphql cost limit reached")
            if "ACCESS_DENIED" in codes:
                raise Unauthorized(str(errors)[:300])
            raise RemoteError(200, str(errors))
        return body.get("data") or {}

    # =========================================================================
    # Products ("items")
    # =========================================================================

    async def find_item_by_tag(self, tag: str) -> Optional[str]:
        data = await self._graphql(FIND_PRODUCT_BY_TAG, {"q": f"tag:'{tag}'"})
        nodes = ((data.get("products") or {}).get("nodes")) or []
        if not nodes:
            return None
        return nodes[0].get("id")

    async def create_item(self, spec: ItemSpec) -> str:
        data = await self._graphql(
            CREATE_PRODUCT,
            {
                "input": {
                    "title": spec.title,
                    "status": spec.status,
                    "tags": list(spec.tags),
                    "vendor": spec.vendor,
                    "productType": spec.product_type,
                }
            },
        )
        payload = data.get("productCreate") or {}
        user_error = _first_user_error(payload)
        if user_error:
            raise RemoteError(422, f"productCreate: {user_error}")
        product_id = (payload.get("product") or {}).get("id")
        if not product_id:
            raise RemoteError(200, "productCreate returned no product id")
        return product_id

    async def get_online_channel_id(self) -> Optional[str]:
        cached = self._online_channel_cache.get(self.shop)
        if cached:
            return cached
        data = await self._graphql(LIST_PUBLICATIONS)
        for node in ((data.get("publications") or {}).get("nodes")) or []:
            if ((node or {}).get("catalog") or {}).get("title") == ONLINE_STORE_CATALOG_TITLE:
                self._online_channel_cache[self.shop] = node["id"]
                return node["id"]
        return None

    async def publish_item(self, item_id: str, channel_id: str) -> None:
        data = await self._graphql(PUBLISH_PRODUCT, {"id": item_id, "pub": channel_id})
        user_error = _first_user_error(data.get("publishablePublish") or {})
        if user_error:
            raise RemoteError(422, f"publishablePublish: {user_error}")

    # =========================================================================
    # Variants ("SKUs") and inventory
    # =========================================================================

    @staticmethod
    def _sku_from_payload(variant: Dict[str, Any]) -> SkuRecord:
        inventory_item_id = variant.get("inventory_item_id")
        return SkuRecord(
            id=str(variant["id"]),
            price_cents=price_to_cents(variant.get("price")),
            inventory_item_id=str(inventory_item_id) if inventory_item_id else None,
        )

    async def create_sku(self, item_id: str, price_cents: int, inventory_policy: str = "continue") -> SkuRecord:
        body = await self._request(
            "POST",
            f"/products/{numeric_id(item_id)}/variants.json",
            json={
                "variant": {
                    "option1": "Default",
                    "title": "Bundle",
                    "price": cents_to_price(price_cents),
                    "inventory_management": "shopify",
                    "inventory_policy": inventory_policy,
                    "taxable": False,
                    "requires_shipping": False,
                    "weight": 0.0,
                    "weight_unit": "kg",
                }
            },
        )
        variant = body.get("variant") or {}
        if not variant.get("id"):
            raise RemoteError(200, "variant create returned no id")
        return self._sku_from_payload(variant)

    async def update_sku_price(self, sku_id: str, price_cents: int, inventory_policy: str = "continue") -> None:
        variant_id = numeric_id(sku_id)
        await self._request(
            "PUT",
            f"/variants/{variant_id}.json",
            json={
                "variant": {
                    "id": int(variant_id),
                    "price": cents_to_price(price_cents),
                    "inventory_management": "shopify",
                    "inventory_policy": inventory_policy,
                    "requires_shipping": False,
                }
            },
        )

    async def list_skus(self, item_id: str) -> List[SkuRecord]:
        body = await self._request("GET", f"/products/{numeric_id(item_id)}/variants.json")
        return [self._sku_from_payload(v) for v in body.get("variants") or [] if v.get("id")]

    async def get_primary_location_id(self) -> Optional[str]:
        cached = self._location_cache.get(self.shop)
        if cached:
            return cached
        body = await self._request("GET", "/locations.json")
        for location in body.get("locations") or []:
            if location.get("id"):
                self._location_cache[self.shop] = str(location["id"])
                return self._location_cache[self.shop]
        return None

    async def set_inventory(self, sku_id: str, quantity: int, inventory_item_id: Optional[str] = None) -> None:
        if not inventory_item_id:
            body = await self._request("GET", f"/variants/{numeric_id(sku_id)}.json")
            inventory_item_id = (body.get("variant") or {}).get("inventory_item_id")
        if not inventory_item_id:
            raise NotFound(f"variant {sku_id} has no inventory item")
        location_id = await self.get_primary_location_id()
        if not location_id:
            raise NotFound(f"shop {self.shop} has no location")
        await self._request(
            "POST",
            "/inventory_levels/set.json",
            json={
                "location_id": int(location_id),
                "inventory_item_id": int(inventory_item_id),
                "available": int(quantity),
            },
        )

    async def read_sku(self, sku_id: str) -> bool:
        """True once the variant is readable through the storefront."""
        try:
            body = await self._request("GET", f"/variants/{numeric_id(sku_id)}.json", storefront=True)
        except NotFound:
            return False
        return bool((body.get("variant") or {}).get("id"))

    # =========================================================================
    # Price rules ("discount rules") and codes
    # =========================================================================

    async def create_discount_rule(self, spec: DiscountRuleSpec) -> str:
        body = await self._request(
            "POST",
            "/price_rules.json",
            json={
                "price_rule": {
                    "title": spec.title,
                    "target_type": "line_item",
                    "target_selection": "entitled",
                    "allocation_method": "across",
                    "value_type": "fixed_amount",
                    "value": f"-{cents_to_price(spec.value_cents)}",
                    "entitled_variant_ids": list(spec.entitled_sku_ids),
                    "customer_selection": "all",
                    "starts_at": spec.starts_at.isoformat(),
                    "ends_at": spec.ends_at.isoformat(),
                    "usage_limit": spec.usage_limit,
                    "once_per_customer": spec.once_per_customer,
                    "combines_with": {
                        "order_discounts": False,
                        "product_discounts": False,
                        "shipping_discounts": False,
                    },
                }
            },
        )
        rule_id = (body.get("price_rule") or {}).get("id")
        if not rule_id:
            raise RemoteError(200, "price rule create returned no id")
        return str(rule_id)

    async def create_discount_code(self, rule_id: str, code: str) -> str:
        body = await self._request(
            "POST",
            f"/price_rules/{rule_id}/discount_codes.json",
            json={"discount_code": {"code": code}},
        )
        created = (body.get("discount_code") or {}).get("code")
        if not created:
            raise RemoteError(200, "discount code create returned no code")
        return created

    async def delete_discount_rule(self, rule_id: str) -> None:
        await self._request("DELETE", f"/price_rules/{rule_id}.json")

    async def lookup_discount_code_rule(self, code: str) -> Optional[str]:
        body = await self._request("GET", "/discount_codes/lookup.json", params={"code": code})
        rule_id = (body.get("discount_code") or {}).get("price_rule_id")
        return str(rule_id) if rule_id else None

    async def list_discount_rules(self, limit: int = 250, max_pages: int = 20) -> List[DiscountRuleRecord]:
        """All price rules, following cursor pagination up to ``max_pages`` pages of ``limit``."""
        rules = []
        params: Dict[str, Any] = {"limit": limit}
        seen_cursors = set()
        for _ in range(max_pages):
            resp = await self._send("GET", "/price_rules.json", params=params)
            for rule in self._json_body(resp).get("price_rules") or []:
                if not rule.get("id"):
                    continue
                rules.append(
                    DiscountRuleRecord(
                        id=str(rule["id"]),
                        title=rule.get("title") or "",
                        created_at=_parse_timestamp(rule.get("created_at") or rule.get("starts_at")),
                        usage_count=int(rule.get("usage_count") or 0),
                        usage_limit=rule.get("usage_limit"),
                    )
                )
            page_info = self._next_page_info(resp)
            if not page_info or page_info in seen_cursors:
                break
            seen_cursors.add(page_info)
            # Shopify rejects other filters alongside page_info
            params = {"limit": limit, "page_info": page_info}
        else:
            logger.warning(f"Price rule listing for {self.shop} stopped after {max_pages} pages")
        return rules
