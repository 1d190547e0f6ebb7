import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

os.environ.setdefault("DATABASE_URL", "")
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import settings
from schemas import (
    AddOn,
    AddOnKind,
    BundleDefinition,
    BundleItem,
    DiscountRuleRecord,
    DiscountRuleSpec,
    ItemSpec,
    ItemVariant,
    PricingMode,
    SkuRecord,
)
from services.errors import NotFound
from services.obs.metrics import MaterializationMetrics
from services.shopify_client import ShopifyCatalogClient


class FakeCatalogClient:
    """In-memory stand-in for ShopifyCatalogClient.

    ``fail`` maps a method name to an exception (raised every call) or a list
    of exceptions (raised one per call, then the call succeeds).
    """

    def __init__(self, shop: str = "demo.myshopify.com"):
        self.shop = shop
        self.items: Dict[str, Dict] = {}
        self.skus: Dict[str, Dict] = {}
        self.rules: Dict[str, Dict] = {}
        self.codes: Dict[str, str] = {}
        self.published: List[tuple] = []
        self.inventory: Dict[str, int] = {}
        self.calls: List[str] = []
        self.fail: Dict[str, object] = {}
        self.unreadable_reads = 0
        self.channel_id: Optional[str] = "gid://shopify/Publication/1"
        self.closed = False
        self._next_id = 1000

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        self.closed = True

    def _new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        failure = self.fail.get(name)
        if failure is None:
            return
        if isinstance(failure, list):
            if failure:
                raise failure.pop(0)
            return
        raise failure

    async def find_item_by_tag(self, tag: str) -> Optional[str]:
        self._enter("find_item_by_tag")
        for item_id, item in self.items.items():
            if tag in item["tags"]:
                return item_id
        return None

    async def create_item(self, spec: ItemSpec) -> str:
        self._enter("create_item")
        item_id = f"gid://shopify/Product/{self._new_id()}"
        self.items[item_id] = {"title": spec.title, "tags": tuple(spec.tags), "skus": []}
        return item_id

    async def get_online_channel_id(self) -> Optional[str]:
        self._enter("get_online_channel_id")
        return self.channel_id

    def invalidate_online_channel(self) -> None:
        self.calls.append("invalidate_online_channel")

    def invalidate_location(self) -> None:
        self.calls.append("invalidate_location")

    async def publish_item(self, item_id: str, channel_id: str) -> None:
        self._enter("publish_item")
        self.published.append((item_id, channel_id))

    async def create_sku(self, item_id: str, price_cents: int, inventory_policy: str = "continue") -> SkuRecord:
        self._enter("create_sku")
        sku_id = self._new_id()
        self.skus[sku_id] = {"item_id": item_id, "price_cents": price_cents, "policy": inventory_policy}
        self.items[item_id]["skus"].append(sku_id)
        return SkuRecord(id=sku_id, price_cents=price_cents, inventory_item_id=f"inv-{sku_id}")

    async def update_sku_price(self, sku_id: str, price_cents: int, inventory_policy: str = "continue") -> None:
        self._enter("update_sku_price")
        self.skus[sku_id]["price_cents"] = price_cents
        self.skus[sku_id]["policy"] = inventory_policy

    async def list_skus(self, item_id: str) -> List[SkuRecord]:
        self._enter("list_skus")
        return [
            SkuRecord(id=sku_id, price_cents=self.skus[sku_id]["price_cents"], inventory_item_id=f"inv-{sku_id}")
            for sku_id in self.items[item_id]["skus"]
        ]

    async def set_inventory(self, sku_id: str, quantity: int, inventory_item_id: Optional[str] = None) -> None:
        self._enter("set_inventory")
        self.inventory[sku_id] = quantity

    async def read_sku(self, sku_id: str) -> bool:
        self._enter("read_sku")
        if self.unreadable_reads > 0:
            self.unreadable_reads -= 1
            return False
        return sku_id in self.skus

    async def create_discount_rule(self, spec: DiscountRuleSpec) -> str:
        self._enter("create_discount_rule")
        rule_id = self._new_id()
        self.rules[rule_id] = {"spec": spec, "title": spec.title, "usage_count": 0, "created_at": spec.starts_at}
        return rule_id

    async def create_discount_code(self, rule_id: str, code: str) -> str:
        self._enter("create_discount_code")
        self.codes[code] = rule_id
        return code

    async def delete_discount_rule(self, rule_id: str) -> None:
        self._enter("delete_discount_rule")
        if rule_id not in self.rules:
            raise NotFound(f"price rule {rule_id} not found")
        del self.rules[rule_id]
        for code, owner in list(self.codes.items()):
            if owner == rule_id:
                del self.codes[code]

    async def lookup_discount_code_rule(self, code: str) -> Optional[str]:
        self._enter("lookup_discount_code_rule")
        if code not in self.codes:
            raise NotFound(f"discount code {code} not found")
        return self.codes[code]

    async def list_discount_rules(self, limit: int = 250) -> List[DiscountRuleRecord]:
        self._enter("list_discount_rules")
        return [
            DiscountRuleRecord(
                id=rule_id,
                title=rule["title"],
                created_at=rule["created_at"],
                usage_count=rule["usage_count"],
                usage_limit=rule.get("usage_limit", 1),
            )
            for rule_id, rule in list(self.rules.items())[:limit]
        ]


def make_bundle(
    pricing_mode: PricingMode = PricingMode.DISCOUNT_PERCENT,
    pricing_value=10,
    tiers=(),
) -> BundleDefinition:
    return BundleDefinition(
        id="b1",
        title="Gift Box",
        pricing_mode=pricing_mode,
        pricing_value=pricing_value,
        tiers=tuple(tiers),
        items=(
            BundleItem(
                id="i1",
                product_id="gid://shopify/Product/1",
                variant_id="gid://shopify/ProductVariant/11",
                base_price_cents=1200,
                title="Candle",
                variants=(
                    ItemVariant(id="gid://shopify/ProductVariant/11", price_cents=1200, title="Small"),
                    ItemVariant(id="gid://shopify/ProductVariant/12", price_cents=1500, title="Large"),
                ),
            ),
            BundleItem(
                id="i2",
                product_id="gid://shopify/Product/2",
                variant_id="gid://shopify/ProductVariant/21",
                base_price_cents=800,
                title="Soap",
            ),
            BundleItem(
                id="i3",
                product_id="gid://shopify/Product/3",
                variant_id="gid://shopify/ProductVariant/31",
                base_price_cents=1000,
                title="Mug",
            ),
            BundleItem(
                id="i4",
                product_id="gid://shopify/Product/4",
                variant_id="gid://shopify/ProductVariant/41",
                base_price_cents=1500,
                title="Tea",
            ),
            BundleItem(
                id="i5",
                product_id="gid://shopify/Product/5",
                variant_id="gid://shopify/ProductVariant/51",
                base_price_cents=500,
                title="Card stock",
            ),
        ),
        wraps=(AddOn(id="w1", kind=AddOnKind.WRAP, price_cents=300, name="Ribbon"),),
        cards=(AddOn(id="c1", kind=AddOnKind.CARD, price_cents=200, name="Note"),),
        shop="demo.myshopify.com",
    )


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    monkeypatch.setattr(settings, "RATE_LIMIT_BASE_DELAY_SECONDS", 0.0)
    ShopifyCatalogClient.clear_caches()
    yield
    ShopifyCatalogClient.clear_caches()


@pytest.fixture
def fake_client():
    return FakeCatalogClient()


@pytest.fixture
def metrics():
    return MaterializationMetrics()


@pytest.fixture
def bundle():
    return make_bundle()


async def no_sleep(_seconds: float) -> None:
    return None
