"""
Bundle Checkout Schemas
=======================

Canonical data structures shared by the pricing resolver, the catalog client
and the materialization paths.

PRICING MODES:
--------------
- SUM:              product total = subtotal
- FIXED:            product total = value (cents), subtotal ignored
- DISCOUNT_PERCENT: product total = subtotal - floor(subtotal * value / 100)
- DISCOUNT_AMOUNT:  product total = subtotal - value (cents)

Discount modes never go below zero. Add-ons (wrap, card) are never discounted.

MONEY:
------
All amounts are integer cents. Conversion to the platform's decimal strings
happens only inside the catalog client.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Literal, Optional, Tuple, TypedDict, Union


# =============================================================================
# ENUMS
# =============================================================================

class PricingMode(str, Enum):
    SUM = "SUM"
    FIXED = "FIXED"
    DISCOUNT_PERCENT = "DISCOUNT_PERCENT"
    DISCOUNT_AMOUNT = "DISCOUNT_AMOUNT"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "PricingMode":
        """Unknown or empty values price as SUM."""
        if not raw:
            return cls.SUM
        try:
            return cls(str(raw).strip().upper())
        except ValueError:
            return cls.SUM


class PlanTier(str, Enum):
    FREE = "FREE"
    PRO = "PRO"


class AddOnKind(str, Enum):
    WRAP = "wrap"
    CARD = "card"


class MaterializationStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    FAILED = "failed"


# =============================================================================
# BUNDLE DEFINITION (read-only snapshot from the configuration store)
# =============================================================================

PricingValue = Union[int, Decimal]


@dataclass(frozen=True)
class TierRule:
    """Quantity threshold that overrides the bundle-level pricing mode."""
    min_quantity: int
    mode: PricingMode
    value: Optional[PricingValue] = None  # cents, or percent for DISCOUNT_PERCENT


@dataclass(frozen=True)
class ItemVariant:
    id: str  # "gid://shopify/ProductVariant/456" or numeric string
    price_cents: int
    title: str = ""


@dataclass(frozen=True)
class BundleItem:
    id: str
    product_id: Optional[str]
    variant_id: Optional[str]  # default variant used when no override is chosen
    base_price_cents: int
    title: str = ""
    min_quantity: int = 1
    max_quantity: Optional[int] = None
    variants: Tuple[ItemVariant, ...] = ()

    def find_variant(self, variant_id: str) -> Optional[ItemVariant]:
        for variant in self.variants:
            if str(variant.id) == str(variant_id):
                return variant
        return None


@dataclass(frozen=True)
class AddOn:
    """Gift wrap or card; always priced at face value."""
    id: str
    kind: AddOnKind
    price_cents: int
    name: str = ""


@dataclass(frozen=True)
class BundleDefinition:
    id: str
    title: str
    pricing_mode: PricingMode = PricingMode.SUM
    pricing_value: Optional[PricingValue] = None
    tiers: Tuple[TierRule, ...] = ()
    items: Tuple[BundleItem, ...] = ()
    wraps: Tuple[AddOn, ...] = ()
    cards: Tuple[AddOn, ...] = ()
    shop: Optional[str] = None

    def find_item(self, item_id: str) -> Optional[BundleItem]:
        for item in self.items:
            if str(item.id) == str(item_id):
                return item
        return None


# =============================================================================
# REQUEST-SCOPED VALUES
# =============================================================================

@dataclass(frozen=True)
class Selection:
    """What the buyer picked. Ephemeral, one per checkout request."""
    item_ids: Tuple[str, ...] = ()
    variant_overrides: Dict[str, str] = field(default_factory=dict)  # item id -> variant id
    wrap_id: Optional[str] = None
    card_id: Optional[str] = None

    def without_add_ons(self) -> "Selection":
        return Selection(
            item_ids=self.item_ids,
            variant_overrides=dict(self.variant_overrides),
        )


@dataclass(frozen=True)
class PriceBreakdown:
    product_subtotal: int
    discounted_product_total: int
    add_on_total: int
    grand_total: int
    item_count: int = 0
    applied_tier: Optional[TierRule] = None

    @property
    def discount_cents(self) -> int:
        return max(0, self.product_subtotal - self.discounted_product_total)

    def to_dict(self) -> "PriceBreakdownDict":
        return {
            "productSubtotal": self.product_subtotal,
            "discountedProductTotal": self.discounted_product_total,
            "addOnTotal": self.add_on_total,
            "grandTotal": self.grand_total,
            "itemCount": self.item_count,
        }


# =============================================================================
# REMOTE RECORDS (as returned by the catalog client)
# =============================================================================

@dataclass(frozen=True)
class ItemSpec:
    """Payload for creating a hidden price-carrier product."""
    title: str
    tags: Tuple[str, ...]
    vendor: str = "Bundle Add-on"
    product_type: str = "Bundle"
    status: str = "ACTIVE"


@dataclass(frozen=True)
class SkuRecord:
    id: str
    price_cents: Optional[int] = None
    inventory_item_id: Optional[str] = None


@dataclass(frozen=True)
class DiscountRuleSpec:
    title: str
    value_cents: int
    entitled_sku_ids: Tuple[int, ...]
    starts_at: datetime
    ends_at: datetime
    usage_limit: int = 1
    once_per_customer: bool = True


@dataclass(frozen=True)
class DiscountRuleRecord:
    id: str
    title: str
    created_at: Optional[datetime] = None
    usage_count: int = 0
    usage_limit: Optional[int] = None


# =============================================================================
# ENGINE RESULTS
# =============================================================================

@dataclass(frozen=True)
class MaterializationResult:
    """Ok(sku) | Degraded(sku, used fallback) | Failed(error)."""
    status: MaterializationStatus
    sku_id: Optional[str] = None
    ready: bool = False
    error: Optional[str] = None

    @classmethod
    def ok(cls, sku_id: str, ready: bool) -> "MaterializationResult":
        return cls(MaterializationStatus.OK, sku_id=sku_id, ready=ready)

    @classmethod
    def degraded(cls, sku_id: str, ready: bool) -> "MaterializationResult":
        return cls(MaterializationStatus.DEGRADED, sku_id=sku_id, ready=ready)

    @classmethod
    def failed(cls, error: str) -> "MaterializationResult":
        return cls(MaterializationStatus.FAILED, error=error)

    @property
    def used_fallback(self) -> bool:
        return self.status == MaterializationStatus.DEGRADED

    @property
    def succeeded(self) -> bool:
        return self.status != MaterializationStatus.FAILED and bool(self.sku_id)


@dataclass(frozen=True)
class DiscountIssue:
    code: Optional[str]
    rule_id: Optional[str]
    discount_cents: int


# =============================================================================
# RESPONSE SHAPES (exposed to the storefront cart)
# =============================================================================

class PriceBreakdownDict(TypedDict):
    productSubtotal: int
    discountedProductTotal: int
    addOnTotal: int
    grandTotal: int
    itemCount: int


class SkuCheckoutDict(TypedDict):
    skuId: str
    totalCents: int
    degraded: bool


class DiscountCheckoutDict(TypedDict):
    mode: Literal["discount_code"]
    discountCents: int
    discountCode: Optional[str]
    ruleId: Optional[str]


def sku_checkout_payload(result: MaterializationResult, total_cents: int) -> SkuCheckoutDict:
    return {
        "skuId": str(result.sku_id),
        "totalCents": total_cents,
        "degraded": result.used_fallback,
    }


def discount_checkout_payload(issue: DiscountIssue) -> DiscountCheckoutDict:
    return {
        "mode": "discount_code",
        "discountCents": issue.discount_cents,
        "discountCode": issue.code,
        "ruleId": issue.rule_id,
    }


def numeric_id(gid: Optional[str]) -> Optional[str]:
    """'gid://shopify/ProductVariant/123' -> '123'; plain numeric ids pass through."""
    if gid is None:
        return None
    tail = str(gid).rstrip("/").split("/")[-1]
    return tail or None


__all__ = [
    "PricingMode",
    "PlanTier",
    "AddOnKind",
    "MaterializationStatus",
    "TierRule",
    "ItemVariant",
    "BundleItem",
    "AddOn",
    "BundleDefinition",
    "Selection",
    "PriceBreakdown",
    "ItemSpec",
    "SkuRecord",
    "DiscountRuleSpec",
    "DiscountRuleRecord",
    "MaterializationResult",
    "DiscountIssue",
    "PriceBreakdownDict",
    "SkuCheckoutDict",
    "DiscountCheckoutDict",
    "sku_checkout_payload",
    "discount_checkout_payload",
    "numeric_id",
]
