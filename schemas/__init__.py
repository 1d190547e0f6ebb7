"""
Bundle Schemas Package
Provides the data structures shared by pricing and checkout materialization.
"""

from .bundle_schemas import (
    # Enums
    PricingMode,
    PlanTier,
    AddOnKind,
    MaterializationStatus,

    # Bundle definition
    TierRule,
    ItemVariant,
    BundleItem,
    AddOn,
    BundleDefinition,

    # Request-scoped
    Selection,
    PriceBreakdown,

    # Remote records
    ItemSpec,
    SkuRecord,
    DiscountRuleSpec,
    DiscountRuleRecord,

    # Results and response shapes
    MaterializationResult,
    DiscountIssue,
    PriceBreakdownDict,
    SkuCheckoutDict,
    DiscountCheckoutDict,
    sku_checkout_payload,
    discount_checkout_payload,
    numeric_id,
)

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
