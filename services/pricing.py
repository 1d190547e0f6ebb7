"""
Bundle Pricing Resolver
Deterministic bundle pricing: item subtotal, tier/bundle pricing mode, add-ons.
Pure computation, no I/O.
"""
from typing import Iterable, List, Optional, Tuple
import logging
from decimal import Decimal, ROUND_FLOOR

from schemas import (
    AddOn,
    BundleDefinition,
    BundleItem,
    PriceBreakdown,
    PricingMode,
    Selection,
    TierRule,
)
from services.errors import InvalidPricingConfig, InvalidSelection

logger = logging.getLogger(__name__)


def apply_pricing_mode(base: int, mode: PricingMode, value) -> int:
    """Apply a pricing mode to a base amount in cents.

    FIXED ignores ``base``. Discount modes never go below zero.
    """
    if mode == PricingMode.SUM:
        return base
    if value is None:
        raise InvalidPricingConfig(f"{mode.value} pricing requires a value")

    amount = Decimal(str(value))
    if mode == PricingMode.FIXED:
        return max(0, int(amount))
    if mode == PricingMode.DISCOUNT_PERCENT:
        off = (Decimal(base) * amount / Decimal(100)).to_integral_value(rounding=ROUND_FLOOR)
        return max(0, base - int(off))
    if mode == PricingMode.DISCOUNT_AMOUNT:
        return max(0, base - int(amount))
    return base


def select_tier(tiers: Iterable[TierRule], item_count: int) -> Optional[TierRule]:
    """Highest qualifying min_quantity wins; on a tie the first declared rule is kept."""
    chosen: Optional[TierRule] = None
    for tier in tiers:
        if tier.min_quantity > item_count:
            continue
        if chosen is None or tier.min_quantity > chosen.min_quantity:
            chosen = tier
    return chosen


class PricingResolver:
    """Resolves a bundle definition plus a buyer selection into a PriceBreakdown."""

    def selected_items(self, bundle: BundleDefinition, selection: Selection) -> List[BundleItem]:
        """Selected items in selection order, duplicates collapsed."""
        items: List[BundleItem] = []
        seen = set()
        for raw_id in selection.item_ids:
            item_id = str(raw_id)
            if item_id in seen:
                continue
            item = bundle.find_item(item_id)
            if item is None:
                raise InvalidSelection(f"Item {item_id} is not part of bundle {bundle.id}")
            seen.add(item_id)
            items.append(item)
        return items

    def item_price(self, item: BundleItem, selection: Selection) -> int:
        price = item.base_price_cents
        override = selection.variant_overrides.get(str(item.id))
        if override and item.variants:
            variant = item.find_variant(override)
            if variant is not None:
                # delta only; the base is already counted
                price += variant.price_cents - item.base_price_cents
            else:
                logger.debug(f"Variant {override} not listed for item {item.id}; using base price")
        return price

    def _find_add_on(self, options: Tuple[AddOn, ...], add_on_id: Optional[str], kind: str, bundle_id: str) -> int:
        if not add_on_id:
            return 0
        for option in options:
            if str(option.id) == str(add_on_id):
                return option.price_cents
        raise InvalidSelection(f"{kind} {add_on_id} is not offered by bundle {bundle_id}")

    def resolve(self, bundle: BundleDefinition, selection: Selection) -> PriceBreakdown:
        items = self.selected_items(bundle, selection)
        product_subtotal = sum(self.item_price(item, selection) for item in items)
        item_count = len(items)

        tier = select_tier(bundle.tiers, item_count)
        if tier is not None:
            discounted = apply_pricing_mode(product_subtotal, tier.mode, tier.value)
        else:
            discounted = apply_pricing_mode(product_subtotal, bundle.pricing_mode, bundle.pricing_value)

        add_on_total = (
            self._find_add_on(bundle.wraps, selection.wrap_id, "Wrap", bundle.id)
            + self._find_add_on(bundle.cards, selection.card_id, "Card", bundle.id)
        )

        return PriceBreakdown(
            product_subtotal=product_subtotal,
            discounted_product_total=discounted,
            add_on_total=add_on_total,
            grand_total=discounted + add_on_total,
            item_count=item_count,
            applied_tier=tier,
        )


pricing_resolver = PricingResolver()


def resolve(bundle: BundleDefinition, selection: Selection) -> PriceBreakdown:
    return pricing_resolver.resolve(bundle, selection)
