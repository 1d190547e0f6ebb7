"""
Checkout Orchestration
Loads the bundle, applies plan gating, prices the selection and makes the
price purchasable either as a priced SKU or as a one-time discount code.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, Optional, Union

from schemas import (
    BundleDefinition,
    DiscountCheckoutDict,
    PlanTier,
    PriceBreakdown,
    Selection,
    SkuCheckoutDict,
    discount_checkout_payload,
    sku_checkout_payload,
)
from services.discount_issuer import DiscountIssuer
from services.discount_janitor import DiscountJanitor
from services.errors import DiscountIssuanceFailed, MaterializationFailed
from services.obs.metrics import MaterializationMetrics, checkout_metrics
from services.pricing import PricingResolver, pricing_resolver
from services.shopify_client import ShopifyCatalogClient
from services.sku_materializer import SkuMaterializer
from services.storage import StorageService, storage

logger = logging.getLogger(__name__)

PREFER_DISCOUNT = "discount"

ClientFactory = Callable[[str, str], ShopifyCatalogClient]


def default_client_factory(shop: str, access_token: str) -> ShopifyCatalogClient:
    return ShopifyCatalogClient(shop, access_token)


def apply_plan_gating(bundle: BundleDefinition, selection: Selection, plan: PlanTier):
    """FREE shops get base pricing only: no tier rules, no wrap or card."""
    if plan != PlanTier.FREE:
        return bundle, selection
    if selection.wrap_id or selection.card_id:
        logger.info(f"Dropping add-ons from FREE plan selection on bundle {bundle.id}")
    gated = BundleDefinition(
        id=bundle.id,
        title=bundle.title,
        pricing_mode=bundle.pricing_mode,
        pricing_value=bundle.pricing_value,
        tiers=(),
        items=bundle.items,
        wraps=(),
        cards=(),
        shop=bundle.shop,
    )
    return gated, selection.without_add_ons()


class CheckoutService:
    def __init__(
        self,
        store: StorageService = storage,
        client_factory: ClientFactory = default_client_factory,
        resolver: PricingResolver = pricing_resolver,
        materializer_options: Optional[Dict[str, Any]] = None,
        metrics: MaterializationMetrics = checkout_metrics,
    ):
        self.store = store
        self.client_factory = client_factory
        self.resolver = resolver
        self.materializer_options = materializer_options or {}
        self.metrics = metrics

    async def price(self, shop: Optional[str], bundle_id: str, selection: Selection) -> PriceBreakdown:
        bundle = await self.store.get_bundle_definition(bundle_id)
        plan = await self.store.get_plan_tier(shop) if shop else PlanTier.FREE
        bundle, selection = apply_plan_gating(bundle, selection, plan)
        return self.resolver.resolve(bundle, selection)

    async def prepare_checkout(
        self,
        shop: str,
        bundle_id: str,
        selection: Selection,
        prefer: Optional[str] = None,
    ) -> Union[SkuCheckoutDict, DiscountCheckoutDict]:
        access_token = await self.store.get_access_token(shop)
        bundle = await self.store.get_bundle_definition(bundle_id)
        plan = await self.store.get_plan_tier(shop)
        bundle, selection = apply_plan_gating(bundle, selection, plan)

        # pricing errors are configuration bugs; surface them verbatim
        breakdown = self.resolver.resolve(bundle, selection)
        logger.info(
            f"Priced bundle {bundle.id} for {shop}: subtotal={breakdown.product_subtotal} "
            f"product_total={breakdown.discounted_product_total} add_ons={breakdown.add_on_total} "
            f"total={breakdown.grand_total} prefer={prefer or 'sku'}"
        )

        client = self.client_factory(shop, access_token)
        async with client:
            if prefer == PREFER_DISCOUNT:
                issuer = DiscountIssuer(client, metrics=self.metrics)
                try:
                    issue = await issuer.issue_discount(bundle, selection, breakdown)
                    return discount_checkout_payload(issue)
                except DiscountIssuanceFailed as exc:
                    self.metrics.record_discount("fallback_to_sku")
                    logger.warning(f"Discount checkout failed for bundle {bundle.id} ({exc}); using priced SKU")

            materializer = SkuMaterializer(client, metrics=self.metrics, **self.materializer_options)
            result = await materializer.materialize(bundle.id, bundle.title, breakdown.grand_total)

        if not result.succeeded:
            raise MaterializationFailed(result.error or "materialization failed")
        return sku_checkout_payload(result, breakdown.grand_total)

    async def on_order_completed(self, shop: str, discount_codes_applied: Iterable[str]) -> int:
        """Delete price rules behind consumed bundle codes. Never raises."""
        codes = [c for c in discount_codes_applied or [] if isinstance(c, str) and c]
        if not codes:
            return 0
        try:
            access_token = await self.store.get_access_token(shop)
            client = self.client_factory(shop, access_token)
            async with client:
                return await DiscountJanitor(client, metrics=self.metrics).on_order_completed(codes)
        except Exception:
            logger.exception(f"Order cleanup failed for shop {shop}")
            return 0


checkout_service = CheckoutService()
