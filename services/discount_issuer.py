"""
Discount Issuer
Alternative to a priced SKU: a single-use, ten minute, variant-scoped price
rule plus a one-time code covering exactly the bundle discount.
"""
import asyncio
import logging
import secrets
import string
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import settings
from schemas import (
    BundleDefinition,
    DiscountIssue,
    DiscountRuleSpec,
    PriceBreakdown,
    Selection,
    numeric_id,
)
from services.discount_janitor import DiscountJanitor
from services.errors import DiscountIssuanceFailed, ShopifyAPIError
from services.obs.metrics import MaterializationMetrics, checkout_metrics
from services.pricing import pricing_resolver
from services.shopify_client import ShopifyCatalogClient
from utils import with_retry

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_discount_code(prefix: Optional[str] = None, length: int = 6) -> str:
    """Human-shareable one-time code, e.g. BNDL-7KQ2ZD"""
    prefix = settings.DISCOUNT_CODE_PREFIX if prefix is None else prefix
    return prefix + "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def entitled_sku_ids(bundle: BundleDefinition, selection: Selection) -> List[int]:
    """Numeric variant ids for the selected items, honouring manual variant choices."""
    ids: List[int] = []
    for item in pricing_resolver.selected_items(bundle, selection):
        variant_gid = selection.variant_overrides.get(str(item.id)) or item.variant_id
        tail = numeric_id(variant_gid)
        if tail and tail.isdigit() and int(tail) not in ids:
            ids.append(int(tail))
    return ids


class DiscountIssuer:
    def __init__(
        self,
        client: ShopifyCatalogClient,
        janitor: Optional[DiscountJanitor] = None,
        ttl_minutes: Optional[int] = None,
        sweep_timeout: Optional[float] = None,
        metrics: MaterializationMetrics = checkout_metrics,
    ):
        self.client = client
        self.janitor = janitor or DiscountJanitor(client, metrics=metrics)
        self.ttl_minutes = settings.DISCOUNT_RULE_TTL_MINUTES if ttl_minutes is None else ttl_minutes
        self.sweep_timeout = settings.JANITOR_SWEEP_TIMEOUT_SECONDS if sweep_timeout is None else sweep_timeout
        self.metrics = metrics

    async def _sweep_quietly(self) -> None:
        """Bound live rules before creating another; never blocks issuance."""
        try:
            await asyncio.wait_for(self.janitor.sweep(self.ttl_minutes), timeout=self.sweep_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Proactive price rule sweep exceeded {self.sweep_timeout:.1f}s; continuing")
        except Exception:
            logger.exception("Proactive price rule sweep failed; continuing")

    async def issue_discount(
        self,
        bundle: BundleDefinition,
        selection: Selection,
        breakdown: PriceBreakdown,
    ) -> DiscountIssue:
        # add-ons are never discounted, so they stay out of the rule
        discount_cents = max(0, breakdown.product_subtotal - breakdown.discounted_product_total)

        await self._sweep_quietly()

        if discount_cents == 0:
            logger.info(f"Bundle {bundle.id} has no discount to issue (subtotal={breakdown.product_subtotal})")
            self.metrics.record_discount("skipped")
            return DiscountIssue(code=None, rule_id=None, discount_cents=0)

        variant_ids = entitled_sku_ids(bundle, selection)
        if not variant_ids:
            self.metrics.record_discount("failed")
            raise DiscountIssuanceFailed(f"Bundle {bundle.id}: selection resolves to no variant ids")

        now = datetime.now(timezone.utc)
        spec = DiscountRuleSpec(
            title=f"{settings.DISCOUNT_RULE_TITLE_PREFIX}{bundle.id}-{int(time.time() * 1000)}",
            value_cents=discount_cents,
            entitled_sku_ids=tuple(variant_ids),
            starts_at=now,
            ends_at=now + timedelta(minutes=self.ttl_minutes),
            usage_limit=1,
            once_per_customer=True,
        )

        try:
            rule_id = await with_retry(self.client.create_discount_rule, spec)
        except ShopifyAPIError as exc:
            self.metrics.record_discount("failed")
            logger.error(f"Price rule create failed for bundle {bundle.id}: {type(exc).__name__}: {exc}")
            raise DiscountIssuanceFailed(f"price rule create failed: {type(exc).__name__}") from exc

        code = generate_discount_code()
        try:
            code = await with_retry(self.client.create_discount_code, rule_id, code)
        except ShopifyAPIError as exc:
            self.metrics.record_discount("failed")
            logger.error(f"Discount code create failed for rule {rule_id}: {type(exc).__name__}: {exc}")
            await self._discard_rule(rule_id)
            raise DiscountIssuanceFailed(f"discount code create failed: {type(exc).__name__}") from exc

        self.metrics.record_discount("issued")
        logger.info(
            f"Issued code for bundle {bundle.id} rule={rule_id} discount={discount_cents} variants={variant_ids}"
        )
        return DiscountIssue(code=code, rule_id=rule_id, discount_cents=discount_cents)

    async def _discard_rule(self, rule_id: str) -> None:
        try:
            await self.client.delete_discount_rule(rule_id)
        except ShopifyAPIError as exc:
            logger.warning(f"Could not discard orphaned price rule {rule_id}: {exc}")
