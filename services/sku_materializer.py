"""
SKU Materializer
Makes a computed bundle price purchasable by pointing a hidden price-carrier
variant at it.

Primary path: get-or-create the product tagged ``bundle-charge:<bundle id>``
(or the legacy shop-wide ``bundle-charge-master``), publish it, upsert its
single variant at the requested price and wait for the storefront to see it.
If that path fails outright, a uniquely titled one-off product is created for
this purchase instead (Degraded). Failed only when both paths fail.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

import settings
from schemas import ItemSpec, MaterializationResult, SkuRecord
from services.deadlines import Deadline
from services.errors import NotFound, RemoteError, ShopifyAPIError
from services.obs.metrics import MaterializationMetrics, checkout_metrics
from services.shopify_client import ShopifyCatalogClient
from utils import with_retry

logger = logging.getLogger(__name__)

SHARED_MASTER_TAG = "bundle-charge-master"
CHARGE_TAG = "bundle-charge"
HIDDEN_TAG = "hidden-product"
CONTINUE_SELLING = "continue"


class SkuMaterializer:
    def __init__(
        self,
        client: ShopifyCatalogClient,
        poll_attempts: Optional[int] = None,
        poll_interval: Optional[float] = None,
        inventory_quantity: Optional[int] = None,
        shared_master: Optional[bool] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: MaterializationMetrics = checkout_metrics,
    ):
        self.client = client
        self.poll_attempts = poll_attempts if poll_attempts is not None else settings.SKU_READY_POLL_ATTEMPTS
        self.poll_interval = poll_interval if poll_interval is not None else settings.SKU_READY_POLL_INTERVAL_SECONDS
        self.inventory_quantity = (
            inventory_quantity if inventory_quantity is not None else settings.SKU_INVENTORY_QUANTITY
        )
        self.shared_master = settings.SHARED_MASTER_SKU if shared_master is None else shared_master
        self._sleep = sleep
        self.metrics = metrics

    def master_tag(self, bundle_id: str) -> str:
        if self.shared_master:
            return SHARED_MASTER_TAG
        return f"{CHARGE_TAG}:{bundle_id}"

    async def materialize(self, bundle_id: str, bundle_title: str, price_cents: int) -> MaterializationResult:
        started = time.monotonic()
        try:
            sku_id = await self._materialize_master(bundle_id, bundle_title, price_cents)
            ready = await self.wait_until_readable(sku_id)
            result = MaterializationResult.ok(sku_id, ready)
        except ShopifyAPIError as master_exc:
            logger.warning(
                f"Master SKU path failed for bundle {bundle_id} "
                f"({type(master_exc).__name__}: {master_exc}); falling back to a one-off product"
            )
            try:
                sku_id = await self._materialize_unique(bundle_id, bundle_title, price_cents)
                ready = await self.wait_until_readable(sku_id)
                result = MaterializationResult.degraded(sku_id, ready)
            except ShopifyAPIError as fallback_exc:
                logger.error(
                    f"Fallback SKU path failed for bundle {bundle_id}: {type(fallback_exc).__name__}: {fallback_exc}"
                )
                result = MaterializationResult.failed(
                    f"master: {type(master_exc).__name__}; fallback: {type(fallback_exc).__name__}"
                )

        duration_ms = (time.monotonic() - started) * 1000
        self.metrics.record_materialization(result.status.value, duration_ms)
        logger.info(
            f"Materialized bundle {bundle_id} price={price_cents} status={result.status.value} "
            f"sku={result.sku_id} ready={result.ready} durMs={duration_ms:.0f}"
        )
        return result

    async def _materialize_master(self, bundle_id: str, bundle_title: str, price_cents: int) -> str:
        tag = self.master_tag(bundle_id)
        item_id = await with_retry(self.client.find_item_by_tag, tag)
        if not item_id:
            tags = (tag, HIDDEN_TAG) if self.shared_master else (tag, CHARGE_TAG, HIDDEN_TAG)
            item_id = await with_retry(
                self.client.create_item,
                ItemSpec(title=f"Bundle Charge - {bundle_title}", tags=tags),
            )
            logger.info(f"Created price-carrier product {item_id} tagged {tag}")

        await self._publish(item_id)

        skus = await with_retry(self.client.list_skus, item_id)
        if skus:
            sku = skus[0]
            await with_retry(self.client.update_sku_price, sku.id, price_cents, CONTINUE_SELLING)
        else:
            sku = await with_retry(self.client.create_sku, item_id, price_cents, CONTINUE_SELLING)

        await self._stock(sku, self.inventory_quantity)
        return sku.id

    async def _materialize_unique(self, bundle_id: str, bundle_title: str, price_cents: int) -> str:
        timestamp = int(time.time() * 1000)
        item_id = await with_retry(
            self.client.create_item,
            ItemSpec(
                title=f"Bundle: {bundle_title} - {timestamp}",
                tags=(CHARGE_TAG, HIDDEN_TAG, f"bundle-{bundle_id}", f"timestamp-{timestamp}"),
            ),
        )
        await self._publish(item_id)
        sku = await with_retry(self.client.create_sku, item_id, price_cents, CONTINUE_SELLING)
        await self._stock(sku, self.inventory_quantity)
        return sku.id

    async def _publish(self, item_id: str) -> None:
        """Best effort; an unpublished product shows up as a failed readiness poll."""
        try:
            channel_id = await with_retry(self.client.get_online_channel_id)
        except ShopifyAPIError as exc:
            logger.warning(f"Looking up the Online Store publication failed: {type(exc).__name__}: {exc}")
            return
        if not channel_id:
            logger.warning(f"No Online Store publication found; product {item_id} left unpublished")
            return
        try:
            await with_retry(self.client.publish_item, item_id, channel_id)
        except (NotFound, RemoteError) as exc:
            # cached publication id may be stale
            self.client.invalidate_online_channel()
            logger.warning(f"Publishing product {item_id} to {channel_id} failed: {type(exc).__name__}: {exc}")
        except ShopifyAPIError as exc:
            logger.warning(f"Publishing product {item_id} failed: {type(exc).__name__}: {exc}")

    async def _stock(self, sku: SkuRecord, quantity: int) -> None:
        try:
            await with_retry(self.client.set_inventory, sku.id, quantity, sku.inventory_item_id)
        except (NotFound, RemoteError) as exc:
            self.client.invalidate_location()
            logger.warning(f"Setting inventory for variant {sku.id} failed: {type(exc).__name__}: {exc}")
        except ShopifyAPIError as exc:
            logger.warning(f"Setting inventory for variant {sku.id} failed: {type(exc).__name__}: {exc}")

    async def wait_until_readable(self, sku_id: str) -> bool:
        """Poll the storefront until the variant reads back, bounded by attempts and a deadline."""
        deadline = Deadline(
            seconds=self.poll_attempts * self.poll_interval + settings.SHOPIFY_HTTP_TIMEOUT_SECONDS
        )
        for attempt in range(self.poll_attempts):
            try:
                if await self.client.read_sku(sku_id):
                    logger.debug(f"Variant {sku_id} readable after {attempt + 1} attempt(s)")
                    return True
            except ShopifyAPIError as exc:
                logger.debug(f"Readiness check for {sku_id} failed: {exc}")
            if attempt < self.poll_attempts - 1:
                if deadline.expired:
                    break
                await self._sleep(min(self.poll_interval, deadline.remaining()))

        logger.warning(f"Variant {sku_id} not readable after {self.poll_attempts} attempts; returning it anyway")
        return False
