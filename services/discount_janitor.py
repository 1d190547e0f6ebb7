"""
Discount Janitor
Deletes ephemeral bundle price rules once their code has been consumed or
once they are older than the allowed lifetime.

Only rules whose title has the exact issued shape ``<prefix><bundleId>-<ms>``
are touched; merchant rules that merely start with the prefix are left alone.
Cleanup is best effort: every deletion is independent, failures are logged
and never propagated, and deleting an already-deleted rule is a no-op.
"""
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

import settings
from schemas import DiscountRuleRecord
from services.errors import NotFound, ShopifyAPIError
from services.obs.metrics import MaterializationMetrics, checkout_metrics
from services.shopify_client import ShopifyCatalogClient
from utils import with_retry

logger = logging.getLogger(__name__)


def issued_title_pattern(prefix: str) -> "re.Pattern[str]":
    """Matches titles built by the issuer: prefix, bundle id, millisecond timestamp."""
    return re.compile(rf"^{re.escape(prefix)}(?P<bundle_id>.+)-(?P<issued_ms>\d{{13}})$")


class DiscountJanitor:
    def __init__(
        self,
        client: ShopifyCatalogClient,
        code_prefix: Optional[str] = None,
        rule_title_prefix: Optional[str] = None,
        metrics: MaterializationMetrics = checkout_metrics,
    ):
        self.client = client
        self.code_prefix = code_prefix if code_prefix is not None else settings.DISCOUNT_CODE_PREFIX
        self.rule_title_prefix = (
            rule_title_prefix if rule_title_prefix is not None else settings.DISCOUNT_RULE_TITLE_PREFIX
        )
        self._title_re = issued_title_pattern(self.rule_title_prefix)
        self.metrics = metrics

    def owns_code(self, code: Optional[str]) -> bool:
        return isinstance(code, str) and bool(code) and code.startswith(self.code_prefix)

    def owns_rule(self, title: Optional[str]) -> bool:
        return isinstance(title, str) and self._title_re.match(title) is not None

    def is_stale(self, rule: DiscountRuleRecord, max_age_minutes: float, now: datetime) -> bool:
        if not self.owns_rule(rule.title):
            return False
        if rule.usage_limit == 1 and rule.usage_count >= 1:
            return True
        if rule.created_at is None:
            return False
        return now - rule.created_at > timedelta(minutes=max_age_minutes)

    async def _delete(self, rule_id: str) -> bool:
        try:
            await with_retry(self.client.delete_discount_rule, rule_id)
            return True
        except NotFound:
            logger.debug(f"Price rule {rule_id} already gone")
            return True
        except ShopifyAPIError as exc:
            logger.warning(f"Deleting price rule {rule_id} failed: {type(exc).__name__}: {exc}")
            return False

    async def sweep(self, max_age_minutes: Optional[float] = None, now: Optional[datetime] = None) -> int:
        """Age-triggered cleanup; returns the number of rules removed."""
        max_age = settings.DISCOUNT_RULE_TTL_MINUTES if max_age_minutes is None else max_age_minutes
        now = now or datetime.now(timezone.utc)
        try:
            rules = await with_retry(self.client.list_discount_rules)
        except ShopifyAPIError as exc:
            logger.warning(f"Listing price rules for sweep failed: {type(exc).__name__}: {exc}")
            return 0

        stale: List[DiscountRuleRecord] = [r for r in rules if self.is_stale(r, max_age, now)]
        deleted = 0
        for rule in stale:
            if await self._delete(rule.id):
                deleted += 1

        failed = len(stale) - deleted
        self.metrics.record_janitor("swept", deleted, failed)
        if stale:
            logger.info(f"Janitor sweep removed {deleted}/{len(stale)} stale bundle price rules")
        return deleted

    async def on_order_completed(self, discount_codes: Iterable[str]) -> int:
        """Event-triggered cleanup for codes consumed by an order; never raises."""
        codes = []
        for code in discount_codes or []:
            if self.owns_code(code) and code not in codes:
                codes.append(code)

        deleted = 0
        failed = 0
        for code in codes:
            try:
                rule_id = await with_retry(self.client.lookup_discount_code_rule, code)
            except NotFound:
                logger.debug(f"Discount code {code} no longer exists")
                continue
            except ShopifyAPIError as exc:
                logger.warning(f"Looking up discount code {code} failed: {type(exc).__name__}: {exc}")
                failed += 1
                continue
            if not rule_id:
                continue
            if await self._delete(rule_id):
                deleted += 1
            else:
                failed += 1

        self.metrics.record_janitor("consumed", deleted, failed)
        if codes:
            logger.info(f"Order cleanup removed {deleted} price rule(s) for {len(codes)} bundle code(s)")
        return deleted
