"""
Storage Service Layer
Bundle Configuration Store and shop session lookups backed by SQLAlchemy.
"""
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import AsyncSessionLocal, Bundle, BundleProduct, BundleTierPrice, ShopSession, ShopSettings
from schemas import (
    AddOn,
    AddOnKind,
    BundleDefinition,
    BundleItem,
    ItemVariant,
    PlanTier,
    PricingMode,
    TierRule,
)
from services.errors import BundleNotFound, Unauthorized
from utils import retry_async

logger = logging.getLogger(__name__)


def _as_value(raw: Any) -> Optional[Any]:
    """Numeric column -> int when integral, Decimal otherwise."""
    if raw in (None, ""):
        return None
    value = Decimal(str(raw))
    if value == value.to_integral_value():
        return int(value)
    return value


def _parse_variants(raw: Optional[str], product_id: str) -> Tuple[ItemVariant, ...]:
    if not raw:
        return ()
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring malformed variants_json on bundle product {product_id}")
        return ()
    variants: List[ItemVariant] = []
    for entry in parsed if isinstance(parsed, list) else []:
        if not isinstance(entry, dict):
            continue
        variant_id = entry.get("id") or entry.get("variantId")
        price = entry.get("priceCents")
        if not variant_id or not isinstance(price, (int, float)):
            continue
        variants.append(ItemVariant(id=str(variant_id), price_cents=int(price), title=entry.get("title") or ""))
    return tuple(variants)


def _tier_from_row(row: BundleTierPrice) -> TierRule:
    mode = PricingMode.parse(row.pricing_type)
    if mode == PricingMode.DISCOUNT_PERCENT:
        value = _as_value(row.value_percent)
    else:
        value = _as_value(row.value_cents)
    return TierRule(min_quantity=int(row.min_quantity), mode=mode, value=value)


def _item_from_row(row: BundleProduct) -> BundleItem:
    return BundleItem(
        id=str(row.id),
        product_id=row.product_gid,
        variant_id=row.variant_gid,
        base_price_cents=int(row.price_cents or 0),
        title=row.title or "",
        min_quantity=int(row.min_quantity or 1),
        max_quantity=row.max_quantity,
        variants=_parse_variants(row.variants_json, row.id),
    )


def to_definition(bundle: Bundle) -> BundleDefinition:
    """Map a loaded Bundle row (with children) to an immutable BundleDefinition."""
    return BundleDefinition(
        id=str(bundle.id),
        title=bundle.title,
        pricing_mode=PricingMode.parse(bundle.pricing_type),
        pricing_value=_as_value(bundle.price_value_cents),
        tiers=tuple(_tier_from_row(t) for t in bundle.tier_prices or []),
        items=tuple(_item_from_row(p) for p in bundle.products or []),
        wraps=tuple(
            AddOn(id=str(w.id), kind=AddOnKind.WRAP, price_cents=int(w.price_cents or 0), name=w.name)
            for w in bundle.wrapping_options or []
        ),
        cards=tuple(
            AddOn(id=str(c.id), kind=AddOnKind.CARD, price_cents=int(c.price_cents or 0), name=c.name)
            for c in bundle.cards or []
        ),
        shop=bundle.shop,
    )


class StorageService:
    """Read-only access to bundle configuration, plan tiers and shop sessions"""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self.session_factory = session_factory

    @retry_async(max_retries=2, base_delay=0.25)
    async def get_bundle_definition(self, bundle_id: str) -> BundleDefinition:
        async with self.session_factory() as session:
            session: AsyncSession
            result = await session.execute(
                select(Bundle).where(or_(Bundle.id == bundle_id, Bundle.bundle_id == bundle_id)).limit(1)
            )
            bundle = result.scalars().first()
            if bundle is None:
                raise BundleNotFound(f"Bundle {bundle_id} not found")
            return to_definition(bundle)

    @retry_async(max_retries=2, base_delay=0.25)
    async def get_plan_tier(self, shop: str) -> PlanTier:
        async with self.session_factory() as session:
            row = await session.get(ShopSettings, shop)
            if row is None or not row.plan:
                return PlanTier.FREE
            try:
                return PlanTier(row.plan.upper())
            except ValueError:
                logger.warning(f"Unknown plan {row.plan!r} for shop {shop}; treating as FREE")
                return PlanTier.FREE

    @retry_async(max_retries=2, base_delay=0.25)
    async def get_access_token(self, shop: str) -> str:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ShopSession)
                .where(ShopSession.shop == shop)
                .order_by(ShopSession.expires.desc().nulls_first(), ShopSession.created_at.desc())
            )
            now = datetime.now(timezone.utc)
            for row in result.scalars().all():
                expires = row.expires
                if expires is not None and expires.tzinfo is None:
                    expires = expires.replace(tzinfo=timezone.utc)
                if expires is not None and expires < now:
                    continue
                if row.access_token:
                    return row.access_token
        raise Unauthorized(f"No valid session for shop {shop}")


storage = StorageService()
