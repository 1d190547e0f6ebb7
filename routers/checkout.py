"""
Storefront checkout endpoints
Called through the Shopify app proxy by the bundle builder widget.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from schemas import Selection
from services.checkout import CheckoutService, checkout_service
from services.errors import (
    BundleNotFound,
    InvalidPricingConfig,
    InvalidSelection,
    MaterializationFailed,
    ShopifyAPIError,
    Unauthorized,
)
from settings import resolve_shop_domain

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/apps/bundles", tags=["Bundle Checkout"])

CHECKOUT_FAILED_MESSAGE = "Could not prepare this bundle for checkout"


class CheckoutRequest(BaseModel):
    """Selection posted by the bundle builder widget."""

    selected_item_ids: List[str] = Field(default_factory=list, alias="selectedItemIds")
    selected_variant_map: Dict[str, str] = Field(default_factory=dict, alias="selectedVariantMap")
    selected_wrap_id: Optional[str] = Field(None, alias="selectedWrapId")
    selected_card_id: Optional[str] = Field(None, alias="selectedCardId")

    model_config = ConfigDict(populate_by_name=True)

    def to_selection(self) -> Selection:
        return Selection(
            item_ids=tuple(str(i) for i in self.selected_item_ids),
            variant_overrides={str(k): str(v) for k, v in self.selected_variant_map.items() if v},
            wrap_id=self.selected_wrap_id or None,
            card_id=self.selected_card_id or None,
        )


def get_checkout_service() -> CheckoutService:
    return checkout_service


def _require_shop(shop: Optional[str]) -> str:
    resolved = resolve_shop_domain(shop)
    if not resolved:
        raise HTTPException(status_code=400, detail="Missing shop")
    return resolved


@router.post("/{bundle_id}/price")
async def price_bundle(
    bundle_id: str,
    request: CheckoutRequest,
    shop: Optional[str] = Query(None),
    service: CheckoutService = Depends(get_checkout_service),
):
    """Price preview; no remote calls."""
    try:
        breakdown = await service.price(resolve_shop_domain(shop), bundle_id, request.to_selection())
    except BundleNotFound:
        raise HTTPException(status_code=404, detail="Bundle not found")
    except (InvalidSelection, InvalidPricingConfig) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return breakdown.to_dict()


@router.post("/{bundle_id}/checkout")
async def checkout_bundle(
    bundle_id: str,
    request: CheckoutRequest,
    shop: Optional[str] = Query(None),
    prefer: Optional[str] = Query(None),
    service: CheckoutService = Depends(get_checkout_service),
):
    """
    Recompute the price server-side and make it purchasable.
    ``prefer=discount`` asks for a one-time code instead of a priced SKU.
    """
    resolved_shop = _require_shop(shop)
    try:
        return await service.prepare_checkout(
            resolved_shop, bundle_id, request.to_selection(), prefer=prefer
        )
    except Unauthorized:
        logger.warning(f"[checkout] No usable session for shop={resolved_shop}")
        raise HTTPException(status_code=401, detail="No session for shop")
    except BundleNotFound:
        raise HTTPException(status_code=404, detail="Bundle not found")
    except (InvalidSelection, InvalidPricingConfig) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except (MaterializationFailed, ShopifyAPIError) as exc:
        logger.error(f"[checkout] bundle={bundle_id} shop={resolved_shop} failed: {exc}")
        raise HTTPException(status_code=502, detail=CHECKOUT_FAILED_MESSAGE)
