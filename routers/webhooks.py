"""
Shopify webhook receivers
orders/create drives the event-triggered discount cleanup.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

import settings
from routers.checkout import get_checkout_service
from services.checkout import CheckoutService
from settings import resolve_shop_domain

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def verify_webhook_hmac(raw_body: bytes, received: Optional[str], secret: str) -> bool:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return bool(received) and hmac.compare_digest(expected, received)


def extract_discount_codes(order: Dict[str, Any]) -> List[str]:
    """Codes applied to an order, from both discount_applications and discount_codes."""
    codes: List[str] = []
    for app in order.get("discount_applications") or []:
        if not isinstance(app, dict):
            continue
        if app.get("type") == "discount_code" or app.get("code"):
            code = app.get("code")
            if isinstance(code, str) and code:
                codes.append(code)
    for entry in order.get("discount_codes") or []:
        code = entry.get("code") if isinstance(entry, dict) else None
        if isinstance(code, str) and code:
            codes.append(code)
    return list(dict.fromkeys(codes))


@router.post("/orders/create")
async def orders_create(
    request: Request,
    x_shopify_hmac_sha256: Optional[str] = Header(None),
    x_shopify_shop_domain: Optional[str] = Header(None),
    service: CheckoutService = Depends(get_checkout_service),
):
    raw_body = await request.body()

    secret = settings.SHOPIFY_API_SECRET
    if secret:
        if not verify_webhook_hmac(raw_body, x_shopify_hmac_sha256, secret):
            logger.warning(f"[webhook] HMAC mismatch for shop={x_shopify_shop_domain or '-'}")
            raise HTTPException(status_code=401, detail="Invalid webhook signature")
    elif settings.SHOPIFY_WEBHOOK_ALLOW_UNSIGNED:
        logger.warning("[webhook] SHOPIFY_API_SECRET not set; accepting unsigned webhook (development mode)")
    else:
        logger.error("[webhook] SHOPIFY_API_SECRET not set; rejecting unsigned webhook")
        raise HTTPException(status_code=401, detail="Webhook signing secret not configured")

    try:
        order = json.loads(raw_body or b"{}")
    except ValueError:
        logger.warning("[webhook] orders/create body is not JSON; ignoring")
        return {"ok": True}

    shop = resolve_shop_domain(x_shopify_shop_domain)
    codes = extract_discount_codes(order if isinstance(order, dict) else {})
    if shop and codes:
        deleted = await service.on_order_completed(shop, codes)
        logger.info(f"[webhook] order {order.get('id')} on {shop}: {deleted} bundle rule(s) cleaned")
    return {"ok": True}
