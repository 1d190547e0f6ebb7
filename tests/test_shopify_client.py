import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from schemas import DiscountRuleSpec, ItemSpec
from services.errors import NotFound, RateLimited, RemoteError, Unauthorized
from services.shopify_client import ShopifyCatalogClient, cents_to_price, price_to_cents

SHOP = "demo.myshopify.com"
ADMIN = "/admin/api/2024-10"


def _client(handler):
    return ShopifyCatalogClient(SHOP, "shpat_test", api_version="2024-10", transport=httpx.MockTransport(handler))


def _graphql_handler(data=None, errors=None, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == f"{ADMIN}/graphql.json"
        if seen is not None:
            seen.append(json.loads(request.content))
        body = {"data": data}
        if errors:
            body["errors"] = errors
        return httpx.Response(200, json=body)
    return handler


def test_money_conversions():
    assert cents_to_price(1999) == "19.99"
    assert cents_to_price(5) == "0.05"
    assert price_to_cents("19.99") == 1999
    assert price_to_cents("") is None
    assert price_to_cents("abc") is None


@pytest.mark.asyncio
async def test_find_item_by_tag_queries_by_tag():
    seen = []
    handler = _graphql_handler({"products": {"nodes": [{"id": "gid://shopify/Product/9", "title": "x"}]}}, seen=seen)
    async with _client(handler) as client:
        assert await client.find_item_by_tag("bundle-charge:b1") == "gid://shopify/Product/9"
    assert seen[0]["variables"] == {"q": "tag:'bundle-charge:b1'"}


@pytest.mark.asyncio
async def test_find_item_by_tag_returns_none_when_missing():
    async with _client(_graphql_handler({"products": {"nodes": []}})) as client:
        assert await client.find_item_by_tag("bundle-charge:b1") is None


@pytest.mark.asyncio
async def test_create_item_user_errors_become_remote_error():
    handler = _graphql_handler({"productCreate": {"product": None, "userErrors": [{"field": "title", "message": "blank"}]}})
    async with _client(handler) as client:
        with pytest.raises(RemoteError) as exc_info:
            await client.create_item(ItemSpec(title="", tags=("bundle-charge",)))
    assert exc_info.value.status == 422


@pytest.mark.asyncio
async def test_graphql_throttle_maps_to_rate_limited():
    handler = _graphql_handler(errors=[{"message": "Throttled", "extensions": {"code": "THROTTLED"}}])
    async with _client(handler) as client:
        with pytest.raises(RateLimited):
            await client.find_item_by_tag("x")


@pytest.mark.asyncio
async def test_online_channel_is_cached_per_shop():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(200, json={"data": {"publications": {"nodes": [
            {"id": "gid://shopify/Publication/7", "catalog": {"title": "Point of Sale"}},
            {"id": "gid://shopify/Publication/8", "catalog": {"title": "Online Store"}},
        ]}}})

    async with _client(handler) as client:
        assert await client.get_online_channel_id() == "gid://shopify/Publication/8"
    async with _client(handler) as client:
        assert await client.get_online_channel_id() == "gid://shopify/Publication/8"
    assert len(calls) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,error",
    [(401, Unauthorized), (403, Unauthorized), (404, NotFound), (429, RateLimited), (500, RemoteError)],
)
async def test_status_mapping(status, error):
    def handler(request):
        return httpx.Response(status, headers={"Retry-After": "2"}, text="nope")

    async with _client(handler) as client:
        with pytest.raises(error) as exc_info:
            await client.list_skus("gid://shopify/Product/1")
    if status == 429:
        assert exc_info.value.retry_after == 2.0


@pytest.mark.asyncio
async def test_transport_error_becomes_remote_error_zero():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(RemoteError) as exc_info:
            await client.list_skus("1")
    assert exc_info.value.status == 0


@pytest.mark.asyncio
async def test_create_sku_payload_and_record():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        assert request.headers["X-Shopify-Access-Token"] == "shpat_test"
        return httpx.Response(201, json={"variant": {"id": 555, "price": "21.00", "inventory_item_id": 777}})

    async with _client(handler) as client:
        sku = await client.create_sku("gid://shopify/Product/42", 2100)

    assert seen["path"] == f"{ADMIN}/products/42/variants.json"
    variant = seen["body"]["variant"]
    assert variant["price"] == "21.00"
    assert variant["inventory_policy"] == "continue"
    assert variant["requires_shipping"] is False
    assert variant["taxable"] is False
    assert (sku.id, sku.price_cents, sku.inventory_item_id) == ("555", 2100, "777")


@pytest.mark.asyncio
async def test_set_inventory_uses_first_location():
    posted = []

    def handler(request):
        if request.url.path.endswith("/locations.json"):
            return httpx.Response(200, json={"locations": [{"id": 11}, {"id": 12}]})
        posted.append(json.loads(request.content))
        return httpx.Response(200, json={"inventory_level": {}})

    async with _client(handler) as client:
        await client.set_inventory("555", 999, inventory_item_id="777")

    assert posted == [{"location_id": 11, "inventory_item_id": 777, "available": 999}]


@pytest.mark.asyncio
async def test_read_sku_uses_storefront_path():
    paths = []

    def handler(request):
        paths.append((request.url.path, "X-Shopify-Access-Token" in request.headers))
        if request.url.path == "/variants/555.json":
            return httpx.Response(200, json={"variant": {"id": 555}})
        return httpx.Response(404)

    async with _client(handler) as client:
        assert await client.read_sku("gid://shopify/ProductVariant/555") is True
        assert await client.read_sku("556") is False

    assert paths[0] == ("/variants/555.json", False)


@pytest.mark.asyncio
async def test_create_discount_rule_body():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)["price_rule"]
        return httpx.Response(201, json={"price_rule": {"id": 9001}})

    now = datetime(2024, 5, 1, tzinfo=timezone.utc)
    spec = DiscountRuleSpec(
        title="bundle-b1-1",
        value_cents=250,
        entitled_sku_ids=(11, 21),
        starts_at=now,
        ends_at=now + timedelta(minutes=10),
    )
    async with _client(handler) as client:
        assert await client.create_discount_rule(spec) == "9001"

    body = seen["body"]
    assert body["value"] == "-2.50"
    assert body["value_type"] == "fixed_amount"
    assert body["target_selection"] == "entitled"
    assert body["entitled_variant_ids"] == [11, 21]
    assert body["usage_limit"] == 1
    assert body["once_per_customer"] is True
    assert not any(body["combines_with"].values())


@pytest.mark.asyncio
async def test_lookup_and_list_discount_rules():
    def handler(request):
        if request.url.path.endswith("/discount_codes/lookup.json"):
            assert request.url.params["code"] == "BNDL-ABC123"
            return httpx.Response(200, json={"discount_code": {"code": "BNDL-ABC123", "price_rule_id": 9001}})
        return httpx.Response(200, json={"price_rules": [
            {"id": 9001, "title": "bundle-b1-1", "created_at": "2024-05-01T12:00:00Z", "usage_count": 1, "usage_limit": 1},
            {"id": 9002, "title": "WELCOME10", "created_at": "2024-01-01T00:00:00-05:00"},
        ]})

    async with _client(handler) as client:
        assert await client.lookup_discount_code_rule("BNDL-ABC123") == "9001"
        rules = await client.list_discount_rules()

    assert [r.id for r in rules] == ["9001", "9002"]
    assert rules[0].created_at == datetime(2024, 5, 1, 12, tzinfo=timezone.utc)
    assert rules[0].usage_count == 1
    assert rules[1].usage_limit is None


@pytest.mark.asyncio
async def test_invalidated_caches_are_refetched():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        if request.url.path.endswith("/locations.json"):
            return httpx.Response(200, json={"locations": [{"id": 11}]})
        return httpx.Response(200, json={"data": {"publications": {"nodes": [
            {"id": "gid://shopify/Publication/8", "catalog": {"title": "Online Store"}},
        ]}}})

    async with _client(handler) as client:
        await client.get_online_channel_id()
        await client.get_primary_location_id()
        await client.get_online_channel_id()
        client.invalidate_online_channel()
        client.invalidate_location()
        assert await client.get_online_channel_id() == "gid://shopify/Publication/8"
        assert await client.get_primary_location_id() == "11"

    assert calls.count(f"{ADMIN}/graphql.json") == 2
    assert calls.count(f"{ADMIN}/locations.json") == 2


@pytest.mark.asyncio
async def test_list_discount_rules_follows_link_pagination():
    requests = []

    def handler(request):
        requests.append(dict(request.url.params))
        if request.url.params.get("page_info") == "p2":
            return httpx.Response(200, json={"price_rules": [{"id": 3, "title": "bundle-b2-1714564800000"}]})
        next_url = f"https://{SHOP}{ADMIN}/price_rules.json?limit=250&page_info=p2"
        return httpx.Response(
            200,
            headers={"Link": f'<{next_url}>; rel="next"'},
            json={"price_rules": [{"id": 1, "title": "a"}, {"id": 2, "title": "b"}]},
        )

    async with _client(handler) as client:
        rules = await client.list_discount_rules()

    assert [r.id for r in rules] == ["1", "2", "3"]
    assert requests == [{"limit": "250"}, {"limit": "250", "page_info": "p2"}]


@pytest.mark.asyncio
async def test_list_discount_rules_stops_at_page_cap():
    calls = []

    def handler(request):
        calls.append(request.url.params.get("page_info"))
        cursor = f"c{len(calls)}"
        next_url = f"https://{SHOP}{ADMIN}/price_rules.json?limit=1&page_info={cursor}"
        return httpx.Response(
            200,
            headers={"Link": f'<{next_url}>; rel="next"'},
            json={"price_rules": [{"id": len(calls), "title": "x"}]},
        )

    async with _client(handler) as client:
        rules = await client.list_discount_rules(limit=1, max_pages=3)

    assert len(rules) == 3
    assert calls == [None, "c1", "c2"]
