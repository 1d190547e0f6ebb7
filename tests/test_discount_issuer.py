import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import make_bundle
from schemas import PricingMode, Selection
from services.discount_issuer import DiscountIssuer, entitled_sku_ids, generate_discount_code
from services.errors import DiscountIssuanceFailed, RemoteError
from services.pricing import resolve


def _issue_inputs(bundle, **selection):
    sel = Selection(**selection)
    return bundle, sel, resolve(bundle, sel)


def test_generated_code_has_prefix_and_random_suffix():
    code = generate_discount_code()
    assert code.startswith("BNDL-")
    assert len(code) == len("BNDL-") + 6
    assert code[5:].isalnum() and code[5:].upper() == code[5:]
    assert generate_discount_code(prefix="X-", length=4).startswith("X-")


def test_entitled_ids_follow_selection_and_variant_choice(bundle):
    selection = Selection(item_ids=("i1", "i3"), variant_overrides={"i1": "gid://shopify/ProductVariant/12"})
    assert entitled_sku_ids(bundle, selection) == [12, 31]


@pytest.mark.asyncio
async def test_issue_scopes_rule_to_selected_skus(fake_client, metrics, bundle):
    issuer = DiscountIssuer(fake_client, metrics=metrics)
    bundle, selection, breakdown = _issue_inputs(bundle, item_ids=("i1", "i2"), wrap_id="w1")

    issue = await issuer.issue_discount(bundle, selection, breakdown)

    assert issue.discount_cents == 200
    assert issue.code.startswith("BNDL-")
    rule = fake_client.rules[issue.rule_id]
    spec = rule["spec"]
    assert spec.entitled_sku_ids == (11, 21)
    assert spec.value_cents == 200
    assert spec.usage_limit == 1
    assert spec.once_per_customer is True
    assert spec.ends_at - spec.starts_at == timedelta(minutes=10)
    assert spec.title.startswith("bundle-b1-")
    assert issuer.janitor.owns_rule(spec.title)
    assert fake_client.codes[issue.code] == issue.rule_id
    assert metrics.summary()["discounts"] == {"issued": 1}


@pytest.mark.asyncio
async def test_zero_discount_issues_nothing(fake_client, metrics):
    bundle = make_bundle(PricingMode.SUM, None)
    issuer = DiscountIssuer(fake_client, metrics=metrics)
    bundle, selection, breakdown = _issue_inputs(bundle, item_ids=("i1",), wrap_id="w1")

    issue = await issuer.issue_discount(bundle, selection, breakdown)

    assert issue.code is None
    assert issue.rule_id is None
    assert issue.discount_cents == 0
    assert fake_client.rules == {}
    assert "create_discount_rule" not in fake_client.calls
    # sweep still runs before the early return
    assert "list_discount_rules" in fake_client.calls


@pytest.mark.asyncio
async def test_rule_failure_raises_issuance_failed(fake_client, metrics, bundle):
    fake_client.fail["create_discount_rule"] = RemoteError(422, "bad rule")
    issuer = DiscountIssuer(fake_client, metrics=metrics)

    with pytest.raises(DiscountIssuanceFailed):
        await issuer.issue_discount(*_issue_inputs(bundle, item_ids=("i1", "i2")))
    assert metrics.summary()["discounts"] == {"failed": 1}


@pytest.mark.asyncio
async def test_code_failure_discards_orphaned_rule(fake_client, metrics, bundle):
    fake_client.fail["create_discount_code"] = RemoteError(422, "code taken")
    issuer = DiscountIssuer(fake_client, metrics=metrics)

    with pytest.raises(DiscountIssuanceFailed):
        await issuer.issue_discount(*_issue_inputs(bundle, item_ids=("i1", "i2")))

    assert fake_client.rules == {}
    assert "delete_discount_rule" in fake_client.calls


@pytest.mark.asyncio
async def test_selection_without_variant_ids_fails(fake_client, metrics):
    bundle = make_bundle()
    stripped = replace(bundle, items=tuple(replace(item, variant_id=None) for item in bundle.items))
    issuer = DiscountIssuer(fake_client, metrics=metrics)

    with pytest.raises(DiscountIssuanceFailed):
        await issuer.issue_discount(*_issue_inputs(stripped, item_ids=("i1", "i2")))
    assert fake_client.rules == {}


@pytest.mark.asyncio
async def test_sweep_failure_does_not_block_issuance(fake_client, metrics, bundle):
    fake_client.fail["list_discount_rules"] = RemoteError(500, "listing broke")
    issuer = DiscountIssuer(fake_client, metrics=metrics)

    issue = await issuer.issue_discount(*_issue_inputs(bundle, item_ids=("i1", "i2")))

    assert issue.code is not None


@pytest.mark.asyncio
async def test_slow_sweep_is_abandoned(fake_client, metrics, bundle):
    class SlowJanitor:
        async def sweep(self, max_age_minutes=None):
            await asyncio.sleep(10)

    issuer = DiscountIssuer(fake_client, janitor=SlowJanitor(), sweep_timeout=0.01, metrics=metrics)

    issue = await issuer.issue_discount(*_issue_inputs(bundle, item_ids=("i1", "i2")))

    assert issue.discount_cents == 200
