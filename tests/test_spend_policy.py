"""
Tests for spend-policy authorization.

The Studio API is mocked with respx; the spend policy is passed on the
tool context so the environment never leaks into a test.
"""

from __future__ import annotations

import asyncio

import pytest
import httpx
import respx

from studio_runtime.client import StudioRuntime
from studio_runtime.errors import InsufficientCredits, SpendConfirmationRequired, StudioApiError
from studio_runtime.spend_policy import (
    authorize_action,
    evaluate_auto_caps,
    evaluate_smart_policy,
    normalize_balance,
    normalize_cost,
    resolve_policy,
)
from studio_runtime.tools import ToolContext
from studio_runtime.types import CostEstimate, MonthlyUsage, SpendPolicyConfig


BASE_URL = "https://studio.test"
API_KEY = "w2l_test_key_for_unit_tests"

PRICING = {
    "apiCreditBundles": [
        {"id": "starter", "credits": 5, "price": 9, "currency": "EUR"},
        {"id": "casual", "credits": 20, "price": 29, "currency": "EUR"},
    ],
    "creatorCreditBundles": [
        {"id": "topup_s", "credits": 50, "price": 5},
        {"id": "topup_m", "credits": 200, "price": 15},
    ],
}


def make_context(mode: str, **overrides) -> ToolContext:
    runtime = StudioRuntime(api_endpoint=BASE_URL, api_key=API_KEY)
    return ToolContext(runtime=runtime, spend_policy={"mode": mode, **overrides})


def mock_balance(api: int, creator: int) -> respx.Route:
    return respx.get(f"{BASE_URL}/api/v1/credits").mock(
        return_value=httpx.Response(
            200,
            json={"success": True, "data": {"apiCredits": {"total": api}, "creatorCredits": {"total": creator}}},
        )
    )


def mock_pricing() -> respx.Route:
    return respx.get(f"{BASE_URL}/api/v1/pricing").mock(
        return_value=httpx.Response(200, json={"success": True, "data": PRICING})
    )


# ============================================================
#  Configuration
# ============================================================


def test_policy_from_env_clamps_and_falls_back() -> None:
    policy = SpendPolicyConfig.from_env({
        "WEB2LABS_SPEND_POLICY": " SMART ",
        "WEB2LABS_SMART_CONFIRM_API_THRESHOLD": "50",
        "WEB2LABS_SMART_CONFIRM_LOW_API_BALANCE": "-4",
        "WEB2LABS_AUTO_SPEND_MAX_API_PER_MONTH": "lots",
        "WEB2LABS_AUTO_SPEND_MAX_API_PER_ACTION": "5000",
    })
    assert policy.mode == "smart"
    assert policy.smart_api_confirm_threshold == 20
    assert policy.low_api_balance_threshold == 0
    assert policy.auto_max_api_per_month == 80
    assert policy.auto_max_api_per_action == 1000
    assert isinstance(policy.auto_max_api_per_action, int)


def test_policy_defaults_and_unknown_mode() -> None:
    policy = SpendPolicyConfig.from_env({"WEB2LABS_SPEND_POLICY": "yolo"})
    assert policy.mode == "auto"
    assert policy.smart_creator_confirm_threshold == 8
    assert policy.low_creator_balance_threshold == 20
    assert policy.auto_max_creator_per_action == 40
    assert policy.auto_max_creator_per_month == 400


def test_policy_overrides_accept_camel_case() -> None:
    policy = SpendPolicyConfig.from_overrides({"mode": "explicit", "autoMaxApiPerAction": 5})
    assert policy.mode == "explicit"
    assert policy.auto_max_api_per_action == 5


def test_resolve_policy_prefers_context(monkeypatch) -> None:
    monkeypatch.setenv("WEB2LABS_SPEND_POLICY", "explicit")
    assert resolve_policy(None).mode == "explicit"
    context = ToolContext(runtime=None, spend_policy=SpendPolicyConfig(mode="smart"))
    assert resolve_policy(context).mode == "smart"


# ============================================================
#  Normalization
# ============================================================


def test_normalize_cost_shapes() -> None:
    assert normalize_cost({"apiCredits": 1, "creatorCredits": 8}) == CostEstimate(api_credits=1, creator_credits=8)
    assert normalize_cost({"totalCost": {"apiCredits": 1.5, "creatorCredits": "8"}}) == CostEstimate(
        api_credits=2, creator_credits=8
    )
    assert normalize_cost({"api": 1, "creator": {"total": 3}}) == CostEstimate(api_credits=1, creator_credits=3)
    assert normalize_cost(None) == CostEstimate()
    assert normalize_cost({"apiCredits": -3, "creatorCredits": "n/a"}) == CostEstimate()


def test_normalize_balance() -> None:
    balance = normalize_balance({
        "total": 5,
        "creatorCredits": {"total": 12.4},
        "subscription": {"tier": "creator", "monthlyLimit": 10, "monthlyUsed": 4},
    })
    assert balance.api_credits == 5
    assert balance.creator_credits == 12
    assert balance.subscription_tier == "creator"
    assert balance.subscription_monthly_used == 4

    assert normalize_balance(None).subscription_tier == "unknown"


def test_smart_triggers() -> None:
    policy = SpendPolicyConfig(mode="smart")
    balance = normalize_balance({"apiCredits": {"total": 2}, "creatorCredits": {"total": 100}})
    triggers = evaluate_smart_policy(policy, CostEstimate(api_credits=2, creator_credits=8), balance)
    assert triggers == ["api_cost_threshold", "creator_cost_threshold", "low_api_balance"]


def test_smart_low_balance_counts_the_spend() -> None:
    policy = SpendPolicyConfig(mode="smart")
    cost = CostEstimate(creator_credits=7)

    left_18 = normalize_balance({"creatorCredits": {"total": 25}})
    left_21 = normalize_balance({"creatorCredits": {"total": 28}})
    assert evaluate_smart_policy(policy, cost, left_18) == ["low_creator_balance"]
    assert evaluate_smart_policy(policy, cost, left_21) == []


def test_auto_caps() -> None:
    policy = SpendPolicyConfig(mode="auto")
    usage = MonthlyUsage(api_credits_used=79, creator_credits_used=0)
    assert evaluate_auto_caps(policy, CostEstimate(api_credits=2), usage) == ["auto_api_month_cap"]
    assert evaluate_auto_caps(policy, CostEstimate(api_credits=3, creator_credits=41), None) == [
        "auto_api_action_cap",
        "auto_creator_action_cap",
    ]


# ============================================================
#  Authorization
# ============================================================


@pytest.mark.asyncio
async def test_free_action_makes_no_requests() -> None:
    with respx.mock:
        context = make_context("explicit")
        result = await authorize_action(context, action="status", estimated_cost={"apiCredits": 0})
        await context.runtime.close()

        assert respx.calls.call_count == 0
        assert result.confirmed is False
        assert not result.estimated_cost.is_paid


@pytest.mark.asyncio
async def test_smart_allows_small_spend() -> None:
    with respx.mock:
        mock_balance(api=10, creator=100)
        mock_pricing()
        context = make_context("smart")
        result = await authorize_action(context, action="upload", estimated_cost={"apiCredits": 1})
        await context.runtime.close()

        assert result.confirmed is False
        assert result.policy.mode == "smart"
        assert result.balance.api_credits == 10


@pytest.mark.asyncio
async def test_smart_threshold_requires_confirmation() -> None:
    with respx.mock:
        mock_balance(api=10, creator=100)
        mock_pricing()
        context = make_context("smart")

        with pytest.raises(SpendConfirmationRequired) as excinfo:
            await authorize_action(
                context, action="upload", action_label="Upload video", estimated_cost={"apiCredits": 2}
            )
        await context.runtime.close()

        error = excinfo.value
        assert error.code == "spend_confirmation_required"
        assert error.status == 409
        assert error.details["triggers"] == ["api_cost_threshold"]
        assert error.details["triggerMessages"] == ["API credit cost exceeds smart confirmation threshold."]
        assert error.details["actionLabel"] == "Upload video"
        assert "confirm_spend" in error.details["nextStep"]
        links = error.details["purchaseLinks"]
        assert links["recommended"]["apiCredits"]["id"] == "starter"
        assert links["apiCredits"][0]["checkoutUrl"] == "https://studio.test/checkout/api-credits/starter?ref=openclaw"


@pytest.mark.asyncio
async def test_explicit_requires_confirmation_then_accepts_it() -> None:
    with respx.mock:
        mock_balance(api=10, creator=100)
        mock_pricing()
        context = make_context("explicit")

        with pytest.raises(SpendConfirmationRequired) as excinfo:
            await authorize_action(context, action="upload", estimated_cost={"apiCredits": 1})
        assert excinfo.value.details["triggers"] == ["explicit_policy"]

        result = await authorize_action(
            context, action="upload", estimated_cost={"apiCredits": 1}, confirm_spend=True
        )
        await context.runtime.close()

        assert result.confirmed is True


@pytest.mark.asyncio
async def test_auto_month_cap_uses_analytics() -> None:
    with respx.mock:
        mock_balance(api=50, creator=0)
        mock_pricing()
        analytics = respx.get(f"{BASE_URL}/api/v1/analytics", params={"period": "this_month"}).mock(
            return_value=httpx.Response(200, json={"data": {"thisMonth": {"apiCreditsUsed": 79}}})
        )
        context = make_context("auto")

        with pytest.raises(SpendConfirmationRequired) as excinfo:
            await authorize_action(context, action="upload", estimated_cost={"apiCredits": 2})
        await context.runtime.close()

        assert analytics.called
        assert excinfo.value.details["triggers"] == ["auto_api_month_cap"]
        assert excinfo.value.details["monthlyUsage"]["apiCreditsUsed"] == 79


@pytest.mark.asyncio
async def test_smart_low_creator_balance_requires_confirmation() -> None:
    with respx.mock:
        mock_balance(api=10, creator=25)
        mock_pricing()
        context = make_context("smart")

        with pytest.raises(SpendConfirmationRequired) as excinfo:
            await authorize_action(context, action="thumbnails_generate", estimated_cost={"creatorCredits": 7})
        await context.runtime.close()

        assert excinfo.value.details["triggers"] == ["low_creator_balance"]
        assert excinfo.value.details["balance"]["creatorCredits"] == 25


@pytest.mark.asyncio
async def test_auto_per_action_cap_requires_confirmation() -> None:
    with respx.mock:
        mock_balance(api=50, creator=0)
        mock_pricing()
        respx.get(f"{BASE_URL}/api/v1/analytics").mock(
            return_value=httpx.Response(200, json={"data": {"thisMonth": {"apiCreditsUsed": 0}}})
        )
        context = make_context("auto")

        with pytest.raises(SpendConfirmationRequired) as excinfo:
            await authorize_action(context, action="upload", estimated_cost={"apiCredits": 3})
        await context.runtime.close()

        assert excinfo.value.details["triggers"] == ["auto_api_action_cap"]


@pytest.mark.asyncio
async def test_auto_confirmed_skips_analytics() -> None:
    with respx.mock:
        mock_balance(api=50, creator=0)
        mock_pricing()
        context = make_context("auto")
        result = await authorize_action(
            context, action="upload", estimated_cost={"apiCredits": 30}, confirm_spend=True
        )
        await context.runtime.close()

        assert result.confirmed is True
        assert result.monthly_usage is None


@pytest.mark.asyncio
async def test_insufficient_credits_even_when_confirmed() -> None:
    with respx.mock:
        mock_balance(api=0, creator=5)
        mock_pricing()
        context = make_context("auto")

        with pytest.raises(InsufficientCredits) as excinfo:
            await authorize_action(
                context,
                action="thumbnails_generate",
                estimated_cost={"creatorCredits": 24},
                confirm_spend=True,
            )
        await context.runtime.close()

        error = excinfo.value
        assert error.code == "insufficient_credits_precheck"
        assert error.status == 402
        assert error.details["neededCredits"] == {"apiCreditsNeeded": 0, "creatorCreditsNeeded": 19}
        assert error.details["purchaseLinks"]["recommended"]["creatorCredits"]["id"] == "topup_s"


@pytest.mark.asyncio
async def test_pricing_failure_omits_purchase_links() -> None:
    with respx.mock:
        mock_balance(api=10, creator=0)
        respx.get(f"{BASE_URL}/api/v1/pricing").mock(return_value=httpx.Response(404))
        context = make_context("explicit")

        with pytest.raises(SpendConfirmationRequired) as excinfo:
            await authorize_action(context, action="upload", estimated_cost={"apiCredits": 1})
        await context.runtime.close()

        assert excinfo.value.details["purchaseLinks"] is None


@pytest.mark.asyncio
async def test_prefetched_pricing_skips_fetch() -> None:
    with respx.mock:
        mock_balance(api=10, creator=100)
        context = make_context("smart")
        result = await authorize_action(
            context, action="thumbnails_generate", estimated_cost={"creatorCredits": 2}, pricing=PRICING
        )
        await context.runtime.close()

        assert result.estimated_cost.creator_credits == 2


@pytest.mark.asyncio
async def test_analytics_failure_propagates() -> None:
    with respx.mock:
        mock_balance(api=10, creator=0)
        mock_pricing()
        respx.get(f"{BASE_URL}/api/v1/analytics").mock(
            return_value=httpx.Response(403, json={"error": {"code": "forbidden", "message": "No analytics"}})
        )
        context = make_context("auto")

        with pytest.raises(StudioApiError) as excinfo:
            await authorize_action(context, action="upload", estimated_cost={"apiCredits": 1})
        await context.runtime.close()

        assert excinfo.value.code == "forbidden"


@pytest.mark.asyncio
async def test_balance_failure_cancels_pricing_fetch() -> None:
    finished = []

    async def slow_pricing(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.2)
        finished.append(True)
        return httpx.Response(200, json={"data": PRICING})

    with respx.mock(assert_all_called=False) as router:
        router.get(f"{BASE_URL}/api/v1/credits").mock(
            return_value=httpx.Response(403, json={"error": {"code": "forbidden", "message": "No access"}})
        )
        router.get(f"{BASE_URL}/api/v1/pricing").mock(side_effect=slow_pricing)
        context = make_context("smart")

        with pytest.raises(StudioApiError) as excinfo:
            await authorize_action(context, action="upload", estimated_cost={"apiCredits": 1})
        await asyncio.sleep(0.3)
        await context.runtime.close()

        assert excinfo.value.code == "forbidden"
        assert finished == []
