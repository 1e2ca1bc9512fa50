"""
Spend-policy authorization for paid Studio actions.

Before a tool spends credits it calls :func:`authorize_action`. The check
either returns a :class:`SpendAuthorization`, or raises
:class:`InsufficientCredits` (balance cannot cover the cost) or
:class:`SpendConfirmationRequired` (policy wants user approval first).

Modes:

- ``explicit``: every paid action needs confirmation.
- ``smart``: confirm when a cost reaches its threshold or the spend would
  leave a low balance.
- ``auto``: spend freely under per-action and per-month caps.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
from typing import TYPE_CHECKING, Any, Mapping

from studio_runtime.errors import InsufficientCredits, SpendConfirmationRequired, StudioApiError
from studio_runtime.purchase_links import build_purchase_links, recommend_bundle
from studio_runtime.types import (
    BalanceSnapshot,
    CostEstimate,
    MonthlyUsage,
    NeededCredits,
    RecommendedBundles,
    SpendAuthorization,
    SpendPolicyConfig,
    to_number,
)

if TYPE_CHECKING:
    from studio_runtime.tools import ToolContext

logger = logging.getLogger(__name__)

TRIGGER_MESSAGES = {
    "explicit_policy": "Spend policy requires explicit confirmation.",
    "api_cost_threshold": "API credit cost exceeds smart confirmation threshold.",
    "creator_cost_threshold": "Creator Credit cost exceeds smart confirmation threshold.",
    "low_api_balance": "API balance is low for this spend.",
    "low_creator_balance": "Creator Credit balance is low for this spend.",
    "auto_api_action_cap": "Auto-spend API per-action cap exceeded.",
    "auto_creator_action_cap": "Auto-spend Creator per-action cap exceeded.",
    "auto_api_month_cap": "Auto-spend API monthly cap would be exceeded.",
    "auto_creator_month_cap": "Auto-spend Creator monthly cap would be exceeded.",
}

NEXT_STEP = "Ask the user for approval and re-run with confirm_spend: true if they agree."


# ============================================================
#  Normalization
# ============================================================


def dig(obj: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(obj, Mapping):
            return None
        obj = obj.get(key)
    return obj


def first_present(*values: Any) -> Any:
    return next((v for v in values if v is not None), None)


def _whole(value: Any) -> int:
    """Round half up and clamp at zero; non-numbers count as zero."""
    return max(0, math.floor(to_number(value, 0) + 0.5))


def normalize_cost(estimated_cost: Any) -> CostEstimate:
    """Canonical cost from any upstream shape.

    Accepted shapes, first match wins per credit kind:

    - flat: ``{"apiCredits": 1, "creatorCredits": 8}``
    - estimate endpoint: ``{"totalCost": {"apiCredits": 1, "creatorCredits": 8}}``
    - itemized: ``{"api": 1, "creator": {"total": 8}}``
    """
    if isinstance(estimated_cost, CostEstimate):
        return estimated_cost
    return CostEstimate(
        api_credits=_whole(first_present(
            dig(estimated_cost, "apiCredits"),
            dig(estimated_cost, "totalCost", "apiCredits"),
            dig(estimated_cost, "api"),
        )),
        creator_credits=_whole(first_present(
            dig(estimated_cost, "creatorCredits"),
            dig(estimated_cost, "totalCost", "creatorCredits"),
            dig(estimated_cost, "creator", "total"),
        )),
    )


def normalize_balance(credits: Any) -> BalanceSnapshot:
    return BalanceSnapshot(
        api_credits=_whole(first_present(
            dig(credits, "apiCredits", "total"),
            dig(credits, "total"),
        )),
        creator_credits=_whole(dig(credits, "creatorCredits", "total")),
        subscription_tier=str(
            dig(credits, "subscription", "tier") or dig(credits, "membership") or "unknown"
        ),
        subscription_monthly_limit=_whole(dig(credits, "subscription", "monthlyLimit")),
        subscription_monthly_used=_whole(dig(credits, "subscription", "monthlyUsed")),
        subscription_monthly_remaining=_whole(dig(credits, "subscription", "monthlyRemaining")),
    )


def normalize_monthly_usage(analytics: Any) -> MonthlyUsage:
    return MonthlyUsage(
        api_credits_used=_whole(dig(analytics, "thisMonth", "apiCreditsUsed")),
        creator_credits_used=_whole(dig(analytics, "thisMonth", "creatorCreditsUsed")),
        projects_processed=_whole(dig(analytics, "thisMonth", "projectsProcessed")),
    )


def needed_credits(cost: CostEstimate, balance: BalanceSnapshot) -> NeededCredits:
    return NeededCredits(
        api_credits_needed=max(0, cost.api_credits - balance.api_credits),
        creator_credits_needed=max(0, cost.creator_credits - balance.creator_credits),
    )


def resolve_policy(context: "ToolContext | None") -> SpendPolicyConfig:
    """Policy carried by the context, else the one from the environment."""
    policy = getattr(context, "spend_policy", None)
    if isinstance(policy, SpendPolicyConfig):
        return policy
    if isinstance(policy, Mapping):
        return SpendPolicyConfig.from_overrides(policy)
    return SpendPolicyConfig.from_env(os.environ)


# ============================================================
#  Policy evaluation
# ============================================================


def evaluate_smart_policy(
    policy: SpendPolicyConfig, cost: CostEstimate, balance: BalanceSnapshot
) -> list[str]:
    triggers = []
    if cost.api_credits >= policy.smart_api_confirm_threshold:
        triggers.append("api_cost_threshold")
    if cost.creator_credits >= policy.smart_creator_confirm_threshold:
        triggers.append("creator_cost_threshold")
    # Low-balance checks look at what is left after this action.
    if (
        cost.api_credits > 0
        and balance.api_credits - cost.api_credits <= policy.low_api_balance_threshold
    ):
        triggers.append("low_api_balance")
    if (
        cost.creator_credits > 0
        and balance.creator_credits - cost.creator_credits <= policy.low_creator_balance_threshold
    ):
        triggers.append("low_creator_balance")
    return triggers


def evaluate_auto_caps(
    policy: SpendPolicyConfig, cost: CostEstimate, usage: MonthlyUsage | None
) -> list[str]:
    triggers = []
    if cost.api_credits > policy.auto_max_api_per_action:
        triggers.append("auto_api_action_cap")
    if cost.creator_credits > policy.auto_max_creator_per_action:
        triggers.append("auto_creator_action_cap")
    if usage is not None:
        if usage.api_credits_used + cost.api_credits > policy.auto_max_api_per_month:
            triggers.append("auto_api_month_cap")
        if usage.creator_credits_used + cost.creator_credits > policy.auto_max_creator_per_month:
            triggers.append("auto_creator_month_cap")
    return triggers


def trigger_messages(triggers: list[str]) -> list[str]:
    return [TRIGGER_MESSAGES[code] for code in triggers if code in TRIGGER_MESSAGES]


def purchase_hints(
    pricing: Any, api_endpoint: str | None, needed: NeededCredits | None = None
) -> dict[str, Any] | None:
    """Checkout links with bundles sized to the deficit; ``None`` without a catalog."""
    if not isinstance(pricing, Mapping):
        return None
    if needed is None:
        needed = NeededCredits()
    links = build_purchase_links(dict(pricing), api_endpoint)
    links.recommended = RecommendedBundles(
        api_credits=recommend_bundle(links.api_credits, needed.api_credits_needed or 1),
        creator_credits=recommend_bundle(links.creator_credits, needed.creator_credits_needed or 1),
    )
    return links.model_dump(by_alias=True)


# ============================================================
#  Authorization
# ============================================================


async def _fetch_pricing(context: "ToolContext") -> Any:
    try:
        return await context.runtime.credits.get_pricing()
    except StudioApiError as exc:
        logger.warning("Pricing catalog unavailable, purchase links omitted: %s", exc.code)
        return None


async def authorize_action(
    context: "ToolContext",
    *,
    action: str = "paid_action",
    action_label: str | None = None,
    estimated_cost: Any = None,
    confirm_spend: bool = False,
    credits: Any = None,
    pricing: Any = None,
    analytics: Any = None,
) -> SpendAuthorization:
    """Decide whether a paid action may proceed.

    Args:
        context: Tool context (runtime, endpoint, policy).
        action: Machine name of the action, e.g. ``upload``.
        action_label: Human-readable label; defaults to ``action``.
        estimated_cost: Cost in any shape :func:`normalize_cost` accepts.
        confirm_spend: The user already approved this spend.
        credits: Pre-fetched ``/credits`` payload (skips the fetch).
        pricing: Pre-fetched ``/pricing`` payload (skips the fetch).
        analytics: Pre-fetched this-month analytics (skips the fetch in auto mode).

    Returns:
        :class:`SpendAuthorization` with ``confirmed`` telling whether the
        user approved (``True``) or the policy allowed it silently (``False``).

    Raises:
        InsufficientCredits: The balance cannot cover the cost, in any mode.
        SpendConfirmationRequired: The policy produced at least one trigger.
        StudioApiError: Balance or usage could not be fetched.
    """
    policy = resolve_policy(context)
    action = str(action or "paid_action")
    action_label = str(action_label or action)
    cost = normalize_cost(estimated_cost)

    if not cost.is_paid:
        return SpendAuthorization(
            action=action,
            action_label=action_label,
            policy=policy,
            estimated_cost=cost,
        )

    async def load_credits() -> Any:
        if credits is not None:
            return credits
        return await context.runtime.credits.get_credits()

    async def load_pricing() -> Any:
        if pricing is not None:
            return pricing
        return await _fetch_pricing(context)

    credits_task = asyncio.ensure_future(load_credits())
    pricing_task = asyncio.ensure_future(load_pricing())
    try:
        credits_data = await credits_task
    except BaseException:
        pricing_task.cancel()
        raise
    pricing_data = await pricing_task
    balance = normalize_balance(credits_data)
    needed = needed_credits(cost, balance)
    hints = purchase_hints(pricing_data, context.api_endpoint, needed)

    if needed.any:
        raise InsufficientCredits({
            "action": action,
            "actionLabel": action_label,
            "policy": policy.mode,
            "estimatedCost": cost.model_dump(by_alias=True),
            "balance": balance.model_dump(by_alias=True),
            "neededCredits": needed.model_dump(by_alias=True),
            "purchaseLinks": hints,
        })

    usage = normalize_monthly_usage(analytics) if analytics is not None else None

    if confirm_spend:
        return SpendAuthorization(
            action=action,
            action_label=action_label,
            policy=policy,
            estimated_cost=cost,
            balance=balance,
            monthly_usage=usage,
            confirmed=True,
        )

    triggers: list[str] = []
    if policy.mode == "explicit":
        triggers.append("explicit_policy")
    elif policy.mode == "smart":
        triggers.extend(evaluate_smart_policy(policy, cost, balance))
    elif policy.mode == "auto":
        if usage is None:
            usage = normalize_monthly_usage(
                await context.runtime.credits.get_analytics("this_month")
            )
        triggers.extend(evaluate_auto_caps(policy, cost, usage))

    if triggers:
        logger.info("Spend confirmation required for %s: %s", action, ", ".join(triggers))
        raise SpendConfirmationRequired({
            "action": action,
            "actionLabel": action_label,
            "policy": policy.mode,
            "estimatedCost": cost.model_dump(by_alias=True),
            "balance": balance.model_dump(by_alias=True),
            "monthlyUsage": usage.model_dump(by_alias=True) if usage is not None else None,
            "triggers": triggers,
            "triggerMessages": trigger_messages(triggers),
            "purchaseLinks": hints,
            "nextStep": NEXT_STEP,
        })

    return SpendAuthorization(
        action=action,
        action_label=action_label,
        policy=policy,
        estimated_cost=cost,
        balance=balance,
        monthly_usage=usage,
    )
