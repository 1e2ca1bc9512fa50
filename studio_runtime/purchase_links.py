"""Checkout links for credit bundles, built from the pricing catalog."""

from __future__ import annotations

from typing import Any, Sequence
from urllib.parse import quote as url_quote

import httpx

from studio_runtime.types import DEFAULT_API_ENDPOINT, PurchaseBundle, PurchaseLinks, to_number

REF_PARAM = "openclaw"


def normalize_base_url(api_endpoint: str | None) -> str:
    """Reduce an API endpoint to ``scheme://host[:port]``."""
    raw = str(api_endpoint or DEFAULT_API_ENDPOINT).strip()
    if not raw:
        return DEFAULT_API_ENDPOINT
    try:
        parsed = httpx.URL(raw)
    except httpx.InvalidURL:
        return DEFAULT_API_ENDPOINT
    if not parsed.scheme or not parsed.host:
        return DEFAULT_API_ENDPOINT
    port = f":{parsed.port}" if parsed.port else ""
    return f"{parsed.scheme}://{parsed.host}{port}"


def with_tracking(base_url: str, path: str) -> str:
    if not path.startswith("/"):
        path = f"/{path}"
    return f"{base_url}{path}?ref={REF_PARAM}"


def _bundles(pricing: dict[str, Any], key: str, base_url: str, checkout_path: str) -> list[PurchaseBundle]:
    raw = pricing.get(key)
    if not isinstance(raw, list):
        return []
    bundles = []
    for bundle in raw:
        bundle = bundle if isinstance(bundle, dict) else {}
        bundle_id = bundle.get("id")
        bundles.append(PurchaseBundle(
            id=None if bundle_id is None else str(bundle_id),
            credits=to_number(bundle.get("credits"), 0),
            price=to_number(bundle.get("price"), 0),
            currency=str(bundle.get("currency") or "EUR"),
            checkout_url=with_tracking(
                base_url, f"{checkout_path}/{url_quote(str(bundle_id or ''), safe='')}"
            ),
        ))
    return bundles


def build_purchase_links(pricing: dict[str, Any] | None, api_endpoint: str | None) -> PurchaseLinks:
    """Map the catalog's API and Creator credit bundles to checkout URLs."""
    pricing = pricing if isinstance(pricing, dict) else {}
    base_url = normalize_base_url(api_endpoint)
    return PurchaseLinks(
        ref=REF_PARAM,
        base_url=base_url,
        api_credits=_bundles(pricing, "apiCreditBundles", base_url, "/checkout/api-credits"),
        creator_credits=_bundles(pricing, "creatorCreditBundles", base_url, "/checkout/creator-credits"),
        subscriptions={"creator": with_tracking(base_url, "/checkout/subscribe/creator")},
    )


def recommend_bundle(bundles: Sequence[PurchaseBundle], needed_credits: Any) -> PurchaseBundle | None:
    """Smallest bundle covering ``needed_credits``; the largest one if none does."""
    needed = max(1, round(to_number(needed_credits, 1)))
    ordered = sorted(bundles, key=lambda b: b.credits)
    for bundle in ordered:
        if bundle.credits >= needed:
            return bundle
    return ordered[-1] if ordered else None
