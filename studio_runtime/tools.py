"""
Tool handlers exposed to agents.

Each handler is ``async (context, params) -> dict`` where ``params`` uses
the snake_case argument names agents send. Paid handlers (upload,
thumbnails) go through :func:`studio_runtime.spend_policy.authorize_action`
before spending anything. :func:`run_tool` turns failures into the
structured error payload agents expect.
"""

from __future__ import annotations

import asyncio
import logging
import platform
import re
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

from studio_runtime.client import ASSET_TYPES, StudioRuntime
from studio_runtime.errors import StudioApiError
from studio_runtime.poller import ProjectPoller, normalize_status
from studio_runtime.purchase_links import build_purchase_links, recommend_bundle
from studio_runtime.spend_policy import authorize_action, dig, first_present
from studio_runtime.types import ProgressUpdate, SpendPolicyConfig, to_number

logger = logging.getLogger(__name__)

ToolHandler = Callable[["ToolContext", Mapping[str, Any]], Awaitable[dict[str, Any]]]

SUPPORTED_VIDEO_EXTENSIONS = frozenset({
    ".mp4", ".mkv", ".mov", ".avi", ".webm", ".flv", ".wmv", ".m4v",
})
THUMBNAIL_VARIANTS = ("A", "B", "C")
DEFAULT_THUMBNAIL_COST = {"standard": 8, "premium": 32}
ANALYTICS_PERIODS = ("this_month", "last_month", "all_time")
MILESTONES = (10, 50, 100)
MAX_URL_LENGTH = 2048
AGENT_CLIENT = "openclaw"

_HTTP_URL = re.compile(r"^https?://.+", re.IGNORECASE)


@dataclass
class ToolContext:
    """Everything a handler needs besides its own parameters."""

    runtime: StudioRuntime
    spend_policy: SpendPolicyConfig | Mapping[str, Any] | None = None
    download_dir: str = "~/studio-exports"
    realtime: bool = True
    socket_url: str | None = None

    @classmethod
    def from_runtime(cls, runtime: StudioRuntime) -> "ToolContext":
        return cls(
            runtime=runtime,
            spend_policy=runtime.config.spend_policy,
            download_dir=runtime.config.download_dir,
            socket_url=runtime.config.socket_url,
        )

    @property
    def api_endpoint(self) -> str:
        return self.runtime.api_endpoint


def _require_project_id(params: Mapping[str, Any]) -> str:
    project_id = str(params.get("project_id") or "").strip()
    if not project_id:
        raise ValueError("project_id is required")
    return project_id


async def _swallow(coro: Awaitable[Any], fallback: Any, what: str) -> Any:
    try:
        return await coro
    except StudioApiError as exc:
        logger.warning("%s unavailable (%s)", what, exc.code)
        return fallback


# ============================================================
#  Project status
# ============================================================


async def status(context: ToolContext, params: Mapping[str, Any]) -> dict[str, Any]:
    project_id = _require_project_id(params)
    data = await context.runtime.projects.get_status(project_id)
    return {
        "projectId": project_id,
        "status": data.get("status"),
        "progress": data.get("progress"),
        "resultsUrl": data.get("resultsUrl") or None,
        "retentionTimeRemaining": data.get("retentionTimeRemaining") or None,
        "error": data.get("error") or None,
    }


def normalize_timeout_minutes(value: Any) -> float:
    return min(180, max(1, to_number(value, 30)))


async def poll(context: ToolContext, params: Mapping[str, Any]) -> dict[str, Any]:
    """Wait for a project to finish, collecting progress updates on the way."""
    project_id = _require_project_id(params)
    timeout_minutes = normalize_timeout_minutes(params.get("timeout_minutes") or 30)
    updates: list[dict[str, Any]] = []

    def on_progress(update: ProgressUpdate) -> None:
        updates.append({
            "status": update.status,
            "progress": update.progress,
            "retentionTimeRemaining": update.retention_time_remaining,
        })

    poller = ProjectPoller(
        context.runtime.http,
        realtime=context.realtime,
        socket_url=context.socket_url,
    )
    final = await poller.poll(project_id, timeout_minutes=timeout_minutes, on_progress=on_progress)
    final_status = normalize_status(final.get("status"))
    return {
        "projectId": project_id,
        "timeoutMinutes": timeout_minutes,
        "updates": updates,
        "final": final,
        "completed": final_status == "completed",
        "failed": final_status == "failed",
    }


async def results(context: ToolContext, params: Mapping[str, Any]) -> dict[str, Any]:
    project_id = _require_project_id(params)
    data = await context.runtime.projects.get_results(project_id)
    return {"projectId": project_id, **(data or {})}


async def rerender(context: ToolContext, params: Mapping[str, Any]) -> dict[str, Any]:
    project_id = _require_project_id(params)
    configuration = params.get("configuration")
    if not isinstance(configuration, Mapping):
        raise ValueError("configuration must be an object")
    data = await context.runtime.projects.rerender(project_id, dict(configuration))
    return {"projectId": project_id, **(data or {})}


# ============================================================
#  Downloads
# ============================================================


def sanitize_name(value: Any) -> str:
    name = re.sub(r'[<>:"/\\|?*]+', "-", str(value or "project"))
    return re.sub(r"\s+", "-", name).lower()[:120]


def _wanted(requested: list[str], kind: str) -> bool:
    return "all" in requested or kind in requested


def collect_artifacts(data: Mapping[str, Any], requested: list[str]) -> list[dict[str, str]]:
    """Files to download from a results payload, filtered by requested kinds."""
    name = data.get("name") or "project"
    artifacts: list[dict[str, str]] = []

    main = data.get("mainVideo") or {}
    if main.get("url") and _wanted(requested, "main"):
        artifacts.append({"kind": "main", "url": main["url"], "fileName": main.get("filename") or f"{name}.mp4"})

    if isinstance(data.get("shorts"), list) and _wanted(requested, "shorts"):
        for i, short in enumerate(data["shorts"], start=1):
            if not short.get("url"):
                continue
            artifacts.append({
                "kind": "shorts",
                "url": short.get("url"),
                "fileName": short.get("filename") or f"{name}-short-{i}.mp4",
            })

    for kind, file_name in (("subtitles", "subtitles.srt"), ("transcription", "transcription.json")):
        url = dig(data, kind, "url")
        if url and _wanted(requested, kind):
            artifacts.append({"kind": kind, "url": url, "fileName": file_name})

    exports = data.get("timelineExports") or []
    for kind, fmt, file_name in (
        ("timeline-edl", "edl", "timeline.edl"),
        ("timeline-fcpxml", "fcpxml", "timeline.fcpxml"),
        ("timeline-xml", "premiere-xml", "timeline.xml"),
    ):
        if not _wanted(requested, kind):
            continue
        export = next((e for e in exports if e.get("format") == fmt), None)
        if export and export.get("url"):
            artifacts.append({"kind": kind, "url": export["url"], "fileName": export.get("filename") or file_name})

    if isinstance(data.get("thumbnails"), list) and _wanted(requested, "thumbnails"):
        for thumbnail in data["thumbnails"]:
            if not thumbnail.get("imageUrl"):
                continue
            variant = str(thumbnail.get("variant") or "x").lower()
            artifacts.append({
                "kind": "thumbnails",
                "url": thumbnail["imageUrl"],
                "fileName": f"thumbnails/thumbnail-{variant}.png",
            })

    return artifacts


def artifact_destination(output_path: Path, artifact: Mapping[str, str]) -> Path:
    """Local path for an artifact, always inside ``output_path``.

    File names come from the server, so anything that would resolve outside
    the output directory is reduced to its base name.
    """
    destination = output_path / artifact["fileName"]
    root = output_path.resolve()
    if root in destination.resolve().parents:
        return destination
    base = Path(str(artifact["fileName"]).replace("\\", "/")).name
    if base in ("", ".", ".."):
        base = artifact["kind"]
    return output_path / base


async def download(context: ToolContext, params: Mapping[str, Any]) -> dict[str, Any]:
    project_id = _require_project_id(params)
    data = await context.runtime.projects.get_results(project_id)

    types = params.get("types")
    requested = [str(t or "").strip() for t in types] if types else ["all"]

    output_dir = params.get("output_dir") or f"{context.download_dir}/{sanitize_name(data.get('name') or project_id)}"
    output_path = Path(output_dir).expanduser()
    output_path.mkdir(parents=True, exist_ok=True)

    downloaded = []
    for artifact in collect_artifacts(data, requested):
        destination = artifact_destination(output_path, artifact)
        await context.runtime.download_file(artifact["url"], destination)
        downloaded.append({
            "kind": artifact["kind"],
            "sourceUrl": artifact["url"],
            "localPath": str(destination),
        })

    return {
        "projectId": project_id,
        "outputDir": str(output_path),
        "downloaded": downloaded,
        "retentionTimeRemaining": data.get("retentionTimeRemaining") or None,
    }


# ============================================================
#  Credits and estimates
# ============================================================


def _normalize_priority(value: Any) -> str:
    priority = str(value).strip().lower()
    if priority not in ("normal", "rush"):
        raise ValueError('priority must be "normal" or "rush"')
    return priority


async def estimate(context: ToolContext, params: Mapping[str, Any]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    if params.get("preset") is not None:
        payload["preset"] = str(params["preset"]).strip()

    minutes = to_number(params.get("duration_minutes"), None)
    if minutes is not None:
        payload["durationMinutes"] = min(24 * 60, max(0, round(minutes)))

    if params.get("priority") is not None:
        payload["priority"] = _normalize_priority(params["priority"])

    if "configuration" in params:
        if not isinstance(params["configuration"], Mapping):
            raise ValueError("configuration must be an object")
        payload["configuration"] = dict(params["configuration"])

    return await context.runtime.credits.estimate_cost(payload)


def _pick(bundles: list[dict[str, Any]] | None, bundle_id: str) -> dict[str, Any] | None:
    if not bundles:
        return None
    return next((b for b in bundles if b.get("id") == bundle_id), bundles[0])


def build_credit_alerts(
    credits: Any, purchase_links: dict[str, Any] | None, analytics: Any
) -> list[dict[str, Any]]:
    """Upsell alerts for low balances, subscription pressure and first success."""
    links = purchase_links or {}
    api_bundles = links.get("apiCredits")
    creator_bundles = links.get("creatorCredits")
    alerts = []

    api_credits = to_number(first_present(dig(credits, "apiCredits", "total"), dig(credits, "total")), 0)
    creator_credits = to_number(dig(credits, "creatorCredits", "total"), 0)

    if api_credits <= 2:
        alerts.append({
            "type": "low_api_credits",
            "severity": "high",
            "message": "Heads up: API credits are low. Consider topping up to avoid interrupted uploads.",
            "recommendation": _pick(api_bundles, "starter"),
        })

    monthly_limit = to_number(dig(credits, "subscription", "monthlyLimit"), 0)
    monthly_used = to_number(dig(credits, "subscription", "monthlyUsed"), 0)
    if monthly_limit > 0 and monthly_used / monthly_limit >= 0.8:
        alerts.append({
            "type": "subscription_near_limit",
            "severity": "medium",
            "message": "Subscription usage is above 80% of the monthly limit. "
            "API credit bundles can extend capacity.",
            "recommendation": _pick(api_bundles, "casual"),
        })

    projects_this_month = to_number(dig(analytics, "thisMonth", "projectsProcessed"), 0)
    if 1 <= projects_this_month < 2:
        alerts.append({
            "type": "first_success_expansion",
            "severity": "info",
            "message": "First project done. Next-step upgrades: thumbnails, cinematic preset, "
            "and brand consistency.",
            "recommendation": _pick(creator_bundles, "topup_s"),
        })

    if 0 < creator_credits <= 20:
        alerts.append({
            "type": "low_creator_credits",
            "severity": "medium",
            "message": "Creator Credits are getting low. Premium thumbnails and B-roll may fail "
            "without a top-up.",
            "recommendation": _pick(creator_bundles, "topup_m"),
        })

    return alerts


async def credits(context: ToolContext, params: Mapping[str, Any]) -> dict[str, Any]:
    api = context.runtime.credits
    balance, pricing, analytics = await asyncio.gather(
        api.get_credits(),
        _swallow(api.get_pricing(), None, "Pricing catalog"),
        _swallow(api.get_analytics("this_month"), None, "Monthly analytics"),
    )
    purchase_links = (
        build_purchase_links(pricing, context.api_endpoint).model_dump(by_alias=True)
        if pricing else None
    )
    return {
        **(balance or {}),
        "upsell": {
            "alerts": build_credit_alerts(balance, purchase_links, analytics),
            "purchaseLinks": purchase_links,
        },
    }


# ============================================================
#  Paid actions
# ============================================================


def _assert_video_file(path: Path) -> None:
    if not path.is_file():
        raise ValueError(f"File not found: {path}")
    extension = path.suffix.lower()
    if extension not in SUPPORTED_VIDEO_EXTENSIONS:
        supported = ", ".join(sorted(SUPPORTED_VIDEO_EXTENSIONS))
        raise ValueError(f"Unsupported file type {extension}. Supported formats: {supported}")


def _clean(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


async def upload(context: ToolContext, params: Mapping[str, Any]) -> dict[str, Any]:
    """Upload a local video after the spend policy approves its estimated cost."""
    source = str(params.get("file_path") or "").strip()
    if not source:
        raise ValueError("file_path is required")
    path = Path(source).expanduser()
    _assert_video_file(path)

    configuration = params.get("configuration")
    if configuration is not None and not isinstance(configuration, Mapping):
        raise ValueError("configuration must be an object")
    configuration = dict(configuration or {})
    preset = _clean(params.get("preset"))
    priority = _normalize_priority(params.get("priority") or "normal")
    project_name = params.get("name") or path.stem
    webhook_url = _clean(params.get("webhook_url"))
    webhook_secret = _clean(params.get("webhook_secret"))
    fallback_api_cost = 2 if priority == "rush" else 1

    estimate_payload: dict[str, Any] = {"preset": preset, "priority": priority, "configuration": configuration}
    duration = to_number(params.get("duration_minutes"), 0)
    if duration > 0:
        estimate_payload["durationMinutes"] = round(duration)

    try:
        quote = await context.runtime.credits.estimate_cost(estimate_payload)
    except StudioApiError as exc:
        logger.info("Cost estimate failed (%s), assuming %d API credit(s)", exc.code, fallback_api_cost)
        quote = {"totalCost": {"apiCredits": fallback_api_cost, "creatorCredits": 0}}

    authorization = await authorize_action(
        context,
        action="upload",
        action_label="Upload and process video",
        estimated_cost={
            "apiCredits": first_present(
                dig(quote, "totalCost", "apiCredits"), dig(quote, "apiCredits"), fallback_api_cost
            ),
            "creatorCredits": first_present(
                dig(quote, "totalCost", "creatorCredits"), dig(quote, "creatorCredits", "total"), 0
            ),
        },
        confirm_spend=bool(params.get("confirm_spend")),
    )

    result = await context.runtime.projects.upload(
        path,
        name=project_name,
        configuration=configuration,
        priority=priority,
        webhook_url=webhook_url,
        webhook_secret=webhook_secret,
        preset=preset,
    )
    project_id = result.get("projectId") or result.get("id")

    return {
        "projectId": project_id,
        "status": result.get("status") or "Uploading",
        "pollUrl": result.get("pollUrl") or f"/api/v1/projects/{project_id}/status",
        "preset": preset,
        "projectName": project_name,
        "priority": priority,
        "spendPolicy": authorization.policy.mode,
        "estimatedCost": authorization.estimated_cost.model_dump(by_alias=True),
        "confirmed": authorization.confirmed,
        "webhook": result.get("webhook") or {
            "enabled": bool(webhook_url),
            "url": webhook_url,
            "event": "project.completed" if webhook_url else None,
            "signing": bool(webhook_secret),
        },
    }


def normalize_variants(value: Any) -> int:
    return min(3, max(1, round(to_number(value, 1))))


def thumbnail_cost(
    pricing: Any, existing: list[Any], variant_count: int, premium: bool
) -> dict[str, Any]:
    """Creator Credits needed for the variants that do not exist yet."""
    requested = list(THUMBNAIL_VARIANTS[: min(3, max(1, variant_count))])
    have = {str(item.get("variant") or "").strip().upper() for item in existing if isinstance(item, Mapping)}
    missing = [v for v in requested if v not in have]
    tier = "premium" if premium else "standard"
    per_variant = to_number(dig(pricing, "thumbnails", tier, "costPerVariant"), DEFAULT_THUMBNAIL_COST[tier])
    return {
        "requestedVariants": requested,
        "missingVariants": len(missing),
        "creatorCredits": max(0, round(len(missing) * per_variant)),
    }


async def thumbnails(context: ToolContext, params: Mapping[str, Any]) -> dict[str, Any]:
    project_id = _require_project_id(params)
    variants = normalize_variants(params.get("variants"))
    premium = bool(params.get("premium_quality"))

    payload: dict[str, Any] = {"variants": variants, "premiumQuality": premium}
    if "use_brand_colors" in params:
        payload["useBrandColors"] = bool(params["use_brand_colors"])
    if "use_brand_faces" in params:
        payload["useBrandFaces"] = bool(params["use_brand_faces"])

    projects = context.runtime.projects
    pricing, existing = await asyncio.gather(
        _swallow(context.runtime.credits.get_pricing(), None, "Pricing catalog"),
        _swallow(projects.list_thumbnails(project_id), {"thumbnails": []}, "Existing thumbnails"),
    )
    cost = thumbnail_cost(pricing, (existing or {}).get("thumbnails") or [], variants, premium)

    authorization = await authorize_action(
        context,
        action="thumbnails_generate",
        action_label="Generate thumbnails",
        estimated_cost={"apiCredits": 0, "creatorCredits": cost["creatorCredits"]},
        confirm_spend=bool(params.get("confirm_spend")),
        pricing=pricing,
    )

    data = await projects.generate_thumbnails(project_id, payload)
    return {
        "projectId": project_id,
        "spendPolicy": authorization.policy.mode,
        "estimatedCost": authorization.estimated_cost.model_dump(by_alias=True),
        **(data or {}),
    }


# ============================================================
#  Account: pricing, analytics, projects
# ============================================================


async def pricing(context: ToolContext, params: Mapping[str, Any]) -> dict[str, Any]:
    """Pricing catalog with checkout links and suggested bundles."""
    catalog = await context.runtime.credits.get_pricing()
    links = build_purchase_links(catalog, context.api_endpoint)
    api_bundle = recommend_bundle(links.api_credits, 10)
    creator_bundle = recommend_bundle(links.creator_credits, 120)
    return {
        **(catalog or {}),
        "purchaseLinks": links.model_dump(by_alias=True, exclude={"recommended"}),
        "recommended": {
            "apiCredits": api_bundle.model_dump(by_alias=True) if api_bundle else None,
            "creatorCredits": creator_bundle.model_dump(by_alias=True) if creator_bundle else None,
            "subscriptionUpgradeUrl": links.subscriptions.get("creator"),
        },
    }


def normalize_period(value: Any) -> str | None:
    if not value:
        return None
    period = str(value).strip().lower()
    if period not in ANALYTICS_PERIODS:
        raise ValueError("period must be one of: " + ", ".join(ANALYTICS_PERIODS))
    return period


async def analytics(context: ToolContext, params: Mapping[str, Any]) -> dict[str, Any]:
    data = await context.runtime.credits.get_analytics(normalize_period(params.get("period")))
    processed = to_number(dig(data, "allTime", "projectsProcessed"), 0)
    reached = next((m for m in sorted(MILESTONES, reverse=True) if processed >= m), None)
    return {
        **(data or {}),
        "insights": {
            "milestone": {
                "reached": reached,
                "message": f"Milestone reached: {reached} projects processed.",
            } if reached is not None else None,
        },
    }


async def projects(context: ToolContext, params: Mapping[str, Any]) -> dict[str, Any]:
    limit = min(100, max(1, to_number(params.get("limit"), 20)))
    offset = max(0, to_number(params.get("offset"), 0))
    return await context.runtime.projects.list(int(limit), int(offset))


async def delete(context: ToolContext, params: Mapping[str, Any]) -> dict[str, Any]:
    project_id = _require_project_id(params)
    result = await context.runtime.projects.delete(project_id)
    return {"projectId": project_id, **(result or {})}


# ============================================================
#  Brand kit and assets
# ============================================================


BRAND_FIELD_ALIASES = {
    "channel_name": "channelName",
    "primary_color": "primaryColor",
    "secondary_color": "secondaryColor",
    "brand_identity": "brandIdentity",
    "channel_pitch": "channelPitch",
    "posting_plan": "postingPlan",
    "scripts_content_category": "scriptsContentCategory",
    "scripts_channel_about": "scriptsChannelAbout",
    "scripts_speaking_style": "scriptsSpeakingStyle",
    "scripts_viewers_should_feel": "scriptsViewersShouldFeel",
    "scripts_viewers_should_be": "scriptsViewersShouldBe",
    "subtitle_font_id": "subtitleFontId",
    "thumbnail_font_id": "thumbnailFontId",
    "default_intro_enabled": "defaultIntroEnabled",
    "default_outro_enabled": "defaultOutroEnabled",
}


def brand_updates(params: Mapping[str, Any]) -> dict[str, Any]:
    """Brand fields to send, from ``updates`` or the top-level params.

    Snake_case names are mapped to the API's camelCase fields; unknown keys
    pass through unchanged.
    """
    raw = params.get("updates")
    if not isinstance(raw, Mapping):
        raw = params
    return {
        BRAND_FIELD_ALIASES.get(key, key): value
        for key, value in raw.items()
        if key not in ("action", "updates")
    }


async def brand(context: ToolContext, params: Mapping[str, Any]) -> dict[str, Any]:
    action = str(params.get("action") or "get").strip().lower()
    if action == "get":
        return {"action": "get", "brand": await context.runtime.brand.get()}
    if action != "update":
        raise ValueError('action must be "get" or "update"')

    payload = brand_updates(params)
    if not payload:
        raise ValueError("No brand fields were provided to update")
    updated = await context.runtime.brand.update(payload)
    return {"action": "update", "updatedFields": list(payload), "brand": updated}


def _flag(value: Any) -> bool:
    return value is True or str(value or "").strip().lower() == "true"


async def brand_import(context: ToolContext, params: Mapping[str, Any]) -> dict[str, Any]:
    url = str(params.get("url") or "").strip()
    if not url:
        raise ValueError("url is required")
    if len(url) > MAX_URL_LENGTH:
        raise ValueError(f"URL is too long (max {MAX_URL_LENGTH} characters)")
    if not _HTTP_URL.match(url):
        raise ValueError("URL must start with http:// or https://")

    apply = _flag(params.get("apply"))
    result = await context.runtime.brand.import_from_url(url, apply=apply)
    return {"action": "apply" if apply else "preview", **(result or {})}


def _asset_type(params: Mapping[str, Any]) -> str:
    value = params.get("asset_type") or params.get("asset_id") or params.get("assetId")
    return str(value or "").strip().lower()


def _assert_asset_type(asset_type: str) -> None:
    if asset_type not in ASSET_TYPES:
        raise ValueError("asset_type must be one of: " + ", ".join(ASSET_TYPES))


async def assets(context: ToolContext, params: Mapping[str, Any]) -> dict[str, Any]:
    """List, upload or delete the intro, outro and watermark assets."""
    api = context.runtime.assets
    action = str(params.get("action") or "list").strip().lower()

    if action == "list":
        return {"action": "list", **(await api.list() or {})}

    if action == "upload":
        asset_type = _asset_type(params)
        file_path = str(params.get("file_path") or "").strip()
        if not file_path:
            raise ValueError("file_path is required for action=upload")
        _assert_asset_type(asset_type)
        path = Path(file_path).expanduser()
        if not path.is_file():
            raise ValueError(f"File not found: {path}")
        result = await api.upload(asset_type, path)
        latest = await _swallow(api.list(), None, "Asset list")
        return {
            "action": "upload",
            "assetType": asset_type,
            "filePath": file_path,
            "result": result,
            "assets": (latest or {}).get("assets") or None,
        }

    if action == "delete":
        asset_type = _asset_type(params)
        if not asset_type:
            raise ValueError("asset_type is required for action=delete (intro, outro, or watermark)")
        _assert_asset_type(asset_type)
        result = await api.delete(asset_type)
        latest = await _swallow(api.list(), None, "Asset list")
        return {
            "action": "delete",
            "assetId": asset_type,
            "result": result,
            "assets": (latest or {}).get("assets") or None,
        }

    raise ValueError('action must be one of: "list", "upload", "delete"')


# ============================================================
#  Feedback and referrals
# ============================================================


async def feedback(context: ToolContext, params: Mapping[str, Any]) -> dict[str, Any]:
    kind = str(params.get("type") or "").strip().lower()
    title = str(params.get("title") or "").strip()
    description = str(params.get("description") or "").strip()
    if not (kind and title and description):
        raise ValueError("type, title, and description are required")

    payload = {
        "type": kind,
        "title": title,
        "description": description,
        "severity": params.get("severity") or "medium",
        "projectId": params.get("project_id") or None,
        "context": {
            "agent": AGENT_CLIENT,
            "os": sys.platform,
            "pythonVersion": platform.python_version(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    }
    return await context.runtime.feedback.submit(payload, headers={"X-Agent-Client": AGENT_CLIENT})


async def referral(context: ToolContext, params: Mapping[str, Any]) -> dict[str, Any]:
    action = str(params.get("action") or "get").strip().lower()
    if action == "get":
        return await context.runtime.referral.get()
    if action == "apply":
        code = str(params.get("code") or "").strip()
        if not code:
            raise ValueError("Referral code is required for action 'apply'.")
        return await context.runtime.referral.apply(code)
    raise ValueError(f'Invalid action: "{action}". Must be "get" or "apply".')


# ============================================================
#  Dispatch
# ============================================================


TOOLS: dict[str, ToolHandler] = {
    "studio_status": status,
    "studio_poll": poll,
    "studio_results": results,
    "studio_download": download,
    "studio_estimate": estimate,
    "studio_credits": credits,
    "studio_upload": upload,
    "studio_rerender": rerender,
    "studio_thumbnails": thumbnails,
    "studio_pricing": pricing,
    "studio_analytics": analytics,
    "studio_projects": projects,
    "studio_delete": delete,
    "studio_brand": brand,
    "studio_brand_import": brand_import,
    "studio_assets": assets,
    "studio_feedback": feedback,
    "studio_referral": referral,
}


async def run_tool(name: str, context: ToolContext, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Run a tool by name; failures come back as ``{"error": true, ...}`` payloads."""
    handler = TOOLS.get(name)
    if handler is None:
        return StudioApiError(f"Unknown tool: {name}", code="unknown_tool", status=404).to_dict()
    try:
        return await handler(context, params or {})
    except StudioApiError as exc:
        return exc.to_dict()
    except ValueError as exc:
        return StudioApiError(str(exc), code="invalid_params", status=400).to_dict()
