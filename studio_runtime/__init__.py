"""
Web2Labs Studio runtime for Python.

Async client and tool gateway that lets AI agents drive the Studio
video-editing API: uploads, status polling over Socket.IO with HTTP
fallback, downloads, thumbnails, and credit spending guarded by a
configurable spend policy.

Example::

    from studio_runtime import StudioRuntime, ToolContext, run_tool

    runtime = StudioRuntime(api_key="w2l_your_api_key_here")
    context = ToolContext.from_runtime(runtime)

    # Upload (the spend policy may ask for confirmation first)
    result = await run_tool("studio_upload", context, {"file_path": "~/talk.mp4"})

    # Wait for the edit to finish
    final = await run_tool("studio_poll", context, {"project_id": result["projectId"]})

    # Clean up
    await runtime.close()
"""

from studio_runtime.client import StudioRuntime
from studio_runtime.errors import (
    StudioApiError,
    SpendConfirmationRequired,
    InsufficientCredits,
    RealtimeChannelError,
)
from studio_runtime.events import EventManager, RealtimeChannel
from studio_runtime.poller import ProjectPoller
from studio_runtime.spend_policy import authorize_action
from studio_runtime.tools import TOOLS, ToolContext, run_tool
from studio_runtime.types import (
    RuntimeConfig,
    AuthContext,
    SpendPolicyConfig,
    CostEstimate,
    BalanceSnapshot,
    MonthlyUsage,
    NeededCredits,
    SpendAuthorization,
    PurchaseBundle,
    PurchaseLinks,
    ProgressUpdate,
)

__all__ = [
    "StudioRuntime",
    "StudioApiError",
    "SpendConfirmationRequired",
    "InsufficientCredits",
    "RealtimeChannelError",
    "EventManager",
    "RealtimeChannel",
    "ProjectPoller",
    "authorize_action",
    "TOOLS",
    "ToolContext",
    "run_tool",
    "RuntimeConfig",
    "AuthContext",
    "SpendPolicyConfig",
    "CostEstimate",
    "BalanceSnapshot",
    "MonthlyUsage",
    "NeededCredits",
    "SpendAuthorization",
    "PurchaseBundle",
    "PurchaseLinks",
    "ProgressUpdate",
]

__version__ = "1.0.0"
