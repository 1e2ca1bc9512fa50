"""
Pydantic models for the Studio runtime.

Wire payloads from the Studio API are camelCase; models expose snake_case
attributes with camelCase aliases so ``model_dump(by_alias=True)`` gives back
the shape the API (and calling agents) expect.
"""

from __future__ import annotations

import base64
import math
import os
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

from studio_runtime.errors import StudioApiError

Number = int | float

DEFAULT_API_ENDPOINT = "https://web2labs.com"
TEST_API_ENDPOINT = "https://test.web2labs.com"


# ============================================================
#  Authentication
# ============================================================


class AuthContext(BaseModel):
    """Credentials attached to outgoing requests.

    Immutable: rotating a credential produces a new context.
    """

    api_key: str | None = None
    bearer_token: str | None = None
    basic_auth: str | None = None

    model_config = ConfigDict(frozen=True)

    def with_api_key(self, key: str | None) -> "AuthContext":
        return self.model_copy(update={"api_key": key or None})

    def with_bearer_token(self, token: str | None) -> "AuthContext":
        return self.model_copy(update={"bearer_token": token or None})

    @property
    def basic_authorization(self) -> str | None:
        """``Basic …`` header value for ``user:pass`` credentials, if any."""
        if not self.basic_auth:
            return None
        encoded = base64.b64encode(self.basic_auth.encode("utf-8")).decode("ascii")
        return f"Basic {encoded}"

    def headers(self) -> dict[str, str]:
        """Build auth headers.

        The API key wins over a bearer token. Basic credentials ride along
        with the API key but not with a bearer token, which needs the same
        ``Authorization`` header.

        Raises:
            StudioApiError: ``missing_auth`` when neither credential is set.
        """
        if self.api_key:
            headers: dict[str, str] = {}
            if self.basic_authorization:
                headers["Authorization"] = self.basic_authorization
            headers["X-API-Key"] = self.api_key
            return headers
        if self.bearer_token:
            return {"Authorization": f"Bearer {self.bearer_token}"}
        raise StudioApiError(
            "No authentication configured. Set WEB2LABS_API_KEY or WEB2LABS_BEARER_TOKEN.",
            code="missing_auth",
            status=401,
        )


# ============================================================
#  Spend policy configuration
# ============================================================


SPEND_MODES = frozenset({"explicit", "smart", "auto"})

# field -> (env var, default, min, max)
_POLICY_KNOBS: dict[str, tuple[str, Number, Number, Number]] = {
    "smart_api_confirm_threshold": ("WEB2LABS_SMART_CONFIRM_API_THRESHOLD", 2, 1, 20),
    "smart_creator_confirm_threshold": ("WEB2LABS_SMART_CONFIRM_CREATOR_THRESHOLD", 8, 1, 10000),
    "low_api_balance_threshold": ("WEB2LABS_SMART_CONFIRM_LOW_API_BALANCE", 2, 0, 1000),
    "low_creator_balance_threshold": ("WEB2LABS_SMART_CONFIRM_LOW_CREATOR_BALANCE", 20, 0, 100000),
    "auto_max_api_per_action": ("WEB2LABS_AUTO_SPEND_MAX_API_PER_ACTION", 2, 1, 1000),
    "auto_max_creator_per_action": ("WEB2LABS_AUTO_SPEND_MAX_CREATOR_PER_ACTION", 40, 1, 100000),
    "auto_max_api_per_month": ("WEB2LABS_AUTO_SPEND_MAX_API_PER_MONTH", 80, 1, 100000),
    "auto_max_creator_per_month": ("WEB2LABS_AUTO_SPEND_MAX_CREATOR_PER_MONTH", 400, 1, 1000000),
}


def to_number(
    value: Any,
    fallback: Any,
    minimum: Number | None = None,
    maximum: Number | None = None,
) -> Any:
    """Coerce ``value`` to a finite number clamped to ``[minimum, maximum]``.

    Anything that is not a finite number (``None``, blanks, garbage strings,
    booleans, NaN) yields ``fallback`` instead.
    """
    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return fallback
    try:
        n = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(n):
        return fallback
    if minimum is not None:
        n = float(max(minimum, n))
    if maximum is not None:
        n = float(min(maximum, n))
    return int(n) if n.is_integer() else n


def normalize_mode(mode: Any) -> str:
    normalized = str(mode or "auto").strip().lower()
    return normalized if normalized in SPEND_MODES else "auto"


class SpendPolicyConfig(BaseModel):
    """Spend policy mode plus its thresholds and caps."""

    mode: str = "auto"
    smart_api_confirm_threshold: Number = Field(2, alias="smartApiConfirmThreshold")
    smart_creator_confirm_threshold: Number = Field(8, alias="smartCreatorConfirmThreshold")
    low_api_balance_threshold: Number = Field(2, alias="lowApiBalanceThreshold")
    low_creator_balance_threshold: Number = Field(20, alias="lowCreatorBalanceThreshold")
    auto_max_api_per_action: Number = Field(2, alias="autoMaxApiPerAction")
    auto_max_creator_per_action: Number = Field(40, alias="autoMaxCreatorPerAction")
    auto_max_api_per_month: Number = Field(80, alias="autoMaxApiPerMonth")
    auto_max_creator_per_month: Number = Field(400, alias="autoMaxCreatorPerMonth")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "SpendPolicyConfig":
        """Load the policy from ``WEB2LABS_*`` variables (defaults to ``os.environ``)."""
        env = os.environ if env is None else env
        values: dict[str, Any] = {"mode": normalize_mode(env.get("WEB2LABS_SPEND_POLICY"))}
        for field, (var, default, minimum, maximum) in _POLICY_KNOBS.items():
            values[field] = to_number(env.get(var), default, minimum, maximum)
        return cls(**values)

    @classmethod
    def from_overrides(cls, overrides: Mapping[str, Any]) -> "SpendPolicyConfig":
        """Merge a partial override (snake_case or camelCase keys) over the defaults."""
        base = cls.from_env({}).model_dump()
        fields = cls.model_fields
        for key, value in overrides.items():
            name = key if key in fields else next(
                (n for n, f in fields.items() if f.alias == key), None
            )
            if name is None or name == "mode":
                continue
            _, default, minimum, maximum = _POLICY_KNOBS[name]
            base[name] = to_number(value, default, minimum, maximum)
        base["mode"] = normalize_mode(overrides.get("mode"))
        return cls(**base)


# ============================================================
#  Credits
# ============================================================


class CostEstimate(BaseModel):
    """Canonical cost of an action, in whole credits."""

    api_credits: int = Field(0, alias="apiCredits", ge=0)
    creator_credits: int = Field(0, alias="creatorCredits", ge=0)

    model_config = ConfigDict(populate_by_name=True)

    @property
    def is_paid(self) -> bool:
        return self.api_credits > 0 or self.creator_credits > 0


class BalanceSnapshot(BaseModel):
    """Current credit balance and subscription usage."""

    api_credits: int = Field(0, alias="apiCredits", ge=0)
    creator_credits: int = Field(0, alias="creatorCredits", ge=0)
    subscription_tier: str = Field("unknown", alias="subscriptionTier")
    subscription_monthly_limit: int = Field(0, alias="subscriptionMonthlyLimit", ge=0)
    subscription_monthly_used: int = Field(0, alias="subscriptionMonthlyUsed", ge=0)
    subscription_monthly_remaining: int = Field(0, alias="subscriptionMonthlyRemaining", ge=0)

    model_config = ConfigDict(populate_by_name=True)


class MonthlyUsage(BaseModel):
    """Credits spent so far this month."""

    api_credits_used: int = Field(0, alias="apiCreditsUsed", ge=0)
    creator_credits_used: int = Field(0, alias="creatorCreditsUsed", ge=0)
    projects_processed: int = Field(0, alias="projectsProcessed", ge=0)

    model_config = ConfigDict(populate_by_name=True)


class NeededCredits(BaseModel):
    """Per-kind deficit between cost and balance."""

    api_credits_needed: int = Field(0, alias="apiCreditsNeeded", ge=0)
    creator_credits_needed: int = Field(0, alias="creatorCreditsNeeded", ge=0)

    model_config = ConfigDict(populate_by_name=True)

    @property
    def any(self) -> bool:
        return self.api_credits_needed > 0 or self.creator_credits_needed > 0


class SpendAuthorization(BaseModel):
    """Successful outcome of a spend-policy check."""

    action: str
    action_label: str = Field(alias="actionLabel")
    policy: SpendPolicyConfig
    estimated_cost: CostEstimate = Field(alias="estimatedCost")
    balance: BalanceSnapshot | None = None
    monthly_usage: MonthlyUsage | None = Field(None, alias="monthlyUsage")
    confirmation_required: bool = Field(False, alias="confirmationRequired")
    confirmed: bool = False
    triggers: list[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


# ============================================================
#  Purchase links
# ============================================================


class PurchaseBundle(BaseModel):
    """A credit bundle with its checkout link."""

    id: str | None = None
    credits: Number = 0
    price: Number = 0
    currency: str = "EUR"
    checkout_url: str = Field(alias="checkoutUrl")

    model_config = ConfigDict(populate_by_name=True)


class RecommendedBundles(BaseModel):
    api_credits: PurchaseBundle | None = Field(None, alias="apiCredits")
    creator_credits: PurchaseBundle | None = Field(None, alias="creatorCredits")

    model_config = ConfigDict(populate_by_name=True)


class PurchaseLinks(BaseModel):
    """Checkout links built from the pricing catalog."""

    ref: str
    base_url: str = Field(alias="baseUrl")
    api_credits: list[PurchaseBundle] = Field(default_factory=list, alias="apiCredits")
    creator_credits: list[PurchaseBundle] = Field(default_factory=list, alias="creatorCredits")
    subscriptions: dict[str, str] = Field(default_factory=dict)
    recommended: RecommendedBundles | None = None

    model_config = ConfigDict(populate_by_name=True)


# ============================================================
#  Projects
# ============================================================


class ProgressUpdate(BaseModel):
    """Progress report handed to ``on_progress`` callbacks."""

    project_id: str = Field(alias="projectId")
    status: str | None = None
    progress: Any = None
    retention_time_remaining: Any = Field(None, alias="retentionTimeRemaining")

    model_config = ConfigDict(populate_by_name=True)


# ============================================================
#  Runtime configuration
# ============================================================


def _env_flag(value: str | None) -> bool:
    return value in ("true", "1")


class RuntimeConfig(BaseModel):
    """Configuration for connecting to the Studio API."""

    api_endpoint: str = DEFAULT_API_ENDPOINT
    api_key: str | None = None
    bearer_token: str | None = None
    basic_auth: str | None = None
    test_mode: bool = False
    socket_url: str | None = None
    download_dir: str = "~/studio-exports"
    max_retries: int = 3
    user_agent: str | None = None
    spend_policy: SpendPolicyConfig = Field(default_factory=SpendPolicyConfig)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "RuntimeConfig":
        env = os.environ if env is None else env
        test_mode = _env_flag(env.get("WEB2LABS_TEST_MODE"))
        default_endpoint = TEST_API_ENDPOINT if test_mode else DEFAULT_API_ENDPOINT
        return cls(
            api_endpoint=env.get("WEB2LABS_API_ENDPOINT") or default_endpoint,
            api_key=env.get("WEB2LABS_API_KEY") or None,
            bearer_token=env.get("WEB2LABS_BEARER_TOKEN") or None,
            basic_auth=env.get("WEB2LABS_BASIC_AUTH") or None,
            test_mode=test_mode,
            socket_url=env.get("WEB2LABS_SOCKET_URL") or None,
            download_dir=env.get("WEB2LABS_DOWNLOAD_DIR") or "~/studio-exports",
            max_retries=int(to_number(env.get("WEB2LABS_MAX_RETRIES"), 3, 0, 10)),
            spend_policy=SpendPolicyConfig.from_env(env),
        )

    @property
    def auth(self) -> AuthContext:
        return AuthContext(
            api_key=self.api_key,
            bearer_token=self.bearer_token,
            basic_auth=self.basic_auth,
        )
