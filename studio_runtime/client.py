"""
Studio runtime Python client.

Direct HTTP client for the Web2Labs Studio API using ``httpx`` for async
HTTP. Realtime progress events go through :mod:`studio_runtime.events`.

Usage::

    from studio_runtime import StudioRuntime

    runtime = StudioRuntime(api_endpoint="https://web2labs.com", api_key="w2l_...")
    credits = await runtime.credits.get_credits()
    status = await runtime.projects.get_status("project-1")
    await runtime.close()
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import quote as url_quote

import httpx

from studio_runtime.errors import StudioApiError
from studio_runtime.types import AuthContext, RuntimeConfig

logger = logging.getLogger(__name__)

__all__ = ["StudioRuntime", "StudioApiError"]

DEFAULT_TIMEOUT_MS = 30_000
UPLOAD_TIMEOUT_MS = 10 * 60 * 1000
DOWNLOAD_TIMEOUT_MS = 5 * 60 * 1000
MAX_BACKOFF_MS = 8000
DEFAULT_RETRY_AFTER_S = 10
DEFAULT_USER_AGENT = "web2labs-studio-runtime-py/1.0.0"

ASSET_TYPES = ("intro", "outro", "watermark")


def backoff_ms(attempt: int) -> int:
    """Exponential backoff for ``attempt`` (0-based): 1s, 2s, 4s, 8s, 8s, …"""
    return min(MAX_BACKOFF_MS, (2 ** attempt) * 1000)


def _is_retryable_status(status: int) -> bool:
    return status >= 500 or status == 429


def _parse_body(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


def _envelope_error(payload: Any) -> dict[str, Any]:
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        return payload["error"]
    return {}


class _HttpClient:
    """Authenticated request engine with retry, backoff and envelope unwrapping."""

    def __init__(
        self,
        api_endpoint: str,
        auth: AuthContext | None = None,
        max_retries: int = 3,
        user_agent: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = api_endpoint.rstrip("/")
        self.auth = auth or AuthContext()
        self.max_retries = max_retries
        self.user_agent = user_agent or DEFAULT_USER_AGENT
        self._base_host = httpx.URL(self.base_url).host
        self._client = httpx.AsyncClient(
            transport=transport,
            follow_redirects=True,
            event_hooks={"request": [self._strip_foreign_auth]},
        )

    # -- Credentials ---------------------------------------------------------

    def set_api_key(self, key: str | None) -> None:
        self.auth = self.auth.with_api_key(key)

    def set_bearer_token(self, token: str | None) -> None:
        self.auth = self.auth.with_bearer_token(token)

    # -- URL handling --------------------------------------------------------

    def resolve_url(self, path: str) -> str:
        """Absolute URLs pass through; ``/api/…`` stays unversioned; the rest goes under ``/api/v1``."""
        if path.startswith(("http://", "https://")):
            return path
        if not path.startswith("/"):
            path = f"/{path}"
        if path.startswith("/api/"):
            return f"{self.base_url}{path}"
        return f"{self.base_url}/api/v1{path}"

    def _is_own_host(self, url: str | httpx.URL) -> bool:
        return httpx.URL(url).host == self._base_host

    async def _strip_foreign_auth(self, request: httpx.Request) -> None:
        # Redirects to pre-signed storage URLs must not carry our credentials.
        if not self._is_own_host(request.url):
            request.headers.pop("X-API-Key", None)
            request.headers.pop("Authorization", None)

    def _headers(self, url: str, auth: AuthContext, extra: Mapping[str, str] | None) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self._is_own_host(url):
            headers.update(auth.headers())
        if extra:
            headers.update(extra)
        if not any(k.lower() == "user-agent" for k in headers):
            headers["User-Agent"] = self.user_agent
        return headers

    async def wait(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    # -- Request engine ------------------------------------------------------

    async def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        data: Mapping[str, Any] | None = None,
        files: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        timeout_ms: int | None = None,
        raw: bool = False,
        auth: AuthContext | None = None,
    ) -> Any:
        """Make one logical request, retrying 429/5xx/transport failures.

        Returns the envelope's ``data`` when present, otherwise the parsed
        body. With ``raw=True`` the open streaming :class:`httpx.Response`
        is returned and the caller must close it.

        Raises:
            StudioApiError: ``missing_auth`` before any network call when no
                credential is configured, the remote error code for non-2xx
                or ``success: false`` responses, ``timeout`` / ``network_error``
                when transport failures exhaust the retry budget.
        """
        url = self.resolve_url(path)
        auth = auth or self.auth
        # Raises missing_auth before the first attempt.
        auth.headers()
        request_headers = self._headers(url, auth, headers)
        timeout_s = (timeout_ms or DEFAULT_TIMEOUT_MS) / 1000
        timeout = httpx.Timeout(timeout_s)

        for attempt in range(self.max_retries + 1):
            if files:
                _rewind(files)
            request = self._client.build_request(
                method,
                url,
                headers=request_headers,
                json=json_body,
                data=data,
                files=files,
                timeout=timeout,
            )
            try:
                # One timer per attempt. Buffered calls include the body read,
                # raw calls are bounded up to the response headers.
                response = await asyncio.wait_for(self._client.send(request, stream=raw), timeout_s)
            except (httpx.TransportError, asyncio.TimeoutError) as exc:
                if attempt >= self.max_retries:
                    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
                        raise StudioApiError("Request timed out", code="timeout", status=408) from exc
                    raise StudioApiError(str(exc) or "Network error", code="network_error", status=503) from exc
                delay = backoff_ms(attempt)
                logger.info(
                    "%s %s failed (%s), retrying in %dms (attempt %d/%d)",
                    method, path, type(exc).__name__, delay, attempt + 1, self.max_retries + 1,
                )
                await self.wait(delay / 1000)
                continue

            status = response.status_code

            if status == 429 and attempt < self.max_retries:
                retry_after = _retry_after_seconds(response.headers.get("retry-after"))
                delay = max(1000, retry_after * 1000)
                logger.info("Rate limited (429), retrying in %dms (attempt %d/%d)", delay, attempt + 1, self.max_retries + 1)
                await response.aclose()
                await self.wait(delay / 1000)
                continue

            if raw:
                if response.is_success:
                    return response
                await response.aclose()
                if attempt < self.max_retries and _is_retryable_status(status):
                    await self.wait(backoff_ms(attempt) / 1000)
                    continue
                raise StudioApiError(f"Request failed with status {status}", code="request_failed", status=status)

            payload = _parse_body(response.text)

            if not response.is_success:
                if attempt < self.max_retries and _is_retryable_status(status):
                    delay = backoff_ms(attempt)
                    logger.info("%s %s returned %d, retrying in %dms", method, path, status, delay)
                    await self.wait(delay / 1000)
                    continue
                error = _envelope_error(payload)
                raise StudioApiError(
                    error.get("message") or f"Request failed with status {status}",
                    code=error.get("code") or "request_failed",
                    status=status,
                    details=error.get("details"),
                )

            if isinstance(payload, dict) and payload.get("success") is False:
                error = _envelope_error(payload)
                raise StudioApiError(
                    error.get("message") or "Request failed",
                    code=error.get("code") or "request_failed",
                    status=status,
                    details=error.get("details"),
                )

            if isinstance(payload, dict) and "data" in payload:
                return payload["data"]
            return payload

        raise StudioApiError("Request retries exhausted", code="retry_exhausted", status=503)

    async def get_socket_token(self) -> dict[str, Any]:
        return await self.request("POST", "/api/auth/socket")

    async def close(self) -> None:
        await self._client.aclose()


def _retry_after_seconds(value: str | None) -> float:
    try:
        return float(value) if value else DEFAULT_RETRY_AFTER_S
    except ValueError:
        return DEFAULT_RETRY_AFTER_S


def _rewind(files: Mapping[str, Any]) -> None:
    for value in files.values():
        fh = value[1] if isinstance(value, tuple) else value
        if hasattr(fh, "seek"):
            fh.seek(0)


# ============================================================
#  Sub-managers
# ============================================================


class _CreditsManager:
    """Balance, pricing, estimates and usage analytics."""

    def __init__(self, http: _HttpClient) -> None:
        self._http = http

    async def get_credits(self) -> dict[str, Any]:
        return await self._http.request("GET", "/credits")

    async def get_pricing(self) -> dict[str, Any]:
        return await self._http.request("GET", "/pricing")

    async def estimate_cost(self, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self._http.request("POST", "/estimate", json_body=payload or {})

    async def get_analytics(self, period: str | None = None) -> dict[str, Any]:
        query = f"?period={url_quote(str(period), safe='')}" if period else ""
        return await self._http.request("GET", f"/analytics{query}")


class _ProjectManager:
    """Upload, status, results, thumbnails and re-rendering of projects."""

    def __init__(self, http: _HttpClient) -> None:
        self._http = http

    async def upload(
        self,
        file_path: str | os.PathLike[str],
        name: str | None = None,
        configuration: dict[str, Any] | None = None,
        priority: str | None = None,
        webhook_url: str | None = None,
        webhook_secret: str | None = None,
        preset: str | None = None,
    ) -> dict[str, Any]:
        """Upload a local video as a new project.

        Args:
            file_path: Path to the video file.
            name: Project name.
            configuration: Editing configuration, sent as a JSON string field.
            priority: ``normal`` or ``rush``.
            webhook_url: Callback URL for ``project.completed``.
            webhook_secret: HMAC SHA-256 signing secret for the webhook.
            preset: Named editing preset applied server-side.

        Returns:
            Upload result with ``projectId``.
        """
        path = Path(file_path)
        form: dict[str, str] = {}
        if name:
            form["name"] = name
        if configuration is not None:
            form["configuration"] = json.dumps(configuration)
        if priority:
            form["priority"] = str(priority)
        if webhook_url:
            form["webhookUrl"] = str(webhook_url)
        if webhook_secret:
            form["webhookSecret"] = str(webhook_secret)
        if preset:
            form["preset"] = str(preset)

        with path.open("rb") as fh:
            return await self._http.request(
                "POST",
                "/projects/upload",
                data=form,
                files={"file": (path.name, fh)},
                timeout_ms=UPLOAD_TIMEOUT_MS,
            )

    async def get_status(self, project_id: str) -> dict[str, Any]:
        return await self._http.request("GET", f"/projects/{url_quote(project_id, safe='')}/status")

    async def get_results(self, project_id: str) -> dict[str, Any]:
        return await self._http.request("GET", f"/projects/{url_quote(project_id, safe='')}/results")

    async def list_thumbnails(self, project_id: str) -> dict[str, Any]:
        return await self._http.request("GET", f"/projects/{url_quote(project_id, safe='')}/thumbnails")

    async def generate_thumbnails(self, project_id: str, options: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self._http.request(
            "POST",
            f"/projects/{url_quote(project_id, safe='')}/thumbnails/generate",
            json_body=options or {},
        )

    async def rerender(self, project_id: str, configuration: dict[str, Any]) -> dict[str, Any]:
        return await self._http.request(
            "POST",
            f"/projects/{url_quote(project_id, safe='')}/rerender",
            json_body={"configuration": configuration},
        )

    async def list(self, limit: int = 20, offset: int = 0) -> dict[str, Any]:
        return await self._http.request("GET", f"/projects?limit={int(limit)}&offset={int(offset)}")

    async def delete(self, project_id: str) -> dict[str, Any]:
        return await self._http.request("DELETE", f"/projects/{url_quote(project_id, safe='')}")


class _BrandManager:
    """Brand kit settings."""

    def __init__(self, http: _HttpClient) -> None:
        self._http = http

    async def get(self) -> dict[str, Any]:
        return await self._http.request("GET", "/brand")

    async def update(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._http.request("PUT", "/brand", json_body=payload or {})

    async def import_from_url(self, url: str, apply: bool = False) -> dict[str, Any]:
        """Import brand colors and imagery from a channel or website URL."""
        return await self._http.request(
            "POST",
            "/brand/import",
            json_body={"url": str(url or "").strip(), "apply": bool(apply)},
        )


class _AssetManager:
    """Intro, outro and watermark assets."""

    def __init__(self, http: _HttpClient) -> None:
        self._http = http

    async def list(self) -> dict[str, Any]:
        return await self._http.request("GET", "/assets")

    async def upload(self, asset_type: str, file_path: str | os.PathLike[str]) -> dict[str, Any]:
        normalized = str(asset_type or "").strip().lower()
        if normalized not in ASSET_TYPES:
            raise StudioApiError(
                "assetType must be one of: intro, outro, watermark",
                code="invalid_asset_type",
                status=400,
            )
        path = Path(file_path)
        with path.open("rb") as fh:
            return await self._http.request(
                "POST",
                f"/assets/{normalized}",
                files={"file": (path.name, fh)},
                timeout_ms=UPLOAD_TIMEOUT_MS,
            )

    async def delete(self, asset_id: str) -> dict[str, Any]:
        return await self._http.request("DELETE", f"/assets/{url_quote(str(asset_id or ''), safe='')}")


class _FeedbackManager:
    """Bug reports and feature requests."""

    def __init__(self, http: _HttpClient) -> None:
        self._http = http

    async def submit(self, payload: dict[str, Any], headers: Mapping[str, str] | None = None) -> dict[str, Any]:
        return await self._http.request("POST", "/feedback", json_body=payload, headers=headers)

    async def list(self, limit: int = 20, offset: int = 0, status: str | None = None) -> dict[str, Any]:
        status_part = f"&status={url_quote(status, safe='')}" if status else ""
        return await self._http.request("GET", f"/feedback?limit={int(limit)}&offset={int(offset)}{status_part}")

    async def get(self, feedback_id: str) -> dict[str, Any]:
        return await self._http.request("GET", f"/feedback/{url_quote(feedback_id, safe='')}")


class _ReferralManager:
    """Referral code and rewards."""

    def __init__(self, http: _HttpClient) -> None:
        self._http = http

    async def get(self) -> dict[str, Any]:
        return await self._http.request("GET", "/referral")

    async def apply(self, code: str) -> dict[str, Any]:
        return await self._http.request("POST", "/referral/apply", json_body={"code": str(code or "").strip()})


# ============================================================
#  Main Runtime Client
# ============================================================


class StudioRuntime:
    """
    The main Studio runtime client.

    Bundles the request engine with per-area managers (credits, projects,
    brand, assets, feedback, referral) and file downloads.
    """

    def __init__(
        self,
        api_endpoint: str | None = None,
        api_key: str | None = None,
        bearer_token: str | None = None,
        basic_auth: str | None = None,
        max_retries: int = 3,
        user_agent: str | None = None,
        config: RuntimeConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if config is None:
            config = RuntimeConfig(
                api_key=api_key,
                bearer_token=bearer_token,
                basic_auth=basic_auth,
                max_retries=max_retries,
                user_agent=user_agent,
                **({"api_endpoint": api_endpoint} if api_endpoint else {}),
            )
        self.config = config

        self._http = _HttpClient(
            config.api_endpoint,
            auth=config.auth,
            max_retries=config.max_retries,
            user_agent=config.user_agent,
            transport=transport,
        )

        self.credits = _CreditsManager(self._http)
        self.projects = _ProjectManager(self._http)
        self.brand = _BrandManager(self._http)
        self.assets = _AssetManager(self._http)
        self.feedback = _FeedbackManager(self._http)
        self.referral = _ReferralManager(self._http)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "StudioRuntime":
        return cls(config=RuntimeConfig.from_env(env))

    @property
    def http(self) -> _HttpClient:
        return self._http

    @property
    def api_endpoint(self) -> str:
        return self._http.base_url

    def set_api_key(self, key: str | None) -> None:
        self._http.set_api_key(key)

    def set_bearer_token(self, token: str | None) -> None:
        self._http.set_bearer_token(token)

    async def get_socket_token(self) -> dict[str, Any]:
        return await self._http.get_socket_token()

    async def download_file(self, url_or_path: str, destination: str | os.PathLike[str]) -> dict[str, Any]:
        """Stream a result file (or a pre-signed URL) to ``destination``.

        Returns:
            Dict with the local ``path`` and the resolved ``url``.
        """
        url = self._http.resolve_url(url_or_path)
        dest = Path(destination)
        dest.parent.mkdir(parents=True, exist_ok=True)

        response = await self._http.request("GET", url, raw=True, timeout_ms=DOWNLOAD_TIMEOUT_MS)
        try:
            with dest.open("wb") as fh:
                async for chunk in response.aiter_bytes():
                    fh.write(chunk)
        finally:
            await response.aclose()

        logger.debug("Downloaded %s -> %s", url, dest)
        return {"path": str(dest), "url": url}

    async def close(self) -> None:
        await self._http.close()
