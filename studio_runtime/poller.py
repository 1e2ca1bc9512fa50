"""
Completion polling for Studio projects.

:class:`ProjectPoller` waits for a project to reach ``completed`` or
``failed``. The realtime stage listens on the Socket.IO channel; if that
stage fails for any reason the HTTP stage takes over and polls the status
endpoint at a stage-aware interval.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from studio_runtime.client import _HttpClient, _ProjectManager
from studio_runtime.errors import StudioApiError
from studio_runtime.events import (
    TERMINAL_STATUSES,
    ProgressCallback,
    RealtimeChannel,
    maybe_await,
)
from studio_runtime.types import ProgressUpdate

logger = logging.getLogger(__name__)

# Seconds between status checks while a project sits in each stage.
POLL_INTERVALS = {
    "start": 3,
    "uploading": 3,
    "editing": 10,
    "manual": 15,
    "rendering": 15,
    "completed": 0,
    "failed": 0,
}
DEFAULT_POLL_INTERVAL = 10

ChannelFactory = Callable[[_HttpClient, Any], Any]
FallbackCallback = Callable[[Exception], Any]


def normalize_status(raw_status: Any) -> str:
    return str(raw_status or "").strip().lower()


def is_terminal_status(status: Any) -> bool:
    return normalize_status(status) in TERMINAL_STATUSES


def interval_for_status(status: Any) -> float:
    normalized = normalize_status(status)
    if normalized in POLL_INTERVALS:
        return POLL_INTERVALS[normalized]
    return DEFAULT_POLL_INTERVAL


def _status_of(payload: Any) -> Any:
    return payload.get("status") if isinstance(payload, dict) else None


def _progress_update(project_id: str, payload: Any) -> ProgressUpdate:
    payload = payload if isinstance(payload, dict) else {}
    return ProgressUpdate(
        project_id=project_id,
        status=payload.get("status"),
        progress=payload.get("progress"),
        retention_time_remaining=payload.get("retentionTimeRemaining") or None,
    )


class ProjectPoller:
    """Wait for project completion: realtime first, HTTP polling as fallback.

    Args:
        http: Request engine shared with the rest of the runtime.
        realtime: Set ``False`` to skip the realtime stage entirely.
        socket_url: Override for the Socket.IO endpoint.
        channel_factory: Builds the realtime channel, ``(http, socket_url)``.
        on_fallback: Called with the realtime failure before HTTP polling starts.
    """

    def __init__(
        self,
        http: _HttpClient,
        realtime: bool = True,
        socket_url: str | None = None,
        channel_factory: ChannelFactory | None = None,
        on_fallback: FallbackCallback | None = None,
    ) -> None:
        self._http = http
        self._projects = _ProjectManager(http)
        self.realtime = realtime
        self.socket_url = socket_url
        self._channel_factory = channel_factory or (lambda h, url: RealtimeChannel(h, socket_url=url))
        self.on_fallback = on_fallback

    async def wait(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    async def poll(
        self,
        project_id: str,
        timeout_minutes: float = 30,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        """Block until the project is terminal and return its final status.

        Realtime failures never reach the caller; only an HTTP-stage error
        (including its deadline) does.
        """
        if self.realtime:
            try:
                return await self.wait_realtime(project_id, timeout_minutes, on_progress)
            except Exception as exc:
                logger.info(
                    "Realtime wait for project %s failed (%s), falling back to HTTP polling",
                    project_id, exc,
                )
                if self.on_fallback is not None:
                    await maybe_await(self.on_fallback(exc))
        return await self.poll_http(project_id, timeout_minutes, on_progress)

    async def wait_realtime(
        self,
        project_id: str,
        timeout_minutes: float,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        channel = self._channel_factory(self._http, self.socket_url)
        try:
            await channel.connect()

            # The project may have finished before the channel was up.
            status = await self._projects.get_status(project_id)
            if is_terminal_status(_status_of(status)):
                if on_progress is not None:
                    await maybe_await(on_progress(_progress_update(project_id, status)))
                return status

            return await channel.wait_for_completion(
                project_id, int(timeout_minutes * 60 * 1000), on_progress
            )
        finally:
            await channel.disconnect()

    async def poll_http(
        self,
        project_id: str,
        timeout_minutes: float,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        # Fresh deadline: time spent in the realtime stage is not deducted.
        deadline = time.monotonic() + timeout_minutes * 60
        last_status: str | None = None

        while time.monotonic() < deadline:
            status = await self._projects.get_status(project_id)
            normalized = normalize_status(_status_of(status))

            if normalized != last_status:
                last_status = normalized
                if on_progress is not None:
                    await maybe_await(on_progress(_progress_update(project_id, status)))

            if normalized in TERMINAL_STATUSES:
                return status

            interval = interval_for_status(normalized)
            if interval > 0:
                await self.wait(interval)

        raise StudioApiError(
            f"Polling timed out after {timeout_minutes:g} minutes",
            code="timeout",
            status=408,
        )
