"""
Realtime channel for the Studio runtime.

Opens a Socket.IO connection authenticated with a short-lived token from
the REST API and turns pushed render events into a job-completion result.
Incoming events are fanned out through :class:`EventManager`, which keeps
listener bookkeeping independent of the socket library.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
from collections import defaultdict
from typing import Any, Awaitable, Callable, Coroutine

import socketio
from socketio.exceptions import ConnectionError as SocketConnectionError

from studio_runtime.client import _HttpClient, _ProjectManager
from studio_runtime.errors import RealtimeChannelError
from studio_runtime.types import ProgressUpdate

logger = logging.getLogger(__name__)

# Type alias for event handlers
EventHandler = Callable[[Any], Coroutine[Any, Any, None] | None]
ProgressCallback = Callable[[ProgressUpdate], Awaitable[None] | None]

TERMINAL_STATUSES = frozenset({"completed", "failed"})

VERIFICATION_TIMEOUT_S = 10.0
DEFAULT_SOCKET_PATH = "/socket.io/"

# Server events forwarded into the EventManager.
FORWARDED_EVENTS = (
    "verification_success",
    "verification_error",
    "connect_error",
    "video_render_progress",
    "video_render_end",
    "video_render_error",
    "video_project_core_updated",
    "disconnect",
)


async def maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class EventManager:
    """Listener registry for realtime events."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for a specific event type."""
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler | None = None) -> None:
        """Remove a handler (or all handlers) for an event type."""
        if handler is None:
            self._handlers.pop(event_type, None)
        else:
            handlers = self._handlers.get(event_type, [])
            self._handlers[event_type] = [h for h in handlers if h is not handler]

    def clear(self) -> None:
        self._handlers.clear()

    def count(self, event_type: str | None = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(h) for h in self._handlers.values())

    async def dispatch(self, event_type: str, data: Any) -> None:
        """Dispatch an event to all matching handlers."""
        for handler in list(self._handlers.get(event_type, [])):
            try:
                await maybe_await(handler(data))
            except Exception:
                logger.exception("Error in event handler for %s", event_type)


def _default_client_factory() -> socketio.AsyncClient:
    # The poller decides whether to fall back, so never reconnect on our own.
    return socketio.AsyncClient(reconnection=False)


def _event_project_id(data: Any) -> Any:
    return data.get("projectId") if isinstance(data, dict) else None


class RealtimeChannel:
    """Push-based job progress over Socket.IO."""

    def __init__(
        self,
        http: _HttpClient,
        socket_url: str | None = None,
        client_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._http = http
        self._projects = _ProjectManager(http)
        self.socket_url = socket_url or os.environ.get("WEB2LABS_SOCKET_URL") or http.base_url
        self._client_factory = client_factory or _default_client_factory
        self._sio: Any | None = None
        self.events = EventManager()

    @property
    def is_connected(self) -> bool:
        return self._sio is not None

    def _forwarder(self, event_type: str) -> Callable[..., Awaitable[None]]:
        async def forward(*args: Any) -> None:
            await self.events.dispatch(event_type, args[0] if args else None)

        return forward

    async def connect(self) -> None:
        """Obtain a socket token, open the channel and wait for verification.

        Raises:
            RealtimeChannelError: no token, connection error, verification
                error, or no verification within 10 seconds.
        """
        token_response = await self._http.get_socket_token()
        token = token_response.get("token") if isinstance(token_response, dict) else None
        if not token:
            raise RealtimeChannelError("Failed to obtain socket token", code="socket_token_missing")

        headers: dict[str, str] = {}
        basic = self._http.auth.basic_authorization
        if basic:
            headers["Authorization"] = basic

        sio = self._client_factory()
        for event_type in FORWARDED_EVENTS:
            sio.on(event_type, self._forwarder(event_type))
        self._sio = sio

        verified: asyncio.Future[RealtimeChannelError | None] = asyncio.get_running_loop().create_future()

        def settle(error: RealtimeChannelError | None) -> None:
            if not verified.done():
                verified.set_result(error)

        def on_success(_data: Any) -> None:
            settle(None)

        def on_verification_error(data: Any) -> None:
            settle(RealtimeChannelError(
                f"Socket verification failed: {_describe(data)}",
                code="socket_verification_failed",
            ))

        def on_connect_error(data: Any) -> None:
            settle(RealtimeChannelError(
                f"Socket connection error: {_describe(data)}",
                code="socket_connect_error",
            ))

        handshake = (
            ("verification_success", on_success),
            ("verification_error", on_verification_error),
            ("connect_error", on_connect_error),
        )
        for event_type, handler in handshake:
            self.events.subscribe(event_type, handler)

        async def open_and_verify() -> RealtimeChannelError | None:
            await sio.connect(
                self.socket_url,
                headers=headers,
                auth={"token": token},
                transports=["websocket", "polling"],
                socketio_path=DEFAULT_SOCKET_PATH,
            )
            return await verified

        try:
            error = await asyncio.wait_for(open_and_verify(), VERIFICATION_TIMEOUT_S)
        except asyncio.TimeoutError:
            await self.disconnect()
            raise RealtimeChannelError(
                "Socket verification timed out", code="socket_verification_timeout"
            ) from None
        except SocketConnectionError as exc:
            await self.disconnect()
            raise RealtimeChannelError(
                f"Socket connection error: {exc}", code="socket_connect_error"
            ) from exc
        finally:
            for event_type, handler in handshake:
                self.events.unsubscribe(event_type, handler)

        if error is not None:
            await self.disconnect()
            raise error
        logger.debug("Realtime channel verified at %s", self.socket_url)

    async def wait_for_completion(
        self,
        project_id: str,
        timeout_ms: int,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        """Wait for a terminal event for ``project_id``.

        Terminal events are never trusted as the final state: the status is
        re-fetched over HTTP before returning.

        Raises:
            RealtimeChannelError: not connected, disconnected mid-wait, or
                ``timeout_ms`` elapsed without a terminal event.
        """
        if self._sio is None:
            raise RealtimeChannelError("Socket not connected", code="socket_not_connected")

        outcome: asyncio.Future[RealtimeChannelError | None] = asyncio.get_running_loop().create_future()

        def finish(error: RealtimeChannelError | None = None) -> None:
            if not outcome.done():
                outcome.set_result(error)

        async def report(status: Any, progress: Any) -> None:
            if on_progress is not None:
                await maybe_await(on_progress(
                    ProgressUpdate(project_id=project_id, status=status, progress=progress)
                ))

        async def on_render_progress(data: Any) -> None:
            if outcome.done() or _event_project_id(data) != project_id:
                return
            await report("rendering", data.get("progress"))

        def on_render_finished(data: Any) -> None:
            if outcome.done() or _event_project_id(data) != project_id:
                return
            finish()

        async def on_core_updated(data: Any) -> None:
            if outcome.done() or _event_project_id(data) != project_id:
                return
            status = str(data.get("status") or "").lower()
            if status in TERMINAL_STATUSES:
                finish()
            else:
                await report(data.get("status"), data.get("progress"))

        def on_disconnect(_data: Any) -> None:
            finish(RealtimeChannelError(
                "Socket disconnected during polling", code="socket_disconnected"
            ))

        listeners: list[tuple[str, EventHandler]] = [
            ("video_render_progress", on_render_progress),
            ("video_render_end", on_render_finished),
            ("video_render_error", on_render_finished),
            ("video_project_core_updated", on_core_updated),
            ("disconnect", on_disconnect),
        ]
        for event_type, handler in listeners:
            self.events.subscribe(event_type, handler)

        try:
            error = await asyncio.wait_for(outcome, timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise RealtimeChannelError(
                f"Socket polling timed out after {round(timeout_ms / 60000)} minutes",
                code="socket_timeout",
            ) from None
        finally:
            for event_type, handler in listeners:
                self.events.unsubscribe(event_type, handler)

        if error is not None:
            raise error
        return await self._projects.get_status(project_id)

    async def disconnect(self) -> None:
        """Close the channel. Safe to call repeatedly or before connecting."""
        sio, self._sio = self._sio, None
        self.events.clear()
        if sio is None:
            return
        try:
            await sio.disconnect()
        except Exception:
            logger.debug("Ignoring error while closing realtime channel", exc_info=True)


def _describe(data: Any) -> str:
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return str(data)
