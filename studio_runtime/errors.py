"""
Error types for the Studio runtime.

Every failure that reaches a caller is a :class:`StudioApiError` carrying a
machine-readable ``code``, an HTTP-equivalent ``status`` and optional
structured ``details`` so an agent can decide whether to retry, ask the
user for confirmation, or point them at a purchase link.
"""

from __future__ import annotations

from typing import Any


class StudioApiError(Exception):
    """Base error for transport, realtime and spend-policy failures."""

    def __init__(
        self,
        message: str,
        code: str = "api_error",
        status: int = 500,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": True,
            "code": self.code,
            "status": self.status,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, status={self.status}, message={self.message!r})"


class SpendConfirmationRequired(StudioApiError):
    """The spend policy wants explicit user approval before credits are used."""

    def __init__(self, details: dict[str, Any]) -> None:
        super().__init__(
            "Confirmation required before spending credits. "
            "Re-run with confirm_spend: true after user approval.",
            code="spend_confirmation_required",
            status=409,
            details=details,
        )


class InsufficientCredits(StudioApiError):
    """The balance cannot cover the estimated cost."""

    def __init__(self, details: dict[str, Any]) -> None:
        super().__init__(
            "Insufficient credits for this action.",
            code="insufficient_credits_precheck",
            status=402,
            details=details,
        )


class RealtimeChannelError(StudioApiError):
    """Realtime channel failure. The poller recovers from these locally."""

    def __init__(self, message: str, code: str = "socket_error") -> None:
        super().__init__(message, code=code, status=503)
