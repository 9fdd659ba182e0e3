"""
Error taxonomy for Bot API calls and the retryability classifier.

- ``PlatformNetworkError``: DNS, connection refused, read timeouts.  Always
  retryable.
- ``PlatformError`` with code 429: flood control.  Retryable, carries the
  ``retry_after`` hint when Telegram sends one.
- ``PlatformError`` with a 5xx (or 408) code: retryable.
- Any other ``PlatformError``: client error, surfaced immediately.
- ``DeadlineExceeded``: the caller's deadline ran out.  Raised outside the
  retry loop, so it is never retried.
"""

from __future__ import annotations

from typing import Any, Dict, FrozenSet, Optional

import httpx

RETRYABLE_CODES: FrozenSet[int] = frozenset({408, 429, 500, 502, 503, 504})


class PlatformError(Exception):
    """An ``ok=false`` response (or a failure standing in for one).

    ``error_code`` and ``description`` are preserved verbatim from the
    Bot API envelope.
    """

    def __init__(
        self,
        error_code: Optional[int],
        description: str,
        retry_after: Optional[float] = None,
        method: Optional[str] = None,
    ) -> None:
        self.error_code = error_code
        self.description = description
        self.retry_after = retry_after
        self.method = method
        super().__init__(self._format())

    def _format(self) -> str:
        prefix = f"[{self.method}] " if self.method else ""
        if self.error_code is None:
            return f"{prefix}{self.description}"
        return f"{prefix}{self.error_code}: {self.description}"

    @classmethod
    def from_envelope(cls, envelope: Dict[str, Any], method: str) -> "PlatformError":
        """Build an error from a ``{ok: false, error_code, description}`` body."""
        parameters = envelope.get("parameters") or {}
        retry_after = parameters.get("retry_after")
        return cls(
            envelope.get("error_code"),
            envelope.get("description") or "Unknown Bot API error",
            retry_after=float(retry_after) if retry_after is not None else None,
            method=method,
        )


class PlatformNetworkError(PlatformError):
    """Transport-level failure: the request never produced a response."""

    def __init__(self, description: str, method: Optional[str] = None) -> None:
        super().__init__(None, description, method=method)


class DeadlineExceeded(PlatformError):
    """The caller-supplied deadline expired before the call completed."""

    def __init__(self, timeout: float, method: Optional[str] = None) -> None:
        self.timeout = timeout
        super().__init__(408, f"Deadline of {timeout:g}s exceeded", method=method)


def is_retryable(exc: BaseException) -> bool:
    """Return ``True`` if *exc* is worth another attempt."""
    if isinstance(exc, DeadlineExceeded):
        return False
    if isinstance(exc, PlatformNetworkError):
        return True
    if isinstance(exc, PlatformError):
        return exc.error_code in RETRYABLE_CODES
    return isinstance(exc, httpx.TransportError)
