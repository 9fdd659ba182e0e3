"""
PlatformAPIClient: typed async client for the Telegram Bot API.

Request:  ``POST {base_url}/bot{token}/{method}`` with a JSON body.
Response: ``{ok, result?, error_code?, description?, parameters?}``.

Every call goes through the shared ``RateLimiter`` and then the
``RetryExecutor``; an optional per-call ``timeout`` bounds the sum of
rate-limit waits, retries and network time.  ``ok=false`` envelopes and
transport failures surface as ``PlatformError`` subclasses.

Usage::

    async with PlatformAPIClient(token, limiter, retry) as client:
        admins = await client.get_chat_administrators(chat_id, timeout=30)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

import httpx

from botapi.errors import DeadlineExceeded, PlatformError, PlatformNetworkError
from botapi.ratelimit import RateLimiter
from botapi.retry import RetryExecutor
from botapi.types import BotUser, Chat, ChatMember, Message, WebhookInfo

logger = logging.getLogger("botapi.client")

ChatId = Union[int, str]

DEFAULT_BASE_URL = "https://api.telegram.org"

T = TypeVar("T")


def _parse(method: str, factory: Callable[[Any], T], payload: Any) -> T:
    """Build a typed result; a payload missing fields becomes a ``PlatformError``."""
    try:
        return factory(payload)
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning("Malformed Bot API result [%s]: %r", method, exc)
        raise PlatformError(None, "Malformed Bot API response", method=method) from exc


class PlatformAPIClient:
    """Bot API client built on a shared limiter and a retry policy.

    Args:
        token: Bot token (from the keychain, never from config files).
        limiter: Process-wide rate limiter; a default one is created if omitted.
        retry: Retry policy; defaults to 3 attempts, 1s base, 10s cap, x2.
        base_url: API root, overridable for a local Bot API server.
        request_timeout: Per-request HTTP timeout in seconds.
        transport: Optional ``httpx`` transport (tests inject a mock).
    """

    def __init__(
        self,
        token: str,
        limiter: Optional[RateLimiter] = None,
        retry: Optional[RetryExecutor] = None,
        base_url: str = DEFAULT_BASE_URL,
        request_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not token:
            raise ValueError("A bot token is required")
        self.limiter = limiter or RateLimiter()
        self.retry = retry or RetryExecutor()
        self._http = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/bot{token}/",
            timeout=request_timeout,
            transport=transport,
        )

    # ----- lifecycle ------------------------------------------------------

    async def __aenter__(self) -> "PlatformAPIClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._http.aclose()
        logger.info("Bot API client closed.")

    # ----- transport ------------------------------------------------------

    async def _request(self, method: str, params: Optional[Dict[str, Any]]) -> Any:
        payload = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            response = await self._http.post(method, json=payload)
        except httpx.TransportError as exc:
            logger.warning("Network error calling Bot API [%s]: %r", method, exc)
            raise PlatformNetworkError(
                f"Network error: {exc.__class__.__name__}", method=method
            ) from exc

        try:
            envelope = response.json()
        except ValueError:
            raise PlatformError(
                response.status_code,
                response.reason_phrase or "Malformed Bot API response",
                method=method,
            ) from None

        if not isinstance(envelope, dict):
            raise PlatformError(response.status_code, "Malformed Bot API response", method=method)

        if not envelope.get("ok"):
            envelope.setdefault("error_code", response.status_code)
            error = PlatformError.from_envelope(envelope, method)
            logger.warning(
                "Bot API error [%s]: error_code=%s description=%s",
                method,
                error.error_code,
                error.description,
            )
            raise error

        return envelope.get("result")

    async def _call(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        async def attempt() -> Any:
            await self.limiter.acquire()
            return await self._request(method, params)

        if timeout is None:
            return await self.retry.execute(attempt)
        try:
            return await asyncio.wait_for(self.retry.execute(attempt), timeout)
        except asyncio.TimeoutError:
            logger.warning("Bot API call [%s] exceeded deadline of %ss", method, timeout)
            raise DeadlineExceeded(timeout, method=method) from None

    # ----- identity & chats ----------------------------------------------

    async def get_me(self, timeout: Optional[float] = None) -> BotUser:
        return _parse("getMe", BotUser.from_dict, await self._call("getMe", timeout=timeout))

    async def get_chat(self, chat_id: ChatId, timeout: Optional[float] = None) -> Chat:
        result = await self._call("getChat", {"chat_id": chat_id}, timeout=timeout)
        return _parse("getChat", Chat.from_dict, result)

    async def get_chat_member(
        self, chat_id: ChatId, user_id: int, timeout: Optional[float] = None
    ) -> ChatMember:
        result = await self._call(
            "getChatMember", {"chat_id": chat_id, "user_id": user_id}, timeout=timeout
        )
        return _parse("getChatMember", ChatMember.from_dict, result)

    async def get_chat_administrators(
        self, chat_id: ChatId, timeout: Optional[float] = None
    ) -> List[ChatMember]:
        """Return the chat's creator and administrators, in Telegram's order.

        Entries with any other status (member, restricted, left, kicked)
        are discarded.
        """
        result = await self._call(
            "getChatAdministrators", {"chat_id": chat_id}, timeout=timeout
        )
        if not isinstance(result, list):
            raise PlatformError(None, "Malformed administrator list", method="getChatAdministrators")
        members = [_parse("getChatAdministrators", ChatMember.from_dict, item) for item in result]
        return [member for member in members if member.is_admin]

    async def get_chat_member_count(
        self, chat_id: ChatId, timeout: Optional[float] = None
    ) -> int:
        result = await self._call("getChatMemberCount", {"chat_id": chat_id}, timeout=timeout)
        return _parse("getChatMemberCount", int, result)

    # ----- messages -------------------------------------------------------

    async def send_message(
        self,
        chat_id: ChatId,
        text: str,
        timeout: Optional[float] = None,
        **options: Any,
    ) -> Message:
        """Send *text* to *chat_id*.

        ``options`` are passed through as Bot API parameters
        (``parse_mode``, ``disable_notification``, ``reply_markup`` ...).
        """
        params: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        params.update(options)
        result = await self._call("sendMessage", params, timeout=timeout)
        return _parse("sendMessage", Message.from_dict, result)

    # ----- webhooks -------------------------------------------------------

    async def set_webhook(
        self,
        url: str,
        secret_token: Optional[str] = None,
        timeout: Optional[float] = None,
        **options: Any,
    ) -> bool:
        params: Dict[str, Any] = {"url": url, "secret_token": secret_token}
        params.update(options)
        return bool(await self._call("setWebhook", params, timeout=timeout))

    async def get_webhook_info(self, timeout: Optional[float] = None) -> WebhookInfo:
        result = await self._call("getWebhookInfo", timeout=timeout)
        return _parse("getWebhookInfo", WebhookInfo.from_dict, result)

    async def delete_webhook(
        self, drop_pending_updates: bool = False, timeout: Optional[float] = None
    ) -> bool:
        params = {"drop_pending_updates": drop_pending_updates or None}
        return bool(await self._call("deleteWebhook", params, timeout=timeout))

    # ----- health ---------------------------------------------------------

    async def validate_token(self) -> bool:
        """Return ``True`` if ``getMe`` succeeds.  Never raises."""
        try:
            me = await self.get_me()
        except Exception:
            logger.exception("Bot token validation failed")
            return False
        logger.info("Bot token valid for @%s (id=%s)", me.username, me.id)
        return True


def create_client(
    config: Dict[str, Any],
    token: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> PlatformAPIClient:
    """Build a client from the ``[botapi]`` config section."""
    limiter = RateLimiter(
        requests_per_second=float(config.get("requests_per_second", 30)),
        burst_size=int(config.get("burst_size", 5)),
    )
    retry = RetryExecutor(
        max_attempts=int(config.get("max_attempts", 3)),
        base_delay=float(config.get("base_delay", 1.0)),
        max_delay=float(config.get("max_delay", 10.0)),
        backoff_multiplier=float(config.get("backoff_multiplier", 2.0)),
        jitter=float(config.get("jitter", 0.0)),
    )
    return PlatformAPIClient(
        token,
        limiter=limiter,
        retry=retry,
        base_url=config.get("base_url", DEFAULT_BASE_URL),
        request_timeout=float(config.get("request_timeout", 30.0)),
        transport=transport,
    )
