"""
Bot API package: a typed async client for the Telegram Bot API.

Every outbound call passes through a shared token-bucket ``RateLimiter``
and a ``RetryExecutor`` with exponential backoff.  Failed responses are
turned into ``PlatformError`` instances so callers never parse raw
transport payloads.
"""
