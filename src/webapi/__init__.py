"""
HTTP interface for channel permissions (FastAPI).

Session handling is done upstream; the authenticated Telegram user id
arrives in the ``X-Telegram-User-Id`` header.
"""
