"""
Secrets and keychain integration: retrieves credentials (the Bot API
token, the database password) from the system keychain.

Credentials are **never** stored in config files or source code.  They
live in the system keychain (``secret-tool`` / ``libsecret``) and are
retrieved at runtime, with an environment-variable fallback for
development machines.
"""

from __future__ import annotations

import logging
import os
import subprocess

logger = logging.getLogger("shared.secrets")

_SERVICE = "adchannels"


def _env_key(key_name: str) -> str:
    return f"ADCHANNELS_{key_name.upper().replace('-', '_')}"


def get_secret(key_name: str, service: str = _SERVICE) -> str:
    """Retrieve a secret from the system keychain.

    Uses ``secret-tool`` (libsecret) under the hood::

        secret-tool lookup service adchannels key <key_name>

    Falls back to environment variables (``ADCHANNELS_<KEY_NAME>``) if
    ``secret-tool`` is not available or has no entry.

    Args:
        key_name: The key identifier (e.g. ``"bot_token"``).
        service: The service label in the keychain.

    Returns:
        The secret value as a string.

    Raises:
        RuntimeError: If the secret is not found in the keychain or env.
    """
    try:
        result = subprocess.run(
            ["secret-tool", "lookup", "service", service, "key", key_name],
            capture_output=True,
            text=True,
            timeout=10,
        )
        secret = result.stdout.strip()
        if secret:
            return secret
    except FileNotFoundError:
        logger.warning(
            "secret-tool not found; falling back to environment variable"
        )
    except subprocess.TimeoutExpired:
        logger.warning("secret-tool timed out; falling back to environment variable")
    except Exception:
        logger.warning(
            "secret-tool failed; falling back to environment variable",
            exc_info=True,
        )

    env_key = _env_key(key_name)
    env_val = os.environ.get(env_key)
    if env_val:
        logger.warning("Using env var fallback for secret '%s' (%s)", key_name, env_key)
        return env_val

    raise RuntimeError(
        f"Secret '{key_name}' not found in keychain (service={service}) "
        f"or environment variable {env_key}"
    )
