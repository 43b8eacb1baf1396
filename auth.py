"""Session token issuing and comparison.

One token per server instance. Never persisted or sent from here; the
lock file and the handshake are the only consumers.
"""

from __future__ import annotations

import hmac
import logging
import secrets

log = logging.getLogger(__name__)

# 32 random bytes -> 43 URL-safe characters
TOKEN_BYTES = 32
MIN_TOKEN_BYTES = 16


class TokenGenerationError(Exception):
    """Raised when no token can be produced (entropy source unavailable)."""
    pass


def issue_token(nbytes: int = TOKEN_BYTES) -> str:
    """Return a fresh URL-safe auth token built from ``nbytes`` random bytes."""
    if nbytes < MIN_TOKEN_BYTES:
        raise TokenGenerationError(
            f"Refusing to issue a token from {nbytes} bytes (minimum {MIN_TOKEN_BYTES})"
        )
    try:
        token = secrets.token_urlsafe(nbytes)
    except (NotImplementedError, OSError) as e:
        raise TokenGenerationError(f"Entropy source unavailable: {e}") from e
    log.debug("Issued auth token (%d chars)", len(token))
    return token


def tokens_match(presented: str | None, expected: str | None) -> bool:
    """Constant-time comparison. Empty, missing or non-string values never match."""
    if not isinstance(presented, str) or not isinstance(expected, str):
        return False
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))
