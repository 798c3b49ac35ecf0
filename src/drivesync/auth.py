"""SSH-key challenge-response authentication.

    UNAUTHENTICATED --create_challenge--> CHALLENGE_ISSUED --verify_challenge--> TOKEN_ISSUED

A challenge lives challenge_expiry seconds and is consumed by the first lookup
that matches it. A token lives token_expiry seconds; there is no revoke, only
the periodic expiry sweep.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from drivesync import keys
from drivesync.errors import AuthError
from drivesync.models import Challenge, Token, now_s

if TYPE_CHECKING:
    from drivesync.config import AuthConfig
    from drivesync.metadata import MetadataStore

logger = logging.getLogger("drivesync.auth")


def _short(public_key: str) -> str:
    return public_key[:30] + "..."


class AuthManager:
    """Authorized-key set plus the challenge/token protocol on top of the store."""

    def __init__(self, store: MetadataStore, config: AuthConfig) -> None:
        self._store = store
        self._config = config
        self._keys_lock = threading.Lock()
        self._authorized: frozenset[str] = frozenset()

    # ------------------------------------------------------------------
    # Authorized keys
    # ------------------------------------------------------------------

    def load_authorized_keys(self) -> int:
        """Replace the in-memory key set from the authorized_keys file.

        On failure the previous set stays in place and the error propagates.
        Returns the number of keys loaded.
        """
        loaded = keys.load_authorized_keys(self._config.authorized_keys)
        with self._keys_lock:
            self._authorized = loaded
        logger.info("loaded %d authorized keys", len(loaded))
        return len(loaded)

    reload_authorized_keys = load_authorized_keys

    def is_authorized(self, public_key: str) -> bool:
        normalized = keys.normalize_key(public_key)
        if normalized is None:
            return False
        with self._keys_lock:
            return normalized in self._authorized

    @property
    def key_count(self) -> int:
        with self._keys_lock:
            return len(self._authorized)

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    def create_challenge(self, public_key: str) -> Challenge:
        if not self.is_authorized(public_key):
            raise AuthError("not authorized")
        keys.parse_public_key(public_key)
        challenge = keys.generate_challenge()
        expires_at = now_s() + self._config.challenge_expiry
        self._store.store_challenge(challenge, public_key, expires_at)
        logger.debug("created challenge for key: %s", _short(public_key))
        return Challenge(challenge=challenge, public_key=public_key, expires_at=expires_at)

    def verify_challenge(self, challenge: str, public_key: str, signature: str) -> Token:
        """Exchange a signed challenge for a bearer token.

        The challenge is consumed before the signature is checked, so a failed
        attempt burns it and the client must request a new one.
        """
        if not self._store.validate_challenge(challenge, public_key):
            raise AuthError("invalid or expired challenge")
        key = keys.parse_public_key(public_key)
        if not keys.verify_signature(key, challenge, signature):
            logger.warning("signature verification failed for key: %s", _short(public_key))
            raise AuthError("signature verification failed")
        token = keys.generate_token()
        expires_at = now_s() + self._config.token_expiry
        self._store.store_token(token, expires_at)
        logger.info("authenticated key: %s", _short(public_key))
        return Token(token=token, expires_at=expires_at)

    def validate_token(self, token: str) -> bool:
        return self._store.validate_token(token)

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def cleanup_expired(self) -> int:
        """Delete expired tokens. Challenges have their own sweep."""
        removed = self._store.cleanup_expired_tokens()
        if removed:
            logger.info("removed %d expired tokens", removed)
        return removed

    def cleanup_expired_challenges(self) -> int:
        removed = self._store.cleanup_expired_challenges()
        if removed:
            logger.info("removed %d expired challenges", removed)
        return removed
