"""Single-use guard for payment credentials and settled transactions."""

from __future__ import annotations

import hashlib
import logging
import threading
import time

logger = logging.getLogger(__name__)

# Long enough to outlive any credential the facilitator would still accept.
DEFAULT_TTL_SECONDS = 24 * 60 * 60


def fingerprint(value: str) -> str:
    """Short stable digest of a credential, safe for logs and keys."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


class ReplayGuard:
    """Thread-safe in-memory store of consumed payment keys.

    A verified receipt authorizes exactly one inference call, so both the
    credential fingerprint and the settled transaction id are recorded
    once and rejected thereafter.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> None:
        self._ttl = ttl_seconds
        self._seen: dict[str, float] = {}  # key -> expiry timestamp
        self._lock = threading.Lock()

    def seen(self, key: str) -> bool:
        self._cleanup()
        with self._lock:
            return key in self._seen

    def check_and_record(self, key: str) -> bool:
        """Record a key. Returns True if new, False if already seen (replay)."""
        self._cleanup()
        with self._lock:
            if key in self._seen:
                logger.warning("Replay rejected for key %s.", key)
                return False
            self._seen[key] = time.time() + self._ttl
            return True

    def _cleanup(self) -> None:
        """Remove expired keys."""
        now = time.time()
        with self._lock:
            self._seen = {k: e for k, e in self._seen.items() if e > now}

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
