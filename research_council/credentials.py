"""Round-robin credential pool."""

import logging
import os
import re
import threading
from collections.abc import Iterable

from research_council.errors import NoCredentialsError

logger = logging.getLogger(__name__)

_SPLIT_RE = re.compile(r"[,\n]")


def mask_key(key: str) -> str:
    """Return a log-safe form of a credential: its last 4 characters."""
    return f"...{key[-4:]}" if key else "<empty>"


class CredentialPool:
    """Ordered API keys with a wrapping rotation cursor.

    next() is safe to call from concurrent logical requests; the cursor
    advance happens under a lock.
    """

    def __init__(self, keys: Iterable[str]) -> None:
        seen: dict[str, None] = {}
        for key in keys:
            key = key.strip()
            if key:
                seen.setdefault(key, None)
        self._keys: tuple[str, ...] = tuple(seen)
        self._cursor = 0
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls, env_names: Iterable[str]) -> "CredentialPool":
        """Build a pool from environment variables holding one or many keys."""
        keys: list[str] = []
        for name in env_names:
            raw = os.environ.get(name, "")
            keys.extend(part for part in _SPLIT_RE.split(raw) if part.strip())
        pool = cls(keys)
        logger.info("Credential pool loaded with %d key(s)", pool.size())
        return pool

    def next(self) -> str:
        with self._lock:
            if not self._keys:
                raise NoCredentialsError()
            key = self._keys[self._cursor]
            self._cursor = (self._cursor + 1) % len(self._keys)
            return key

    def size(self) -> int:
        return len(self._keys)

    def keys(self) -> tuple[str, ...]:
        return self._keys

    def __len__(self) -> int:
        return len(self._keys)
