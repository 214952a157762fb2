"""Echo detection to keep the relay from answering its own messages.

Some transports deliver our outgoing text back to us as an inbound event
(e.g. when the account messages itself). Every outbound text is hashed and
remembered; an inbound text with a known hash is dropped.

Matching is by exact text, so a human who repeats something the relay just
said is also dropped. That false positive is accepted: this is loop
prevention, not authentication.
"""

from __future__ import annotations

import time

from ccchat.utils.helpers import hash_message

_CLEANUP_INTERVAL = 30.0


class EchoGuard:
    """Remembers hashes of sent text.

    Args:
        ttl_seconds: How long a sent hash counts as ours. ``None`` keeps every
            hash for the life of the process.
    """

    def __init__(self, ttl_seconds: float | None = None) -> None:
        self._ttl = ttl_seconds
        self._sent: dict[str, float] = {}  # hash -> expires_at (inf when no TTL)
        self._next_cleanup_at = 0.0

    def record(self, text: str) -> None:
        """Mark ``text`` as sent by us."""
        now = time.monotonic()
        self._maybe_cleanup(now)
        expires = now + self._ttl if self._ttl is not None else float("inf")
        self._sent[hash_message(text)] = expires

    def is_echo(self, text: str) -> bool:
        """True if ``text`` matches something we sent (and has not expired)."""
        now = time.monotonic()
        self._maybe_cleanup(now)
        expires = self._sent.get(hash_message(text))
        return expires is not None and expires > now

    def _maybe_cleanup(self, now: float) -> None:
        if self._ttl is None or now < self._next_cleanup_at:
            return
        expired = [h for h, exp in self._sent.items() if exp <= now]
        for h in expired:
            self._sent.pop(h, None)
        self._next_cleanup_at = now + _CLEANUP_INTERVAL

    def clear(self) -> None:
        self._sent.clear()

    def __len__(self) -> int:
        return len(self._sent)
