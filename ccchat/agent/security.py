"""Sender allow list and the queue of senders waiting for approval.

Messages from senders not on the allow list are dropped silently so the
relay never reveals itself to strangers. Each such sender is remembered
with a short numeric id so the account owner can approve them later with
``/approve <id>``. Pending senders are advisory only and never affect
dispatch for allowed senders.
"""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field
from typing import Iterable

from loguru import logger

# Oldest pending senders are forgotten beyond this many
MAX_PENDING = 100


@dataclass
class PendingSender:
    """A sender who wrote to us but is not on the allow list."""

    sender_id: str
    name: str
    short_id: int
    first_seen: float = field(default_factory=time.time)
    message_count: int = 1


class SenderRegistry:
    """Allow list plus pending senders.

    Args:
        allowed: Sender ids allowed to talk to the backend.
        owner: The relay's own account id. Only the owner may approve senders.
        max_pending: How many unapproved senders to remember. The oldest is
            forgotten first.
    """

    def __init__(self, allowed: Iterable[str], owner: str = "", max_pending: int = MAX_PENDING) -> None:
        self.owner = owner
        self.max_pending = max_pending
        self._allowed: set[str] = {a for a in allowed if a}
        self._pending: dict[str, PendingSender] = {}
        self._counter = itertools.count(1)

    def is_allowed(self, sender: str) -> bool:
        return bool(sender) and sender in self._allowed

    def is_owner(self, sender: str) -> bool:
        return bool(sender) and sender == self.owner

    @property
    def allowed_count(self) -> int:
        return len(self._allowed)

    def allow(self, sender: str) -> None:
        if sender:
            self._allowed.add(sender)
            self._pending.pop(sender, None)

    def note_pending(self, sender: str, name: str = "") -> PendingSender | None:
        """Remember a rejected sender. Returns the pending record (None for empty ids)."""
        if not sender:
            return None
        entry = self._pending.get(sender)
        if entry is not None:
            entry.message_count += 1
            if name:
                entry.name = name
            return entry
        entry = self._pending.setdefault(
            sender, PendingSender(sender_id=sender, name=name or sender, short_id=next(self._counter))
        )
        while len(self._pending) > self.max_pending:
            oldest = next(iter(self._pending))
            dropped = self._pending.pop(oldest)
            logger.debug(f"Forgetting pending sender #{dropped.short_id} ({oldest})")
        logger.info(f"New pending sender #{entry.short_id}: {entry.name} ({sender})")
        return entry

    def approve(self, short_id: int) -> PendingSender | None:
        """Move pending sender ``short_id`` onto the allow list."""
        for sender, entry in list(self._pending.items()):
            if entry.short_id == short_id:
                self.allow(sender)
                logger.info(f"Approved sender #{short_id}: {entry.name} ({sender})")
                return entry
        return None

    def list_pending(self) -> list[PendingSender]:
        return sorted(self._pending.values(), key=lambda p: p.short_id)
