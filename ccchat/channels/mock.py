"""Mock channel for tests and local experiments.

Captures outbound text and typing events instead of talking to a real
transport. ``inject_message`` runs the same handler the real channel
would call.

Usage:
    mock = MockChannel()
    dispatcher = Dispatcher(config, mock, provider)
    await mock.inject_message("hello", sender_id="+15550001")
    assert mock.sent_to("+15550001") == ["..."]
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path

from ccchat.bus.events import Attachment, InboundMessage
from ccchat.channels.base import BaseChannel, InboundHandler
from ccchat.errors import TransportError


@dataclass
class SentMessage:
    recipient: str
    text: str
    sent_at: float = field(default_factory=time.monotonic)


class MockChannel(BaseChannel):
    """Programmatic channel that records everything sent through it."""

    name = "mock"

    def __init__(self, handler: InboundHandler | None = None, attachment_dir: Path | None = None):
        super().__init__(None, handler)
        self.sent: list[SentMessage] = []
        self.typing_events: list[tuple[str, bool]] = []
        self.attachment_dir = attachment_dir
        self.fail_sends = False
        self.fail_typing = False
        self._sent_event = asyncio.Event()

    async def start(self) -> None:
        self._running = True

    async def stop(self) -> None:
        self._running = False

    async def send_text(self, recipient: str, text: str) -> None:
        if self.fail_sends:
            raise TransportError("mock send failure")
        self.sent.append(SentMessage(recipient, text))
        self._sent_event.set()

    async def set_typing(self, recipient: str, typing: bool) -> None:
        if self.fail_typing:
            raise TransportError("mock typing failure")
        self.typing_events.append((recipient, typing))

    async def fetch_attachment(self, attachment: Attachment) -> Path:
        if self.attachment_dir is None:
            raise TransportError("mock has no attachment dir")
        path = self.attachment_dir / (attachment.filename or attachment.id)
        path.write_bytes(b"mock")
        return path

    # ── Injection / capture ───────────────────────────────────

    async def inject_message(
        self,
        content: str,
        sender_id: str,
        *,
        sender_name: str = "",
        attachments: list[Attachment] | None = None,
    ) -> None:
        """Deliver a message to the handler, as the receive loop would."""
        if self.handler is None:
            raise RuntimeError("MockChannel has no handler")
        await self.handler(InboundMessage(
            sender_id=sender_id,
            content=content,
            sender_name=sender_name,
            attachments=attachments or [],
        ))

    async def wait_for_send(self, count: int = 1, timeout: float = 5.0) -> bool:
        """Wait until at least ``count`` messages have been sent."""
        async def _wait() -> None:
            while len(self.sent) < count:
                self._sent_event.clear()
                await self._sent_event.wait()

        try:
            await asyncio.wait_for(_wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def sent_to(self, recipient: str) -> list[str]:
        return [m.text for m in self.sent if m.recipient == recipient]
