"""Base channel interface for messaging transports."""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable

from ccchat.bus.events import Attachment, InboundMessage

InboundHandler = Callable[[InboundMessage], Awaitable[None]]


class BaseChannel(ABC):
    """
    Abstract base class for messaging transports.

    A channel streams inbound messages to ``handler`` and exposes the
    outbound operations the dispatcher needs. Outbound failures raise
    ``TransportError``.
    """

    name: str = "base"

    def __init__(self, config: Any, handler: InboundHandler | None = None):
        self.config = config
        self.handler = handler
        self._running = False

    def set_handler(self, handler: InboundHandler) -> None:
        self.handler = handler

    @abstractmethod
    async def start(self) -> None:
        """Connect and stream inbound messages until stopped."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the channel and release resources."""
        pass

    @abstractmethod
    async def send_text(self, recipient: str, text: str) -> None:
        """Send one message (already within the transport's length limit)."""
        pass

    @abstractmethod
    async def set_typing(self, recipient: str, typing: bool) -> None:
        """Show or clear the composing indicator."""
        pass

    @abstractmethod
    async def fetch_attachment(self, attachment: Attachment) -> Path:
        """Download an attachment and return its local path."""
        pass

    async def check_health(self) -> bool:
        """Return True if the transport is reachable."""
        return True

    @property
    def is_running(self) -> bool:
        return self._running
