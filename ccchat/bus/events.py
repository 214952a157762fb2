"""Event types flowing from the transport into the dispatcher."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class Attachment:
    """Descriptor of a file attached to an inbound message (not yet downloaded)."""

    id: str
    content_type: str = ""
    filename: str | None = None
    size: int | None = None


@dataclass
class InboundMessage:
    """Message received from the messaging transport."""

    sender_id: str  # Stable correspondent id (phone number or uuid)
    content: str
    sender_name: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
    attachments: list[Attachment] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.sender_name or self.sender_id
