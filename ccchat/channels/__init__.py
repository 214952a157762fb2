"""Messaging transports."""

from ccchat.channels.base import BaseChannel
from ccchat.channels.signal import SignalChannel

__all__ = ["BaseChannel", "SignalChannel"]
