"""Assistant backend providers."""

from ccchat.providers.base import BackendProvider, BackendResponse
from ccchat.providers.claude_cli import ClaudeCLIProvider

__all__ = ["BackendProvider", "BackendResponse", "ClaudeCLIProvider"]
