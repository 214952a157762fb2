"""Exception types shared across the relay."""


class CCChatError(Exception):
    """Base class for relay errors."""


class TransportError(CCChatError):
    """The messaging transport rejected or failed a request."""


class BackendError(CCChatError):
    """The assistant backend failed to produce a usable reply."""
