"""Base interface for the assistant backend."""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class BackendResponse:
    """Reply produced by one backend invocation."""

    content: str
    cost_usd: float | None = None
    duration_ms: int | None = None


class BackendProvider(ABC):
    """
    Abstract assistant backend.

    Implementations turn a prompt into a reply within the conversation named
    by ``session_id``. Failures are raised as ``BackendError``.
    """

    @abstractmethod
    async def invoke(
        self,
        prompt: str,
        session_id: str,
        model: str,
        budget: float,
        *,
        resume: bool = False,
    ) -> BackendResponse:
        """
        Send a prompt to the backend.

        Args:
            prompt: Merged user text.
            session_id: Opaque conversation id.
            model: Model selector.
            budget: Max spend for this call in USD.
            resume: True when the backend has already seen ``session_id``.

        Returns:
            BackendResponse with the reply text and optional cost.
        """
        ...
