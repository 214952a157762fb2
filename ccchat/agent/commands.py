"""In-band administrative commands.

Commands are answered immediately and never reach the backend:

    /reset            start a fresh conversation
    /status           uptime, message count, sessions, total cost
    /model <name>     switch the backend model for this sender
    /pending          (owner) list senders waiting for approval
    /approve <id>     (owner) allow a pending sender
    /help             list commands

Only single-line prompts are treated as commands, so a debounce-merged burst
that happens to start with "/model" is sent to the backend as normal text.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from ccchat.observatory.metrics import format_uptime

if TYPE_CHECKING:
    from ccchat.agent.security import SenderRegistry
    from ccchat.observatory.metrics import Metrics
    from ccchat.session.manager import SessionManager


HELP_TEXT = (
    "Commands:\n"
    "/reset - start a fresh conversation\n"
    "/status - show relay status\n"
    "/model <name> - switch model (e.g. opus, sonnet, haiku)\n"
    "/help - this message"
)
OWNER_HELP_TEXT = "\n/pending - list senders awaiting approval\n/approve <id> - allow a pending sender"


class CommandHandler:
    """Parses and executes in-band commands."""

    def __init__(
        self,
        sessions: "SessionManager",
        metrics: "Metrics",
        senders: "SenderRegistry",
    ) -> None:
        self.sessions = sessions
        self.metrics = metrics
        self.senders = senders

    def handle(self, sender: str, text: str) -> str | None:
        """Run a command. Returns the reply, or None if ``text`` is not a command."""
        text = text.strip()
        if not text.startswith("/") or "\n" in text:
            return None

        name, _, arg = text.partition(" ")
        arg = arg.strip()

        if name == "/reset" and not arg:
            self.sessions.reset(sender)
            return "Session reset. Next message starts a fresh conversation."
        if name == "/status" and not arg:
            return self._status()
        if name == "/model":
            if not arg or " " in arg:
                return "Usage: /model <name>"
            self.sessions.switch_model(sender, arg)
            return f"Model switched to: {arg}"
        if name == "/help" and not arg:
            return HELP_TEXT + (OWNER_HELP_TEXT if self.senders.is_owner(sender) else "")
        if name in ("/pending", "/approve"):
            if not self.senders.is_owner(sender):
                return "Not authorized."
            return self._pending() if name == "/pending" else self._approve(arg)
        return None

    def _status(self) -> str:
        return (
            "ccchat status\n"
            f"Uptime: {format_uptime(self.metrics.uptime_seconds)}\n"
            f"Messages: {self.metrics.message_count}\n"
            f"Active sessions: {len(self.sessions)}\n"
            f"Total cost: ${self.metrics.total_cost_usd:.4f}"
        )

    def _pending(self) -> str:
        pending = self.senders.list_pending()
        if not pending:
            return "No pending senders."
        lines = [f"#{p.short_id} {p.name} ({p.sender_id}), {p.message_count} msg" for p in pending]
        return "Pending senders:\n" + "\n".join(lines)

    def _approve(self, arg: str) -> str:
        try:
            short_id = int(arg.lstrip("#"))
        except ValueError:
            return "Usage: /approve <id>"
        entry = self.senders.approve(short_id)
        if entry is None:
            return f"No pending sender #{short_id}."
        return f"Approved {entry.name} ({entry.sender_id})."
