"""Dispatcher: the core message orchestration engine.

Inbound path for one message:
    1. Drop senders not on the allow list (silently, remembered as pending)
    2. Drop echoes of our own outbound text (silently)
    3. Take the sender's place in the intake queue
    4. Download attachments and append their local paths to the text
    5. Debounce: fragments from one sender merge into one prompt

Dispatch path for one (possibly merged) prompt:
    6. Rate limit per sender (visible notice when exhausted)
    7. In-band commands (/reset, /status, /model ...) answered directly
    8. Hold the sender's lock; show typing
    9. Invoke the backend with the session id and model
    10. Clear typing, account cost, flag likely truncation
    11. Deliver the reply in transport-sized parts

Messages from one sender reach the debounce buffer in arrival order: the
intake queue is joined before the first await, so a slow attachment download
holds back the plain-text message that follows it. Per-sender backend calls
never overlap: the sender's lock is held for the whole round-trip and
asyncio.Lock wakes waiters in FIFO order, so prompts go out in the order they
were finalized. Unrelated senders run in parallel.
All errors stay inside the message that caused them.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from ccchat.agent.commands import CommandHandler
from ccchat.agent.debounce_manager import DebounceManager
from ccchat.agent.echo_guard import EchoGuard
from ccchat.agent.rate_limit import RateLimiter
from ccchat.agent.security import SenderRegistry
from ccchat.bus.events import InboundMessage
from ccchat.channels.base import BaseChannel
from ccchat.config.schema import Config
from ccchat.errors import BackendError
from ccchat.observatory.metrics import Metrics
from ccchat.providers.base import BackendProvider
from ccchat.session.manager import SessionManager
from ccchat.utils.helpers import split_message, truncate

RATE_LIMIT_NOTICE = "You're sending messages too fast. Please wait a moment and try again."

# Upper bound on how often idle state is swept
_MAX_SWEEP_INTERVAL = 60.0
# Rate-limit buckets idle this long are dropped
_BUCKET_MAX_AGE = 600.0


class Dispatcher:
    """Owns all per-sender state and routes messages between transport and backend."""

    def __init__(
        self,
        config: Config,
        channel: BaseChannel,
        provider: BackendProvider,
        sessions: SessionManager | None = None,
        metrics: Metrics | None = None,
    ):
        self.config = config
        self.channel = channel
        self.provider = provider
        self.sessions = sessions or SessionManager(config.model, ttl_seconds=config.session_ttl_secs)
        self.metrics = metrics or Metrics()
        self.senders = SenderRegistry(config.allowed_ids, owner=config.account)
        self.echo_guard = EchoGuard(ttl_seconds=config.echo_ttl_secs)
        self.rate_limiter = RateLimiter(config.rate_limit_capacity, config.rate_limit_per_sec or 0.0)
        self.debounce = DebounceManager(config.debounce_ms, self.dispatch)
        self.commands = CommandHandler(self.sessions, self.metrics, self.senders)
        # One lock per allowed sender; held from before the first await until
        # the message is in the debounce buffer
        self._intake: dict[str, asyncio.Lock] = {}
        self._sweeper: asyncio.Task | None = None

        channel.set_handler(self.handle_inbound)

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start background maintenance (idle sessions, stale rate-limit buckets)."""
        if self._sweeper is not None:
            return
        ttl = self.sessions.ttl_seconds
        interval = min(ttl, _MAX_SWEEP_INTERVAL) if ttl is not None else _MAX_SWEEP_INTERVAL
        self._sweeper = asyncio.create_task(self._run_sweeper(interval))
        if ttl is not None:
            logger.info(f"Session expiry enabled (ttl={ttl:.0f}s, sweep every {interval:.0f}s)")

    async def stop(self) -> None:
        """Stop background tasks, drop pending bursts, cancel in-flight dispatches."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.debounce.close()

    def sweep(self) -> None:
        """Drop idle sessions and rate-limit buckets that have refilled."""
        self.sessions.expire_idle()
        removed = self.rate_limiter.cleanup_stale(_BUCKET_MAX_AGE)
        if removed:
            logger.debug(f"Dropped {removed} idle rate-limit buckets")

    async def _run_sweeper(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep()
            except Exception as e:
                logger.exception(f"Maintenance sweep failed: {e}")

    # ── Inbound ───────────────────────────────────────────────────────

    async def handle_inbound(self, msg: InboundMessage) -> None:
        """Entry point for every message the transport receives."""
        sender = msg.sender_id

        if not self.senders.is_allowed(sender):
            self.senders.note_pending(sender, msg.sender_name)
            logger.info(f"Ignoring message from non-allowed sender: {sender}")
            return

        if msg.content and self.echo_guard.is_echo(msg.content):
            logger.debug(f"Dropping echo of our own message to {sender}: {truncate(msg.content, 40)}")
            return

        self.metrics.record_message()
        logger.info(f"Message from {msg.display_name}: {truncate(msg.content)}")

        lock = self._intake.get(sender)
        if lock is None:
            lock = self._intake.setdefault(sender, asyncio.Lock())
        async with lock:
            text = await self._with_attachments(msg)
            if not text:
                return
            await self.debounce.on_message(sender, text)

    async def _with_attachments(self, msg: InboundMessage) -> str:
        """Download attachments and reference them in the prompt text."""
        if not msg.attachments:
            return msg.content

        lines = [msg.content] if msg.content else []
        for attachment in msg.attachments:
            label = attachment.filename or attachment.id
            try:
                path = await self.channel.fetch_attachment(attachment)
            except Exception as e:
                logger.warning(f"Attachment {attachment.id} from {msg.sender_id} failed: {e}")
                lines.append(f"[Attachment {label} could not be downloaded]")
                continue
            kind = f" ({attachment.content_type})" if attachment.content_type else ""
            lines.append(f"[Attachment: {path}{kind}]")
        return "\n".join(lines)

    # ── Dispatch ──────────────────────────────────────────────────────

    async def dispatch(self, sender: str, prompt: str) -> None:
        """Process one finalized prompt. Never raises."""
        try:
            await self._dispatch(sender, prompt)
        except Exception as e:
            self.metrics.record_error()
            logger.exception(f"Error handling message from {sender}: {e}")
            await self._notify(sender, f"Error: {e}")

    async def _dispatch(self, sender: str, prompt: str) -> None:
        if not self.rate_limiter.try_consume(sender):
            logger.warning(f"Rate limited {sender}")
            await self._notify(sender, RATE_LIMIT_NOTICE)
            return

        reply = self.commands.handle(sender, prompt)
        if reply is not None:
            await self.send_text(sender, reply)
            return

        async with self.sessions.hold(sender):
            # Read under the lock: a /reset or /model may have landed while we waited
            session_id, model, _ = self.sessions.get_or_create(sender)
            session = self.sessions.get(sender)
            resume = bool(session and session.started)

            failure: BackendError | None = None
            await self._set_typing(sender, True)
            try:
                response = await self.provider.invoke(
                    prompt, session_id, model, self.config.max_budget, resume=resume,
                )
            except BackendError as e:
                failure = e
            finally:
                await self._set_typing(sender, False)

            if failure is not None:
                self.metrics.record_error()
                logger.error(f"Claude error for {sender} (session {session_id}): {failure}")
                await self._notify(sender, f"Claude error: {failure}")
                return

            self.sessions.mark_started(sender, session_id)
            self.metrics.add_cost(response.cost_usd or 0.0)
            if response.cost_usd is not None:
                logger.info(f"Cost: ${response.cost_usd:.4f} (total: ${self.metrics.total_cost_usd:.4f})")

            truncated = len(response.content) > self.config.truncation_threshold
            self.sessions.mark_truncated(sender, truncated)
            if truncated:
                logger.warning(
                    f"Reply to {sender} is {len(response.content)} chars, "
                    f"may have been cut short by the backend"
                )

            await self.send_long_text(sender, response.content or "(empty response)")

    # ── Outbound ──────────────────────────────────────────────────────

    async def send_text(self, recipient: str, text: str) -> None:
        """Send one part, remembering it so its echo is ignored."""
        self.echo_guard.record(text)
        await self.channel.send_text(recipient, text)

    async def send_long_text(self, recipient: str, text: str) -> None:
        """Send a reply split into transport-sized parts, in order.

        A send failure stops the sequence; parts already sent stay sent.
        """
        parts = split_message(text, self.config.max_message_len)
        delay = self.config.chunk_delay_ms / 1000.0
        for i, part in enumerate(parts):
            if i > 0:
                await asyncio.sleep(delay)
            await self.send_text(recipient, part)
        if len(parts) > 1:
            logger.debug(f"Sent {len(parts)}-part reply to {recipient}")

    async def _notify(self, recipient: str, text: str) -> None:
        """Best-effort notice to a sender; failures are only logged."""
        try:
            await self.send_text(recipient, text)
        except Exception as e:
            logger.error(f"Could not notify {recipient}: {e}")

    async def _set_typing(self, recipient: str, typing: bool) -> None:
        try:
            await self.channel.set_typing(recipient, typing)
        except Exception as e:
            logger.debug(f"Typing indicator failed for {recipient}: {e}")
