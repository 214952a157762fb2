"""Signal channel backed by a signal-cli REST API (websocket receive mode)."""

import asyncio
import json
import re
from pathlib import Path
from typing import Any

import httpx
import websockets
from loguru import logger

from ccchat.bus.events import Attachment, InboundMessage
from ccchat.channels.base import BaseChannel, InboundHandler
from ccchat.config.schema import Config
from ccchat.errors import TransportError
from ccchat.utils.helpers import ensure_dir, truncate

INITIAL_BACKOFF = 1.0
MAX_BACKOFF = 60.0
HTTP_TIMEOUT = 30.0

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]")


def parse_envelope(raw: str | bytes) -> InboundMessage | None:
    """Turn one receive-stream frame into an InboundMessage.

    Returns None for frames that carry no user text: receipts, typing
    indicators, sync messages, empty messages. Malformed JSON is logged and
    dropped.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Failed to parse frame from signal-cli: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Unexpected frame type from signal-cli: {type(data).__name__}")
        return None

    envelope = data.get("envelope")
    if not isinstance(envelope, dict):
        return None

    source = envelope.get("source") or envelope.get("sourceNumber") or envelope.get("sourceUuid")
    if not source:
        return None

    data_message = envelope.get("dataMessage")
    if not isinstance(data_message, dict):
        return None  # receipt, typing, sync...

    text = data_message.get("message") or ""
    attachments = [
        Attachment(
            id=str(a["id"]),
            content_type=a.get("contentType") or "",
            filename=a.get("filename"),
            size=a.get("size"),
        )
        for a in data_message.get("attachments") or []
        if isinstance(a, dict) and a.get("id")
    ]
    if not text and not attachments:
        return None

    return InboundMessage(
        sender_id=str(source),
        content=text,
        sender_name=envelope.get("sourceName") or "",
        attachments=attachments,
        metadata={
            "timestamp": envelope.get("timestamp"),
            "source_uuid": envelope.get("sourceUuid"),
            "group_id": (data_message.get("groupInfo") or {}).get("groupId"),
        },
    )


class SignalChannel(BaseChannel):
    """Signal transport: websocket for receiving, REST for everything else."""

    name = "signal"

    def __init__(self, config: Config, handler: InboundHandler | None = None):
        super().__init__(config, handler)
        self.config: Config = config
        self._http: httpx.AsyncClient | None = None
        self._ws: Any = None
        self._tasks: set[asyncio.Task] = set()
        self._backoff = INITIAL_BACKOFF

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=HTTP_TIMEOUT)
        return self._http

    # ── Receive loop ──────────────────────────────────────────────────

    def _connect(self):
        """Open the receive websocket (async context manager)."""
        return websockets.connect(self.config.ws_url)

    async def _sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    async def start(self) -> None:
        """Stream inbound messages forever, reconnecting with exponential backoff.

        A clean close reconnects immediately. A connection error waits
        1s, 2s, 4s ... up to 60s. Any successful connect resets the delay.
        """
        self._running = True
        self._backoff = INITIAL_BACKOFF

        while self._running:
            try:
                logger.info(f"Connecting to {self.config.ws_url}")
                async with self._connect() as ws:
                    self._ws = ws
                    self._backoff = INITIAL_BACKOFF
                    logger.info("Signal websocket connected")
                    await self._receive_loop(ws)
                self._ws = None
                if self._running:
                    logger.info("Signal websocket closed cleanly, reconnecting")
            except asyncio.CancelledError:
                self._ws = None
                raise
            except Exception as e:
                self._ws = None
                if not self._running:
                    break
                delay = self._backoff
                logger.warning(f"Signal websocket error: {e}, reconnecting in {delay:.0f}s")
                await self._sleep(delay)
                self._backoff = min(self._backoff * 2, MAX_BACKOFF)

    async def _receive_loop(self, ws: Any) -> None:
        async for raw in ws:
            if not self._running:
                break
            msg = parse_envelope(raw)
            if msg is None:
                continue
            logger.debug(f"Signal message from {msg.sender_id}: {truncate(msg.content)}")
            self._spawn(msg)

    def _spawn(self, msg: InboundMessage) -> None:
        """Handle a message in its own task so slow senders never block the stream."""
        if self.handler is None:
            logger.warning("Signal channel has no handler, dropping message")
            return
        task = asyncio.create_task(self.handler(msg))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.opt(exception=task.exception()).error("Unhandled error in message handler")

    async def stop(self) -> None:
        """Stop receiving, wait for in-flight handlers briefly, close clients."""
        self._running = False
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    # ── Outbound ──────────────────────────────────────────────────────

    async def send_text(self, recipient: str, text: str) -> None:
        url = f"{self.config.api_url}/v2/send"
        body = {
            "message": text,
            "number": self.config.account,
            "recipients": [recipient],
        }
        try:
            response = await self._client().post(url, json=body)
        except httpx.HTTPError as e:
            raise TransportError(f"send to {recipient} failed: {e}") from e
        if not response.is_success:
            logger.error(f"Send failed ({response.status_code}): {truncate(response.text, 200)}")
            raise TransportError(f"send failed: HTTP {response.status_code}")

    async def set_typing(self, recipient: str, typing: bool) -> None:
        url = f"{self.config.api_url}/v1/typing-indicator/{self.config.account}"
        method = "PUT" if typing else "DELETE"
        try:
            response = await self._client().request(method, url, json={"recipient": recipient})
        except httpx.HTTPError as e:
            raise TransportError(f"typing indicator failed: {e}") from e
        if not response.is_success:
            raise TransportError(f"typing indicator failed: HTTP {response.status_code}")

    async def fetch_attachment(self, attachment: Attachment) -> Path:
        url = f"{self.config.api_url}/v1/attachments/{attachment.id}"
        try:
            response = await self._client().get(url)
        except httpx.HTTPError as e:
            raise TransportError(f"attachment {attachment.id} download failed: {e}") from e
        if not response.is_success:
            raise TransportError(f"attachment {attachment.id} download failed: HTTP {response.status_code}")

        name = _UNSAFE_FILENAME.sub("_", attachment.filename or attachment.id)
        target = ensure_dir(Path(self.config.tmp_dir) / "attachments") / f"{_UNSAFE_FILENAME.sub('_', attachment.id)}_{name}"
        target.write_bytes(response.content)
        logger.debug(f"Saved attachment {attachment.id} to {target}")
        return target

    async def check_health(self) -> bool:
        try:
            response = await self._client().get(f"{self.config.api_url}/v1/health")
        except httpx.HTTPError as e:
            logger.debug(f"Health check failed: {e}")
            return False
        return response.is_success
