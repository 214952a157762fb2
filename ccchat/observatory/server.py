"""Read-only stats endpoint.

Runs alongside the transport loop as an aiohttp app on the same event loop.
Serves one JSON snapshot of the relay's counters at ``/`` and ``/stats``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from aiohttp import web
from loguru import logger

from ccchat import __version__

if TYPE_CHECKING:
    from ccchat.agent.dispatcher import Dispatcher


def build_stats(dispatcher: "Dispatcher") -> dict[str, Any]:
    """Snapshot of the relay's counters."""
    metrics = dispatcher.metrics
    return {
        "uptime_secs": int(metrics.uptime_seconds),
        "messages": metrics.message_count,
        "errors": metrics.error_count,
        "active_sessions": len(dispatcher.sessions),
        "allowed_senders": dispatcher.senders.allowed_count,
        "pending_senders": len(dispatcher.senders.list_pending()),
        "total_cost_usd": metrics.total_cost_usd,
        "model": dispatcher.config.model,
        "version": __version__,
    }


class StatsServer:
    """aiohttp server exposing ``build_stats`` as JSON."""

    def __init__(self, dispatcher: "Dispatcher", host: str = "127.0.0.1", port: int = 0):
        self._dispatcher = dispatcher
        self._host = host
        self._port = port
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def create_app(self) -> web.Application:
        app = web.Application()

        async def stats(request: web.Request) -> web.Response:
            return web.json_response(build_stats(self._dispatcher))

        app.router.add_get("/", stats)
        app.router.add_get("/stats", stats)
        return app

    @property
    def port(self) -> int:
        """Bound port (resolves ``0`` to the OS-assigned port once started)."""
        if self._runner is not None and self._runner.addresses:
            return self._runner.addresses[0][1]
        return self._port

    async def start(self) -> None:
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        logger.info(f"Stats server listening on http://{self._host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            logger.debug("Stats server stopped")
