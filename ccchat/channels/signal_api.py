"""Managed signal-cli REST API process.

Without an explicit API URL, ccchat runs ``signal-cli-api`` itself on a free
loopback port, waits for its health endpoint, and stops it on shutdown.
"""

from __future__ import annotations

import asyncio
import socket

import httpx
from loguru import logger

from ccchat.errors import TransportError

HEALTH_ATTEMPTS = 20
HEALTH_INTERVAL = 0.5
PORT_SEARCH_SPAN = 100
STOP_TIMEOUT = 5.0

_HOST = "127.0.0.1"


def _port_is_free(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((_HOST, port))
        except OSError:
            return False
    return True


def find_free_port(preferred: int = 0) -> int:
    """Pick a loopback TCP port.

    ``0`` lets the OS choose. Otherwise ``preferred`` and the ports after it
    are tried in order, falling back to an OS-chosen port when all are taken.
    """
    if preferred:
        for port in range(preferred, min(preferred + PORT_SEARCH_SPAN, 65536)):
            if _port_is_free(port):
                return port
        logger.warning(f"No free port from {preferred}, letting the OS choose")
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((_HOST, 0))
        return sock.getsockname()[1]


class SignalApiProcess:
    """A ``signal-cli-api`` child process owned by the relay.

    Args:
        binary: Executable to run.
        port: Preferred listen port, 0 for any.
        transport: Optional httpx transport for the health checks.
    """

    def __init__(
        self,
        binary: str = "signal-cli-api",
        port: int = 0,
        *,
        health_attempts: int = HEALTH_ATTEMPTS,
        health_interval: float = HEALTH_INTERVAL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.binary = binary
        self.preferred_port = port
        self.port: int | None = None
        self.health_attempts = health_attempts
        self.health_interval = health_interval
        self._transport = transport
        self._process: asyncio.subprocess.Process | None = None

    @property
    def url(self) -> str:
        if self.port is None:
            raise RuntimeError("signal-cli-api not started")
        return f"http://{_HOST}:{self.port}"

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> str:
        """Spawn the API and wait until it reports healthy. Returns its base URL."""
        self.port = find_free_port(self.preferred_port)
        logger.info(f"Starting {self.binary} on port {self.port}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.binary, "--listen", f"{_HOST}:{self.port}",
                stdin=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise TransportError(f"failed to run {self.binary}: {e}") from e

        if await self._wait_healthy():
            logger.info(f"{self.binary} ready at {self.url}")
            return self.url

        code = self._process.returncode
        await self.stop()
        if code is not None:
            raise TransportError(f"{self.binary} exited with {code} before becoming healthy")
        waited = self.health_attempts * self.health_interval
        raise TransportError(f"{self.binary} failed to start on port {self.port} within {waited:.0f}s")

    async def _wait_healthy(self) -> bool:
        health = f"{self.url}/v1/health"
        async with httpx.AsyncClient(timeout=2.0, transport=self._transport) as client:
            for attempt in range(self.health_attempts):
                if not self.running:
                    return False
                try:
                    response = await client.get(health)
                    if response.is_success:
                        return True
                except httpx.HTTPError as e:
                    logger.debug(f"Health check {attempt + 1}/{self.health_attempts} failed: {e}")
                await asyncio.sleep(self.health_interval)
        return False

    async def stop(self) -> None:
        """Terminate the child, killing it if it does not exit in time."""
        proc, self._process = self._process, None
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), STOP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"{self.binary} did not exit, killing it")
            proc.kill()
            await proc.wait()
        logger.info(f"Stopped {self.binary}")
