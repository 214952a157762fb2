"""Tests for the locally managed signal-cli-api process."""

import asyncio
import socket
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from ccchat.channels import signal_api
from ccchat.channels.signal_api import SignalApiProcess, find_free_port
from ccchat.errors import TransportError


def _fake_process():
    proc = MagicMock()
    proc.returncode = None

    def _exit():
        proc.returncode = -15

    proc.terminate.side_effect = _exit
    proc.kill.side_effect = _exit
    proc.wait = AsyncMock(return_value=-15)
    return proc


def _health(statuses):
    """Transport answering /v1/health with ``statuses`` in turn, then 200."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        status = statuses[len(seen) - 1] if len(seen) <= len(statuses) else 200
        return httpx.Response(status)

    return httpx.MockTransport(handler), seen


# ── find_free_port ────────────────────────────────────────


class TestFindFreePort:
    def test_zero_lets_os_choose(self):
        port = find_free_port(0)
        assert 0 < port < 65536

    def test_preferred_port_used_when_free(self):
        port = find_free_port(0)
        assert find_free_port(port) == port

    def test_busy_port_skipped(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind(("127.0.0.1", 0))
            busy.listen()
            taken = busy.getsockname()[1]
            assert find_free_port(taken) != taken


# ── SignalApiProcess ──────────────────────────────────────


class TestSignalApiProcess:
    @pytest.mark.asyncio
    async def test_start_waits_for_health(self):
        transport, seen = _health([503, 503])
        proc = _fake_process()
        spawn = AsyncMock(return_value=proc)
        api = SignalApiProcess(
            "signal-cli-api", 0, health_interval=0.01, transport=transport,
        )

        with patch("ccchat.channels.signal_api.asyncio.create_subprocess_exec", spawn):
            url = await api.start()

        assert url == f"http://127.0.0.1:{api.port}"
        assert len(seen) == 3
        assert seen[-1] == f"{url}/v1/health"
        args = spawn.call_args.args
        assert args == ("signal-cli-api", "--listen", f"127.0.0.1:{api.port}")
        assert api.running

        await api.stop()
        proc.terminate.assert_called_once()
        assert not api.running

    @pytest.mark.asyncio
    async def test_never_healthy_times_out_and_stops(self):
        transport, seen = _health([503] * 10)
        proc = _fake_process()
        api = SignalApiProcess(
            "signal-cli-api", 0, health_attempts=4, health_interval=0.01, transport=transport,
        )

        with patch("ccchat.channels.signal_api.asyncio.create_subprocess_exec",
                   AsyncMock(return_value=proc)):
            with pytest.raises(TransportError, match="failed to start on port"):
                await api.start()

        assert len(seen) == 4
        proc.terminate.assert_called_once()
        assert not api.running

    @pytest.mark.asyncio
    async def test_connection_refused_counts_as_not_ready(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200)

        api = SignalApiProcess(
            health_interval=0.01, transport=httpx.MockTransport(handler),
        )
        with patch("ccchat.channels.signal_api.asyncio.create_subprocess_exec",
                   AsyncMock(return_value=_fake_process())):
            await api.start()

        assert len(calls) == 3
        await api.stop()

    @pytest.mark.asyncio
    async def test_child_exit_reported(self):
        transport, seen = _health([503] * 10)
        proc = _fake_process()
        proc.returncode = 1
        api = SignalApiProcess(health_interval=0.01, transport=transport)

        with patch("ccchat.channels.signal_api.asyncio.create_subprocess_exec",
                   AsyncMock(return_value=proc)):
            with pytest.raises(TransportError, match="exited with 1"):
                await api.start()
        assert seen == []

    @pytest.mark.asyncio
    async def test_missing_binary(self):
        api = SignalApiProcess("/nonexistent/signal-cli-api")
        with patch("ccchat.channels.signal_api.asyncio.create_subprocess_exec",
                   AsyncMock(side_effect=FileNotFoundError("no such file"))):
            with pytest.raises(TransportError, match="failed to run"):
                await api.start()

    @pytest.mark.asyncio
    async def test_stop_kills_stuck_child(self, monkeypatch):
        monkeypatch.setattr(signal_api, "STOP_TIMEOUT", 0.01)
        proc = _fake_process()
        proc.terminate.side_effect = None
        stuck = asyncio.Event()

        async def wait():
            if proc.returncode is None:
                await stuck.wait()
            return proc.returncode

        proc.wait = wait
        api = SignalApiProcess()
        api._process = proc

        await api.stop()

        proc.terminate.assert_called_once()
        proc.kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        await SignalApiProcess().stop()

    def test_url_before_start(self):
        with pytest.raises(RuntimeError):
            SignalApiProcess().url
