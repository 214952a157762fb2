"""Command-line entry point: parse options, set up logging, run the relay."""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any, Sequence

from loguru import logger
from pydantic import ValidationError

from ccchat import __version__
from ccchat.agent.dispatcher import Dispatcher
from ccchat.channels.signal import SignalChannel
from ccchat.channels.signal_api import SignalApiProcess
from ccchat.config.schema import Config
from ccchat.errors import TransportError
from ccchat.observatory.server import StatsServer
from ccchat.providers.claude_cli import ClaudeCLIProvider

_TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)


def _option(parser, flag: str, help: str, **kwargs: Any) -> None:
    """Add ``--flag`` with its CCCHAT_* environment variable named in the help."""
    env = "CCCHAT_" + flag.lstrip("-").replace("-", "_").upper()
    parser.add_argument(flag, help=f"{help} [env: {env}]", **kwargs)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ccchat",
        description="Claude Code Chat: relay Signal messages to Claude. "
                    "Every option can also be set as CCCHAT_<OPTION> in the environment.",
    )
    parser.add_argument("--version", action="version", version=f"ccchat {__version__}")

    transport = parser.add_argument_group("transport")
    _option(transport, "--account", "your Signal account number, e.g. +44...")
    _option(transport, "--allowed", "comma-separated allowed senders (default: your account)")
    _option(transport, "--api-url", "signal-cli REST API base URL (default: run signal-cli-api locally)")
    _option(transport, "--port", "preferred port for the local signal-cli-api, 0 for any (default: 8080)",
            type=int)
    _option(transport, "--signal-api-binary", "signal-cli-api executable (default: signal-cli-api)")
    _option(transport, "--tmp-dir", "where downloaded attachments are saved (default: /tmp/ccchat)")

    backend = parser.add_argument_group("backend")
    _option(backend, "--model", "Claude model (default: opus)")
    _option(backend, "--max-budget", "max budget per message in USD (default: 5.0)", type=float)
    _option(backend, "--claude-binary", "path to the claude CLI (default: claude)")
    _option(backend, "--claude-workdir", "working directory for claude (default: current)")

    flow = parser.add_argument_group("message flow")
    _option(flow, "--debounce-ms", "merge window for burst messages (default: 3000, 0 disables)", type=int)
    _option(flow, "--rate-limit-capacity", "burst size per sender (default: unlimited)", type=float)
    _option(flow, "--rate-limit-per-sec", "token refill rate per sender", type=float)
    _option(flow, "--session-ttl-secs", "expire sessions idle this long (default: never)", type=float)
    _option(flow, "--echo-ttl-secs", "how long our own messages are remembered as echoes (default: 3600)",
            type=float)
    _option(flow, "--max-message-len", "longest outbound message part (default: 4000)", type=int)
    _option(flow, "--truncation-threshold", "reply length flagged as likely cut off (default: 3500)", type=int)
    _option(flow, "--chunk-delay-ms", "pause between parts of a long reply (default: 200)", type=int)

    ops = parser.add_argument_group("stats and logging")
    _option(ops, "--stats-port", "serve JSON stats on this port (default: off)", type=int)
    _option(ops, "--stats-host", "stats bind address (default: 127.0.0.1)")
    _option(ops, "--log-format", "log output format (default: text)", choices=["text", "json"])
    _option(ops, "--log-level", "log level (default: INFO)")
    return parser


def load_config(argv: Sequence[str] | None = None) -> Config:
    """Build Config from CLI args layered over CCCHAT_* environment variables."""
    args = build_parser().parse_args(argv)
    overrides: dict[str, Any] = {
        k: v for k, v in vars(args).items() if v is not None
    }
    return Config(**overrides)


def setup_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Replace loguru's default sink with one honoring level and format."""
    logger.remove()
    if fmt == "json":
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=_TEXT_FORMAT)


async def run(config: Config) -> None:
    """Wire components together and run until cancelled."""
    managed: SignalApiProcess | None = None
    if not config.api_url:
        managed = SignalApiProcess(config.signal_api_binary, config.port)
        try:
            url = await managed.start()
        except TransportError as e:
            raise SystemExit(str(e))
        config = config.model_copy(update={"api_url": url})

    try:
        await _serve(config)
    finally:
        if managed is not None:
            await managed.stop()


async def _serve(config: Config) -> None:
    channel = SignalChannel(config)
    provider = ClaudeCLIProvider(binary=config.claude_binary, workdir=config.claude_workdir)
    dispatcher = Dispatcher(config, channel, provider)

    if not await channel.check_health():
        await channel.stop()
        raise SystemExit(f"signal-cli API not reachable at {config.api_url}")

    logger.info(f"ccchat {__version__} starting for account {config.account}")
    logger.info(f"Allowed senders: {config.allowed_ids}")
    logger.info(f"API: {config.api_url}, model: {config.model}, debounce: {config.debounce_ms}ms")

    stats: StatsServer | None = None
    if config.stats_port is not None:
        stats = StatsServer(dispatcher, config.stats_host, config.stats_port)
        await stats.start()

    await dispatcher.start()
    try:
        await channel.start()
    finally:
        await channel.stop()
        await dispatcher.stop()
        if stats:
            await stats.stop()
        logger.info("ccchat stopped")


def main(argv: Sequence[str] | None = None) -> None:
    try:
        config = load_config(argv)
    except ValidationError as e:
        print(f"ccchat: invalid configuration:\n{e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(config.log_level, config.log_format)
    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
