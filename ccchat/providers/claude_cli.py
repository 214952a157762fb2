"""Backend that shells out to the ``claude`` CLI in print mode.

Each call runs one ``claude -p`` process. The first call for a session uses
``--session-id`` to create the conversation; later calls use ``--resume`` so
the CLI reloads its context. Output is requested as JSON so the reply text
and the cost can be read separately.
"""

from __future__ import annotations

import asyncio
import json
import os
import time as _time
from typing import Any

from loguru import logger

from ccchat.errors import BackendError
from ccchat.providers.base import BackendProvider, BackendResponse

# Env var set when running inside a Claude Code session; the CLI refuses to
# nest itself if it sees it.
_NESTED_ENV_VAR = "CLAUDE_CODE_ENTRYPOINT"


def parse_cli_output(stdout: str) -> BackendResponse:
    """Parse ``--output-format json`` output.

    Non-JSON output is taken as the reply itself (older CLI versions, or
    plain-text errors printed with exit code 0), with no cost.
    """
    text = stdout.strip()
    try:
        data: Any = json.loads(text)
    except json.JSONDecodeError:
        return BackendResponse(content=text)

    if not isinstance(data, dict):
        return BackendResponse(content=text)

    if data.get("is_error"):
        raise BackendError(str(data.get("result") or data.get("subtype") or "unknown error"))

    result = data.get("result")
    content = result if isinstance(result, str) else text

    cost = data.get("cost_usd")
    if not isinstance(cost, (int, float)):
        cost = data.get("total_cost_usd")
    if not isinstance(cost, (int, float)) or isinstance(cost, bool):
        cost = None

    duration = data.get("duration_ms")
    return BackendResponse(
        content=content,
        cost_usd=float(cost) if cost is not None else None,
        duration_ms=int(duration) if isinstance(duration, (int, float)) else None,
    )


class ClaudeCLIProvider(BackendProvider):
    """Runs the Claude CLI as a subprocess per message."""

    def __init__(self, binary: str = "claude", workdir: str | None = None) -> None:
        self.binary = binary
        self.workdir = workdir

    def build_command(
        self,
        prompt: str,
        session_id: str,
        model: str,
        budget: float,
        resume: bool = False,
    ) -> list[str]:
        return [
            self.binary,
            "-p", prompt,
            "--resume" if resume else "--session-id", session_id,
            "--output-format", "json",
            "--model", model,
            "--max-budget-usd", str(budget),
        ]

    async def invoke(
        self,
        prompt: str,
        session_id: str,
        model: str,
        budget: float,
        *,
        resume: bool = False,
    ) -> BackendResponse:
        cmd = self.build_command(prompt, session_id, model, budget, resume)
        env = {k: v for k, v in os.environ.items() if k != _NESTED_ENV_VAR}

        start = _time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.workdir,
                env=env,
            )
            stdout, stderr = await proc.communicate()
        except OSError as e:
            raise BackendError(f"failed to run {self.binary}: {e}") from e

        elapsed_ms = int((_time.monotonic() - start) * 1000)
        if proc.returncode != 0:
            err = stderr.decode("utf-8", errors="replace").strip()
            # The JSON error payload lands on stdout for some failures
            if not err:
                err = stdout.decode("utf-8", errors="replace").strip()
            raise BackendError(f"{self.binary} exited with {proc.returncode}: {err}")

        response = parse_cli_output(stdout.decode("utf-8", errors="replace"))
        if response.duration_ms is None:
            response.duration_ms = elapsed_ms
        logger.debug(
            f"Claude call: session={session_id} model={model} "
            f"{elapsed_ms}ms cost={response.cost_usd}"
        )
        return response
