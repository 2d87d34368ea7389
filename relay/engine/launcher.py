"""Agent process launcher.

Spawns the ``claude`` CLI in streaming JSON mode with three pipes:

    claude --output-format stream-json --input-format stream-json --verbose

The launcher never retries; restart policy belongs to the supervisor.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any

from .config import RelayConfig
from .errors import AgentBinaryNotFoundError, AgentLaunchError

logger = logging.getLogger(__name__)

AGENT_ARGS: tuple[str, ...] = (
    "--output-format", "stream-json",
    "--input-format", "stream-json",
    "--verbose",
)


class AgentProcess:
    """Exclusive handle on one running agent process.

    Wraps an ``asyncio.subprocess.Process`` (or anything shaped like
    one) and tracks whether it was killed, so "is there a usable
    process?" is a single predicate.
    """

    def __init__(self, proc: Any, session_id: int) -> None:
        self._proc = proc
        self.session_id = session_id
        self.killed = False

    @property
    def pid(self) -> int | None:
        return getattr(self._proc, "pid", None)

    @property
    def stdin(self) -> Any:
        return self._proc.stdin

    @property
    def stdout(self) -> Any:
        return self._proc.stdout

    @property
    def stderr(self) -> Any:
        return self._proc.stderr

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    @property
    def is_alive(self) -> bool:
        """Has a writable stdin, was not killed and has not exited."""
        stdin = self._proc.stdin
        return (
            not self.killed
            and self._proc.returncode is None
            and stdin is not None
            and not stdin.is_closing()
        )

    async def write_line(self, payload: dict[str, Any]) -> None:
        """Write one JSON object plus newline to stdin.

        Raises BrokenPipeError / ConnectionResetError when the pipe is gone.
        """
        stdin = self._proc.stdin
        if stdin is None or stdin.is_closing():
            raise BrokenPipeError(f"stdin of agent pid={self.pid} is closed")
        stdin.write((json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8"))
        await stdin.drain()

    def kill(self) -> None:
        """Signal the process; fire-and-forget, repeat calls are no-ops."""
        if self.killed:
            return
        self.killed = True
        if self._proc.returncode is not None:
            return
        try:
            self._proc.kill()
        except ProcessLookupError:
            pass

    async def wait(self) -> int | None:
        return await self._proc.wait()


class AgentLauncher:
    """Builds the agent command line and environment, and spawns it."""

    def __init__(self, config: RelayConfig) -> None:
        self._config = config

    @property
    def binary(self) -> str:
        return self._config.agent_binary

    def resolve_binary(self) -> str | None:
        """Return an executable path for the configured binary, or None.

        A literal path wins; otherwise the value is looked up on PATH.
        """
        binary = self._config.agent_binary
        if Path(binary).exists():
            return binary
        return shutil.which(binary)

    def binary_available(self) -> bool:
        return self.resolve_binary() is not None

    def build_args(self) -> list[str]:
        return list(AGENT_ARGS)

    def build_env(self, session_id: int) -> dict[str, str]:
        api_key = self._config.resolve_api_key()
        env = os.environ.copy()
        env.update({
            "CLAUDE_SESSION_ID": str(session_id),
            "ANTHROPIC_API_KEY": api_key,
            "ANTHROPIC_AUTH_TOKEN": api_key,
            "ANTHROPIC_BASE_URL": self._config.base_url,
            "API_TIMEOUT_MS": self._config.api_timeout_ms,
            "CLAUDE_CODE_DISABLE_NONESSENTIAL_TRAFFIC": str(
                self._config.env.get("CLAUDE_CODE_DISABLE_NONESSENTIAL_TRAFFIC", "")
            ),
        })
        return env

    async def launch(self, session_id: int, cwd: str | None = None) -> AgentProcess:
        """Spawn exactly one agent process for ``session_id``."""
        executable = self.resolve_binary()
        if executable is None:
            raise AgentBinaryNotFoundError(self._config.agent_binary)

        args = self.build_args()
        logger.info(
            "Session %s: spawning %s %s cwd=%s base_url=%s",
            session_id, executable, " ".join(args), cwd or "<inherit>",
            self._config.base_url,
        )
        try:
            # args passed as an array, no shell
            proc = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(session_id),
                cwd=cwd,
            )
        except OSError as exc:
            raise AgentLaunchError(session_id, str(exc)) from exc

        logger.info("Session %s: agent started pid=%s", session_id, proc.pid)
        return AgentProcess(proc, session_id)
