"""Per-session supervisor: owns one agent process and one output stream.

The supervisor is the only writer of its process handle and status. It
drives the lifecycle in ``relay.engine.lifecycle``:

    created -> starting -> running <-> detached
                  ^           |
                  +-----------+   (restart after the agent exited)

and every state can go to ``stopped``. Output from the agent is framed
line by line, recorded in history when it is an assistant turn, and
handed to the multiplexer, which caches it and forwards it to whichever
client is attached.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable

from relay.adapters.events import (
    AgentClosed,
    AgentOutput,
    AssistantTurn,
    Connected,
    ErrorEvent,
    RelayEvent,
    classify_payload,
)
from relay.adapters.multiplexer import OutputMultiplexer, Transport
from relay.shared.models.message import Message
from relay.shared.models.session import SessionRecord
from relay.shared.services.persistence import HistoryStore

from .config import RelayConfig
from .errors import AgentBinaryNotFoundError, AgentLaunchError
from .framer import Line, LineFramer, StructuredLine
from .launcher import AgentLauncher, AgentProcess
from .lifecycle import validate_transition
from .models import SessionStatus

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024

BINARY_MISSING_TEXT = (
    "Claude binary not found. Check the CLAUDE_BINARY environment variable "
    "or the claudeBinary key in the config file."
)


class SessionSupervisor:
    """Runs one agent process on behalf of one session id."""

    def __init__(
        self,
        record: SessionRecord,
        *,
        history: HistoryStore,
        launcher: AgentLauncher,
        config: RelayConfig,
        project_path: str | None = None,
    ) -> None:
        self.record = record
        self._history = history
        self._launcher = launcher
        self._config = config
        self._project_path = project_path
        self._mux = OutputMultiplexer(record.session_id, config.max_cached_events)

        self._status = SessionStatus.CREATED
        self._process: AgentProcess | None = None
        self._launch_lock = asyncio.Lock()
        self._send_lock = asyncio.Lock()
        self._start_task: asyncio.Task | None = None
        self._watcher: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        # Set on delete so late output never resurrects the record on disk.
        self._discard_history = False

    # ── Introspection ──

    @property
    def session_id(self) -> int:
        return self.record.session_id

    @property
    def project_id(self) -> int | None:
        return self.record.project_id

    @property
    def project_path(self) -> str | None:
        return self._project_path

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def process(self) -> AgentProcess | None:
        return self._process

    @property
    def has_live_process(self) -> bool:
        return self._process is not None and self._process.is_alive

    @property
    def transport(self) -> Transport | None:
        return self._mux.transport

    @property
    def cache(self) -> list[dict[str, Any]]:
        return self._mux.cache

    def _set_state(self, target: SessionStatus) -> None:
        if target is self._status:
            return
        validate_transition(self._status, target)
        logger.debug(
            "Session %s: %s -> %s", self.session_id, self._status.value, target.value,
        )
        self._status = target

    # ── Client side ──

    def emit(self, event: RelayEvent | dict[str, Any]) -> dict[str, Any]:
        return self._mux.emit(event)

    def attach(self, transport: Transport) -> int:
        """Bind ``transport``; it gets ``connected``, the full cache, then live output."""
        if self._status is SessionStatus.DETACHED:
            self._set_state(SessionStatus.RUNNING)
        replayed = self._mux.attach(transport, greeting=Connected(session_id=self.session_id))
        logger.info(
            "Session %s: client attached (replayed=%d status=%s)",
            self.session_id, replayed, self._status.value,
        )
        return replayed

    def detach(self, transport: Transport | None = None) -> bool:
        """Unbind the client. A running process keeps going in the background."""
        if not self._mux.detach(transport):
            return False
        if self._status is SessionStatus.RUNNING and self.has_live_process:
            self._set_state(SessionStatus.DETACHED)
        logger.info("Session %s: client detached (status=%s)", self.session_id, self._status.value)
        return True

    def resume(self) -> None:
        if self._status is SessionStatus.DETACHED:
            self._set_state(SessionStatus.RUNNING)
            logger.info("Session %s: resumed from background", self.session_id)

    # ── Process side ──

    def schedule_start(self, delay: float) -> None:
        """Start the agent after ``delay`` seconds unless one is already pending."""
        if self._start_task is not None and not self._start_task.done():
            return
        self._start_task = asyncio.create_task(self._delayed_start(delay))

    async def _delayed_start(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.start()

    async def start(self) -> bool:
        """Spawn the agent unless a live one exists. Returns True when one is live."""
        async with self._launch_lock:
            if self._status is SessionStatus.STOPPED:
                return False
            if self.has_live_process:
                logger.debug("Session %s: agent already running, skipping start", self.session_id)
                return True
            if self._status is SessionStatus.DETACHED:
                self._set_state(SessionStatus.RUNNING)
            self._set_state(SessionStatus.STARTING)
            logger.info("Session %s: starting agent", self.session_id)

            if not self._launcher.binary_available():
                self._report_missing_binary()
                return False
            has_key = bool(self._config.resolve_api_key())
            if not has_key:
                logger.warning("Session %s: no API key configured", self.session_id)

            try:
                process = await self._launcher.launch(self.session_id, self._project_path)
            except AgentBinaryNotFoundError:
                self._report_missing_binary()
                return False
            except AgentLaunchError as exc:
                logger.error("Session %s: agent failed to start: %s", self.session_id, exc.reason)
                self.emit(ErrorEvent(message=exc.reason))
                self.emit(AgentOutput(data=self._launch_failure_text(exc.reason, has_key)))
                return False

            if self._status is SessionStatus.STOPPED:
                logger.info("Session %s: stopped during launch, killing pid=%s", self.session_id, process.pid)
                process.kill()
                await process.wait()
                return False

            self._process = process
            self._set_state(SessionStatus.RUNNING)
            self._watcher = asyncio.create_task(self._watch(process))
            return True

    def _report_missing_binary(self) -> None:
        error = AgentBinaryNotFoundError(self._launcher.binary)
        logger.error("Session %s: %s", self.session_id, error)
        self.emit(ErrorEvent(message=str(error)))
        self.emit(AgentOutput(data=BINARY_MISSING_TEXT))

    def _launch_failure_text(self, reason: str, has_key: bool) -> str:
        lines = [f"Failed to start the Claude process: {reason}", ""]
        if not has_key:
            lines += [
                "No API key is configured.",
                "",
                "To configure one:",
                f"1. Edit the config file: {self._config.config_path}",
                "2. Set env.ANTHROPIC_AUTH_TOKEN",
                "3. Or export ANTHROPIC_API_KEY=your-key",
            ]
        else:
            lines += [
                "Possible causes:",
                "1. The binary does not run on this system",
                f"2. Network problems (base URL: {self._config.base_url})",
                "3. The API key is invalid",
            ]
        return "\n".join(lines) + "\n"

    async def _watch(self, process: AgentProcess) -> None:
        pumps = [
            asyncio.create_task(self._pump(process.stdout, self._handle_stdout_line)),
            asyncio.create_task(self._pump(process.stderr, self._handle_stderr_line)),
        ]
        try:
            await asyncio.gather(*pumps)
            code = await process.wait()
        except asyncio.CancelledError:
            for pump in pumps:
                pump.cancel()
            raise
        logger.info(
            "Session %s: agent exited code=%s pid=%s", self.session_id, code, process.pid,
        )
        if self._process is process:
            self._process = None
        self.emit(AgentClosed(code=code))
        if self._status is SessionStatus.STOPPED:
            self._close_transport()

    async def _pump(self, stream: Any, handle: Any) -> None:
        if stream is None:
            return
        framer = LineFramer()
        while True:
            try:
                chunk = await stream.read(_READ_CHUNK)
            except (OSError, ValueError) as exc:
                logger.warning("Session %s: agent pipe read failed: %s", self.session_id, exc)
                break
            if not chunk:
                break
            for line in framer.feed(chunk):
                handle(line)
        for line in framer.flush():
            handle(line)

    def _handle_stdout_line(self, line: Line) -> None:
        if not isinstance(line, StructuredLine):
            logger.debug("Session %s: agent text: %.100s", self.session_id, line.text)
            self.emit(AgentOutput(data=line.text))
            return
        logger.debug("Session %s: agent output: %.100s", self.session_id, line.text)
        self.emit(AgentOutput(data=line.value))
        payload = classify_payload(line.value)
        if isinstance(payload, AssistantTurn):
            self._record(Message.from_assistant_message(payload.message))

    def _handle_stderr_line(self, line: Line) -> None:
        logger.error("Session %s: agent stderr: %s", self.session_id, line.text)
        data = line.value if isinstance(line, StructuredLine) else line.text
        self.emit(AgentOutput(data=data))

    def _record(self, message: Message) -> None:
        if self._discard_history:
            return
        self.record.append(message)
        self._history.save()

    # ── Inbound messages ──

    async def send_message(self, payload: dict[str, Any]) -> bool:
        """Write ``payload`` to the agent, restarting it if needed.

        Sends are serialised so messages reach stdin in arrival order.
        Returns False once every allowed restart has been used.
        """
        policy = self._config.send_retry
        async with self._send_lock:
            recorded = False
            restarts = 0
            while True:
                if self._status is SessionStatus.STOPPED:
                    logger.warning("Session %s: dropping message for stopped session", self.session_id)
                    return False
                process = self._process
                if process is not None and process.is_alive:
                    if not recorded:
                        self._record(Message.from_user_payload(payload))
                        recorded = True
                    try:
                        await process.write_line(payload)
                    except (BrokenPipeError, ConnectionResetError) as exc:
                        logger.warning(
                            "Session %s: write to agent pid=%s failed: %s",
                            self.session_id, process.pid, exc,
                        )
                        process.kill()
                    else:
                        logger.info("Session %s: message delivered to agent", self.session_id)
                        return True

                if restarts >= policy.max_restarts:
                    logger.error(
                        "Session %s: agent unavailable after %d restarts, giving up",
                        self.session_id, restarts,
                    )
                    self.emit(ErrorEvent(
                        message=f"Claude process is not available (gave up after {restarts} restarts)",
                    ))
                    return False
                restarts += 1
                logger.info(
                    "Session %s: agent not running, restarting (attempt=%d/%d)",
                    self.session_id, restarts, policy.max_restarts,
                )
                await self.start()
                await asyncio.sleep(policy.delay_seconds)

    def submit(self, payload: dict[str, Any]) -> asyncio.Task:
        """Queue ``send_message`` in the background."""
        return self._track(self.send_message(payload))

    def _track(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Session %s: background task failed", self.session_id, exc_info=exc,
            )

    # ── Teardown ──

    def stop(self, *, discard_history: bool = False) -> bool:
        """Kill the agent and cancel pending work. Safe to call repeatedly.

        Returns True the first time only.
        """
        if discard_history:
            self._discard_history = True
        if self._status is SessionStatus.STOPPED:
            return False
        self._set_state(SessionStatus.STOPPED)

        if self._start_task is not None:
            self._start_task.cancel()
        for task in list(self._tasks):
            task.cancel()

        process = self._process
        if process is not None:
            logger.info("Session %s: killing agent pid=%s", self.session_id, process.pid)
            process.kill()
        # With a watcher still running, the transport closes after claude_closed.
        if self._watcher is None or self._watcher.done():
            self._close_transport()
        return True

    async def wait_closed(self) -> None:
        """Wait for the current agent process to be reaped."""
        if self._watcher is not None:
            await asyncio.gather(self._watcher, return_exceptions=True)

    def _close_transport(self) -> None:
        transport = self._mux.transport
        self._mux.detach()
        if transport is not None:
            transport.close()
