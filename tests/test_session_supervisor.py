"""Tests for SessionSupervisor process lifecycle, output handling and sends."""
from __future__ import annotations

import asyncio
import json
import os
import stat
import sys
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

import pytest

from relay.engine.config import RelayConfig
from relay.engine.errors import AgentLaunchError
from relay.engine.launcher import AgentLauncher
from relay.engine.models import RetryPolicy, SessionStatus
from relay.engine.supervisor import BINARY_MISSING_TEXT, SessionSupervisor
from relay.shared.models.message import MessageRole
from relay.shared.models.session import SessionRecord
from relay.shared.services.persistence import HistoryStore

from agent_fakes import FakeLauncher, FakeTransport, settle

USER_PAYLOAD = {"type": "user", "message": {"role": "user", "content": "hi"}}


def _make_supervisor(data_dir: Path, launcher, **config_overrides) -> SessionSupervisor:
    config_overrides.setdefault("send_retry", RetryPolicy(max_restarts=2, delay_seconds=0))
    config = RelayConfig(data_dir=data_dir, **config_overrides)
    history = HistoryStore(data_dir)
    record = SessionRecord(session_id=1)
    history.put(record)
    return SessionSupervisor(record, history=history, launcher=launcher, config=config)


def _persisted(data_dir: Path) -> dict:
    return json.loads((data_dir / "sessions.json").read_text(encoding="utf-8"))


@pytest.mark.asyncio
async def test_concurrent_starts_spawn_one_process():
    with TemporaryDirectory() as tmpdir:
        launcher = FakeLauncher()
        sup = _make_supervisor(Path(tmpdir), launcher)

        results = await asyncio.gather(sup.start(), sup.start(), sup.start())

        assert results == [True, True, True]
        assert len(launcher.launched) == 1
        assert sup.status is SessionStatus.RUNNING
        assert sup.has_live_process
        sup.stop()
        await sup.wait_closed()


@pytest.mark.asyncio
async def test_stdout_is_forwarded_and_assistant_turns_recorded():
    with TemporaryDirectory() as tmpdir:
        data_dir = Path(tmpdir)
        launcher = FakeLauncher()
        sup = _make_supervisor(data_dir, launcher)
        transport = FakeTransport()
        sup.attach(transport)
        await sup.start()
        proc = launcher.procs[0]

        assistant = {
            "type": "assistant",
            "message": {"id": "msg_1", "model": "m", "content": [{"type": "text", "text": "hello"}]},
        }
        proc.stdout.feed_data(json.dumps(assistant).encode("utf-8") + b"\nplain")
        proc.stdout.feed_data(b" text\n")
        proc.finish(0)
        await sup.wait_closed()

        assert transport.frames == [
            {"type": "connected", "sessionId": 1},
            {"type": "claude_output", "data": assistant},
            {"type": "claude_output", "data": "plain text"},
            {"type": "claude_closed", "code": 0},
        ]
        [stored] = _persisted(data_dir)["1"]["messages"]
        assert stored["role"] == "assistant"
        assert stored["id"] == "msg_1"
        assert stored["content"] == [{"type": "text", "text": "hello"}]
        assert sup.process is None
        assert not sup.has_live_process


@pytest.mark.asyncio
async def test_unterminated_output_is_flushed_before_close_event():
    with TemporaryDirectory() as tmpdir:
        launcher = FakeLauncher()
        sup = _make_supervisor(Path(tmpdir), launcher)
        await sup.start()
        proc = launcher.procs[0]

        proc.stdout.feed_data(b'{"type": "result", "subtype": "success"}')
        proc.finish(3)
        await sup.wait_closed()

        assert sup.cache[-2:] == [
            {"type": "claude_output", "data": {"type": "result", "subtype": "success"}},
            {"type": "claude_closed", "code": 3},
        ]


@pytest.mark.asyncio
async def test_stderr_is_forwarded_but_not_recorded():
    with TemporaryDirectory() as tmpdir:
        launcher = FakeLauncher()
        sup = _make_supervisor(Path(tmpdir), launcher)
        await sup.start()
        proc = launcher.procs[0]

        proc.stderr.feed_data(b'{"type": "assistant", "message": {"content": "x"}}\nplain warning\n')
        proc.finish(1)
        await sup.wait_closed()

        assert {
            "type": "claude_output",
            "data": {"type": "assistant", "message": {"content": "x"}},
        } in sup.cache
        assert {"type": "claude_output", "data": "plain warning"} in sup.cache
        assert sup.record.messages == []


@pytest.mark.asyncio
async def test_missing_binary_reports_and_stays_starting():
    with TemporaryDirectory() as tmpdir:
        launcher = FakeLauncher(available=False)
        sup = _make_supervisor(Path(tmpdir), launcher)

        assert await sup.start() is False
        assert sup.status is SessionStatus.STARTING
        assert launcher.launched == []
        assert sup.cache == [
            {"type": "error", "message": "Claude binary not found at: claude"},
            {"type": "claude_output", "data": BINARY_MISSING_TEXT},
        ]


@pytest.mark.asyncio
async def test_spawn_failure_without_key_explains_configuration():
    with TemporaryDirectory() as tmpdir:
        launcher = FakeLauncher(error=AgentLaunchError(1, "exec format error"))
        sup = _make_supervisor(Path(tmpdir), launcher)
        with patch.dict(os.environ, {}):
            os.environ.pop("ANTHROPIC_API_KEY", None)
            assert await sup.start() is False

        error, diagnostic = sup.cache
        assert error == {"type": "error", "message": "exec format error"}
        assert diagnostic["type"] == "claude_output"
        assert "exec format error" in diagnostic["data"]
        assert "No API key is configured" in diagnostic["data"]
        assert sup.process is None


@pytest.mark.asyncio
async def test_spawn_failure_with_key_lists_causes():
    with TemporaryDirectory() as tmpdir:
        launcher = FakeLauncher(error=AgentLaunchError(1, "exec format error"))
        sup = _make_supervisor(Path(tmpdir), launcher)
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "sk-test"}):
            await sup.start()

        diagnostic = sup.cache[-1]["data"]
        assert "Possible causes" in diagnostic
        assert "https://api.anthropic.com" in diagnostic


@pytest.mark.asyncio
async def test_send_persists_user_message_before_writing():
    with TemporaryDirectory() as tmpdir:
        data_dir = Path(tmpdir)
        launcher = FakeLauncher()
        sup = _make_supervisor(data_dir, launcher)
        await sup.start()
        proc = launcher.procs[0]
        snapshots = []
        proc.stdin.on_write = lambda _data: snapshots.append(_persisted(data_dir))

        assert await sup.send_message(USER_PAYLOAD) is True

        assert json.loads(bytes(proc.stdin.buffer)) == USER_PAYLOAD
        [stored] = snapshots[0]["1"]["messages"]
        assert stored["role"] == "user"
        assert stored["content"] == "hi"
        assert stored["type"] == "user"
        sup.stop()
        await sup.wait_closed()


@pytest.mark.asyncio
async def test_send_without_process_starts_one_first():
    with TemporaryDirectory() as tmpdir:
        launcher = FakeLauncher()
        sup = _make_supervisor(Path(tmpdir), launcher)

        assert await sup.send_message(USER_PAYLOAD) is True
        assert len(launcher.launched) == 1
        assert json.loads(bytes(launcher.procs[0].stdin.buffer)) == USER_PAYLOAD
        sup.stop()
        await sup.wait_closed()


@pytest.mark.asyncio
async def test_send_gives_up_after_bounded_restarts():
    with TemporaryDirectory() as tmpdir:
        launcher = FakeLauncher(available=False)
        sup = _make_supervisor(Path(tmpdir), launcher)

        assert await sup.send_message(USER_PAYLOAD) is False

        binary_errors = [e for e in sup.cache if e.get("message", "").startswith("Claude binary not found")]
        assert len(binary_errors) == 2
        assert sup.cache[-1]["type"] == "error"
        assert "gave up after 2 restarts" in sup.cache[-1]["message"]
        assert sup.record.messages == []


@pytest.mark.asyncio
async def test_broken_pipe_restarts_and_records_once():
    with TemporaryDirectory() as tmpdir:
        launcher = FakeLauncher()
        sup = _make_supervisor(Path(tmpdir), launcher)
        await sup.start()
        first = launcher.procs[0]
        first.stdin.fail = BrokenPipeError()

        assert await sup.send_message(USER_PAYLOAD) is True

        assert first.kills == 1
        assert len(launcher.launched) == 2
        assert json.loads(bytes(launcher.procs[1].stdin.buffer)) == USER_PAYLOAD
        assert [m.role for m in sup.record.messages] == [MessageRole.USER]
        await settle()
        assert sup.process.pid == launcher.procs[1].pid
        assert sup.has_live_process
        sup.stop()
        await sup.wait_closed()


@pytest.mark.asyncio
async def test_messages_are_written_in_submission_order():
    with TemporaryDirectory() as tmpdir:
        launcher = FakeLauncher()
        sup = _make_supervisor(Path(tmpdir), launcher)
        tasks = [
            sup.submit({"type": "user", "message": {"role": "user", "content": str(i)}})
            for i in range(5)
        ]
        assert await asyncio.gather(*tasks) == [True] * 5

        lines = bytes(launcher.procs[0].stdin.buffer).decode("utf-8").splitlines()
        assert [json.loads(line)["message"]["content"] for line in lines] == ["0", "1", "2", "3", "4"]
        sup.stop()
        await sup.wait_closed()


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_closes_client_after_exit_event():
    with TemporaryDirectory() as tmpdir:
        launcher = FakeLauncher()
        sup = _make_supervisor(Path(tmpdir), launcher)
        transport = FakeTransport()
        sup.attach(transport)
        await sup.start()

        assert sup.stop() is True
        assert sup.stop() is False
        await sup.wait_closed()

        assert sup.status is SessionStatus.STOPPED
        assert launcher.procs[0].kills == 1
        assert transport.frames[-1] == {"type": "claude_closed", "code": -9}
        assert transport.closed
        assert await sup.start() is False


@pytest.mark.asyncio
async def test_stop_during_launch_kills_new_process():
    with TemporaryDirectory() as tmpdir:
        gate = asyncio.Event()
        launcher = FakeLauncher(gate=gate)
        sup = _make_supervisor(Path(tmpdir), launcher)

        start = asyncio.create_task(sup.start())
        await settle()
        sup.stop()
        gate.set()

        assert await start is False
        assert launcher.procs[0].kills == 1
        assert sup.process is None


@pytest.mark.asyncio
async def test_stop_cancels_scheduled_start():
    with TemporaryDirectory() as tmpdir:
        launcher = FakeLauncher()
        sup = _make_supervisor(Path(tmpdir), launcher)
        sup.schedule_start(0.05)
        sup.stop()
        await asyncio.sleep(0.1)
        assert launcher.launched == []


@pytest.mark.asyncio
async def test_schedule_start_is_not_duplicated():
    with TemporaryDirectory() as tmpdir:
        launcher = FakeLauncher()
        sup = _make_supervisor(Path(tmpdir), launcher)
        sup.schedule_start(0)
        sup.schedule_start(0)
        await asyncio.sleep(0.01)
        assert len(launcher.launched) == 1
        sup.stop()
        await sup.wait_closed()


@pytest.mark.asyncio
async def test_detach_and_reattach_replays_everything():
    with TemporaryDirectory() as tmpdir:
        launcher = FakeLauncher()
        sup = _make_supervisor(Path(tmpdir), launcher)
        first = FakeTransport()
        sup.attach(first)
        await sup.start()
        proc = launcher.procs[0]

        proc.stdout.feed_data(b'{"n": 1}\n')
        await settle()
        assert sup.detach(first) is True
        assert sup.status is SessionStatus.DETACHED
        assert proc.kills == 0

        proc.stdout.feed_data(b'{"n": 2}\n')
        await settle()
        second = FakeTransport()
        sup.attach(second)
        assert sup.status is SessionStatus.RUNNING

        proc.stdout.feed_data(b'{"n": 3}\n')
        await settle()
        outputs = [f["data"] for f in second.frames if f["type"] == "claude_output"]
        assert outputs == [{"n": 1}, {"n": 2}, {"n": 3}]
        assert second.frames[0] == {"type": "connected", "sessionId": 1}
        sup.stop()
        await sup.wait_closed()


@pytest.mark.asyncio
async def test_detach_with_superseded_transport_is_ignored():
    with TemporaryDirectory() as tmpdir:
        sup = _make_supervisor(Path(tmpdir), FakeLauncher())
        old, new = FakeTransport(), FakeTransport()
        sup.attach(old)
        sup.attach(new)
        assert sup.detach(old) is False
        assert sup.transport is new


@pytest.mark.asyncio
async def test_resume_moves_detached_back_to_running():
    with TemporaryDirectory() as tmpdir:
        sup = _make_supervisor(Path(tmpdir), FakeLauncher())
        transport = FakeTransport()
        sup.attach(transport)
        await sup.start()
        sup.detach(transport)

        sup.resume()
        assert sup.status is SessionStatus.RUNNING
        sup.stop()
        await sup.wait_closed()


@pytest.mark.asyncio
async def test_output_after_discarding_stop_is_not_recorded():
    with TemporaryDirectory() as tmpdir:
        launcher = FakeLauncher()
        sup = _make_supervisor(Path(tmpdir), launcher)
        await sup.start()
        launcher.procs[0].stdout.feed_data(
            b'{"type": "assistant", "message": {"id": "late", "content": "x"}}\n'
        )

        sup.stop(discard_history=True)
        await sup.wait_closed()

        assert {"type": "claude_output", "data": {"type": "assistant", "message": {"id": "late", "content": "x"}}} in sup.cache
        assert sup.record.messages == []
        assert await sup.send_message(USER_PAYLOAD) is False


_FAKE_AGENT = """#!{python}
import json
import sys

print(json.dumps({{"type": "system", "subtype": "init"}}), flush=True)
print("booting without json", flush=True)
print("warning on stderr", file=sys.stderr, flush=True)
line = sys.stdin.readline()
content = json.loads(line)["message"]["content"]
reply = {{
    "type": "assistant",
    "message": {{"id": "msg_echo", "role": "assistant",
                "content": [{{"type": "text", "text": "echo: " + content}}]}},
}}
print(json.dumps(reply), flush=True)
print(json.dumps({{"type": "result", "subtype": "success"}}), flush=True)
"""


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="relies on a shebang script")
async def test_real_child_process_round_trip():
    with TemporaryDirectory() as tmpdir:
        data_dir = Path(tmpdir)
        script = data_dir / "fake-claude"
        script.write_text(_FAKE_AGENT.format(python=sys.executable), encoding="utf-8")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

        config = RelayConfig(
            data_dir=data_dir,
            agent_binary=str(script),
            send_retry=RetryPolicy(max_restarts=1, delay_seconds=0),
        )
        history = HistoryStore(data_dir)
        record = SessionRecord(session_id=1)
        history.put(record)
        sup = SessionSupervisor(record, history=history, launcher=AgentLauncher(config), config=config)
        transport = FakeTransport()
        sup.attach(transport)

        assert await sup.send_message(USER_PAYLOAD) is True
        await asyncio.wait_for(sup.wait_closed(), timeout=10)

        outputs = [f["data"] for f in transport.frames if f["type"] == "claude_output"]
        assert {"type": "system", "subtype": "init"} in outputs
        assert "booting without json" in outputs
        assert "warning on stderr" in outputs
        assert transport.frames[-1] == {"type": "claude_closed", "code": 0}

        roles = [m["role"] for m in _persisted(data_dir)["1"]["messages"]]
        assert roles == ["user", "assistant"]
        assert record.messages[1].content == [{"type": "text", "text": "echo: hi"}]
