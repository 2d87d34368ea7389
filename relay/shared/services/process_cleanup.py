"""Best-effort cleanup for stale agent subprocesses.

A relay that crashed or was killed with SIGKILL leaves its ``claude``
children running with nobody reading their pipes. At startup those
orphans are found by command line and sent SIGTERM.
"""

from __future__ import annotations

import os
import re
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int
    args: str

    def is_orphan(self, table: dict[int, "ProcessInfo"]) -> bool:
        """Reparented to init, or the recorded parent is gone."""
        return self.ppid == 1 or self.ppid not in table


def parse_ps_output(text: str) -> dict[int, ProcessInfo]:
    """Parse ``ps -eo pid=,ppid=,args=`` output into a table keyed by pid."""
    table: dict[int, ProcessInfo] = {}
    for row in text.splitlines():
        fields = row.split(None, 2)
        if len(fields) != 3 or not (fields[0].isdigit() and fields[1].isdigit()):
            continue
        info = ProcessInfo(pid=int(fields[0]), ppid=int(fields[1]), args=fields[2])
        table[info.pid] = info
    return table


def _list_processes() -> dict[int, ProcessInfo]:
    result = subprocess.run(
        ["ps", "-eo", "pid=,ppid=,args="],
        capture_output=True,
        text=True,
        check=True,
    )
    return parse_ps_output(result.stdout)


def is_agent_command(args: str, binary_name: str) -> bool:
    """Match an agent launched in stream-json mode by this relay."""
    name = re.escape(Path(binary_name).name)
    return bool(
        re.search(rf"(^|/|\s){name}\b", args)
        and re.search(r"--input-format\s+stream-json", args)
        and re.search(r"--output-format\s+stream-json", args)
    )


def cleanup_stale_agent_processes(
    binary_name: str,
    *,
    current_pid: int | None = None,
    log: Callable[[str], None] | None = None,
) -> int:
    """SIGTERM orphaned agent processes. Returns how many were signalled."""
    own_pid = current_pid or os.getpid()
    report = log or (lambda _: None)
    table = _list_processes()
    stale = [
        proc for proc in table.values()
        if proc.pid != own_pid
        and is_agent_command(proc.args, binary_name)
        and proc.is_orphan(table)
    ]

    signalled = 0
    for proc in stale:
        try:
            os.kill(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            continue
        except PermissionError as exc:
            report(f"Cannot signal stale agent pid={proc.pid}: {exc}")
            continue
        signalled += 1
        report(f"Sent SIGTERM to orphaned agent pid={proc.pid} ppid={proc.ppid} cmd={proc.args[:180]}")
    return signalled
