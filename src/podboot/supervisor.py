from __future__ import annotations

import subprocess
import time
from pathlib import Path
from typing import Iterator


class Supervisor:
    """Holds a handle per launched service.

    Services are not restarted; the handles exist so the orchestrator can
    report liveness, follow the primary process and shut everything down on
    a signal.
    """

    def __init__(self, poll_interval: float = 0.5) -> None:
        self.poll_interval = poll_interval
        self.procs: dict[str, subprocess.Popen] = {}

    def register(self, name: str, proc: subprocess.Popen) -> None:
        self.procs[name] = proc

    def alive(self, name: str) -> bool:
        proc = self.procs.get(name)
        return proc is not None and proc.poll() is None

    def status(self) -> dict[str, int | None]:
        return {name: proc.poll() for name, proc in self.procs.items()}

    def follow(self, name: str, log_path: str | Path) -> Iterator[str]:
        """Yield lines of ``log_path`` until process ``name`` exits."""
        proc = self.procs[name]
        pending = ""
        with open(log_path, "r", encoding="utf-8", errors="replace") as handle:
            while True:
                chunk = handle.readline()
                if chunk:
                    # A line still being written is held until its newline arrives.
                    pending += chunk
                    if pending.endswith("\n"):
                        yield pending.rstrip("\n")
                        pending = ""
                    continue
                if proc.poll() is not None:
                    yield from (pending + handle.read()).splitlines()
                    return
                time.sleep(self.poll_interval)

    def terminate_all(self, timeout: float = 10.0) -> None:
        for proc in self.procs.values():
            if proc.poll() is None:
                proc.terminate()
        deadline = time.monotonic() + timeout
        for proc in self.procs.values():
            remaining = max(0.0, deadline - time.monotonic())
            try:
                proc.wait(timeout=remaining)
            except subprocess.TimeoutExpired:
                proc.kill()
