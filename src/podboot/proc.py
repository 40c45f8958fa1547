from __future__ import annotations

import os
import subprocess
import sys
import time
from pathlib import Path

from .context import BootContext


def log_line(ctx: BootContext, message: str) -> None:
    ts = time.strftime("%Y-%m-%dT%H:%M:%S%z")
    line = f"{ts} {message}\n"
    sys.stdout.write(line)
    sys.stdout.flush()
    if ctx.log_file:
        try:
            Path(ctx.log_file).parent.mkdir(parents=True, exist_ok=True)
            with open(ctx.log_file, "a", encoding="utf-8") as handle:
                handle.write(line)
        except PermissionError:
            pass


def run_cmd(
    ctx: BootContext,
    args: list[str],
    desc: str,
    *,
    timeout: int | None = None,
    check: bool = True,
    env: dict[str, str] | None = None,
    cwd: str | None = None,
    input: str | None = None,
) -> subprocess.CompletedProcess[str]:
    log_line(ctx, f"bootstrap: running {desc}: {' '.join(args)}")
    result = subprocess.run(
        args,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        timeout=timeout,
        env=env,
        cwd=cwd,
        input=input,
    )
    if result.stdout:
        for line in result.stdout.splitlines():
            log_line(ctx, line)
    if check and result.returncode != 0:
        raise RuntimeError(f"{desc} failed with exit code {result.returncode}")
    return result


def run_best_effort(ctx: BootContext, args: list[str], desc: str, *, cwd: str | None = None) -> bool:
    try:
        result = run_cmd(ctx, args, desc, check=False, cwd=cwd)
    except Exception as exc:
        log_line(ctx, f"bootstrap: {desc} failed (ignored): {exc}")
        return False
    if result.returncode != 0:
        log_line(ctx, f"bootstrap: {desc} exited {result.returncode} (ignored)")
        return False
    return True


def spawn_detached(
    ctx: BootContext,
    args: list[str],
    log_path: str | Path,
    *,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
) -> subprocess.Popen:
    """Start ``args`` in its own session with combined output in ``log_path``."""
    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_line(ctx, f"bootstrap: starting {' '.join(args)} (log {log_path})")
    with open(log_path, "wb") as out:
        return subprocess.Popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=out,
            stderr=subprocess.STDOUT,
            cwd=cwd,
            env=env if env is not None else os.environ.copy(),
            start_new_session=True,
        )
