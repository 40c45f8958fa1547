from __future__ import annotations

import shlex
import sys
from pathlib import Path

from .context import BootContext
from .proc import log_line, spawn_detached
from .supervisor import Supervisor

APP_NAME = "comfyui"
ARGS_HEADER = "# Add your custom ComfyUI arguments here (one per line)\n"


def ensure_args_file(ctx: BootContext) -> Path:
    path = ctx.args_file
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(ARGS_HEADER, encoding="utf-8")
        log_line(ctx, f"launcher: created empty arguments file at {path}")
    return path


def read_extra_args(path: Path, ctx: BootContext | None = None) -> list[str]:
    if not path.exists():
        return []
    lines = [
        line.strip()
        for line in path.read_text(encoding="utf-8", errors="replace").splitlines()
        if line.strip() and not line.strip().startswith("#")
    ]
    text = " ".join(lines)
    try:
        return shlex.split(text)
    except ValueError as exc:
        # Unbalanced quotes fall back to plain word splitting.
        if ctx is not None:
            log_line(ctx, f"launcher: {path.name}: {exc}; splitting on whitespace")
        return text.split()


def build_args(ctx: BootContext) -> list[str]:
    fixed = ["--listen", "0.0.0.0", "--port", str(ctx.ports.app)]
    return [ctx.venv_python, "main.py", *fixed, *read_extra_args(ctx.args_file, ctx)]


def launch_app(ctx: BootContext, supervisor: Supervisor):
    ensure_args_file(ctx)
    args = build_args(ctx)
    log_line(ctx, "launcher: starting ComfyUI")
    proc = spawn_detached(ctx, args, ctx.app_log, cwd=ctx.app_dir)
    supervisor.register(APP_NAME, proc)
    return proc


def follow_app(ctx: BootContext, supervisor: Supervisor) -> int:
    """Echo the application log until the process exits; return its exit code."""
    for line in supervisor.follow(APP_NAME, ctx.app_log):
        sys.stdout.write(line + "\n")
        sys.stdout.flush()
    code = supervisor.procs[APP_NAME].returncode
    log_line(ctx, f"launcher: ComfyUI exited with code {code}")
    return code if code is not None else 1
