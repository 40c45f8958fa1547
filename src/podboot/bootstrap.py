"""Cold-start bootstrap for a GPU ComfyUI pod.

Runs on every container start and converges the persistent volume instead of
assuming a fresh one:
  1) Republish the launch environment to ssh/notebook sessions.
  2) Host keys + credentials, then sshd.
  3) File manager and notebook server (init once, start every boot).
  4) ComfyUI checkout, venv, performance packages, GPU verification.
  5) Custom node checkouts and their install hooks (best effort).
  6) Model assets from the MODEL_LIST_URL manifest.
  7) Workflow JSON from a Hugging Face repo.
  8) Start ComfyUI and follow its log until it exits.

Only a missing GPU runtime (or a missing application) fails the boot; the other
steps log their failures and the sequence continues.
"""

from __future__ import annotations

import argparse
import signal
import sys
from pathlib import Path
from typing import Callable

from .checkout import ensure_extensions, install_extensions, prepare_app
from .context import BootContext, load_context
from .downloader import provision_models
from .envexport import export_env
from .gpu import check_gpu
from .launcher import ensure_args_file, follow_app, launch_app
from .proc import log_line
from .services import filebrowser_service, jupyter_service, launch_services
from .ssh import setup_ssh
from .supervisor import Supervisor
from .workflows import sync_workflows

# Steps that can be rerun on a live node with --only.
MAINTENANCE_STEPS: dict[str, Callable[[BootContext], object]] = {
    "env": export_env,
    "app": prepare_app,
    "extensions": lambda ctx: (ensure_extensions(ctx), install_extensions(ctx)),
    "models": provision_models,
    "workflows": sync_workflows,
}


def parse_only(arg: str | None) -> set[str] | None:
    if not arg:
        return None
    parts = [p.strip().lower() for p in arg.split(",") if p.strip()]
    if not parts:
        return None
    unknown = set(parts) - set(MAINTENANCE_STEPS)
    if unknown:
        raise RuntimeError(f"unknown steps {sorted(unknown)} (choose from {sorted(MAINTENANCE_STEPS)})")
    return set(parts)


def best_effort(ctx: BootContext, name: str, fn: Callable[[BootContext], object]) -> object:
    try:
        return fn(ctx)
    except Exception as exc:
        log_line(ctx, f"bootstrap: {name} failed (ignored): {exc}")
        return None


def report_services(ctx: BootContext, supervisor: Supervisor, records) -> None:
    status = supervisor.status()
    for record in records:
        if record.name not in status:
            continue
        code = status[record.name]
        if code is not None:
            log_line(ctx, f"bootstrap: {record.name} exited early with code {code}; see {record.log_path}")
        elif record.ready():
            log_line(ctx, f"bootstrap: {record.name} listening on port {record.port}")
        else:
            log_line(ctx, f"bootstrap: {record.name} running, not listening yet")


def provision(ctx: BootContext, supervisor: Supervisor) -> None:
    best_effort(ctx, "environment export", export_env)
    best_effort(ctx, "ssh setup", setup_ssh)
    records = [filebrowser_service(ctx), jupyter_service(ctx)]
    launch_services(ctx, records, supervisor)
    ensure_args_file(ctx)
    prepare_app(ctx)
    check_gpu(ctx)
    best_effort(ctx, "custom node checkout", ensure_extensions)
    best_effort(ctx, "custom node install", install_extensions)
    best_effort(ctx, "model download", provision_models)
    best_effort(ctx, "workflow sync", sync_workflows)
    report_services(ctx, supervisor, records)


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(prog="podboot")
    parser.add_argument("--config", help="optional YAML file with static settings")
    parser.add_argument(
        "--only",
        help=f"Comma-separated subset to rerun without starting services ({', '.join(MAINTENANCE_STEPS)})",
    )
    args = parser.parse_args(argv)
    ctx = load_context(config_path=args.config)
    log_line(ctx, "bootstrap: starting")
    log_line(ctx, f"bootstrap: base={ctx.base_dir} app={ctx.app_dir}")
    supervisor = Supervisor()
    following = False

    def shutdown(signum, frame):
        log_line(ctx, f"bootstrap: received signal {signum}, stopping services")
        supervisor.terminate_all()
        # While following, the primary process exiting ends the loop instead.
        if not following:
            raise SystemExit(128 + signum)

    signal.signal(signal.SIGTERM, shutdown)
    signal.signal(signal.SIGINT, shutdown)
    try:
        Path(ctx.base_dir).mkdir(parents=True, exist_ok=True)
        only = parse_only(args.only)
        if only:
            log_line(ctx, f"bootstrap: running subset {sorted(only)}")
            for name in MAINTENANCE_STEPS:
                if name in only:
                    MAINTENANCE_STEPS[name](ctx)
            return 0
        provision(ctx, supervisor)
        launch_app(ctx, supervisor)
    except Exception as exc:
        log_line(ctx, f"bootstrap: failed: {exc}")
        supervisor.terminate_all()
        return 1

    following = True
    log_line(ctx, "bootstrap: node ready")
    code = follow_app(ctx, supervisor)
    supervisor.terminate_all()
    return code


def run() -> None:
    sys.exit(main(sys.argv[1:]))


if __name__ == "__main__":
    run()
