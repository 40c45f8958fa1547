"""Idempotent launch of auxiliary services.

Each service moves through UNINITIALIZED -> INITIALIZING -> INITIALIZED ->
RUNNING on every boot. The persisted marker is only published after every
init step succeeded, so an interrupted init is retried in full next boot.
Initialization governs persisted configuration; every boot starts a fresh
process regardless.
"""

from __future__ import annotations

import enum
import os
import shutil
import socket
from dataclasses import dataclass, field
from pathlib import Path

from .context import BootContext
from .proc import log_line, run_cmd, spawn_detached
from .supervisor import Supervisor


class ServiceState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"
    RUNNING = "running"


@dataclass
class ServiceRecord:
    name: str
    binary: str
    start_args: list[str]
    log_path: Path
    marker: Path | None = None
    # Init steps write here; renamed onto ``marker`` once all succeed.
    staging: Path | None = None
    init_steps: list[list[str]] = field(default_factory=list)
    port: int | None = None
    cwd: str | None = None
    state: ServiceState = ServiceState.UNINITIALIZED

    def initialized(self) -> bool:
        return self.marker is None or self.marker.exists()

    def ready(self, host: str = "127.0.0.1", timeout: float = 1.0) -> bool:
        if self.port is None:
            return True
        try:
            with socket.create_connection((host, self.port), timeout=timeout):
                return True
        except OSError:
            return False


def filebrowser_service(ctx: BootContext) -> ServiceRecord:
    db = ctx.filebrowser_db
    staging = db.with_name(db.name + ".init")
    fb = ["filebrowser", "-d", str(staging)]
    return ServiceRecord(
        name="filebrowser",
        binary="filebrowser",
        marker=db,
        staging=staging,
        init_steps=[
            fb + ["config", "init"],
            fb + ["config", "set", "--address", "0.0.0.0"],
            fb + ["config", "set", "--port", str(ctx.ports.filebrowser)],
            fb + ["config", "set", "--root", ctx.workspace_dir],
            fb + ["config", "set", "--auth.method=json"],
            fb + ["users", "add", ctx.filebrowser_admin, ctx.filebrowser_password, "--perm.admin"],
        ],
        start_args=["filebrowser", "-d", str(db)],
        log_path=Path(ctx.base_dir) / "filebrowser.log",
        port=ctx.ports.filebrowser,
    )


def jupyter_service(ctx: BootContext) -> ServiceRecord:
    workspace = ctx.workspace_dir
    return ServiceRecord(
        name="jupyter",
        binary="jupyter",
        start_args=[
            "jupyter",
            "lab",
            "--allow-root",
            "--no-browser",
            f"--port={ctx.ports.notebook}",
            "--ip=0.0.0.0",
            "--FileContentsManager.delete_to_trash=False",
            f"--FileContentsManager.preferred_dir={workspace}",
            f"--ServerApp.root_dir={workspace}",
            '--ServerApp.terminado_settings={"shell_command":["/bin/bash"]}',
            f"--IdentityProvider.token={ctx.jupyter_password or ''}",
            "--ServerApp.allow_origin=*",
        ],
        log_path=Path(ctx.base_dir) / "jupyter.log",
        port=ctx.ports.notebook,
        cwd=workspace,
    )


def initialize(ctx: BootContext, record: ServiceRecord) -> None:
    record.state = ServiceState.INITIALIZING
    log_line(ctx, f"services: initializing {record.name}")
    if record.staging is not None and record.staging.exists():
        record.staging.unlink()
    if record.marker is not None:
        record.marker.parent.mkdir(parents=True, exist_ok=True)
    for i, step in enumerate(record.init_steps, start=1):
        run_cmd(ctx, step, f"{record.name} init {i}/{len(record.init_steps)}")
    if record.marker is not None:
        if record.staging is not None and record.staging.exists():
            os.replace(record.staging, record.marker)
        else:
            record.marker.touch()
    record.state = ServiceState.INITIALIZED


def launch_service(ctx: BootContext, record: ServiceRecord, supervisor: Supervisor) -> ServiceState | None:
    if shutil.which(record.binary) is None:
        log_line(ctx, f"services: {record.binary} not installed; skipping {record.name}")
        return None
    if record.initialized():
        log_line(ctx, f"services: using existing {record.name} configuration")
        record.state = ServiceState.INITIALIZED
    else:
        initialize(ctx, record)
    if record.cwd:
        Path(record.cwd).mkdir(parents=True, exist_ok=True)
    proc = spawn_detached(ctx, record.start_args, record.log_path, cwd=record.cwd)
    supervisor.register(record.name, proc)
    record.state = ServiceState.RUNNING
    log_line(ctx, f"services: {record.name} started (pid {proc.pid})")
    return record.state


def launch_services(ctx: BootContext, records: list[ServiceRecord], supervisor: Supervisor) -> dict[str, ServiceState | None]:
    results = {}
    for record in records:
        try:
            results[record.name] = launch_service(ctx, record, supervisor)
        except Exception as exc:
            log_line(ctx, f"services: {record.name} failed (ignored): {exc}")
            results[record.name] = None
    return results
