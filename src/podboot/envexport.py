"""Republish the captured environment slice to interactive sessions.

Values set at container launch (tokens, CUDA paths, platform metadata) are
invisible to sessions started later by sshd or the notebook server. Each
allow-listed variable is written to every file those sessions read.

Tokens end up world-readable in /etc/environment. That is accepted: the node
is single-tenant and sessions need them.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from .context import BootContext
from .proc import log_line


@dataclass(frozen=True)
class ExportTargets:
    environment: str = "/etc/environment"
    pam_env: str = "/etc/security/pam_env.conf"
    ssh_env: str = "/root/.ssh/environment"
    profile: str = "/etc/rp_environment"
    shell_rcs: tuple[str, ...] = ("/root/.bashrc", "/etc/bash.bashrc")

    def source_line(self) -> str:
        return f"source {self.profile}"


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def render(env: tuple[tuple[str, str], ...]) -> dict[str, str]:
    environment, pam, ssh, profile = [], [], [], []
    for name, value in env:
        quoted = _quote(value)
        environment.append(f'{name}="{quoted}"')
        pam.append(f'{name} DEFAULT="{quoted}"')
        ssh.append(f'{name}="{quoted}"')
        profile.append(f'export {name}="{quoted}"')
    return {
        "environment": "".join(line + "\n" for line in environment),
        "pam_env": "".join(line + "\n" for line in pam),
        "ssh_env": "".join(line + "\n" for line in ssh),
        "profile": "".join(line + "\n" for line in profile),
    }


def append_once(path: str, line: str) -> bool:
    """Append ``line`` unless an identical line is already present."""
    target = Path(path)
    text = target.read_text(encoding="utf-8") if target.exists() else ""
    if line in text.splitlines():
        return False
    target.parent.mkdir(parents=True, exist_ok=True)
    with open(target, "a", encoding="utf-8") as handle:
        if text and not text.endswith("\n"):
            handle.write("\n")
        handle.write(line + "\n")
    return True


def export_env(ctx: BootContext, targets: ExportTargets | None = None) -> int:
    targets = targets or ExportTargets()
    log_line(ctx, f"env: exporting {len(ctx.env)} variables")
    rendered = render(ctx.env)
    for key in ("environment", "pam_env"):
        path = getattr(targets, key)
        if Path(path).exists():
            shutil.copyfile(path, path + ".bak")
    for key, text in rendered.items():
        path = Path(getattr(targets, key))
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    os.chmod(targets.environment, 0o644)
    os.chmod(targets.pam_env, 0o644)
    os.chmod(targets.ssh_env, 0o600)
    for rc in targets.shell_rcs:
        if append_once(rc, targets.source_line()):
            log_line(ctx, f"env: added source line to {rc}")
    return len(ctx.env)
