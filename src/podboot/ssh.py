from __future__ import annotations

import os
import secrets
import shutil
from dataclasses import dataclass
from pathlib import Path

from .context import BootContext
from .envexport import append_once
from .proc import log_line, run_best_effort, run_cmd

HOST_KEY_TYPES = ("rsa", "dsa", "ecdsa", "ed25519")


@dataclass(frozen=True)
class SshPaths:
    host_key_dir: str = "/etc/ssh"
    user_ssh_dir: str = "/root/.ssh"
    sshd_config: str = "/etc/ssh/sshd_config"
    sshd: str = "/usr/sbin/sshd"
    login_user: str = "root"

    def host_key(self, key_type: str) -> Path:
        return Path(self.host_key_dir) / f"ssh_host_{key_type}_key"

    @property
    def authorized_keys(self) -> Path:
        return Path(self.user_ssh_dir) / "authorized_keys"


def ensure_host_keys(ctx: BootContext, paths: SshPaths) -> list[str]:
    """Generate missing host keys; return the key types present afterwards."""
    present = []
    for key_type in HOST_KEY_TYPES:
        key = paths.host_key(key_type)
        if key.exists():
            present.append(key_type)
            continue
        try:
            run_cmd(ctx, ["ssh-keygen", "-t", key_type, "-f", str(key), "-q", "-N", ""], f"ssh-keygen {key_type}")
        except Exception as exc:
            log_line(ctx, f"ssh: could not generate {key_type} host key (ignored): {exc}")
            continue
        log_line(ctx, f"ssh: {key_type.upper()} key fingerprint:")
        run_best_effort(ctx, ["ssh-keygen", "-lf", f"{key}.pub"], f"fingerprint {key_type}")
        present.append(key_type)
    return present


def authorize_key(ctx: BootContext, paths: SshPaths, public_key: str) -> None:
    ssh_dir = Path(paths.user_ssh_dir)
    ssh_dir.mkdir(parents=True, exist_ok=True)
    if append_once(str(paths.authorized_keys), public_key.strip()):
        log_line(ctx, "ssh: public key added to authorized_keys")
    else:
        log_line(ctx, "ssh: public key already authorized")
    os.chmod(ssh_dir, 0o700)
    for child in ssh_dir.iterdir():
        if child.is_file():
            os.chmod(child, 0o600)


def set_random_password(ctx: BootContext, paths: SshPaths) -> str | None:
    password = secrets.token_urlsafe(12)
    try:
        run_cmd(ctx, ["chpasswd"], "chpasswd", input=f"{paths.login_user}:{password}\n")
    except Exception as exc:
        log_line(ctx, f"ssh: could not set a password for {paths.login_user} (ignored): {exc}")
        return None
    # Shown once; never persisted.
    log_line(ctx, f"ssh: generated random password for {paths.login_user}: {password}")
    return password


def setup_ssh(ctx: BootContext, paths: SshPaths | None = None) -> bool:
    paths = paths or SshPaths()
    if shutil.which("ssh-keygen") is None or not Path(paths.sshd).exists():
        log_line(ctx, "ssh: openssh not installed in this image; skipping")
        return False
    Path(paths.user_ssh_dir).mkdir(parents=True, exist_ok=True)
    present = ensure_host_keys(ctx, paths)
    if ctx.public_key:
        authorize_key(ctx, paths, ctx.public_key)
    else:
        set_random_password(ctx, paths)
    append_once(paths.sshd_config, "PermitUserEnvironment yes")
    if not present:
        log_line(ctx, "ssh: no host keys available; not starting sshd")
        return False
    run_cmd(ctx, [paths.sshd], "start sshd")
    return True
