from __future__ import annotations

import os
import shutil
from pathlib import Path

from huggingface_hub import snapshot_download

from .context import BootContext
from .proc import log_line

ALLOW_PATTERNS = ["*.json", "*.JSON"]


def mirror_workflows(ctx: BootContext, src: Path, dst: Path) -> tuple[int, int]:
    """Copy every ``.json`` under ``src`` flat into ``dst``; later files win."""
    dst.mkdir(parents=True, exist_ok=True)
    copied = failed = 0
    for root, _, files in os.walk(src):
        for name in sorted(files):
            if not name.lower().endswith(".json"):
                continue
            try:
                shutil.copy2(os.path.join(root, name), dst / name)
            except OSError as exc:
                log_line(ctx, f"workflows: could not copy {name}: {exc}")
                failed += 1
                continue
            log_line(ctx, f"workflows: synced {name}")
            copied += 1
    return copied, failed


def sync_workflows(ctx: BootContext) -> int | None:
    if not ctx.workflows_repo:
        log_line(ctx, "workflows: HF_WORKFLOWS_REPO not set. Skipping workflow sync.")
        return None
    if not Path(ctx.app_dir).is_dir():
        log_line(ctx, f"workflows: {ctx.app_dir} not found yet. Skipping workflow sync.")
        return None
    log_line(ctx, f"workflows: syncing from {ctx.workflows_repo}")
    local = snapshot_download(
        repo_id=ctx.workflows_repo,
        token=ctx.hf_token,
        allow_patterns=ALLOW_PATTERNS,
    )
    src = Path(local) / ctx.workflows_subdir if ctx.workflows_subdir else Path(local)
    if not src.is_dir():
        log_line(ctx, f"workflows: {ctx.workflows_subdir} not found in snapshot")
        return 0
    copied, failed = mirror_workflows(ctx, src, ctx.workflows_dir)
    log_line(ctx, f"workflows: done. {copied} synced, {failed} failed")
    return copied
