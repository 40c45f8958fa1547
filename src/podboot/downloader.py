from __future__ import annotations

import os
from dataclasses import dataclass, field
from multiprocessing.pool import ThreadPool
from pathlib import Path
from urllib.parse import urlparse

import requests

from .context import BootContext
from .http import get_session
from .manifest import ManifestEntry, load_manifest, sanitize_relpath
from .proc import log_line

PRESENCE_THRESHOLD = 1024 * 1024
CHUNK_SIZE = 1024 * 1024
TOKEN_HOSTS = ("huggingface.co", "hf.co")

SKIPPED = "skipped"
DOWNLOADED = "downloaded"
FAILED = "failed"


@dataclass
class DownloadSummary:
    downloaded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.downloaded) + len(self.failed)


def resolve_destination(root: str | Path, rel: str) -> Path:
    root_path = Path(root).resolve()
    dest = (root_path / sanitize_relpath(rel)).resolve()
    # Symlinks inside the root could still point elsewhere.
    if dest != root_path and root_path not in dest.parents:
        raise RuntimeError(f"destination {rel!r} escapes {root_path}")
    return dest


def is_present(path: Path) -> bool:
    try:
        return path.is_file() and path.stat().st_size > PRESENCE_THRESHOLD
    except OSError:
        return False


def wants_token(url: str) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return any(host == h or host.endswith("." + h) for h in TOKEN_HOSTS)


def download_asset(
    ctx: BootContext,
    entry: ManifestEntry,
    session: requests.Session | None = None,
) -> str:
    out_path = resolve_destination(ctx.app_dir, entry.dest)
    if is_present(out_path):
        log_line(ctx, f"models: exists, skipping: {out_path}")
        return SKIPPED
    session = session or get_session()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = out_path.with_name(out_path.name + ".part")
    headers = {}
    if ctx.hf_token and wants_token(entry.url):
        headers["Authorization"] = f"Bearer {ctx.hf_token}"
    log_line(ctx, f"models: downloading {entry.url}")
    with session.get(entry.url, headers=headers, stream=True, timeout=ctx.download_timeout) as resp:
        resp.raise_for_status()
        with open(tmp_path, "wb") as handle:
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                if chunk:
                    handle.write(chunk)
    os.replace(tmp_path, out_path)
    log_line(ctx, f"models: saved {out_path}")
    return DOWNLOADED


def _attempt(ctx: BootContext, entry: ManifestEntry, session: requests.Session | None) -> tuple[ManifestEntry, str]:
    try:
        return entry, download_asset(ctx, entry, session)
    except Exception as exc:
        log_line(ctx, f"models: failed {entry.url} -> {entry.dest}: {exc}")
        return entry, FAILED


def dedupe(entries: list[ManifestEntry]) -> list[ManifestEntry]:
    seen = set()
    unique = []
    for entry in entries:
        if entry.dest in seen:
            continue
        seen.add(entry.dest)
        unique.append(entry)
    return unique


def sync_assets(
    ctx: BootContext,
    entries: list[ManifestEntry],
    session: requests.Session | None = None,
) -> DownloadSummary:
    entries = dedupe(entries)
    if ctx.download_jobs > 1 and len(entries) > 1:
        # Each worker thread uses its own session.
        with ThreadPool(ctx.download_jobs) as pool:
            results = pool.map(lambda e: _attempt(ctx, e, None), entries)
    else:
        results = [_attempt(ctx, e, session) for e in entries]
    summary = DownloadSummary()
    for entry, outcome in results:
        getattr(summary, outcome).append(entry.dest)
    log_line(
        ctx,
        f"models: done. {len(summary.downloaded)} downloaded, "
        f"{len(summary.skipped)} present, {len(summary.failed)} failed",
    )
    return summary


def provision_models(ctx: BootContext, session: requests.Session | None = None) -> DownloadSummary | None:
    if not ctx.model_list_url:
        log_line(ctx, "models: MODEL_LIST_URL not set. Skipping auto model download.")
        return None
    if not Path(ctx.app_dir).is_dir():
        log_line(ctx, f"models: {ctx.app_dir} not found. Skipping model download.")
        return None
    entries = load_manifest(ctx, session)
    return sync_assets(ctx, entries, session)
