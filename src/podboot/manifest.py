"""Asset manifest: one ``<url> <relative-path>`` pair per line.

Blank lines and ``#`` comments are ignored. Anything that does not split into
exactly two tokens is reported and dropped; the rest of the manifest is still
used.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import requests

from .context import BootContext
from .http import get_session
from .proc import log_line


@dataclass(frozen=True)
class ManifestEntry:
    url: str
    dest: str
    line_no: int = 0


def sanitize_relpath(rel: str) -> str:
    """Drop separators, ``.`` and ``..`` segments so the path stays relative."""
    parts = rel.strip().replace("\\", "/").split("/")
    return "/".join(p for p in parts if p not in ("", ".", ".."))


def parse_manifest(lines: Iterable[str]) -> tuple[list[ManifestEntry], list[str]]:
    entries = []
    problems = []
    for line_no, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        if len(parts) != 2:
            problems.append(f"line {line_no}: expected '<url> <relative_path>': {line}")
            continue
        url, rel = parts
        dest = sanitize_relpath(rel)
        if not dest:
            problems.append(f"line {line_no}: empty destination after sanitizing: {line}")
            continue
        entries.append(ManifestEntry(url=url, dest=dest, line_no=line_no))
    return entries, problems


def fetch_manifest(ctx: BootContext, session: requests.Session | None = None) -> Path:
    session = session or get_session()
    target = Path(ctx.scratch_dir) / "model_list.txt"
    target.parent.mkdir(parents=True, exist_ok=True)
    log_line(ctx, f"models: fetching manifest {ctx.model_list_url}")
    resp = session.get(ctx.model_list_url, timeout=ctx.download_timeout)
    resp.raise_for_status()
    target.write_bytes(resp.content)
    return target


def decode_lines(data: bytes) -> tuple[list[str], list[str]]:
    """Decode each line on its own; undecodable lines become blank and are reported."""
    lines = []
    problems = []
    for line_no, raw in enumerate(data.splitlines(), start=1):
        try:
            lines.append(raw.decode("utf-8"))
        except UnicodeDecodeError:
            problems.append(f"line {line_no}: not valid UTF-8")
            lines.append("")
    return lines, problems


def load_manifest(ctx: BootContext, session: requests.Session | None = None) -> list[ManifestEntry]:
    path = fetch_manifest(ctx, session)
    lines, undecodable = decode_lines(path.read_bytes())
    entries, problems = parse_manifest(lines)
    for problem in undecodable + problems:
        log_line(ctx, f"models: skipping {problem}")
    return entries
