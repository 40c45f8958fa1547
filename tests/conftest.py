from __future__ import annotations

from dataclasses import replace

import pytest

from podboot.context import load_context


@pytest.fixture
def ctx(tmp_path):
    base = tmp_path / "base"
    base.mkdir()
    context = load_context(env={"PODBOOT_BASE_DIR": str(base)})
    return replace(
        context,
        scratch_dir=str(tmp_path / "scratch"),
        log_file=str(tmp_path / "podboot.log"),
        workspace_dir=str(tmp_path / "workspace"),
    )


@pytest.fixture
def log_text(ctx):
    def read() -> str:
        try:
            with open(ctx.log_file, encoding="utf-8") as handle:
                return handle.read()
        except FileNotFoundError:
            return ""

    return read
