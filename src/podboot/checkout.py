from __future__ import annotations

from pathlib import Path

from .context import BootContext
from .http import get_session
from .proc import log_line, run_best_effort, run_cmd

GET_PIP_URL = "https://bootstrap.pypa.io/get-pip.py"


def repo_dir_name(url: str) -> str:
    name = url.rstrip("/").rsplit("/", 1)[-1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    return name


def ensure_checkout(ctx: BootContext, url: str, dest: Path) -> bool:
    """Clone ``url`` into ``dest`` unless the directory already exists.

    Directory existence is the only check, so an interrupted clone is later
    mistaken for a complete one; a missing ``.git`` is reported.
    """
    if dest.exists():
        if not (dest / ".git").exists():
            log_line(ctx, f"checkout: {dest} exists without .git; it may be incomplete")
        else:
            log_line(ctx, f"checkout: already present: {dest.name}")
        return False
    dest.parent.mkdir(parents=True, exist_ok=True)
    log_line(ctx, f"checkout: cloning {url}")
    run_cmd(ctx, ["git", "clone", url, str(dest)], f"git clone {dest.name}")
    return True


def ensure_app(ctx: BootContext) -> bool:
    return ensure_checkout(ctx, ctx.app_repo, Path(ctx.app_dir))


def pip(ctx: BootContext, *args: str) -> list[str]:
    return [ctx.venv_python, "-m", "pip", *args]


def ensure_venv(ctx: BootContext) -> bool:
    if Path(ctx.venv_dir).exists():
        return False
    log_line(ctx, "checkout: creating venv")
    run_cmd(ctx, [ctx.python, "-m", "venv", "--system-site-packages", ctx.venv_dir], "create venv", cwd=ctx.app_dir)
    return True


def ensure_pip(ctx: BootContext) -> None:
    run_best_effort(ctx, [ctx.venv_python, "-m", "ensurepip", "--upgrade"], "ensurepip")
    if not run_best_effort(ctx, pip(ctx, "--version"), "pip --version"):
        log_line(ctx, "checkout: pip missing, bootstrapping via get-pip.py")
        target = Path(ctx.scratch_dir) / "get-pip.py"
        resp = get_session().get(GET_PIP_URL, timeout=ctx.download_timeout)
        resp.raise_for_status()
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(resp.content)
        try:
            run_cmd(ctx, [ctx.venv_python, str(target)], "get-pip.py")
        finally:
            target.unlink(missing_ok=True)
    run_best_effort(ctx, pip(ctx, "install", "--upgrade", "pip", "setuptools", "wheel"), "upgrade pip")


def ensure_perf_tools(ctx: BootContext) -> None:
    for requirement in (f"triton=={ctx.triton_version}", f"sageattention=={ctx.sageattn_version}"):
        run_best_effort(ctx, pip(ctx, "install", "--no-cache-dir", "-U", requirement), f"install {requirement}")


def install_app_requirements(ctx: BootContext) -> None:
    requirements = Path(ctx.app_dir) / "requirements.txt"
    if requirements.exists():
        run_best_effort(ctx, pip(ctx, "install", "-q", "-r", str(requirements)), "install app requirements")
    run_best_effort(ctx, pip(ctx, "install", "-U", "huggingface_hub"), "install huggingface_hub")


def ensure_extensions(ctx: BootContext) -> list[str]:
    ctx.extensions_dir.mkdir(parents=True, exist_ok=True)
    cloned = []
    for url in ctx.extensions:
        name = repo_dir_name(url)
        try:
            if ensure_checkout(ctx, url, ctx.extensions_dir / name):
                cloned.append(name)
        except Exception as exc:
            log_line(ctx, f"checkout: {name} failed (ignored): {exc}")
    return cloned


def install_extension(ctx: BootContext, node_dir: Path) -> bool:
    ok = True
    cwd = str(node_dir)
    if (node_dir / "requirements.txt").exists():
        ok &= run_best_effort(
            ctx, pip(ctx, "install", "--no-cache-dir", "-r", "requirements.txt"), f"{node_dir.name} requirements", cwd=cwd
        )
    if (node_dir / "install.py").exists():
        ok &= run_best_effort(ctx, [ctx.venv_python, "install.py"], f"{node_dir.name} install.py", cwd=cwd)
    if (node_dir / "setup.py").exists():
        ok &= run_best_effort(ctx, pip(ctx, "install", "--no-cache-dir", "-e", "."), f"{node_dir.name} setup.py", cwd=cwd)
    return ok


def install_extensions(ctx: BootContext) -> tuple[int, int]:
    log_line(ctx, "checkout: installing extension dependencies (best effort)")
    if not ctx.extensions_dir.is_dir():
        return 0, 0
    succeeded = failed = 0
    for node_dir in sorted(ctx.extensions_dir.iterdir()):
        if not node_dir.is_dir():
            continue
        if install_extension(ctx, node_dir):
            succeeded += 1
        else:
            failed += 1
    log_line(ctx, f"checkout: extensions installed: {succeeded} ok, {failed} with errors")
    return succeeded, failed


def prepare_app(ctx: BootContext) -> None:
    ensure_app(ctx)
    ensure_venv(ctx)
    ensure_pip(ctx)
    ensure_perf_tools(ctx)
    install_app_requirements(ctx)
