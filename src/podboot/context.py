"""Boot configuration, resolved once per boot.

Defaults < optional YAML file (``--config``) < process environment.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

DEFAULT_BASE_DIR = "/workspace/runpod-slim"
DEFAULT_WORKSPACE_DIR = "/workspace"
DEFAULT_APP_REPO = "https://github.com/comfyanonymous/ComfyUI.git"
DEFAULT_WORKFLOWS_REPO = "Shreyash113/workflows"

DEFAULT_EXTENSIONS = [
    "https://github.com/ltdrdata/ComfyUI-Manager.git",
    "https://github.com/kijai/ComfyUI-KJNodes.git",
    "https://github.com/MoonGoblinDev/Civicomfy.git",
    "https://github.com/MadiatorLabs/ComfyUI-RunpodDirect.git",
    "https://github.com/kijai/ComfyUI-WanVideoWrapper.git",
    "https://github.com/Kosinkadink/ComfyUI-VideoHelperSuite.git",
    "https://github.com/rgthree/rgthree-comfy.git",
    "https://github.com/M1kep/ComfyLiterals.git",
    "https://github.com/scofano/comfy-audio-duration.git",
    "https://github.com/Lightricks/ComfyUI-LTXVideo.git",
    "https://github.com/ltdrdata/ComfyUI-Impact-Pack.git",
    "https://github.com/ltdrdata/ComfyUI-Inspire-Pack.git",
    "https://github.com/WASasquatch/was-node-suite-comfyui.git",
]

# Names matching this are republished to interactive sessions.
EXPORT_PATTERN = re.compile(
    r"^(RUNPOD_.*|PATH|_|CUDA.*|LD_LIBRARY_PATH|PYTHONPATH|MODEL_LIST_URL"
    r"|HF_TOKEN|HUGGINGFACEHUB_API_TOKEN|HF_WORKFLOWS_REPO|HF_WORKFLOWS_SUBDIR)$"
)


@dataclass(frozen=True)
class Ports:
    app: int = 8188
    notebook: int = 8888
    filebrowser: int = 8080


@dataclass(frozen=True)
class BootContext:
    base_dir: str
    workspace_dir: str
    app_dir: str
    venv_dir: str
    log_file: str
    scratch_dir: str
    app_repo: str
    extensions: tuple[str, ...]
    ports: Ports
    filebrowser_admin: str
    filebrowser_password: str
    public_key: str | None = None
    jupyter_password: str | None = None
    model_list_url: str | None = None
    hf_token: str | None = None
    workflows_repo: str | None = None
    workflows_subdir: str = ""
    require_gpu: bool = True
    download_jobs: int = 1
    download_timeout: tuple[float, float] = (30.0, 300.0)
    triton_version: str = "3.2.0"
    sageattn_version: str = "1.0.6"
    python: str = "python3.12"
    env: tuple[tuple[str, str], ...] = field(default_factory=tuple)

    @property
    def extensions_dir(self) -> Path:
        return Path(self.app_dir) / "custom_nodes"

    @property
    def workflows_dir(self) -> Path:
        return Path(self.app_dir) / "user" / "default" / "workflows"

    @property
    def args_file(self) -> Path:
        return Path(self.base_dir) / "comfyui_args.txt"

    @property
    def app_log(self) -> Path:
        return Path(self.base_dir) / "comfyui.log"

    @property
    def filebrowser_db(self) -> Path:
        return Path(self.base_dir) / "filebrowser.db"

    @property
    def venv_python(self) -> str:
        candidate = Path(self.venv_dir) / "bin" / "python"
        if candidate.exists():
            return str(candidate)
        return self.python


def _ensure_str(value: Any, name: str) -> str:
    if isinstance(value, str):
        return value
    raise RuntimeError(f"{name} missing or invalid")


def _ensure_bool(value: Any, name: str, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off", ""):
            return False
    raise RuntimeError(f"{name} must be boolean")


def _ensure_int(value: Any, name: str, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise RuntimeError(f"{name} must be an integer") from None


def _ensure_list(value: Any, name: str) -> list[Any]:
    if isinstance(value, list):
        return value
    raise RuntimeError(f"{name} must be list")


def _optional(value: Any) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def load_file(path: str | None) -> dict[str, Any]:
    if not path:
        return {}
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"missing config file {path}")
    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise RuntimeError(f"{path}: top level must be a mapping")
    return data


def capture_env(env: Mapping[str, str]) -> tuple[tuple[str, str], ...]:
    return tuple(sorted((k, v) for k, v in env.items() if EXPORT_PATTERN.match(k)))


def load_context(env: Mapping[str, str] | None = None, config_path: str | None = None) -> BootContext:
    if env is None:
        env = os.environ
    raw = load_file(config_path)
    ports_raw = raw.get("ports") or {}
    timeout_raw = raw.get("download_timeout") or {}

    base_dir = _ensure_str(env.get("PODBOOT_BASE_DIR") or raw.get("base_dir") or DEFAULT_BASE_DIR, "base_dir")
    app_dir = _ensure_str(raw.get("app_dir") or str(Path(base_dir) / "ComfyUI"), "app_dir")

    workflows_repo = env.get("HF_WORKFLOWS_REPO")
    if workflows_repo is None:
        workflows_repo = raw.get("workflows_repo", DEFAULT_WORKFLOWS_REPO)

    return BootContext(
        base_dir=base_dir,
        workspace_dir=_ensure_str(raw.get("workspace_dir") or DEFAULT_WORKSPACE_DIR, "workspace_dir"),
        app_dir=app_dir,
        venv_dir=_ensure_str(raw.get("venv_dir") or str(Path(app_dir) / ".venv"), "venv_dir"),
        log_file=_ensure_str(raw.get("log_file") or str(Path(base_dir) / "podboot.log"), "log_file"),
        scratch_dir=_ensure_str(raw.get("scratch_dir") or "/tmp", "scratch_dir"),
        app_repo=_ensure_str(raw.get("app_repo") or DEFAULT_APP_REPO, "app_repo"),
        extensions=tuple(
            str(url) for url in _ensure_list(raw.get("extensions", DEFAULT_EXTENSIONS), "extensions")
        ),
        ports=Ports(
            app=_ensure_int(ports_raw.get("app"), "ports.app", 8188),
            notebook=_ensure_int(ports_raw.get("notebook"), "ports.notebook", 8888),
            filebrowser=_ensure_int(ports_raw.get("filebrowser"), "ports.filebrowser", 8080),
        ),
        filebrowser_admin=_ensure_str(raw.get("filebrowser_admin") or "admin", "filebrowser_admin"),
        filebrowser_password=_ensure_str(
            raw.get("filebrowser_password") or "adminadmin12", "filebrowser_password"
        ),
        public_key=_optional(env.get("PUBLIC_KEY")),
        jupyter_password=_optional(env.get("JUPYTER_PASSWORD")),
        model_list_url=_optional(env.get("MODEL_LIST_URL") or raw.get("model_list_url")),
        hf_token=_optional(env.get("HF_TOKEN") or env.get("HUGGINGFACEHUB_API_TOKEN")),
        workflows_repo=_optional(workflows_repo),
        workflows_subdir=(env.get("HF_WORKFLOWS_SUBDIR") or raw.get("workflows_subdir") or "").strip().strip("/"),
        require_gpu=_ensure_bool(
            env.get("PODBOOT_REQUIRE_GPU", raw.get("require_gpu")), "require_gpu", default=True
        ),
        download_jobs=max(
            1, _ensure_int(env.get("PODBOOT_DOWNLOAD_JOBS", raw.get("download_jobs")), "download_jobs", 1)
        ),
        download_timeout=(
            float(timeout_raw.get("connect", 30)),
            float(timeout_raw.get("read", 300)),
        ),
        triton_version=_ensure_str(env.get("TRITON_VERSION") or raw.get("triton_version") or "3.2.0", "triton_version"),
        sageattn_version=_ensure_str(
            env.get("SAGEATTN_VERSION") or raw.get("sageattn_version") or "1.0.6", "sageattn_version"
        ),
        python=_ensure_str(raw.get("python") or "python3.12", "python"),
        env=capture_env(env),
    )
