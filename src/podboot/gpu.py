from __future__ import annotations

import json
import shutil
import subprocess
from dataclasses import dataclass, field

from .context import BootContext
from .proc import log_line

TORCH_PROBE = """
import json
try:
    import torch
except Exception as exc:
    print(json.dumps({"error": "torch import failed: %s" % exc}))
else:
    ok = torch.cuda.is_available()
    count = torch.cuda.device_count() if ok else 0
    print(json.dumps({
        "torch": torch.__version__,
        "cuda": ok,
        "count": count,
        "device0": torch.cuda.get_device_name(0) if count else None,
    }))
"""


class GpuUnavailableError(RuntimeError):
    pass


@dataclass(frozen=True)
class GpuStatus:
    ok: bool
    devices: list[str] = field(default_factory=list)
    torch_version: str | None = None
    detail: str = ""


def query_nvidia_smi() -> list[str]:
    if shutil.which("nvidia-smi") is None:
        return []
    try:
        out = subprocess.check_output(
            ["nvidia-smi", "--query-gpu=name", "--format=csv,noheader"],
            stderr=subprocess.STDOUT,
            text=True,
            timeout=30,
        )
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired):
        return []
    return [line.strip() for line in out.splitlines() if line.strip()]


def probe_torch(python: str) -> dict:
    try:
        out = subprocess.check_output([python, "-c", TORCH_PROBE], text=True, timeout=120)
    except (OSError, subprocess.CalledProcessError, subprocess.TimeoutExpired) as exc:
        return {"error": f"probe failed: {exc}"}
    lines = out.strip().splitlines()
    if not lines:
        return {"error": "probe produced no output"}
    try:
        return json.loads(lines[-1])
    except json.JSONDecodeError:
        return {"error": f"unexpected probe output: {lines[-1]}"}


def verify_gpu(ctx: BootContext) -> GpuStatus:
    devices = query_nvidia_smi()
    probe = probe_torch(ctx.venv_python)
    if "error" in probe:
        return GpuStatus(ok=False, devices=devices, detail=probe["error"])
    if not probe.get("cuda"):
        detail = "torch reports cuda unavailable"
        if not devices:
            detail += "; nvidia-smi found no devices"
        return GpuStatus(ok=False, devices=devices, torch_version=probe.get("torch"), detail=detail)
    if not devices and probe.get("device0"):
        devices = [probe["device0"]]
    return GpuStatus(
        ok=True,
        devices=devices,
        torch_version=probe.get("torch"),
        detail=f"{probe.get('count', 0)} cuda device(s)",
    )


def check_gpu(ctx: BootContext) -> GpuStatus:
    log_line(ctx, "gpu: verifying runtime")
    status = verify_gpu(ctx)
    for name in status.devices:
        log_line(ctx, f"gpu: device {name}")
    if status.ok:
        log_line(ctx, f"gpu: ok (torch {status.torch_version}, {status.detail})")
        return status
    if ctx.require_gpu:
        raise GpuUnavailableError(f"gpu runtime unavailable: {status.detail}")
    log_line(ctx, f"gpu: unavailable, continuing ({status.detail})")
    return status
