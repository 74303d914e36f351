"""Server settings and ffmpeg capability checks."""

from __future__ import annotations

from typing import Any

import json
import logging
import os
import pathlib
import re
import subprocess
import tempfile


log = logging.getLogger(__name__)

APP_DIR = pathlib.Path(__file__).parent
DATA_DIR = pathlib.Path(os.environ.get("DASH_DATA_DIR") or APP_DIR / "data")
SETTINGS_FILE = DATA_DIR / "server_settings.json"

DEFAULT_PORT = 3000
DEFAULT_MAX_UPLOAD_BYTES = 4 * 1024 * 1024 * 1024  # 4 GiB

_LOG_PREFIX_RE = re.compile(r"^\[[^\]]+ @ 0x[0-9a-fA-F]+\]\s*")
_MISSING_FEATURE_RE = re.compile(r"unknown (encoder|format|muxer)|not found|not compiled", re.IGNORECASE)


def _env_int(name: str) -> int | None:
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        log.warning("Ignoring non-integer %s=%r", name, raw)
        return None


def load_server_settings() -> dict[str, Any]:
    """Load server settings, filling defaults. Environment overrides the file."""
    if SETTINGS_FILE.exists():
        data: dict[str, Any] = json.loads(SETTINGS_FILE.read_text())
    else:
        data = {}
    data.setdefault("port", DEFAULT_PORT)
    data.setdefault("upload_dir", str(DATA_DIR / "uploads"))
    data.setdefault("dash_dir", str(DATA_DIR / "public" / "dash"))
    data.setdefault("max_upload_bytes", DEFAULT_MAX_UPLOAD_BYTES)
    data.setdefault("max_concurrent_jobs", 0)  # 0 = unbounded
    data.setdefault("ffmpeg_path", "ffmpeg")
    data.setdefault("ffprobe_path", "ffprobe")
    data.setdefault("probe_timeout_secs", 30)
    if (port := _env_int("PORT")) is not None:
        data["port"] = port
    if (max_bytes := _env_int("MAX_UPLOAD_BYTES")) is not None:
        data["max_upload_bytes"] = max_bytes
    return data


def save_server_settings(settings: dict[str, Any]) -> None:
    SETTINGS_FILE.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_FILE.write_text(json.dumps(settings, indent=2))


def ensure_dirs(settings: dict[str, Any]) -> None:
    for key in ("upload_dir", "dash_dir"):
        pathlib.Path(settings[key]).mkdir(parents=True, exist_ok=True)


def _run_check(cmd: list[str], timeout: int = 10) -> tuple[bool, str]:
    """Run one short ffmpeg job. Returns (ok, reason it failed)."""
    try:
        result = subprocess.run(cmd, capture_output=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        return False, f"no result after {timeout}s"
    except OSError as e:
        return False, f"cannot run {cmd[0]}: {e.strerror or e}"
    if result.returncode == 0:
        return True, ""
    lines = [
        _LOG_PREFIX_RE.sub("", line).strip()
        for line in result.stderr.decode(errors="replace").splitlines()
    ]
    lines = [line for line in lines if line]
    if not lines:
        return False, f"exit code {result.returncode}"
    # Prefer the line naming what is missing
    for line in lines:
        if _MISSING_FEATURE_RE.search(line):
            return False, line
    return False, lines[-1]


def check_encoders(ffmpeg_path: str = "ffmpeg") -> dict[str, bool]:
    """Check that ffmpeg can encode VP9 and Opus and mux DASH."""
    log.info("Checking ffmpeg capabilities...")
    base_cmd = [ffmpeg_path, "-hide_banner", "-loglevel", "error", "-y"]
    video_input = ["-f", "lavfi", "-i", "color=black:s=64x64:d=0.04", "-frames:v", "1"]
    audio_input = ["-f", "lavfi", "-i", "anullsrc=r=48000:cl=stereo", "-t", "0.1"]
    null_out = ["-f", "null", "-"]
    results: dict[str, bool] = {}
    with tempfile.TemporaryDirectory(prefix="dash_check_") as tmp:
        checks = {
            "libvpx-vp9": base_cmd + video_input + ["-c:v", "libvpx-vp9"] + null_out,
            "libopus": base_cmd + audio_input + ["-c:a", "libopus"] + null_out,
            "dash": base_cmd
            + video_input
            + ["-c:v", "libvpx-vp9", "-f", "dash", "-dash_segment_type", "webm"]
            + [str(pathlib.Path(tmp) / "manifest.mpd")],
        }
        for name, cmd in checks.items():
            ok, err = _run_check(cmd)
            results[name] = ok
            if ok:
                log.info("  %s: available", name)
            else:
                log.warning("  %s: unavailable - %s", name, err)
    return results
