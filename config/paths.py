import os
import shutil
from pathlib import Path
from typing import Optional

from config.constants import JOBS_ROOT, LOG_ROOT


def _exe(name: str) -> str:
    return f"{name}.exe" if os.name == "nt" else name


def _local_candidates(exe: str):
    local = Path(__file__).resolve().parents[1]
    return [
        local / exe,
        local / "bin" / exe,
    ]


def find_ffmpeg() -> Optional[str]:
    for path in _local_candidates(_exe("ffmpeg")):
        if path.exists() and path.is_file():
            return str(path)
    return shutil.which("ffmpeg")


def find_ffprobe(ffmpeg_path: Optional[str]) -> Optional[str]:
    exe = _exe("ffprobe")
    candidates = []
    if ffmpeg_path:
        ffmpeg_dir = Path(ffmpeg_path).resolve().parent
        candidates.append(ffmpeg_dir / exe)
    candidates.extend(_local_candidates(exe))
    for path in candidates:
        if path.exists() and path.is_file():
            return str(path)
    return shutil.which("ffprobe")


def default_log_root() -> Path:
    override = os.environ.get("WEBP2MP4_LOG_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return LOG_ROOT


def default_jobs_root() -> Path:
    override = os.environ.get("WEBP2MP4_JOBS_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return JOBS_ROOT
