"""Decode animated WebP into composed PNG frames plus an ffconcat list.

FFmpeg's webp demuxer does not decode ANIM/ANMF frames, so animations are
expanded here and fed to the encoder through the concat demuxer with each
frame's own display time.
"""

import logging
from pathlib import Path
from typing import List, Tuple

from PIL import Image, ImageSequence

from config.constants import DEFAULT_FRAME_MS
from core.errors import EngineRuntimeFailure

logger = logging.getLogger(__name__)

FRAME_LIST_NAME = "frames.ffconcat"


def _quote(name: str) -> str:
    return name.replace("'", r"'\''")


def write_concat_list(frames: List[Tuple[str, int]], dest: Path) -> Path:
    lines = ["ffconcat version 1.0"]
    for name, duration_ms in frames:
        lines.append(f"file '{_quote(name)}'")
        lines.append(f"duration {duration_ms / 1000:.6f}")
    if frames:
        # the last duration only applies when the file is listed once more
        lines.append(f"file '{_quote(frames[-1][0])}'")
    dest.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return dest


def extract_frames(source: Path, work_dir: Path) -> Path:
    frames: List[Tuple[str, int]] = []
    try:
        with Image.open(source) as img:
            for index, frame in enumerate(ImageSequence.Iterator(img), start=1):
                name = f"frame_{index:04d}.png"
                frame.convert("RGBA").save(work_dir / name)
                duration = int(frame.info.get("duration") or 0)
                frames.append((name, duration if duration > 0 else DEFAULT_FRAME_MS))
    except (OSError, EOFError, ValueError) as exc:
        raise EngineRuntimeFailure(f"Could not decode animation frames: {exc}") from exc
    if not frames:
        raise EngineRuntimeFailure("Animation contains no frames")
    logger.debug(f"Decoded {len(frames)} frame(s) from {Path(source).name}")
    return write_concat_list(frames, Path(work_dir) / FRAME_LIST_NAME)
