import json
import logging
import math
import re
import subprocess
from dataclasses import dataclass, replace
from pathlib import Path
from typing import List, Optional, Tuple

from config.constants import (
    AUDIO_BITRATE,
    AUDIO_CODEC,
    ENCODER_PRESET,
    EVEN_PAD_FILTER,
    H264_LEVEL,
    H264_PROFILE,
    MAX_STATIC_DURATION,
    MIN_STATIC_DURATION,
    OUT_FORMATS,
    PIX_FMT,
    TUNE,
    VIDEO_ENCODER,
)
from core.errors import BuildError
from core.models import BatchSettings, JobOptions, MediaInfo, ProbeResult
from utils.formatting import format_decimal

logger = logging.getLogger(__name__)

_HEX_COLOR = re.compile(r"^#?([0-9a-fA-F]{6})([0-9a-fA-F]{2})?$")
MAX_FPS = 240


def parse_hex_color(color: str) -> Optional[Tuple[str, float]]:
    """Return ("0xRRGGBB", alpha) for #RRGGBB / #RRGGBBAA, else None."""
    m = _HEX_COLOR.match(color.strip())
    if not m:
        return None
    alpha = int(m.group(2), 16) / 255.0 if m.group(2) else 1.0
    return f"0x{m.group(1).upper()}", alpha


def build_video_filter(background: Optional[str]) -> str:
    if not background:
        return EVEN_PAD_FILTER
    parsed = parse_hex_color(background)
    if parsed is None:
        raise BuildError(f"Invalid background colour: {background}")
    color, alpha = parsed
    return (
        f"format=rgba,split[fg][base];"
        f"[base]drawbox=c={color}@{alpha:.2f}:t=fill[bg];"
        f"[bg][fg]overlay=format=auto,{EVEN_PAD_FILTER}"
    )


@dataclass(frozen=True)
class EncodeInvocation:
    """Everything FFmpeg needs for one job, independent of the executable path."""

    source: Path
    output: Path
    container: str
    crf: int
    video_filter: str
    expected_duration: Optional[float]
    fps: Optional[str] = None
    loop_duration: Optional[str] = None
    frame_list: Optional[Path] = None
    video_codec: str = VIDEO_ENCODER
    preset: str = ENCODER_PRESET
    pix_fmt: str = PIX_FMT
    profile: str = H264_PROFILE
    level: str = H264_LEVEL
    tune: str = TUNE
    audio_codec: str = AUDIO_CODEC
    audio_bitrate: str = AUDIO_BITRATE

    def args(self) -> List[str]:
        args: List[str] = []
        if self.frame_list is not None:
            args += ["-f", "concat", "-safe", "0", "-i", str(self.frame_list)]
        else:
            if self.loop_duration is not None:
                args += ["-loop", "1", "-t", self.loop_duration]
            args += ["-i", str(self.source)]
        args += ["-map", "0:v:0", "-map", "0:a:0?"]
        args += ["-vf", self.video_filter]
        if self.fps is not None:
            args += ["-r", self.fps]
        args += [
            "-c:v", self.video_codec,
            "-preset", self.preset,
            "-tune", self.tune,
            "-crf", str(self.crf),
            "-pix_fmt", self.pix_fmt,
            "-profile:v", self.profile,
            "-level", self.level,
        ]
        args += ["-c:a", self.audio_codec, "-b:a", self.audio_bitrate]
        args += ["-movflags", "+faststart", "-f", self.container, "-y", str(self.output)]
        return args

    def command(self, ffmpeg_path: str) -> List[str]:
        return [ffmpeg_path, "-hide_banner", "-nostats", "-progress", "pipe:1"] + self.args()

    def with_frames(self, frame_list: Path) -> "EncodeInvocation":
        """Read decoded frames from an ffconcat list instead of the WebP file."""
        return replace(self, frame_list=Path(frame_list))


def build_invocation(
    source: Path,
    probe: ProbeResult,
    options: JobOptions,
    settings: BatchSettings,
    output: Path,
) -> EncodeInvocation:
    container = (settings.output_format or "").strip().lower()
    if container not in OUT_FORMATS:
        raise BuildError(f"Unsupported output format: {settings.output_format}")

    fps: Optional[str] = None
    if options.fps is not None:
        if isinstance(options.fps, bool) or not isinstance(options.fps, int) or not 0 < options.fps <= MAX_FPS:
            raise BuildError(f"Invalid framerate: {options.fps}")
        fps = str(options.fps)

    loop_duration: Optional[str] = None
    if probe.is_animated:
        expected = probe.duration
    else:
        duration = settings.static_duration
        if not math.isfinite(duration) or not MIN_STATIC_DURATION <= duration <= MAX_STATIC_DURATION:
            raise BuildError(f"Invalid static duration: {duration}")
        loop_duration = format_decimal(duration)
        expected = duration

    return EncodeInvocation(
        source=Path(source),
        output=Path(output),
        container=container,
        crf=options.quality.crf,
        video_filter=build_video_filter(settings.background),
        expected_duration=expected,
        fps=fps,
        loop_duration=loop_duration,
    )


class FfmpegService:
    def __init__(self, ffmpeg_path: Optional[str], ffprobe_path: Optional[str]):
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.encoder_caps: set[str] = set()

    def set_paths(self, ffmpeg_path: Optional[str], ffprobe_path: Optional[str]) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path

    def detect_encoders(self) -> set[str]:
        if not self.ffmpeg_path:
            return set()
        try:
            r = subprocess.run([self.ffmpeg_path, "-hide_banner", "-encoders"], capture_output=True, text=True)
        except OSError as exc:
            logger.warning(f"Could not list encoders: {exc}")
            return set()
        if r.returncode != 0:
            return set()
        encoders: set[str] = set()
        for line in r.stdout.splitlines():
            line = line.strip()
            if not line or line.startswith("Encoders:") or line.startswith("--"):
                continue
            parts = line.split()
            if len(parts) >= 2:
                encoders.add(parts[1])
        return encoders

    def has_h264(self) -> bool:
        return not self.encoder_caps or VIDEO_ENCODER in self.encoder_caps

    def probe_media(self, path: Path) -> Optional[MediaInfo]:
        if not self.ffprobe_path:
            return None
        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-show_entries", "format=duration:stream=codec_type,codec_name,width,height,nb_frames",
            "-of", "json",
            str(path),
        ]
        try:
            r = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as exc:
            logger.warning(f"ffprobe failed to start: {exc}")
            return None
        if r.returncode != 0:
            return None
        try:
            data = json.loads(r.stdout)
        except json.JSONDecodeError:
            return None

        info = MediaInfo()
        fmt = data.get("format", {})
        dur = fmt.get("duration")
        if dur is not None:
            try:
                info.duration = float(dur)
            except ValueError:
                pass

        for stream in data.get("streams", []):
            if stream.get("codec_type") == "video" and info.vcodec is None:
                info.vcodec = stream.get("codec_name")
                info.width = stream.get("width")
                info.height = stream.get("height")
                frames = stream.get("nb_frames")
                if frames not in (None, "N/A"):
                    try:
                        info.frame_count = int(frames)
                    except ValueError:
                        pass
        return info
