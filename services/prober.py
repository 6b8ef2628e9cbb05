"""Format probing: is the input animated, how many frames, how long.

WebP files are read directly from their RIFF chunk layout. Other image
formats are handed to ffprobe when it is available.
"""

import logging
import struct
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Tuple

from config.constants import DEFAULT_FRAME_MS
from core.errors import ProbeError
from core.models import ProbeResult
from utils.files import is_webp

logger = logging.getLogger(__name__)

VP8X_ANIMATION_FLAG = 0x02
_IMAGE_CHUNKS = {b"VP8 ", b"VP8L", b"VP8X", b"ANMF"}


def _u24(data: bytes, offset: int) -> int:
    return data[offset] | (data[offset + 1] << 8) | (data[offset + 2] << 16)


def _iter_chunks(fh: BinaryIO, riff_end: int) -> Iterator[Tuple[bytes, int, int]]:
    """Yield (fourcc, payload_offset, payload_size); stops at truncation."""
    pos = 12
    while pos + 8 <= riff_end:
        fh.seek(pos)
        header = fh.read(8)
        if len(header) < 8:
            return
        fourcc = header[:4]
        size = struct.unpack("<I", header[4:])[0]
        yield fourcc, pos + 8, size
        pos += 8 + size + (size & 1)


def _vp8_size(payload: bytes) -> Optional[Tuple[int, int]]:
    if len(payload) < 10 or payload[3:6] != b"\x9d\x01\x2a":
        return None
    width = struct.unpack("<H", payload[6:8])[0] & 0x3FFF
    height = struct.unpack("<H", payload[8:10])[0] & 0x3FFF
    return width, height


def _vp8l_size(payload: bytes) -> Optional[Tuple[int, int]]:
    if len(payload) < 5 or payload[0] != 0x2F:
        return None
    bits = struct.unpack("<I", payload[1:5])[0]
    width = (bits & 0x3FFF) + 1
    height = ((bits >> 14) & 0x3FFF) + 1
    return width, height


def probe_webp(path: Path) -> ProbeResult:
    try:
        fh = path.open("rb")
    except OSError as exc:
        raise ProbeError(f"Cannot read {path.name}: {exc}") from exc

    with fh:
        try:
            header = fh.read(12)
            if len(header) < 12 or header[:4] != b"RIFF" or header[8:12] != b"WEBP":
                raise ProbeError(f"{path.name} is not a WebP file")
            riff_end = 8 + struct.unpack("<I", header[4:8])[0]

            animated = False
            frames = 0
            total_ms = 0
            width: Optional[int] = None
            height: Optional[int] = None
            seen_image = False

            for fourcc, offset, size in _iter_chunks(fh, riff_end):
                if fourcc in _IMAGE_CHUNKS:
                    seen_image = True
                if fourcc == b"VP8X":
                    fh.seek(offset)
                    payload = fh.read(min(size, 10))
                    if len(payload) >= 10:
                        animated = animated or bool(payload[0] & VP8X_ANIMATION_FLAG)
                        width = _u24(payload, 4) + 1
                        height = _u24(payload, 7) + 1
                elif fourcc == b"ANIM":
                    animated = True
                elif fourcc == b"ANMF":
                    animated = True
                    fh.seek(offset)
                    payload = fh.read(min(size, 16))
                    if len(payload) >= 15:
                        frames += 1
                        total_ms += _u24(payload, 12) or DEFAULT_FRAME_MS
                elif fourcc in (b"VP8 ", b"VP8L") and width is None:
                    fh.seek(offset)
                    payload = fh.read(min(size, 10))
                    dims = _vp8_size(payload) if fourcc == b"VP8 " else _vp8l_size(payload)
                    if dims:
                        width, height = dims
        except OSError as exc:
            raise ProbeError(f"Cannot read {path.name}: {exc}") from exc

    if not seen_image:
        raise ProbeError(f"{path.name} contains no image data")

    if animated and frames > 1:
        return ProbeResult(
            is_animated=True,
            frame_count=frames,
            duration=total_ms / 1000.0,
            width=width,
            height=height,
        )
    # an ANIM container with a single frame encodes like a still image
    return ProbeResult(is_animated=False, frame_count=1, duration=None, width=width, height=height)


class FormatProber:
    def __init__(self, ffmpeg_service=None):
        self.ffmpeg = ffmpeg_service

    def probe(self, path: Path) -> ProbeResult:
        path = Path(path)
        if not path.is_file():
            raise ProbeError(f"Input file does not exist: {path}")
        if is_webp(path):
            result = probe_webp(path)
        else:
            result = self._probe_with_ffprobe(path)
        logger.debug(
            f"Probed {path.name}: animated={result.is_animated} frames={result.frame_count} "
            f"duration={result.duration} size={result.width}x{result.height}"
        )
        return result

    def _probe_with_ffprobe(self, path: Path) -> ProbeResult:
        if self.ffmpeg is None or not self.ffmpeg.ffprobe_path:
            raise ProbeError(f"Unsupported input format: {path.suffix or path.name}")
        info = self.ffmpeg.probe_media(path)
        if info is None or info.vcodec is None:
            raise ProbeError(f"ffprobe could not read {path.name}")
        frames = info.frame_count or 1
        if frames > 1 and info.duration:
            return ProbeResult(
                is_animated=True,
                frame_count=frames,
                duration=info.duration,
                width=info.width,
                height=info.height,
            )
        return ProbeResult(is_animated=False, frame_count=1, width=info.width, height=info.height)
