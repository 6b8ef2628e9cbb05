import re
from typing import Optional


def format_decimal(value: float) -> str:
    text = f"{value:.3f}".rstrip("0")
    if text.endswith("."):
        text += "0"
    return text


def parse_int(text: str) -> Optional[int]:
    raw = text.strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def parse_ffmpeg_time(value: str) -> Optional[float]:
    raw = value.strip()
    if not raw:
        return None
    if re.fullmatch(r"\d+(\.\d+)?", raw):
        return float(raw)
    parts = raw.split(":")
    if len(parts) == 3:
        try:
            return int(parts[0]) * 3600 + int(parts[1]) * 60 + float(parts[2])
        except ValueError:
            return None
    return None
