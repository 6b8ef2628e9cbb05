import json
import logging
import math
from pathlib import Path
from typing import Any, Dict, Optional

from config.constants import (
    DEFAULT_NAME_TEMPLATE,
    DEFAULT_OUT_FORMAT,
    DEFAULT_STATIC_DURATION,
    MAX_STATIC_DURATION,
    MIN_STATIC_DURATION,
    OUT_FORMATS,
)
from core.models import BatchSettings, QualityPreset

logger = logging.getLogger(__name__)


def clamp_static_duration(value: Any) -> float:
    try:
        duration = float(value)
    except (TypeError, ValueError):
        return DEFAULT_STATIC_DURATION
    if not math.isfinite(duration):
        return DEFAULT_STATIC_DURATION
    return max(MIN_STATIC_DURATION, min(MAX_STATIC_DURATION, duration))


def _optional_int(value: Any) -> Optional[int]:
    if value in (None, "", "auto"):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _optional_float(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def settings_to_dict(settings: BatchSettings) -> Dict[str, Any]:
    return {
        "output_dir": str(settings.output_dir) if settings.output_dir else None,
        "output_format": settings.output_format,
        "name_template": settings.name_template,
        "default_quality": settings.default_quality.value,
        "default_fps": settings.default_fps,
        "static_duration": settings.static_duration,
        "background": settings.background,
        "job_timeout": settings.job_timeout,
    }


def settings_from_dict(data: Dict[str, Any]) -> BatchSettings:
    output_dir = (data.get("output_dir") or "").strip()
    fmt = str(data.get("output_format") or DEFAULT_OUT_FORMAT).strip().lower()
    if fmt not in OUT_FORMATS:
        fmt = DEFAULT_OUT_FORMAT
    background = (data.get("background") or "").strip() or None
    return BatchSettings(
        output_dir=Path(output_dir).expanduser() if output_dir else None,
        output_format=fmt,
        name_template=(data.get("name_template") or DEFAULT_NAME_TEMPLATE).strip(),
        default_quality=QualityPreset.parse(data.get("default_quality", "high")),
        default_fps=_optional_int(data.get("default_fps")),
        static_duration=clamp_static_duration(data.get("static_duration", DEFAULT_STATIC_DURATION)),
        background=background,
        job_timeout=_optional_float(data.get("job_timeout")),
    )


def load_batch_settings(path: Path) -> BatchSettings:
    if not path.exists():
        return BatchSettings()
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning(f"Could not read settings from {path}: {exc}")
        return BatchSettings()
    if not isinstance(data, dict):
        return BatchSettings()
    return settings_from_dict(data)


def save_batch_settings(path: Path, settings: BatchSettings) -> bool:
    try:
        with path.open("w", encoding="utf-8") as fh:
            json.dump(settings_to_dict(settings), fh, ensure_ascii=False, indent=2)
    except OSError as exc:
        logger.warning(f"Could not save settings to {path}: {exc}")
        return False
    return True
