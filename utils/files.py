import time
from pathlib import Path
from typing import Optional, Set

from config.constants import COUNTER_WIDTH, INPUT_EXTS, NAME_TOKENS, PROBED_EXTS
from core.models import BatchSettings


def is_webp(path: Path) -> bool:
    return path.suffix.lower() in INPUT_EXTS


def media_type(path: Path) -> Optional[str]:
    if is_webp(path):
        return "webp"
    if path.suffix.lower() in PROBED_EXTS:
        return "image"
    return None


def sanitize_filename(value: str) -> str:
    for ch in ("/", "\\", ":"):
        value = value.replace(ch, "-")
    return value.strip()


def _replace_token(source: str, token: str, value: str) -> str:
    return source.replace("{" + token + "}", value).replace("[" + token + "]", value)


def _strip_trailing_extension(value: str, ext: str) -> str:
    if not ext:
        return value
    suffix = f".{ext.lower()}"
    if value.lower().endswith(suffix):
        return value[: -len(suffix)]
    return value


def render_output_name(
    template: str,
    stem: str,
    sequence: int,
    ext: str,
    stamp: float,
    counter_width: int = COUNTER_WIDTH,
) -> str:
    """Expand a naming template into a file stem (no extension).

    Recognised tokens are ``{name}``, ``{counter}``, ``{date}``, ``{time}``
    and ``{ext}``, also accepted in ``[token]`` form. Anything else is kept
    verbatim. ``stamp`` is the job's dispatch time, so every reference to a
    job renders the same date and time.
    """
    local = time.localtime(stamp)
    values = {
        "name": stem,
        "counter": str(sequence).zfill(max(counter_width, 1)),
        "date": time.strftime("%Y%m%d", local),
        "time": time.strftime("%H%M%S", local),
        "ext": ext,
    }
    name = template
    for token in NAME_TOKENS:
        name = _replace_token(name, token, values[token])
    name = sanitize_filename(name.strip())
    name = _strip_trailing_extension(name, ext)
    if not name:
        return sanitize_filename(stem)
    return name


def unique_output_path(path: Path, taken: Optional[Set[Path]] = None) -> Path:
    # check-then-create: two processes resolving the same name can still race
    taken = taken or set()

    def free(candidate: Path) -> bool:
        return candidate not in taken and not candidate.exists()

    if free(path):
        return path
    parent = path.parent
    stem = path.stem or "output"
    suffix = path.suffix
    i = 1
    while True:
        candidate = parent / f"{stem}-{i}{suffix}"
        if free(candidate):
            return candidate
        i += 1


def resolve_output_path(
    source: Path,
    sequence: int,
    settings: BatchSettings,
    stamp: float,
    counter_width: int = COUNTER_WIDTH,
    taken: Optional[Set[Path]] = None,
) -> Path:
    """Absolute, not-yet-existing destination for one job.

    ``taken`` holds paths already handed to other jobs of this process that
    the encoder has not created yet.
    """
    ext = settings.output_format.lstrip(".").lower()
    stem = render_output_name(settings.name_template, source.stem, sequence, ext, stamp, counter_width)
    if settings.output_dir:
        out_dir = Path(settings.output_dir).expanduser()
        out_dir.mkdir(parents=True, exist_ok=True)
    else:
        out_dir = source.parent
    return unique_output_path(out_dir.resolve() / f"{stem}.{ext}", taken)
