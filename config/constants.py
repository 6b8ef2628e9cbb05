from pathlib import Path

APP_TITLE = "WebP to MP4/MOV Converter (FFmpeg)"

INPUT_EXTS = {".webp"}
PROBED_EXTS = {".gif", ".png", ".apng", ".jpg", ".jpeg"}

OUT_FORMATS = ["mp4", "mov"]
DEFAULT_OUT_FORMAT = "mp4"

QUALITY_OPTIONS = ["High", "Balanced", "Small"]
QUALITY_CRF = {
    "high": 18,
    "balanced": 23,
    "small": 28,
}

FPS_OPTIONS = ["Original", "24", "30", "60"]

VIDEO_ENCODER = "libx264"
ENCODER_PRESET = "slow"
PIX_FMT = "yuv420p"
H264_PROFILE = "high"
H264_LEVEL = "4.1"
TUNE = "animation"
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "192k"
EVEN_PAD_FILTER = "pad=ceil(iw/2)*2:ceil(ih/2)*2"

MAX_CONCURRENT = 2

DEFAULT_NAME_TEMPLATE = "{name}"
NAME_TOKENS = ("name", "counter", "date", "time", "ext")
COUNTER_WIDTH = 1

DEFAULT_STATIC_DURATION = 1.0
MIN_STATIC_DURATION = 0.1
MAX_STATIC_DURATION = 60.0

DEFAULT_FRAME_MS = 33
CANCEL_GRACE_SECONDS = 5.0

APP_HOME = Path.home() / ".webp2mp4"
SETTINGS_STORE = Path.home() / ".webp2mp4_settings.json"
LOG_ROOT = APP_HOME / "logs"
JOBS_ROOT = APP_HOME / "jobs"
