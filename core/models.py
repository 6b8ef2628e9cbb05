import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Optional

from config.constants import (
    DEFAULT_NAME_TEMPLATE,
    DEFAULT_OUT_FORMAT,
    DEFAULT_STATIC_DURATION,
    QUALITY_CRF,
)


class QualityPreset(Enum):
    HIGH = "high"
    BALANCED = "balanced"
    SMALL = "small"

    @property
    def crf(self) -> int:
        return QUALITY_CRF[self.value]

    @classmethod
    def parse(cls, value) -> "QualityPreset":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.HIGH


class JobStatus(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED)


class FailureReason(Enum):
    PROBE = "probe"
    BUILD = "build"
    SPAWN = "spawn"
    RUNTIME = "runtime"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class MediaInfo:
    duration: Optional[float] = None
    vcodec: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    frame_count: Optional[int] = None


@dataclass(frozen=True)
class ProbeResult:
    is_animated: bool
    frame_count: int = 1
    duration: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass(frozen=True)
class JobOptions:
    quality: QualityPreset = QualityPreset.HIGH
    fps: Optional[int] = None


@dataclass(frozen=True)
class BatchSettings:
    output_dir: Optional[Path] = None
    output_format: str = DEFAULT_OUT_FORMAT
    name_template: str = DEFAULT_NAME_TEMPLATE
    default_quality: QualityPreset = QualityPreset.HIGH
    default_fps: Optional[int] = None
    static_duration: float = DEFAULT_STATIC_DURATION
    background: Optional[str] = None
    job_timeout: Optional[float] = None

    def default_options(self) -> JobOptions:
        return JobOptions(quality=self.default_quality, fps=self.default_fps)


@dataclass(frozen=True)
class FailureDetail:
    reason: FailureReason
    message: str
    log_path: Optional[Path] = None


@dataclass
class Job:
    source: Path
    sequence: int
    options: JobOptions = field(default_factory=JobOptions)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    name: str = ""
    status: JobStatus = JobStatus.QUEUED
    progress: float = 0.0
    output_path: Optional[Path] = None
    failure: Optional[FailureDetail] = None
    dispatched_at: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.source.name

    def snapshot(self) -> "Job":
        return replace(self)


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    progress: float


@dataclass(frozen=True)
class TerminalEvent:
    job_id: str
    status: JobStatus
    output_path: Optional[Path] = None
    failure: Optional[FailureDetail] = None

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.SUCCEEDED


@dataclass(frozen=True)
class LogEvent:
    level: str
    message: str
    job_id: Optional[str] = None


@dataclass(frozen=True)
class BatchDoneEvent:
    stopped: bool
