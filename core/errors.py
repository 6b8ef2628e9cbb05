from pathlib import Path
from typing import Optional

from core.models import FailureReason


class ConversionError(Exception):
    """Base for every job-scoped failure; carries an optional diagnostic log."""

    reason = FailureReason.RUNTIME

    def __init__(self, message: str, log_path: Optional[Path] = None):
        super().__init__(message)
        self.message = message
        self.log_path = log_path


class ProbeError(ConversionError):
    reason = FailureReason.PROBE


class BuildError(ConversionError):
    reason = FailureReason.BUILD


class EngineSpawnError(ConversionError):
    reason = FailureReason.SPAWN


class EngineRuntimeFailure(ConversionError):
    reason = FailureReason.RUNTIME


class JobTimeout(EngineRuntimeFailure):
    reason = FailureReason.TIMEOUT


class Cancelled(ConversionError):
    reason = FailureReason.CANCELLED
