"""Exception types raised by the automation engine."""

from datetime import datetime
from typing import Optional


class AutoPhaseError(Exception):
    """Base class for engine errors."""


class ConfigurationError(AutoPhaseError):
    """The workspace taxonomy cannot support the requested operation."""


class ClassifierResponseError(AutoPhaseError):
    """The classification service returned something we cannot use."""


class RetagError(AutoPhaseError):
    """Base class for retag job errors."""


class RetagJobNotFoundError(RetagError):
    def __init__(self, job_id):
        super().__init__(f"Retag job not found: {job_id}")
        self.job_id = job_id


class RetagAlreadyRunningError(RetagError):
    def __init__(self, message: str = "Re-Phase Leads is already running."):
        super().__init__(message)


class RetagWeeklyLimitError(RetagError):
    def __init__(self, retry_after: datetime, message: Optional[str] = None):
        super().__init__(
            message
            or f"Re-Phase Leads can only be run once a week. Try again after {retry_after.isoformat()}."
        )
        self.retry_after = retry_after
