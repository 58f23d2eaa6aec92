"""
Error taxonomy shared by the worker loop, providers and the API.

Task-level failures are captured into ``job_tasks.last_error`` and drive
retry / dead-letter. ``ConfigError`` is the only class that aborts a tick.
"""


class ChannelPilotError(Exception):
    """Base class for all application errors."""


class ConfigError(ChannelPilotError):
    """Missing credentials or configuration. Not retried."""


class TaskError(ChannelPilotError):
    """Failure while executing a claimed task."""


class UnknownJobTypeError(TaskError):
    """A task row names a job type no handler exists for."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"unknown job_type: {job_type}")


class UpstreamError(TaskError):
    """Non-auth failure from the video platform."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"YouTube Analytics error (status {status_code}): {message}")


class AuthError(UpstreamError):
    """Expired or invalid access token (HTTP 401)."""

    def __init__(self, message: str = "unauthorized"):
        super().__init__(401, message)


class StorageConflict(ChannelPilotError):
    """Unique-key collision on an idempotent insert; the row already exists."""
