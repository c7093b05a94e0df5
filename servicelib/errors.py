"""Exceptions raised by the service harness."""

from typing import Optional


class HarnessError(RuntimeError):
    """Base class for harness failures that should abort the calling test.

    Carries the captured service log, when there is one, so that callers
    can show it next to the failure.
    """

    def __init__(self, message: str, log_contents: Optional[str] = None):
        self.log_contents = log_contents
        if log_contents is not None:
            message = f"{message}\nLog contents:\n{log_contents}"
        super().__init__(message)


class LaunchFailure(HarnessError):
    """The service executable could not be spawned."""


class ReadinessTimeout(HarnessError):
    """A readiness probe was not satisfied within its attempt budget."""


class ToolFailure(HarnessError):
    """A foreground tool exited with a non-zero status."""

    def __init__(self, message: str, returncode: int,
                 log_contents: Optional[str] = None):
        self.returncode = returncode
        super().__init__(message, log_contents)
