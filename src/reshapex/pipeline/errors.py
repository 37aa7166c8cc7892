"""Exception hierarchy for the transformation pipeline."""

from __future__ import annotations


class TransformError(Exception):
    """Base class for every failure raised while transforming an image."""


class ForbiddenSource(TransformError):
    """The source host is not on the configured allow-list."""

    def __init__(self, host: str) -> None:
        self.host = host
        super().__init__(f"Restricted domains enabled, the domain you are fetching from is not allowed: {host}")


class InvalidOptions(TransformError):
    """The request options cannot be turned into a pipeline."""


class SourceFetchFailure(TransformError):
    """The source image could not be fetched or read."""

    def __init__(self, reference: str, reason: str) -> None:
        self.reference = reference
        self.reason = reason
        super().__init__(f"Unable to fetch source image {reference}: {reason}")


class ProcessFailure(TransformError):
    """An external process exited with a non-zero status.

    ``output`` holds the captured output lines joined by newlines, or the exit
    status itself when the process printed nothing. ``stderr`` is kept for logs.
    """

    def __init__(self, status: int, output: str, command: str, stderr: str = "") -> None:
        self.status = status
        self.output = output
        self.command = command
        self.stderr = stderr
        super().__init__(f"Command failed with exit status {status}: {output}. Command: {command}")


class ProcessingFailure(ProcessFailure):
    """The main command pipeline failed."""

    @classmethod
    def from_process_failure(cls, failure: ProcessFailure) -> ProcessingFailure:
        return cls(failure.status, failure.output, failure.command, failure.stderr)
