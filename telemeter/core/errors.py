"""Exception hierarchy for telemeter.

Only configuration errors ever escape the public client API. Everything else
is raised by the lower layers (stores and flag fetchers) and handled by
the pipeline that called them.
"""


class TelemeterError(Exception):
    """Base class for all telemeter errors."""


class _WrappedError(TelemeterError):
    """Error that keeps the exception it was raised for."""

    def __init__(self, message: str, original: BaseException | None = None):
        self.original = original
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        if self.original is not None:
            return f"{base} ({type(self.original).__name__}: {self.original})"
        return base


class StorageError(_WrappedError):
    """Raised by a DurableStore when an I/O operation fails."""


class FlagFetchError(_WrappedError):
    """Raised by a flag fetcher when evaluation results cannot be obtained.

    Attributes:
        status_code: HTTP status of the failed request, if there was one.
    """

    def __init__(
        self,
        message: str,
        original: BaseException | None = None,
        status_code: int | None = None,
    ):
        self.status_code = status_code
        super().__init__(message, original)


class ConfigError(TelemeterError):
    """Raised when a TelemetryConfig cannot be built from the given values."""
