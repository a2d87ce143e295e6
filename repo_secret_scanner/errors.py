"""Exception types raised by the scanner."""
from typing import List, Optional


class ScannerError(Exception):
    """Base class for all scanner errors."""


class ConfigurationError(ScannerError):
    """Invalid configuration: bad regex or glob, conflicting filter sets, out-of-range values."""

    def __init__(self, message: str, source: str = "configuration"):
        self.source = source
        super().__init__(message)


class FilterEvaluationError(ScannerError):
    """A filter raised while evaluating a file or a line."""

    def __init__(self, message: str, filter_name: Optional[str] = None, cause: Optional[BaseException] = None):
        self.filter_name = filter_name
        self.cause = cause
        if filter_name:
            message = f"Filter '{filter_name}': {message}"
        super().__init__(message)


class RootPathError(ScannerError):
    """The scan root does not exist or cannot be read."""


class ScanAbortedError(ScannerError):
    """The scan was aborted before completion (strict mode configuration failure)."""

    def __init__(self, message: str, errors: Optional[List[ConfigurationError]] = None):
        self.errors = errors or []
        super().__init__(message)
