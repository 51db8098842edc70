from datetime import datetime
from typing import Optional


class ExporterException(Exception):
    """Base exception for all exporter-related errors."""
    pass

class ConfigurationError(ExporterException):
    """Raised when the process environment is missing or has invalid settings."""
    pass

class UpstreamError(ExporterException):
    """Base class for failures while talking to the GitHub REST API."""
    pass

class TransportError(UpstreamError):
    """Raised when GitHub could not be reached or answered with a non-success status."""
    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)

class RateLimitExceededException(TransportError):
    """Raised when the GitHub REST rate limit is exhausted."""
    def __init__(self, reset_at: Optional[datetime], message: str = "GitHub API rate limit exceeded."):
        self.reset_at = reset_at
        super().__init__(f"{message} Resets at: {reset_at}", status=403)

class DecodeError(UpstreamError):
    """Raised when a GitHub payload is not JSON or does not match the expected schema."""
    pass

class ConcurrencyError(ExporterException):
    """Raised when the scrape cache's critical section cannot be entered."""
    pass
