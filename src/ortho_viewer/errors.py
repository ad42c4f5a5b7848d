"""Error taxonomy for configuration and asset loading."""

from __future__ import annotations

from enum import Enum
from typing import Iterable, List, Optional

__all__ = [
    "FailureReason",
    "ConfigError",
    "AssetError",
    "TransientLoadError",
    "PermanentLoadError",
]


class FailureReason(str, Enum):
    """Why an asset could not be loaded."""

    TIMEOUT = "timeout"
    HTTP_ERROR = "http_error"
    INVALID_CONTENT_TYPE = "invalid_content_type"
    PERMANENTLY_BLACKLISTED = "permanently_blacklisted"


class ConfigError(ValueError):
    """Coefficient table or image manifest is incomplete or malformed.

    Parameters
    ----------
    message : str
        Summary of the failure.
    problems : iterable of str, optional
        Every individual problem found during validation.
    """

    def __init__(self, message: str, problems: Optional[Iterable[str]] = None) -> None:
        self.problems: List[str] = list(problems or [])
        if self.problems:
            message = f"{message}: " + "; ".join(self.problems)
        super().__init__(message)


class AssetError(Exception):
    """Base class for slice image load failures."""

    def __init__(self, url: str, reason: FailureReason, message: str = "") -> None:
        self.url = url
        self.reason = reason
        super().__init__(message or f"{reason.value}: {url}")


class TransientLoadError(AssetError):
    """A single load attempt failed; the cache may retry it."""

    def __init__(
        self,
        url: str,
        reason: FailureReason,
        message: str = "",
        status: Optional[int] = None,
    ) -> None:
        self.status = status
        super().__init__(url, reason, message)


class PermanentLoadError(AssetError):
    """Retries are exhausted or the URL is blacklisted.

    ``cause`` holds the reason of the last failed attempt, or ``None`` when the
    request was rejected straight from the blacklist.
    """

    def __init__(self, url: str, cause: Optional[FailureReason] = None, message: str = "") -> None:
        self.cause = cause
        if not message:
            detail = f" (last failure: {cause.value})" if cause is not None else ""
            message = f"URL permanently failed: {url}{detail}"
        super().__init__(url, FailureReason.PERMANENTLY_BLACKLISTED, message)
