"""Error kinds surfaced by the download engine.

Every error is scoped to one request or job. The HTTP layer renders any
``DownfilesError`` through a single exception handler; ``Cancelled`` never
reaches a client because there is no client left to answer.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class FailureReason(str, Enum):
    DRM_PROTECTED = "DrmProtected"
    PRIVATE_OR_SIGN_IN_REQUIRED = "PrivateOrSignInRequired"
    REGION_RESTRICTED = "RegionRestricted"
    FORMAT_UNAVAILABLE = "FormatUnavailable"
    TIMEOUT = "Timeout"
    UNCLASSIFIED = "Unclassified"


_REASON_MESSAGES = {
    FailureReason.DRM_PROTECTED: "This media is DRM protected and cannot be downloaded.",
    FailureReason.PRIVATE_OR_SIGN_IN_REQUIRED: "This media is private or requires signing in.",
    FailureReason.REGION_RESTRICTED: "This media is not available in the server's region.",
    FailureReason.FORMAT_UNAVAILABLE: "The requested quality is not available for this media.",
    FailureReason.TIMEOUT: "The media host did not respond in time.",
    FailureReason.UNCLASSIFIED: "Could not fetch this media. Make sure the URL is valid.",
}

_REASON_STATUS = {
    FailureReason.DRM_PROTECTED: 403,
    FailureReason.PRIVATE_OR_SIGN_IN_REQUIRED: 403,
    FailureReason.REGION_RESTRICTED: 403,
    FailureReason.FORMAT_UNAVAILABLE: 422,
    FailureReason.TIMEOUT: 504,
    FailureReason.UNCLASSIFIED: 502,
}


class DownfilesError(Exception):
    status_code = 500
    kind = "Error"

    def __init__(self, message: str, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def reason(self) -> Optional[str]:
        return None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": False, "error": self.message, "kind": self.kind}
        if self.reason:
            payload["reason"] = self.reason
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidInput(DownfilesError):
    status_code = 400
    kind = "InvalidInput"


class ExtractionFailed(DownfilesError):
    kind = "ExtractionFailed"

    def __init__(
        self,
        failure: FailureReason,
        details: Optional[str] = None,
        exit_code: Optional[int] = None,
    ) -> None:
        super().__init__(_REASON_MESSAGES[failure], details)
        self.failure = failure
        self.exit_code = exit_code
        self.status_code = _REASON_STATUS[failure]

    @property
    def reason(self) -> Optional[str]:
        return self.failure.value


class ArtifactNotFound(DownfilesError):
    status_code = 500
    kind = "ArtifactNotFound"


class DeliveryReadError(DownfilesError):
    status_code = 500
    kind = "DeliveryReadError"


class NotFound(DownfilesError):
    status_code = 404
    kind = "NotFound"


class JobNotReady(DownfilesError):
    status_code = 409
    kind = "JobNotReady"


class ArtifactGone(DownfilesError):
    status_code = 410
    kind = "ArtifactGone"


class InvalidTransition(DownfilesError):
    status_code = 409
    kind = "InvalidTransition"


class Cancelled(Exception):
    """The client went away; clean up and send nothing."""


def truncate_details(text: Optional[str], limit: int) -> Optional[str]:
    """Keep the tail of extractor diagnostics, where the actual error lives."""
    if not text:
        return None
    text = text.strip()
    if limit <= 0 or len(text) <= limit:
        return text
    return "..." + text[-limit:]
