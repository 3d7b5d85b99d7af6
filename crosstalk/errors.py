"""Exception hierarchy and the per-candidate failure taxonomy."""

from enum import Enum
from typing import Optional


class FailureReason(str, Enum):
    INVALID_URL = "InvalidUrl"
    METADATA_UNAVAILABLE = "MetadataUnavailable"
    NO_LYRICS_FOUND = "NoLyricsFound"
    ANALYSIS_MALFORMED = "AnalysisMalformed"
    ANALYSIS_PROVIDER_EXHAUSTED = "AnalysisProviderExhausted"
    PERSISTENCE_ERROR = "PersistenceError"


class CrosstalkError(Exception):
    """Base class for all package errors."""


class ConfigurationError(CrosstalkError):
    """Credentials or settings are missing or unusable."""


class ProviderError(CrosstalkError):
    """An HTTP provider answered with a non-2xx status or an unusable body."""

    def __init__(self, provider: str, message: str, status: Optional[int] = None):
        self.provider = provider
        self.status = status
        prefix = f"{provider} error" if status is None else f"{provider} error {status}"
        super().__init__(f"{prefix}: {message}")


class ProviderExhaustedError(CrosstalkError):
    """Every credential in a rotation pool failed."""

    def __init__(self, pool_size: int, last_error: Exception):
        self.pool_size = pool_size
        self.last_error = last_error
        super().__init__(
            f"All {pool_size} credential(s) in the pool failed. Last error: {last_error}"
        )


class DuplicateTrackError(CrosstalkError):
    """The persistence layer rejected an insert on the unique provider id."""

    def __init__(self, spotify_id: str):
        self.spotify_id = spotify_id
        super().__init__(f"Track {spotify_id} already exists")


class ChatProviderError(CrosstalkError):
    """The chat provider could not produce a reply."""


class EnrichmentError(CrosstalkError):
    """A candidate was abandoned at some pipeline stage."""

    reason: FailureReason = FailureReason.PERSISTENCE_ERROR

    def __init__(self, detail: str = "", reason: Optional[FailureReason] = None):
        if reason is not None:
            self.reason = reason
        self.detail = detail or self.reason.value
        super().__init__(self.detail)


class InvalidUrlError(EnrichmentError):
    reason = FailureReason.INVALID_URL


class MetadataUnavailableError(EnrichmentError):
    reason = FailureReason.METADATA_UNAVAILABLE


class NoLyricsFoundError(EnrichmentError):
    reason = FailureReason.NO_LYRICS_FOUND


class AnalysisMalformedError(EnrichmentError):
    reason = FailureReason.ANALYSIS_MALFORMED
