"""
Data models for the Crosstalk collection.

Persisted records (Track, ChatMessage, NucleusMetadata), provider payloads
(SpotifyMetadata, TrackAnalysis), analysis content sources, and the
per-candidate / per-batch result shapes returned by the enrichment layer.
"""

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .errors import FailureReason

# ---------------------------------------------------------------------------
# Emotion labels
# ---------------------------------------------------------------------------

EMOTIONS = ("joy", "sadness", "anger", "fear", "love", "surprise", "calm", "nostalgia")

Emotion = Literal["joy", "sadness", "anger", "fear", "love", "surprise", "calm", "nostalgia"]

Role = Literal["user", "assistant"]


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------

class Track(BaseModel):
    """An enriched track as stored in the collection."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    spotify_id: str
    spotify_url: str
    title: str
    artist: Optional[str] = None
    lyrics: Optional[str] = None
    genius_url: Optional[str] = None
    has_audio_preview: bool = False
    emotion: Emotion
    valence: Optional[float] = None
    energy: Optional[float] = None
    tempo: Optional[int] = None
    genre: Optional[str] = None
    mood_description: Optional[str] = None
    dominant_instruments: Optional[str] = None
    vocal_characteristics: Optional[str] = None
    duration: Optional[int] = None
    thumbnail_url: Optional[str] = None
    preview_url: Optional[str] = None
    added_at: datetime


class NewTrack(BaseModel):
    """A fully assembled track that has not been persisted yet (no id, no added_at)."""

    spotify_id: str
    spotify_url: str
    title: str
    artist: Optional[str] = None
    lyrics: Optional[str] = None
    genius_url: Optional[str] = None
    has_audio_preview: bool = False
    emotion: Emotion
    valence: Optional[float] = None
    energy: Optional[float] = None
    tempo: Optional[int] = None
    genre: Optional[str] = None
    mood_description: Optional[str] = None
    dominant_instruments: Optional[str] = None
    vocal_characteristics: Optional[str] = None
    duration: Optional[int] = None
    thumbnail_url: Optional[str] = None
    preview_url: Optional[str] = None


class ChatMessage(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    role: Role
    content: str
    timestamp: datetime
    nucleus_name: Optional[str] = None
    emotion: Optional[str] = None


class NucleusMetadata(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int = 1
    name: str = "The Nucleus"
    description: Optional[str] = None
    dominant_emotion: Optional[str] = None
    updated_at: datetime


# ---------------------------------------------------------------------------
# Provider payloads
# ---------------------------------------------------------------------------

class SpotifyArtist(BaseModel):
    name: str


class SpotifyImage(BaseModel):
    url: str
    height: Optional[int] = None
    width: Optional[int] = None


class SpotifyAlbum(BaseModel):
    images: List[SpotifyImage] = Field(default_factory=list)


class SpotifyExternalUrls(BaseModel):
    spotify: Optional[str] = None


class SpotifyMetadata(BaseModel):
    """Subset of the Spotify Web API track object consumed by the pipeline."""

    id: str
    name: str
    artists: List[SpotifyArtist] = Field(default_factory=list)
    preview_url: Optional[str] = None
    duration_ms: Optional[int] = None
    album: SpotifyAlbum = Field(default_factory=SpotifyAlbum)
    external_urls: SpotifyExternalUrls = Field(default_factory=SpotifyExternalUrls)

    @property
    def primary_artist(self) -> Optional[str]:
        return self.artists[0].name if self.artists else None

    @property
    def thumbnail_url(self) -> Optional[str]:
        return self.album.images[0].url if self.album.images else None

    @property
    def track_url(self) -> str:
        return self.external_urls.spotify or f"https://open.spotify.com/track/{self.id}"


class LyricsResult(BaseModel):
    lyrics: Optional[str] = None
    url: Optional[str] = None


class TrackAnalysis(BaseModel):
    """
    Schema for the JSON object returned by the AI analysis provider.

    Validated strictly: a missing required field, a wrong type or an emotion
    outside the eight labels rejects the whole response.
    """

    model_config = ConfigDict(strict=True, extra="ignore")

    emotion: Emotion
    valence: float
    energy: float
    genre: str
    mood_description: str
    vocal_characteristics: str
    tempo: Optional[float] = None
    dominant_instruments: Optional[str] = None


# ---------------------------------------------------------------------------
# Analysis content sources
# ---------------------------------------------------------------------------

class LyricsText(BaseModel):
    kind: Literal["lyrics"] = "lyrics"
    title: str
    artist: str
    lyrics: str


class AudioBytes(BaseModel):
    kind: Literal["audio"] = "audio"
    data: bytes
    mime_type: str = "audio/mpeg"


class EmbedReference(BaseModel):
    kind: Literal["embed"] = "embed"
    url: str


ContentSource = Union[LyricsText, AudioBytes, EmbedReference]


# ---------------------------------------------------------------------------
# Enrichment outcomes
# ---------------------------------------------------------------------------

class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class EnrichmentOutcome(BaseModel):
    """Result of running one candidate through the enrichment pipeline."""

    status: OutcomeStatus
    candidate: str
    track: Optional[Track] = None
    reason: Optional[FailureReason] = None
    detail: Optional[str] = None

    @classmethod
    def success(cls, candidate: str, track: Track) -> "EnrichmentOutcome":
        return cls(status=OutcomeStatus.SUCCESS, candidate=candidate, track=track)

    @classmethod
    def skipped(cls, candidate: str, track: Track, detail: str = "already in collection") -> "EnrichmentOutcome":
        return cls(status=OutcomeStatus.SKIPPED, candidate=candidate, track=track, detail=detail)

    @classmethod
    def failed(cls, candidate: str, reason: FailureReason, detail: str = "") -> "EnrichmentOutcome":
        return cls(status=OutcomeStatus.FAILED, candidate=candidate, reason=reason, detail=detail or reason.value)


class Candidate(BaseModel):
    """One source URL queued for enrichment, with any metadata already known."""

    url: str
    title: Optional[str] = None
    artist: Optional[str] = None
    metadata: Optional[SpotifyMetadata] = None

    @classmethod
    def from_metadata(cls, metadata: SpotifyMetadata) -> "Candidate":
        return cls(
            url=metadata.track_url,
            title=metadata.name,
            artist=metadata.primary_artist,
            metadata=metadata,
        )


class CandidateIssue(BaseModel):
    candidate: str
    title: Optional[str] = None
    artist: Optional[str] = None
    reason: str


class BatchResult(BaseModel):
    success: List[Track] = Field(default_factory=list)
    failed: List[CandidateIssue] = Field(default_factory=list)
    skipped: List[CandidateIssue] = Field(default_factory=list)
    cancelled: bool = False

    @property
    def total_processed(self) -> int:
        return len(self.success) + len(self.failed) + len(self.skipped)

    def summary(self) -> dict:
        return {
            "totalProcessed": self.total_processed,
            "successCount": len(self.success),
            "failedCount": len(self.failed),
            "skippedCount": len(self.skipped),
            "cancelled": self.cancelled,
            "tracks": [t.model_dump(mode="json", exclude={"lyrics"}) for t in self.success],
            "failed": [i.model_dump() for i in self.failed],
            "skipped": [i.model_dump() for i in self.skipped],
        }
