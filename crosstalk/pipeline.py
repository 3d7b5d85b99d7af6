"""
Track enrichment pipeline.

One candidate runs through a fixed sequence of stages:

    ParseURL -> CheckDuplicate -> FetchMetadata -> FetchLyrics -> AnalyzeContent -> Persist

No stage is retried on its own.  The first unrecoverable failure abandons the
candidate, and ``enrich`` reports it as exactly one ``EnrichmentOutcome``
(success, skipped or failed with a ``FailureReason``).  ``enrich`` never raises.
"""

from typing import Optional, Tuple, Union

from loguru import logger

from .ai_integration import TrackAnalyzer
from .database import CollectionDatabase
from .errors import (
    AnalysisMalformedError,
    DuplicateTrackError,
    EnrichmentError,
    FailureReason,
    InvalidUrlError,
    MetadataUnavailableError,
    NoLyricsFoundError,
    ProviderExhaustedError,
)
from .genius import GeniusClient
from .models import (
    AudioBytes,
    Candidate,
    ContentSource,
    EmbedReference,
    EnrichmentOutcome,
    LyricsResult,
    LyricsText,
    NewTrack,
    SpotifyMetadata,
    Track,
    TrackAnalysis,
)
from .spotify import SpotifyClient, extract_track_id


class _AlreadyCollected(Exception):
    """Internal short-circuit carrying the existing row."""

    def __init__(self, track: Track):
        self.track = track
        super().__init__(track.spotify_id)


class TrackEnrichmentPipeline:
    """
    Turns a source URL into a persisted, AI-profiled ``Track``.

    Args:
        db:        Collection database.
        spotify:   Spotify client (single fixed credential).
        analyzer:  Analysis strategy; advertises which content sources it supports.
        genius:    Lyrics client, or None when no lyrics credential is configured.
        allow_reference_analysis: when there is no lyrics client, analyze an
                   embed reference (or preview audio) instead of failing.
    """

    def __init__(
        self,
        db: CollectionDatabase,
        spotify: SpotifyClient,
        analyzer: TrackAnalyzer,
        genius: Optional[GeniusClient] = None,
        allow_reference_analysis: bool = False,
    ):
        self.db = db
        self.spotify = spotify
        self.analyzer = analyzer
        self.genius = genius
        self.allow_reference_analysis = allow_reference_analysis

    async def enrich(self, candidate: Union[Candidate, str]) -> EnrichmentOutcome:
        if isinstance(candidate, str):
            candidate = Candidate(url=candidate)
        url = candidate.url

        try:
            track_id = self._parse_url(url)
            await self._check_duplicate(track_id)
            metadata = await self._fetch_metadata(track_id, candidate.metadata)
            source, lyrics = await self._fetch_content(metadata)
            analysis = await self._analyze(source)
            track = await self._persist(self._assemble(metadata, lyrics, analysis))
        except _AlreadyCollected as dup:
            logger.info(f"Skipped {url}: already in collection (track {dup.track.id})")
            return EnrichmentOutcome.skipped(url, dup.track)
        except EnrichmentError as exc:
            logger.info(f"Failed {url}: {exc.reason.value} ({exc.detail})")
            return EnrichmentOutcome.failed(url, exc.reason, exc.detail)

        logger.info(f"Enriched '{track.title}' by {track.artist or 'Unknown'} -> {track.emotion}")
        return EnrichmentOutcome.success(url, track)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _parse_url(self, url: str) -> str:
        track_id = extract_track_id(url)
        if not track_id:
            raise InvalidUrlError(f"No Spotify track id in '{url}'")
        logger.debug(f"ParseURL: {url} -> {track_id}")
        return track_id

    async def _lookup(self, spotify_id: str) -> Optional[Track]:
        try:
            return await self.db.get_track_by_spotify_id(spotify_id)
        except Exception as exc:
            logger.exception(f"Lookup failed for {spotify_id}")
            raise EnrichmentError(f"Could not read collection: {exc}", reason=FailureReason.PERSISTENCE_ERROR) from exc

    async def _check_duplicate(self, track_id: str) -> None:
        existing = await self._lookup(track_id)
        if existing is not None:
            raise _AlreadyCollected(existing)

    async def _fetch_metadata(self, track_id: str, prefetched: Optional[SpotifyMetadata]) -> SpotifyMetadata:
        if prefetched is not None and prefetched.id == track_id:
            logger.debug(f"FetchMetadata: using playlist metadata for {track_id}")
            return prefetched
        try:
            metadata = await self.spotify.fetch_track(track_id)
        except Exception as exc:
            raise MetadataUnavailableError(f"Spotify lookup failed for {track_id}: {exc}") from exc
        if not metadata.id:
            raise MetadataUnavailableError(f"Spotify returned no id for {track_id}")
        logger.debug(f"FetchMetadata: '{metadata.name}' by {metadata.primary_artist}")
        return metadata

    async def _fetch_content(self, metadata: SpotifyMetadata) -> Tuple[ContentSource, LyricsResult]:
        """Pick the content source to analyze; lyrics unless no lyrics client is configured."""
        if self.genius is None:
            return await self._reference_source(metadata), LyricsResult()

        try:
            result = await self.genius.search_lyrics(metadata.name, metadata.primary_artist)
        except Exception as exc:
            raise NoLyricsFoundError(f"Lyrics lookup failed for '{metadata.name}': {exc}") from exc
        if not result.lyrics:
            raise NoLyricsFoundError(f"No lyrics found for '{metadata.name}'")

        logger.debug(f"FetchLyrics: {len(result.lyrics)} chars from {result.url}")
        source = LyricsText(
            title=metadata.name,
            artist=metadata.primary_artist or "Unknown",
            lyrics=result.lyrics,
        )
        return source, result

    async def _reference_source(self, metadata: SpotifyMetadata) -> ContentSource:
        if not self.allow_reference_analysis:
            raise NoLyricsFoundError("No lyrics provider configured")

        if metadata.preview_url and self.analyzer.supports(AudioBytes):
            try:
                data = await self.spotify.download_preview(metadata.preview_url)
            except Exception as exc:
                logger.warning(f"Preview download failed for {metadata.id}: {exc}")
            else:
                logger.debug(f"FetchLyrics: analyzing {len(data)} bytes of preview audio")
                return AudioBytes(data=data)

        if self.analyzer.supports(EmbedReference):
            logger.debug(f"FetchLyrics: analyzing embed reference {metadata.track_url}")
            return EmbedReference(url=metadata.track_url)

        raise NoLyricsFoundError("No lyrics provider configured and no reference analysis available")

    async def _analyze(self, source: ContentSource) -> TrackAnalysis:
        try:
            return await self.analyzer.analyze(source)
        except ProviderExhaustedError as exc:
            raise EnrichmentError(str(exc), reason=FailureReason.ANALYSIS_PROVIDER_EXHAUSTED) from exc
        except EnrichmentError:
            raise
        except Exception as exc:
            raise AnalysisMalformedError(f"Analysis failed: {exc}") from exc

    @staticmethod
    def _assemble(metadata: SpotifyMetadata, lyrics: LyricsResult, analysis: TrackAnalysis) -> NewTrack:
        return NewTrack(
            spotify_id=metadata.id,
            spotify_url=metadata.track_url,
            title=metadata.name,
            artist=metadata.primary_artist,
            lyrics=lyrics.lyrics,
            genius_url=lyrics.url,
            has_audio_preview=bool(metadata.preview_url),
            emotion=analysis.emotion,
            valence=analysis.valence,
            energy=analysis.energy,
            tempo=round(analysis.tempo) if analysis.tempo is not None else None,
            genre=analysis.genre,
            mood_description=analysis.mood_description,
            dominant_instruments=analysis.dominant_instruments,
            vocal_characteristics=analysis.vocal_characteristics,
            duration=metadata.duration_ms,
            thumbnail_url=metadata.thumbnail_url,
            preview_url=metadata.preview_url,
        )

    async def _persist(self, new_track: NewTrack) -> Track:
        try:
            return await self.db.insert_track(new_track)
        except DuplicateTrackError as exc:
            # Lost a race with a concurrent run for the same id.
            existing = await self._lookup(new_track.spotify_id)
            if existing is None:
                raise EnrichmentError(str(exc), reason=FailureReason.PERSISTENCE_ERROR) from exc
            raise _AlreadyCollected(existing) from exc
        except Exception as exc:
            logger.exception(f"Persist failed for {new_track.spotify_id}")
            raise EnrichmentError(f"Could not save track: {exc}", reason=FailureReason.PERSISTENCE_ERROR) from exc
