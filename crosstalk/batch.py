"""
Batch enrichment over an ordered candidate list (a playlist, or a user's top tracks).

Candidates are processed strictly one at a time, in input order, until the
number of successes reaches the target.  Candidates after that point are never
attempted and never reported.  Progress for a running batch is kept in a
``ProgressRegistry`` keyed by batch id so another request can poll it.
"""

import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional

import httpx
from loguru import logger
from pydantic import BaseModel, Field

from .errors import InvalidUrlError, ProviderError
from .models import BatchResult, Candidate, CandidateIssue, EnrichmentOutcome, OutcomeStatus
from .pipeline import TrackEnrichmentPipeline
from .spotify import SpotifyClient, extract_playlist_id

if TYPE_CHECKING:
    from .nucleus import NucleusService

MAX_TRACKED_BATCHES = 50


class BatchStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class BatchProgress(BaseModel):
    batch_id: str
    status: BatchStatus = BatchStatus.RUNNING
    target: int
    total_candidates: int = 0
    attempted: int = 0
    success_count: int = 0
    cancel_requested: bool = False
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict:
        return {
            "batchId": self.batch_id,
            "status": self.status.value,
            "current": self.success_count,
            "target": self.target,
            "attempted": self.attempted,
            "totalCandidates": self.total_candidates,
        }


class ProgressRegistry:
    """In-process table of recent batches, oldest evicted first."""

    def __init__(self, max_entries: int = MAX_TRACKED_BATCHES):
        self._entries: "OrderedDict[str, BatchProgress]" = OrderedDict()
        self.max_entries = max_entries

    def create(self, target: int, batch_id: Optional[str] = None) -> BatchProgress:
        batch_id = batch_id or uuid.uuid4().hex
        progress = BatchProgress(batch_id=batch_id, target=target)
        self._entries[batch_id] = progress
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return progress

    def get(self, batch_id: str) -> Optional[BatchProgress]:
        return self._entries.get(batch_id)

    def cancel(self, batch_id: str) -> bool:
        progress = self._entries.get(batch_id)
        if progress is None or progress.status != BatchStatus.RUNNING:
            return False
        progress.cancel_requested = True
        return True


class BatchEnrichmentController:
    def __init__(
        self,
        pipeline: TrackEnrichmentPipeline,
        spotify: SpotifyClient,
        registry: Optional[ProgressRegistry] = None,
        nucleus: Optional["NucleusService"] = None,
    ):
        self.pipeline = pipeline
        self.spotify = spotify
        self.registry = registry or ProgressRegistry()
        self.nucleus = nucleus

    async def run(
        self,
        candidates: List[Candidate],
        target: int,
        progress: Optional[BatchProgress] = None,
    ) -> BatchResult:
        """
        Enrich ``candidates`` in order until ``target`` successes.

        Every per-candidate outcome lands in one of the three buckets; this
        method does not raise for candidate failures.

        Args:
            candidates: Ordered candidates; usually more than ``target``.
            target:     Number of successes after which the batch stops.
            progress:   Progress record to update; one is registered if omitted.

        Returns:
            BatchResult with success / failed / skipped buckets.
        """
        if progress is None:
            progress = self.registry.create(target)
        progress.total_candidates = len(candidates)
        result = BatchResult()

        logger.info(
            f"Batch {progress.batch_id}: {len(candidates)} candidates, target {target}"
        )
        finished = False
        try:
            count_before = await self.pipeline.db.count_tracks()
            for candidate in candidates:
                if len(result.success) >= target:
                    break
                if progress.cancel_requested:
                    result.cancelled = True
                    logger.info(f"Batch {progress.batch_id}: cancelled after {progress.attempted} candidates")
                    break

                progress.attempted += 1
                outcome = await self.pipeline.enrich(candidate)
                self._record(result, candidate, outcome)
                progress.success_count = len(result.success)
            finished = True
        finally:
            if not finished:
                progress.status = BatchStatus.FAILED
                logger.error(f"Batch {progress.batch_id} aborted after {progress.attempted} candidates")
            elif result.cancelled:
                progress.status = BatchStatus.CANCELLED
            else:
                progress.status = BatchStatus.COMPLETED

        logger.info(
            f"Batch {progress.batch_id} done: {len(result.success)} succeeded, "
            f"{len(result.skipped)} skipped, {len(result.failed)} failed, "
            f"{result.total_processed} processed"
        )

        if self.nucleus is not None and result.success:
            try:
                await self.nucleus.maybe_refresh(count_before, count_before + len(result.success))
            except Exception:
                logger.exception(f"Batch {progress.batch_id}: nucleus refresh failed")
        return result

    @staticmethod
    def _record(result: BatchResult, candidate: Candidate, outcome: EnrichmentOutcome) -> None:
        if outcome.status == OutcomeStatus.SUCCESS:
            result.success.append(outcome.track)
        elif outcome.status == OutcomeStatus.SKIPPED:
            result.skipped.append(CandidateIssue(
                candidate=candidate.url,
                title=candidate.title or outcome.track.title,
                artist=candidate.artist or outcome.track.artist,
                reason=outcome.detail,
            ))
        else:
            result.failed.append(CandidateIssue(
                candidate=candidate.url,
                title=candidate.title,
                artist=candidate.artist,
                reason=f"{outcome.reason.value}: {outcome.detail}",
            ))

    async def enrich_playlist(
        self,
        playlist_url: str,
        target: int = 25,
        limit: int = 100,
        batch_id: Optional[str] = None,
    ) -> BatchResult:
        """
        Expand a playlist and enrich its tracks.

        Raises:
            InvalidUrlError: no playlist id in ``playlist_url``.
            ProviderError:   the playlist could not be listed; nothing was attempted.
        """
        playlist_id = extract_playlist_id(playlist_url)
        if not playlist_id:
            raise InvalidUrlError(f"No Spotify playlist id in '{playlist_url}'")

        progress = self.registry.create(target, batch_id)
        try:
            listing = await self.spotify.fetch_playlist_tracks(playlist_id, limit=limit)
        except ProviderError:
            progress.status = BatchStatus.FAILED
            raise
        except (httpx.HTTPError, ValueError) as exc:
            # ValueError covers undecodable bodies and pydantic validation errors
            progress.status = BatchStatus.FAILED
            raise ProviderError("spotify", f"playlist {playlist_id}: {exc}") from exc

        logger.info(f"Playlist {playlist_id}: {len(listing)} tracks listed")
        candidates = [Candidate.from_metadata(m) for m in listing]
        return await self.run(candidates, target, progress)

    async def seed_from_top_tracks(
        self,
        user_token: str,
        limit: int = 15,
        batch_id: Optional[str] = None,
    ) -> BatchResult:
        """First-run seeding from the user's top tracks; target is every listed track."""
        try:
            listing = await self.spotify.fetch_user_top_tracks(user_token, limit=limit)
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderError("spotify", f"top tracks: {exc}") from exc

        logger.info(f"Seeding collection from {len(listing)} top tracks")
        candidates = [Candidate.from_metadata(m) for m in listing]
        progress = self.registry.create(len(candidates), batch_id)
        return await self.run(candidates, len(candidates), progress)
