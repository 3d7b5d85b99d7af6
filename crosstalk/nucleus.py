"""
Nucleus metadata re-derivation.

The nucleus row is a cache over the track collection: its dominant emotion
and display name are re-derived whenever the collection size crosses a
multiple of ``REFRESH_EVERY``.
"""

from typing import List, Optional

from loguru import logger

from .ai_integration import ChatResponder
from .chat_context import collection_stats
from .database import CollectionDatabase
from .errors import CrosstalkError
from .models import NucleusMetadata

REFRESH_EVERY = 5
MAX_NAME_LENGTH = 80


def crossed_refresh_boundary(previous_count: int, new_count: int) -> bool:
    return new_count // REFRESH_EVERY > previous_count // REFRESH_EVERY


class NucleusService:
    def __init__(self, db: CollectionDatabase, responder: Optional[ChatResponder] = None):
        self.db = db
        self.responder = responder

    async def get(self) -> NucleusMetadata:
        return await self.db.get_nucleus()

    async def maybe_refresh(self, previous_count: int, new_count: int) -> Optional[NucleusMetadata]:
        if not crossed_refresh_boundary(previous_count, new_count):
            return None
        return await self.refresh()

    async def refresh(self) -> NucleusMetadata:
        """Re-derive dominant emotion and, if a chat provider is configured, the name."""
        tracks = await self.db.get_all_tracks()
        stats = collection_stats(tracks)
        if stats.total == 0:
            return await self.db.get_nucleus()

        name = None
        if self.responder is not None:
            top_emotions = sorted(stats.histogram, key=lambda e: stats.histogram[e], reverse=True)[:3]
            genres: List[str] = []
            for track in tracks:
                if track.genre and track.genre not in genres:
                    genres.append(track.genre)
            moods = [t.mood_description for t in tracks if t.mood_description][:3]
            try:
                name = await self.responder.name_collection(stats.total, top_emotions, genres[:5], moods)
            except CrosstalkError as exc:
                logger.warning(f"Nucleus naming failed, keeping current name: {exc}")
                name = None
            name = (name or "").strip()[:MAX_NAME_LENGTH] or None

        nucleus = await self.db.update_nucleus(name=name, dominant_emotion=stats.dominant_emotion)
        logger.info(
            f"Nucleus refreshed at {stats.total} tracks: '{nucleus.name}' "
            f"(dominant {nucleus.dominant_emotion})"
        )
        return nucleus

    async def rename(self, name: str) -> NucleusMetadata:
        name = (name or "").strip()
        if not name:
            raise ValueError("Nucleus name must not be empty")
        return await self.db.update_nucleus(name=name[:MAX_NAME_LENGTH])
