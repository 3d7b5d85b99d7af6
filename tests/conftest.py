"""Shared fixtures: in-memory collection database and provider fakes."""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from crosstalk.database import CollectionDatabase
from crosstalk.errors import ProviderError
from crosstalk.models import (
    EmbedReference,
    LyricsResult,
    LyricsText,
    NewTrack,
    SpotifyMetadata,
    Track,
    TrackAnalysis,
)

MEMORY_URL = "sqlite+aiosqlite:///:memory:"
BASE_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def spotify_id(n: int) -> str:
    """A valid 22-character Spotify id."""
    return f"trk{n:019d}"


def track_url(n: int) -> str:
    return f"https://open.spotify.com/track/{spotify_id(n)}"


def make_metadata(n: int, title: Optional[str] = None, artist: str = "Artist", preview: bool = True) -> SpotifyMetadata:
    sid = spotify_id(n)
    return SpotifyMetadata.model_validate({
        "id": sid,
        "name": title or f"Song {n}",
        "artists": [{"name": artist}],
        "preview_url": f"https://p.scdn.co/mp3-preview/{sid}" if preview else None,
        "duration_ms": 200000 + n,
        "album": {"images": [{"url": f"https://i.scdn.co/image/{sid}"}]},
        "external_urls": {"spotify": f"https://open.spotify.com/track/{sid}"},
    })


def make_track(
    track_id: int,
    emotion: str = "joy",
    minutes_ago: int = 0,
    valence: Optional[float] = 0.5,
    energy: Optional[float] = 0.5,
    title: Optional[str] = None,
    genre: Optional[str] = "indie",
    mood: Optional[str] = "bright",
) -> Track:
    return Track(
        id=track_id,
        spotify_id=spotify_id(track_id),
        spotify_url=track_url(track_id),
        title=title or f"Song {track_id}",
        artist="Artist",
        emotion=emotion,
        valence=valence,
        energy=energy,
        genre=genre,
        mood_description=mood,
        added_at=BASE_TIME - timedelta(minutes=minutes_ago),
    )


def make_new_track(n: int, emotion: str = "joy", **overrides) -> NewTrack:
    values = dict(
        spotify_id=spotify_id(n),
        spotify_url=track_url(n),
        title=f"Song {n}",
        artist="Artist",
        emotion=emotion,
        valence=0.6,
        energy=0.4,
        genre="indie",
        mood_description="bright and open",
    )
    values.update(overrides)
    return NewTrack(**values)


def make_analysis(emotion: str = "joy", tempo: Optional[float] = 121.6) -> TrackAnalysis:
    return TrackAnalysis(
        emotion=emotion,
        valence=0.7,
        energy=0.6,
        genre="indie pop",
        mood_description="Sunny and hopeful.",
        vocal_characteristics="breathy",
        tempo=tempo,
    )


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeSpotify:
    def __init__(self, tracks: Optional[List[SpotifyMetadata]] = None):
        self.tracks: Dict[str, SpotifyMetadata] = {t.id: t for t in tracks or []}
        self.playlist: Optional[List[SpotifyMetadata]] = None
        self.top_tracks: List[SpotifyMetadata] = []
        self.fetch_calls: List[str] = []
        self.playlist_calls: List[str] = []

    async def fetch_track(self, track_id: str) -> SpotifyMetadata:
        self.fetch_calls.append(track_id)
        if track_id not in self.tracks:
            raise ProviderError("spotify", f"GET /tracks/{track_id}: not found", 404)
        return self.tracks[track_id]

    async def fetch_playlist_tracks(self, playlist_id: str, limit: int = 25) -> List[SpotifyMetadata]:
        self.playlist_calls.append(playlist_id)
        if self.playlist is None:
            raise ProviderError("spotify", f"GET /playlists/{playlist_id}/tracks: not found", 404)
        return self.playlist[:limit]

    async def fetch_user_top_tracks(self, user_token: str, limit: int = 15) -> List[SpotifyMetadata]:
        return self.top_tracks[:limit]

    async def download_preview(self, preview_url: str) -> bytes:
        return b"ID3"


class FakeGenius:
    """Returns lyrics for every title except those in ``missing``."""

    def __init__(self, missing: Optional[set] = None):
        self.missing = missing or set()
        self.calls: List[str] = []

    async def search_lyrics(self, title: str, artist: Optional[str]) -> LyricsResult:
        self.calls.append(title)
        if title in self.missing:
            return LyricsResult()
        return LyricsResult(lyrics=f"la la {title}", url=f"https://genius.com/{title.replace(' ', '-')}")


class FakeAnalyzer:
    def __init__(self, emotion: str = "joy", error: Optional[Exception] = None, supported=(LyricsText, EmbedReference)):
        self.emotion = emotion
        self.error = error
        self.supported = supported
        self.sources: list = []
        self.before_return = None

    def supports(self, source_type: type) -> bool:
        return source_type in self.supported

    async def analyze(self, source) -> TrackAnalysis:
        self.sources.append(source)
        if self.error is not None:
            raise self.error
        if self.before_return is not None:
            await self.before_return(source)
        return make_analysis(self.emotion)


class FakeResponder:
    def __init__(self, reply: str = "hey. good pick.", error: Optional[Exception] = None, name: str = "Velvet Static"):
        self.reply_text = reply
        self.error = error
        self.name = name
        self.name_error: Optional[Exception] = None
        self.calls: list = []
        self.name_calls: list = []

    async def reply(self, turns, system=None) -> str:
        self.calls.append({"turns": list(turns), "system": system})
        if self.error is not None:
            raise self.error
        return self.reply_text

    async def name_collection(self, track_count, top_emotions, genres, moods) -> str:
        self.name_calls.append({"track_count": track_count, "top_emotions": list(top_emotions)})
        if self.name_error is not None:
            raise self.name_error
        return self.name


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def db():
    database = CollectionDatabase(MEMORY_URL)
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def spotify():
    return FakeSpotify([make_metadata(n) for n in range(1, 11)])


@pytest.fixture
def genius():
    return FakeGenius()


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def responder():
    return FakeResponder()
