"""
FastAPI Web Application for Crosstalk

Endpoints:
  GET    /api/tracks                     - List tracks (optional emotion / orbit filter)
  DELETE /api/tracks/{id}                - Delete a track
  POST   /api/tracks/analyze             - Enrich a single Spotify track URL
  POST   /api/tracks/analyze-playlist    - Enrich a playlist up to a target success count
  GET    /api/tracks/progress/{batch_id} - Poll a running batch
  DELETE /api/tracks/progress/{batch_id} - Request cancellation of a running batch

  GET    /api/orbits                     - Orbit partition and per-track layout

  GET    /api/chat                       - Nucleus chat history
  DELETE /api/chat                       - Clear chat history (one channel or all)
  POST   /api/chat/message               - Send a message to the Nucleus
  GET    /api/chat/emotion               - Emotion-channel history
  POST   /api/chat/emotion               - Send a message to one emotion star

  GET    /api/nucleus                    - Nucleus metadata
  POST   /api/nucleus/rename             - Rename the Nucleus (no name: regenerate from the collection)
  POST   /api/nucleus/initialize         - Seed an empty collection from the user's top tracks

  POST   /api/lyrics/search              - Lyrics lookup
  GET    /api/youtube/search             - Find a playable video id
"""

import sys
from contextlib import asynccontextmanager
from typing import Dict, Optional

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel

from .ai_integration import ChatResponder, ClaudeProvider, TrackAnalyzer
from .batch import BatchEnrichmentController, ProgressRegistry
from .chat_context import ChatService
from .config import Settings
from .credentials import CredentialPool
from .database import CollectionDatabase
from .errors import ChatProviderError, ConfigurationError, FailureReason, InvalidUrlError, ProviderError
from .genius import GeniusClient
from .models import EMOTIONS, OutcomeStatus
from .nucleus import NucleusService
from .orbits import assign_orbits, orbit_layout, tracks_in_orbit
from .pipeline import TrackEnrichmentPipeline
from .spotify import SpotifyClient
from .youtube import YouTubeClient

FAILURE_STATUS: Dict[FailureReason, int] = {
    FailureReason.INVALID_URL: 400,
    FailureReason.NO_LYRICS_FOUND: 422,
    FailureReason.METADATA_UNAVAILABLE: 502,
    FailureReason.ANALYSIS_MALFORMED: 502,
    FailureReason.ANALYSIS_PROVIDER_EXHAUSTED: 502,
    FailureReason.PERSISTENCE_ERROR: 500,
}


# ---------------------------------------------------------------------------
# Service container
# ---------------------------------------------------------------------------

class Services:
    """Everything the routes need, built once at startup."""

    def __init__(
        self,
        settings: Settings,
        db: CollectionDatabase,
        spotify: Optional[SpotifyClient] = None,
        genius: Optional[GeniusClient] = None,
        youtube: Optional[YouTubeClient] = None,
        analyzer: Optional[TrackAnalyzer] = None,
        responder: Optional[ChatResponder] = None,
    ):
        self.settings = settings
        self.db = db
        self.spotify = spotify
        self.genius = genius
        self.youtube = youtube
        self.analyzer = analyzer
        self.responder = responder

        self.nucleus = NucleusService(db, responder)
        self.chat = ChatService(db, responder) if responder is not None else None
        self.pipeline: Optional[TrackEnrichmentPipeline] = None
        self.batches: Optional[BatchEnrichmentController] = None
        self.registry = ProgressRegistry()
        if spotify is not None and analyzer is not None:
            self.pipeline = TrackEnrichmentPipeline(
                db,
                spotify,
                analyzer,
                genius=genius,
                allow_reference_analysis=settings.allow_reference_analysis,
            )
            self.batches = BatchEnrichmentController(
                self.pipeline, spotify, registry=self.registry, nucleus=self.nucleus,
            )

    @classmethod
    async def create(cls, settings: Settings) -> "Services":
        db = CollectionDatabase(settings.database_url)
        await db.connect()

        spotify = None
        if settings.spotify_configured:
            spotify = SpotifyClient(settings.spotify_client_id, settings.spotify_client_secret)
        else:
            logger.warning("No SPOTIFY_CLIENT_ID/SPOTIFY_CLIENT_SECRET set. Track enrichment disabled.")

        genius = None
        if settings.genius_access_token:
            genius = GeniusClient(settings.genius_access_token)
        else:
            logger.warning("No GENIUS_ACCESS_TOKEN set. Lyrics lookup disabled.")

        youtube = YouTubeClient(settings.youtube_api_key) if settings.youtube_api_key else None

        analyzer = responder = None
        try:
            pool = CredentialPool(settings.ai_api_keys, provider="anthropic")
        except ConfigurationError as exc:
            logger.warning(f"{exc}. Analysis and chat disabled.")
        else:
            logger.info(f"AI credential pool: {len(pool)} key(s), model {settings.model}")
            provider = ClaudeProvider(pool, settings.model)
            analyzer = TrackAnalyzer(provider)
            responder = ChatResponder(provider)

        return cls(settings, db, spotify, genius, youtube, analyzer, responder)

    async def close(self) -> None:
        for client in (self.spotify, self.genius, self.youtube):
            if client is not None:
                await client.aclose()
        await self.db.disconnect()


services: Optional[Services] = None


def _services() -> Services:
    if services is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return services


def _require(component, name: str):
    if component is None:
        raise HTTPException(status_code=503, detail=f"Missing credentials: {name} not configured")
    return component


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app_instance: FastAPI):
    global services

    # Startup
    services = await Services.create(Settings.from_env())
    count = await services.db.count_tracks()
    logger.info(f"Crosstalk ready. {count} tracks in collection.")

    yield

    # Shutdown
    await services.close()
    services = None


app = FastAPI(title="Crosstalk", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Routes - Tracks
# ---------------------------------------------------------------------------

@app.get("/api/tracks")
async def list_tracks(emotion: Optional[str] = None, orbit: Optional[int] = None):
    """All tracks, newest first. ``orbit`` selects one recency bucket."""
    svc = _services()
    if emotion is not None and emotion not in EMOTIONS:
        raise HTTPException(status_code=400, detail=f"Unknown emotion: {emotion}")

    tracks = await (svc.db.get_tracks_by_emotion(emotion) if emotion else svc.db.get_all_tracks())
    if orbit is not None:
        try:
            tracks = tracks_in_orbit(tracks, orbit, svc.settings.orbit_count)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    return JSONResponse({"tracks": [t.model_dump(mode="json") for t in tracks]})


@app.delete("/api/tracks/{track_id}")
async def delete_track(track_id: int):
    if not await _services().db.delete_track(track_id):
        raise HTTPException(status_code=404, detail=f"Track not found: {track_id}")
    return {"success": True, "id": track_id}


class AnalyzeRequest(BaseModel):
    url: str


@app.post("/api/tracks/analyze")
async def analyze_track(body: AnalyzeRequest):
    """Run one Spotify track URL through the enrichment pipeline."""
    svc = _services()
    pipeline = _require(svc.pipeline, "spotify/anthropic")

    count_before = await svc.db.count_tracks()
    outcome = await pipeline.enrich(body.url)

    if outcome.status == OutcomeStatus.SKIPPED:
        return JSONResponse(
            {"error": outcome.detail, "track": outcome.track.model_dump(mode="json")},
            status_code=409,
        )
    if outcome.status == OutcomeStatus.FAILED:
        raise HTTPException(
            status_code=FAILURE_STATUS[outcome.reason],
            detail={"reason": outcome.reason.value, "message": outcome.detail},
        )

    try:
        await svc.nucleus.maybe_refresh(count_before, count_before + 1)
    except Exception:
        logger.exception("Nucleus refresh after single add failed")
    return JSONResponse({"success": True, "track": outcome.track.model_dump(mode="json")})


class AnalyzePlaylistRequest(BaseModel):
    playlist_url: str
    target: Optional[int] = None
    batch_id: Optional[str] = None


@app.post("/api/tracks/analyze-playlist")
async def analyze_playlist(body: AnalyzePlaylistRequest):
    """Enrich a playlist until the target number of tracks has been added.

    Long-running; poll ``/api/tracks/progress/{batch_id}`` with the same
    ``batch_id`` while it runs.  Always 200 once the playlist has been listed,
    even when every candidate failed.
    """
    svc = _services()
    batches = _require(svc.batches, "spotify/anthropic")
    target = body.target or svc.settings.batch_target

    try:
        result = await batches.enrich_playlist(
            body.playlist_url,
            target=target,
            limit=svc.settings.playlist_limit,
            batch_id=body.batch_id,
        )
    except InvalidUrlError as e:
        raise HTTPException(status_code=400, detail=e.detail)
    except ProviderError as e:
        logger.error(f"Playlist listing failed: {e}")
        raise HTTPException(status_code=502, detail=f"Failed to fetch playlist: {e}")

    return JSONResponse({"success": True, **result.summary()})


@app.get("/api/tracks/progress/{batch_id}")
async def batch_progress(batch_id: str):
    progress = _services().registry.get(batch_id)
    if progress is None:
        raise HTTPException(status_code=404, detail=f"Unknown batch: {batch_id}")
    return progress.as_dict()


@app.delete("/api/tracks/progress/{batch_id}")
async def cancel_batch(batch_id: str):
    if not _services().registry.cancel(batch_id):
        raise HTTPException(status_code=404, detail=f"No running batch: {batch_id}")
    return {"success": True, "batchId": batch_id}


# ---------------------------------------------------------------------------
# Routes - Orbits
# ---------------------------------------------------------------------------

@app.get("/api/orbits")
async def get_orbits():
    svc = _services()
    n = svc.settings.orbit_count
    tracks = await svc.db.get_all_tracks()
    return JSONResponse({
        "orbitCount": n,
        "orbits": [[t.id for t in orbit] for orbit in assign_orbits(tracks, n)],
        "layout": orbit_layout(tracks, n),
    })


# ---------------------------------------------------------------------------
# Routes - Chat
# ---------------------------------------------------------------------------

class ChatRequest(BaseModel):
    message: str


class EmotionChatRequest(BaseModel):
    message: str
    emotion: str


def _check_emotion(emotion: Optional[str]) -> str:
    if not emotion:
        raise HTTPException(status_code=400, detail="Emotion parameter required")
    if emotion not in EMOTIONS:
        raise HTTPException(status_code=400, detail=f"Unknown emotion: {emotion}")
    return emotion


async def _send_chat(message: str, emotion: Optional[str] = None) -> Dict:
    svc = _services()
    chat = _require(svc.chat, "anthropic")
    if not message.strip():
        raise HTTPException(status_code=400, detail="Message required")
    try:
        user_row, assistant_row = await chat.send(message, emotion=emotion)
    except ChatProviderError as e:
        raise HTTPException(status_code=502, detail=f"Chat failed: {e}")
    return {
        "response": assistant_row.content,
        "messages": [user_row.model_dump(mode="json"), assistant_row.model_dump(mode="json")],
    }


@app.get("/api/chat")
async def chat_history():
    messages = await _services().db.get_messages()
    return JSONResponse({"messages": [m.model_dump(mode="json") for m in messages]})


@app.delete("/api/chat")
async def clear_chat(emotion: Optional[str] = None, all_channels: bool = Query(False, alias="all")):
    """Clear the Nucleus channel, one emotion channel, or every channel with ``all=true``."""
    if emotion is not None:
        _check_emotion(emotion)
    cleared = await _services().db.clear_messages(emotion, all_channels=all_channels)
    return {"success": True, "cleared": cleared}


@app.post("/api/chat/message")
async def chat_message(body: ChatRequest):
    """Chat with the Nucleus."""
    return JSONResponse(await _send_chat(body.message))


@app.get("/api/chat/emotion")
async def emotion_history(emotion: Optional[str] = None):
    emotion = _check_emotion(emotion)
    messages = await _services().db.get_messages(emotion)
    return JSONResponse({"messages": [m.model_dump(mode="json") for m in messages]})


@app.post("/api/chat/emotion")
async def emotion_message(body: EmotionChatRequest):
    """Chat with one emotion star."""
    return JSONResponse(await _send_chat(body.message, emotion=_check_emotion(body.emotion)))


# ---------------------------------------------------------------------------
# Routes - Nucleus
# ---------------------------------------------------------------------------

class RenameRequest(BaseModel):
    name: Optional[str] = None


class InitializeRequest(BaseModel):
    access_token: str


@app.get("/api/nucleus")
async def get_nucleus():
    nucleus = await _services().nucleus.get()
    return JSONResponse(nucleus.model_dump(mode="json"))


@app.post("/api/nucleus/rename")
async def rename_nucleus(body: Optional[RenameRequest] = None):
    """
    Rename the Nucleus.

    With a ``name`` the name is set as given.  Without one the name is
    regenerated from the collection (top emotions, genres, moods) and the
    dominant emotion is re-derived.
    """
    svc = _services()
    if body is not None and body.name is not None:
        try:
            nucleus = await svc.nucleus.rename(body.name)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    else:
        _require(svc.responder, "anthropic")
        if await svc.db.count_tracks() == 0:
            raise HTTPException(status_code=400, detail="No tracks to analyze")
        nucleus = await svc.nucleus.refresh()
    return JSONResponse({
        "success": True,
        "name": nucleus.name,
        "dominantEmotion": nucleus.dominant_emotion,
        "nucleus": nucleus.model_dump(mode="json"),
    })


@app.post("/api/nucleus/initialize")
async def initialize_nucleus(body: InitializeRequest):
    """Seed an empty collection from the user's Spotify top tracks."""
    svc = _services()
    batches = _require(svc.batches, "spotify/anthropic")
    if await svc.db.count_tracks() > 0:
        raise HTTPException(status_code=409, detail="Collection already initialized")

    try:
        result = await batches.seed_from_top_tracks(body.access_token, limit=svc.settings.seed_limit)
    except ProviderError as e:
        logger.error(f"Top tracks fetch failed: {e}")
        raise HTTPException(status_code=502, detail=f"Failed to fetch top tracks: {e}")

    nucleus = await svc.nucleus.get()
    return JSONResponse({"success": True, "nucleus": nucleus.model_dump(mode="json"), **result.summary()})


# ---------------------------------------------------------------------------
# Routes - Lyrics / YouTube
# ---------------------------------------------------------------------------

class LyricsRequest(BaseModel):
    title: str
    artist: Optional[str] = None


@app.post("/api/lyrics/search")
async def lyrics_search(body: LyricsRequest):
    genius = _require(_services().genius, "genius")
    try:
        result = await genius.search_lyrics(body.title, body.artist)
    except httpx.HTTPError as e:
        raise HTTPException(status_code=502, detail=f"Lyrics search failed: {e}")
    return result.model_dump()


@app.get("/api/youtube/search")
async def youtube_search(q: str):
    youtube = _require(_services().youtube, "youtube")
    try:
        video_id = await youtube.search(q)
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"videoId": video_id}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    settings = Settings.from_env()
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)
    logger.info(f"Starting Crosstalk on port {settings.port}")
    uvicorn.run(
        "crosstalk.app:app",
        host="0.0.0.0",
        port=settings.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
