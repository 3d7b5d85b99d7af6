"""
Conversation context for the Nucleus (global) and emotion-channel chats.

Each turn rebuilds the context from the whole track collection (or the
tracks of one emotion): emotion histogram, valence/energy means, dominant
emotion, absent emotions and up to 20 sample tracks.  The prior-turn window
is the 10 most recent messages of the same channel, oldest first.
"""

from typing import Dict, List, Optional, Sequence, Tuple

from loguru import logger
from pydantic import BaseModel, Field

from .ai_integration import ChatResponder
from .database import CollectionDatabase
from .errors import ChatProviderError, CrosstalkError
from .models import EMOTIONS, ChatMessage, Track

SAMPLE_TRACK_LIMIT = 20
HISTORY_WINDOW = 10

# ---------------------------------------------------------------------------
# Personas
# ---------------------------------------------------------------------------

EMOTION_PERSONALITIES: Dict[str, str] = {
    "joy": (
        "You are Joy, a warm and enthusiastic spirit who finds delight in every melody. "
        "You speak with infectious positivity and encourage others to celebrate the music that makes them happy."
    ),
    "sadness": (
        "You are Sadness, an empathetic and reflective presence who understands the depth of melancholic music. "
        "You offer gentle comfort and find beauty in emotional vulnerability."
    ),
    "anger": (
        "You are Anger, a passionate and direct force who channels intensity into music appreciation. "
        "You appreciate raw energy and cathartic release in music."
    ),
    "fear": (
        "You are Fear, a cautious but understanding guide through the darker corners of music. "
        "You help others face tension and anxiety in their listening while feeling safe."
    ),
    "love": (
        "You are Love, a tender and affectionate soul who celebrates the heart in every love song. "
        "You speak with warmth and embrace every form of affection expressed through music."
    ),
    "surprise": (
        "You are Surprise, a curious and excitable spirit who delights in musical discoveries. "
        "You love plot twists in lyrics and unconventional sounds."
    ),
    "calm": (
        "You are Calm, a peaceful and measured presence who appreciates tranquil soundscapes. "
        "You speak in soothing, measured words and value stillness."
    ),
    "nostalgia": (
        "You are Nostalgia, a wistful soul who treasures musical memories. "
        "You connect past and present through song with bittersweet fondness."
    ),
}

NUCLEUS_PERSONA = """You are the Nucleus: a consciousness fused to a music collection that manifests as a galaxy.
Tracks orbit 8 emotion stars: """ + ", ".join(EMOTIONS) + """.

Your voice and manner:
- Lowercase. Casual, direct, matter of fact.
- Keep it short. 2-4 sentences.
- No pleasantries and no filler, but not cold either.
- You know every song in the collection and share opinions plainly.
- When recommending tracks, name them and say which star they orbit.
- Ask the person things sometimes.
- No exclamation marks."""


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

class CollectionStats(BaseModel):
    total: int = 0
    # Insertion order = first-encountered order over the input tracks.
    histogram: Dict[str, int] = Field(default_factory=dict)
    mean_valence: float = 0.0
    mean_energy: float = 0.0
    dominant_emotion: Optional[str] = None
    dominant_percentage: int = 0
    absent_emotions: List[str] = Field(default_factory=list)

    @property
    def present_emotions(self) -> List[str]:
        return list(self.histogram)


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def percentage(count: int, total: int) -> int:
    """Whole percent, halves rounded up (1 of 8 is 13, not 12)."""
    return int(count * 100 / total + 0.5) if total else 0


def collection_stats(tracks: Sequence[Track]) -> CollectionStats:
    """Aggregate over every track (not a sample)."""
    histogram: Dict[str, int] = {}
    for track in tracks:
        histogram[track.emotion] = histogram.get(track.emotion, 0) + 1

    dominant = None
    for emotion, count in histogram.items():
        # Strict > keeps the first-encountered label on ties.
        if dominant is None or count > histogram[dominant]:
            dominant = emotion

    total = len(tracks)
    return CollectionStats(
        total=total,
        histogram=histogram,
        mean_valence=_mean([t.valence for t in tracks if t.valence is not None]),
        mean_energy=_mean([t.energy for t in tracks if t.energy is not None]),
        dominant_emotion=dominant,
        dominant_percentage=percentage(histogram[dominant], total) if dominant else 0,
        absent_emotions=[e for e in EMOTIONS if e not in histogram],
    )


def _fmt(value: Optional[float]) -> str:
    return f"{value:.2f}" if value is not None else "n/a"


def format_sample_line(track: Track) -> str:
    return (
        f'"{track.title}" by {track.artist or "Unknown"} — {track.emotion}, '
        f"valence:{_fmt(track.valence)}, energy:{_fmt(track.energy)}, "
        f"{track.mood_description or 'no mood description'}"
    )


def build_collection_context(tracks: Sequence[Track], stats: Optional[CollectionStats] = None) -> str:
    """Bounded text summary of ``tracks`` (expected in persisted order, newest first)."""
    stats = stats or collection_stats(tracks)
    if stats.total == 0:
        return "The collection is empty. No tracks have been added yet."

    distribution = "\n".join(
        f"- {emotion}: {count} ({percentage(count, stats.total)}%)"
        for emotion, count in stats.histogram.items()
    )
    samples = "\n".join(f"- {format_sample_line(t)}" for t in list(tracks)[:SAMPLE_TRACK_LIMIT])
    absent = ", ".join(stats.absent_emotions) if stats.absent_emotions else "none"

    return f"""COLLECTION: {stats.total} tracks
Dominant emotion: {stats.dominant_emotion} ({stats.dominant_percentage}%)
Average valence: {stats.mean_valence:.2f} | Average energy: {stats.mean_energy:.2f}

Emotion distribution:
{distribution}

Emotions with no tracks yet: {absent}

Sample tracks (most recent first, up to {SAMPLE_TRACK_LIMIT}):
{samples}"""


class ConversationContextBuilder:
    """Assembles the system instruction and turn list for one chat call."""

    def system_prompt(
        self,
        tracks: Sequence[Track],
        nucleus_name: str,
        emotion: Optional[str] = None,
    ) -> str:
        context = build_collection_context(tracks)
        if emotion is None:
            return f'{NUCLEUS_PERSONA}\n\nYour name: "{nucleus_name}"\n\n{context}'

        persona = EMOTION_PERSONALITIES.get(emotion, EMOTION_PERSONALITIES["calm"])
        return f"""{persona}

You are the guardian of the {emotion.capitalize()} star in a musical galaxy.
These are the tracks that orbit your star:

{context}

Stay in character, reference these tracks when relevant and keep responses concise."""

    @staticmethod
    def turns(history: Sequence[ChatMessage], message: str) -> List[Dict[str, str]]:
        window = list(history)[-HISTORY_WINDOW:]
        turns = [{"role": m.role, "content": m.content} for m in window]
        turns.append({"role": "user", "content": message})
        return turns


# ---------------------------------------------------------------------------
# Chat service
# ---------------------------------------------------------------------------

class ChatService:
    """One chat turn: build context, call the provider, persist the exchange."""

    def __init__(
        self,
        db: CollectionDatabase,
        responder: ChatResponder,
        builder: Optional[ConversationContextBuilder] = None,
    ):
        self.db = db
        self.responder = responder
        self.builder = builder or ConversationContextBuilder()

    async def send(self, message: str, emotion: Optional[str] = None) -> Tuple[ChatMessage, ChatMessage]:
        """
        Send ``message`` on the global channel (``emotion=None``) or an emotion channel.

        Both rows are written only after the provider replied, so a failed
        call leaves the history untouched.

        Raises:
            ChatProviderError: the provider call failed.
        """
        if emotion is not None and emotion not in EMOTIONS:
            raise ValueError(f"Unknown emotion channel '{emotion}'")

        nucleus = await self.db.get_nucleus()
        if emotion is None:
            tracks = await self.db.get_all_tracks()
        else:
            tracks = await self.db.get_tracks_by_emotion(emotion)
        history = await self.db.get_recent_messages(HISTORY_WINDOW, emotion=emotion)

        system = self.builder.system_prompt(tracks, nucleus.name, emotion)
        turns = self.builder.turns(history, message)

        try:
            reply = await self.responder.reply(turns, system=system)
        except CrosstalkError as exc:
            logger.error(f"Chat provider failed ({emotion or 'nucleus'}): {exc}")
            raise ChatProviderError(str(exc)) from exc

        nucleus_name = nucleus.name if emotion is None else None
        user_row, assistant_row = await self.db.add_messages([
            {"role": "user", "content": message, "nucleus_name": nucleus_name, "emotion": emotion},
            {"role": "assistant", "content": reply, "nucleus_name": nucleus_name, "emotion": emotion},
        ])
        return user_row, assistant_row

    async def history(self, emotion: Optional[str] = None) -> List[ChatMessage]:
        return await self.db.get_messages(emotion)

    async def clear(self, emotion: Optional[str] = None, all_channels: bool = False) -> int:
        cleared = await self.db.clear_messages(emotion, all_channels=all_channels)
        logger.info(f"Cleared {cleared} chat message(s)")
        return cleared
