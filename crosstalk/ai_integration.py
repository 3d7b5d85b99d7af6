"""
Claude API integration for track analysis and collection chat.

Two consumers share one provider wrapper:

- ``TrackAnalyzer`` turns a content source (lyrics, an embed reference, or
  audio where the model supports it) into a validated ``TrackAnalysis``.
- ``ChatResponder`` sends an ordered turn list plus an optional system
  instruction and returns the reply text.

Every provider call goes through ``credentials.rotate`` so a failing key is
replaced by the next one in the pool.  Only the network call is rotated:
a reply that arrives but does not match the analysis schema is reported as
malformed, not retried on another key.
"""

import json
from typing import Any, Callable, Dict, List, Optional, Sequence

from loguru import logger
from pydantic import ValidationError

from .config import DEFAULT_MODEL
from .credentials import CredentialPool, rotate
from .errors import AnalysisMalformedError, ConfigurationError
from .models import (
    EMOTIONS,
    AudioBytes,
    ContentSource,
    EmbedReference,
    LyricsText,
    TrackAnalysis,
)

MAX_TOKENS = 2048

# Collection roles -> provider message roles.
PROVIDER_ROLES = {"user": "user", "assistant": "assistant"}

_EMOTION_LIST = ", ".join(EMOTIONS)

# ---------------------------------------------------------------------------
# Prompt templates
# ---------------------------------------------------------------------------

LYRICS_ANALYSIS_PROMPT = """Analyze these song lyrics and provide an emotional and stylistic analysis.

Song: "{title}" by {artist}

Lyrics:
{lyrics}

Return your response in the following JSON format:
{{
  "emotion": "<one of: """ + _EMOTION_LIST + """>",
  "valence": <0.0 to 1.0>,
  "energy": <0.0 to 1.0>,
  "genre": "<inferred genre from lyrical style>",
  "mood_description": "<2-3 sentence description of the emotional content and themes>",
  "vocal_characteristics": "<description of the lyrical style, writing approach, and poetic devices>"
}}

Guidelines:
- emotion: Choose the PRIMARY emotion from the 8 options that best represents the lyrics
- valence: 0.0 = negative/sad themes, 1.0 = positive/uplifting themes (stay within 0.0-1.0)
- energy: 0.0 = calm/introspective, 1.0 = intense/passionate (stay within 0.0-1.0)
- genre: Infer from lyrical style (e.g., "indie folk", "hip-hop", "alternative rock", "pop ballad")
- mood_description: Capture the emotional essence and themes explored in the lyrics
- vocal_characteristics: Describe the writing style, metaphors used, narrative approach

Return ONLY the JSON, no markdown formatting or additional text."""

TRACK_ANALYSIS_PROMPT = """Analyze this music track and provide a detailed emotional and musical analysis.

Return your response in the following JSON format:
{
  "emotion": "<one of: """ + _EMOTION_LIST + """>",
  "valence": <0.0 to 1.0>,
  "energy": <0.0 to 1.0>,
  "tempo": <estimated BPM as integer>,
  "genre": "<primary genre>",
  "mood_description": "<2-3 sentence description of the mood and feeling>",
  "dominant_instruments": "<comma-separated list of main instruments>",
  "vocal_characteristics": "<description of vocals, or 'instrumental' if no vocals>"
}

Guidelines:
- emotion: Choose the PRIMARY emotion from the 8 options that best represents the track
- valence: 0.0 = negative/sad, 1.0 = positive/happy (stay within 0.0-1.0)
- energy: 0.0 = calm/peaceful, 1.0 = energetic/intense (stay within 0.0-1.0)
- tempo: Estimated beats per minute
- genre: Be specific (e.g., "indie rock", "dark ambient", "neo-soul")
- mood_description: Capture the emotional essence and atmosphere
- dominant_instruments: List 3-5 main instruments
- vocal_characteristics: Describe the singing style, tone, or mark as instrumental

Return ONLY the JSON, no markdown formatting or additional text."""

EMBED_ANALYSIS_PREFIX = "I'm sharing a Spotify track URL: {url}\n\n"

COLLECTION_NAME_PROMPT = """Generate a short poetic name (2-4 words) for this music collection:
- {track_count} tracks
- Dominant emotions: {emotions}
- Genres: {genres}
- Sample moods: {moods}

Return ONLY the name, nothing else. Make it evocative and beautiful."""


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def _balanced_end(text: str, start: int) -> int:
    """Index just past the ``}`` closing the ``{`` at ``start``, or -1."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return -1


def extract_json_object(text: str) -> Dict[str, Any]:
    """
    Return the first balanced ``{...}`` block in ``text`` that parses as a JSON object.

    Tolerates prose and markdown fences around the object.

    Raises:
        AnalysisMalformedError: if no such block exists.
    """
    start = text.find("{")
    while start != -1:
        end = _balanced_end(text, start)
        if end != -1:
            try:
                value = json.loads(text[start:end])
            except json.JSONDecodeError:
                value = None
            if isinstance(value, dict):
                return value
        start = text.find("{", start + 1)
    raise AnalysisMalformedError("No JSON object found in analysis response")


def parse_analysis(text: str) -> TrackAnalysis:
    """Extract and strictly validate an analysis object from a model reply."""
    payload = extract_json_object(text)
    try:
        return TrackAnalysis.model_validate(payload)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise AnalysisMalformedError(f"Analysis response failed validation ({fields})") from exc


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

def _default_client_factory(api_key: str):
    import anthropic
    return anthropic.AsyncAnthropic(api_key=api_key)


def to_provider_turns(turns: Sequence[Dict[str, str]]) -> List[Dict[str, str]]:
    """
    Map collection turns to provider messages.

    The provider expects the conversation to open with a user turn, so any
    leading assistant turns (possible when the history window cuts a pair)
    are dropped.
    """
    messages = [
        {"role": PROVIDER_ROLES[t["role"]], "content": t["content"]}
        for t in turns
    ]
    while messages and messages[0]["role"] != PROVIDER_ROLES["user"]:
        messages.pop(0)
    return messages


class ClaudeProvider:
    """Sends one messages request per credential attempt."""

    def __init__(
        self,
        pool: CredentialPool,
        model: str = DEFAULT_MODEL,
        client_factory: Callable[[str], Any] = _default_client_factory,
    ):
        self.pool = pool
        self.model = model
        self._client_factory = client_factory
        self._clients: Dict[str, Any] = {}

    def _get_client(self, api_key: str):
        """Lazy-init one client per credential."""
        if api_key not in self._clients:
            self._clients[api_key] = self._client_factory(api_key)
        return self._clients[api_key]

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        system: Optional[str] = None,
        max_tokens: int = MAX_TOKENS,
    ) -> str:
        """Run a messages request through the credential pool and return the text reply."""

        async def _call(api_key: str) -> str:
            kwargs: Dict[str, Any] = {
                "model": self.model,
                "max_tokens": max_tokens,
                "messages": messages,
            }
            if system:
                kwargs["system"] = system
            response = await self._get_client(api_key).messages.create(**kwargs)
            return "".join(
                block.text for block in response.content if getattr(block, "type", None) == "text"
            )

        return await rotate(self.pool, _call)


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

class TrackAnalyzer:
    """Builds the analysis request for a content source and validates the reply."""

    supported_sources = (LyricsText, EmbedReference)

    def __init__(self, provider: ClaudeProvider):
        self.provider = provider

    def supports(self, source_type: type) -> bool:
        return source_type in self.supported_sources

    def build_prompt(self, source: ContentSource) -> str:
        if isinstance(source, LyricsText):
            return LYRICS_ANALYSIS_PROMPT.format(
                title=source.title, artist=source.artist, lyrics=source.lyrics,
            )
        if isinstance(source, EmbedReference):
            return EMBED_ANALYSIS_PREFIX.format(url=source.url) + TRACK_ANALYSIS_PROMPT
        if isinstance(source, AudioBytes):
            raise ConfigurationError(f"Model {self.provider.model} cannot analyze audio content")
        raise TypeError(f"Unknown content source: {type(source).__name__}")

    async def analyze(self, source: ContentSource) -> TrackAnalysis:
        """
        Analyze one content source.

        Raises:
            ProviderExhaustedError: every credential failed.
            AnalysisMalformedError: a reply arrived but did not match the schema.
        """
        prompt = self.build_prompt(source)
        text = await self.provider.complete([{"role": "user", "content": prompt}])
        analysis = parse_analysis(text)
        logger.debug(f"Analysis ({source.kind}): emotion={analysis.emotion}")
        return analysis


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

class ChatResponder:
    def __init__(self, provider: ClaudeProvider):
        self.provider = provider

    async def reply(self, turns: Sequence[Dict[str, str]], system: Optional[str] = None) -> str:
        """Send ``turns`` (oldest first, ending with the new user message) and return the reply."""
        return await self.provider.complete(to_provider_turns(turns), system=system)

    async def name_collection(
        self,
        track_count: int,
        top_emotions: Sequence[str],
        genres: Sequence[str],
        moods: Sequence[str],
    ) -> str:
        prompt = COLLECTION_NAME_PROMPT.format(
            track_count=track_count,
            emotions=", ".join(top_emotions),
            genres=", ".join(genres),
            moods=", ".join(list(moods)[:3]),
        )
        text = await self.provider.complete([{"role": "user", "content": prompt}], max_tokens=64)
        return text.strip().replace('"', "").replace("'", "")
