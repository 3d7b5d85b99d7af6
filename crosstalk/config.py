"""
Runtime settings, read once from the environment at startup.

Credential pools are assembled here but validated (non-empty) where they are
turned into ``CredentialPool`` objects, so a missing provider is reported by
name at startup rather than on the first request.
"""

import os
from typing import List, Mapping, Optional

from pydantic import BaseModel, Field

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///crosstalk.db"
DEFAULT_MODEL = "claude-sonnet-4-5"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _collect_ai_keys(env: Mapping[str, str]) -> List[str]:
    """Gather the AI credential pool in rotation order, dropping blanks and duplicates."""
    keys: List[str] = []
    for raw in (env.get("ANTHROPIC_API_KEYS") or "").split(","):
        keys.append(raw.strip())
    keys.append((env.get("ANTHROPIC_API_KEY") or "").strip())

    numbered = []
    for name, value in env.items():
        prefix, _, suffix = name.rpartition("_")
        if prefix == "ANTHROPIC_API_KEY" and suffix.isdigit():
            numbered.append((int(suffix), value.strip()))
    keys.extend(value for _, value in sorted(numbered))

    ordered: List[str] = []
    for key in keys:
        if key and key not in ordered:
            ordered.append(key)
    return ordered


class Settings(BaseModel):
    spotify_client_id: Optional[str] = None
    spotify_client_secret: Optional[str] = None
    genius_access_token: Optional[str] = None
    ai_api_keys: List[str] = Field(default_factory=list)
    youtube_api_key: Optional[str] = None

    database_url: str = DEFAULT_DATABASE_URL
    model: str = DEFAULT_MODEL
    orbit_count: int = Field(default=4, ge=1)
    batch_target: int = Field(default=25, ge=1)
    playlist_limit: int = Field(default=100, ge=1)
    seed_limit: int = Field(default=15, ge=1)
    allow_reference_analysis: bool = False
    log_level: str = "INFO"
    port: int = 8888

    @property
    def spotify_configured(self) -> bool:
        return bool(self.spotify_client_id and self.spotify_client_secret)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``os.environ`` (or the given mapping)."""
        env = os.environ if env is None else env

        def _get(name: str) -> Optional[str]:
            value = (env.get(name) or "").strip()
            return value or None

        values = {
            "spotify_client_id": _get("SPOTIFY_CLIENT_ID"),
            "spotify_client_secret": _get("SPOTIFY_CLIENT_SECRET"),
            "genius_access_token": _get("GENIUS_ACCESS_TOKEN"),
            "ai_api_keys": _collect_ai_keys(env),
            "youtube_api_key": _get("YOUTUBE_API_KEY"),
            "database_url": _get("CROSSTALK_DATABASE_URL") or DEFAULT_DATABASE_URL,
            "model": _get("CROSSTALK_MODEL") or DEFAULT_MODEL,
            "allow_reference_analysis": (_get("CROSSTALK_ALLOW_REFERENCE_ANALYSIS") or "").lower() in _TRUE_VALUES,
            "log_level": (_get("CROSSTALK_LOG_LEVEL") or "INFO").upper(),
        }
        for field, name in (
            ("orbit_count", "CROSSTALK_ORBIT_COUNT"),
            ("batch_target", "CROSSTALK_BATCH_TARGET"),
            ("playlist_limit", "CROSSTALK_PLAYLIST_LIMIT"),
            ("seed_limit", "CROSSTALK_SEED_LIMIT"),
            ("port", "CROSSTALK_PORT"),
        ):
            raw = _get(name)
            if raw is not None:
                values[field] = int(raw)
        return cls(**values)
