"""
Spotify Web API client (client-credentials flow + user-token endpoints).

Spotify uses one fixed client id/secret pair; it is not rotated.  The access
token lives in a ``TokenCache`` owned by the client instance.
"""

import base64
import re
import time
from typing import Callable, List, Optional

import httpx
from loguru import logger
from pydantic import ValidationError

from .errors import ProviderError
from .models import SpotifyMetadata

API_BASE = "https://api.spotify.com/v1"
TOKEN_URL = "https://accounts.spotify.com/api/token"

# A token is treated as expired this many seconds before Spotify says so.
TOKEN_EXPIRY_MARGIN = 60

_TRACK_PATTERNS = (
    re.compile(r"spotify:track:([A-Za-z0-9]+)"),
    re.compile(r"track/([A-Za-z0-9]+)"),
    re.compile(r"^([A-Za-z0-9]{22})$"),
)
_PLAYLIST_PATTERNS = (
    re.compile(r"spotify:playlist:([A-Za-z0-9]+)"),
    re.compile(r"playlist/([A-Za-z0-9]+)"),
)


def extract_track_id(url: Optional[str]) -> Optional[str]:
    """Return the Spotify track id in a URL, URI or bare id, or None."""
    if not url:
        return None
    url = url.strip()
    for pattern in _TRACK_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def extract_playlist_id(url: Optional[str]) -> Optional[str]:
    """Return the Spotify playlist id in a URL or URI, or None."""
    if not url:
        return None
    for pattern in _PLAYLIST_PATTERNS:
        match = pattern.search(url.strip())
        if match:
            return match.group(1)
    return None


# ---------------------------------------------------------------------------
# Response shape checks; a body we cannot use is a provider failure
# ---------------------------------------------------------------------------

def _json_object(response: httpx.Response, context: str) -> dict:
    try:
        data = response.json()
    except ValueError as exc:
        raise ProviderError("spotify", f"{context}: response is not JSON", response.status_code) from exc
    if not isinstance(data, dict):
        raise ProviderError("spotify", f"{context}: expected a JSON object", response.status_code)
    return data


def _items(data: dict, context: str) -> list:
    items = data.get("items") or []
    if not isinstance(items, list):
        raise ProviderError("spotify", f"{context}: 'items' is not a list")
    return items


def _metadata(data: dict, context: str) -> SpotifyMetadata:
    try:
        return SpotifyMetadata.model_validate(data)
    except ValidationError as exc:
        raise ProviderError("spotify", f"{context}: unexpected track shape ({exc.error_count()} errors)") from exc


class TokenCache:
    """Holds one bearer token together with its absolute expiry time."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def get(self) -> Optional[str]:
        if self._token and self._clock() < self._expires_at:
            return self._token
        return None

    def store(self, token: str, expires_in: float) -> None:
        self._token = token
        self._expires_at = self._clock() + float(expires_in) - TOKEN_EXPIRY_MARGIN

    def clear(self) -> None:
        self._token = None
        self._expires_at = 0.0


class SpotifyClient:
    """Thin async wrapper over the Spotify endpoints the collection consumes."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        http: Optional[httpx.AsyncClient] = None,
        token_cache: Optional[TokenCache] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self._http = http or httpx.AsyncClient(timeout=20.0)
        self._tokens = token_cache or TokenCache()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def _basic_auth_header(self) -> dict:
        creds = f"{self.client_id}:{self.client_secret}".encode()
        return {"Authorization": "Basic " + base64.b64encode(creds).decode()}

    async def _access_token(self) -> str:
        cached = self._tokens.get()
        if cached:
            return cached

        response = await self._http.post(
            TOKEN_URL,
            data={"grant_type": "client_credentials"},
            headers=self._basic_auth_header(),
        )
        if response.status_code >= 400:
            raise ProviderError("spotify", f"token request failed: {response.text}", response.status_code)
        payload = _json_object(response, "token request")
        token = payload.get("access_token")
        if not token:
            raise ProviderError("spotify", "token response has no access_token", response.status_code)
        self._tokens.store(token, payload.get("expires_in", 3600))
        logger.debug("Spotify access token refreshed")
        return token

    async def _get(self, path: str, token: str, params: Optional[dict] = None) -> dict:
        response = await self._http.get(
            API_BASE + path,
            headers={"Authorization": f"Bearer {token}"},
            params=params or {},
        )
        if response.status_code >= 400:
            raise ProviderError("spotify", f"GET {path}: {response.text}", response.status_code)
        return _json_object(response, f"GET {path}")

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def fetch_track(self, track_id: str) -> SpotifyMetadata:
        token = await self._access_token()
        data = await self._get(f"/tracks/{track_id}", token)
        return _metadata(data, f"track {track_id}")

    async def fetch_playlist_tracks(self, playlist_id: str, limit: int = 25) -> List[SpotifyMetadata]:
        """Tracks of a playlist in playlist order; removed or local slots are dropped."""
        token = await self._access_token()
        data = await self._get(f"/playlists/{playlist_id}/tracks", token, params={"limit": limit})
        tracks = []
        for item in _items(data, f"playlist {playlist_id}"):
            track = item.get("track") if isinstance(item, dict) else None
            if not isinstance(track, dict) or not track.get("id"):
                continue
            tracks.append(_metadata(track, f"playlist {playlist_id}"))
        return tracks

    async def fetch_user_top_tracks(self, user_token: str, limit: int = 15) -> List[SpotifyMetadata]:
        data = await self._get("/me/top/tracks", user_token, params={"limit": limit})
        return [
            _metadata(t, "top tracks")
            for t in _items(data, "top tracks")
            if isinstance(t, dict) and t.get("id")
        ]

    async def download_preview(self, preview_url: str) -> bytes:
        response = await self._http.get(preview_url)
        if response.status_code >= 400:
            raise ProviderError("spotify", f"preview download failed: {preview_url}", response.status_code)
        return response.content
