"""
Genius lyrics lookup.

Search returns the first hit's page URL; lyrics are scraped from every
``data-lyrics-container`` element on that page.  A search miss, a failed page
fetch or an empty body are all reported as ``lyrics=None``; only transport
errors on the search call propagate.
"""

from typing import Optional

import httpx
from bs4 import BeautifulSoup
from loguru import logger

from .models import LyricsResult

SEARCH_URL = "https://api.genius.com/search"


def parse_lyrics_html(html: str) -> Optional[str]:
    """Extract lyrics text from a Genius song page, or None if there is none."""
    soup = BeautifulSoup(html, "html.parser")
    containers = soup.find_all(attrs={"data-lyrics-container": "true"})
    if not containers:
        return None

    blocks = []
    for container in containers:
        for br in container.find_all("br"):
            br.replace_with("\n")
        blocks.append(container.get_text())
    lyrics = "\n\n".join(blocks).strip()
    return lyrics or None


def _first_hit_url(response: httpx.Response) -> Optional[str]:
    """Song page URL of the first search hit; None for a miss or an odd body."""
    try:
        hits = response.json()["response"]["hits"]
        url = hits[0]["result"]["url"] if hits else None
    except (ValueError, KeyError, IndexError, TypeError) as exc:
        logger.warning(f"Genius search returned an unexpected body: {exc!r}")
        return None
    return url if isinstance(url, str) and url else None


class GeniusClient:
    def __init__(self, access_token: str, http: Optional[httpx.AsyncClient] = None):
        self.access_token = access_token
        self._http = http or httpx.AsyncClient(timeout=20.0, follow_redirects=True)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def search_lyrics(self, title: str, artist: Optional[str]) -> LyricsResult:
        query = f"{title} {artist or ''}".strip()
        response = await self._http.get(
            SEARCH_URL,
            params={"q": query},
            headers={"Authorization": f"Bearer {self.access_token}"},
        )
        if response.status_code >= 400:
            logger.warning(f"Genius search failed ({response.status_code}) for '{query}'")
            return LyricsResult()

        song_url = _first_hit_url(response)
        if not song_url:
            return LyricsResult()

        lyrics = await self._scrape(song_url)
        return LyricsResult(lyrics=lyrics, url=song_url)

    async def _scrape(self, song_url: str) -> Optional[str]:
        try:
            page = await self._http.get(song_url)
        except httpx.HTTPError as exc:
            logger.warning(f"Genius page fetch failed for {song_url}: {exc}")
            return None
        if page.status_code >= 400:
            logger.warning(f"Genius page {song_url} returned {page.status_code}")
            return None
        return parse_lyrics_html(page.text)
