"""YouTube Data API search, used to find a playable video for a track."""

from typing import Optional

import httpx

from .errors import ProviderError

SEARCH_URL = "https://www.googleapis.com/youtube/v3/search"


class YouTubeClient:
    def __init__(self, api_key: str, http: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self._http = http or httpx.AsyncClient(timeout=15.0)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def search(self, query: str) -> Optional[str]:
        """Return the id of the best music-category video for ``query``, or None."""
        response = await self._http.get(
            SEARCH_URL,
            params={
                "part": "snippet",
                "q": query,
                "type": "video",
                "videoCategoryId": "10",
                "maxResults": 1,
                "key": self.api_key,
            },
        )
        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code >= 400:
            message = "YouTube search failed"
            if isinstance(data, dict) and isinstance(data.get("error"), dict):
                message = data["error"].get("message") or message
            raise ProviderError("youtube", message, response.status_code)
        if not isinstance(data, dict):
            raise ProviderError("youtube", "search response is not a JSON object", response.status_code)

        items = data.get("items") or []
        if not isinstance(items, list) or not items or not isinstance(items[0], dict):
            return None
        video = items[0].get("id")
        return video.get("videoId") if isinstance(video, dict) else None
