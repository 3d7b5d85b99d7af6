"""Tests for the Spotify, Genius and YouTube clients against httpx.MockTransport."""

import httpx
import pytest

from crosstalk.errors import ProviderError
from crosstalk.genius import GeniusClient, parse_lyrics_html
from crosstalk.spotify import (
    TOKEN_EXPIRY_MARGIN,
    SpotifyClient,
    TokenCache,
    extract_playlist_id,
    extract_track_id,
)
from crosstalk.youtube import YouTubeClient

TRACK_ID = "4uLU6hMCjMI75M1A2tKUQC"

TRACK_PAYLOAD = {
    "id": TRACK_ID,
    "name": "Never Gonna Give You Up",
    "artists": [{"name": "Rick Astley"}],
    "preview_url": None,
    "duration_ms": 213573,
    "album": {"images": [{"url": "https://i.scdn.co/image/abc", "height": 640, "width": 640}]},
    "external_urls": {"spotify": f"https://open.spotify.com/track/{TRACK_ID}"},
}


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Spotify
# ---------------------------------------------------------------------------

class TestSpotifyUrls:
    @pytest.mark.parametrize("url", [
        f"https://open.spotify.com/track/{TRACK_ID}",
        f"https://open.spotify.com/track/{TRACK_ID}?si=abcdef",
        f"https://open.spotify.com/intl-de/track/{TRACK_ID}",
        f"spotify:track:{TRACK_ID}",
        TRACK_ID,
    ])
    def test_track_id_forms(self, url):
        assert extract_track_id(url) == TRACK_ID

    @pytest.mark.parametrize("url", ["", None, "https://example.com/song", "not-a-track-id"])
    def test_no_track_id(self, url):
        assert extract_track_id(url) is None

    def test_playlist_id_forms(self):
        assert extract_playlist_id("https://open.spotify.com/playlist/37i9dQZF1DXcBWIGoYBM5M?si=x") == "37i9dQZF1DXcBWIGoYBM5M"
        assert extract_playlist_id("spotify:playlist:37i9dQZF1DXcBWIGoYBM5M") == "37i9dQZF1DXcBWIGoYBM5M"
        assert extract_playlist_id(f"https://open.spotify.com/track/{TRACK_ID}") is None


class TestTokenCache:
    def test_expires_with_margin(self):
        now = [1000.0]
        cache = TokenCache(clock=lambda: now[0])
        cache.store("tok", expires_in=3600)
        assert cache.get() == "tok"
        now[0] += 3600 - TOKEN_EXPIRY_MARGIN - 1
        assert cache.get() == "tok"
        now[0] += 2
        assert cache.get() is None

    def test_clear(self):
        cache = TokenCache()
        cache.store("tok", expires_in=3600)
        cache.clear()
        assert cache.get() is None


class TestSpotifyClient:
    async def test_token_fetched_once_and_reused(self):
        calls = {"token": 0, "track": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "accounts.spotify.com":
                calls["token"] += 1
                assert request.headers["Authorization"].startswith("Basic ")
                return httpx.Response(200, json={"access_token": "bearer-1", "expires_in": 3600})
            calls["track"] += 1
            assert request.headers["Authorization"] == "Bearer bearer-1"
            return httpx.Response(200, json=TRACK_PAYLOAD)

        client = SpotifyClient("id", "secret", http=mock_client(handler))
        first = await client.fetch_track(TRACK_ID)
        await client.fetch_track(TRACK_ID)
        await client.aclose()

        assert calls == {"token": 1, "track": 2}
        assert first.name == "Never Gonna Give You Up"
        assert first.primary_artist == "Rick Astley"
        assert first.thumbnail_url == "https://i.scdn.co/image/abc"
        assert first.track_url == f"https://open.spotify.com/track/{TRACK_ID}"

    async def test_non_2xx_raises_provider_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "accounts.spotify.com":
                return httpx.Response(200, json={"access_token": "t", "expires_in": 3600})
            return httpx.Response(404, json={"error": {"status": 404, "message": "Not found"}})

        client = SpotifyClient("id", "secret", http=mock_client(handler))
        with pytest.raises(ProviderError) as excinfo:
            await client.fetch_track(TRACK_ID)
        assert excinfo.value.status == 404

    async def test_token_failure_raises_provider_error(self):
        client = SpotifyClient("id", "bad", http=mock_client(lambda r: httpx.Response(400, json={"error": "invalid_client"})))
        with pytest.raises(ProviderError, match="token request failed"):
            await client.fetch_track(TRACK_ID)

    async def test_playlist_drops_null_and_local_slots(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "accounts.spotify.com":
                return httpx.Response(200, json={"access_token": "t", "expires_in": 3600})
            assert request.url.path == "/v1/playlists/PL1/tracks"
            assert request.url.params["limit"] == "50"
            return httpx.Response(200, json={"items": [
                {"track": TRACK_PAYLOAD},
                {"track": None},
                {"track": {**TRACK_PAYLOAD, "id": None, "name": "local file"}},
                None,
                {"track": {**TRACK_PAYLOAD, "id": "2xLMifQCjDGFmkHkpNLD9h", "name": "Second"}},
            ]})

        client = SpotifyClient("id", "secret", http=mock_client(handler))
        tracks = await client.fetch_playlist_tracks("PL1", limit=50)
        assert [t.name for t in tracks] == ["Never Gonna Give You Up", "Second"]

    async def test_top_tracks_use_user_token(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/me/top/tracks"
            assert request.headers["Authorization"] == "Bearer user-token"
            return httpx.Response(200, json={"items": [TRACK_PAYLOAD]})

        client = SpotifyClient("id", "secret", http=mock_client(handler))
        tracks = await client.fetch_user_top_tracks("user-token", limit=5)
        assert [t.id for t in tracks] == [TRACK_ID]

    async def test_playlist_body_not_json_raises_provider_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "accounts.spotify.com":
                return httpx.Response(200, json={"access_token": "t", "expires_in": 3600})
            return httpx.Response(200, text="<html>upstream hiccup</html>")

        client = SpotifyClient("id", "secret", http=mock_client(handler))
        with pytest.raises(ProviderError, match="not JSON"):
            await client.fetch_playlist_tracks("PL1")

    async def test_playlist_track_with_bad_shape_raises_provider_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "accounts.spotify.com":
                return httpx.Response(200, json={"access_token": "t", "expires_in": 3600})
            return httpx.Response(200, json={"items": [{"track": {"id": TRACK_ID, "name": None}}]})

        client = SpotifyClient("id", "secret", http=mock_client(handler))
        with pytest.raises(ProviderError, match="unexpected track shape"):
            await client.fetch_playlist_tracks("PL1")


# ---------------------------------------------------------------------------
# Genius
# ---------------------------------------------------------------------------

LYRICS_PAGE = """
<html><body>
<div data-lyrics-container="true">[Verse 1]<br/>We're no strangers to love<br>You know the rules</div>
<div class="ad">buy stuff</div>
<div data-lyrics-container="true">[Chorus]<br/>Never gonna give you up</div>
</body></html>
"""


class TestGeniusParsing:
    def test_containers_joined_and_breaks_become_newlines(self):
        lyrics = parse_lyrics_html(LYRICS_PAGE)
        assert lyrics == (
            "[Verse 1]\nWe're no strangers to love\nYou know the rules"
            "\n\n[Chorus]\nNever gonna give you up"
        )
        assert "buy stuff" not in lyrics

    def test_page_without_containers(self):
        assert parse_lyrics_html("<html><body><p>nothing</p></body></html>") is None

    def test_empty_container(self):
        assert parse_lyrics_html('<div data-lyrics-container="true">  </div>') is None


class TestGeniusClient:
    async def test_search_then_scrape(self):
        song_url = "https://genius.com/Rick-astley-never-gonna-give-you-up-lyrics"

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "api.genius.com":
                assert request.headers["Authorization"] == "Bearer g-token"
                assert request.url.params["q"] == "Never Gonna Give You Up Rick Astley"
                return httpx.Response(200, json={"response": {"hits": [{"result": {"url": song_url}}]}})
            assert str(request.url) == song_url
            return httpx.Response(200, text=LYRICS_PAGE)

        client = GeniusClient("g-token", http=mock_client(handler))
        result = await client.search_lyrics("Never Gonna Give You Up", "Rick Astley")
        assert result.url == song_url
        assert result.lyrics.startswith("[Verse 1]")

    async def test_search_miss_is_null_lyrics(self):
        client = GeniusClient("g", http=mock_client(lambda r: httpx.Response(200, json={"response": {"hits": []}})))
        result = await client.search_lyrics("Unknown", None)
        assert result.lyrics is None
        assert result.url is None

    async def test_search_error_is_null_lyrics(self):
        client = GeniusClient("g", http=mock_client(lambda r: httpx.Response(401, json={"meta": {"status": 401}})))
        result = await client.search_lyrics("Song", "Artist")
        assert result.lyrics is None

    @pytest.mark.parametrize("response", [
        httpx.Response(200, text="<html>maintenance</html>"),
        httpx.Response(200, json={"meta": {"status": 200}}),
        httpx.Response(200, json={"response": {"hits": [{"type": "song"}]}}),
        httpx.Response(200, json=["unexpected"]),
    ])
    async def test_odd_search_body_is_null_lyrics(self, response):
        client = GeniusClient("g", http=mock_client(lambda r: response))
        result = await client.search_lyrics("Song", "Artist")
        assert result.lyrics is None
        assert result.url is None

    async def test_page_failure_keeps_url(self):
        song_url = "https://genius.com/some-song-lyrics"

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "api.genius.com":
                return httpx.Response(200, json={"response": {"hits": [{"result": {"url": song_url}}]}})
            return httpx.Response(503)

        result = await GeniusClient("g", http=mock_client(handler)).search_lyrics("Song", "Artist")
        assert result.lyrics is None
        assert result.url == song_url


# ---------------------------------------------------------------------------
# YouTube
# ---------------------------------------------------------------------------

class TestYouTubeClient:
    async def test_first_video_id(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["key"] == "yt-key"
            assert request.url.params["q"] == "Rick Astley Never Gonna Give You Up"
            return httpx.Response(200, json={"items": [{"id": {"videoId": "dQw4w9WgXcQ"}}]})

        client = YouTubeClient("yt-key", http=mock_client(handler))
        assert await client.search("Rick Astley Never Gonna Give You Up") == "dQw4w9WgXcQ"

    async def test_no_results(self):
        client = YouTubeClient("yt-key", http=mock_client(lambda r: httpx.Response(200, json={"items": []})))
        assert await client.search("nothing") is None

    async def test_error_raises_provider_error(self):
        body = {"error": {"code": 403, "message": "quota exceeded"}}
        client = YouTubeClient("yt-key", http=mock_client(lambda r: httpx.Response(403, json=body)))
        with pytest.raises(ProviderError, match="quota exceeded") as excinfo:
            await client.search("anything")
        assert excinfo.value.status == 403

    async def test_error_with_html_body_raises_provider_error(self):
        client = YouTubeClient("yt-key", http=mock_client(lambda r: httpx.Response(502, text="<h1>Bad Gateway</h1>")))
        with pytest.raises(ProviderError) as excinfo:
            await client.search("anything")
        assert excinfo.value.status == 502

    async def test_success_with_non_json_body_raises_provider_error(self):
        client = YouTubeClient("yt-key", http=mock_client(lambda r: httpx.Response(200, text="not json")))
        with pytest.raises(ProviderError, match="not a JSON object"):
            await client.search("anything")
