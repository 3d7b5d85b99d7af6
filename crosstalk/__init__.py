"""Crosstalk: an emotion-mapped Spotify track collection with AI chat."""

__version__ = "0.1.0"
