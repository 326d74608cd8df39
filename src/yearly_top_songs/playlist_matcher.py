from __future__ import annotations

import re
from typing import Iterable

from yearly_top_songs.models import Playlist

# Naming conventions Spotify (and users copying it) give to annual top-track lists.
_TOP_SONGS_PATTERNS = (
    re.compile(r"your top songs \d{4}", re.IGNORECASE),
    re.compile(r"top songs of \d{4}", re.IGNORECASE),
    re.compile(r"\d{4} top tracks", re.IGNORECASE),
    re.compile(r"wrapped \d{4}", re.IGNORECASE),
)

_ANY_YEAR = re.compile(r"\d{4}")
_WRAPPED_YEAR = re.compile(r"\b(20\d{2})\b")
_TRACK_ID = re.compile(r"track/(\w+)")
_WHITESPACE_RUN = re.compile(r"[\n\s]+")


def extract_year_from_playlist_name(name: str) -> int | None:
    """Return the first run of four digits in ``name`` as a year.

    Not anchored to any century: ``"1999 remixes"`` yields 1999.
    """

    match = _ANY_YEAR.search(name)
    return int(match.group(0)) if match else None


def extract_wrapped_year(name: str) -> int | None:
    """Return a standalone 20xx token from ``name``; used when syncing playlists."""

    match = _WRAPPED_YEAR.search(name)
    return int(match.group(1)) if match else None


def is_top_songs_playlist(name: str) -> bool:
    return any(pattern.search(name) for pattern in _TOP_SONGS_PATTERNS)


def identify_top_songs_playlists(playlists: Iterable[Playlist]) -> list[Playlist]:
    return [playlist for playlist in playlists if is_top_songs_playlist(playlist.name)]


def extract_song_ids_from_urls(text: str) -> list[str]:
    """Pull ``track/<id>`` identifiers out of free text, in order, duplicates kept."""

    return _TRACK_ID.findall(text)


def split_pasted_urls(text: str) -> list[str]:
    """Split pasted text into one URL per element, dropping blanks."""

    parts = (part.strip() for part in _WHITESPACE_RUN.split(text))
    return [part for part in parts if part]
