from __future__ import annotations

import logging
import warnings
from typing import Iterable

import spotipy
from spotipy.exceptions import SpotifyException
from requests.exceptions import HTTPError

from yearly_top_songs.models import Album, Artist, Playlist, Track
from yearly_top_songs.playlist_matcher import extract_song_ids_from_urls

logger = logging.getLogger(__name__)


def _status_of(exc: HTTPError | SpotifyException) -> int | None:
    if isinstance(exc, HTTPError):
        return exc.response.status_code if exc.response is not None else None
    return exc.http_status


def _track_from_payload(payload: dict | None) -> Track:
    payload = payload or {}
    album = payload.get("album") or {}
    return Track(
        id=payload.get("id") or "",
        name=payload.get("name") or "",
        artists=[
            Artist(id=a.get("id") or "", name=a.get("name") or "")
            for a in payload.get("artists") or []
        ],
        album=Album(
            id=album.get("id") or "",
            name=album.get("name") or "",
            images=list(album.get("images") or []),
        ),
    )


def _playlist_from_payload(payload: dict) -> Playlist:
    return Playlist(
        id=payload["id"],
        name=payload.get("name") or "",
        description=payload.get("description") or "",
        images=list(payload.get("images") or []),
        total_tracks=int((payload.get("tracks") or {}).get("total") or 0),
    )


class SpotifyService:
    """Read-only view of one user's Spotify library, driven by their access token."""

    # Largest page the current-user playlists endpoint accepts.
    PLAYLIST_PAGE_LIMIT = 50

    def __init__(self, access_token: str | None) -> None:
        self._validate_token(access_token)
        self.client = spotipy.Spotify(auth=access_token)

    @staticmethod
    def _validate_token(access_token: str | None) -> None:
        if not access_token or not access_token.strip():
            raise ValueError("Missing Spotify access token.")

    def current_user(self) -> dict:
        return self.client.current_user()

    def get_user_playlists(self) -> list[Playlist]:
        playlists: list[Playlist] = []
        offset = 0
        total = 0
        while True:
            try:
                page = self.client.current_user_playlists(limit=self.PLAYLIST_PAGE_LIMIT, offset=offset)
            except (HTTPError, SpotifyException) as exc:
                if _status_of(exc) == 400:
                    warnings.warn(
                        f"Spotify playlists returned 400 Bad Request (offset={offset}). "
                        "Returning playlists collected so far.",
                        RuntimeWarning,
                        stacklevel=2,
                    )
                    break
                raise
            items = page.get("items") or []
            playlists.extend(_playlist_from_payload(item) for item in items if item)
            total = int(page.get("total") or 0)
            offset += self.PLAYLIST_PAGE_LIMIT
            if not items or len(playlists) >= total:
                break
        return playlists

    def get_playlist_metadata(self, playlist_id: str) -> Playlist:
        logger.debug("Fetching playlist metadata for %s", playlist_id)
        return _playlist_from_payload(self.client.playlist(playlist_id))

    def get_playlist_tracks(self, playlist_id: str) -> list[Track]:
        """Return the playlist's tracks in playlist order, skipping local files and gaps."""

        tracks: list[Track] = []
        page = self.client.playlist_items(playlist_id)
        while page:
            for item in page.get("items") or []:
                track = _track_from_payload((item or {}).get("track"))
                if track.id:
                    tracks.append(track)
            page = self.client.next(page) if page.get("next") else None
        return tracks

    def get_track_info(self, track_id: str) -> Track | None:
        try:
            payload = self.client.track(track_id)
        except (HTTPError, SpotifyException) as exc:
            logger.warning("Failed to fetch track %s: %s", track_id, exc)
            return None
        return _track_from_payload(payload)

    def get_tracks_from_urls(self, urls: str | Iterable[str]) -> list[Track]:
        """Resolve every ``track/<id>`` link in ``urls`` in order.

        Tracks that cannot be fetched are dropped; the rest keep their
        relative order.
        """

        text = urls if isinstance(urls, str) else " ".join(urls)
        tracks: list[Track] = []
        for track_id in extract_song_ids_from_urls(text):
            track = self.get_track_info(track_id)
            if track is not None:
                tracks.append(track)
        return tracks
