from __future__ import annotations

import logging
from typing import Iterable, Protocol

from yearly_top_songs.models import Playlist, SongAnalysis, SongAppearance, Track
from yearly_top_songs.playlist_matcher import extract_year_from_playlist_name

logger = logging.getLogger(__name__)

# Each appearance is worth more than any realistic rank bonus, so the number
# of appearances decides the order and rank only separates equal counts.
WEIGHT_YEARS = 100
WEIGHT_RANK = 1

UNKNOWN_ARTIST = "Unknown Artist"


class TrackSource(Protocol):
    def get_playlist_tracks(self, playlist_id: str) -> list[Track]: ...

    def get_tracks_from_urls(self, urls: str | list[str]) -> list[Track]: ...


def appearances_from_tracks(tracks: Iterable[Track], year: int) -> list[SongAppearance]:
    appearances: list[SongAppearance] = []
    for index, track in enumerate(tracks):
        images = track.album.images
        appearances.append(
            SongAppearance(
                track_id=track.id,
                track_name=track.name,
                artist_name=track.artists[0].name if track.artists else UNKNOWN_ARTIST,
                year=year,
                rank=index + 1,
                album_image=images[0].get("url") if images else None,
            )
        )
    return appearances


def group_by_track(appearances: Iterable[SongAppearance]) -> dict[str, list[SongAppearance]]:
    groups: dict[str, list[SongAppearance]] = {}
    for appearance in appearances:
        groups.setdefault(appearance.track_id, []).append(appearance)
    return groups


def rank_score(appearances: list[SongAppearance]) -> tuple[int, int]:
    """Return ``(max_rank, rank_score)`` for one track's appearances.

    ``max_rank`` is the track's own worst rank; each appearance earns the
    distance between that and its rank.
    """

    max_rank = max(a.rank for a in appearances)
    return max_rank, sum(max_rank - a.rank for a in appearances)


def calculate_song_analysis(track_id: str, appearances: list[SongAppearance]) -> SongAnalysis:
    first = appearances[0]
    total = len(appearances)
    _, score = rank_score(appearances)

    return SongAnalysis(
        track_id=track_id,
        track_name=first.track_name,
        artist_name=first.artist_name,
        popularity_score=total * WEIGHT_YEARS + score * WEIGHT_RANK,
        years_appeared=sorted({a.year for a in appearances}),
        average_rank=sum(a.rank for a in appearances) / total,
        total_appearances=total,
        album_image=first.album_image,
    )


def aggregate_appearances(appearances: Iterable[SongAppearance]) -> list[SongAnalysis]:
    analysis = [
        calculate_song_analysis(track_id, group)
        for track_id, group in group_by_track(appearances).items()
    ]
    # sorted() is stable with reverse=True, so equal scores keep first-seen order.
    return sorted(analysis, key=lambda item: item.popularity_score, reverse=True)


def analyze_playlists(service: TrackSource, playlists: Iterable[Playlist]) -> list[SongAnalysis]:
    appearances: list[SongAppearance] = []
    for playlist in playlists:
        year = extract_year_from_playlist_name(playlist.name)
        if not year:
            logger.debug("Skipping playlist %r: no usable year in name", playlist.name)
            continue
        tracks = service.get_playlist_tracks(playlist.id)
        appearances.extend(appearances_from_tracks(tracks, year))
    return aggregate_appearances(appearances)


def analyze_songs_by_year(service: TrackSource, songs_by_year: Iterable[tuple[int, str]]) -> list[SongAnalysis]:
    """Score tracks pasted as links, one block of text per year."""

    appearances: list[SongAppearance] = []
    for year, song_urls in songs_by_year:
        tracks = service.get_tracks_from_urls(song_urls)
        appearances.extend(appearances_from_tracks(tracks, year))
    return aggregate_appearances(appearances)
