"""Persistence for saved songs, synced playlists and the cross-year report."""
from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import distinct, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from yearly_top_songs.analysis import UNKNOWN_ARTIST, TrackSource
from yearly_top_songs.db import (
    PlaylistModel,
    PlaylistTrackModel,
    SongByYearModel,
    UserModel,
    utc_now,
)
from yearly_top_songs.models import Playlist, Track
from yearly_top_songs.playlist_matcher import split_pasted_urls

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 50
MIN_THRESHOLD = 1
MAX_THRESHOLD = 100


def clamp_threshold(threshold: int | None) -> int:
    if threshold is None:
        return DEFAULT_THRESHOLD
    return max(MIN_THRESHOLD, min(MAX_THRESHOLD, threshold))


def _artist_name(track: Track) -> str:
    return track.artists[0].name if track.artists else UNKNOWN_ARTIST


def _album_image(track: Track) -> str | None:
    return track.album.images[0].get("url") if track.album.images else None


def get_or_create_user(session: Session, spotify_id: str, display_name: str | None = None) -> UserModel:
    user = session.scalar(select(UserModel).where(UserModel.spotify_id == spotify_id))
    if user is None:
        user = UserModel(spotify_id=spotify_id, display_name=display_name)
        session.add(user)
        session.flush()
    elif display_name and user.display_name != display_name:
        user.display_name = display_name
    return user


def upsert_song_by_year(session: Session, user_id: int, year: int, track: Track, position: int) -> SongByYearModel:
    row = session.scalar(
        select(SongByYearModel).where(
            SongByYearModel.user_id == user_id,
            SongByYearModel.year == year,
            SongByYearModel.spotify_track_id == track.id,
        )
    )
    if row is None:
        row = SongByYearModel(user_id=user_id, year=year, spotify_track_id=track.id)
        session.add(row)
    row.track_name = track.name
    row.artist_name = _artist_name(track)
    row.album_name = track.album.name
    row.album_image_url = _album_image(track)
    row.position = position
    row.added_at = utc_now()
    session.flush()
    return row


def save_songs_by_year(
    session: Session,
    service: TrackSource,
    user_id: int,
    songs_by_year: Iterable[tuple[int, str]],
) -> int:
    """Resolve pasted links per year and store them; returns how many rows were saved."""

    saved = 0
    for year, song_urls in songs_by_year:
        if not song_urls.strip():
            continue
        urls = split_pasted_urls(song_urls)
        if not urls:
            continue

        tracks = service.get_tracks_from_urls(urls)
        for index, track in enumerate(tracks):
            try:
                with session.begin_nested():
                    upsert_song_by_year(session, user_id, year, track, index + 1)
            except SQLAlchemyError:
                logger.exception("Failed to save track %s for %s", track.id, year)
                continue
            saved += 1
    return saved


def _report_conditions(user_id: int, threshold: int, min_year: int | None, max_year: int | None) -> list:
    conditions = [
        SongByYearModel.user_id == user_id,
        SongByYearModel.position <= threshold,
    ]
    if min_year is not None:
        conditions.append(SongByYearModel.year >= min_year)
    if max_year is not None:
        conditions.append(SongByYearModel.year <= max_year)
    return conditions


def cross_year_songs(
    session: Session,
    user_id: int,
    threshold: int | None = DEFAULT_THRESHOLD,
    min_year: int | None = None,
    max_year: int | None = None,
) -> list[dict]:
    """Saved songs that show up in more than one year, most persistent first.

    Years are counted once each, unlike the in-memory analysis which counts
    every appearance.
    """

    conditions = _report_conditions(user_id, clamp_threshold(threshold), min_year, max_year)
    years_appeared = func.count(distinct(SongByYearModel.year)).label("years_appeared")
    average_position = func.avg(SongByYearModel.position).label("average_position")

    stmt = (
        select(
            SongByYearModel.spotify_track_id,
            SongByYearModel.track_name,
            SongByYearModel.artist_name,
            SongByYearModel.album_name,
            years_appeared,
            average_position,
            func.min(SongByYearModel.position).label("best_position"),
            func.max(SongByYearModel.position).label("worst_position"),
            func.count().label("total_appearances"),
        )
        .where(*conditions)
        .group_by(
            SongByYearModel.spotify_track_id,
            SongByYearModel.track_name,
            SongByYearModel.artist_name,
            SongByYearModel.album_name,
        )
        .having(func.count(distinct(SongByYearModel.year)) > 1)
        .order_by(years_appeared.desc(), average_position.asc())
    )
    rows = session.execute(stmt).all()
    if not rows:
        return []

    years_by_track: dict[str, list[int]] = {}
    track_ids = {row.spotify_track_id for row in rows}
    year_rows = session.execute(
        select(SongByYearModel.spotify_track_id, SongByYearModel.year)
        .where(*conditions, SongByYearModel.spotify_track_id.in_(track_ids))
        .distinct()
        .order_by(SongByYearModel.year)
    )
    for track_id, year in year_rows:
        years_by_track.setdefault(track_id, []).append(year)

    return [
        {
            "spotify_track_id": row.spotify_track_id,
            "track_name": row.track_name,
            "artist_name": row.artist_name,
            "album_name": row.album_name,
            "years_appeared": int(row.years_appeared),
            "years_list": years_by_track.get(row.spotify_track_id, []),
            "average_position": float(row.average_position),
            "best_position": int(row.best_position),
            "worst_position": int(row.worst_position),
            "total_appearances": int(row.total_appearances),
        }
        for row in rows
    ]


def upsert_playlist(session: Session, user_id: int, playlist: Playlist, year: int, total_tracks: int) -> PlaylistModel:
    row = session.scalar(
        select(PlaylistModel).where(
            PlaylistModel.user_id == user_id,
            PlaylistModel.spotify_playlist_id == playlist.id,
        )
    )
    if row is None:
        row = PlaylistModel(user_id=user_id, spotify_playlist_id=playlist.id)
        session.add(row)
    row.name = playlist.name
    row.year = year
    row.total_tracks = total_tracks
    row.last_updated = utc_now()
    session.flush()
    return row


def upsert_playlist_track(session: Session, playlist_id: int, track: Track, position: int) -> PlaylistTrackModel:
    row = session.scalar(
        select(PlaylistTrackModel).where(
            PlaylistTrackModel.playlist_id == playlist_id,
            PlaylistTrackModel.spotify_track_id == track.id,
        )
    )
    if row is None:
        row = PlaylistTrackModel(playlist_id=playlist_id, spotify_track_id=track.id)
        session.add(row)
    row.track_name = track.name
    row.artist_name = _artist_name(track)
    row.album_name = track.album.name
    row.position = position
    session.flush()
    return row
