"""Batch import of a user's top-songs playlists into storage.

Each user has one sync job row. Whoever flips it to PROCESSING owns it until
it lands in COMPLETED or FAILED, or until it has gone quiet for longer than
the stale window and a new claim takes it over. Every write made while
processing is conditional on the version obtained by that claim.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Protocol

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from yearly_top_songs.db import SyncJobModel, SyncStatus, utc_now
from yearly_top_songs.models import Playlist, Track
from yearly_top_songs.playlist_matcher import extract_wrapped_year, identify_top_songs_playlists
from yearly_top_songs.repository import upsert_playlist, upsert_playlist_track

logger = logging.getLogger(__name__)

PROGRESS_PLAYLISTS_FETCHED = 10
PROGRESS_PLAYLISTS_IDENTIFIED = 20
PROGRESS_TRACKS_START = 30
PROGRESS_TRACKS_SPAN = 60
PROGRESS_TRACKS_CAP = 90
PROGRESS_DONE = 100

DEFAULT_STALE_AFTER_SECONDS = 900


class SyncInProgressError(RuntimeError):
    pass


class StaleSyncJobError(RuntimeError):
    pass


class PlaylistSource(Protocol):
    def get_user_playlists(self) -> list[Playlist]: ...

    def get_playlist_tracks(self, playlist_id: str) -> list[Track]: ...


@dataclass(slots=True)
class SyncResult:
    playlists_synced: int
    tracks_synced: int


def get_sync_job(session: Session, user_id: int) -> SyncJobModel | None:
    stmt = (
        select(SyncJobModel)
        .where(SyncJobModel.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return session.scalar(stmt)


def _insert_job(session: Session, user_id: int, status: SyncStatus, version: int) -> None:
    now = utc_now()
    try:
        with session.begin_nested():
            session.add(
                SyncJobModel(
                    user_id=user_id,
                    status=status,
                    progress=0,
                    started_at=now,
                    updated_at=now,
                    version=version,
                )
            )
    except IntegrityError as exc:
        raise SyncInProgressError(f"Sync job for user {user_id} was created concurrently") from exc


def _reset_unless_processing(
    session: Session,
    user_id: int,
    status: SyncStatus,
    stale_after_seconds: float,
) -> bool:
    # A PROCESSING job that has not been touched for stale_after_seconds is
    # treated as abandoned and may be taken over.
    now = utc_now()
    stale_before = now - timedelta(seconds=stale_after_seconds)
    result = session.execute(
        update(SyncJobModel)
        .where(
            SyncJobModel.user_id == user_id,
            or_(
                SyncJobModel.status != SyncStatus.PROCESSING,
                SyncJobModel.updated_at < stale_before,
            ),
        )
        .values(
            status=status,
            progress=0,
            started_at=now,
            completed_at=None,
            error=None,
            updated_at=now,
            version=SyncJobModel.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


def start_sync(
    session: Session,
    user_id: int,
    stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
) -> SyncJobModel:
    """Create or reset the user's job to PENDING; refused while a live sync is running."""

    if not _reset_unless_processing(session, user_id, SyncStatus.PENDING, stale_after_seconds):
        if get_sync_job(session, user_id) is not None:
            raise SyncInProgressError(f"Sync already running for user {user_id}")
        _insert_job(session, user_id, SyncStatus.PENDING, version=0)
    session.commit()
    return get_sync_job(session, user_id)


def claim_sync_job(
    session: Session,
    user_id: int,
    stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
) -> int:
    """Move the job to PROCESSING and return the version that owns it."""

    if not _reset_unless_processing(session, user_id, SyncStatus.PROCESSING, stale_after_seconds):
        if get_sync_job(session, user_id) is not None:
            raise SyncInProgressError(f"Sync already running for user {user_id}")
        _insert_job(session, user_id, SyncStatus.PROCESSING, version=1)
    session.commit()
    return get_sync_job(session, user_id).version


def update_sync_job(session: Session, user_id: int, version: int, **values) -> None:
    values["updated_at"] = utc_now()
    result = session.execute(
        update(SyncJobModel)
        .where(SyncJobModel.user_id == user_id, SyncJobModel.version == version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise StaleSyncJobError(f"Sync job for user {user_id} is no longer at version {version}")
    session.commit()


def sync_status(session: Session, user_id: int) -> dict:
    job = get_sync_job(session, user_id)
    if job is None:
        return {"status": "NOT_STARTED"}
    return {
        "job_id": job.id,
        "status": job.status.value,
        "progress": job.progress,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "error": job.error,
    }


def _sync_playlists(
    session: Session,
    service: PlaylistSource,
    user_id: int,
    version: int,
    delay_seconds: float,
    sleep: Callable[[float], None],
) -> SyncResult:
    playlists = service.get_user_playlists()
    update_sync_job(session, user_id, version, progress=PROGRESS_PLAYLISTS_FETCHED)

    top_playlists = identify_top_songs_playlists(playlists)
    update_sync_job(session, user_id, version, progress=PROGRESS_PLAYLISTS_IDENTIFIED)

    result = SyncResult(playlists_synced=0, tracks_synced=0)
    if not top_playlists:
        logger.info("No top songs playlists found for user %s", user_id)
        return result

    progress_per_playlist = PROGRESS_TRACKS_SPAN / len(top_playlists)
    for index, playlist in enumerate(top_playlists):
        year = extract_wrapped_year(playlist.name)
        if year is None:
            continue

        tracks = service.get_playlist_tracks(playlist.id)
        playlist_row = upsert_playlist(session, user_id, playlist, year, len(tracks))
        for position, track in enumerate(tracks, start=1):
            upsert_playlist_track(session, playlist_row.id, track, position)
        result.playlists_synced += 1
        result.tracks_synced += len(tracks)

        progress = PROGRESS_TRACKS_START + (index + 1) * progress_per_playlist
        update_sync_job(session, user_id, version, progress=int(min(progress, PROGRESS_TRACKS_CAP)))

        if index < len(top_playlists) - 1 and delay_seconds > 0:
            sleep(delay_seconds)
    return result


def process_sync(
    session: Session,
    service: PlaylistSource,
    user_id: int,
    delay_seconds: float = 0.1,
    sleep: Callable[[float], None] = time.sleep,
    stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
) -> SyncResult:
    version = claim_sync_job(session, user_id, stale_after_seconds)
    logger.info("Sync started for user %s (job version %s)", user_id, version)
    try:
        result = _sync_playlists(session, service, user_id, version, delay_seconds, sleep)
        update_sync_job(
            session,
            user_id,
            version,
            status=SyncStatus.COMPLETED,
            progress=PROGRESS_DONE,
            completed_at=utc_now(),
        )
    except StaleSyncJobError:
        session.rollback()
        raise
    except Exception as exc:
        session.rollback()
        try:
            update_sync_job(session, user_id, version, status=SyncStatus.FAILED, error=str(exc) or type(exc).__name__)
        except (SQLAlchemyError, StaleSyncJobError):
            logger.exception("Failed to mark sync job failed for user %s", user_id)
        raise

    logger.info(
        "Sync finished for user %s: %s playlists, %s tracks",
        user_id,
        result.playlists_synced,
        result.tracks_synced,
    )
    return result
