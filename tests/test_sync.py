import unittest
from datetime import timedelta

from spotipy.exceptions import SpotifyException
from sqlalchemy import select, update

from yearly_top_songs.db import Database, PlaylistModel, PlaylistTrackModel, SyncJobModel, SyncStatus, utc_now
from yearly_top_songs.models import Album, Artist, Playlist, Track
from yearly_top_songs.repository import get_or_create_user
from yearly_top_songs.sync import (
    DEFAULT_STALE_AFTER_SECONDS,
    StaleSyncJobError,
    SyncInProgressError,
    claim_sync_job,
    get_sync_job,
    process_sync,
    start_sync,
    sync_status,
    update_sync_job,
)


def _track(track_id: str) -> Track:
    return Track(id=track_id, name=f"Song {track_id}", artists=[Artist(id="a", name="Artist")],
                 album=Album(id="al", name="Album"))


class _FakeLibrary:
    def __init__(self, playlists: list[Playlist], tracks: dict[str, list[Track]], on_fetch=None) -> None:
        self.playlists = playlists
        self.tracks = tracks
        self.on_fetch = on_fetch
        self.fetched: list[str] = []

    def get_user_playlists(self) -> list[Playlist]:
        return self.playlists

    def get_playlist_tracks(self, playlist_id: str) -> list[Track]:
        self.fetched.append(playlist_id)
        if self.on_fetch is not None:
            self.on_fetch(playlist_id)
        tracks = self.tracks[playlist_id]
        if isinstance(tracks, Exception):
            raise tracks
        return tracks


class SyncTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.database = Database("sqlite://")
        self.database.create_all()
        self.session = self.database.open_session()
        self.user_id = get_or_create_user(self.session, "listener").id
        self.session.commit()
        self.sleeps: list[float] = []

    def tearDown(self) -> None:
        self.session.close()
        self.database.dispose()

    def _process(self, library: _FakeLibrary):
        return process_sync(self.session, library, self.user_id, delay_seconds=0.1, sleep=self.sleeps.append)


class ProcessSyncTests(SyncTestCase):
    def test_imports_top_songs_playlists(self) -> None:
        library = _FakeLibrary(
            playlists=[
                Playlist(id="p1", name="Your Top Songs 2021"),
                Playlist(id="chill", name="Discover Weekly"),
                Playlist(id="old", name="Top Songs of 1999"),
                Playlist(id="p2", name="Wrapped 2022"),
            ],
            tracks={"p1": [_track("a"), _track("b")], "p2": [_track("b")]},
        )

        result = self._process(library)

        self.assertEqual(result.playlists_synced, 2)
        self.assertEqual(result.tracks_synced, 3)
        self.assertEqual(library.fetched, ["p1", "p2"])
        self.assertEqual(self.sleeps, [0.1])

        playlists = self.session.scalars(select(PlaylistModel).order_by(PlaylistModel.year)).all()
        self.assertEqual([(p.spotify_playlist_id, p.year, p.total_tracks) for p in playlists],
                         [("p1", 2021, 2), ("p2", 2022, 1)])
        tracks = self.session.scalars(
            select(PlaylistTrackModel).where(PlaylistTrackModel.playlist_id == playlists[0].id)
            .order_by(PlaylistTrackModel.position)
        ).all()
        self.assertEqual([(t.spotify_track_id, t.position) for t in tracks], [("a", 1), ("b", 2)])

        job = get_sync_job(self.session, self.user_id)
        self.assertEqual(job.status, SyncStatus.COMPLETED)
        self.assertEqual(job.progress, 100)
        self.assertIsNotNone(job.completed_at)

    def test_progress_advances_per_playlist(self) -> None:
        seen: dict[str, int] = {}

        def record(playlist_id: str) -> None:
            seen[playlist_id] = get_sync_job(self.session, self.user_id).progress

        library = _FakeLibrary(
            playlists=[Playlist(id="p1", name="Wrapped 2020"), Playlist(id="p2", name="Wrapped 2021")],
            tracks={"p1": [_track("a")], "p2": [_track("a")]},
            on_fetch=record,
        )

        self._process(library)

        self.assertEqual(seen, {"p1": 20, "p2": 60})

    def test_no_top_playlists_completes(self) -> None:
        library = _FakeLibrary(playlists=[Playlist(id="x", name="Liked Songs")], tracks={})

        result = self._process(library)

        self.assertEqual(result.playlists_synced, 0)
        self.assertEqual(sync_status(self.session, self.user_id)["status"], "COMPLETED")
        self.assertEqual(sync_status(self.session, self.user_id)["progress"], 100)

    def test_failure_marks_job_failed_and_keeps_earlier_playlists(self) -> None:
        library = _FakeLibrary(
            playlists=[Playlist(id="p1", name="Wrapped 2020"), Playlist(id="p2", name="Wrapped 2021")],
            tracks={"p1": [_track("a")], "p2": SpotifyException(http_status=500, code=-1, msg="boom")},
        )

        with self.assertRaises(SpotifyException):
            self._process(library)

        job = get_sync_job(self.session, self.user_id)
        self.assertEqual(job.status, SyncStatus.FAILED)
        self.assertIn("boom", job.error)
        names = self.session.scalars(select(PlaylistModel.spotify_playlist_id)).all()
        self.assertEqual(names, ["p1"])

    def test_refuses_while_another_sync_is_running(self) -> None:
        claim_sync_job(self.session, self.user_id)
        library = _FakeLibrary(playlists=[Playlist(id="p1", name="Wrapped 2020")], tracks={"p1": []})

        with self.assertRaises(SyncInProgressError):
            self._process(library)

        self.assertEqual(library.fetched, [])


class SyncJobTests(SyncTestCase):
    def test_status_before_any_sync(self) -> None:
        self.assertEqual(sync_status(self.session, self.user_id), {"status": "NOT_STARTED"})

    def test_start_sync_creates_and_resets_pending_job(self) -> None:
        job = start_sync(self.session, self.user_id)
        self.assertEqual(job.status, SyncStatus.PENDING)
        first_version = job.version

        update_sync_job(self.session, self.user_id, first_version, status=SyncStatus.COMPLETED, progress=100)
        job = start_sync(self.session, self.user_id)

        self.assertEqual(job.status, SyncStatus.PENDING)
        self.assertEqual(job.progress, 0)
        self.assertEqual(job.version, first_version + 1)
        count = len(self.session.scalars(select(SyncJobModel)).all())
        self.assertEqual(count, 1)

    def test_only_one_claim_at_a_time(self) -> None:
        start_sync(self.session, self.user_id)
        version = claim_sync_job(self.session, self.user_id)

        with self.assertRaises(SyncInProgressError):
            claim_sync_job(self.session, self.user_id)
        with self.assertRaises(SyncInProgressError):
            start_sync(self.session, self.user_id)

        update_sync_job(self.session, self.user_id, version, status=SyncStatus.FAILED, error="x")
        self.assertEqual(claim_sync_job(self.session, self.user_id), version + 1)

    def test_claim_without_existing_job(self) -> None:
        self.assertEqual(claim_sync_job(self.session, self.user_id), 1)
        self.assertEqual(get_sync_job(self.session, self.user_id).status, SyncStatus.PROCESSING)

    def test_writes_with_old_version_are_rejected(self) -> None:
        version = claim_sync_job(self.session, self.user_id)
        self.session.execute(
            update(SyncJobModel).where(SyncJobModel.user_id == self.user_id).values(version=version + 5)
        )
        self.session.commit()

        with self.assertRaises(StaleSyncJobError):
            update_sync_job(self.session, self.user_id, version, progress=50)

    def _go_quiet(self, seconds: float) -> None:
        self.session.execute(
            update(SyncJobModel)
            .where(SyncJobModel.user_id == self.user_id)
            .values(updated_at=utc_now() - timedelta(seconds=seconds))
        )
        self.session.commit()

    def test_abandoned_processing_job_can_be_taken_over(self) -> None:
        version = claim_sync_job(self.session, self.user_id)
        self._go_quiet(DEFAULT_STALE_AFTER_SECONDS + 60)

        self.assertEqual(claim_sync_job(self.session, self.user_id), version + 1)
        self.assertEqual(get_sync_job(self.session, self.user_id).status, SyncStatus.PROCESSING)
        with self.assertRaises(StaleSyncJobError):
            update_sync_job(self.session, self.user_id, version, progress=50)

    def test_start_sync_resets_abandoned_job_only(self) -> None:
        claim_sync_job(self.session, self.user_id, stale_after_seconds=60)
        self._go_quiet(30)
        with self.assertRaises(SyncInProgressError):
            start_sync(self.session, self.user_id, stale_after_seconds=60)

        self._go_quiet(120)
        job = start_sync(self.session, self.user_id, stale_after_seconds=60)
        self.assertEqual(job.status, SyncStatus.PENDING)
        self.assertEqual(job.progress, 0)


if __name__ == "__main__":
    unittest.main()
