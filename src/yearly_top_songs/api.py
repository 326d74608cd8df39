"""FastAPI web server for Yearly Top Songs."""
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Iterator

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from spotipy.exceptions import SpotifyException

from yearly_top_songs.analysis import analyze_playlists, analyze_songs_by_year
from yearly_top_songs.config import Settings, load_settings
from yearly_top_songs.db import Database, UserModel
from yearly_top_songs.playlist_matcher import identify_top_songs_playlists
from yearly_top_songs.repository import DEFAULT_THRESHOLD, cross_year_songs, get_or_create_user, save_songs_by_year
from yearly_top_songs.spotify_service import SpotifyService
from yearly_top_songs.sync import (
    StaleSyncJobError,
    SyncInProgressError,
    process_sync,
    start_sync,
    sync_status,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    database = Database(settings.database_url)
    database.create_all()
    app.state.settings = settings
    app.state.database = database
    try:
        yield
    finally:
        database.dispose()


app = FastAPI(title="Yearly Top Songs", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(load_settings().cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request/Response models
class PlaylistInfo(BaseModel):
    id: str
    name: str
    description: str = ""
    images: list[dict] = []
    total_tracks: int = 0


class PlaylistsResponse(BaseModel):
    playlists: list[PlaylistInfo]


class SongAnalysisInfo(BaseModel):
    """One track's summary across every year it appeared in."""
    track_id: str
    track_name: str
    artist_name: str
    popularity_score: int
    years_appeared: list[int]
    average_rank: float
    total_appearances: int
    album_image: str | None = None


class AnalysisResponse(BaseModel):
    analysis: list[SongAnalysisInfo]


class YearSongs(BaseModel):
    """Pasted track links for one year, best first."""
    year: int = Field(ge=1900, le=2100)
    song_urls: str = ""


class SongsByYearRequest(BaseModel):
    songs_by_year: list[YearSongs]


class SaveSongsResponse(BaseModel):
    success: bool
    message: str
    saved_count: int


class CrossYearSong(BaseModel):
    spotify_track_id: str
    track_name: str
    artist_name: str
    album_name: str | None = None
    years_appeared: int
    years_list: list[int]
    average_position: float
    best_position: int
    worst_position: int
    total_appearances: int


class CrossYearResponse(BaseModel):
    songs: list[CrossYearSong]
    total: int


class SyncJobResponse(BaseModel):
    job_id: int
    status: str
    message: str


class SyncStatusResponse(BaseModel):
    status: str
    job_id: int | None = None
    progress: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None


class SyncProcessResponse(BaseModel):
    message: str
    playlists_synced: int
    tracks_synced: int


def get_db_session(request: Request) -> Iterator[Session]:
    """Open a session for the duration of one request."""
    with request.app.state.database.session() as session:
        yield session


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_spotify_service(authorization: str | None) -> SpotifyService:
    """Build a Spotify client from an ``Authorization: Bearer <token>`` header."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        return SpotifyService(token.strip())
    except ValueError as e:
        raise HTTPException(status_code=401, detail=str(e))


def _current_user(session: Session, service: SpotifyService) -> UserModel:
    profile = service.current_user()
    return get_or_create_user(session, profile["id"], profile.get("display_name"))


def _failure(exc: Exception, detail: str) -> HTTPException:
    if isinstance(exc, SpotifyException) and exc.http_status == 401:
        return HTTPException(status_code=401, detail="Unauthorized")
    logger.exception(detail)
    return HTTPException(status_code=500, detail=detail)


def _analysis_response(analysis: list) -> AnalysisResponse:
    return AnalysisResponse(analysis=[SongAnalysisInfo(**asdict(item)) for item in analysis])


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/api/playlists", response_model=PlaylistsResponse)
def list_playlists(authorization: str | None = Header(default=None)):
    """List every playlist of the signed-in user."""
    service = get_spotify_service(authorization)
    try:
        playlists = service.get_user_playlists()
        return PlaylistsResponse(playlists=[PlaylistInfo(**asdict(p)) for p in playlists])
    except HTTPException:
        raise
    except Exception as e:
        raise _failure(e, "Failed to fetch playlists") from e


@app.get("/api/analysis", response_model=AnalysisResponse)
def analyze_top_songs_playlists(authorization: str | None = Header(default=None)):
    """Rank the songs that recur across the user's yearly top songs playlists."""
    service = get_spotify_service(authorization)
    try:
        top_playlists = identify_top_songs_playlists(service.get_user_playlists())
        if not top_playlists:
            raise HTTPException(status_code=404, detail='No "Your Top Songs" playlists found')
        return _analysis_response(analyze_playlists(service, top_playlists))
    except HTTPException:
        raise
    except Exception as e:
        raise _failure(e, "Failed to analyze playlists") from e


@app.post("/api/analysis/songs-by-year", response_model=AnalysisResponse)
def analyze_pasted_songs(request: SongsByYearRequest, authorization: str | None = Header(default=None)):
    """Rank songs from track links pasted per year."""
    service = get_spotify_service(authorization)
    try:
        songs_by_year = [(entry.year, entry.song_urls) for entry in request.songs_by_year]
        return _analysis_response(analyze_songs_by_year(service, songs_by_year))
    except HTTPException:
        raise
    except Exception as e:
        raise _failure(e, "Failed to analyze songs") from e


@app.post("/api/songs", response_model=SaveSongsResponse)
def save_songs(
    request: SongsByYearRequest,
    authorization: str | None = Header(default=None),
    session: Session = Depends(get_db_session),
):
    """Store pasted track links per year for the cross-year report."""
    service = get_spotify_service(authorization)
    try:
        user = _current_user(session, service)
        saved_count = save_songs_by_year(
            session,
            service,
            user.id,
            [(entry.year, entry.song_urls) for entry in request.songs_by_year],
        )
        session.commit()
        return SaveSongsResponse(
            success=True,
            message=f"Successfully saved {saved_count} songs",
            saved_count=saved_count,
        )
    except HTTPException:
        raise
    except Exception as e:
        raise _failure(e, "Failed to save songs") from e


@app.get("/api/songs/cross-year", response_model=CrossYearResponse)
def get_cross_year_songs(
    threshold: int = Query(default=DEFAULT_THRESHOLD),
    min_year: int | None = Query(default=None),
    max_year: int | None = Query(default=None),
    authorization: str | None = Header(default=None),
    session: Session = Depends(get_db_session),
):
    """Saved songs present in more than one year, within the top ``threshold`` positions."""
    service = get_spotify_service(authorization)
    try:
        user = _current_user(session, service)
        songs = cross_year_songs(session, user.id, threshold=threshold, min_year=min_year, max_year=max_year)
        return CrossYearResponse(songs=[CrossYearSong(**song) for song in songs], total=len(songs))
    except HTTPException:
        raise
    except Exception as e:
        raise _failure(e, "Failed to fetch cross-year songs") from e


@app.post("/api/sync", response_model=SyncJobResponse)
def initiate_sync(
    authorization: str | None = Header(default=None),
    session: Session = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
):
    service = get_spotify_service(authorization)
    try:
        user = _current_user(session, service)
        job = start_sync(session, user.id, stale_after_seconds=settings.sync_stale_after_seconds)
        return SyncJobResponse(job_id=job.id, status=job.status.value, message="Starting playlist sync...")
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except HTTPException:
        raise
    except Exception as e:
        raise _failure(e, "Failed to initiate sync") from e


@app.get("/api/sync", response_model=SyncStatusResponse)
def get_sync_status(
    authorization: str | None = Header(default=None),
    session: Session = Depends(get_db_session),
):
    service = get_spotify_service(authorization)
    try:
        user = _current_user(session, service)
        return SyncStatusResponse(**sync_status(session, user.id))
    except HTTPException:
        raise
    except Exception as e:
        raise _failure(e, "Failed to fetch sync status") from e


@app.post("/api/sync/process", response_model=SyncProcessResponse)
def run_sync(
    authorization: str | None = Header(default=None),
    session: Session = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
):
    """Import every top songs playlist of the user into storage."""
    service = get_spotify_service(authorization)
    try:
        user = _current_user(session, service)
        session.commit()
        result = process_sync(
            session,
            service,
            user.id,
            delay_seconds=settings.sync_playlist_delay_ms / 1000.0,
            stale_after_seconds=settings.sync_stale_after_seconds,
        )
        message = "Sync completed successfully" if result.playlists_synced else "No top songs playlists found"
        return SyncProcessResponse(
            message=message,
            playlists_synced=result.playlists_synced,
            tracks_synced=result.tracks_synced,
        )
    except (SyncInProgressError, StaleSyncJobError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except HTTPException:
        raise
    except Exception as e:
        raise _failure(e, "Failed to process sync") from e
