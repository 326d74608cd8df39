from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class Artist:
    id: str
    name: str


@dataclass(slots=True)
class Album:
    id: str
    name: str
    images: list[dict] = field(default_factory=list)


@dataclass(slots=True)
class Track:
    id: str
    name: str
    artists: list[Artist]
    album: Album


@dataclass(slots=True)
class Playlist:
    id: str
    name: str
    description: str = ""
    images: list[dict] = field(default_factory=list)
    total_tracks: int = 0


@dataclass(slots=True)
class SongAppearance:
    track_id: str
    track_name: str
    artist_name: str
    year: int
    rank: int
    album_image: str | None = None


@dataclass(slots=True)
class SongAnalysis:
    track_id: str
    track_name: str
    artist_name: str
    popularity_score: int
    years_appeared: list[int]
    average_rank: float
    total_appearances: int
    album_image: str | None = None
