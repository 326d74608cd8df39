from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

from yearly_top_songs.analysis import analyze_playlists, analyze_songs_by_year
from yearly_top_songs.config import env_int, load_local_env_file, load_settings
from yearly_top_songs.models import SongAnalysis
from yearly_top_songs.playlist_matcher import identify_top_songs_playlists


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Find the songs that keep coming back year after year")
    parser.add_argument(
        "--token",
        default=os.getenv("SPOTIFY_ACCESS_TOKEN"),
        help="Spotify user access token (defaults to SPOTIFY_ACCESS_TOKEN env)",
    )
    source_group = parser.add_mutually_exclusive_group(required=True)
    source_group.add_argument(
        "--playlists",
        action="store_true",
        help="Analyze your yearly top songs playlists",
    )
    source_group.add_argument(
        "--songs",
        action="append",
        metavar="YEAR=FILE",
        help="File of pasted track links for YEAR, best first (repeatable)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        nargs="?",
        default=env_int("TRACK_LIMIT", 25),
        const=env_int("TRACK_LIMIT", 25),
        help="Number of songs to print (defaults to TRACK_LIMIT env or 25)",
    )
    return parser.parse_args(argv)


def parse_songs_arguments(values: list[str]) -> list[tuple[int, str]]:
    """Turn ``YEAR=FILE`` arguments into ``(year, file contents)`` pairs."""

    songs_by_year: list[tuple[int, str]] = []
    for value in values:
        year_text, sep, file_name = value.partition("=")
        if not sep or not file_name:
            raise ValueError(f"Expected YEAR=FILE, got {value!r}")
        try:
            year = int(year_text)
        except ValueError:
            raise ValueError(f"Invalid year {year_text!r} in {value!r}") from None
        songs_by_year.append((year, Path(file_name).read_text(encoding="utf-8")))
    return songs_by_year


def run_analysis(args: argparse.Namespace, service: object) -> list[SongAnalysis]:
    if args.playlists:
        top_playlists = identify_top_songs_playlists(service.get_user_playlists())
        if not top_playlists:
            raise ValueError('No "Your Top Songs" playlists found.')
        return analyze_playlists(service, top_playlists)
    return analyze_songs_by_year(service, parse_songs_arguments(args.songs))


def format_analysis(analysis: list[SongAnalysis], limit: int) -> list[str]:
    lines = []
    for position, song in enumerate(analysis[:limit], start=1):
        years = ", ".join(str(year) for year in song.years_appeared)
        lines.append(
            f"{position:>3}. {song.track_name} - {song.artist_name} "
            f"(score {song.popularity_score}, avg rank {song.average_rank:.1f}, years {years})"
        )
    return lines


def main() -> None:
    load_local_env_file()
    logging.basicConfig(level=load_settings().log_level)
    args = parse_args()
    from yearly_top_songs.spotify_service import SpotifyService

    service = SpotifyService(args.token)
    analysis = run_analysis(args, service)
    if not analysis:
        print("No songs found.")
        return

    for line in format_analysis(analysis, args.limit):
        print(line)


if __name__ == "__main__":
    main()
