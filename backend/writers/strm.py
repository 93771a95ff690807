"""
STRM media-library writer.

One `<group>/<title>.strm` file per channel, each holding the stream URL,
for media servers that index a directory tree (Kodi, Jellyfin, Plex).

Options:
- underscore_whitespace: replace whitespace in directory and file names with '_'
- cleanup: start from an empty tree; otherwise files from the previous run
  are carried over and overwritten where names collide
- kodi_style: rewrite "Title 2021 S01E02" style names to "Title (2021) S01E02"
"""
import logging
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

from channel import Channel, ChannelKind
from writers.common import (
    CatalogWriter,
    WriterResult,
    create_staging_dir,
    discard_staging,
    publish_directory,
    sanitize_for_filename,
)

logger = logging.getLogger(__name__)

_YEAR_RE = re.compile(r"\b((?:19|20)\d{2})\b")
_SEASON_RE = re.compile(r"\bS(\d{1,3})", re.IGNORECASE)
_EPISODE_RE = re.compile(r"\bE(\d{1,4})\b", re.IGNORECASE)
_SEASON_EPISODE_PAIR_RE = re.compile(r"\bS\d{1,3}\s*E(\d{1,4})\b", re.IGNORECASE)
_EMPTY_PARENS_RE = re.compile(r"\(\s*\)")
_SEASON_EPISODE_RE = re.compile(r"\bS\d{1,3}\s*E\d{1,4}\b|\bS\d{1,3}\b|\bE\d{1,4}\b", re.IGNORECASE)
_MULTI_SPACE_RE = re.compile(r"\s+")
_WHITESPACE_RE = re.compile(r"\s")


def kodi_style_name(name: str, current_year: Optional[int] = None) -> str:
    """
    Rename an episode title to the layout Kodi's scrapers recognize.

    "Title 2021 S01E02" -> "Title (2021) S01E02". Titles without an episode
    marker are returned unchanged. A missing year defaults to the current
    year and a missing season to 01.
    """
    episode = _SEASON_EPISODE_PAIR_RE.search(name) or _EPISODE_RE.search(name)
    if not episode:
        return name

    year_match = _YEAR_RE.search(name)
    year = year_match.group(1) if year_match else str(current_year or datetime.now().year)
    season_match = _SEASON_RE.search(name)
    season = season_match.group(1) if season_match else "1"

    title = _SEASON_EPISODE_RE.sub(" ", name)
    if year_match:
        title = title.replace(year_match.group(0), " ")
    title = _MULTI_SPACE_RE.sub(" ", _EMPTY_PARENS_RE.sub(" ", title)).strip(" -.")

    return f"{title} ({year}) S{int(season):02d}E{int(episode.group(1)):02d}"


def _unique_path(relative: Path, used: set) -> Path:
    """Suffix -2, -3, ... onto a file name already taken in this run."""
    candidate = relative
    counter = 2
    while candidate in used:
        candidate = relative.with_name(f"{relative.stem}-{counter}{relative.suffix}")
        counter += 1
    return candidate


class StrmWriter(CatalogWriter):
    kind = "strm"

    def default_destination(self, output_dir: Path, target_name: str, filename: Optional[str]) -> Path:
        return Path(output_dir) / (filename or target_name)

    def entry_path(self, channel: Channel) -> Path:
        """Relative path of the .strm file for one channel."""
        underscore = self.options.underscore_whitespace
        group = sanitize_for_filename(channel.group, underscore).strip() or "Ungrouped"
        file_name = sanitize_for_filename(channel.display_title).strip()
        if file_name and self.options.kodi_style:
            file_name = kodi_style_name(file_name)
        if underscore:
            file_name = _WHITESPACE_RE.sub("_", file_name)
        return Path(group) / f"{file_name or channel.channel_id}.strm"

    def write(self, channels: Sequence[Channel], target_name: str, destination: Path) -> WriterResult:
        destination = Path(destination)
        staging = create_staging_dir(destination)
        count = 0
        try:
            if not self.options.cleanup and destination.is_dir():
                shutil.copytree(destination, staging, dirs_exist_ok=True)
            used: set[Path] = set()
            for channel in channels:
                if channel.kind == ChannelKind.SERIES_INFO:
                    continue
                relative = _unique_path(self.entry_path(channel), used)
                used.add(relative)
                path = staging / relative
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(channel.url + "\n", encoding="utf-8")
                count += 1
            publish_directory(staging, destination)
        except Exception:
            discard_staging(staging)
            raise

        logger.info("[WRITER] %s: wrote %s strm files to %s", target_name, count, destination)
        return WriterResult(target_name=target_name, kind=self.kind, path=str(destination), items_written=count)
