"""
Storage layout for transcoded output and archived sources.

    <transcoded_root>/<year>/<month>/<sanitized_name>/<resolution>/playlist.m3u8
    <transcoded_root>/<year>/<month>/<sanitized_name>/<resolution>/000.ts ...
    <transcoded_root>/<year>/<month>/<sanitized_name>/master.m3u8
    <archive_root>/<year>/<month>/<original_filename>

The year/month segment bounds directory fan-out. It is taken from the video's
creation time so that every profile of a video (and its master playlist) lands
in the same directory family, no matter when each profile gets encoded.

A <sanitized_name> directory belongs to one video. The first video to claim it
is recorded in an owner marker; a later video whose name sanitizes the same way
in the same month uses <video_id>-<sanitized_name> instead.
"""

import os
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path, PurePath
from typing import Optional

VARIANT_PLAYLIST_NAME = "playlist.m3u8"
MASTER_PLAYLIST_NAME = "master.m3u8"
SEGMENT_PATTERN = "%03d.ts"
OWNER_MARKER_NAME = ".video_id"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9\-_]")
_REPEATED_HYPHENS = re.compile(r"-+")


def sanitize_filename(filename: str) -> str:
    """
    Convert an original filename into a safe directory name.

    Drops the extension, replaces anything outside [a-zA-Z0-9-_] with a hyphen,
    collapses repeated hyphens and trims them from both ends. Falls back to
    "video" when nothing is left.
    """
    sanitized = _UNSAFE_CHARS.sub("-", PurePath(filename).stem)
    sanitized = _REPEATED_HYPHENS.sub("-", sanitized)
    sanitized = sanitized.strip("-")
    return sanitized or "video"


def date_segment(when: Optional[datetime] = None) -> Path:
    """Return the <year>/<month> path segment for a timestamp (defaults to now, UTC)."""
    if when is None:
        when = datetime.now(timezone.utc)
    return Path(f"{when.year:04d}") / f"{when.month:02d}"


def video_output_dir(transcoded_root: Path, original_filename: str, created_at: Optional[datetime] = None) -> Path:
    """Unclaimed directory name for a video's renditions and master playlist."""
    return Path(transcoded_root) / date_segment(created_at) / sanitize_filename(original_filename)


def _claim_owner(directory: Path, video_id: int) -> Optional[int]:
    """Record `video_id` as owner of `directory` unless someone already is; return the owner."""
    directory.mkdir(parents=True, exist_ok=True)
    marker = directory / OWNER_MARKER_NAME
    if not marker.exists():
        # Link a fully written temp file into place: the marker never appears half-written
        tmp = directory / f"{OWNER_MARKER_NAME}.{uuid.uuid4().hex}"
        tmp.write_text(str(video_id))
        try:
            os.link(tmp, marker)
        except FileExistsError:
            pass
        finally:
            tmp.unlink()
    try:
        return int(marker.read_text().strip())
    except ValueError:
        return None


def claim_video_output_dir(
    transcoded_root: Path,
    video_id: int,
    original_filename: str,
    created_at: Optional[datetime] = None,
) -> Path:
    """
    Directory holding every rendition and the master playlist of one video.

    Returns the same directory for every call with the same video, and never a
    directory owned by another video. Creates it if needed.

    Raises:
        OSError: the directory or its owner marker cannot be written
    """
    directory = video_output_dir(transcoded_root, original_filename, created_at)
    if _claim_owner(directory, video_id) == video_id:
        return directory

    directory = directory.with_name(f"{video_id}-{directory.name}")
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def archive_path(archive_root: Path, original_filename: str, created_at: Optional[datetime] = None) -> Path:
    """Where the source file of a fully transcoded video is moved to."""
    return Path(archive_root) / date_segment(created_at) / PurePath(original_filename).name
