"""Master playlist assembly."""

import logging
from pathlib import Path
from typing import Iterable, Mapping

from core.enums import ProfileStatus
from core.errors import OutputError
from core.paths import MASTER_PLAYLIST_NAME, VARIANT_PLAYLIST_NAME, claim_video_output_dir
from core.profiles import get_dimensions

logger = logging.getLogger(__name__)


def build_master_playlist(profiles: Iterable[Mapping]) -> str:
    """
    Render the master playlist for a video.

    One EXT-X-STREAM-INF entry per completed profile, in the order given.
    BANDWIDTH is the profile bitrate in bits per second; the variant URI is
    relative to the master (<resolution>/playlist.m3u8).
    """
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]

    for profile in profiles:
        if profile["status"] != ProfileStatus.COMPLETED.value:
            continue
        width, height = get_dimensions(profile["resolution"])
        bandwidth = int(profile["bitrate"]) * 1000
        lines.append(f"#EXT-X-STREAM-INF:BANDWIDTH={bandwidth},RESOLUTION={width}x{height}")
        lines.append(f"{profile['resolution']}/{VARIANT_PLAYLIST_NAME}")

    return "\n".join(lines) + "\n"


def write_master_playlist(video: Mapping, profiles: Iterable[Mapping], transcoded_root: Path) -> Path:
    """
    Write master.m3u8 next to the variant directories of `video`.

    Raises:
        OutputError: if the directory cannot be created or the file written
    """
    content = build_master_playlist(profiles)

    try:
        directory = claim_video_output_dir(
            transcoded_root, video["id"], video["original_filename"], video.get("created_at")
        )
        path = directory / MASTER_PLAYLIST_NAME
        # Write-then-rename so readers never see a half-written master
        tmp_path = path.with_suffix(".m3u8.tmp")
        tmp_path.write_text(content)
        tmp_path.replace(path)
    except OSError as e:
        raise OutputError(f"Failed to write master playlist for video {video['id']}: {e}") from e

    logger.info(f"Wrote master playlist for video {video['id']}: {path}")
    return path
