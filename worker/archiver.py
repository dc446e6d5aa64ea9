"""Moves a fully transcoded video's source file into the archive tree."""

import logging
import shutil
from pathlib import Path
from typing import Mapping, Optional

from core.paths import archive_path

logger = logging.getLogger(__name__)


def archive_source(video: Mapping, archive_root: Path) -> Optional[Path]:
    """
    Move the source file to <archive_root>/<year>/<month>/<original_filename>.

    Best effort: a missing source or a filesystem error is logged and None is
    returned. The caller records the returned path as the video's new location.
    """
    source = Path(video["file_path"])
    target = archive_path(archive_root, video["original_filename"], video.get("created_at"))

    if not source.exists():
        logger.warning(f"Not archiving video {video['id']}: source {source} does not exist")
        return None

    if source.resolve() == target.resolve():
        return target

    if target.exists():
        # Another video with the same original name got there first
        target = target.with_name(f"{video['id']}-{target.name}")

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        # shutil.move falls back to copy+delete across filesystems
        shutil.move(str(source), str(target))
    except OSError as e:
        logger.warning(f"Failed to archive source of video {video['id']} to {target}: {e}")
        return None

    logger.info(f"Archived source of video {video['id']}: {target}")
    return target
