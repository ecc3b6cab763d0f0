"""Move located artifacts into per-project folders with sequential names."""

import errno
import logging
import os
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

IMAGE_PREFIX = "image_"


class RelocationError(Exception):
    """Raised when an artifact cannot be moved into its project folder."""
    pass


def next_image_name(project_dir: Path, extension: str = ".png") -> str:
    """
    Next sequential name for a project folder: image_01.png, image_02.png, ...

    The counter is the number of files with the extension already present
    plus one, zero-padded to two digits. If that name is taken (files removed
    by hand leave gaps) the counter moves forward until a free name is found.
    """
    extension = extension.lower()
    existing = set()
    if project_dir.is_dir():
        with os.scandir(project_dir) as it:
            existing = {
                entry.name
                for entry in it
                if entry.is_file() and entry.name.lower().endswith(extension)
            }

    seq = len(existing) + 1
    candidate = f"{IMAGE_PREFIX}{seq:02d}{extension}"
    while candidate in existing or (project_dir / candidate).exists():
        seq += 1
        candidate = f"{IMAGE_PREFIX}{seq:02d}{extension}"
    return candidate


def move_file(src: Path, dst: Path) -> None:
    """Rename src to dst, falling back to copy-then-delete across volumes."""
    try:
        os.replace(src, dst)
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
        logger.debug("Cross-device move %s -> %s; copying instead", src, dst)
        shutil.copy2(src, dst)
        os.remove(src)


def relocate_artifact(source: Path, projects_root: Path, project_id: str, extension: str = ".png") -> Path:
    """Move `source` into <projects_root>/<project_id>/ and return the new path."""
    source = Path(source)
    project_dir = Path(projects_root) / project_id
    try:
        project_dir.mkdir(parents=True, exist_ok=True)
        target = project_dir / next_image_name(project_dir, extension)
        move_file(source, target)
    except OSError as e:
        raise RelocationError(f"Failed to move {source} into {project_dir}: {e}") from e

    logger.info("Image saved to: %s", target)
    return target
