"""
Artifact Locator

ComfyUI writes images into its output directory under names it chooses
itself, with no id pointing back to the request. The only correlation signal
is "a file that was not there before we submitted, or that was written after
we submitted". Only one generation is in flight at a time, so the newest such
file belongs to the current job.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, FrozenSet, List, Optional, Tuple

logger = logging.getLogger(__name__)

# wait(seconds) -> True when the caller asked to stop
WaitFn = Callable[[float], bool]


class ArtifactTimeoutError(Exception):
    """Raised when no new artifact shows up within the poll budget."""
    pass


class ArtifactLocatorCancelled(Exception):
    """Raised when polling is interrupted by a stop request."""
    pass


@dataclass(frozen=True)
class ArtifactSnapshot:
    names: FrozenSet[str] = field(default_factory=frozenset)
    not_before: float = 0.0


def _sleep(seconds: float) -> bool:
    time.sleep(seconds)
    return False


def _list_artifacts(directory: Path, extension: str) -> List[Tuple[str, float]]:
    entries = []
    with os.scandir(directory) as it:
        for entry in it:
            if not entry.name.lower().endswith(extension):
                continue
            try:
                if not entry.is_file():
                    continue
                entries.append((entry.name, entry.stat().st_mtime))
            except FileNotFoundError:
                # Removed between listing and stat
                continue
    return entries


def snapshot(directory: Path, extension: str = ".png") -> ArtifactSnapshot:
    """Record the artifacts already present and the time the request is about to be sent."""
    directory = Path(directory)
    not_before = time.time()
    if not directory.is_dir():
        logger.warning("Comfy output directory not found at start: %s", directory)
        return ArtifactSnapshot(frozenset(), not_before)
    names = frozenset(name for name, _ in _list_artifacts(directory, extension.lower()))
    return ArtifactSnapshot(names, not_before)


def find_new_artifact(directory: Path, before: ArtifactSnapshot, extension: str = ".png") -> Optional[str]:
    """
    Scan once for an artifact produced after the snapshot was taken.

    Candidates are ordered newest first; the first one that is absent from the
    snapshot or was modified at/after not_before wins.
    """
    directory = Path(directory)
    if not directory.is_dir():
        logger.warning("Comfy output dir does not exist: %s", directory)
        return None

    files = _list_artifacts(directory, extension.lower())
    # Newest first; name keeps ties deterministic
    files.sort(key=lambda item: (item[1], item[0]), reverse=True)
    for name, mtime in files:
        if name not in before.names or mtime >= before.not_before:
            return name
    return None


def await_new_artifact(
    directory: Path,
    before: ArtifactSnapshot,
    extension: str = ".png",
    *,
    interval: float = 1.0,
    max_attempts: int = 60,
    wait: Optional[WaitFn] = None,
) -> str:
    """
    Poll the output directory until a new artifact appears.

    Makes at most max_attempts scans, waiting `interval` seconds between them.
    Raises ArtifactTimeoutError when the budget runs out and
    ArtifactLocatorCancelled when `wait` reports a stop request.
    """
    wait = wait or _sleep
    attempts = max(1, max_attempts)

    for attempt in range(1, attempts + 1):
        found = find_new_artifact(directory, before, extension)
        if found:
            logger.debug("Found new artifact %s after %d attempt(s)", found, attempt)
            return found

        if attempt == attempts:
            break
        if wait(interval):
            raise ArtifactLocatorCancelled("Stopped while waiting for ComfyUI output")

    raise ArtifactTimeoutError(
        f"No image found in ComfyUI output folder {directory} after waiting "
        f"{attempts} attempts (timeout ~{attempts * interval:g}s)."
    )
