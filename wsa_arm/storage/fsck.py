"""ext4 integrity checking with an escalating repair ladder.

The ladder is:
    1. ``e2fsck -f -p``  automatic "preen" repair, no questions asked
    2. ``e2fsck -f -y``  forced full repair answering yes to everything
    3. give up and report CORRUPT; the caller decides whether to abort

e2fsck exit codes are a bitmask: 0 means clean, 1 and 2 mean errors were
corrected, anything with bit 4 or higher set means errors remain or the check
itself failed. Neither step changes the filesystem size.
"""

from __future__ import annotations

from pathlib import Path
from typing import Union

from wsa_arm.domain.models import DiskImage, FilesystemState
from wsa_arm.logging import LoggerFactory

from .commands import run_command
from .exceptions import FilesystemCheckError


log = LoggerFactory.for_fsck()

FSCK_OK = 0
FSCK_CORRECTED = 1
FSCK_CORRECTED_REBOOT = 2
FSCK_UNCORRECTED = 4


def _state_from_returncode(returncode: int) -> FilesystemState:
    if returncode == FSCK_OK:
        return FilesystemState.VALID
    if returncode & ~(FSCK_CORRECTED | FSCK_CORRECTED_REBOOT) == 0:
        return FilesystemState.REPAIRED
    if returncode & FSCK_UNCORRECTED:
        return FilesystemState.NEEDS_REPAIR
    return FilesystemState.CORRUPT


def _image_path(image: Union[DiskImage, Path, str]) -> Path:
    if isinstance(image, DiskImage):
        return image.path
    return Path(image)


def force_repair(image: Union[DiskImage, Path, str]) -> FilesystemState:
    """Run a single forced ``e2fsck -f -y`` pass."""
    path = _image_path(image)
    result = run_command(["e2fsck", "-f", "-y", str(path)], check=False)
    state = _state_from_returncode(result.returncode)
    if not state.is_usable:
        state = FilesystemState.CORRUPT
    if isinstance(image, DiskImage):
        image.state = state
    return state


def check_filesystem(image: Union[DiskImage, Path, str]) -> FilesystemState:
    """Check and repair an image, escalating to a forced repair when needed.

    Returns the resulting state; never raises for filesystem damage. The
    state is also recorded on ``image`` when a DiskImage is passed.
    """
    path = _image_path(image)
    log.debug(f"Checking filesystem integrity for {path}")
    result = run_command(["e2fsck", "-f", "-p", str(path)], check=False)
    state = _state_from_returncode(result.returncode)
    if state.is_usable:
        if state is FilesystemState.REPAIRED:
            log.info(f"Repaired filesystem errors on {path.name}")
    else:
        log.warning(
            f"Automatic check of {path.name} failed (rc={result.returncode}), "
            "attempting forced repair"
        )
        state = force_repair(path)
        if state.is_usable:
            log.info(f"Forced repair of {path.name} succeeded")
        else:
            log.error(f"Failed to repair filesystem on {path.name}")
    if isinstance(image, DiskImage):
        image.state = state
    return state


def ensure_filesystem(image: Union[DiskImage, Path, str]) -> FilesystemState:
    """Like :func:`check_filesystem` but raise when the image is unusable.

    Raises:
        FilesystemCheckError: If neither repair pass left the filesystem usable
    """
    state = check_filesystem(image)
    if not state.is_usable:
        raise FilesystemCheckError(str(_image_path(image)), FSCK_UNCORRECTED)
    return state
