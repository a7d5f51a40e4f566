"""Grow and shrink raw ext4 images together with their filesystems.

All size arithmetic is done in 512-byte sectors; bytes only appear at the
truncate/statvfs boundary. The image file is extended sparsely, so growing a
multi-gigabyte image does not zero-fill anything.

Each filesystem resize goes through the same ladder:
    1. ``resize2fs``
    2. forced ``e2fsck -f -y`` followed by one more ``resize2fs``
    3. :class:`ResizeError`
"""

from __future__ import annotations

import os
import re
import shutil
from dataclasses import dataclass
from typing import Optional, Sequence

from wsa_arm.domain.models import (
    DiskImage,
    bytes_to_sectors,
    sectors_to_bytes,
)
from wsa_arm.logging import LoggerFactory

from .commands import run_command
from .exceptions import AllocationError, CommandError, ResizeError
from .fsck import ensure_filesystem, force_repair


log = LoggerFactory.for_resize()

_DUMPE2FS_FIELD = re.compile(r"^(?P<key>[A-Za-z ]+):\s+(?P<value>\d+)\s*$")


@dataclass(frozen=True)
class FilesystemGeometry:
    """Block accounting reported by the ext4 superblock."""

    block_count: int
    free_blocks: int
    block_size: int

    @property
    def total_bytes(self) -> int:
        return self.block_count * self.block_size

    @property
    def free_bytes(self) -> int:
        return self.free_blocks * self.block_size

    @property
    def used_bytes(self) -> int:
        return self.total_bytes - self.free_bytes

    @property
    def total_sectors(self) -> int:
        return bytes_to_sectors(self.total_bytes)

    @property
    def used_sectors(self) -> int:
        return bytes_to_sectors(self.used_bytes)


def parse_dumpe2fs(output: str) -> FilesystemGeometry:
    """Parse the superblock header printed by ``dumpe2fs -h``.

    Raises:
        ResizeError: If any of the block count fields is missing
    """
    fields: dict[str, int] = {}
    for line in output.splitlines():
        match = _DUMPE2FS_FIELD.match(line.strip())
        if match:
            fields[match.group("key").strip()] = int(match.group("value"))
    try:
        return FilesystemGeometry(
            block_count=fields["Block count"],
            free_blocks=fields["Free blocks"],
            block_size=fields["Block size"],
        )
    except KeyError as error:
        raise ResizeError("<dumpe2fs>", f"missing {error.args[0]!r} in superblock") from None


def filesystem_geometry(image: DiskImage) -> FilesystemGeometry:
    """Read total and used space from the image's superblock."""
    try:
        result = run_command(
            ["dumpe2fs", "-h", str(image.path)], log_output=False
        )
    except CommandError as error:
        raise ResizeError(str(image.path), f"dumpe2fs failed: {error.output}") from error
    return parse_dumpe2fs(result.stdout)


def _ensure_host_capacity(image: DiskImage, growth_sectors: int) -> None:
    growth_bytes = sectors_to_bytes(growth_sectors)
    available = shutil.disk_usage(image.path.parent).free
    if growth_bytes > available:
        raise AllocationError(str(image.path), growth_bytes, available)


def _set_file_length(image: DiskImage, target_sectors: int) -> None:
    try:
        os.truncate(image.path, sectors_to_bytes(target_sectors))
    except OSError as error:
        raise AllocationError(
            str(image.path), sectors_to_bytes(target_sectors), 0
        ) from error


def _resize_filesystem(image: DiskImage, args: Sequence[str], action: str) -> None:
    command = ["resize2fs", *args, str(image.path)]
    result = run_command(command, check=False)
    if result.returncode == 0:
        return
    log.warning(
        f"Failed to {action} {image.name} (rc={result.returncode}), "
        "repairing filesystem and retrying"
    )
    force_repair(image)
    retry = run_command(command, check=False)
    if retry.returncode != 0:
        reason = (retry.stderr or retry.stdout or "").strip() or f"rc={retry.returncode}"
        raise ResizeError(str(image.path), f"resize2fs could not {action}: {reason}")
    log.info(f"Retry to {action} {image.name} succeeded")


def grow(image: DiskImage, target_sectors: int) -> int:
    """Extend ``image`` to ``target_sectors`` and grow the filesystem to fill it.

    Args:
        image: Raw image to grow
        target_sectors: New file length in 512-byte sectors

    Returns:
        The resulting apparent size in sectors

    Raises:
        FilesystemCheckError: If the pre-resize integrity check fails
        ResizeError: If the target is below the current size or resize2fs fails twice
        AllocationError: If the host volume cannot hold the extra space
    """
    ensure_filesystem(image)
    current = image.apparent_sectors
    if target_sectors < current:
        raise ResizeError(
            str(image.path),
            f"target {target_sectors} sectors is smaller than current {current} sectors",
        )
    growth = target_sectors - current
    if growth:
        _ensure_host_capacity(image, growth)
        _set_file_length(image, target_sectors)
    log.debug(
        f"Growing {image.name} from {current} to {target_sectors} sectors "
        f"({sectors_to_bytes(target_sectors)} bytes)"
    )
    _resize_filesystem(image, [], "grow")
    return image.apparent_sectors


def shrink(image: DiskImage) -> FilesystemGeometry:
    """Shrink the filesystem to its minimum size with ``resize2fs -M``.

    The image file keeps its length; use :func:`trim_to_filesystem` to cut
    the trailing free space.
    """
    ensure_filesystem(image)
    log.debug(f"Minimizing filesystem on {image.name}")
    _resize_filesystem(image, ["-M"], "minimize")
    geometry = filesystem_geometry(image)
    log.info(
        f"Minimized {image.name} to {geometry.total_sectors} sectors "
        f"({geometry.used_bytes} bytes used)"
    )
    return geometry


def trim_to_filesystem(image: DiskImage) -> int:
    """Truncate the image file down to the filesystem's block count."""
    geometry = filesystem_geometry(image)
    current = image.apparent_sectors
    if geometry.total_sectors < current:
        log.debug(
            f"Trimming {image.name} from {current} to {geometry.total_sectors} sectors"
        )
        os.truncate(image.path, geometry.total_bytes)
    return image.apparent_sectors


def resize(image: DiskImage, target_sectors: Optional[int] = None) -> int:
    """Grow to ``target_sectors``, or minimize when no target is given.

    Returns the filesystem size in sectors after the operation.
    """
    if target_sectors is None:
        return shrink(image).total_sectors
    grow(image, target_sectors)
    return filesystem_geometry(image).total_sectors
