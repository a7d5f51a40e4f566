"""Loopback mounting of the system and vendor images.

Functions:
    - is_mounted(): Check whether a path is an active mount point
    - resolve_partition_root(): Find the partition root inside a mount point
    - unmount(): Unmount with sync and retries, optionally lazily
    - mount_images(): Mount both images for the duration of a ``with`` block

Every mount made here is owned by a :class:`MountSession`, which guarantees a
single unmount per mount on every exit path.

Example:
    >>> with mount_images(system, vendor, work_dir / "mount_temp") as (sys_mnt, ven_mnt):
    ...     install(sys_mnt.root, ven_mnt.root)
    ...     sys_mnt.release()
    ...     ven_mnt.release()
"""

from __future__ import annotations

import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from wsa_arm.domain.models import DiskImage, Partition
from wsa_arm.logging import LoggerFactory

from .commands import run_command
from .exceptions import CommandError, MountError, MountFailedError, UnmountFailedError


log = LoggerFactory.for_mount()

LAYOUT_MARKERS = ("bin", "etc", "lib")
UNMOUNT_ATTEMPTS = 3
UNMOUNT_RETRY_DELAY = 1.0


def is_mounted(path: Path) -> bool:
    return os.path.ismount(path)


def _has_layout(path: Path) -> bool:
    return any((path / marker).is_dir() for marker in LAYOUT_MARKERS)


def resolve_partition_root(mountpoint: Path, partition: Partition) -> Path:
    """Return the directory that holds the partition's ``bin``/``etc``/``lib``.

    Images either carry the partition content at the filesystem root or one
    level down under a directory named after the partition. When neither
    layout is found the mount point itself is returned and the listing is
    logged, so later copies fail per file instead of silently.
    """
    if _has_layout(mountpoint):
        log.debug(f"Using direct {partition.value} mount: {mountpoint}")
        return mountpoint
    nested = mountpoint / partition.value
    if _has_layout(nested):
        log.debug(f"Using nested {partition.value} path: {nested}")
        return nested
    try:
        entries = sorted(entry.name for entry in mountpoint.iterdir())
    except OSError as error:
        entries = [f"<unreadable: {error}>"]
    log.warning(
        f"Could not find standard {partition.value} directories in {mountpoint}, "
        f"defaulting to the mount point. Contents: {', '.join(entries) or '<empty>'}"
    )
    return mountpoint


def unmount(mountpoint: Path, lazy: bool = False) -> bool:
    """Unmount ``mountpoint``, retrying a few times after ``sync``.

    Args:
        mountpoint: Mount point to release
        lazy: Fall back to ``umount -l`` when the normal attempts fail

    Returns:
        True if a lazy unmount was needed

    Raises:
        UnmountFailedError: If the mount point is still active afterwards
    """
    if not is_mounted(mountpoint):
        log.debug(f"{mountpoint} already unmounted")
        return False

    run_command(["sync"], check=False, log_command=False)
    last_error = ""
    for attempt in range(1, UNMOUNT_ATTEMPTS + 1):
        log.debug(f"Unmount attempt {attempt}/{UNMOUNT_ATTEMPTS} for {mountpoint}")
        result = run_command(["umount", str(mountpoint)], check=False)
        if result.returncode == 0 and not is_mounted(mountpoint):
            log.debug(f"Unmounted {mountpoint}")
            return False
        last_error = (result.stderr or "").strip()
        if attempt < UNMOUNT_ATTEMPTS:
            time.sleep(UNMOUNT_RETRY_DELAY)
            run_command(["sync"], check=False, log_command=False)

    if lazy:
        log.warning(f"Normal unmount of {mountpoint} failed, attempting lazy unmount")
        result = run_command(["umount", "-l", str(mountpoint)], check=False)
        if result.returncode == 0:
            return True
        last_error = (result.stderr or "").strip()

    raise UnmountFailedError(str(mountpoint), last_error)


def _diagnose_mount_failure(image: DiskImage) -> None:
    """Log what the failing image looks like and try a last repair."""
    probe = run_command(["file", str(image.path)], check=False)
    log.error(f"Image probe for {image.name}: {(probe.stdout or '').strip()}")
    repair = run_command(["e2fsck", "-f", "-y", str(image.path)], check=False)
    log.error(f"Best-effort repair of {image.name} exited with rc={repair.returncode}")


class MountSession:
    """A single loop mount of a raw image.

    The session can be mounted again after a release (the space planner does
    this to grow the vendor image), but it is never mounted twice at once and
    every mount is released exactly once.
    """

    def __init__(self, image: DiskImage, mountpoint: Path):
        self.image = image
        self.mountpoint = Path(mountpoint)
        self.root: Path = self.mountpoint
        self._mounted = False

    @property
    def partition(self) -> Partition:
        return self.image.partition

    @property
    def mounted(self) -> bool:
        return self._mounted

    def mount(self) -> Path:
        """Mount the image read-write and resolve the partition root.

        Raises:
            FilesystemCheckError: If the image's last check left it unusable
            MountFailedError: If ``mount`` fails or the session is already mounted
        """
        if self._mounted:
            raise MountFailedError(
                str(self.image.path), str(self.mountpoint), "already mounted"
            )
        self.image.require_usable()
        self.mountpoint.mkdir(parents=True, exist_ok=True)
        try:
            run_command(
                [
                    "mount",
                    "-t",
                    "ext4",
                    "-o",
                    "loop",
                    str(self.image.path),
                    str(self.mountpoint),
                ]
            )
        except CommandError as error:
            _diagnose_mount_failure(self.image)
            raise MountFailedError(
                str(self.image.path), str(self.mountpoint), error.output
            ) from error
        self._mounted = True
        self.root = resolve_partition_root(self.mountpoint, self.partition)
        log.info(f"Mounted {self.image.name} at {self.mountpoint}")
        return self.root

    def release(self, lazy: bool = False) -> None:
        """Unmount if mounted; a no-op otherwise."""
        if not self._mounted:
            return
        unmount(self.mountpoint, lazy=lazy)
        self._mounted = False
        self.root = self.mountpoint
        log.info(f"Unmounted {self.mountpoint}")

    def __enter__(self) -> MountSession:
        self.mount()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release(lazy=exc_type is not None)


def release_quietly(session: Optional[MountSession]) -> None:
    """Lazy-release a session on an error path, logging instead of raising."""
    if session is None:
        return
    try:
        session.release(lazy=True)
    except MountError as error:
        log.error(f"Cleanup could not unmount {session.mountpoint}: {error}")


@contextmanager
def mount_images(
    system: DiskImage, vendor: DiskImage, base: Path
) -> Iterator[tuple[MountSession, MountSession]]:
    """Mount both images under ``base/system`` and ``base/vendor``.

    On a failure while mounting, whatever was already mounted is released
    before the error propagates. Sessions still mounted when the block exits
    are released; an exception in the block triggers lazy cleanup.
    """
    system_session = MountSession(system, base / Partition.SYSTEM.value)
    vendor_session = MountSession(vendor, base / Partition.VENDOR.value)
    try:
        system_session.mount()
        vendor_session.mount()
    except BaseException:
        release_quietly(vendor_session)
        release_quietly(system_session)
        raise

    try:
        yield system_session, vendor_session
    except BaseException:
        release_quietly(vendor_session)
        release_quietly(system_session)
        raise
    vendor_session.release()
    system_session.release()
