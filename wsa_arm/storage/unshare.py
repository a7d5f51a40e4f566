"""Materialize copy-on-write blocks so an image can be modified in place.

Raw images produced from a VHDX often carry the ``shared_blocks`` feature,
which makes the kernel refuse a read-write mount. ``e2fsck -E unshare_blocks``
copies every shared block to a private one, which needs free space, so the
image is doubled first and shrunk back afterwards.
"""

from __future__ import annotations

from typing import Optional

from wsa_arm.domain.models import DiskImage, Writability
from wsa_arm.logging import LoggerFactory

from .commands import run_command
from .exceptions import UnshareError
from .fsck import check_filesystem, ensure_filesystem
from .resize import grow, shrink, trim_to_filesystem


log = LoggerFactory.for_unshare()

# e2fsck exit code bits above "errors corrected"
_FSCK_FAILURE_MASK = ~0b11


def _unshare_blocks(image: DiskImage) -> bool:
    """Run the unshare ladder; return False when only the weak fallback worked."""
    path = str(image.path)
    attempts = (
        ["e2fsck", "-f", "-p", "-E", "unshare_blocks", path],
        ["e2fsck", "-f", "-y", "-E", "unshare_blocks", path],
    )
    for command in attempts:
        result = run_command(command, check=False)
        if result.returncode & _FSCK_FAILURE_MASK == 0:
            return True
        log.warning(
            f"{' '.join(command[:-1])} failed on {image.name} (rc={result.returncode})"
        )

    result = run_command(["e2fsck", "-f", "-y", path], check=False)
    if result.returncode & _FSCK_FAILURE_MASK:
        raise UnshareError(
            path, f"fallback e2fsck -f -y failed with rc={result.returncode}"
        )
    log.warning(
        f"unshare_blocks unavailable for {image.name}; a plain forced repair "
        "succeeded but shared blocks may remain"
    )
    return False


def materialize(image: DiskImage, target_sectors: Optional[int] = None) -> DiskImage:
    """Make ``image`` writable and resize it to its working size.

    Args:
        image: Raw image straight out of the container conversion
        target_sectors: Working size for a payload-bearing image; ``None``
            leaves the image at its minimum size

    Returns:
        The same image, marked writable

    Raises:
        FilesystemCheckError: If the initial integrity check fails
        UnshareError: If even the fallback repair fails
        ResizeError: If one of the resize steps fails
    """
    ensure_filesystem(image)
    original = image.apparent_sectors
    log.info(f"Making {image.name} writable ({original} sectors)")

    grow(image, original * 2)
    fully_unshared = _unshare_blocks(image)

    shrink(image)
    minimal = trim_to_filesystem(image)
    if target_sectors is not None:
        if target_sectors < minimal:
            log.warning(
                f"Target {target_sectors} sectors for {image.name} is below its "
                f"minimum of {minimal} sectors, keeping the minimum"
            )
        else:
            grow(image, target_sectors)

    state = check_filesystem(image)
    if not state.is_usable:
        log.warning(f"Final integrity check of {image.name} reported {state.value}")

    image.writability = Writability.WRITABLE
    if fully_unshared:
        log.info(f"{image.name} is writable ({image.apparent_sectors} sectors)")
    return image
