"""Unmount, verify, shrink and repackage the modified images."""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import Optional

from wsa_arm.config.settings import PipelineConfig
from wsa_arm.domain.models import (
    DiskImage,
    Partition,
    ShrinkPolicy,
    SizePlan,
    mib_to_sectors,
)
from wsa_arm.logging import LoggerFactory
from wsa_arm.storage import convert, resize
from wsa_arm.storage.fsck import ensure_filesystem
from wsa_arm.storage.mount import MountSession


log = LoggerFactory.for_finalize()


def normalize_timestamps(root: Path, epoch: datetime) -> int:
    """Set atime and mtime of everything under ``root`` to ``epoch``.

    Symlinks are touched themselves, not their targets. Returns the number of
    paths that could not be updated.
    """
    stamp = epoch.timestamp()
    failures = 0
    paths = [Path(root)]
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        paths.extend(base / name for name in dirnames)
        paths.extend(base / name for name in filenames)
    for path in paths:
        try:
            os.utime(path, (stamp, stamp), follow_symlinks=False)
        except OSError as error:
            failures += 1
            log.trace(f"Could not set timestamp on {path}: {error}")
    if failures:
        log.warning(f"Failed to set timestamps for {failures} paths under {root}")
    return failures


def shrink_image(
    image: DiskImage,
    policy: ShrinkPolicy,
    config: PipelineConfig,
    plan: Optional[SizePlan] = None,
) -> int:
    """Resize a finished image according to ``policy``; returns its sectors."""
    if policy is ShrinkPolicy.PLANNED:
        log.info(f"Keeping {image.name} at its planned size ({image.apparent_sectors} sectors)")
        return image.apparent_sectors

    resize.shrink(image)
    minimal = resize.trim_to_filesystem(image)
    if policy is ShrinkPolicy.BUFFER:
        target = minimal + mib_to_sectors(config.final_vendor_buffer_mib)
        if plan is not None and target > plan.planned_sectors:
            target = max(plan.planned_sectors, minimal)
        if target > minimal:
            resize.grow(image, target)
    log.info(f"{image.name} finalized at {image.apparent_sectors} sectors ({policy.value})")
    return image.apparent_sectors


class Finalizer:
    """Turns the mounted, populated images back into VHDX containers."""

    def __init__(self, config: PipelineConfig):
        self.config = config

    def finalize(
        self,
        sessions: dict[Partition, MountSession],
        containers: dict[Partition, Path],
        plans: Optional[dict[Partition, SizePlan]] = None,
    ) -> dict[Partition, Path]:
        """Run the full finalization sequence.

        Raises:
            UnmountFailedError: If either image cannot be unmounted
            FilesystemCheckError: If either image fails its integrity check
            ResizeError: If shrinking fails
            ConversionError: If repackaging fails
        """
        plans = plans or {}
        for session in sessions.values():
            normalize_timestamps(session.mountpoint, self.config.timestamp_epoch)

        for session in sessions.values():
            session.release()

        images = {partition: session.image for partition, session in sessions.items()}
        for image in images.values():
            ensure_filesystem(image)

        shrink_image(images[Partition.SYSTEM], ShrinkPolicy.MINIMIZE, self.config)
        shrink_image(
            images[Partition.VENDOR],
            self.config.vendor_shrink_policy,
            self.config,
            plans.get(Partition.VENDOR),
        )

        for image in images.values():
            ensure_filesystem(image)

        written: dict[Partition, Path] = {}
        try:
            for partition, image in images.items():
                written[partition] = convert.write_container(
                    image, containers[partition], self.config.vhdx_subformat
                )
        except BaseException:
            for partial in written.values():
                partial.unlink(missing_ok=True)
            raise
        for partition in written:
            convert.commit_container(containers[partition])
        for image in images.values():
            image.path.unlink(missing_ok=True)
            log.debug(f"Removed intermediate {image.name}")
        return {partition: containers[partition] for partition in written}
