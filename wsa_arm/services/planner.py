"""Image size planning before mount and the free-space check after it.

Pre-mount targets come from apparent sizes, which undercount what the payload
needs once ext4 metadata and reserved blocks are involved. The post-mount check
grows the vendor image once more when its free space falls short.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path

from wsa_arm.config.settings import PipelineConfig
from wsa_arm.domain.models import (
    MIB,
    DiskImage,
    InstallManifest,
    Partition,
    SizePlan,
    TranslationLayer,
    bytes_to_sectors,
    mib_to_sectors,
)
from wsa_arm.logging import LoggerFactory
from wsa_arm.storage import resize
from wsa_arm.storage.mount import MountSession


log = LoggerFactory.for_planner()


def plan_system(image: DiskImage, config: PipelineConfig) -> SizePlan:
    """System target: apparent size times the growth factor."""
    current = image.apparent_sectors
    target = current * config.system_growth_factor
    log.info(f"System target: {target} sectors (x{config.system_growth_factor})")
    return SizePlan(
        partition=Partition.SYSTEM,
        current_sectors=current,
        target_sectors=target,
        budget_sectors=target - current,
    )


def plan_vendor(
    image: DiskImage, layer: TranslationLayer, config: PipelineConfig
) -> SizePlan:
    """Vendor target: apparent size plus the layer budget and a safety buffer."""
    current = image.apparent_sectors
    budget = mib_to_sectors(config.payload_budget_mib(layer) + config.vendor_buffer_mib)
    log.info(
        f"Vendor target: {current + budget} sectors "
        f"(+{config.payload_budget_mib(layer)} MiB {layer.value}, "
        f"+{config.vendor_buffer_mib} MiB buffer)"
    )
    return SizePlan(
        partition=Partition.VENDOR,
        current_sectors=current,
        target_sectors=current + budget,
        budget_sectors=budget,
    )


def _tree_bytes(path: Path) -> int:
    if path.is_symlink() or not path.is_dir():
        return path.lstat().st_size
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for name in filenames:
            total += (Path(dirpath) / name).lstat().st_size
    return total


def estimate_payload_bytes(
    manifest: InstallManifest, payload_dir: Path, partition: Partition
) -> int:
    """Sum the sizes of the manifest sources that will land on ``partition``."""
    total = 0
    for entry in manifest.for_partition(partition):
        source = payload_dir / entry.source
        if source.exists() or source.is_symlink():
            total += _tree_bytes(source)
    return total


def required_free_bytes(estimate_bytes: int, config: PipelineConfig) -> int:
    return max(config.min_vendor_free_mib * MIB, estimate_bytes)


def ensure_vendor_capacity(
    session: MountSession,
    plan: SizePlan,
    estimate_bytes: int,
    config: PipelineConfig,
) -> SizePlan:
    """Grow the mounted vendor image once if its free space is short.

    The session is unmounted for the resize and mounted again afterwards.
    Returns the (possibly expanded) plan.
    """
    required = required_free_bytes(estimate_bytes, config)
    available = shutil.disk_usage(session.mountpoint).free
    log.info(
        f"Vendor free space: {available // MIB} MiB, required: {required // MIB} MiB"
    )
    if available >= required:
        return plan
    if plan.expansions:
        log.warning(
            f"Vendor is still {(required - available) // MIB} MiB short after "
            "expansion, continuing with the current size"
        )
        return plan

    shortfall = required - available
    extra = max(mib_to_sectors(config.vendor_extra_increment_mib), bytes_to_sectors(shortfall))
    image = session.image
    session.release()
    base = max(plan.target_sectors, image.apparent_sectors)
    expanded = plan.expanded(base + extra - plan.target_sectors)
    log.info(f"Expanding vendor by {extra} sectors to {expanded.target_sectors}")
    resize.grow(image, expanded.target_sectors)
    session.mount()
    return expanded
