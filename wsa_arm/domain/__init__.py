"""Domain models for the image provisioning pipeline."""

from __future__ import annotations

from .models import (
    MIB,
    SECTOR_BYTES,
    ContainerFormat,
    DiskImage,
    FilesystemState,
    InstallJob,
    InstallManifest,
    ManifestEntry,
    Partition,
    PayloadSource,
    ShrinkPolicy,
    SizePlan,
    TranslationLayer,
    Writability,
    bytes_to_sectors,
    mib_to_sectors,
    sectors_to_bytes,
)


__all__ = [
    "MIB",
    "SECTOR_BYTES",
    "ContainerFormat",
    "DiskImage",
    "FilesystemState",
    "InstallJob",
    "InstallManifest",
    "ManifestEntry",
    "Partition",
    "PayloadSource",
    "ShrinkPolicy",
    "SizePlan",
    "TranslationLayer",
    "Writability",
    "bytes_to_sectors",
    "mib_to_sectors",
    "sectors_to_bytes",
]
