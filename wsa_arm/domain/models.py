"""Domain model for the image provisioning pipeline.

Disk images, size plans, manifest entries and install jobs are explicit objects
that get threaded through the pipeline instead of being shared as loose paths
and integers.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Optional

from wsa_arm.storage.exceptions import (
    FilesystemCheckError,
    ImageNotFoundError,
    InvalidSourceError,
    PayloadNotFoundError,
    PreflightError,
)


SECTOR_BYTES = 512
MIB = 1024 * 1024

ROOT_UID = 0
ROOT_GID = 0
SHELL_GID = 2000


def bytes_to_sectors(size_bytes: int) -> int:
    """Round a byte count up to whole 512-byte sectors."""
    return math.ceil(size_bytes / SECTOR_BYTES)


def sectors_to_bytes(sectors: int) -> int:
    return sectors * SECTOR_BYTES


def mib_to_sectors(mib: int) -> int:
    return bytes_to_sectors(mib * MIB)


# ==============================================================================
# Images
# ==============================================================================


class Partition(Enum):
    """Android partition carried by an image."""

    SYSTEM = "system"
    VENDOR = "vendor"


class ContainerFormat(Enum):
    """On-disk packaging of an image."""

    VHDX = "vhdx"  # distributed virtual disk
    RAW = "raw"  # plain ext4 block image used while editing


class FilesystemState(Enum):
    """Result of the last integrity check."""

    UNKNOWN = "unknown"
    VALID = "valid"
    REPAIRED = "repaired"
    NEEDS_REPAIR = "needs_repair"
    CORRUPT = "corrupt"

    @property
    def is_usable(self) -> bool:
        return self in (FilesystemState.VALID, FilesystemState.REPAIRED)


class Writability(Enum):
    """Whether the filesystem still aliases shared backing blocks."""

    SHARED_BLOCKS = "shared_blocks"
    WRITABLE = "writable"


@dataclass
class DiskImage:
    """A raw or container image file and the state the pipeline knows about it."""

    path: Path
    partition: Partition
    container_format: ContainerFormat = ContainerFormat.RAW
    state: FilesystemState = FilesystemState.UNKNOWN
    writability: Writability = Writability.SHARED_BLOCKS

    def __post_init__(self) -> None:
        self.path = Path(self.path)

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def apparent_bytes(self) -> int:
        """Logical file length, ignoring sparse holes."""
        return self.path.stat().st_size

    @property
    def apparent_sectors(self) -> int:
        return bytes_to_sectors(self.apparent_bytes)

    def require_usable(self) -> None:
        """Raise unless the last integrity check left the filesystem usable."""
        if not self.state.is_usable:
            raise FilesystemCheckError(str(self.path), -1)


# ==============================================================================
# Size planning
# ==============================================================================


@dataclass(frozen=True)
class SizePlan:
    """Target size for one image, in 512-byte sectors."""

    partition: Partition
    current_sectors: int
    target_sectors: int
    budget_sectors: int = 0
    expansions: int = 0
    expanded_sectors: int = 0

    def __post_init__(self) -> None:
        if self.target_sectors < self.current_sectors:
            raise ValueError(
                f"Target size ({self.target_sectors} sectors) is smaller than "
                f"current size ({self.current_sectors} sectors) for {self.partition.value}"
            )

    @property
    def target_bytes(self) -> int:
        return sectors_to_bytes(self.target_sectors)

    @property
    def growth_sectors(self) -> int:
        return self.target_sectors - self.current_sectors

    @property
    def planned_sectors(self) -> int:
        """Target before any capacity expansion."""
        return self.target_sectors - self.expanded_sectors

    def expanded(self, extra_sectors: int) -> SizePlan:
        """Return a new plan grown by ``extra_sectors`` on top of this target."""
        return replace(
            self,
            target_sectors=self.target_sectors + extra_sectors,
            expansions=self.expansions + 1,
            expanded_sectors=self.expanded_sectors + extra_sectors,
        )


class ShrinkPolicy(Enum):
    """How the payload-bearing vendor image is sized during finalization."""

    MINIMIZE = "minimize"  # resize2fs -M
    BUFFER = "buffer"  # minimum plus a fixed buffer
    PLANNED = "planned"  # keep the planned (possibly expanded) target


# ==============================================================================
# Translation layers
# ==============================================================================


class TranslationLayer(Enum):
    """ARM translation runtime flavour."""

    HOUDINI = "libhoudini"
    NDK = "libndk"

    @property
    def valid_sources(self) -> tuple[str, ...]:
        return PAYLOAD_SOURCES[self]

    @property
    def other(self) -> TranslationLayer:
        if self is TranslationLayer.HOUDINI:
            return TranslationLayer.NDK
        return TranslationLayer.HOUDINI


PAYLOAD_SOURCES: dict[TranslationLayer, tuple[str, ...]] = {
    TranslationLayer.NDK: ("chromeos_zork",),
    TranslationLayer.HOUDINI: (
        "chromeos_volteer",
        "hpe-14",
        "aow-13",
        "libhoudini_bluestacks",
    ),
}

SOURCE_DESCRIPTIONS = {
    "chromeos_zork": "AMD's libndk from ChromeOS arcvm image for 'zork' Chromebooks",
    "chromeos_volteer": "Intel's libhoudini from ChromeOS arcvm image for 'volteer' Chromebooks",
    "hpe-14": "Intel's libhoudini from HPE image from Google Play Games for PC",
    "aow-13": "Intel's libhoudini from Tencent's AoW Emulator",
    "libhoudini_bluestacks": "Intel's libhoudini from BlueStacks",
}

BLUESTACKS_SOURCE = "libhoudini_bluestacks"


@dataclass(frozen=True)
class PayloadSource:
    """A named payload variant for a translation layer."""

    layer: TranslationLayer
    name: str

    @classmethod
    def parse(cls, layer: str, name: str) -> PayloadSource:
        """Build a source from CLI strings, rejecting invalid combinations.

        Raises:
            InvalidSourceError: If the layer is unknown or the source is not
                valid for it
        """
        try:
            parsed_layer = TranslationLayer(layer)
        except ValueError:
            raise InvalidSourceError(
                layer, name, [item.value for item in TranslationLayer]
            ) from None
        if name not in parsed_layer.valid_sources:
            raise InvalidSourceError(layer, name, list(parsed_layer.valid_sources))
        return cls(layer=parsed_layer, name=name)

    @property
    def is_bluestacks(self) -> bool:
        return self.name == BLUESTACKS_SOURCE

    @property
    def native_bridge_library(self) -> str:
        """Library name written to ro.dalvik.vm.native.bridge."""
        if self.layer is TranslationLayer.NDK:
            return "libndk_translation.so"
        if self.is_bluestacks:
            return "libnb.so"
        return "libhoudini.so"


# ==============================================================================
# Install manifest
# ==============================================================================


@dataclass(frozen=True)
class ManifestEntry:
    """One file or directory to copy from the payload into a partition.

    ``source`` is relative to the payload directory, ``destination`` relative to
    the partition root. Directories are copied recursively and ``file_mode`` /
    ``dir_mode`` apply to everything below them. ``contents_only`` copies the
    children of a source directory into an existing destination directory.
    """

    source: str
    destination: str
    partition: Partition
    label: str
    uid: int = ROOT_UID
    gid: int = ROOT_GID
    file_mode: int = 0o644
    dir_mode: int = 0o755
    dir_gid: Optional[int] = None
    mandatory: bool = True
    contents_only: bool = False

    @property
    def directory_gid(self) -> int:
        return self.gid if self.dir_gid is None else self.dir_gid


@dataclass(frozen=True)
class InstallManifest:
    """Manifest for a single layer/source combination."""

    source: PayloadSource
    entries: tuple[ManifestEntry, ...] = field(default_factory=tuple)

    def for_partition(self, partition: Partition) -> list[ManifestEntry]:
        return [entry for entry in self.entries if entry.partition is partition]

    def destinations(self, partition: Partition) -> set[str]:
        return {entry.destination for entry in self.for_partition(partition)}


# ==============================================================================
# Install job
# ==============================================================================


@dataclass(frozen=True)
class InstallJob:
    """A single provisioning request coming from the CLI."""

    source: PayloadSource
    directory: Path
    payload_root: Path
    archive_name: Optional[str] = None

    @property
    def layer(self) -> TranslationLayer:
        return self.source.layer

    @property
    def work_dir(self) -> Path:
        """Directory holding the images that are modified in place."""
        if self.archive_name:
            return self.directory / self.source.name
        return self.directory

    @property
    def payload_dir(self) -> Path:
        return self.payload_root / self.layer.value / self.source.name

    def validate(self) -> None:
        """Check inputs before touching any filesystem state.

        Raises:
            ImageNotFoundError: If system.vhdx or vendor.vhdx is missing
            PayloadNotFoundError: If the payload directory is missing
            PreflightError: If the archive name is unusable
        """
        for partition in Partition:
            image = self.directory / f"{partition.value}.vhdx"
            if not image.is_file():
                raise ImageNotFoundError(str(image))
        if not self.payload_dir.is_dir():
            raise PayloadNotFoundError(str(self.payload_dir))
        if self.archive_name is not None:
            if not self.archive_name or "/" in self.archive_name:
                raise PreflightError(f"Invalid archive name: {self.archive_name!r}")
