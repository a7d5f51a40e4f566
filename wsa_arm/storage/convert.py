"""VHDX <-> raw conversion through ``qemu-img``."""

from __future__ import annotations

import json
import os
from pathlib import Path

from wsa_arm.domain.models import ContainerFormat, DiskImage, Partition
from wsa_arm.logging import LoggerFactory

from .commands import run_command
from .exceptions import CommandError, ConversionError


log = LoggerFactory.for_convert()

PARTIAL_SUFFIX = ".new"


def probe_format(path: Path) -> str:
    """Return the container format ``qemu-img`` detects for ``path``."""
    try:
        result = run_command(
            ["qemu-img", "info", "--output=json", str(path)], log_output=False
        )
        info = json.loads(result.stdout)
    except CommandError as error:
        raise ConversionError(str(path), "info", error.output) from error
    except json.JSONDecodeError as error:
        raise ConversionError(str(path), "info", f"unreadable qemu-img output: {error}") from error
    return str(info.get("format", "unknown"))


def to_raw(container: Path, raw_path: Path, partition: Partition) -> DiskImage:
    """Convert a VHDX container into a raw image next to it.

    The container is left untouched so it can be reused if the run aborts.
    """
    log.info(f"Converting {container.name} to raw")
    try:
        run_command(
            [
                "qemu-img",
                "convert",
                "-f",
                ContainerFormat.VHDX.value,
                "-O",
                ContainerFormat.RAW.value,
                str(container),
                str(raw_path),
            ]
        )
    except CommandError as error:
        raw_path.unlink(missing_ok=True)
        raise ConversionError(str(container), str(raw_path), error.output) from error
    return DiskImage(path=raw_path, partition=partition, container_format=ContainerFormat.RAW)


def partial_path(container: Path) -> Path:
    return container.with_name(container.name + PARTIAL_SUFFIX)


def write_container(image: DiskImage, container: Path, subformat: str = "dynamic") -> Path:
    """Convert a raw image to ``<container>.new`` and return that path.

    The existing container is not touched; a failed conversion leaves no
    partial file behind.
    """
    partial = partial_path(container)
    log.info(f"Converting {image.name} to {partial.name}")
    try:
        run_command(
            [
                "qemu-img",
                "convert",
                "-f",
                ContainerFormat.RAW.value,
                "-O",
                ContainerFormat.VHDX.value,
                "-o",
                f"subformat={subformat}",
                str(image.path),
                str(partial),
            ]
        )
    except CommandError as error:
        partial.unlink(missing_ok=True)
        raise ConversionError(str(image.path), str(container), error.output) from error
    return partial


def commit_container(container: Path) -> Path:
    """Atomically replace ``container`` with its converted ``.new`` file."""
    os.replace(partial_path(container), container)
    log.debug(f"Replaced {container.name}")
    return container


def to_container(image: DiskImage, container: Path, subformat: str = "dynamic") -> Path:
    """Convert a raw image back to VHDX and atomically replace ``container``.

    The conversion writes ``<container>.new`` first; the original container
    is only replaced once ``qemu-img`` has succeeded.
    """
    write_container(image, container, subformat)
    return commit_container(container)
