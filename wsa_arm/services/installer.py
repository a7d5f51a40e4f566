"""Copy the translation payload into mounted partitions and patch their config."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator

from wsa_arm.domain.models import (
    InstallManifest,
    ManifestEntry,
    Partition,
    PayloadSource,
)
from wsa_arm.logging import LoggerFactory
from wsa_arm.storage.exceptions import MandatoryPayloadError

from .config_patch import (
    backup_path,
    patch_build_prop,
    patch_init_rc,
    property_patches,
    strip_layer_config,
)
from .manifest import VENDOR_CONFIGS_FILE, build_manifest, foreign_destinations


log = LoggerFactory.for_install()
metadata_log = log.bind(tags=["install", "metadata"])

SELINUX_XATTR = "security.selinux"


@dataclass
class InstallReport:
    installed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    patched: list[Path] = field(default_factory=list)


def set_label(path: Path, label: str) -> bool:
    """Write the SELinux label xattr; failures only warn."""
    try:
        os.setxattr(path, SELINUX_XATTR, label.encode(), follow_symlinks=False)
    except OSError as error:
        log.warning(f"Failed to set SELinux label {label} on {path}: {error}")
        return False
    metadata_log.trace(f"label {label} -> {path}")
    return True


def _walk(path: Path) -> Iterator[tuple[Path, bool]]:
    """Yield ``path`` and everything below it with an is-directory flag."""
    is_dir = path.is_dir() and not path.is_symlink()
    yield path, is_dir
    if not is_dir:
        return
    for dirpath, dirnames, filenames in os.walk(path):
        base = Path(dirpath)
        for name in dirnames:
            child = base / name
            yield child, not child.is_symlink()
        for name in filenames:
            yield base / name, False


def apply_metadata(path: Path, entry: ManifestEntry) -> None:
    """Apply the entry's owner, mode and label to ``path`` and its children.

    Raises:
        MandatoryPayloadError: If chown/chmod fails for a mandatory entry
    """
    for item, is_dir in _walk(path):
        gid = entry.directory_gid if is_dir else entry.gid
        mode = entry.dir_mode if is_dir else entry.file_mode
        try:
            os.chown(item, entry.uid, gid, follow_symlinks=False)
            if not item.is_symlink():
                os.chmod(item, mode)
        except OSError as error:
            if entry.mandatory:
                raise MandatoryPayloadError(
                    entry.source, str(item), f"cannot set ownership/mode: {error}"
                ) from error
            log.warning(f"Failed to set ownership/mode on {item}: {error}")
        else:
            metadata_log.trace(f"{entry.uid}:{gid} {mode:o} -> {item}")
        set_label(item, entry.label)


def remove_path(path: Path) -> bool:
    """Delete a file, symlink or directory tree; return False if absent."""
    try:
        if path.is_symlink() or path.is_file():
            path.unlink()
        elif path.is_dir():
            shutil.rmtree(path)
        else:
            return False
    except OSError as error:
        log.warning(f"Failed to remove {path}: {error}")
        return False
    return True


def _copy_item(source: Path, destination: Path) -> None:
    if source.is_dir() and not source.is_symlink():
        if destination.is_dir() and not destination.is_symlink():
            shutil.rmtree(destination)
        elif destination.exists() or destination.is_symlink():
            destination.unlink()
        shutil.copytree(source, destination, symlinks=True)
    else:
        if destination.is_symlink():
            destination.unlink()
        shutil.copy2(source, destination, follow_symlinks=False)


def _make_parents(root: Path, destination: Path, entry: ManifestEntry) -> None:
    """Create missing parent directories and give them the entry's metadata."""
    missing = []
    parent = destination.parent
    while parent != root and not parent.exists():
        missing.append(parent)
        parent = parent.parent
    destination.parent.mkdir(parents=True, exist_ok=True)
    for directory in reversed(missing):
        apply_metadata(directory, entry)


class PayloadInstaller:
    """Installs one payload source into a pair of mounted partition roots.

    The other translation layer's files and config are removed first, so the
    partitions never carry both layers at once.
    """

    def __init__(self, source: PayloadSource, payload_dir: Path):
        self.source = source
        self.payload_dir = Path(payload_dir)
        self.manifest: InstallManifest = build_manifest(source)
        self._backed_up: set[Path] = set()

    def remove_other_layer(self, roots: dict[Partition, Path], report: InstallReport) -> None:
        other = self.source.layer.other
        merged = {
            (entry.partition, entry.destination)
            for entry in self.manifest.entries
            if entry.contents_only
        }
        for partition, destinations in foreign_destinations(self.source.layer).items():
            root = roots[partition]
            for destination in sorted(destinations):
                if (partition, destination) in merged:
                    continue
                if remove_path(root / destination):
                    report.removed.append(f"{partition.value}/{destination}")
        if report.removed:
            log.info(f"Removed {len(report.removed)} {other.value} paths")
        report.patched.extend(
            strip_layer_config(
                roots[Partition.SYSTEM], roots[Partition.VENDOR], other, self._backed_up
            )
        )

    def install_entry(self, root: Path, entry: ManifestEntry) -> bool:
        """Copy one manifest entry and apply its metadata.

        Returns False when an optional entry was skipped.

        Raises:
            MandatoryPayloadError: If a mandatory entry cannot be installed
        """
        source = self.payload_dir / entry.source
        destination = root / entry.destination
        if not source.exists():
            if entry.mandatory:
                raise MandatoryPayloadError(str(source), str(destination), "source missing")
            log.warning(f"Optional payload {entry.source} not found, skipping")
            return False

        try:
            _make_parents(root, destination, entry)
            if entry.contents_only:
                if not destination.exists():
                    destination.mkdir()
                    apply_metadata(destination, entry)
                targets = []
                for child in sorted(source.iterdir()):
                    _copy_item(child, destination / child.name)
                    targets.append(destination / child.name)
            else:
                _copy_item(source, destination)
                targets = [destination]
        except (OSError, shutil.Error) as error:
            if entry.mandatory:
                raise MandatoryPayloadError(str(source), str(destination), str(error)) from error
            log.warning(f"Failed to copy optional {entry.source}: {error}")
            return False

        for target in targets:
            apply_metadata(target, entry)
        log.debug(f"Installed {entry.source} -> {entry.partition.value}/{entry.destination}")
        return True

    def install_entries(
        self, root: Path, entries: Iterable[ManifestEntry], report: InstallReport
    ) -> None:
        for entry in entries:
            name = f"{entry.partition.value}/{entry.destination}"
            if self.install_entry(root, entry):
                report.installed.append(name)
            else:
                report.skipped.append(name)

    def patch_config(self, roots: dict[Partition, Path], report: InstallReport) -> None:
        for partition, patch in property_patches(self.source).items():
            if patch_build_prop(roots[partition], patch, self._backed_up):
                report.patched.append(roots[partition] / "build.prop")

        init_rc = patch_init_rc(roots[Partition.VENDOR], self.source.layer, self._backed_up)
        if init_rc is not None:
            report.patched.append(init_rc)
            set_label(init_rc, VENDOR_CONFIGS_FILE)
            set_label(backup_path(init_rc), VENDOR_CONFIGS_FILE)

    def install(self, system_root: Path, vendor_root: Path) -> InstallReport:
        """Run removal, copy and config patching against both roots.

        Raises:
            MandatoryPayloadError: If a mandatory entry cannot be installed
            ConfigPatchError: If a config file cannot be backed up or rewritten
        """
        roots = {Partition.SYSTEM: Path(system_root), Partition.VENDOR: Path(vendor_root)}
        report = InstallReport()
        log.info(
            f"Installing {self.source.layer.value} ({self.source.name}) "
            f"from {self.payload_dir}"
        )
        self.remove_other_layer(roots, report)
        for partition in Partition:
            self.install_entries(
                roots[partition], self.manifest.for_partition(partition), report
            )
        self.patch_config(roots, report)
        log.info(
            f"Installed {len(report.installed)} entries, skipped {len(report.skipped)} optional"
        )
        return report
