"""Text patches for ``build.prop`` and the vendor init script.

The transforms work on lists of lines without trailing newlines and never
touch the filesystem; :func:`rewrite_file` applies one of them to a file,
writing ``<name>.backup`` first. Files are rewritten in place so ownership,
mode and SELinux labels of the original inode are preserved.
"""

from __future__ import annotations

import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Pattern

from wsa_arm.domain.models import Partition, PayloadSource, TranslationLayer
from wsa_arm.logging import LoggerFactory
from wsa_arm.storage.exceptions import ConfigPatchError


log = LoggerFactory.for_install()

BACKUP_SUFFIX = ".backup"
BUILD_PROP = "build.prop"
INIT_RC = "etc/init/init.windows_x86_64.rc"
NATIVE_BRIDGE_KEY = "ro.dalvik.vm.native.bridge"

NDK_VERSION_LINE = "ro.ndk_translation.version=0.2.3"
NDK_SYSTEM_EXTRA_LINES = (
    "ro.dalvik.vm.isa.arm64=x86_64",
    "ro.dalvik.vm.isa.arm=x86",
    "ro.enable.native.bridge.exec=1",
    "ro.enable.native.bridge.exec64=1",
    NDK_VERSION_LINE,
)
NDK_ONLY_KEYS = ("ro.ndk_translation.version",)

BINFMT_REGISTER = "/proc/sys/fs/binfmt_misc/register"
BIND_MOUNT_SECTION = "on early-init"
ELF_MAGIC = (0x7F, 0x45, 0x4C, 0x46)
ELF_PADDING = (0x00,) * 9
ELF_EXEC = (0x02, 0x00)
ELF_DYN = (0x03, 0x00)
ELF_ARM = 0x28
ELF_AARCH64 = 0xB7


def _property_key(line: str) -> Optional[str]:
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or "=" not in stripped:
        return None
    return stripped.split("=", 1)[0].strip()


# ==============================================================================
# build.prop
# ==============================================================================


@dataclass(frozen=True)
class PropertyPatch:
    """Set ``key`` to ``value`` and place ``extra_lines`` right after it.

    Existing copies of the extra lines' keys, and any ``remove_keys``, are
    dropped wherever they appear so repeated runs do not accumulate them.
    """

    key: str
    value: str
    extra_lines: tuple[str, ...] = ()
    remove_keys: tuple[str, ...] = ()

    @property
    def stale_keys(self) -> set[str]:
        keys = {_property_key(line) for line in self.extra_lines}
        keys.update(self.remove_keys)
        keys.discard(None)
        return keys  # type: ignore[return-value]


def apply_property_patch(lines: list[str], patch: PropertyPatch) -> tuple[list[str], bool]:
    """Return the patched lines and whether ``patch.key`` was found."""
    if not any(_property_key(line) == patch.key for line in lines):
        return list(lines), False

    stale = patch.stale_keys
    result: list[str] = []
    replaced = False
    for line in lines:
        key = _property_key(line)
        if key in stale:
            continue
        if key == patch.key:
            if replaced:
                continue
            result.append(f"{patch.key}={patch.value}")
            result.extend(patch.extra_lines)
            replaced = True
            continue
        result.append(line)
    return result, True


def remove_properties(lines: list[str], keys: tuple[str, ...]) -> list[str]:
    return [line for line in lines if _property_key(line) not in keys]


def property_patches(source: PayloadSource) -> dict[Partition, PropertyPatch]:
    """Native-bridge property patches for both partitions."""
    if source.layer is TranslationLayer.NDK:
        library = source.native_bridge_library
        return {
            Partition.SYSTEM: PropertyPatch(
                NATIVE_BRIDGE_KEY, library, NDK_SYSTEM_EXTRA_LINES
            ),
            Partition.VENDOR: PropertyPatch(
                NATIVE_BRIDGE_KEY, library, (NDK_VERSION_LINE,)
            ),
        }
    return {
        Partition.SYSTEM: PropertyPatch(NATIVE_BRIDGE_KEY, "0", remove_keys=NDK_ONLY_KEYS),
        Partition.VENDOR: PropertyPatch(
            NATIVE_BRIDGE_KEY, source.native_bridge_library, remove_keys=NDK_ONLY_KEYS
        ),
    }


# ==============================================================================
# init script
# ==============================================================================


def _bind_mount_line(binary: str) -> str:
    return f"mount none /vendor/bin/{binary} /system/bin/{binary} bind rec"


def _bind_mount_pattern(binary: str) -> Pattern[str]:
    return re.compile(re.escape(_bind_mount_line(binary)))


def _register_line(name: str, magic: tuple[int, ...], interpreter: str, append: bool) -> str:
    signature = "".join(f"\\\\x{byte:02x}" for byte in magic)
    redirect = ">>" if append else ">"
    return (
        f"    exec -- /system/bin/sh -c \"echo ':{name}:M::{signature}::"
        f"{interpreter}:P' {redirect} {BINFMT_REGISTER}\""
    )


def _elf_signature(elf_class: int, elf_type: tuple[int, int], machine: int) -> tuple[int, ...]:
    return ELF_MAGIC + (elf_class, 0x01, 0x01) + ELF_PADDING + elf_type + (machine,)


@dataclass(frozen=True)
class InitInsertion:
    """Lines inserted directly after every line matching ``anchor``."""

    anchor: Pattern[str]
    lines: tuple[str, ...] = field(default_factory=tuple)


HOUDINI_BIND_MOUNT = _bind_mount_pattern("houdini")
HOUDINI64_BIND_MOUNT = _bind_mount_pattern("houdini64")

HOUDINI_INSERTIONS = (
    InitInsertion(
        HOUDINI_BIND_MOUNT,
        (
            _register_line(
                "arm_exe", _elf_signature(0x01, ELF_EXEC, ELF_ARM), "/system/bin/houdini", False
            ),
            _register_line(
                "arm_dyn", _elf_signature(0x01, ELF_DYN, ELF_ARM), "/system/bin/houdini", True
            ),
        ),
    ),
    InitInsertion(
        HOUDINI64_BIND_MOUNT,
        (
            _register_line(
                "arm64_exe",
                _elf_signature(0x02, ELF_EXEC, ELF_AARCH64),
                "/system/bin/houdini64",
                True,
            ),
            _register_line(
                "arm64_dyn",
                _elf_signature(0x02, ELF_DYN, ELF_AARCH64),
                "/system/bin/houdini64",
                True,
            ),
        ),
    ),
)

HOUDINI_INIT_DELETIONS = (
    HOUDINI_BIND_MOUNT,
    HOUDINI64_BIND_MOUNT,
    re.compile(r"::/system/bin/houdini(64)?:P"),
)


def insert_after_anchor(lines: list[str], insertion: InitInsertion) -> list[str]:
    """Insert ``insertion.lines`` after each anchor line.

    An anchor already followed by exactly those lines is left alone, so the
    patch can be applied to an image that was patched before.
    """
    result: list[str] = []
    count = len(insertion.lines)
    for index, line in enumerate(lines):
        result.append(line)
        if not insertion.anchor.search(line):
            continue
        following = [item.rstrip() for item in lines[index + 1 : index + 1 + count]]
        if following == [item.rstrip() for item in insertion.lines]:
            log.debug(f"Init script already registers binfmt after: {line.strip()}")
            continue
        result.extend(insertion.lines)
    return result


def _bind_mount_position(lines: list[str]) -> int:
    """Index right after the last bind mount and its register lines.

    Falls back to the start of the ``on early-init`` section, which is
    appended when the script has none.
    """
    mounts = [
        index
        for index, line in enumerate(lines)
        if HOUDINI_BIND_MOUNT.search(line) or HOUDINI64_BIND_MOUNT.search(line)
    ]
    if mounts:
        position = mounts[-1] + 1
        while position < len(lines) and BINFMT_REGISTER in lines[position]:
            position += 1
        return position
    for index, line in enumerate(lines):
        if line.strip() == BIND_MOUNT_SECTION:
            return index + 1
    if lines and lines[-1].strip():
        lines.append("")
    lines.append(BIND_MOUNT_SECTION)
    return len(lines)


def restore_bind_mounts(lines: list[str]) -> list[str]:
    """Re-add Houdini bind mounts that an earlier NDK install removed."""
    result = list(lines)
    for binary, pattern in (("houdini", HOUDINI_BIND_MOUNT), ("houdini64", HOUDINI64_BIND_MOUNT)):
        if any(pattern.search(line) for line in result):
            continue
        log.warning(f"Init script has no {binary} bind mount, restoring it")
        position = _bind_mount_position(result)
        result.insert(position, f"    {_bind_mount_line(binary)}")
    return result


def delete_matching(lines: list[str], patterns: tuple[Pattern[str], ...]) -> list[str]:
    return [line for line in lines if not any(pattern.search(line) for pattern in patterns)]


# ==============================================================================
# file helpers
# ==============================================================================


BackupSet = Optional[set]


def backup_path(path: Path) -> Path:
    return path.with_name(path.name + BACKUP_SUFFIX)


def rewrite_file(
    path: Path,
    transform: Callable[[list[str]], list[str]],
    backed_up: BackupSet = None,
) -> bool:
    """Apply ``transform`` to the lines of ``path``.

    Returns True when the file changed. ``<name>.backup`` is written before
    the first change; paths already in ``backed_up`` keep their earlier
    backup so several patches in one run still leave the original behind.

    Raises:
        ConfigPatchError: If the file cannot be read, backed up or written
    """
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as error:
        raise ConfigPatchError(str(path), f"cannot read: {error}") from error
    lines = text.splitlines()
    updated = transform(list(lines))
    if updated == lines:
        return False

    if backed_up is None or path not in backed_up:
        try:
            shutil.copy2(path, backup_path(path))
        except OSError as error:
            raise ConfigPatchError(str(path), f"cannot write backup: {error}") from error
        if backed_up is not None:
            backed_up.add(path)

    new_text = "\n".join(updated)
    if text.endswith("\n") or not text:
        new_text += "\n"
    try:
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(new_text)
    except OSError as error:
        raise ConfigPatchError(str(path), f"cannot write: {error}") from error
    return True


def patch_build_prop(root: Path, patch: PropertyPatch, backed_up: BackupSet = None) -> bool:
    """Apply ``patch`` to ``<root>/build.prop``; missing file or key only warns."""
    path = root / BUILD_PROP
    if not path.is_file():
        log.warning(f"{path} not found, skipping native bridge update")
        return False
    found = True

    def transform(lines: list[str]) -> list[str]:
        nonlocal found
        patched, found = apply_property_patch(lines, patch)
        return patched

    changed = rewrite_file(path, transform, backed_up)
    if not found:
        log.warning(f"{patch.key} not present in {path}, leaving it unchanged")
    elif changed:
        log.info(f"Set {patch.key}={patch.value} in {path}")
    return changed


def patch_init_rc(
    vendor_root: Path, layer: TranslationLayer, backed_up: BackupSet = None
) -> Optional[Path]:
    """Register Houdini binfmt handlers, or remove them for NDK.

    For Houdini, missing bind mounts are restored first so the handlers
    have an anchor after a previous NDK install.

    Returns the init script path when it was modified.
    """
    path = vendor_root / INIT_RC
    if not path.is_file():
        log.warning(f"{path} not found, skipping init script update")
        return None

    if layer is TranslationLayer.HOUDINI:

        def transform(lines: list[str]) -> list[str]:
            lines = restore_bind_mounts(lines)
            for insertion in HOUDINI_INSERTIONS:
                lines = insert_after_anchor(lines, insertion)
            return lines

    else:

        def transform(lines: list[str]) -> list[str]:
            return delete_matching(lines, HOUDINI_INIT_DELETIONS)

    if rewrite_file(path, transform, backed_up):
        log.info(f"Updated {path.name} for {layer.value}")
        return path
    log.debug(f"{path.name} already up to date for {layer.value}")
    return None


def strip_layer_config(
    system_root: Path,
    vendor_root: Path,
    layer: TranslationLayer,
    backed_up: BackupSet = None,
) -> list[Path]:
    """Remove configuration that only ``layer`` adds.

    Returns the files that changed.
    """
    changed: list[Path] = []
    if layer is TranslationLayer.HOUDINI:
        path = vendor_root / INIT_RC
        if path.is_file() and rewrite_file(
            path, lambda lines: delete_matching(lines, HOUDINI_INIT_DELETIONS), backed_up
        ):
            changed.append(path)
        return changed

    for root in (system_root, vendor_root):
        path = root / BUILD_PROP
        if path.is_file() and rewrite_file(
            path, lambda lines: remove_properties(lines, NDK_ONLY_KEYS), backed_up
        ):
            changed.append(path)
    return changed
