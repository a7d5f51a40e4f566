"""
Pytest configuration and shared fixtures for wsa-arm tests.

This module provides common fixtures and utilities used across all test modules.
"""

import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import pytest

from wsa_arm.domain.models import (
    MIB,
    DiskImage,
    FilesystemState,
    Partition,
)
from wsa_arm.storage.exceptions import CommandError


# ==============================================================================
# Command Runner Fixtures
# ==============================================================================


class FakeCommandRunner:
    """Stand-in for ``run_command`` that answers by command prefix.

    Rules are matched by the longest prefix; a rule with several return codes
    hands them out in order and repeats the last one.
    """

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.rules: Dict[tuple, dict] = {}

    def on(
        self,
        *prefix: str,
        returncode: int = 0,
        returncodes: Optional[Sequence[int]] = None,
        stdout: str = "",
        stderr: str = "",
        action: Optional[Callable[[List[str]], None]] = None,
    ) -> None:
        self.rules[tuple(prefix)] = {
            "returncodes": list(returncodes) if returncodes else [returncode],
            "stdout": stdout,
            "stderr": stderr,
            "action": action,
        }

    def _rule_for(self, command: List[str]) -> Optional[dict]:
        matches = [
            prefix for prefix in self.rules if tuple(command[: len(prefix)]) == prefix
        ]
        if not matches:
            return None
        return self.rules[max(matches, key=len)]

    def __call__(
        self,
        command,
        check: bool = True,
        log_output: bool = True,
        log_command: bool = True,
        input_text=None,
        cwd=None,
    ):
        command = [str(part) for part in command]
        self.calls.append(command)
        rule = self._rule_for(command)
        returncode, stdout, stderr = 0, "", ""
        if rule is not None:
            codes = rule["returncodes"]
            returncode = codes.pop(0) if len(codes) > 1 else codes[0]
            stdout, stderr = rule["stdout"], rule["stderr"]
            if rule["action"] is not None:
                rule["action"](command)
        result = subprocess.CompletedProcess(command, returncode, stdout, stderr)
        if check and returncode != 0:
            raise CommandError(command, returncode, stderr or stdout)
        return result

    def commands(self, *prefix: str) -> List[List[str]]:
        return [call for call in self.calls if tuple(call[: len(prefix)]) == prefix]


@pytest.fixture
def fake_runner(monkeypatch) -> FakeCommandRunner:
    """
    Fixture replacing ``run_command`` in every module that shells out.

    Returns:
        FakeCommandRunner whose rules default to success with empty output.
    """
    runner = FakeCommandRunner()
    for module in (
        "wsa_arm.storage.fsck",
        "wsa_arm.storage.resize",
        "wsa_arm.storage.unshare",
        "wsa_arm.storage.convert",
        "wsa_arm.storage.mount",
        "wsa_arm.services.archive",
    ):
        monkeypatch.setattr(f"{module}.run_command", runner)
    return runner


def dumpe2fs_output(block_count: int, free_blocks: int = 0, block_size: int = 4096) -> str:
    return (
        "dumpe2fs 1.47.0 (5-Feb-2023)\n"
        "Filesystem volume name:   <none>\n"
        "Filesystem features:      has_journal ext_attr resize_inode extent\n"
        f"Block count:              {block_count}\n"
        "Reserved block count:     0\n"
        f"Free blocks:              {free_blocks}\n"
        f"Block size:               {block_size}\n"
    )


# ==============================================================================
# Image Fixtures
# ==============================================================================


def make_raw_image(path: Path, size_bytes: int, partition: Partition) -> DiskImage:
    """Create a sparse file and wrap it in a DiskImage."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as handle:
        handle.truncate(size_bytes)
    return DiskImage(path=path, partition=partition, state=FilesystemState.VALID)


@pytest.fixture
def vendor_image(tmp_path) -> DiskImage:
    """Fixture providing a sparse 8 MiB vendor image."""
    return make_raw_image(tmp_path / "vendor.img", 8 * MIB, Partition.VENDOR)


@pytest.fixture
def system_image(tmp_path) -> DiskImage:
    """Fixture providing a sparse 16 MiB system image."""
    return make_raw_image(tmp_path / "system.img", 16 * MIB, Partition.SYSTEM)


# ==============================================================================
# Payload Fixtures
# ==============================================================================


def write_file(path: Path, content: str = "payload") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


@pytest.fixture
def houdini_payload(tmp_path) -> Path:
    """
    Fixture providing a complete chromeos_volteer payload tree.

    Returns:
        Path to ``<payload-root>/libhoudini/chromeos_volteer``.
    """
    root = tmp_path / "payload" / "libhoudini" / "chromeos_volteer"
    for name in ("arm64_dyn", "arm64_exe", "arm_dyn", "arm_exe"):
        write_file(root / "etc" / "binfmt_misc" / name, f":{name}:M::")
    for lib_dir in ("lib", "lib64"):
        write_file(root / lib_dir / "libhoudini.so", "ELF")
    write_file(root / "bin" / "houdini", "ELF32")
    write_file(root / "bin" / "houdini64", "ELF64")
    write_file(root / "lib" / "arm" / "libc.so", "arm")
    write_file(root / "lib64" / "arm64" / "libc.so", "arm64")
    return root


@pytest.fixture
def ndk_payload(tmp_path) -> Path:
    """Fixture providing a minimal chromeos_zork payload tree (mandatory files only)."""
    root = tmp_path / "payload" / "libndk" / "chromeos_zork"
    write_file(root / "bin" / "ndk_translation_program_runner_binfmt_misc")
    write_file(root / "bin" / "ndk_translation_program_runner_binfmt_misc_arm64")
    write_file(root / "bin" / "arm" / "linker")
    write_file(root / "bin" / "arm64" / "linker64")
    write_file(root / "etc" / "binfmt_misc" / "arm_exe")
    write_file(root / "etc" / "init" / "ndk_translation.rc", "service ndk\n")
    for name in ("ld.config.arm.txt", "ld.config.arm64.txt", "cpuinfo.arm.txt", "cpuinfo.arm64.txt"):
        write_file(root / "etc" / name)
    for lib_dir in ("lib", "lib64"):
        write_file(root / lib_dir / "libndk_translation.so", "ELF")
    write_file(root / "lib" / "arm" / "libc.so")
    return root


@pytest.fixture
def partition_roots(tmp_path) -> Dict[Partition, Path]:
    """Fixture providing empty system and vendor roots with standard layout."""
    roots = {}
    for partition in Partition:
        root = tmp_path / "mnt" / partition.value
        for name in ("bin", "etc", "lib", "lib64"):
            (root / name).mkdir(parents=True, exist_ok=True)
        roots[partition] = root
    return roots


@pytest.fixture
def no_ownership_changes(mocker):
    """
    Fixture stubbing out chown and the SELinux xattr so tests run unprivileged.

    Returns:
        Tuple of (chown mock, setxattr mock).
    """
    chown = mocker.patch("wsa_arm.services.installer.os.chown")
    setxattr = mocker.patch("wsa_arm.services.installer.os.setxattr")
    return chown, setxattr
