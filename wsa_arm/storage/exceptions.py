"""Custom exceptions for image provisioning.

This module defines a hierarchy of exceptions for the install pipeline to provide
more specific error handling and better error messages.

Exception Hierarchy:
    StorageError (base)
        ├── CommandError
        ├── FilesystemCheckError
        ├── ResizeError
        │   └── AllocationError
        ├── UnshareError
        ├── ConversionError
        └── MountError
            ├── MountFailedError
            └── UnmountFailedError
    InstallError (base)
        ├── MandatoryPayloadError
        └── ConfigPatchError
    PreflightError (base)
        ├── InvalidSourceError
        ├── ImageNotFoundError
        └── PayloadNotFoundError

Usage:
    from wsa_arm.storage.exceptions import FilesystemCheckError

    if state is FilesystemState.CORRUPT:
        raise FilesystemCheckError(image_path, returncode)
"""

from __future__ import annotations


class StorageError(Exception):
    """Base exception for all image and filesystem operations."""



class CommandError(StorageError):
    """An external tool exited with a non-zero status."""

    def __init__(self, command: list[str], returncode: int, output: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        message = output.strip() or "Command failed"
        super().__init__(
            f"Command failed ({' '.join(self.command)}) rc={returncode}: {message}"
        )


class FilesystemCheckError(StorageError):
    """e2fsck could not bring the filesystem back to a consistent state."""

    def __init__(self, image_path: str, returncode: int):
        self.image_path = image_path
        self.returncode = returncode
        super().__init__(
            f"Filesystem on {image_path} could not be repaired (e2fsck rc={returncode})"
        )


class ResizeError(StorageError):
    """Growing or shrinking an image failed after the retry ladder."""

    def __init__(self, image_path: str, reason: str):
        self.image_path = image_path
        self.reason = reason
        super().__init__(f"Failed to resize {image_path}: {reason}")


class AllocationError(ResizeError):
    """The backing storage cannot hold the requested image size."""

    def __init__(self, image_path: str, requested_bytes: int, available_bytes: int):
        self.requested_bytes = requested_bytes
        self.available_bytes = available_bytes
        super().__init__(
            image_path,
            f"need {requested_bytes} more bytes but only {available_bytes} available",
        )


class UnshareError(StorageError):
    """Converting a shared-block image to a writable one failed."""

    def __init__(self, image_path: str, reason: str):
        self.image_path = image_path
        self.reason = reason
        super().__init__(f"Failed to make {image_path} writable: {reason}")


class ConversionError(StorageError):
    """Container format conversion failed."""

    def __init__(self, source: str, destination: str, reason: str):
        self.source = source
        self.destination = destination
        self.reason = reason
        super().__init__(f"Failed to convert {source} to {destination}: {reason}")


class MountError(StorageError):
    """Base exception for mount-related errors."""



class MountFailedError(MountError):
    """Loop-mounting an image failed."""

    def __init__(self, image_path: str, mountpoint: str, reason: str = ""):
        self.image_path = image_path
        self.mountpoint = mountpoint
        self.reason = reason
        msg = f"Failed to mount {image_path} at {mountpoint}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class UnmountFailedError(MountError):
    """Mount point is still active after all unmount attempts."""

    def __init__(self, mountpoint: str, reason: str = ""):
        self.mountpoint = mountpoint
        self.reason = reason
        msg = f"Failed to unmount {mountpoint}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class InstallError(Exception):
    """Base exception for payload installation."""



class MandatoryPayloadError(InstallError):
    """A mandatory manifest entry could not be installed."""

    def __init__(self, source: str, destination: str, reason: str):
        self.source = source
        self.destination = destination
        self.reason = reason
        super().__init__(f"Failed to install {source} -> {destination}: {reason}")


class ConfigPatchError(InstallError):
    """A configuration file could not be backed up or rewritten."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to patch {path}: {reason}")


class PreflightError(Exception):
    """Base exception for input validation before any filesystem change."""



class InvalidSourceError(PreflightError):
    """Payload source name is not valid for the translation layer."""

    def __init__(self, layer: str, source: str, valid_sources: list[str]):
        self.layer = layer
        self.source = source
        self.valid_sources = list(valid_sources)
        super().__init__(
            f"Invalid source '{source}' for {layer}. "
            f"Must be one of: {', '.join(self.valid_sources)}"
        )


class ImageNotFoundError(PreflightError):
    """A required VHDX image is missing from the working directory."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Image not found: {path}")


class PayloadNotFoundError(PreflightError):
    """The translation payload directory does not exist."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"ARM translation files not found at {path}")
