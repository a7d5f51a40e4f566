"""End-to-end provisioning run: convert, size, unshare, mount, install, finalize.

The pipeline owns every temporary resource it creates (raw images, mount
points, the archive working folder) and cleans them up on failure. The
original VHDX files are only replaced by a successful conversion.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Optional

from wsa_arm.config.settings import PipelineConfig
from wsa_arm.domain.models import (
    ContainerFormat,
    DiskImage,
    InstallJob,
    Partition,
    SizePlan,
)
from wsa_arm.logging import LoggerFactory, operation_context
from wsa_arm.services.archive import create_archive
from wsa_arm.services.finalizer import Finalizer
from wsa_arm.services.installer import PayloadInstaller
from wsa_arm.services.planner import (
    ensure_vendor_capacity,
    estimate_payload_bytes,
    plan_system,
    plan_vendor,
)
from wsa_arm.storage import convert, unshare
from wsa_arm.storage.commands import require_tool
from wsa_arm.storage.exceptions import CommandError, PreflightError
from wsa_arm.storage.mount import is_mounted, mount_images


REQUIRED_TOOLS = (
    "qemu-img",
    "e2fsck",
    "resize2fs",
    "dumpe2fs",
    "mount",
    "umount",
    "file",
    "sync",
)


class InstallPipeline:
    """Runs a single :class:`InstallJob`."""

    def __init__(self, job: InstallJob, config: PipelineConfig, job_id: Optional[str] = None):
        self.job = job
        self.config = config
        self.log = LoggerFactory.for_pipeline(job_id)
        self.images: dict[Partition, DiskImage] = {}
        self.plans: dict[Partition, SizePlan] = {}

    @property
    def work_dir(self) -> Path:
        return self.job.work_dir

    @property
    def mount_base(self) -> Path:
        return self.work_dir / self.config.mount_dir_name

    def container_path(self, partition: Partition) -> Path:
        return self.work_dir / f"{partition.value}.{ContainerFormat.VHDX.value}"

    def raw_path(self, partition: Partition) -> Path:
        return self.work_dir / f"{partition.value}.img"

    def preflight(self) -> None:
        """Validate inputs and host tools before touching any image.

        Raises:
            PreflightError: If inputs, tools or privileges are missing
        """
        self.job.validate()
        tools = list(REQUIRED_TOOLS)
        if self.job.archive_name:
            tools.append("7z")
        for tool in tools:
            try:
                require_tool(tool)
            except CommandError:
                raise PreflightError(f"Required tool not found: {tool}") from None
        if os.geteuid() != 0:
            raise PreflightError("Mounting images requires root privileges")
        for partition in Partition:
            container = self.job.directory / f"{partition.value}.vhdx"
            detected = convert.probe_format(container)
            if detected != ContainerFormat.VHDX.value:
                raise PreflightError(f"{container} is {detected}, expected vhdx")

    def prepare_work_dir(self) -> None:
        if not self.job.archive_name:
            return
        self.log.info(f"Creating working directory: {self.work_dir}")
        self.work_dir.mkdir(parents=True, exist_ok=True)
        for partition in Partition:
            source = self.job.directory / f"{partition.value}.vhdx"
            shutil.copy2(source, self.container_path(partition))

    def convert_to_raw(self) -> None:
        with operation_context("convert", work_dir=str(self.work_dir)):
            for partition in Partition:
                self.images[partition] = convert.to_raw(
                    self.container_path(partition), self.raw_path(partition), partition
                )

    def plan_and_materialize(self) -> None:
        system = self.images[Partition.SYSTEM]
        vendor = self.images[Partition.VENDOR]
        with operation_context("plan"):
            self.plans[Partition.SYSTEM] = plan_system(system, self.config)
            self.plans[Partition.VENDOR] = plan_vendor(vendor, self.job.layer, self.config)
        with operation_context("unshare"):
            for partition, image in self.images.items():
                unshare.materialize(image, self.plans[partition].target_sectors)

    def install_and_finalize(self) -> None:
        installer = PayloadInstaller(self.job.source, self.job.payload_dir)
        estimate = estimate_payload_bytes(
            installer.manifest, self.job.payload_dir, Partition.VENDOR
        )
        with mount_images(
            self.images[Partition.SYSTEM], self.images[Partition.VENDOR], self.mount_base
        ) as (system_session, vendor_session):
            self.plans[Partition.VENDOR] = ensure_vendor_capacity(
                vendor_session, self.plans[Partition.VENDOR], estimate, self.config
            )
            with operation_context("install", layer=self.job.layer.value, source=self.job.source.name):
                installer.install(system_session.root, vendor_session.root)
            with operation_context("finalize"):
                Finalizer(self.config).finalize(
                    {Partition.SYSTEM: system_session, Partition.VENDOR: vendor_session},
                    {partition: self.container_path(partition) for partition in Partition},
                    self.plans,
                )

    def remove_mount_base(self) -> None:
        if not self.mount_base.exists():
            return
        still_mounted = [
            path for path in (self.mount_base / p.value for p in Partition) if is_mounted(path)
        ]
        if still_mounted:
            self.log.error(
                f"Leaving {self.mount_base} in place, still mounted: "
                f"{', '.join(str(path) for path in still_mounted)}"
            )
            return
        shutil.rmtree(self.mount_base, ignore_errors=True)

    def cleanup_on_error(self) -> None:
        self.log.warning("Performing cleanup...")
        self.remove_mount_base()
        if self.config.keep_intermediates_on_error:
            return
        for partition in Partition:
            raw = self.raw_path(partition)
            if raw.exists():
                raw.unlink()
                self.log.debug(f"Removed intermediate {raw.name}")

    def run(self) -> Path:
        """Run the whole job and return the output directory or archive.

        Raises:
            PreflightError: If validation fails (nothing is touched)
            StorageError: If an image operation fails
            InstallError: If the payload or config patches fail
        """
        self.log.info(
            f"Starting {self.job.layer.value} installation from {self.job.source.name} "
            f"in {self.job.directory}"
        )
        self.preflight()
        try:
            self.prepare_work_dir()
            self.convert_to_raw()
            self.plan_and_materialize()
            self.install_and_finalize()
        except BaseException:
            self.cleanup_on_error()
            raise
        self.remove_mount_base()

        if self.job.archive_name:
            with operation_context("archive", name=self.job.archive_name):
                archive = create_archive(
                    self.job.directory, self.job.source.name, self.job.archive_name
                )
            self.log.success(f"Archive created: {archive}")
            return archive
        self.log.success(f"Processed images are available at: {self.work_dir}")
        return self.work_dir
