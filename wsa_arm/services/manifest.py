"""Install manifests for each translation layer and payload source."""

from __future__ import annotations

from wsa_arm.domain.models import (
    SHELL_GID,
    InstallManifest,
    ManifestEntry,
    Partition,
    PayloadSource,
    TranslationLayer,
)


SYSTEM = Partition.SYSTEM
VENDOR = Partition.VENDOR

SYSTEM_FILE = "u:object_r:system_file:s0"
SYSTEM_LIB_FILE = "u:object_r:system_lib_file:s0"
VENDOR_FILE = "u:object_r:vendor_file:s0"
VENDOR_CONFIGS_FILE = "u:object_r:vendor_configs_file:s0"
SAME_PROCESS_HAL_FILE = "u:object_r:same_process_hal_file:s0"

HOUDINI_BINFMT_DESCRIPTORS = ("arm64_dyn", "arm64_exe", "arm_dyn", "arm_exe")

NDK_PROXY_LIBRARIES = (
    "libndk_translation_exec_region.so",
    "libndk_translation_proxy_libaaudio.so",
    "libndk_translation_proxy_libamidi.so",
    "libndk_translation_proxy_libandroid_runtime.so",
    "libndk_translation_proxy_libandroid.so",
    "libndk_translation_proxy_libbinder_ndk.so",
    "libndk_translation_proxy_libc.so",
    "libndk_translation_proxy_libcamera2ndk.so",
    "libndk_translation_proxy_libEGL.so",
    "libndk_translation_proxy_libGLESv1_CM.so",
    "libndk_translation_proxy_libGLESv2.so",
    "libndk_translation_proxy_libGLESv3.so",
    "libndk_translation_proxy_libjnigraphics.so",
    "libndk_translation_proxy_libmediandk.so",
    "libndk_translation_proxy_libnativehelper.so",
    "libndk_translation_proxy_libnativewindow.so",
    "libndk_translation_proxy_libneuralnetworks.so",
    "libndk_translation_proxy_libOpenMAXAL.so",
    "libndk_translation_proxy_libOpenSLES.so",
    "libndk_translation_proxy_libvulkan.so",
    "libndk_translation_proxy_libwebviewchromium_plat_support.so",
)
NDK_MAIN_LIBRARY = "libndk_translation.so"
NDK_RUNNERS = (
    "ndk_translation_program_runner_binfmt_misc",
    "ndk_translation_program_runner_binfmt_misc_arm64",
)
NDK_CONFIG_FILES = (
    "ld.config.arm.txt",
    "ld.config.arm64.txt",
    "cpuinfo.arm.txt",
    "cpuinfo.arm64.txt",
)


def _houdini_entries(source: PayloadSource) -> list[ManifestEntry]:
    entries = [
        ManifestEntry(
            f"etc/binfmt_misc/{name}",
            f"etc/binfmt_misc/{name}",
            VENDOR,
            VENDOR_CONFIGS_FILE,
        )
        for name in HOUDINI_BINFMT_DESCRIPTORS
    ]

    libraries = ["libhoudini.so"]
    if source.is_bluestacks:
        libraries.append("libnb.so")
    for lib_dir in ("lib", "lib64"):
        entries.extend(
            ManifestEntry(
                f"{lib_dir}/{library}",
                f"{lib_dir}/{library}",
                VENDOR,
                SAME_PROCESS_HAL_FILE,
            )
            for library in libraries
        )

    for partition, label in ((VENDOR, SAME_PROCESS_HAL_FILE), (SYSTEM, SYSTEM_FILE)):
        entries.extend(
            ManifestEntry(
                f"bin/{binary}",
                f"bin/{binary}",
                partition,
                label,
                gid=SHELL_GID,
                file_mode=0o755,
            )
            for binary in ("houdini", "houdini64")
        )

    for arch_dir in ("lib/arm", "lib64/arm64"):
        entries.append(
            ManifestEntry(
                arch_dir,
                arch_dir,
                VENDOR,
                SAME_PROCESS_HAL_FILE,
                mandatory=False,
                contents_only=True,
            )
        )
    return entries


def _ndk_entries(partition: Partition) -> list[ManifestEntry]:
    on_system = partition is SYSTEM
    runner_label = SYSTEM_FILE if on_system else SAME_PROCESS_HAL_FILE
    arch_bin_label = SYSTEM_FILE if on_system else VENDOR_FILE
    config_label = SYSTEM_FILE if on_system else VENDOR_CONFIGS_FILE
    library_label = SYSTEM_LIB_FILE if on_system else SAME_PROCESS_HAL_FILE

    entries = [
        ManifestEntry(
            f"bin/{runner}",
            f"bin/{runner}",
            partition,
            runner_label,
            gid=SHELL_GID,
            file_mode=0o755,
        )
        for runner in NDK_RUNNERS
    ]
    entries.extend(
        ManifestEntry(
            arch_bin,
            arch_bin,
            partition,
            arch_bin_label,
            gid=SHELL_GID,
            file_mode=0o755,
            dir_mode=0o751,
        )
        for arch_bin in ("bin/arm", "bin/arm64")
    )
    entries.append(
        ManifestEntry(
            "etc/binfmt_misc",
            "etc/binfmt_misc",
            partition,
            config_label,
            dir_gid=None if on_system else SHELL_GID,
        )
    )
    if on_system:
        entries.append(
            ManifestEntry(
                "etc/init/ndk_translation.rc",
                "etc/init/ndk_translation.rc",
                partition,
                SYSTEM_FILE,
            )
        )
    entries.extend(
        ManifestEntry(f"etc/{name}", f"etc/{name}", partition, config_label)
        for name in NDK_CONFIG_FILES
    )
    entries.append(
        ManifestEntry(
            "lib/arm",
            "lib/arm",
            partition,
            SYSTEM_FILE if on_system else SAME_PROCESS_HAL_FILE,
            mandatory=False,
        )
    )
    entries.append(
        ManifestEntry(
            "lib64/arm64",
            "lib64/arm64",
            partition,
            library_label,
            mandatory=False,
        )
    )
    for lib_dir in ("lib", "lib64"):
        entries.extend(
            ManifestEntry(
                f"{lib_dir}/{library}",
                f"{lib_dir}/{library}",
                partition,
                library_label,
                mandatory=False,
            )
            for library in NDK_PROXY_LIBRARIES
        )
        entries.append(
            ManifestEntry(
                f"{lib_dir}/{NDK_MAIN_LIBRARY}",
                f"{lib_dir}/{NDK_MAIN_LIBRARY}",
                partition,
                library_label,
            )
        )
    return entries


def build_manifest(source: PayloadSource) -> InstallManifest:
    """Return the install manifest for ``source``."""
    if source.layer is TranslationLayer.NDK:
        entries = _ndk_entries(SYSTEM) + _ndk_entries(VENDOR)
    else:
        entries = _houdini_entries(source)
    return InstallManifest(source=source, entries=tuple(entries))


def manifests_for_layer(layer: TranslationLayer) -> list[InstallManifest]:
    """Every manifest a layer can install, across all of its sources."""
    return [build_manifest(PayloadSource(layer, name)) for name in layer.valid_sources]


def foreign_destinations(layer: TranslationLayer) -> dict[Partition, set[str]]:
    """Destinations owned by the layer that is *not* ``layer``.

    Paths shared by both layers (``etc/binfmt_misc`` and the ``lib/arm``
    style directories) are included; the installer removes them before it
    copies its own versions.
    """
    destinations: dict[Partition, set[str]] = {SYSTEM: set(), VENDOR: set()}
    for manifest in manifests_for_layer(layer.other):
        for partition in Partition:
            destinations[partition] |= manifest.destinations(partition)
    # Removal covers both partitions regardless of where the other layer installs.
    union = destinations[SYSTEM] | destinations[VENDOR]
    return {SYSTEM: set(union), VENDOR: set(union)}
