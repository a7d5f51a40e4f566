"""Settings storage and the immutable pipeline configuration built from it."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from wsa_arm.domain.models import ShrinkPolicy, TranslationLayer


SETTINGS_PATH = Path(
    os.environ.get(
        "WSA_ARM_SETTINGS_PATH",
        Path.home() / ".config" / "wsa-arm" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_SYSTEM_GROWTH_FACTOR = 3
DEFAULT_HOUDINI_BUDGET_MIB = 400
DEFAULT_NDK_BUDGET_MIB = 600
DEFAULT_VENDOR_BUFFER_MIB = 200
DEFAULT_MIN_VENDOR_FREE_MIB = 400
DEFAULT_VENDOR_EXTRA_INCREMENT_MIB = 300
DEFAULT_FINAL_VENDOR_BUFFER_MIB = 100
DEFAULT_TIMESTAMP_EPOCH = "2009-01-01T00:00:00"

DEFAULT_SETTINGS: dict[str, Any] = {
    "system_growth_factor": DEFAULT_SYSTEM_GROWTH_FACTOR,
    "houdini_budget_mib": DEFAULT_HOUDINI_BUDGET_MIB,
    "ndk_budget_mib": DEFAULT_NDK_BUDGET_MIB,
    "vendor_buffer_mib": DEFAULT_VENDOR_BUFFER_MIB,
    "min_vendor_free_mib": DEFAULT_MIN_VENDOR_FREE_MIB,
    "vendor_extra_increment_mib": DEFAULT_VENDOR_EXTRA_INCREMENT_MIB,
    "final_vendor_buffer_mib": DEFAULT_FINAL_VENDOR_BUFFER_MIB,
    "vendor_shrink_policy": ShrinkPolicy.BUFFER.value,
    "timestamp_epoch": DEFAULT_TIMESTAMP_EPOCH,
    "vhdx_subformat": "dynamic",
    "keep_intermediates_on_error": False,
    "mount_dir_name": "mount_temp",
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


@dataclass(frozen=True)
class PipelineConfig:
    """Configuration shared by every pipeline component.

    Built once per run from the settings store and CLI overrides; components
    receive it explicitly instead of reading globals.
    """

    system_growth_factor: int = DEFAULT_SYSTEM_GROWTH_FACTOR
    houdini_budget_mib: int = DEFAULT_HOUDINI_BUDGET_MIB
    ndk_budget_mib: int = DEFAULT_NDK_BUDGET_MIB
    vendor_buffer_mib: int = DEFAULT_VENDOR_BUFFER_MIB
    min_vendor_free_mib: int = DEFAULT_MIN_VENDOR_FREE_MIB
    vendor_extra_increment_mib: int = DEFAULT_VENDOR_EXTRA_INCREMENT_MIB
    final_vendor_buffer_mib: int = DEFAULT_FINAL_VENDOR_BUFFER_MIB
    vendor_shrink_policy: ShrinkPolicy = ShrinkPolicy.BUFFER
    timestamp_epoch: datetime = datetime.fromisoformat(DEFAULT_TIMESTAMP_EPOCH)
    vhdx_subformat: str = "dynamic"
    keep_intermediates_on_error: bool = False
    mount_dir_name: str = "mount_temp"

    def payload_budget_mib(self, layer: TranslationLayer) -> int:
        if layer is TranslationLayer.NDK:
            return self.ndk_budget_mib
        return self.houdini_budget_mib

    @classmethod
    def from_settings(cls, **overrides: Any) -> PipelineConfig:
        """Freeze the current settings, with non-None overrides applied on top."""
        values = dict(DEFAULT_SETTINGS)
        values.update(settings_store.values)
        values.update({key: value for key, value in overrides.items() if value is not None})
        policy = values["vendor_shrink_policy"]
        epoch = values["timestamp_epoch"]
        return cls(
            system_growth_factor=int(values["system_growth_factor"]),
            houdini_budget_mib=int(values["houdini_budget_mib"]),
            ndk_budget_mib=int(values["ndk_budget_mib"]),
            vendor_buffer_mib=int(values["vendor_buffer_mib"]),
            min_vendor_free_mib=int(values["min_vendor_free_mib"]),
            vendor_extra_increment_mib=int(values["vendor_extra_increment_mib"]),
            final_vendor_buffer_mib=int(values["final_vendor_buffer_mib"]),
            vendor_shrink_policy=(
                policy if isinstance(policy, ShrinkPolicy) else ShrinkPolicy(policy)
            ),
            timestamp_epoch=(
                epoch if isinstance(epoch, datetime) else datetime.fromisoformat(epoch)
            ),
            vhdx_subformat=str(values["vhdx_subformat"]),
            keep_intermediates_on_error=bool(values["keep_intermediates_on_error"]),
            mount_dir_name=str(values["mount_dir_name"]),
        )


load_settings()
