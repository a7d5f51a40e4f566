"""Tests for services/planner.py - pre-mount targets and the free-space check."""

from collections import namedtuple
from unittest.mock import Mock

import pytest
from conftest import make_raw_image, write_file

from wsa_arm.config.settings import PipelineConfig
from wsa_arm.domain.models import (
    MIB,
    InstallManifest,
    ManifestEntry,
    Partition,
    PayloadSource,
    TranslationLayer,
    mib_to_sectors,
)
from wsa_arm.services import planner
from wsa_arm.storage.mount import MountSession


DiskUsage = namedtuple("DiskUsage", ["total", "used", "free"])


@pytest.fixture
def config():
    return PipelineConfig()


class TestPlanSystem:
    def test_triples_apparent_size(self, system_image, config):
        plan = planner.plan_system(system_image, config)

        assert plan.partition is Partition.SYSTEM
        assert plan.current_sectors == mib_to_sectors(16)
        assert plan.target_sectors == mib_to_sectors(48)
        assert plan.budget_sectors == mib_to_sectors(32)

    def test_growth_factor_is_configurable(self, system_image):
        plan = planner.plan_system(system_image, PipelineConfig(system_growth_factor=2))

        assert plan.target_sectors == mib_to_sectors(32)


class TestPlanVendor:
    def test_houdini_on_one_gib_vendor(self, tmp_path, config):
        image = make_raw_image(tmp_path / "vendor.img", 1024 * MIB, Partition.VENDOR)

        plan = planner.plan_vendor(image, TranslationLayer.HOUDINI, config)

        assert plan.target_sectors == mib_to_sectors(1024 + 600)
        assert plan.target_bytes == 1624 * MIB

    def test_ndk_budget(self, vendor_image, config):
        plan = planner.plan_vendor(vendor_image, TranslationLayer.NDK, config)

        assert plan.target_sectors == mib_to_sectors(8 + 600 + 200)

    def test_target_never_below_current(self, vendor_image):
        plan = planner.plan_vendor(
            vendor_image,
            TranslationLayer.HOUDINI,
            PipelineConfig(houdini_budget_mib=0, vendor_buffer_mib=0),
        )

        assert plan.target_sectors == plan.current_sectors


class TestEstimatePayloadBytes:
    def test_sums_sources_per_partition(self, tmp_path):
        payload = tmp_path / "payload"
        write_file(payload / "lib" / "a.so", "x" * 100)
        write_file(payload / "lib" / "sub" / "b.so", "y" * 50)
        write_file(payload / "bin" / "tool", "z" * 10)
        source = PayloadSource(TranslationLayer.HOUDINI, "chromeos_volteer")
        manifest = InstallManifest(
            source,
            (
                ManifestEntry("lib", "lib", Partition.VENDOR, "label"),
                ManifestEntry("bin/tool", "bin/tool", Partition.SYSTEM, "label"),
                ManifestEntry("missing", "missing", Partition.VENDOR, "label", mandatory=False),
            ),
        )

        assert planner.estimate_payload_bytes(manifest, payload, Partition.VENDOR) == 150
        assert planner.estimate_payload_bytes(manifest, payload, Partition.SYSTEM) == 10


class TestRequiredFreeBytes:
    def test_minimum_floor(self, config):
        assert planner.required_free_bytes(10 * MIB, config) == 400 * MIB

    def test_estimate_above_floor(self, config):
        assert planner.required_free_bytes(500 * MIB, config) == 500 * MIB


class TestEnsureVendorCapacity:
    @pytest.fixture
    def session(self, vendor_image, tmp_path):
        session = Mock(spec=MountSession)
        session.image = vendor_image
        session.mountpoint = tmp_path / "mnt" / "vendor"
        return session

    @pytest.fixture
    def plan(self, vendor_image, config):
        return planner.plan_vendor(vendor_image, TranslationLayer.HOUDINI, config)

    def test_enough_space_keeps_plan(self, mocker, session, plan, config):
        mocker.patch(
            "wsa_arm.services.planner.shutil.disk_usage",
            return_value=DiskUsage(1000 * MIB, 0, 500 * MIB),
        )
        grow = mocker.patch("wsa_arm.services.planner.resize.grow")

        assert planner.ensure_vendor_capacity(session, plan, 0, config) is plan
        grow.assert_not_called()
        session.release.assert_not_called()

    def test_expands_once_by_increment(self, mocker, session, plan, config):
        mocker.patch(
            "wsa_arm.services.planner.shutil.disk_usage",
            return_value=DiskUsage(1000 * MIB, 0, 350 * MIB),
        )
        grow = mocker.patch("wsa_arm.services.planner.resize.grow")

        expanded = planner.ensure_vendor_capacity(session, plan, 0, config)

        assert expanded.expansions == 1
        assert expanded.target_sectors == plan.target_sectors + mib_to_sectors(300)
        assert expanded.planned_sectors == plan.target_sectors
        grow.assert_called_once_with(session.image, expanded.target_sectors)
        session.release.assert_called_once_with()
        session.mount.assert_called_once_with()

    def test_expands_by_shortfall_when_larger(self, mocker, session, plan, config):
        mocker.patch(
            "wsa_arm.services.planner.shutil.disk_usage",
            return_value=DiskUsage(1000 * MIB, 0, 0),
        )
        mocker.patch("wsa_arm.services.planner.resize.grow")

        expanded = planner.ensure_vendor_capacity(session, plan, 700 * MIB, config)

        assert expanded.target_sectors == plan.target_sectors + mib_to_sectors(700)

    def test_second_shortfall_only_warns(self, mocker, session, plan, config):
        mocker.patch(
            "wsa_arm.services.planner.shutil.disk_usage",
            return_value=DiskUsage(1000 * MIB, 0, 0),
        )
        grow = mocker.patch("wsa_arm.services.planner.resize.grow")
        already = plan.expanded(mib_to_sectors(300))

        assert planner.ensure_vendor_capacity(session, already, 0, config) is already
        grow.assert_not_called()
