# Copyright Red Hat
#
# tests/__init__.py - Automatic LVM snapshot manager test package
#
# This file is part of the autolvmb project.
#
# SPDX-License-Identifier: Apache-2.0
from datetime import datetime, timedelta, timezone
import logging
import os
import time

from autolvmb import (
    AutolvmbBackendFailureError,
    AutolvmbNameConflictError,
    AutolvmbQueryError,
    AutolvmbVolumeNotFoundError,
    AutolvmbRemoveError,
    LogicalVolume,
    VolumeGroup,
)
from autolvmb.manager.backends import Backend

log = logging.getLogger()
log.setLevel(logging.DEBUG)
formatter = logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s')
file_handler = logging.FileHandler("test.log")
file_handler.setFormatter(formatter)
console_handler = logging.StreamHandler()
console_handler.setFormatter(formatter)
log.addHandler(file_handler)
log.addHandler(console_handler)

os.environ["TZ"] = "UTC"
time.tzset()

TEST_VG = "testvg0"
TEST_LV = "root"

#: Creation time of the first snapshot built by ``make_snapshots()``
BASE_TIME = datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc)

ORIGIN_ATTR = "owi-aos---"
SNAPSHOT_ATTR = "swi-a-s---"
OPEN_SNAPSHOT_ATTR = "swi-aos---"
PLAIN_ATTR = "-wi-a-----"


class MockArgs(object):
    debug = None
    verbose = 0
    version = False
    json = False
    config = None
    device = None
    snapshot_name = None
    keep_count = None
    batch_size = None
    usage_threshold = None
    unattended = False
    dry_run = False
    no_create = False
    allow_fallback = False


def make_lv(name, attr=SNAPSHOT_ATTR, age=0, size_mb=256, origin=TEST_LV,
            vg_name=TEST_VG):
    """Return a ``LogicalVolume`` created ``age`` hours after ``BASE_TIME``."""
    return LogicalVolume(
        vg_name=vg_name,
        name=name,
        attr=attr,
        time=BASE_TIME + timedelta(hours=age),
        size_mb=size_mb,
        origin=origin,
    )


def make_origin(size_mb=10240):
    """Return the origin ``LogicalVolume`` of the test volume group."""
    return make_lv(TEST_LV, attr=ORIGIN_ATTR, age=-1, size_mb=size_mb, origin="")


def make_snapshots(count, start=0, open_ages=()):
    """
    Return ``count`` snapshots of the test origin, one hour apart, starting
    ``start`` hours after ``BASE_TIME``. Snapshots whose age is listed in
    ``open_ages`` are marked as open.
    """
    return [
        make_lv(
            f"{TEST_LV}_snap{age:03d}",
            attr=OPEN_SNAPSHOT_ATTR if age in open_ages else SNAPSHOT_ATTR,
            age=age,
        )
        for age in range(start, start + count)
    ]


def make_group(snapshots=(), extra=(), origin=True):
    """Return a ``VolumeGroup`` holding the origin, ``snapshots`` and ``extra``."""
    volumes = ([make_origin()] if origin else []) + list(snapshots) + list(extra)
    return VolumeGroup(TEST_VG, TEST_LV, tuple(volumes))


class MockBackend(Backend):
    """
    In-memory backend holding one volume group.
    """

    def __init__(self, volumes=(), vg_name=TEST_VG):
        super().__init__(logging.getLogger("autolvmb.backend.mock"))
        self.vg_name = vg_name
        self.volumes = {lv.name: lv for lv in volumes}
        self.created = []
        self.removed = []
        self.fail_query = False
        self.fail_create = None
        self.fail_remove = set()
        self.now = BASE_TIME + timedelta(days=365)

    def _check_query(self):
        if self.fail_query:
            raise AutolvmbQueryError("mock query failure")

    def list_volumes(self, vg_name):
        self._check_query()
        if vg_name != self.vg_name:
            raise AutolvmbQueryError(f"Volume group {vg_name} not found")
        return list(self.volumes.values())

    def get_volume(self, vg_name, lv_name):
        self._check_query()
        if vg_name != self.vg_name or lv_name not in self.volumes:
            raise AutolvmbVolumeNotFoundError(
                f"Logical volume {vg_name}/{lv_name} not found"
            )
        return self.volumes[lv_name]

    def get_size(self, vg_name, lv_name):
        return self.get_volume(vg_name, lv_name).size_mb

    def create_snapshot(self, origin, name, size_mb):
        if self.fail_create:
            raise AutolvmbBackendFailureError(name, self.fail_create)
        if name in self.volumes:
            raise AutolvmbNameConflictError(name, "already exists")
        origin_name = origin.rsplit("/", 1)[-1]
        self.volumes[name] = LogicalVolume(
            self.vg_name, name, SNAPSHOT_ATTR, self.now, size_mb, origin_name
        )
        self.created.append((origin, name, size_mb))

    def remove_volume(self, devpath, force=False):
        name = devpath.rsplit("/", 1)[-1]
        if name in self.fail_remove or name not in self.volumes:
            raise AutolvmbRemoveError(devpath, "mock remove failure")
        del self.volumes[name]
        self.removed.append(name)

    def list_volume_groups(self):
        return [self.vg_name]

    def vg_lv_from_device_path(self, devpath):
        name = devpath.rsplit("/", 1)[-1]
        vg_name, lv_name = name.split("-", maxsplit=1)
        return (vg_name, lv_name)


class ScriptedConfirm(object):
    """
    Confirmation gate returning pre-set answers and recording prompts.
    """

    def __init__(self, *answers, default=True):
        self.answers = list(answers)
        self.default = default
        self.prompts = []

    def confirm(self, prompt):
        self.prompts.append(prompt)
        if self.answers:
            return self.answers.pop(0)
        return self.default
