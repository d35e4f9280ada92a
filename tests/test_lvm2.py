# Copyright Red Hat
#
# tests/test_lvm2.py - LVM2 backend unit tests
#
# This file is part of the autolvmb project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
from unittest.mock import patch
from subprocess import CalledProcessError, CompletedProcess
from datetime import datetime, timezone
from json import dumps
import logging

log = logging.getLogger()

import autolvmb.manager.backends.lvm2 as lvm2
from autolvmb import (
    AutolvmbCalloutError,
    AutolvmbQueryError,
    AutolvmbVolumeNotFoundError,
    AutolvmbNameConflictError,
    AutolvmbBackendFailureError,
    AutolvmbRemoveError,
    AutolvmbNotFoundError,
)

_LVM_VERSION_OUT = """\
  LVM version:     {version}(2) (2021-01-08)
  Library version: 1.02.175 (2021-01-08)
  Driver version:  4.48.0
"""

_LVS = [
    {
        "vg_name": "vg0",
        "lv_name": "root",
        "lv_attr": "owi-aos---",
        "origin": "",
        "lv_size": "10737418240B",
        "lv_time": "2024-01-01 00:00:00 +0000",
    },
    {
        "vg_name": "vg0",
        "lv_name": "root_20240102_000000",
        "lv_attr": "swi-a-s---",
        "origin": "root",
        "lv_size": "268435456B",
        "lv_time": "2024-01-02 00:00:00 +0000",
    },
    {
        "vg_name": "vg0",
        "lv_name": "root_20240103_000000",
        "lv_attr": "swi-aos---",
        "origin": "root",
        "lv_size": "268435456B",
        "lv_time": "2024-01-03 00:00:00 +0000",
    },
]


def _lvs_report(lvs):
    return dumps({"report": [{"lv": lvs}]}).encode("utf8")


def _completed(args, stdout=b"", returncode=0):
    return CompletedProcess(args, returncode, stdout=stdout, stderr=b"")


class FakeLvm(object):
    """
    Stand-in for ``subprocess.run`` answering LVM2 commands.
    """

    def __init__(self, version="2.03.22", lvs=None, fail=None, stderr=b""):
        self.version = version
        self.lvs = _LVS if lvs is None else lvs
        self.fail = fail or set()
        self.stderr = stderr
        self.calls = []

    def __call__(self, cmd_args, **kwargs):
        self.calls.append((cmd_args, kwargs))
        cmd = cmd_args[0]
        if cmd in self.fail:
            raise CalledProcessError(5, cmd_args, output=b"", stderr=self.stderr)
        if cmd == "lvm":
            out = _LVM_VERSION_OUT.format(version=self.version).encode("utf8")
            return _completed(cmd_args, stdout=out)
        if cmd == "lvs":
            target = cmd_args[-1]
            lvs = self.lvs
            if "/" in target and not target.startswith("/dev/"):
                vg_name, lv_name = target.split("/")
                lvs = [
                    lv for lv in lvs
                    if lv["vg_name"] == vg_name and lv["lv_name"] == lv_name
                ]
            elif target.startswith("/dev/mapper/"):
                lvs = [{"vg_name": "vg0", "lv_name": "root"}]
            return _completed(cmd_args, stdout=_lvs_report(lvs))
        if cmd == "vgs":
            report = {"report": [{"vg": [{"vg_name": "vg0"}, {"vg_name": "vg1"}]}]}
            return _completed(cmd_args, stdout=dumps(report).encode("utf8"))
        return _completed(cmd_args)


class Lvm2Tests(unittest.TestCase):
    """Test lvm2 backend functions"""

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        which_patcher = patch.object(lvm2, "which", return_value="/usr/sbin/lvm")
        self.mock_which = which_patcher.start()
        self.addCleanup(which_patcher.stop)

    def _backend(self, fake):
        with patch.object(lvm2, "run", fake):
            return lvm2.Lvm2(logging.getLogger("autolvmb.backend"))

    def _call(self, fake, method, *args, **kwargs):
        backend = self._backend(fake)
        with patch.object(lvm2, "run", fake):
            return getattr(backend, method)(*args, **kwargs)

    def test_lv_from_lv_dict(self):
        lv = lvm2.lv_from_lv_dict(_LVS[1])
        self.assertEqual(lv.vg_name, "vg0")
        self.assertEqual(lv.name, "root_20240102_000000")
        self.assertEqual(lv.size_mb, 256)
        self.assertEqual(lv.origin, "root")
        self.assertEqual(lv.time, datetime(2024, 1, 2, tzinfo=timezone.utc))
        self.assertTrue(lv.is_snapshot)
        self.assertFalse(lv.is_open)

    def test_lv_from_lv_dict_malformed(self):
        bad = dict(_LVS[0])
        bad["lv_time"] = "yesterday"
        with self.assertRaises(AutolvmbQueryError):
            lvm2.lv_from_lv_dict(bad)
        with self.assertRaises(AutolvmbQueryError):
            lvm2.lv_from_lv_dict({"vg_name": "vg0"})

    def test_lvm2_missing_commands(self):
        self.mock_which.return_value = None
        with self.assertRaises(AutolvmbNotFoundError):
            self._backend(FakeLvm())

    def test_lvm2_old_version_raises(self):
        with self.assertRaises(AutolvmbCalloutError):
            self._backend(FakeLvm(version="2.02.187"))

    def test_lvm2_version_error_raises(self):
        with self.assertRaises(AutolvmbCalloutError):
            self._backend(FakeLvm(fail={"lvm"}))

    def test_lvm2_report_format(self):
        fake = FakeLvm(version="2.03.11")
        self._call(fake, "list_volumes", "vg0")
        lvs_args = fake.calls[-1][0]
        self.assertEqual(lvs_args[0:3], ["lvs", "--reportformat", "json"])

        fake = FakeLvm(version="2.03.22")
        self._call(fake, "list_volumes", "vg0")
        lvs_args = fake.calls[-1][0]
        self.assertEqual(lvs_args[0:3], ["lvs", "--reportformat", "json_std"])

    def test_lvm2_environment(self):
        fake = FakeLvm()
        with patch.dict("os.environ", {"LVM_VG_NAME": "vg9"}):
            self._call(fake, "list_volumes", "vg0")
        env = fake.calls[-1][1]["env"]
        self.assertEqual(env["LC_ALL"], "C")
        self.assertNotIn("LVM_VG_NAME", env)

    def test_list_volumes(self):
        volumes = self._call(FakeLvm(), "list_volumes", "vg0")
        self.assertEqual([lv.name for lv in volumes],
                         ["root", "root_20240102_000000", "root_20240103_000000"])
        self.assertTrue(volumes[2].is_open)

    def test_list_volumes_error(self):
        with self.assertRaises(AutolvmbQueryError):
            self._call(FakeLvm(fail={"lvs"}, stderr=b"Volume group not found"),
                       "list_volumes", "vg9")

    def test_list_volumes_bad_json(self):
        fake = FakeLvm()

        def bad_lvs(cmd_args, **kwargs):
            if cmd_args[0] == "lvs":
                return _completed(cmd_args, stdout=b"{not json")
            return fake(cmd_args, **kwargs)

        with self.assertRaises(AutolvmbQueryError):
            self._call(bad_lvs, "list_volumes", "vg0")

    def test_get_volume(self):
        lv = self._call(FakeLvm(), "get_volume", "vg0", "root_20240103_000000")
        self.assertTrue(lv.is_open)

    def test_get_volume_not_found(self):
        fake = FakeLvm()
        with self.assertRaises(AutolvmbVolumeNotFoundError):
            self._call(fake, "get_volume", "vg0", "missing")
        self.assertEqual(fake.calls[-1][0][-1], "vg0")

    def test_get_volume_query_failure(self):
        fake = FakeLvm(fail={"lvs"}, stderr=b"Volume group vg0 is locked")
        with self.assertRaises(AutolvmbQueryError) as cm:
            self._call(fake, "get_volume", "vg0", "root_20240102_000000")
        self.assertNotIsInstance(cm.exception, AutolvmbVolumeNotFoundError)

    def test_get_size(self):
        self.assertEqual(self._call(FakeLvm(), "get_size", "vg0", "root"), 10240)

    def test_list_volume_groups(self):
        self.assertEqual(self._call(FakeLvm(), "list_volume_groups"), ["vg0", "vg1"])

    def test_vg_lv_from_device_path(self):
        self.assertEqual(
            self._call(FakeLvm(), "vg_lv_from_device_path", "/dev/mapper/vg0-root"),
            ("vg0", "root"),
        )

    def test_create_snapshot(self):
        fake = FakeLvm()
        self._call(fake, "create_snapshot", "/dev/vg0/root", "root_snap", 256)
        self.assertEqual(
            fake.calls[-1][0],
            ["lvcreate", "--snapshot", "--name", "root_snap", "--size", "256m",
             "/dev/vg0/root"],
        )

    def test_create_snapshot_name_conflict(self):
        fake = FakeLvm(
            fail={"lvcreate"},
            stderr=b'  Logical Volume "root_snap" already exists in volume group "vg0"\n',
        )
        with self.assertRaises(AutolvmbNameConflictError) as cm:
            self._call(fake, "create_snapshot", "/dev/vg0/root", "root_snap", 256)
        self.assertIn("already exists", cm.exception.stderr)

    def test_create_snapshot_failure(self):
        fake = FakeLvm(
            fail={"lvcreate"},
            stderr=b"  Volume group \"vg0\" has insufficient free space\n",
        )
        with self.assertRaises(AutolvmbBackendFailureError) as cm:
            self._call(fake, "create_snapshot", "/dev/vg0/root", "root_snap", 256)
        self.assertIn("insufficient free space", str(cm.exception))

    def test_remove_volume(self):
        fake = FakeLvm()
        self._call(fake, "remove_volume", "/dev/vg0/root_snap")
        self.assertEqual(fake.calls[-1][0], ["lvremove", "--yes", "/dev/vg0/root_snap"])

    def test_remove_volume_force(self):
        fake = FakeLvm()
        self._call(fake, "remove_volume", "/dev/vg0/root_snap", force=True)
        self.assertEqual(
            fake.calls[-1][0], ["lvremove", "--yes", "--force", "/dev/vg0/root_snap"]
        )

    def test_remove_volume_failure(self):
        fake = FakeLvm(fail={"lvremove"}, stderr=b"  Logical volume in use\n")
        with self.assertRaises(AutolvmbRemoveError) as cm:
            self._call(fake, "remove_volume", "/dev/vg0/root_snap")
        self.assertEqual(cm.exception.devpath, "/dev/vg0/root_snap")
        self.assertEqual(cm.exception.stderr, "Logical volume in use")
