# Copyright Red Hat
#
# tests/test_autolvmb.py - Automatic LVM snapshot core tests
#
# This file is part of the autolvmb project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
import logging
from datetime import datetime

import autolvmb
from autolvmb import (
    AutolvmbConfigError,
    AutolvmbInvalidInputError,
    AutolvmbCreateError,
    AutolvmbNameConflictError,
    AutolvmbCalloutError,
    AutolvmbError,
    DecisionType,
    RetentionDecision,
    compute_size,
    eligible_snapshots,
    select_oldest,
    default_snapshot_name,
    check_lv_name,
    vg_lv_from_origin,
    size_fmt,
)

from tests import (
    TEST_LV,
    TEST_VG,
    PLAIN_ATTR,
    make_group,
    make_lv,
    make_origin,
    make_snapshots,
)

log = logging.getLogger()


class ComputeSizeTests(unittest.TestCase):
    def test_compute_size(self):
        # ((origin_size_mb, expected), ...)
        test_values = (
            (1000, 25),
            (999, 24),
            (40, 1),
            (10240, 256),
            (102400, 2560),
        )
        for origin_size, expected in test_values:
            with self.subTest(origin_size=origin_size, expected=expected):
                self.assertEqual(compute_size(origin_size), expected)

    def test_compute_size_fraction(self):
        self.assertEqual(compute_size(1000, fraction=0.1), 100)
        self.assertEqual(compute_size(1000, fraction=1), 1000)

    def test_compute_size_never_exceeds_fraction(self):
        for origin_size in range(40, 2000, 7):
            with self.subTest(origin_size=origin_size):
                size = compute_size(origin_size)
                self.assertGreater(size, 0)
                self.assertLessEqual(size, origin_size * 0.025)

    def test_compute_size_bad_origin_raises(self):
        for origin_size in (None, 0, -1024):
            with self.subTest(origin_size=origin_size):
                with self.assertRaises(AutolvmbInvalidInputError):
                    compute_size(origin_size)

    def test_compute_size_zero_result_raises(self):
        with self.assertRaises(AutolvmbInvalidInputError):
            compute_size(39)

    def test_compute_size_bad_fraction_raises(self):
        for fraction in (0, -0.5, 1.5):
            with self.subTest(fraction=fraction):
                with self.assertRaises(AutolvmbInvalidInputError):
                    compute_size(1000, fraction=fraction)


class LogicalVolumeTests(unittest.TestCase):
    def test_flags(self):
        snap = make_lv("snap0", attr="swi-aos---")
        self.assertTrue(snap.is_snapshot)
        self.assertTrue(snap.is_open)
        self.assertTrue(snap.is_active)

        plain = make_lv("plain0", attr=PLAIN_ATTR, origin="")
        self.assertFalse(plain.is_snapshot)
        self.assertFalse(plain.is_open)
        self.assertTrue(plain.is_active)

    def test_short_attr(self):
        lv = make_lv("short0", attr="s")
        self.assertTrue(lv.is_snapshot)
        self.assertFalse(lv.is_open)
        self.assertFalse(lv.is_active)

    def test_names(self):
        lv = make_lv("snap0")
        self.assertEqual(lv.full_name, f"{TEST_VG}/snap0")
        self.assertEqual(lv.devpath, f"/dev/{TEST_VG}/snap0")
        self.assertIn("snap0", str(lv))


class VolumeGroupTests(unittest.TestCase):
    def test_origin(self):
        group = make_group(make_snapshots(2))
        self.assertEqual(group.origin.name, TEST_LV)
        self.assertIsNone(make_group(make_snapshots(2), origin=False).origin)

    def test_snapshots_sorted_oldest_first(self):
        snapshots = make_snapshots(5)
        group = make_group(reversed(snapshots))
        self.assertEqual(group.snapshots, snapshots)

    def test_snapshots_exclude_other_volumes(self):
        other_origin = make_lv("other_snap", age=-5, origin="home")
        plain = make_lv("swap", attr=PLAIN_ATTR, age=-10, origin="")
        group = make_group(make_snapshots(2), extra=[other_origin, plain])
        self.assertEqual(len(group), 5)
        self.assertEqual([lv.name for lv in group.snapshots],
                         [f"{TEST_LV}_snap000", f"{TEST_LV}_snap001"])

    def test_snapshot_without_reported_origin_accepted(self):
        snap = make_lv("orphan", origin="")
        group = make_group([snap])
        self.assertTrue(group.is_origin_snapshot(snap))

    def test_is_eligible(self):
        snapshots = make_snapshots(2, open_ages=(1,))
        group = make_group(snapshots)
        self.assertTrue(group.is_eligible(snapshots[0]))
        self.assertFalse(group.is_eligible(snapshots[1]))
        self.assertFalse(group.is_eligible(group.origin))

    def test_eligible_snapshots(self):
        snapshots = make_snapshots(4, open_ages=(2,))
        group = make_group(snapshots)
        self.assertEqual(
            eligible_snapshots(group), [snapshots[0], snapshots[1], snapshots[3]]
        )


class SelectOldestTests(unittest.TestCase):
    def test_select_oldest_origin_only(self):
        self.assertIsNone(select_oldest(make_group()))

    def test_select_oldest_empty_group(self):
        self.assertIsNone(select_oldest(make_group(origin=False)))

    def test_select_oldest(self):
        snapshots = make_snapshots(10)
        group = make_group(reversed(snapshots))
        self.assertEqual(select_oldest(group), snapshots[0])

    def test_select_oldest_never_selects_origin(self):
        origin = make_origin()
        group = make_group(origin=False, extra=[origin, make_lv("swap", PLAIN_ATTR)])
        self.assertIsNone(select_oldest(group))

    def test_select_oldest_skips_non_snapshots(self):
        plain = make_lv("older", attr=PLAIN_ATTR, age=-100, origin="")
        snapshots = make_snapshots(2)
        group = make_group(snapshots, extra=[plain])
        self.assertEqual(select_oldest(group), snapshots[0])

    def test_select_oldest_open_oldest_blocks_selection(self):
        snapshots = make_snapshots(3, open_ages=(0,))
        group = make_group(snapshots)
        self.assertIsNone(select_oldest(group))

    def test_select_oldest_fallback_skips_open_snapshot(self):
        snapshots = make_snapshots(3, open_ages=(0,))
        group = make_group(snapshots)
        self.assertEqual(select_oldest(group, strict=False), snapshots[1])

    def test_select_oldest_closed_oldest(self):
        snapshots = make_snapshots(3, open_ages=(1,))
        group = make_group(snapshots)
        self.assertEqual(select_oldest(group), snapshots[0])
        self.assertEqual(select_oldest(group, strict=False), snapshots[0])

    def test_select_oldest_all_open(self):
        group = make_group(make_snapshots(3, open_ages=(0, 1, 2)))
        self.assertIsNone(select_oldest(group))

    def test_select_oldest_tie_broken_by_name(self):
        snap_b = make_lv("snap_b", age=3)
        snap_a = make_lv("snap_a", age=3)
        group = make_group([snap_b, snap_a])
        self.assertEqual(select_oldest(group), snap_a)

    def test_select_oldest_is_minimum_eligible_time(self):
        snapshots = make_snapshots(8, open_ages=(0, 3))
        group = make_group(snapshots)
        eligible = [lv for lv in snapshots if not lv.is_open]
        self.assertEqual(
            select_oldest(group, strict=False).time,
            min(lv.time for lv in eligible),
        )


class NameTests(unittest.TestCase):
    def test_default_snapshot_name(self):
        now = datetime(2024, 3, 9, 7, 5, 1)
        self.assertEqual(
            default_snapshot_name("ubuntu-lv", now=now), "ubuntu-lv_20240309_070501"
        )

    def test_default_snapshot_name_now(self):
        name = default_snapshot_name(TEST_LV)
        self.assertTrue(name.startswith(f"{TEST_LV}_"))
        check_lv_name(TEST_VG, name)

    def test_check_lv_name_valid(self):
        for name in ("root_20240101_000000", "backup.1", "a+b-c"):
            with self.subTest(name=name):
                check_lv_name(TEST_VG, name)

    def test_check_lv_name_invalid(self):
        bad_names = (
            "",
            ".",
            "..",
            "-snap",
            "snap/0",
            "snap 0",
            "snapshot0",
            "pvmove0",
            "root_tmeta",
            "x_rimage_1",
            "a" * 120,
        )
        for name in bad_names:
            with self.subTest(name=name):
                with self.assertRaises(AutolvmbConfigError):
                    check_lv_name(TEST_VG, name)

    def test_vg_lv_from_origin(self):
        self.assertEqual(vg_lv_from_origin("/dev/vg0/lv0"), ("vg0", "lv0"))
        self.assertEqual(vg_lv_from_origin("vg0/lv0"), ("vg0", "lv0"))

    def test_vg_lv_from_origin_bad(self):
        for origin in ("", "/dev/vg0", "vg0", "/dev/vg0/lv0/x", "vg0/", "/dev/mapper/vg0-lv0"):
            with self.subTest(origin=origin):
                with self.assertRaises(AutolvmbConfigError):
                    vg_lv_from_origin(origin)


class FormatTests(unittest.TestCase):
    def test_size_fmt(self):
        self.assertEqual(size_fmt(0), "0MiB")
        self.assertEqual(size_fmt(512), "512.0MiB")
        self.assertEqual(size_fmt(1024), "1.0GiB")
        self.assertEqual(size_fmt(1536), "1.5GiB")


class DecisionTests(unittest.TestCase):
    def test_no_action(self):
        decision = RetentionDecision.no_action("nothing to do")
        self.assertEqual(decision.type, DecisionType.NO_ACTION)
        self.assertEqual(decision.volumes, ())
        self.assertFalse(decision.is_removal)
        self.assertEqual(str(decision), "NoAction(): nothing to do")

    def test_remove_one(self):
        lv = make_lv("snap0")
        decision = RetentionDecision.remove_one(lv)
        self.assertEqual(decision.volumes, (lv,))
        self.assertTrue(decision.is_removal)
        self.assertEqual(str(decision), "RemoveOne(snap0)")

    def test_equality_ignores_reason(self):
        lvs = make_snapshots(2)
        self.assertEqual(
            RetentionDecision.remove_batch(lvs, "a"),
            RetentionDecision.remove_batch(lvs, "b"),
        )


class ErrorTests(unittest.TestCase):
    def test_hierarchy(self):
        self.assertTrue(issubclass(AutolvmbNameConflictError, AutolvmbCreateError))
        self.assertTrue(issubclass(AutolvmbCreateError, AutolvmbCalloutError))
        self.assertTrue(issubclass(AutolvmbCalloutError, AutolvmbError))

    def test_name_conflict_message(self):
        err = AutolvmbNameConflictError("snap0", "lvcreate: snap0 already exists")
        self.assertEqual(err.name, "snap0")
        self.assertIn("already exists", str(err))


class DebugMaskTests(unittest.TestCase):
    def tearDown(self):
        autolvmb.set_debug_mask(0)

    def test_set_debug_mask(self):
        autolvmb.set_debug_mask(autolvmb.AUTOLVMB_DEBUG_POLICY)
        self.assertEqual(autolvmb.get_debug_mask(), autolvmb.AUTOLVMB_DEBUG_POLICY)

    def test_set_debug_mask_all(self):
        autolvmb.set_debug_mask(autolvmb.AUTOLVMB_DEBUG_ALL)
        self.assertEqual(autolvmb.get_debug_mask(), autolvmb.AUTOLVMB_DEBUG_ALL)

    def test_set_debug_mask_bad_raises(self):
        for mask in (-1, autolvmb.AUTOLVMB_DEBUG_ALL + 1):
            with self.subTest(mask=mask):
                with self.assertRaises(ValueError):
                    autolvmb.set_debug_mask(mask)

    def test_subsystem_filter(self):
        filt = autolvmb.SubsystemFilter("autolvmb")
        filt.set_debug_subsystems([autolvmb.AUTOLVMB_SUBSYSTEM_POLICY])

        def record(level, subsystem=None):
            rec = logging.LogRecord("autolvmb", level, __file__, 1, "msg", (), None)
            if subsystem:
                rec.subsystem = subsystem
            return rec

        self.assertTrue(filt.filter(record(logging.INFO, "autolvmb.manager")))
        self.assertTrue(filt.filter(record(logging.DEBUG)))
        self.assertTrue(filt.filter(record(logging.DEBUG, "autolvmb.policy")))
        self.assertFalse(filt.filter(record(logging.DEBUG, "autolvmb.manager")))


class ExportTests(unittest.TestCase):
    def test_exported_names_defined(self):
        for name in autolvmb.__all__:
            with self.subTest(name=name):
                self.assertTrue(hasattr(autolvmb, name))

    def test_volume_not_found_is_query_error(self):
        err = autolvmb.AutolvmbVolumeNotFoundError("Logical volume vg0/lv0 not found")
        self.assertIsInstance(err, autolvmb.AutolvmbQueryError)
        self.assertIsInstance(err, autolvmb.AutolvmbCalloutError)
