# Copyright Red Hat
#
# autolvmb/manager/_manager.py - Automatic LVM snapshot manager
#
# This file is part of the autolvmb project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Snapshot creation and retention manager.
"""
from dataclasses import dataclass, field
from typing import List, Optional
import logging

from autolvmb import (
    AUTOLVMB_SUBSYSTEM_MANAGER,
    DEV_MAPPER_PREFIX,
    AutolvmbError,
    AutolvmbQueryError,
    AutolvmbVolumeNotFoundError,
    AutolvmbInvalidInputError,
    AutolvmbCreateError,
    AutolvmbNameConflictError,
    AutolvmbRemoveError,
    DecisionType,
    LogicalVolume,
    RetentionDecision,
    SnapshotRequest,
    VolumeGroup,
    check_lv_name,
    compute_size,
    default_snapshot_name,
    size_fmt,
    vg_lv_from_origin,
)

from ._config import AutolvmbConfig
from ._confirm import Confirm, InteractiveConfirm, UnattendedConfirm
from ._lock import with_run_lock
from ._policy import RetentionPolicy
from ._signals import mutation_signals_blocked
from .backends import space_used_percent

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_manager(msg, *args, **kwargs):
    """A wrapper for manager subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": AUTOLVMB_SUBSYSTEM_MANAGER}, **kwargs)


def _plural(count):
    return "s" if count != 1 else ""


@dataclass
class RunResult:
    """
    The outcome of one ``Manager.run()``.
    """

    #: Name of the snapshot created by this run, or ``None``.
    created: Optional[str] = None
    #: The retention decision acted on, or ``None`` if retention did not run.
    decision: Optional[RetentionDecision] = None
    #: Names of snapshots removed by this run.
    removed: List[str] = field(default_factory=list)
    #: Names of snapshots whose removal failed.
    failed: List[str] = field(default_factory=list)
    #: Names of snapshots skipped at removal time or by the user.
    skipped: List[str] = field(default_factory=list)
    #: Fatal errors encountered during the run.
    errors: List[AutolvmbError] = field(default_factory=list)

    @property
    def status(self):
        """
        The exit status for this run: 0 on success or 1 if any fatal
        error occurred.
        """
        return 1 if self.errors else 0


class Manager:
    """
    Snapshot Manager high level interface.

    The ``Manager`` creates a snapshot of the configured origin volume and
    applies the ``RetentionPolicy`` to the volume group. Every phase reads
    the volume group inventory from the backend afresh.
    """

    def __init__(
        self,
        config: Optional[AutolvmbConfig] = None,
        backend=None,
        confirm: Optional[Confirm] = None,
        device: Optional[str] = None,
        lock_dir: Optional[str] = None,
    ):
        """
        Initialise a new ``Manager``.

        :param config: The configuration to use. Loaded from the default
                       configuration file if ``None``.
        :param backend: The volume management backend. Defaults to ``Lvm2``.
        :param confirm: The confirmation gate. Chosen from the configured
                        ``unattended`` value if ``None``.
        :param device: An origin device path overriding the configured
                       volume group and logical volume.
        :param lock_dir: Directory holding the run lock, or ``None`` to run
                         without locking.
        """
        self.config = config if config is not None else AutolvmbConfig.from_file()
        if backend is None:
            # pylint: disable=import-outside-toplevel
            from .backends.lvm2 import Lvm2

            backend = Lvm2(logging.getLogger("autolvmb.backend"))
        self.backend = backend
        if confirm is None:
            confirm = (
                UnattendedConfirm() if self.config.unattended else InteractiveConfirm()
            )
        self.confirm = confirm
        self.policy = RetentionPolicy(
            usage_threshold=self.config.usage_threshold,
            count_threshold=self.config.count_threshold,
            batch_size=self.config.batch_size,
            strict=self.config.strict_oldest,
        )
        self._lock_dir = lock_dir
        (self.vg_name, self.lv_name) = self._resolve_origin(device)
        _log_debug_manager(
            "Initialised Manager for %s/%s with policy %s",
            self.vg_name,
            self.lv_name,
            self.policy,
        )

    def _resolve_origin(self, device):
        """
        Return the ``(vg_name, lv_name)`` of the origin volume.
        """
        if device is None:
            return (self.config.vg_name, self.config.lv_name)
        if device.startswith(DEV_MAPPER_PREFIX):
            return self.backend.vg_lv_from_device_path(device)
        return vg_lv_from_origin(device)

    @property
    def origin(self):
        """
        The ``/dev/<vg>/<lv>`` path of the origin volume.
        """
        return f"/dev/{self.vg_name}/{self.lv_name}"

    def read_group(self) -> VolumeGroup:
        """
        Read the current inventory of the origin's volume group.

        :returns: A new ``VolumeGroup``.
        :raises: ``AutolvmbQueryError`` if the backend query fails.
        """
        volumes = self.backend.list_volumes(self.vg_name)
        group = VolumeGroup(self.vg_name, self.lv_name, tuple(volumes))
        _log_debug_manager(
            "Read %d logical volume%s from %s",
            len(group),
            _plural(len(group)),
            self.vg_name,
        )
        return group

    def used_space_percent(self) -> int:
        """
        Return the used space percentage of the configured usage path.
        """
        percent = space_used_percent(self.config.usage_path)
        _log_debug_manager("Used space on %s: %d%%", self.config.usage_path, percent)
        return percent

    def build_request(self, name: Optional[str] = None, now=None) -> SnapshotRequest:
        """
        Build a ``SnapshotRequest`` for a new snapshot of the origin.

        :param name: An optional snapshot name overriding the generated
                     time-stamped name.
        :param now: An optional ``datetime`` used for the generated name.
        :returns: A new ``SnapshotRequest``.
        :raises: ``AutolvmbConfigError`` if ``name`` is invalid,
                 ``AutolvmbQueryError`` if the origin size cannot be read
                 or ``AutolvmbInvalidInputError`` if it cannot be sized.
        """
        name = name or default_snapshot_name(self.lv_name, now=now)
        check_lv_name(self.vg_name, name)
        origin_size = self.backend.get_size(self.vg_name, self.lv_name)
        size_mb = compute_size(origin_size, self.config.size_fraction)
        _log_info(
            "Snapshot size set to %dM (%s of %s)",
            size_mb,
            f"{self.config.size_fraction * 100:g}%",
            size_fmt(origin_size),
        )
        return SnapshotRequest(name=name, size_mb=size_mb, origin=self.origin)

    def _create(self, request: SnapshotRequest, group: VolumeGroup):
        """
        Create the snapshot described by ``request``.
        """
        if any(lv.name == request.name for lv in group.volumes):
            raise AutolvmbNameConflictError(f"{self.vg_name}/{request.name}")
        with mutation_signals_blocked(f"create {request.name}"):
            self.backend.create_snapshot(request.origin, request.name, request.size_mb)

    def create_snapshot(
        self, name: Optional[str] = None, dry_run=False, now=None
    ) -> Optional[str]:
        """
        Create a new snapshot of the origin volume, asking for confirmation
        first.

        :param name: An optional snapshot name.
        :param dry_run: Log the snapshot that would be created without
                        creating it.
        :param now: An optional ``datetime`` used for the generated name.
        :returns: The new snapshot name, or ``None`` if creation was
                  declined or skipped.
        :raises: ``AutolvmbQueryError`` or ``AutolvmbInvalidInputError`` if
                 the snapshot cannot be prepared, ``AutolvmbCreateError``
                 if it cannot be created.
        """
        if name is not None:
            check_lv_name(self.vg_name, name)

        if not dry_run and not self.confirm.confirm(
            "Are you sure you want to create a snapshot?"
        ):
            _log_info("Snapshot creation declined: continuing without a snapshot")
            return None

        request = self.build_request(name=name, now=now)
        group = self.read_group()

        if dry_run:
            _log_info(
                "Would create %dMiB snapshot %s of %s",
                request.size_mb,
                request.name,
                request.origin,
            )
            return None

        self._create(request, group)
        _log_info("Snapshot created: %s/%s", self.vg_name, request.name)
        return request.name

    def plan(self, group: Optional[VolumeGroup] = None, used_percent=None):
        """
        Evaluate the retention policy against the current state of the
        volume group without changing anything.

        :param group: An inventory to evaluate; read from the backend if
                      ``None``.
        :param used_percent: The used space percentage; read from the
                             configured usage path if ``None``.
        :returns: A ``RetentionDecision``.
        """
        group = group if group is not None else self.read_group()
        used_percent = (
            used_percent if used_percent is not None else self.used_space_percent()
        )
        decision = self.policy.evaluate(group, used_percent)
        _log_info("Retention decision for %s: %s", self.origin, decision)
        return decision

    def _recheck(self, lv: LogicalVolume) -> Optional[LogicalVolume]:
        """
        Re-read ``lv`` from the backend immediately before removal and
        return the current state if it is still eligible, or ``None``.

        :raises: ``AutolvmbQueryError`` if the backend cannot be queried.
        """
        try:
            current = self.backend.get_volume(lv.vg_name, lv.name)
        except AutolvmbVolumeNotFoundError:
            _log_warn("Snapshot %s no longer exists: skipping", lv.full_name)
            return None
        except AutolvmbQueryError as err:
            _log_error("Could not re-read snapshot %s: %s", lv.full_name, err)
            raise
        group = VolumeGroup(self.vg_name, self.lv_name, (current,))
        if not group.is_eligible(current):
            _log_warn(
                "Snapshot %s is no longer eligible for removal (attr=%s): skipping",
                current.full_name,
                current.attr,
            )
            return None
        return current

    def _remove(self, lv: LogicalVolume, result: RunResult, dry_run=False):
        """
        Remove one snapshot after re-checking that it is still eligible.
        """
        current = self._recheck(lv)
        if current is None:
            result.skipped.append(lv.name)
            return
        if dry_run:
            _log_info("Would remove snapshot %s", current.devpath)
            return
        _log_info("Removing snapshot: %s (%s)", current.devpath, current.time)
        try:
            with mutation_signals_blocked(f"remove {current.name}"):
                self.backend.remove_volume(current.devpath, force=True)
        except AutolvmbRemoveError as err:
            _log_error("Snapshot removal failed for %s: %s", current.devpath, err)
            result.failed.append(lv.name)
            return
        _log_info("Removed snapshot %s", current.devpath)
        result.removed.append(lv.name)

    def retire(self, decision: RetentionDecision, result=None, dry_run=False):
        """
        Act on a ``RetentionDecision``.

        Each snapshot named in the decision is re-checked against the
        backend before it is removed. A failure to remove one batch member
        does not stop removal of the others.

        :param decision: The decision to execute.
        :param result: An optional ``RunResult`` to update.
        :param dry_run: Log the removals without performing them.
        :returns: The updated ``RunResult``.
        :raises: ``AutolvmbQueryError`` if a snapshot cannot be re-read.
                 Removals completed before the failure are recorded in
                 ``result``.
        """
        result = result if result is not None else RunResult()
        result.decision = decision

        if decision.type == DecisionType.NO_ACTION:
            _log_info("No snapshots need to be retired at this time: %s", decision.reason)
            return result

        count = len(decision.volumes)
        if decision.type == DecisionType.REMOVE_ONE:
            prompt = (
                f"Are you sure you want to remove snapshot "
                f"{decision.volumes[0].devpath}?"
            )
        else:
            prompt = f"Are you sure you want to remove the {count} oldest snapshots?"

        _log_info("%s", decision.reason)
        if not dry_run and not self.confirm.confirm(prompt):
            _log_info("Snapshot removal declined: %d snapshot%s kept", count, _plural(count))
            result.skipped.extend(lv.name for lv in decision.volumes)
            return result

        for lv in decision.volumes:
            self._remove(lv, result, dry_run=dry_run)

        if decision.type == DecisionType.REMOVE_BATCH:
            _log_info(
                "Batch cleanup removed %d of %d snapshot%s (%d failed, %d skipped)",
                len(result.removed),
                count,
                _plural(count),
                len(result.failed),
                len(result.skipped),
            )
        return result

    @with_run_lock
    def run(self, name: Optional[str] = None, create=True, dry_run=False):
        """
        Create a snapshot of the origin volume and apply the retention
        policy to its volume group.

        A failure to read the origin size before creation aborts the run.
        A failure to create the snapshot is reported in the result but the
        retention phase still runs against a fresh inventory.

        :param name: An optional snapshot name.
        :param create: ``False`` to skip the creation phase.
        :param dry_run: Evaluate and log without changing anything.
        :returns: A ``RunResult`` describing the run.
        """
        result = RunResult()

        if create:
            _log_info("Starting snapshot of %s...", self.origin)
            try:
                result.created = self.create_snapshot(name=name, dry_run=dry_run)
            except (AutolvmbQueryError, AutolvmbInvalidInputError) as err:
                _log_error("Could not prepare snapshot of %s: %s", self.origin, err)
                result.errors.append(err)
                return result
            except AutolvmbCreateError as err:
                _log_error("Snapshot creation failed: %s", err)
                result.errors.append(err)

        _log_info("Checking for snapshots to retire...")
        try:
            decision = self.plan()
        except AutolvmbQueryError as err:
            _log_error("Could not read state of %s: %s", self.vg_name, err)
            result.errors.append(err)
            return result

        try:
            self.retire(decision, result=result, dry_run=dry_run)
        except AutolvmbQueryError as err:
            _log_error("Snapshot retention aborted for %s: %s", self.vg_name, err)
            result.errors.append(err)
            return result
        _log_info("Snapshot run completed.")
        return result


__all__ = [
    "Manager",
    "RunResult",
]
