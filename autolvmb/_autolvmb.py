# Copyright Red Hat
#
# autolvmb/_autolvmb.py - Automatic LVM snapshot global definitions
#
# This file is part of the autolvmb project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Global definitions for the top-level autolvmb package.
"""
from typing import Optional, List, Tuple
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from os.path import join as path_join
import logging
import string
import math

_log = logging.getLogger("autolvmb")

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

# Autolvmb debugging subsystem mask
AUTOLVMB_DEBUG_MANAGER = 1
AUTOLVMB_DEBUG_COMMAND = 2
AUTOLVMB_DEBUG_POLICY = 4
AUTOLVMB_DEBUG_BACKEND = 8
AUTOLVMB_DEBUG_ALL = (
    AUTOLVMB_DEBUG_MANAGER
    | AUTOLVMB_DEBUG_COMMAND
    | AUTOLVMB_DEBUG_POLICY
    | AUTOLVMB_DEBUG_BACKEND
)

# Autolvmb debugging subsystem names
AUTOLVMB_SUBSYSTEM_MANAGER = "autolvmb.manager"
AUTOLVMB_SUBSYSTEM_COMMAND = "autolvmb.command"
AUTOLVMB_SUBSYSTEM_POLICY = "autolvmb.policy"
AUTOLVMB_SUBSYSTEM_BACKEND = "autolvmb.backend"

_DEBUG_MASK_TO_SUBSYSTEM = {
    AUTOLVMB_DEBUG_MANAGER: AUTOLVMB_SUBSYSTEM_MANAGER,
    AUTOLVMB_DEBUG_COMMAND: AUTOLVMB_SUBSYSTEM_COMMAND,
    AUTOLVMB_DEBUG_POLICY: AUTOLVMB_SUBSYSTEM_POLICY,
    AUTOLVMB_DEBUG_BACKEND: AUTOLVMB_SUBSYSTEM_BACKEND,
}

_debug_subsystems = set()

#: Top-level state directory for lock files
AUTOLVMB_RUNTIME_DIR = "/run/autolvmb"

DEV_PREFIX = "/dev"
DEV_MAPPER_DIR = "mapper"
DEV_MAPPER_PREFIX = "/dev/mapper/"

#: Default fraction of the origin size allocated to a new snapshot
DEFAULT_SIZE_FRACTION = 0.025

#: Default used space percentage that triggers removal of the oldest snapshot
DEFAULT_USAGE_THRESHOLD = 25

#: Default eligible snapshot count that triggers batch cleanup
DEFAULT_COUNT_THRESHOLD = 34

#: Default number of snapshots removed by a batch cleanup
DEFAULT_BATCH_SIZE = 10

#: Format of the timestamp suffix of generated snapshot names
SNAPSHOT_TIME_FORMAT = "%Y%m%d_%H%M%S"

# lv_attr flag values
LVM_COW_SNAP_ATTR = "s"
LVM_ACTIVE_ATTR = "a"
LVM_OPEN_ATTR = "o"

# lv_attr flag indexes
LVM_LV_TYPE_ATTR_IDX = 0
LVM_LV_STATE_ATTR_IDX = 4
LVM_LV_OPEN_ATTR_IDX = 5

#: Maximum length for LVM2 LV names
LVM_MAX_NAME_LEN = 127

#: Length of extension for LVM2 CoW snapshot LV name ("_cow")
LVM_COW_SNAPSHOT_NAME_LEN = 4

# Constant for allow-listed name characters
AUTOLVMB_VALID_NAME_CHARS = set(
    string.ascii_lowercase + string.ascii_uppercase + string.digits + "+_.-"
)

#: Name prefixes reserved by LVM2
_LVM_RESERVED_PREFIXES = ("snapshot", "pvmove")

#: Name substrings reserved by LVM2 for internal volumes
_LVM_RESERVED_STRINGS = (
    "_cdata",
    "_cmeta",
    "_corig",
    "_mlog",
    "_mimage",
    "_pmspare",
    "_rimage",
    "_rmeta",
    "_tdata",
    "_tmeta",
    "_vorigin",
)


class SubsystemFilter(logging.Filter):
    """
    Filters DEBUG records based on a set of enabled subsystem names.
    Non-DEBUG records or DEBUG records without a 'subsystem' attribute
    are always passed through.
    """

    def __init__(self, name=""):
        super().__init__(name)
        self.enabled_subsystems = set(_debug_subsystems)

    def filter(self, record):
        # Always pass non-DEBUG messages.
        if record.levelno != logging.DEBUG:
            return True

        # Always pass DEBUG messages that aren't for a specific subsystem.
        if not hasattr(record, "subsystem"):
            return True

        return record.subsystem in self.enabled_subsystems

    def set_debug_subsystems(self, subsystems):
        """Sets the collection of subsystems to allow."""
        self.enabled_subsystems = set(subsystems)


def get_debug_mask():
    """
    Return the current debug mask for the ``autolvmb`` package.

    :returns: The current debug mask value
    :rtype: int
    """
    mask_map = {v: k for k, v in _DEBUG_MASK_TO_SUBSYSTEM.items()}
    mask = 0
    for subsystem_name in _debug_subsystems:
        mask |= mask_map.get(subsystem_name, 0)
    return mask


def set_debug_mask(mask):
    """
    Set the debug mask for the ``autolvmb`` package.

    :param mask: the logical OR of the ``AUTOLVMB_DEBUG_*``
                 values to log.
    :rtype: None
    """
    # pylint: disable=global-statement
    global _debug_subsystems

    if mask < 0 or mask > AUTOLVMB_DEBUG_ALL:
        raise ValueError(f"Invalid autolvmb debug mask: {mask}")

    enabled_subsystems = []
    for flag, subsystem_name in _DEBUG_MASK_TO_SUBSYSTEM.items():
        if mask & flag:
            enabled_subsystems.append(subsystem_name)

    autolvmb_log = logging.getLogger("autolvmb")
    for handler in autolvmb_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                f.set_debug_subsystems(enabled_subsystems)

    _debug_subsystems = set(enabled_subsystems)


#
# Autolvmb exception types
#


class AutolvmbError(Exception):
    """
    Base class for autolvmb errors.
    """


class AutolvmbSystemError(AutolvmbError):
    """
    An error when calling the operating system.
    """


class AutolvmbConfigError(AutolvmbError):
    """
    Invalid or missing configuration or user input, for example a
    malformed device path or snapshot name.
    """


class AutolvmbArgumentError(AutolvmbError):
    """
    An invalid argument was passed to an autolvmb API call.
    """


class AutolvmbInvalidInputError(AutolvmbError):
    """
    A snapshot cannot be sized from the available inputs.
    """


class AutolvmbNotFoundError(AutolvmbError):
    """
    The requested object or a required program does not exist.
    """


class AutolvmbBusyError(AutolvmbError):
    """
    Another autolvmb invocation is already running.
    """


class AutolvmbCalloutError(AutolvmbError):
    """
    An error calling out to an external program.
    """


class AutolvmbQueryError(AutolvmbCalloutError):
    """
    Reading the volume inventory or a volume size failed.
    """


class AutolvmbVolumeNotFoundError(AutolvmbQueryError):
    """
    The volume group was read but the requested logical volume is not
    present in it.
    """


class AutolvmbCreateError(AutolvmbCalloutError):
    """
    Creating a snapshot failed.
    """

    def __init__(self, name: str, stderr: str, msg: Optional[str] = None):
        """
        Initialise a new ``AutolvmbCreateError`` exception.

        :param name: The name of the snapshot that could not be created.
        :param stderr: The diagnostic text reported by the backend.
        :param msg: An optional message overriding the default.
        """
        self.name, self.stderr = name, stderr
        if msg is None:
            msg = f"Failed to create snapshot {name}: {stderr}"
        super().__init__(msg)


class AutolvmbNameConflictError(AutolvmbCreateError):
    """
    The requested snapshot name is already used by a logical volume in
    the volume group.
    """

    def __init__(self, name: str, stderr: str = ""):
        super().__init__(
            name,
            stderr,
            msg=f"Logical volume {name} already exists"
            + (f": {stderr}" if stderr else ""),
        )


class AutolvmbBackendFailureError(AutolvmbCreateError):
    """
    The backend refused to create the snapshot (insufficient space,
    invalid device or backend unavailable).
    """


class AutolvmbRemoveError(AutolvmbCalloutError):
    """
    Removing a snapshot failed.
    """

    def __init__(self, devpath: str, stderr: str):
        """
        Initialise a new ``AutolvmbRemoveError`` exception.

        :param devpath: The device path of the volume that was not removed.
        :param stderr: The diagnostic text reported by the backend.
        """
        self.devpath, self.stderr = devpath, stderr
        super().__init__(f"Failed to remove {devpath}: {stderr}")


#
# Volume data model
#


@dataclass(frozen=True)
class LogicalVolume:
    """
    Immutable view of one logical volume as reported by the backend at
    query time.
    """

    vg_name: str
    name: str
    attr: str
    time: datetime
    size_mb: int
    #: Name of the origin volume for snapshots, or the empty string.
    origin: str = ""

    def __str__(self):
        return "".join(
            [
                f"LogicalVolume:  {self.vg_name}/{self.name}",
                f"\nAttributes:     {self.attr}",
                f"\nTime:           {self.time}",
                f"\nSize:           {self.size_mb}MiB",
                f"\nOrigin:         {self.origin}",
            ]
        )

    def _attr_flag(self, idx, value):
        return len(self.attr) > idx and self.attr[idx] == value

    @property
    def full_name(self):
        """
        The ``vg/lv`` name of this volume.
        """
        return f"{self.vg_name}/{self.name}"

    @property
    def devpath(self):
        """
        The ``/dev/vg/lv`` device path of this volume.
        """
        return path_join(DEV_PREFIX, self.vg_name, self.name)

    @property
    def is_snapshot(self):
        """
        ``True`` if this volume is a copy-on-write snapshot.
        """
        return self._attr_flag(LVM_LV_TYPE_ATTR_IDX, LVM_COW_SNAP_ATTR)

    @property
    def is_open(self):
        """
        ``True`` if this volume is open (mounted or otherwise in use).
        """
        return self._attr_flag(LVM_LV_OPEN_ATTR_IDX, LVM_OPEN_ATTR)

    @property
    def is_active(self):
        """
        ``True`` if this volume is active.
        """
        return self._attr_flag(LVM_LV_STATE_ATTR_IDX, LVM_ACTIVE_ATTR)


def _volume_sort_key(lv: LogicalVolume):
    return (lv.time, lv.name)


@dataclass(frozen=True)
class VolumeGroup:
    """
    A point-in-time inventory of a volume group: the protected origin
    volume and every other logical volume found in the group.
    """

    name: str
    origin_name: str
    volumes: Tuple[LogicalVolume, ...] = field(default_factory=tuple)

    def __len__(self):
        return len(self.volumes)

    @property
    def origin(self) -> Optional[LogicalVolume]:
        """
        The origin ``LogicalVolume`` of this group, or ``None`` if the
        inventory does not contain it.
        """
        for lv in self.volumes:
            if lv.name == self.origin_name:
                return lv
        return None

    @property
    def snapshots(self) -> List[LogicalVolume]:
        """
        All snapshots of the origin volume, oldest first, including
        snapshots that are currently open.
        """
        return sorted(
            (lv for lv in self.volumes if self.is_origin_snapshot(lv)),
            key=_volume_sort_key,
        )

    def is_origin_snapshot(self, lv: LogicalVolume) -> bool:
        """
        Return ``True`` if ``lv`` is a snapshot of this group's origin.
        Snapshots that report no origin are accepted.
        """
        if lv.name == self.origin_name or not lv.is_snapshot:
            return False
        return not lv.origin or lv.origin == self.origin_name

    def is_eligible(self, lv: LogicalVolume) -> bool:
        """
        Return ``True`` if ``lv`` may be removed: a snapshot of the origin
        that is not currently open.
        """
        return self.is_origin_snapshot(lv) and not lv.is_open

    def eligible_snapshots(self) -> List[LogicalVolume]:
        """
        The snapshots of the origin that may be removed, oldest first.
        """
        return [lv for lv in self.snapshots if not lv.is_open]


@dataclass(frozen=True)
class SnapshotRequest:
    """
    A request to create one snapshot: consumed by the backend's
    ``create_snapshot()`` method.
    """

    name: str
    size_mb: int
    origin: str


def compute_size(origin_size_mb, fraction=DEFAULT_SIZE_FRACTION):
    """
    Compute the size of a new snapshot as a fraction of its origin.

    The result is truncated to whole megabytes so that the snapshot
    never exceeds the requested fraction.

    :param origin_size_mb: The origin volume size in MiB.
    :param fraction: The fraction of the origin size to allocate.
    :returns: The snapshot size in MiB.
    :rtype: ``int``
    :raises: ``AutolvmbInvalidInputError`` if the origin size is unknown
             or the inputs do not yield a positive size.
    """
    if origin_size_mb is None or origin_size_mb <= 0:
        raise AutolvmbInvalidInputError(
            f"Cannot size snapshot: invalid origin size {origin_size_mb}"
        )
    if not 0 < fraction <= 1:
        raise AutolvmbInvalidInputError(
            f"Snapshot size fraction must be in (0, 1]: {fraction}"
        )
    size_mb = math.floor(origin_size_mb * fraction)
    if size_mb <= 0:
        raise AutolvmbInvalidInputError(
            f"Origin size {origin_size_mb}MiB too small for "
            f"{fraction * 100:g}% snapshot"
        )
    _log_debug("Snapshot size set to %dM (%s * %s)", size_mb, origin_size_mb, fraction)
    return size_mb


def eligible_snapshots(group: VolumeGroup) -> List[LogicalVolume]:
    """
    Return the snapshots in ``group`` that may be removed, oldest first.

    :param group: The ``VolumeGroup`` inventory to examine.
    :returns: A list of eligible ``LogicalVolume`` objects.
    """
    return group.eligible_snapshots()


def select_oldest(group: VolumeGroup, strict=True) -> Optional[LogicalVolume]:
    """
    Select the oldest snapshot in ``group`` that may be removed.

    The origin volume, volumes that are not snapshots, and snapshots that
    are currently open are never selected. By default an open oldest
    snapshot blocks selection entirely: there is no candidate until it is
    closed. With ``strict=False`` selection falls back to the next-oldest
    eligible snapshot.

    :param group: The ``VolumeGroup`` inventory to examine.
    :param strict: Return ``None`` if the oldest snapshot is in use.
    :returns: The oldest eligible ``LogicalVolume`` or ``None``.
    """
    if len(group) <= 1:
        _log_debug(
            "Only %d logical volume(s) in volume group %s: no snapshots",
            len(group),
            group.name,
        )
        return None

    for lv in group.snapshots:
        if lv.is_open:
            if strict:
                _log_info(
                    "Oldest snapshot %s is in use: not selecting a snapshot",
                    lv.full_name,
                )
                return None
            _log_debug("Skipping in-use snapshot %s", lv.full_name)
            continue
        _log_debug("Oldest snapshot: %s (%s)", lv.full_name, lv.time)
        return lv
    return None


def default_snapshot_name(lv_name, now=None):
    """
    Return a time-stamped snapshot name for origin volume ``lv_name``.

    :param lv_name: The origin logical volume name.
    :param now: An optional ``datetime`` to use instead of the current time.
    :returns: A name of the form ``<lv_name>_YYYYmmdd_HHMMSS``.
    """
    now = now or datetime.now()
    return f"{lv_name}_{now.strftime(SNAPSHOT_TIME_FORMAT)}"


def check_lv_name(vg_name, lv_name):
    """
    Check that ``lv_name`` is a valid LVM2 snapshot name in ``vg_name``.

    :param vg_name: The volume group the name will be created in.
    :param lv_name: The proposed logical volume name.
    :raises: ``AutolvmbConfigError`` if the name is not valid.
    """
    if not lv_name:
        raise AutolvmbConfigError("Snapshot name cannot be empty")
    if lv_name in (".", ".."):
        raise AutolvmbConfigError(f"Invalid snapshot name: '{lv_name}'")
    if lv_name.startswith("-"):
        raise AutolvmbConfigError(
            f"Snapshot name cannot begin with '-': '{lv_name}'"
        )
    invalid = set(lv_name) - AUTOLVMB_VALID_NAME_CHARS
    if invalid:
        raise AutolvmbConfigError(
            f"Snapshot name contains invalid characters: "
            f"{', '.join(repr(c) for c in sorted(invalid))}"
        )
    if lv_name.startswith(_LVM_RESERVED_PREFIXES):
        raise AutolvmbConfigError(
            f"Snapshot name uses a reserved LVM2 prefix: '{lv_name}'"
        )
    for reserved in _LVM_RESERVED_STRINGS:
        if reserved in lv_name:
            raise AutolvmbConfigError(
                f"Snapshot name contains reserved LVM2 string '{reserved}': "
                f"'{lv_name}'"
            )
    full_name = f"{vg_name}/{lv_name}"
    if len(full_name) > LVM_MAX_NAME_LEN - LVM_COW_SNAPSHOT_NAME_LEN:
        raise AutolvmbConfigError(
            f"Logical volume name {full_name} exceeds maximum LVM2 name length"
        )


def vg_lv_from_origin(origin):
    """
    Return a ``(vg_name, lv_name)`` tuple for an origin given either as
    ``/dev/vg/lv`` or ``vg/lv``.

    :param origin: The origin device path or ``vg/lv`` name.
    :raises: ``AutolvmbConfigError`` if ``origin`` is malformed.
    """
    if not origin:
        raise AutolvmbConfigError("Origin device path cannot be empty")
    name_parts = origin.removeprefix(DEV_PREFIX + "/").split("/")
    if len(name_parts) != 2 or not all(name_parts):
        raise AutolvmbConfigError(f"Malformed origin device path: '{origin}'")
    if name_parts[0] == DEV_MAPPER_DIR:
        raise AutolvmbConfigError(
            f"Device-mapper path cannot be split without the backend: '{origin}'"
        )
    return (name_parts[0], name_parts[1])


def size_fmt(value_mb):
    """
    Format a size in MiB as a human readable string.

    :param value_mb: The integer value in MiB to format.
    :returns: A human readable string reflecting value.
    """
    suffixes = ["MiB", "GiB", "TiB", "PiB", "EiB"]
    if value_mb == 0:
        return "0MiB"
    magnitude = min(math.floor(math.log(abs(value_mb), 1024)), len(suffixes) - 1)
    val = value_mb / math.pow(1024, magnitude)
    return f"{val:3.1f}{suffixes[magnitude]}"


class DecisionType(Enum):
    """
    Retention decision outcomes.
    """

    NO_ACTION = "NoAction"
    REMOVE_ONE = "RemoveOne"
    REMOVE_BATCH = "RemoveBatch"


@dataclass(frozen=True)
class RetentionDecision:
    """
    The outcome of evaluating the retention policy against a
    ``VolumeGroup``: acted on immediately and then discarded.
    """

    type: DecisionType
    volumes: Tuple[LogicalVolume, ...] = ()
    reason: str = field(default="", compare=False)

    def __str__(self):
        names = ", ".join(lv.name for lv in self.volumes)
        return f"{self.type.value}({names})" + (
            f": {self.reason}" if self.reason else ""
        )

    @classmethod
    def no_action(cls, reason=""):
        """Return a ``NO_ACTION`` decision."""
        return cls(DecisionType.NO_ACTION, (), reason)

    @classmethod
    def remove_one(cls, lv: LogicalVolume, reason=""):
        """Return a ``REMOVE_ONE`` decision for ``lv``."""
        return cls(DecisionType.REMOVE_ONE, (lv,), reason)

    @classmethod
    def remove_batch(cls, lvs, reason=""):
        """Return a ``REMOVE_BATCH`` decision for ``lvs`` (oldest first)."""
        return cls(DecisionType.REMOVE_BATCH, tuple(lvs), reason)

    @property
    def is_removal(self):
        """``True`` if this decision removes at least one volume."""
        return self.type != DecisionType.NO_ACTION and len(self.volumes) > 0


__all__ = [
    # Debug logging
    "AUTOLVMB_DEBUG_MANAGER",
    "AUTOLVMB_DEBUG_COMMAND",
    "AUTOLVMB_DEBUG_POLICY",
    "AUTOLVMB_DEBUG_BACKEND",
    "AUTOLVMB_DEBUG_ALL",
    "AUTOLVMB_SUBSYSTEM_MANAGER",
    "AUTOLVMB_SUBSYSTEM_COMMAND",
    "AUTOLVMB_SUBSYSTEM_POLICY",
    "AUTOLVMB_SUBSYSTEM_BACKEND",
    "SubsystemFilter",
    "get_debug_mask",
    "set_debug_mask",
    # Constants
    "AUTOLVMB_RUNTIME_DIR",
    "AUTOLVMB_VALID_NAME_CHARS",
    "DEV_PREFIX",
    "DEV_MAPPER_PREFIX",
    "DEFAULT_SIZE_FRACTION",
    "DEFAULT_USAGE_THRESHOLD",
    "DEFAULT_COUNT_THRESHOLD",
    "DEFAULT_BATCH_SIZE",
    "SNAPSHOT_TIME_FORMAT",
    # Exceptions
    "AutolvmbError",
    "AutolvmbSystemError",
    "AutolvmbConfigError",
    "AutolvmbArgumentError",
    "AutolvmbInvalidInputError",
    "AutolvmbNotFoundError",
    "AutolvmbBusyError",
    "AutolvmbCalloutError",
    "AutolvmbQueryError",
    "AutolvmbVolumeNotFoundError",
    "AutolvmbCreateError",
    "AutolvmbNameConflictError",
    "AutolvmbBackendFailureError",
    "AutolvmbRemoveError",
    # Data model
    "LogicalVolume",
    "VolumeGroup",
    "SnapshotRequest",
    "DecisionType",
    "RetentionDecision",
    # Core helpers
    "compute_size",
    "eligible_snapshots",
    "select_oldest",
    "default_snapshot_name",
    "check_lv_name",
    "vg_lv_from_origin",
    "size_fmt",
]
