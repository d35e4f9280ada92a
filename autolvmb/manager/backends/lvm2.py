# Copyright Red Hat
#
# autolvmb/manager/backends/lvm2.py - LVM2 volume management backend
#
# This file is part of the autolvmb project.
#
# SPDX-License-Identifier: Apache-2.0
"""
LVM2 volume management backend
"""
from subprocess import run, CalledProcessError
from json import loads, JSONDecodeError
from datetime import datetime
from os import environ
from shutil import which

from autolvmb import (
    AutolvmbCalloutError,
    AutolvmbQueryError,
    AutolvmbVolumeNotFoundError,
    AutolvmbNameConflictError,
    AutolvmbBackendFailureError,
    AutolvmbRemoveError,
    AutolvmbNotFoundError,
    AUTOLVMB_SUBSYSTEM_BACKEND,
    LogicalVolume,
)
from ._backend import Backend

# Global LVM2 report options
LVM_REPORT_FORMAT = "--reportformat"
LVM_JSON = "json"
LVM_JSON_STD = "json_std"
LVM_OPTIONS = "--options"
LVM_UNITS = "--units"
LVM_BYTES = "b"

# Main lvm executable
LVM_CMD = "lvm"

# Version subcommand
LVM_VERSION = "version"

# LVM version string prefix
LVM_VERSION_STR = "LVM version"

# lvs report options
LVS_CMD = "lvs"
LVS_REPORT = "report"
LVS_LV = "lv"
LVS_LV_NAME = "lv_name"
LVS_VG_NAME = "vg_name"
LVS_LV_ATTR = "lv_attr"
LVS_LV_ORIGIN = "origin"
LVS_LV_SIZE = "lv_size"
LVS_LV_TIME = "lv_time"
LVS_FIELD_OPTIONS = "vg_name,lv_name,lv_attr,origin,lv_size,lv_time"

# lvs options for devpath to vg/lv name
LVS_FIELD_MIN_OPTIONS = "vg_name,lv_name"
LVS_NO_HEADINGS = "--noheadings"

#: Format of the lv_time field in LVM2 reports
LVS_TIME_FORMAT = "%Y-%m-%d %H:%M:%S %z"

# vgs report options
VGS_CMD = "vgs"
VGS_REPORT = "report"
VGS_VG = "vg"
VGS_FIELD_OPTIONS = "vg_name"

# lvcreate command options
LVCREATE_CMD = "lvcreate"
LVCREATE_SNAPSHOT = "--snapshot"
LVCREATE_NAME = "--name"
LVCREATE_SIZE = "--size"

#: Diagnostic reported by lvcreate when the LV name is in use
LVCREATE_EXISTS_MSG = "already exists"

# lvremove command options
LVREMOVE_CMD = "lvremove"
LVREMOVE_YES = "--yes"
LVREMOVE_FORCE = "--force"

# LVM commands required by the backend
_LVM_CMDS = [
    LVM_CMD,
    LVS_CMD,
    VGS_CMD,
    LVCREATE_CMD,
    LVREMOVE_CMD,
]

MINIMUM_LVM_VERSION = (2, 3, 11)
MINIMUM_LVM_VERSION_JSON_STD = (2, 3, 17)

_MIB = 2**20

# LVM2 environment variables to filter out
_LVM_ENV_FILTER = [
    "LVM_OUT_FD",
    "LVM_ERR_FD",
    "LVM_REPORT_FD",
    "LVM_COMMAND_PROFILE",
    "LVM_RUN_BY_DMEVENTD",
    "LVM_SUPPRESS_FD_WARNINGS",
    "LVM_SUPPRESS_SYSLOG",
    "LVM_VG_NAME",
    "LVM_LVMPOLLD_PIDFILE",
    "LVM_LVMPOLLD_SOCKET",
    "LVM_LOG_FILE_EPOCH",
    "LVM_LOG_FILE_MAX_LINES",
    "LVM_EXPECTED_EXIT_STATUS",
    "LVM_SUPPRESS_LOCKING_FAILURE_MESSAGES",
    "DM_ABORT_ON_INTERNAL_ERRORS",
    "DM_DISABLE_UDEV",
    "DM_DEBUG_WITH_LINE_NUMBERS",
]


def _decode_stderr(err):
    """
    Decode and strip the stderr member of a ``CalledProcessError`` and
    return the result as a string.

    :param err: A ``CalledProcessError`` like exception.
    :returns: A stripped string representation of the exception's stderr
              member.
    """
    if not err.stderr:
        return ""
    return err.stderr.decode("utf8").strip()


def _check_lvm_present():
    """
    Check for the presence of the required LVM2 commands.

    :raises: ``AutolvmbNotFoundError`` if required commands are not found.
    """
    missing = [cmd for cmd in _LVM_CMDS if not which(cmd)]
    if missing:
        raise AutolvmbNotFoundError(f"LVM2 commands not found: {', '.join(missing)}")


def _parse_bytes(value):
    """
    Parse an LVM2 byte-unit size field (for e.g. ``"1073741824B"``).
    """
    return int(str(value).rstrip("B"))


def _parse_lv_time(value):
    """
    Parse an LVM2 ``lv_time`` report field into an aware ``datetime``.
    """
    return datetime.strptime(value.strip(), LVS_TIME_FORMAT)


def lv_from_lv_dict(lv_dict):
    """
    Build a ``LogicalVolume`` from one ``lv`` entry of an ``lvs`` JSON
    report.

    :param lv_dict: A dictionary of ``LVS_FIELD_OPTIONS`` fields.
    :returns: A new ``LogicalVolume`` instance.
    :raises: ``AutolvmbQueryError`` if a field cannot be parsed.
    """
    try:
        return LogicalVolume(
            vg_name=lv_dict[LVS_VG_NAME],
            name=lv_dict[LVS_LV_NAME],
            attr=lv_dict[LVS_LV_ATTR],
            time=_parse_lv_time(lv_dict[LVS_LV_TIME]),
            size_mb=_parse_bytes(lv_dict[LVS_LV_SIZE]) // _MIB,
            origin=lv_dict.get(LVS_LV_ORIGIN, "") or "",
        )
    except (KeyError, ValueError, AttributeError) as err:
        raise AutolvmbQueryError(
            f"Malformed {LVS_CMD} report entry {lv_dict}: {err}"
        ) from err


class Lvm2(Backend):
    """
    LVM2 volume management backend: drives the ``lvs``, ``vgs``,
    ``lvcreate`` and ``lvremove`` commands.
    """

    def _log_debug_backend(self, msg, *args):
        self.logger.debug(msg, *args, extra={"subsystem": AUTOLVMB_SUBSYSTEM_BACKEND})

    def _run(
        self,
        *popenargs,
        # subprocess.run() hits the same pylint warning.
        input=None,  # pylint: disable=redefined-builtin
        capture_output=False,
        timeout=None,
        check=False,
        **kwargs,
    ):
        """
        Thin wrapper around ``subprocess.run`` to enforce lvm environment
        sanitization.

        ``Lvm2._run()`` behaves identically to ``subprocess.run()`` other
        than setting the ``env`` keyword argument to the value of
        ``self._env``, merged with any ``env`` passed by the caller.
        """
        kwargs["env"] = self._env | kwargs["env"] if "env" in kwargs else self._env
        self._log_debug_backend("Running: %s", " ".join(popenargs[0]))
        return run(
            *popenargs,
            input=input,
            capture_output=capture_output,
            timeout=timeout,
            check=check,
            **kwargs,
        )

    def _get_lvm_version(self):
        """
        Return the installed version of LVM2 as a tuple.

        :returns: A version tuple (major, minor, patch) of LVM2
        """

        def _version_string_to_tuple(version):
            return tuple(map(int, version.split(".")))

        lvm_cmd_args = [LVM_CMD, LVM_VERSION]
        lvm_cmd = self._run(lvm_cmd_args, capture_output=True, check=True)
        lvm_version_info = str.strip(lvm_cmd.stdout.decode("utf8"))
        for line in lvm_version_info.splitlines():
            if LVM_VERSION_STR in line:
                (_, _, version, _) = line.split()
                if "(" in version:
                    version, _ = version.split("(", maxsplit=1)
                return _version_string_to_tuple(version)
        return (0, 0, 0)

    def _check_lvm_version(self):
        """
        Check for the required minimum LVM2 version and select the report
        format supported by the installed version.
        """

        def _version_string(value):
            return f"{value[0]}.{value[1]}.{value[2]}"

        try:
            lvm_version = self._get_lvm_version()
        except CalledProcessError as err:
            raise AutolvmbCalloutError(
                f"Error getting LVM2 version: {_decode_stderr(err)}"
            ) from err
        if lvm_version < MINIMUM_LVM_VERSION:
            raise AutolvmbCalloutError(
                f"Unsupported LVM2 version: {_version_string(lvm_version)} "
                f"< {_version_string(MINIMUM_LVM_VERSION)}"
            )

        # Older releases (for e.g. ubuntu-24.04) lack --reportformat json_std
        if lvm_version < MINIMUM_LVM_VERSION_JSON_STD:
            self._json_fmt = LVM_JSON

    def _sanitize_environment(self):
        env = environ.copy()
        for var in _LVM_ENV_FILTER:
            if var in env:
                env.pop(var)
        return env

    def __init__(self, logger):
        super().__init__(logger)

        # Default to using json_std when available.
        self._json_fmt = LVM_JSON_STD

        # Sanitize environment for LVM2 callouts.
        self._env = self._sanitize_environment()

        # Export LC_ALL=C
        self._env["LC_ALL"] = "C"

        # Check for presence of required LVM2 binaries.
        _check_lvm_present()

        # Check LVM2 minimum version requirements.
        self._check_lvm_version()

    def _report(self, cmd, options, target=None):
        """
        Call out to an LVM2 reporting command and return its JSON report.
        """
        cmd_args = [
            cmd,
            LVM_REPORT_FORMAT,
            self._json_fmt,
            LVM_UNITS,
            LVM_BYTES,
            LVM_OPTIONS,
            options,
        ]
        if target:
            cmd_args.append(target)
        try:
            report_cmd = self._run(cmd_args, capture_output=True, check=True)
        except CalledProcessError as err:
            raise AutolvmbQueryError(
                f"Error calling {cmd}: {_decode_stderr(err)}"
            ) from err
        except OSError as err:
            raise AutolvmbQueryError(f"Error calling {cmd}: {err}") from err
        try:
            return loads(report_cmd.stdout)
        except JSONDecodeError as err:
            raise AutolvmbQueryError(
                f"Unable to decode {cmd} JSON output: {err}"
            ) from err

    def get_lvs_json_report(self, vg_lv=None):
        """
        Call out to the ``lvs`` program and return a report in JSON format.
        """
        return self._report(LVS_CMD, LVS_FIELD_OPTIONS, target=vg_lv)

    def get_vgs_json_report(self, vg_name=None):
        """
        Call out to the ``vgs`` program and return a report in JSON format.
        """
        return self._report(VGS_CMD, VGS_FIELD_OPTIONS, target=vg_name)

    def _lv_dicts(self, vg_lv):
        lvs_dict = self.get_lvs_json_report(vg_lv)
        try:
            return lvs_dict[LVS_REPORT][0][LVS_LV]
        except (KeyError, IndexError, TypeError) as err:
            raise AutolvmbQueryError(
                f"Unexpected {LVS_CMD} report layout for {vg_lv}: {err}"
            ) from err

    def list_volumes(self, vg_name):
        volumes = [lv_from_lv_dict(lv_dict) for lv_dict in self._lv_dicts(vg_name)]
        self._log_debug_backend(
            "Found %d logical volumes in volume group %s", len(volumes), vg_name
        )
        return volumes

    def get_volume(self, vg_name, lv_name):
        for lv_dict in self._lv_dicts(vg_name):
            if lv_dict[LVS_VG_NAME] == vg_name and lv_dict[LVS_LV_NAME] == lv_name:
                return lv_from_lv_dict(lv_dict)
        raise AutolvmbVolumeNotFoundError(
            f"Logical volume {vg_name}/{lv_name} not found"
        )

    def get_size(self, vg_name, lv_name):
        return self.get_volume(vg_name, lv_name).size_mb

    def list_volume_groups(self):
        vgs_dict = self.get_vgs_json_report()
        try:
            return [vg_dict[LVS_VG_NAME] for vg_dict in vgs_dict[VGS_REPORT][0][VGS_VG]]
        except (KeyError, IndexError, TypeError) as err:
            raise AutolvmbQueryError(
                f"Unexpected {VGS_CMD} report layout: {err}"
            ) from err

    def vg_lv_from_device_path(self, devpath):
        lvs_cmd_args = [
            LVS_CMD,
            LVS_NO_HEADINGS,
            LVM_REPORT_FORMAT,
            self._json_fmt,
            LVM_OPTIONS,
            LVS_FIELD_MIN_OPTIONS,
            devpath,
        ]
        try:
            lvs_cmd = self._run(lvs_cmd_args, capture_output=True, check=True)
        except CalledProcessError as err:
            raise AutolvmbQueryError(
                f"Error calling {LVS_CMD}: {_decode_stderr(err)}"
            ) from err
        try:
            lvs_dict = loads(lvs_cmd.stdout)
            lv_dict = lvs_dict[LVS_REPORT][0][LVS_LV][0]
        except (JSONDecodeError, KeyError, IndexError) as err:
            raise AutolvmbQueryError(
                f"Unable to resolve {devpath} to a logical volume: {err}"
            ) from err
        return (lv_dict[LVS_VG_NAME], lv_dict[LVS_LV_NAME])

    def create_snapshot(self, origin, name, size_mb):
        self._log_debug_backend(
            "Creating %dMiB CoW snapshot %s of %s", size_mb, name, origin
        )
        lvcreate_cmd = [
            LVCREATE_CMD,
            LVCREATE_SNAPSHOT,
            LVCREATE_NAME,
            name,
            LVCREATE_SIZE,
            f"{size_mb}m",
            origin,
        ]
        try:
            self._run(lvcreate_cmd, capture_output=True, check=True)
        except CalledProcessError as err:
            stderr = _decode_stderr(err)
            if LVCREATE_EXISTS_MSG in stderr:
                raise AutolvmbNameConflictError(name, stderr) from err
            raise AutolvmbBackendFailureError(
                name, stderr, msg=f"{LVCREATE_CMD} failed with: {stderr}"
            ) from err
        except OSError as err:
            raise AutolvmbBackendFailureError(name, str(err)) from err

    def remove_volume(self, devpath, force=False):
        lvremove_cmd = [LVREMOVE_CMD, LVREMOVE_YES]
        if force:
            lvremove_cmd.append(LVREMOVE_FORCE)
        lvremove_cmd.append(devpath)
        try:
            self._run(lvremove_cmd, capture_output=True, check=True)
        except CalledProcessError as err:
            raise AutolvmbRemoveError(devpath, _decode_stderr(err)) from err
        except OSError as err:
            raise AutolvmbRemoveError(devpath, str(err)) from err


__all__ = ["Lvm2"]
