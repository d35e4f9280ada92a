# Copyright Red Hat
#
# autolvmb/manager/backends/_backend.py - Volume management backend base
#
# This file is part of the autolvmb project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Volume management backend base class and helpers.
"""
from math import ceil

import psutil

from autolvmb import AutolvmbQueryError


class Backend:
    """
    Abstract base class for volume management backends.

    A backend owns every read and write path to the volume manager: the
    ``Manager`` only operates on the ``VolumeGroup`` and
    ``LogicalVolume`` values returned from its query methods.
    """

    def __init__(self, logger):
        self.logger = logger

    def list_volumes(self, vg_name):
        """
        Return a list of ``LogicalVolume`` objects for every logical volume
        in the volume group named ``vg_name``.

        :param vg_name: The volume group to query.
        :raises: ``AutolvmbQueryError`` if the inventory cannot be read.
        """
        raise NotImplementedError

    def get_volume(self, vg_name, lv_name):
        """
        Return a freshly queried ``LogicalVolume`` for ``vg_name/lv_name``.

        :param vg_name: The volume group name.
        :param lv_name: The logical volume name.
        :raises: ``AutolvmbVolumeNotFoundError`` if the volume group does not
                 contain ``lv_name``, or ``AutolvmbQueryError`` if the
                 volume group cannot be read.
        """
        raise NotImplementedError

    def get_size(self, vg_name, lv_name):
        """
        Return the size of ``vg_name/lv_name`` in MiB.

        :param vg_name: The volume group name.
        :param lv_name: The logical volume name.
        :raises: ``AutolvmbQueryError`` if the size cannot be read.
        """
        raise NotImplementedError

    def create_snapshot(self, origin, name, size_mb):
        """
        Create a copy-on-write snapshot of ``origin`` named ``name``.

        :param origin: The origin device path.
        :param name: The new snapshot name.
        :param size_mb: The snapshot size in MiB.
        :raises: ``AutolvmbNameConflictError`` if ``name`` already exists,
                 or ``AutolvmbBackendFailureError`` on other failures.
        """
        raise NotImplementedError

    def remove_volume(self, devpath, force=False):
        """
        Remove the logical volume at ``devpath``.

        :param devpath: The device path of the volume to remove.
        :param force: Pass the backend's force flag.
        :raises: ``AutolvmbRemoveError`` if the volume was not removed.
        """
        raise NotImplementedError

    def list_volume_groups(self):
        """
        Return a list of the volume group names known to the backend.
        """
        raise NotImplementedError

    def vg_lv_from_device_path(self, devpath):
        """
        Return a ``(vg_name, lv_name)`` tuple for the device at ``devpath``.
        """
        raise NotImplementedError


def space_used_percent(path):
    """
    Return the used space of the file system containing ``path`` as an
    integer percentage, rounded up in the same way as ``df``.

    :param path: A path on the file system to examine.
    :returns: The used space percentage (0-100).
    :rtype: ``int``
    :raises: ``AutolvmbQueryError`` if the file system cannot be queried.
    """
    try:
        usage = psutil.disk_usage(path)
    except OSError as err:
        raise AutolvmbQueryError(
            f"Could not read file system usage for {path}: {err}"
        ) from err
    if usage.used + usage.free == 0:
        return 0
    return min(100, ceil(usage.used * 100 / (usage.used + usage.free)))


__all__ = [
    "Backend",
    "space_used_percent",
]
