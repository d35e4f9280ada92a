# Copyright Red Hat
#
# autolvmb/manager/_config.py - Automatic LVM snapshot configuration
#
# This file is part of the autolvmb project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Configuration file support for autolvmb.
"""
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, fields, replace
from os.path import exists, join
import logging

from autolvmb import (
    AutolvmbConfigError,
    DEFAULT_SIZE_FRACTION,
    DEFAULT_USAGE_THRESHOLD,
    DEFAULT_COUNT_THRESHOLD,
    DEFAULT_BATCH_SIZE,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: Base directory for autolvmb configuration
AUTOLVMB_CFG_DIR = "/etc/autolvmb"

#: Main configuration file path
AUTOLVMB_CFG_PATH = join(AUTOLVMB_CFG_DIR, "autolvmb.conf")

# Configuration file sections
_CFG_GLOBAL = "Global"
_CFG_SNAPSHOT = "Snapshot"
_CFG_RETENTION = "Retention"

# Configuration file keys
_CFG_VOLUME_GROUP = "VolumeGroup"
_CFG_LOGICAL_VOLUME = "LogicalVolume"
_CFG_LOG_DIR = "LogDir"
_CFG_USAGE_PATH = "UsagePath"
_CFG_UNATTENDED = "Unattended"
_CFG_SIZE_FRACTION = "SizeFraction"
_CFG_USAGE_THRESHOLD = "UsageThreshold"
_CFG_COUNT_THRESHOLD = "CountThreshold"
_CFG_BATCH_SIZE = "BatchSize"
_CFG_STRICT_OLDEST = "StrictOldest"

#: Default volume group containing the origin volume
DEFAULT_VG_NAME = "ubuntu-vg"

#: Default origin logical volume
DEFAULT_LV_NAME = "ubuntu-lv"

#: Default directory for the decision and action log
DEFAULT_LOG_DIR = "/var/log/autolvmb"

#: Default path whose file system usage drives single snapshot removal
DEFAULT_USAGE_PATH = "/"


# pylint: disable=too-many-instance-attributes
@dataclass(frozen=True)
class AutolvmbConfig:
    """
    Autolvmb configuration.
    """

    vg_name: str = DEFAULT_VG_NAME
    lv_name: str = DEFAULT_LV_NAME
    log_dir: str = DEFAULT_LOG_DIR
    usage_path: str = DEFAULT_USAGE_PATH
    unattended: bool = False
    size_fraction: float = DEFAULT_SIZE_FRACTION
    usage_threshold: int = DEFAULT_USAGE_THRESHOLD
    count_threshold: int = DEFAULT_COUNT_THRESHOLD
    batch_size: int = DEFAULT_BATCH_SIZE
    strict_oldest: bool = True

    def __post_init__(self):
        if not self.vg_name or not self.lv_name:
            raise AutolvmbConfigError("VolumeGroup and LogicalVolume must be set")
        if not 0 < self.size_fraction <= 1:
            raise AutolvmbConfigError(
                f"{_CFG_SIZE_FRACTION} must be in the range (0, 1]: "
                f"{self.size_fraction}"
            )
        if not 0 <= self.usage_threshold <= 100:
            raise AutolvmbConfigError(
                f"{_CFG_USAGE_THRESHOLD} must be in the range 0-100: "
                f"{self.usage_threshold}"
            )
        if self.count_threshold <= 0:
            raise AutolvmbConfigError(
                f"{_CFG_COUNT_THRESHOLD} must be a positive integer: "
                f"{self.count_threshold}"
            )
        if self.batch_size <= 0:
            raise AutolvmbConfigError(
                f"{_CFG_BATCH_SIZE} must be a positive integer: {self.batch_size}"
            )

    def __str__(self):
        return "\n".join(
            f"{f.name}={getattr(self, f.name)}" for f in fields(self)
        )

    def with_overrides(self, **overrides):
        """
        Return a copy of this configuration with the non-``None`` values
        in ``overrides`` applied.

        :returns: A new ``AutolvmbConfig`` instance.
        :raises: ``AutolvmbConfigError`` if an override is invalid.
        """
        overrides = {key: val for key, val in overrides.items() if val is not None}
        if not overrides:
            return self
        _log_debug("Applying configuration overrides: %s", overrides)
        return replace(self, **overrides)

    @classmethod
    def from_file(cls, config_file: str = AUTOLVMB_CFG_PATH) -> "AutolvmbConfig":
        """
        Load ``AutolvmbConfig`` from an INI-style configuration file located
        at ``config_file``.

        :param config_file: path to autolvmb.conf
        :type config_file: ``str``.
        :returns: An ``AutolvmbConfig`` instance initialised from ``config_file``.
        :rtype: ``AutolvmbConfig``
        :raises: ``AutolvmbConfigError`` if the file cannot be parsed.
        """
        if not exists(config_file):
            _log_debug("No configuration file at '%s': using defaults", config_file)
            return AutolvmbConfig()

        _log_debug("Loading configuration from '%s'", config_file)
        cfg = ConfigParser()
        try:
            cfg.read([config_file])
        except ConfigParserError as err:
            raise AutolvmbConfigError(
                f"Failed to parse configuration file '{config_file}': {err}"
            ) from err

        values = {}

        def _get(section, option, key, getter):
            if cfg.has_section(section) and cfg.has_option(section, option):
                try:
                    values[key] = getter(section, option)
                except ValueError as err:
                    raise AutolvmbConfigError(
                        f"Invalid value for {section}.{option} in "
                        f"'{config_file}': {err}"
                    ) from err

        _get(_CFG_GLOBAL, _CFG_VOLUME_GROUP, "vg_name", cfg.get)
        _get(_CFG_GLOBAL, _CFG_LOGICAL_VOLUME, "lv_name", cfg.get)
        _get(_CFG_GLOBAL, _CFG_LOG_DIR, "log_dir", cfg.get)
        _get(_CFG_GLOBAL, _CFG_USAGE_PATH, "usage_path", cfg.get)
        _get(_CFG_GLOBAL, _CFG_UNATTENDED, "unattended", cfg.getboolean)
        _get(_CFG_SNAPSHOT, _CFG_SIZE_FRACTION, "size_fraction", cfg.getfloat)
        _get(_CFG_RETENTION, _CFG_USAGE_THRESHOLD, "usage_threshold", cfg.getint)
        _get(_CFG_RETENTION, _CFG_COUNT_THRESHOLD, "count_threshold", cfg.getint)
        _get(_CFG_RETENTION, _CFG_BATCH_SIZE, "batch_size", cfg.getint)
        _get(_CFG_RETENTION, _CFG_STRICT_OLDEST, "strict_oldest", cfg.getboolean)

        return AutolvmbConfig(**values)


__all__ = [
    "AutolvmbConfig",
    "AUTOLVMB_CFG_PATH",
]
