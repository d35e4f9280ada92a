# Copyright Red Hat
#
# autolvmb/command.py - Automatic LVM snapshot command interface
#
# This file is part of the autolvmb project.
#
# SPDX-License-Identifier: Apache-2.0
"""The ``autolvmb.command`` module provides the autolvmb command line
interface infrastructure and a simple procedural interface to the
``autolvmb`` library modules.

The procedural interface is used by the ``autolvmb`` command line tool,
and may be used by application programs that do not require the full
``Manager`` object API.
"""
from argparse import ArgumentParser, ArgumentTypeError
from datetime import datetime
from os.path import basename, join
from json import dumps
import logging
import os

from autolvmb import (
    AUTOLVMB_DEBUG_MANAGER,
    AUTOLVMB_DEBUG_COMMAND,
    AUTOLVMB_DEBUG_POLICY,
    AUTOLVMB_DEBUG_BACKEND,
    AUTOLVMB_DEBUG_ALL,
    AUTOLVMB_SUBSYSTEM_COMMAND,
    AutolvmbSystemError,
    SubsystemFilter,
    set_debug_mask,
    size_fmt,
    __version__,
)
from autolvmb.manager import (
    AUTOLVMB_CFG_PATH,
    AUTOLVMB_LOCK_DIR,
    AutolvmbConfig,
    Manager,
    check_lock_dir,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_command(msg, *args, **kwargs):
    """A wrapper for command subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": AUTOLVMB_SUBSYSTEM_COMMAND}, **kwargs)


_DEFAULT_LOG_LEVEL = logging.WARNING
_CONSOLE_HANDLER = None
_FILE_HANDLER = None

#: Format of lines written to the decision and action log
_LOG_FILE_FORMAT = "[%(asctime)s] >< [%(levelname)s] > %(funcName)s < %(message)s"

#: Time stamp format of lines written to the decision and action log
_LOG_FILE_DATEFMT = "%Y-%m-%d | %H:%M:%S"

#: Permissions for the decision and action log
_LOG_FILE_MODE = 0o644

#: Permissions for the log directory
_LOG_DIR_MODE = 0o755


def log_file_path(log_dir, lv_name, now=None):
    """
    Return the path of the decision and action log for origin volume
    ``lv_name`` on the day given by ``now``.

    :param log_dir: The log directory.
    :param lv_name: The origin logical volume name.
    :param now: An optional ``datetime``; defaults to the current time.
    :returns: A path of the form ``<log_dir>/<lv_name>_<YYYY-mm-dd>.log``.
    """
    now = now or datetime.now()
    return join(log_dir, f"{lv_name}_{now:%Y-%m-%d}.log")


def _load_config(cmd_args):
    """
    Load the configuration file named in ``cmd_args`` and apply the
    command line overrides.
    """
    config_file = getattr(cmd_args, "config", None) or AUTOLVMB_CFG_PATH
    config = AutolvmbConfig.from_file(config_file).with_overrides(
        count_threshold=getattr(cmd_args, "keep_count", None),
        batch_size=getattr(cmd_args, "batch_size", None),
        usage_threshold=getattr(cmd_args, "usage_threshold", None),
        unattended=True if getattr(cmd_args, "unattended", False) else None,
        strict_oldest=False if getattr(cmd_args, "allow_fallback", False) else None,
    )
    _log_debug_command("Using configuration:\n%s", config)
    return config


def _build_manager(cmd_args, config=None, lock=False):
    """
    Construct a ``Manager`` from the configuration file and command line
    overrides in ``cmd_args``.
    """
    if config is None:
        config = _load_config(cmd_args)
    lock_dir = check_lock_dir(AUTOLVMB_LOCK_DIR) if lock else None
    return Manager(
        config=config, device=getattr(cmd_args, "device", None), lock_dir=lock_dir
    )


def plan_retention(manager: Manager):
    """
    Evaluate the retention policy for ``manager`` without making changes.

    :param manager: The manager instance to use.
    :returns: A ``(decision, used_percent)`` tuple.
    """
    group = manager.read_group()
    used_percent = manager.used_space_percent()
    return (manager.plan(group=group, used_percent=used_percent), used_percent)


def print_plan(manager: Manager, json=False):
    """
    Print the retention decision for the current state of ``manager``'s
    volume group.
    """
    decision, used_percent = plan_retention(manager)
    if json:
        value = {
            "origin": manager.origin,
            "used_percent": used_percent,
            "policy": manager.policy.to_dict(),
            "decision": decision.type.value,
            "volumes": [lv.name for lv in decision.volumes],
            "reason": decision.reason,
        }
        print(dumps(value, indent=4))
        return
    print(f"Origin:         {manager.origin}")
    print(f"Used space:     {used_percent}%")
    print(f"Policy:         {manager.policy}")
    print(f"Decision:       {decision.type.value}")
    if decision.reason:
        print(f"Reason:         {decision.reason}")
    for lv in decision.volumes:
        print(f"  {lv.devpath} ({lv.time})")


def _volume_role(group, lv):
    if lv.name == group.origin_name:
        return "origin"
    if group.is_eligible(lv):
        return "snapshot"
    if group.is_origin_snapshot(lv):
        return "snapshot (open)"
    return ""


def print_volumes(manager: Manager):
    """
    Print the logical volumes found in ``manager``'s volume group, oldest
    first, marking the origin volume and its snapshots.
    """
    group = manager.read_group()
    rows = [("LV", "Attr", "Time", "Size", "Role")]
    for lv in sorted(group.volumes, key=lambda v: (v.time, v.name)):
        rows.append(
            (
                lv.name,
                lv.attr,
                lv.time.strftime("%Y-%m-%d %H:%M:%S"),
                size_fmt(lv.size_mb),
                _volume_role(group, lv),
            )
        )
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    for row in rows:
        print("  ".join(col.ljust(width) for col, width in zip(row, widths)).rstrip())


def print_volume_groups(manager: Manager):
    """
    Print the names of the volume groups known to the backend.
    """
    for vg_name in manager.backend.list_volume_groups():
        print(vg_name)


def _run_cmd(cmd_args):
    """
    run command handler.
    Create a snapshot of the origin volume and apply the retention policy.

    :param cmd_args: command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    config = _load_config(cmd_args)
    log_name = basename(cmd_args.device or "") or config.lv_name
    setup_file_logging(config.log_dir, log_name)
    manager = _build_manager(cmd_args, config=config, lock=not cmd_args.dry_run)
    result = manager.run(
        name=cmd_args.snapshot_name,
        create=not cmd_args.no_create,
        dry_run=cmd_args.dry_run,
    )
    if result.created:
        print(f"Created snapshot {manager.vg_name}/{result.created}")
    for name in result.removed:
        print(f"Removed snapshot {manager.vg_name}/{name}")
    for name in result.failed:
        _log_warn("Failed to remove snapshot %s/%s", manager.vg_name, name)
    for err in result.errors:
        _log_error("Run failed: %s", err)
    return result.status


def _plan_cmd(cmd_args):
    """
    plan command handler.
    Display the retention decision for the current volume group state.

    :param cmd_args: command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = _build_manager(cmd_args)
    print_plan(manager, json=cmd_args.json)
    return 0


def _list_cmd(cmd_args):
    """
    list command handler.
    List the logical volumes of the configured volume group.

    :param cmd_args: command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = _build_manager(cmd_args)
    print_volumes(manager)
    return 0


def _groups_cmd(cmd_args):
    """
    groups command handler.
    List the volume groups on this system.

    :param cmd_args: command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = _build_manager(cmd_args)
    print_volume_groups(manager)
    return 0


def setup_logging(cmd_args):
    """
    Set up autolvmb console logging.
    """
    # pylint: disable=global-statement
    global _CONSOLE_HANDLER
    level = _DEFAULT_LOG_LEVEL
    if cmd_args.verbose and cmd_args.verbose > 1:
        level = logging.DEBUG
    elif cmd_args.verbose and cmd_args.verbose > 0:
        level = logging.INFO

    autolvmb_log = logging.getLogger("autolvmb")
    formatter = logging.Formatter("%(levelname)s - %(message)s")
    autolvmb_log.setLevel(min(level, logging.INFO))
    if autolvmb_log.hasHandlers():
        autolvmb_log.handlers.clear()

    # Subsystem log filtering
    _autolvmb_subsystem_filter = SubsystemFilter("autolvmb")

    # Main console handler
    _CONSOLE_HANDLER = logging.StreamHandler()

    _CONSOLE_HANDLER.setLevel(level)
    _CONSOLE_HANDLER.setFormatter(formatter)
    _CONSOLE_HANDLER.addFilter(_autolvmb_subsystem_filter)

    autolvmb_log.addHandler(_CONSOLE_HANDLER)


def setup_file_logging(log_dir, lv_name, now=None):
    """
    Add the decision and action log handler for origin volume ``lv_name``
    under ``log_dir``, creating the directory if necessary.

    :returns: The path of the log file.
    :raises: ``AutolvmbSystemError`` if the log file cannot be opened.
    """
    # pylint: disable=global-statement
    global _FILE_HANDLER
    path = log_file_path(log_dir, lv_name, now=now)
    try:
        os.makedirs(log_dir, mode=_LOG_DIR_MODE, exist_ok=True)
        handler = logging.FileHandler(path, mode="a")
        os.chmod(path, _LOG_FILE_MODE)
    except OSError as err:
        raise AutolvmbSystemError(f"Failed to open log file {path}: {err}") from err

    autolvmb_log = logging.getLogger("autolvmb")
    level = logging.INFO
    if _CONSOLE_HANDLER is not None:
        level = min(level, _CONSOLE_HANDLER.level)

    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_LOG_FILE_FORMAT, _LOG_FILE_DATEFMT))
    handler.addFilter(SubsystemFilter("autolvmb"))
    if _FILE_HANDLER is not None:
        autolvmb_log.removeHandler(_FILE_HANDLER)
        _FILE_HANDLER.close()
    _FILE_HANDLER = handler
    autolvmb_log.addHandler(handler)
    _log_debug_command("Logging to %s", path)
    return path


def shutdown_logging():
    """
    Shut down autolvmb logging.
    """
    # pylint: disable=global-statement
    global _FILE_HANDLER
    if _FILE_HANDLER is not None:
        logging.getLogger("autolvmb").removeHandler(_FILE_HANDLER)
        _FILE_HANDLER.close()
        _FILE_HANDLER = None
    logging.shutdown()


def set_debug(debug_arg):
    """
    Set debugging mask from command line argument.
    """
    if not debug_arg:
        return

    mask_map = {
        "manager": AUTOLVMB_DEBUG_MANAGER,
        "command": AUTOLVMB_DEBUG_COMMAND,
        "policy": AUTOLVMB_DEBUG_POLICY,
        "backend": AUTOLVMB_DEBUG_BACKEND,
        "all": AUTOLVMB_DEBUG_ALL,
    }

    mask = 0
    for name in debug_arg.split(","):
        if name not in mask_map:
            raise ValueError(f"Unknown debug option: {name}")
        mask |= mask_map[name]
    set_debug_mask(mask)


def _positive_int(value):
    try:
        number = int(value)
    except ValueError as err:
        raise ArgumentTypeError(f"invalid integer value: '{value}'") from err
    if number <= 0:
        raise ArgumentTypeError(f"value must be a positive integer: {number}")
    return number


def _percent(value):
    try:
        number = int(value)
    except ValueError as err:
        raise ArgumentTypeError(f"invalid percentage value: '{value}'") from err
    if not 0 <= number <= 100:
        raise ArgumentTypeError(f"percentage must be in the range 0-100: {number}")
    return number


def _add_origin_args(parser):
    """
    Add configuration and origin selection arguments.
    """
    parser.add_argument(
        "-c",
        "--config",
        metavar="CONFIG",
        type=str,
        help=f"Path to the configuration file (default: {AUTOLVMB_CFG_PATH})",
    )
    parser.add_argument(
        "--device",
        metavar="DEVICE",
        type=str,
        help="Origin volume as /dev/VG/LV, VG/LV or /dev/mapper/VG-LV",
    )


def _add_policy_args(parser):
    """
    Add retention policy override arguments.
    """
    parser.add_argument(
        "-k",
        "--keep-count",
        metavar="COUNT",
        type=_positive_int,
        help="Snapshot count at which the oldest batch is removed",
    )
    parser.add_argument(
        "-b",
        "--batch-size",
        metavar="COUNT",
        type=_positive_int,
        help="Number of snapshots removed by a batch cleanup",
    )
    parser.add_argument(
        "-u",
        "--usage-threshold",
        metavar="PERCENT",
        type=_percent,
        help="Used space percentage at which the oldest snapshot is removed",
    )
    parser.add_argument(
        "--allow-fallback",
        action="store_true",
        help="Remove the next-oldest snapshot when the oldest is in use",
    )


def _add_json_arg(parser):
    parser.add_argument(
        "-j",
        "--json",
        action="store_true",
        help="Display output in JSON notation",
    )


def _add_run_subparser(command_subparser):
    run_parser = command_subparser.add_parser(
        "run", help="Create a snapshot and retire old snapshots"
    )
    run_parser.set_defaults(func=_run_cmd)
    _add_origin_args(run_parser)
    _add_policy_args(run_parser)
    run_parser.add_argument(
        "-n",
        "--snapshot-name",
        metavar="NAME",
        type=str,
        help="Name for the new snapshot (default: LV_YYYYmmdd_HHMMSS)",
    )
    run_parser.add_argument(
        "-y",
        "--unattended",
        action="store_true",
        help="Do not ask for confirmation before creating or removing snapshots",
    )
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report the actions that would be taken without making changes",
    )
    run_parser.add_argument(
        "--no-create",
        action="store_true",
        help="Only apply the retention policy: do not create a snapshot",
    )


def _add_plan_subparser(command_subparser):
    plan_parser = command_subparser.add_parser(
        "plan", help="Display the retention decision for the volume group"
    )
    plan_parser.set_defaults(func=_plan_cmd)
    _add_origin_args(plan_parser)
    _add_policy_args(plan_parser)
    _add_json_arg(plan_parser)


def _add_list_subparser(command_subparser):
    list_parser = command_subparser.add_parser(
        "list", help="List logical volumes in the volume group"
    )
    list_parser.set_defaults(func=_list_cmd)
    _add_origin_args(list_parser)


def _add_groups_subparser(command_subparser):
    groups_parser = command_subparser.add_parser(
        "groups", help="List volume groups"
    )
    groups_parser.set_defaults(func=_groups_cmd)
    groups_parser.add_argument(
        "-c",
        "--config",
        metavar="CONFIG",
        type=str,
        help=f"Path to the configuration file (default: {AUTOLVMB_CFG_PATH})",
    )


def main(args):
    """
    Main entry point for autolvmb.
    """
    parser = ArgumentParser(
        description="Automatic LVM snapshot manager", prog=basename(args[0])
    )

    # Global arguments
    parser.add_argument(
        "-d",
        "--debug",
        metavar="DEBUGOPTS",
        type=str,
        help="A list of debug options to enable",
    )
    parser.add_argument("-v", "--verbose", help="Enable verbose output", action="count")
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        help="Report the version number of autolvmb",
        version=__version__,
    )
    # Subparser for command
    command_subparser = parser.add_subparsers(dest="command", help="Command")

    _add_run_subparser(command_subparser)

    _add_plan_subparser(command_subparser)

    _add_list_subparser(command_subparser)

    _add_groups_subparser(command_subparser)

    cmd_args = parser.parse_args(args[1:])

    status = 1

    try:
        set_debug(cmd_args.debug)
    except ValueError as err:
        print(err)
        parser.print_help()
        return status

    setup_logging(cmd_args)

    if os.geteuid() != 0:
        _log_error("autolvmb must be run as the root user")
        shutdown_logging()
        return status

    _log_debug_command("Parsed %s", " ".join(args[1:]))

    if "func" not in cmd_args:
        parser.print_help()
        return status

    if cmd_args.debug:
        status = cmd_args.func(cmd_args)
    else:
        try:
            status = cmd_args.func(cmd_args)
        # pylint: disable=broad-except
        except KeyboardInterrupt:  # pragma: no cover
            _log_info("Exiting on user cancel")
        except Exception as err:
            _log_error("Command failed: %s", err)

    shutdown_logging()
    return status


# vim: set et ts=4 sw=4 :
