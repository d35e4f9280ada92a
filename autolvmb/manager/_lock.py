# Copyright Red Hat
#
# autolvmb/manager/_lock.py - Run serialisation lock
#
# This file is part of the autolvmb project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Exclusive lock used to serialise autolvmb invocations.
"""
from functools import wraps
from os.path import exists, join
import logging
import fcntl
import os

from autolvmb import (
    AUTOLVMB_RUNTIME_DIR,
    AutolvmbBusyError,
    AutolvmbSystemError,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug

#: Directory for run lock files
AUTOLVMB_LOCK_DIR = AUTOLVMB_RUNTIME_DIR

#: Permissions for lock directory
_AUTOLVMB_LOCK_DIR_MODE = 0o700

_LOCK_FILE = "autolvmb.lock"


def check_lock_dir(lockdir: str = AUTOLVMB_LOCK_DIR) -> str:
    """
    Check for the presence of the autolvmb lock directory and create it
    if necessary.

    :returns: The lock directory path.
    :raises: ``AutolvmbSystemError`` if the directory cannot be created.
    """
    if not exists(lockdir):
        try:
            os.makedirs(lockdir, mode=_AUTOLVMB_LOCK_DIR_MODE, exist_ok=True)
        except OSError as err:
            raise AutolvmbSystemError(
                f"Failed to create lock directory {lockdir}: {err}"
            ) from err
    return lockdir


def lock_run(lockdir: str) -> int:
    """
    Take the exclusive run lock.

    :returns: A file descriptor open on the lock file.
    :raises: ``AutolvmbBusyError`` if another invocation holds the lock.
    """

    def cleanup():
        try:
            os.close(fd)
        except OSError as err:
            _log_debug("Exception closing lock fd %d: %s", fd, err)

    lockfile = join(lockdir, _LOCK_FILE)
    _log_debug("Locking autolvmb via %s", lockfile)

    try:
        flags = os.O_RDWR | os.O_CREAT | os.O_CLOEXEC
        fd = os.open(lockfile, flags, 0o600)
    except OSError as err:
        raise AutolvmbSystemError(
            f"Failed to create lockfile {lockfile}: {err}"
        ) from err

    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError as err:
        cleanup()
        raise AutolvmbBusyError(
            f"Another autolvmb run holds the lock at '{lockfile}': {err}"
        ) from err
    except OSError as err:  # pragma: no cover
        cleanup()
        raise AutolvmbSystemError(
            f"Failed to take exclusive lock on lockfile {lockfile}: {err}"
        ) from err

    try:
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode("utf8"))
    except OSError:  # pragma: no cover
        pass

    return fd


def unlock_run(lockdir: str, fd: int):
    """
    Release the run lock held on the open file descriptor ``fd``.

    :param fd: The open locking file descriptor.
    """
    lockfile = join(lockdir, _LOCK_FILE)
    _log_debug("Unlocking autolvmb (%s)", lockfile)
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
    except OSError as err:
        raise AutolvmbSystemError(
            f"Failed to release exclusive lock on lockfile {lockfile}: {err}"
        ) from err
    finally:
        try:
            os.close(fd)
        except OSError:  # pragma: no cover
            pass


# pylint: disable=protected-access
def with_run_lock(func):
    """
    Decorator for ``Manager`` methods that must not run concurrently with
    another invocation. The lock is skipped when the manager has no lock
    directory configured.
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        # args[0] is self
        lockdir = args[0]._lock_dir
        if lockdir is None:
            return func(*args, **kwargs)
        fd = -1
        try:
            fd = lock_run(lockdir)
            _log_debug("Acquired run lock at %s", lockdir)
            ret = func(*args, **kwargs)
        finally:
            if fd >= 0:
                unlock_run(lockdir, fd)
                _log_debug("Released run lock at %s", lockdir)
        return ret

    return wrapper
