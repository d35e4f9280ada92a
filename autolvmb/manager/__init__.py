# Copyright Red Hat
#
# autolvmb/manager/__init__.py - Automatic LVM snapshot manager
#
# This file is part of the autolvmb project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Top level interface to the snapshot retention manager.
"""

from ._manager import Manager, RunResult  # noqa: F401, F403
from ._config import AutolvmbConfig, AUTOLVMB_CFG_PATH
from ._confirm import Confirm, InteractiveConfirm, UnattendedConfirm, confirm
from ._lock import AUTOLVMB_LOCK_DIR, check_lock_dir
from ._policy import RetentionPolicy, decide

__all__ = [
    "Manager",
    "RunResult",
    "AutolvmbConfig",
    "AUTOLVMB_CFG_PATH",
    "AUTOLVMB_LOCK_DIR",
    "check_lock_dir",
    "Confirm",
    "InteractiveConfirm",
    "UnattendedConfirm",
    "confirm",
    "RetentionPolicy",
    "decide",
]
