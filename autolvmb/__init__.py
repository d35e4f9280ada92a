# Copyright Red Hat
#
# autolvmb/__init__.py - Automatic LVM snapshot package initialisation
#
# This file is part of the autolvmb project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Autolvmb top-level package.
"""
from ._autolvmb import *  # noqa: F401, F403
from ._autolvmb import __all__  # noqa: F401

__version__ = "0.1.0"
