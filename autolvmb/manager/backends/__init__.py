# Copyright Red Hat
#
# autolvmb/manager/backends/__init__.py - Volume management backends
#
# This file is part of the autolvmb project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Volume management backend interface.
"""
from ._backend import *  # noqa: F401, F403
from ._backend import __all__  # noqa: F401
