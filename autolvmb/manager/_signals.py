# Copyright Red Hat
#
# autolvmb/manager/_signals.py - Signal handling around volume mutations
#
# This file is part of the autolvmb project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Termination signals are held back while the backend creates or removes a
volume so that an interrupted run never abandons a half-finished
``lvcreate`` or ``lvremove``.
"""
from signal import SIG_BLOCK, SIG_SETMASK, SIGINT, SIGTERM, pthread_sigmask
from contextlib import contextmanager
import logging

_log = logging.getLogger(__name__)
_log_debug = _log.debug

_MUTATION_SIGNALS = {SIGINT, SIGTERM}


@contextmanager
def mutation_signals_blocked(what: str):
    """
    Hold ``SIGINT`` and ``SIGTERM`` for the duration of the ``with`` block
    and restore the previous signal mask on exit. Pending signals are
    delivered once the mask is restored.

    :param what: A description of the mutation, used in debug logs.
    """
    _log_debug("Holding signals %s during %s", _MUTATION_SIGNALS, what)
    previous = pthread_sigmask(SIG_BLOCK, _MUTATION_SIGNALS)
    try:
        yield
    finally:
        _log_debug("Restoring signal mask after %s", what)
        pthread_sigmask(SIG_SETMASK, previous)
