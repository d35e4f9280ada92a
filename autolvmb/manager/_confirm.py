# Copyright Red Hat
#
# autolvmb/manager/_confirm.py - Confirmation of destructive actions
#
# This file is part of the autolvmb project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Interactive and unattended confirmation of destructive actions.
"""
import logging

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning

_YES_NO_SUFFIX = " (y/n): "


class Confirm:
    """
    Abstract base class for confirmation gates.
    """

    def confirm(self, prompt: str) -> bool:
        """
        Ask whether the action described by ``prompt`` should proceed.

        :param prompt: A question describing the action.
        :returns: ``True`` to proceed or ``False`` to skip the action.
        """
        raise NotImplementedError


class UnattendedConfirm(Confirm):
    """
    Confirmation gate for unattended runs: every action is approved.
    """

    def confirm(self, prompt: str) -> bool:
        _log_debug("Unattended: confirming '%s'", prompt)
        return True


class InteractiveConfirm(Confirm):
    """
    Confirmation gate that asks on the terminal and blocks until the
    user answers yes or no.
    """

    def __init__(self, input_fn=None):
        """
        Initialise a new ``InteractiveConfirm``.

        :param input_fn: The function used to read an answer; called with
                         the prompt string. Defaults to ``input()``.
        """
        self._input = input_fn

    def confirm(self, prompt: str) -> bool:
        _log_info(prompt)
        while True:
            try:
                answer = (self._input or input)(prompt + _YES_NO_SUFFIX)
            except EOFError:
                _log_info("No answer on standard input: action cancelled.")
                return False
            answer = answer.strip()
            if answer[:1] in ("y", "Y"):
                return True
            if answer[:1] in ("n", "N"):
                _log_info("Action cancelled by user.")
                return False
            _log_warn("Please answer Y for yes or N for no.")


def confirm(prompt: str, unattended: bool) -> bool:
    """
    Confirm a destructive action.

    :param prompt: A question describing the action.
    :param unattended: ``True`` to approve without asking.
    :returns: ``True`` to proceed or ``False`` to skip the action.
    """
    gate = UnattendedConfirm() if unattended else InteractiveConfirm()
    return gate.confirm(prompt)


__all__ = [
    "Confirm",
    "InteractiveConfirm",
    "UnattendedConfirm",
    "confirm",
]
