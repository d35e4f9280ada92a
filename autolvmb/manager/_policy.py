# Copyright Red Hat
#
# autolvmb/manager/_policy.py - Snapshot retention policy
#
# This file is part of the autolvmb project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Snapshot retention and eviction policy for autolvmb.
"""
from dataclasses import dataclass, asdict
from json import dumps
import logging

from autolvmb import (
    AutolvmbArgumentError,
    AUTOLVMB_SUBSYSTEM_POLICY,
    DEFAULT_USAGE_THRESHOLD,
    DEFAULT_COUNT_THRESHOLD,
    DEFAULT_BATCH_SIZE,
    RetentionDecision,
    VolumeGroup,
    eligible_snapshots,
    select_oldest,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_policy(msg, *args, **kwargs):
    """A wrapper for policy subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": AUTOLVMB_SUBSYSTEM_POLICY}, **kwargs)


def _check_percent(name, value):
    if isinstance(value, bool) or not isinstance(value, int):
        raise AutolvmbArgumentError(f"{name} must be an integer percentage: {value!r}")
    if not 0 <= value <= 100:
        raise AutolvmbArgumentError(f"{name} must be in the range 0-100: {value}")


def _check_positive(name, value):
    if isinstance(value, bool) or not isinstance(value, int):
        raise AutolvmbArgumentError(f"{name} must be an integer: {value!r}")
    if value <= 0:
        raise AutolvmbArgumentError(f"{name} must be a positive integer: {value}")


# pylint: disable=too-many-arguments
def decide(
    group: VolumeGroup,
    used_space_percent: int,
    usage_threshold: int,
    count_threshold: int,
    batch_size: int,
    strict: bool = True,
) -> RetentionDecision:
    """
    Decide which snapshots of ``group`` to remove.

    Rules are evaluated in order and the first match wins:

    1. No eligible oldest snapshot: ``NO_ACTION``.
    2. Eligible snapshot count ``>= count_threshold``: ``REMOVE_BATCH`` of
       the ``batch_size`` oldest eligible snapshots.
    3. ``used_space_percent >= usage_threshold``: ``REMOVE_ONE`` of the
       oldest eligible snapshot.
    4. Otherwise ``NO_ACTION``.

    Batch cleanup takes precedence over single removal so that the
    snapshot count cannot keep growing while each run removes a single
    snapshot to stay just under the usage threshold.

    This function does not query the backend and has no side effects:
    calling it twice with the same arguments returns equal decisions.

    :param group: The ``VolumeGroup`` inventory to evaluate.
    :param used_space_percent: Current used space percentage (0-100).
    :param usage_threshold: Used space percentage that triggers removal
                            of the oldest snapshot (0-100).
    :param count_threshold: Eligible snapshot count that triggers batch
                            cleanup.
    :param batch_size: Number of snapshots removed by batch cleanup.
    :param strict: Do not fall back to the next-oldest snapshot if the
                   oldest is in use.
    :returns: A ``RetentionDecision``.
    :raises: ``AutolvmbArgumentError`` if an argument is out of range.
    """
    _check_percent("used_space_percent", used_space_percent)
    _check_percent("usage_threshold", usage_threshold)
    _check_positive("count_threshold", count_threshold)
    _check_positive("batch_size", batch_size)

    oldest = select_oldest(group, strict=strict)
    if oldest is None:
        return RetentionDecision.no_action(
            f"No removable snapshots of {group.origin_name} in {group.name}"
        )

    eligible = eligible_snapshots(group)
    _log_debug_policy(
        "Evaluating %s: eligible=%d used=%d%% usage_threshold=%d%% "
        "count_threshold=%d batch_size=%d",
        group.name,
        len(eligible),
        used_space_percent,
        usage_threshold,
        count_threshold,
        batch_size,
    )

    if len(eligible) >= count_threshold:
        batch = eligible[0:batch_size]
        _log_debug_policy(
            "Batch cleanup selected: %s", ", ".join(lv.name for lv in batch)
        )
        return RetentionDecision.remove_batch(
            batch,
            f"{len(eligible)} snapshots is at or above the count threshold "
            f"of {count_threshold}",
        )

    if used_space_percent >= usage_threshold:
        _log_debug_policy("Single removal selected: %s", oldest.name)
        return RetentionDecision.remove_one(
            oldest,
            f"Used space {used_space_percent}% is at or above the threshold "
            f"of {usage_threshold}%",
        )

    return RetentionDecision.no_action(
        f"At {used_space_percent}%, used space is below {usage_threshold}% "
        f"and {len(eligible)} snapshots is below {count_threshold}"
    )


@dataclass(frozen=True)
class RetentionPolicy:
    """
    A configured set of retention thresholds.
    """

    #: Used space percentage that triggers removal of the oldest snapshot.
    usage_threshold: int = DEFAULT_USAGE_THRESHOLD
    #: Eligible snapshot count that triggers batch cleanup.
    count_threshold: int = DEFAULT_COUNT_THRESHOLD
    #: Number of snapshots removed by a batch cleanup.
    batch_size: int = DEFAULT_BATCH_SIZE
    #: Do not fall back to the next-oldest snapshot if the oldest is in use.
    strict: bool = True

    def __post_init__(self):
        _check_percent("usage_threshold", self.usage_threshold)
        _check_positive("count_threshold", self.count_threshold)
        _check_positive("batch_size", self.batch_size)

    def __str__(self):
        return ", ".join(f"{key}={val}" for key, val in self.to_dict().items())

    def to_dict(self):
        """
        Return a dictionary representation of this ``RetentionPolicy``.

        :returns: This ``RetentionPolicy`` as a dictionary.
        :rtype: ``dict``
        """
        return asdict(self)

    def json(self, pretty=False):
        """
        Return a JSON representation of this ``RetentionPolicy``.

        :returns: This ``RetentionPolicy`` as a JSON string.
        :rtype: ``str``
        """
        return dumps(self.to_dict(), indent=4 if pretty else None)

    def evaluate(self, group: VolumeGroup, used_space_percent: int):
        """
        Evaluate ``group`` against this policy.

        :param group: The ``VolumeGroup`` inventory to evaluate.
        :param used_space_percent: Current used space percentage.
        :returns: A ``RetentionDecision``.
        """
        return decide(
            group,
            used_space_percent,
            self.usage_threshold,
            self.count_threshold,
            self.batch_size,
            strict=self.strict,
        )


__all__ = [
    "RetentionPolicy",
    "decide",
]
