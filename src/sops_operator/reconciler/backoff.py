"""
Computes how long to wait before retrying a SopsSecret that failed to reconcile.

There is no persisted retry counter. Instead, the delay is derived from the previous status of the SopsSecret: the
time that passed since the last failure becomes the new base interval, and the delay is twice that, capped at
[MAX_DELAY]. Consecutive failures therefore back off exponentially, and the state survives operator restarts.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from sops_operator.resources.sopssecret import STATUS_SUCCESS, SopsSecretStatus

RETRY_UNIT = timedelta(seconds=1)
""" The base interval after a first failure, and the requeue delay when a status write fails. """

MAX_DELAY = timedelta(hours=6)
""" The maximum delay between two attempts. """


@dataclass(frozen=True)
class StatusSnapshot:
    """
    The status of a SopsSecret before the current attempt overwrote it.
    """

    previous_status: str
    previous_timestamp: datetime | None

    @staticmethod
    def of(status: SopsSecretStatus) -> "StatusSnapshot":
        return StatusSnapshot(status.status or "", status.last_update_time)


def compute_next_delay(previous: StatusSnapshot, now: datetime) -> timedelta:
    """
    Compute the requeue delay for an attempt that failed at *now*.

    Args:
        previous: The status of the SopsSecret before it was updated with the failure.
        now: The `lastUpdate` written with the failure.
    """

    if previous.previous_timestamp is None or previous.previous_status == STATUS_SUCCESS:
        interval = RETRY_UNIT
    else:
        seconds = round((now - previous.previous_timestamp).total_seconds())
        interval = max(timedelta(seconds=seconds), RETRY_UNIT)

    return min(interval * 2, MAX_DELAY)
