from dataclasses import dataclass, field
import time

from sops_operator.errors import SopsOperatorError


class DeadlineExceededError(SopsOperatorError):
    """
    Raised when a reconcile runs past its deadline before calling into a collaborator.
    """


@dataclass
class Deadline:
    """
    Tracks the time that is left for a single reconcile. The remaining time is passed to every blocking call into a
    collaborator (the `sops` process, the Kubernetes API) as its timeout.
    """

    seconds: float | None
    """
    The total time budget. `None` means no deadline.
    """

    started: float = field(default_factory=time.monotonic)

    def remaining(self) -> float | None:
        """
        Return the number of seconds left, or `None` if there is no deadline.

        Raises:
            DeadlineExceededError: If the deadline has passed.
        """

        if self.seconds is None:
            return None
        left = self.seconds - (time.monotonic() - self.started)
        if left <= 0:
            raise DeadlineExceededError(f"reconcile deadline of {self.seconds}s exceeded")
        return left
