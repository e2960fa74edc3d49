import time

import pytest

from sops_operator.deadline import Deadline, DeadlineExceededError


def test__Deadline__without_budget_never_expires() -> None:
    assert Deadline(None, started=time.monotonic() - 3600).remaining() is None


def test__Deadline__remaining_shrinks_with_elapsed_time() -> None:
    fresh = Deadline(10.0).remaining()
    used = Deadline(10.0, started=time.monotonic() - 4.0).remaining()

    assert fresh is not None and 9.0 < fresh <= 10.0
    assert used is not None and used <= 6.0


def test__Deadline__raises_once_budget_is_used_up() -> None:
    deadline = Deadline(1.0, started=time.monotonic() - 2.0)

    with pytest.raises(DeadlineExceededError, match="reconcile deadline of 1.0s exceeded"):
        deadline.remaining()
