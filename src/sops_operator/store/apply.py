import copy
from collections.abc import Callable
from enum import Enum
import random
import time
from typing import TypeVar

from loguru import logger

from sops_operator.deadline import Deadline
from sops_operator.resources.secret import Secret
from sops_operator.store import ConflictError, NotFoundError, ResourceStore

T = TypeVar("T")


class OperationResult(str, Enum):
    """
    The action that [create_or_update()] performed.
    """

    NONE = "unchanged"
    CREATED = "created"
    UPDATED = "updated"


def create_or_update(
    store: ResourceStore,
    secret: Secret,
    mutate: Callable[[Secret], None],
    deadline: Deadline | None = None,
) -> OperationResult:
    """
    Create or update the Secret identified by *secret*'s name and namespace. The current state of the Secret is read
    from the store into *secret*, then *mutate* is called to bring it into the desired state. The Secret is only
    written if *mutate* changed it.

    Args:
        store: The store to read from and write to.
        secret: A Secret that has at least `metadata.name` and `metadata.namespace` set. It holds the final state of
            the Secret when the function returns.
        mutate: Mutates the Secret in place. Exceptions raised by it propagate unchanged and nothing is written.
        deadline: The deadline for the store calls.
    """

    deadline = deadline or Deadline(None)
    key = secret.metadata.key

    try:
        current = store.get_secret(key, timeout=deadline.remaining())
    except NotFoundError:
        mutate(secret)
        _assert_key_unchanged(secret, key)
        created = store.create_secret(secret, timeout=deadline.remaining())
        _assign(secret, created)
        return OperationResult.CREATED

    _assign(secret, current)
    before = current.dump()
    mutate(secret)
    _assert_key_unchanged(secret, key)
    if secret.dump() == before:
        return OperationResult.NONE

    updated = store.update_secret(secret, timeout=deadline.remaining())
    _assign(secret, updated)
    return OperationResult.UPDATED


def retry_on_conflict(
    func: Callable[[], T],
    steps: int = 5,
    interval: float = 0.01,
    jitter: float = 0.1,
) -> T:
    """
    Call *func*, and call it again if it raised a [ConflictError]. *func* must re-read the objects it writes on every
    call so that it recomputes its changes against their latest state.

    Args:
        func: The function to call.
        steps: The maximum number of attempts.
        interval: The seconds to sleep between attempts.
        jitter: The maximum relative jitter added to *interval*.
    """

    for attempt in range(1, steps + 1):
        try:
            return func()
        except ConflictError as exc:
            if attempt == steps:
                raise
            logger.debug("Conflict on attempt {}/{}, retrying: {}", attempt, steps, exc)
            time.sleep(interval * (1 + random.random() * jitter))

    raise AssertionError("unreachable")


def _assign(target: Secret, source: Secret) -> None:
    for name, value in vars(source).items():
        setattr(target, name, copy.deepcopy(value))


def _assert_key_unchanged(secret: Secret, key: object) -> None:
    if secret.metadata.key != key:
        raise ValueError(f"mutate function must not change the name or namespace of the Secret (was {key})")
