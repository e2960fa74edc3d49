"""
The reconciliation of a single SopsSecret into the Secret that it declares.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from loguru import logger

from sops_operator.deadline import Deadline
from sops_operator.decryptor import DecryptionError, Decryptor
from sops_operator.errors import SopsOperatorError
from sops_operator.events import EventRecorder, EventType
from sops_operator.reconciler.backoff import RETRY_UNIT, StatusSnapshot, compute_next_delay
from sops_operator.resources import ObjectKey, ObjectMetadata, format_timestamp, now
from sops_operator.resources.secret import Secret
from sops_operator.resources.sopssecret import STATUS_FAILURE, STATUS_SUCCESS, SopsSecret, SopsSecretStatus
from sops_operator.store import ConflictError, NotFoundError, ResourceStore
from sops_operator.store.apply import OperationResult, create_or_update, retry_on_conflict

if TYPE_CHECKING:
    from loguru import Logger

REASON_PROCESSING_ERROR = "ProcessingError"
""" The event reason for all failures. """


class OwnershipConflictError(SopsOperatorError):
    """
    Raised when the Secret that a SopsSecret declares already exists but is not controlled by that SopsSecret.
    """

    def __init__(self) -> None:
        super().__init__("secret already exists and not owned by sops-operator")


@dataclass(frozen=True)
class Result:
    """
    Tells the caller of [SopsSecretReconciler.reconcile()] whether and when to reconcile the same key again.
    """

    requeue: bool = False
    requeue_after: timedelta = timedelta(0)


class SopsSecretReconciler:
    """
    Reconciles a SopsSecret into a Secret of the same name and namespace.

    The reconciler keeps no state between calls. Everything it needs to know about previous attempts is read back from
    the SopsSecret's status, so it is safe to call from multiple threads for different keys, but calls for the same
    key must not overlap.
    """

    def __init__(
        self,
        store: ResourceStore,
        decryptor: Decryptor,
        recorder: EventRecorder,
        timeout: float | None = None,
        clock: Callable[[], datetime] = now,
    ) -> None:
        """
        Args:
            store: Where SopsSecrets are read from and Secrets are written to.
            decryptor: Decrypts the `stringData` entries of a SopsSecret.
            recorder: Receives success and failure events.
            timeout: The time budget in seconds for applying the Secret, and separately for writing the status.
            clock: Returns the current time. Used for the `lastUpdate` of the status.
        """

        self.store = store
        self.decryptor = decryptor
        self.recorder = recorder
        self.timeout = timeout
        self.clock = clock

    def reconcile(self, key: ObjectKey, log: "Logger | None" = None) -> Result:
        """
        Bring the Secret for the SopsSecret identified by *key* up to date and record the outcome in the status.

        Failures to decrypt or apply the Secret are not raised but turned into a failure status and a requeue.
        Errors raised while loading the SopsSecret itself are propagated.
        """

        log = log or logger.bind(namespace=key.namespace, name=key.name)
        log.info("Reconciling SopsSecret")
        deadline = Deadline(self.timeout)

        try:
            sopssecret = self.store.get_sopssecret(key, timeout=deadline.remaining())
        except NotFoundError:
            log.debug("SopsSecret not found, it has probably been deleted")
            return Result()

        try:
            result = retry_on_conflict(lambda: self._apply(sopssecret, log, deadline))
        except SopsOperatorError as exc:
            return self.manage_error(sopssecret, exc, log)

        return self.manage_success(sopssecret, result, log)

    def _apply(self, sopssecret: SopsSecret, log: "Logger", deadline: Deadline) -> OperationResult:
        secret = Secret(metadata=ObjectMetadata(name=sopssecret.metadata.name, namespace=sopssecret.metadata.namespace))

        def mutate(secret: Secret) -> None:
            if secret.metadata.creationTimestamp and not sopssecret.controls(secret.metadata):
                raise OwnershipConflictError()
            try:
                self._update(secret, sopssecret, log, deadline)
            except DecryptionError as exc:
                raise DecryptionError(f"failed to update secret: {exc}") from exc

        return create_or_update(self.store, secret, mutate, deadline)

    def _update(self, secret: Secret, sopssecret: SopsSecret, log: "Logger", deadline: Deadline) -> None:
        log.debug("Handling Secret update")

        # Decrypt everything before touching the Secret, so that a failure leaves it unchanged.
        data: dict[str, bytes] = {}
        for file_name, encrypted in sorted(sopssecret.spec.stringData.items()):
            log.debug("Decrypting data for '{}'", file_name)
            data[file_name] = self.decryptor.decrypt(file_name, encrypted, timeout=deadline.remaining())

        secret.set_data(data)
        secret.metadata.labels = dict(sopssecret.spec.metadata.labels or {}) or None
        secret.metadata.annotations = dict(sopssecret.spec.metadata.annotations or {}) or None
        if sopssecret.spec.type:
            secret.type = sopssecret.spec.type

        log.debug("Setting controller reference")
        secret.metadata.set_controller_reference(sopssecret.owner_reference())

    def manage_error(self, sopssecret: SopsSecret, error: Exception, log: "Logger") -> Result:
        """
        Record a failed attempt in the status of the SopsSecret and decide when to try again.
        """

        log.debug("Handling reconciliation error")
        self.recorder.event(sopssecret, EventType.WARNING, REASON_PROCESSING_ERROR, capitalize_first(str(error)))

        previous = StatusSnapshot.of(sopssecret.status)
        timestamp = self.clock()
        status = SopsSecretStatus(lastUpdate=format_timestamp(timestamp), reason=str(error), status=STATUS_FAILURE)

        try:
            self._write_status(sopssecret, status)
        except SopsOperatorError as exc:
            log.error("Unable to update status: {}", exc)
            return Result(requeue=True, requeue_after=RETRY_UNIT)

        requeue_after = compute_next_delay(previous, timestamp)
        log.error("Failed to reconcile SopsSecret, requeue after {}: {}", requeue_after, error)
        return Result(requeue=True, requeue_after=requeue_after)

    def manage_success(self, sopssecret: SopsSecret, result: OperationResult, log: "Logger") -> Result:
        """
        Record a successful attempt in the status of the SopsSecret. If nothing changed and the stored status is
        already `Success`, nothing is written. A `Secret` that an earlier attempt applied without managing to write
        its status still gets its `Success` status here, without an event.
        """

        log.debug("Handling reconciliation success")

        if result == OperationResult.NONE and sopssecret.status.status == STATUS_SUCCESS:
            log.debug("Secret is up to date")
            return Result()

        status = SopsSecretStatus(lastUpdate=format_timestamp(self.clock()), reason="", status=STATUS_SUCCESS)

        try:
            self._write_status(sopssecret, status)
        except SopsOperatorError as exc:
            log.error("Unable to update status: {}", exc)
            self.recorder.event(sopssecret, EventType.WARNING, REASON_PROCESSING_ERROR, "Unable to update status")
            return Result(requeue=True, requeue_after=RETRY_UNIT)

        if result == OperationResult.NONE:
            log.info("Secret was already up to date, status updated")
            return Result()

        verb = capitalize_first(result.value)
        message = f"{verb} secret: {sopssecret.metadata.name}"
        log.info("Status updated successfully: {}", message)
        self.recorder.event(sopssecret, EventType.NORMAL, verb, message)
        return Result()

    def _write_status(self, sopssecret: SopsSecret, status: SopsSecretStatus) -> None:
        """
        Write *status* to the SopsSecret. On a conflict, the SopsSecret is read again and the write is retried.
        """

        deadline = Deadline(self.timeout)
        key = sopssecret.metadata.key
        current: SopsSecret | None = sopssecret

        def write() -> None:
            nonlocal current
            if current is None:
                current = self.store.get_sopssecret(key, timeout=deadline.remaining())
            current.status = status
            try:
                self.store.update_sopssecret_status(current, timeout=deadline.remaining())
            except ConflictError:
                current = None
                raise

        retry_on_conflict(write)


def capitalize_first(s: str) -> str:
    """
    Capitalize the first character of *s*, leaving the rest unchanged.
    """

    return s[:1].upper() + s[1:]
