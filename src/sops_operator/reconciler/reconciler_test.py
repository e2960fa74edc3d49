from datetime import datetime, timedelta, timezone
import time

import pytest

from sops_operator.decryptor import DecryptionError, Decryptor
from sops_operator.events import RecordingEventRecorder
from sops_operator.reconciler import Result, SopsSecretReconciler, capitalize_first
from sops_operator.resources import ObjectKey, ObjectMetadata, OwnerReference
from sops_operator.resources.secret import Secret
from sops_operator.resources.sopssecret import SopsSecret, SopsSecretObjectMeta, SopsSecretSpec, SopsSecretStatus
from sops_operator.store import ConflictError, NotFoundError, StoreError
from sops_operator.store.memory import MemoryResourceStore

NAME = "test-secret"
NAMESPACE = "test-namespace"
KEY = ObjectKey(NAMESPACE, NAME)
NOW = datetime(2024, 7, 9, 22, 26, 18, tzinfo=timezone.utc)


class FakeDecryptor(Decryptor):
    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.fail_for = fail_for or set()
        self.calls: list[tuple[str, str, float | None]] = []

    def decrypt(self, file_name: str, encrypted: str, timeout: float | None = None) -> bytes:
        self.calls.append((file_name, encrypted, timeout))
        if file_name in self.fail_for:
            raise DecryptionError(f"failed to decrypt file: no key could decrypt {file_name}")
        return b"unencrypted"


def new_sopssecret(**spec_kwargs: object) -> SopsSecret:
    return SopsSecret(
        metadata=ObjectMetadata(name=NAME, namespace=NAMESPACE),
        spec=SopsSecretSpec(**spec_kwargs),  # type: ignore[arg-type]
    )


@pytest.fixture
def store() -> MemoryResourceStore:
    return MemoryResourceStore()


@pytest.fixture
def recorder() -> RecordingEventRecorder:
    return RecordingEventRecorder()


@pytest.fixture
def decryptor() -> FakeDecryptor:
    return FakeDecryptor()


@pytest.fixture
def reconciler(
    store: MemoryResourceStore, decryptor: FakeDecryptor, recorder: RecordingEventRecorder
) -> SopsSecretReconciler:
    return SopsSecretReconciler(store, decryptor, recorder, clock=lambda: NOW)


@pytest.mark.parametrize(
    "metadata",
    [
        SopsSecretObjectMeta(),
        SopsSecretObjectMeta(labels={"mylabel": "foo"}, annotations={"myannotation": "bar"}),
    ],
    ids=["without metadata", "with metadata"],
)
def test__SopsSecretReconciler__creates_secret(
    store: MemoryResourceStore,
    recorder: RecordingEventRecorder,
    reconciler: SopsSecretReconciler,
    metadata: SopsSecretObjectMeta,
) -> None:
    sopssecret = store.add(new_sopssecret(stringData={"test.yaml": "encrypted"}, metadata=metadata))

    assert reconciler.reconcile(KEY) == Result()

    secret = store.get_secret(KEY)
    assert secret.get_data() == {"test.yaml": b"unencrypted"}
    assert secret.metadata.labels == metadata.labels
    assert secret.metadata.annotations == metadata.annotations
    assert secret.type == "Opaque"
    assert secret.metadata.ownerReferences == [
        OwnerReference(
            apiVersion="craftypath.github.io/v1alpha1",
            kind="SopsSecret",
            name=NAME,
            uid=sopssecret.metadata.uid,
            controller=True,
            blockOwnerDeletion=True,
        )
    ]
    assert recorder.pop() == "Normal Created Created secret: test-secret"

    status = store.get_sopssecret(KEY).status
    assert status == SopsSecretStatus(lastUpdate="2024-07-09T22:26:18Z", reason="", status="Success")


def test__SopsSecretReconciler__updates_secret(
    store: MemoryResourceStore, recorder: RecordingEventRecorder, reconciler: SopsSecretReconciler
) -> None:
    store.add(new_sopssecret())

    assert reconciler.reconcile(KEY) == Result()
    assert recorder.pop() == "Normal Created Created secret: test-secret"
    secret = store.get_secret(KEY)
    assert not secret.metadata.labels
    assert not secret.metadata.annotations

    sopssecret = store.get_sopssecret(KEY)
    sopssecret.spec.metadata.labels = {"mylabel": "foo"}
    sopssecret.spec.metadata.annotations = {"myannotation": "bar"}
    store.update_sopssecret(sopssecret)

    assert reconciler.reconcile(KEY) == Result()
    secret = store.get_secret(KEY)
    assert secret.metadata.labels == {"mylabel": "foo"}
    assert secret.metadata.annotations == {"myannotation": "bar"}
    assert recorder.pop() == "Normal Updated Updated secret: test-secret"


def test__SopsSecretReconciler__does_not_touch_secret_it_does_not_own(
    store: MemoryResourceStore, recorder: RecordingEventRecorder, reconciler: SopsSecretReconciler
) -> None:
    store.add(Secret(metadata=ObjectMetadata(name=NAME, namespace=NAMESPACE), data={"foreign": "ZGF0YQ=="}))
    store.add(new_sopssecret(stringData={"test.yaml": "encrypted"}))
    foreign = store.get_secret(KEY)

    result = reconciler.reconcile(KEY)

    assert result == Result(requeue=True, requeue_after=timedelta(seconds=2))
    assert store.get_secret(KEY) == foreign
    event = recorder.pop()
    assert event.startswith("Warning ProcessingError ")
    assert "Secret already exists and not owned by sops-operator" in event
    status = store.get_sopssecret(KEY).status
    assert status.status == "Failure"
    assert status.reason == "secret already exists and not owned by sops-operator"

    store.delete(Secret.KIND, KEY)

    assert reconciler.reconcile(KEY) == Result()
    assert recorder.pop() == "Normal Created Created secret: test-secret"


def test__SopsSecretReconciler__does_not_touch_secret_owned_by_another_sopssecret(
    store: MemoryResourceStore, recorder: RecordingEventRecorder, reconciler: SopsSecretReconciler
) -> None:
    other_owner = OwnerReference(
        apiVersion="craftypath.github.io/v1alpha1", kind="SopsSecret", name="other", uid="1234", controller=True
    )
    store.add(Secret(metadata=ObjectMetadata(name=NAME, namespace=NAMESPACE, ownerReferences=[other_owner])))
    store.add(new_sopssecret())

    assert reconciler.reconcile(KEY).requeue
    assert "not owned by sops-operator" in recorder.pop()


def test__SopsSecretReconciler__is_idempotent(
    store: MemoryResourceStore, recorder: RecordingEventRecorder, reconciler: SopsSecretReconciler
) -> None:
    store.add(new_sopssecret(stringData={"test.yaml": "encrypted"}, type="kubernetes.io/tls"))
    reconciler.reconcile(KEY)
    recorder.pop()
    writes = list(store.writes)

    assert reconciler.reconcile(KEY) == Result()

    assert store.writes == writes
    assert not recorder.events


def test__SopsSecretReconciler__replaces_data_and_metadata_instead_of_merging(
    store: MemoryResourceStore, reconciler: SopsSecretReconciler
) -> None:
    store.add(
        new_sopssecret(
            stringData={"a.yaml": "encrypted", "b.json": "encrypted"},
            metadata=SopsSecretObjectMeta(labels={"keep": "1", "drop": "2"}, annotations={"drop": "3"}),
        )
    )
    reconciler.reconcile(KEY)

    sopssecret = store.get_sopssecret(KEY)
    sopssecret.spec.stringData = {"a.yaml": "encrypted"}
    sopssecret.spec.metadata = SopsSecretObjectMeta(labels={"keep": "1"})
    store.update_sopssecret(sopssecret)
    reconciler.reconcile(KEY)

    secret = store.get_secret(KEY)
    assert secret.get_data() == {"a.yaml": b"unencrypted"}
    assert secret.metadata.labels == {"keep": "1"}
    assert not secret.metadata.annotations


def test__SopsSecretReconciler__applies_type_only_if_set(
    store: MemoryResourceStore, reconciler: SopsSecretReconciler
) -> None:
    store.add(new_sopssecret(type="kubernetes.io/dockerconfigjson"))
    reconciler.reconcile(KEY)
    assert store.get_secret(KEY).type == "kubernetes.io/dockerconfigjson"

    sopssecret = store.get_sopssecret(KEY)
    sopssecret.spec.type = None
    sopssecret.spec.stringData = {"changed": "encrypted"}
    store.update_sopssecret(sopssecret)
    reconciler.reconcile(KEY)
    assert store.get_secret(KEY).type == "kubernetes.io/dockerconfigjson"


def test__SopsSecretReconciler__decryption_failure_writes_nothing(
    store: MemoryResourceStore, recorder: RecordingEventRecorder
) -> None:
    decryptor = FakeDecryptor(fail_for={"bad.env"})
    reconciler = SopsSecretReconciler(store, decryptor, recorder, clock=lambda: NOW)
    store.add(new_sopssecret(stringData={"good.yaml": "encrypted", "bad.env": "encrypted"}))

    result = reconciler.reconcile(KEY)

    assert result == Result(requeue=True, requeue_after=timedelta(seconds=2))
    assert [w.kind for w in store.writes] == ["SopsSecret"]
    assert recorder.pop() == (
        "Warning ProcessingError Failed to update secret: failed to decrypt file: no key could decrypt bad.env"
    )
    status = store.get_sopssecret(KEY).status
    assert status.status == "Failure"
    assert status.reason == "failed to update secret: failed to decrypt file: no key could decrypt bad.env"


def test__SopsSecretReconciler__backs_off_based_on_previous_failure(
    store: MemoryResourceStore, recorder: RecordingEventRecorder
) -> None:
    decryptor = FakeDecryptor(fail_for={"test.yaml"})
    reconciler = SopsSecretReconciler(store, decryptor, recorder, clock=lambda: NOW)
    sopssecret = new_sopssecret(stringData={"test.yaml": "encrypted"})
    sopssecret.status = SopsSecretStatus(lastUpdate="2024-07-09T22:25:48Z", reason="earlier", status="Failure")
    store.add(sopssecret)

    assert reconciler.reconcile(KEY) == Result(requeue=True, requeue_after=timedelta(seconds=60))


def test__SopsSecretReconciler__first_failure_after_success_uses_base_delay(
    store: MemoryResourceStore, recorder: RecordingEventRecorder
) -> None:
    decryptor = FakeDecryptor(fail_for={"test.yaml"})
    reconciler = SopsSecretReconciler(store, decryptor, recorder, clock=lambda: NOW)
    sopssecret = new_sopssecret(stringData={"test.yaml": "encrypted"})
    sopssecret.status = SopsSecretStatus(lastUpdate="2024-07-01T00:00:00Z", reason="", status="Success")
    store.add(sopssecret)

    assert reconciler.reconcile(KEY) == Result(requeue=True, requeue_after=timedelta(seconds=2))


class FailingStatusStore(MemoryResourceStore):
    def update_sopssecret_status(self, sopssecret: SopsSecret, timeout: float | None = None) -> SopsSecret:
        raise StoreError("failed to update status of SopsSecret: connection refused")


def test__SopsSecretReconciler__status_write_failure_on_error_path_retries_quickly(
    recorder: RecordingEventRecorder,
) -> None:
    store = FailingStatusStore()
    reconciler = SopsSecretReconciler(store, FakeDecryptor(fail_for={"test.yaml"}), recorder, clock=lambda: NOW)
    sopssecret = new_sopssecret(stringData={"test.yaml": "encrypted"})
    sopssecret.status = SopsSecretStatus(lastUpdate="2024-07-09T20:00:00Z", reason="earlier", status="Failure")
    store.add(sopssecret)

    assert reconciler.reconcile(KEY) == Result(requeue=True, requeue_after=timedelta(seconds=1))
    assert recorder.pop().startswith("Warning ProcessingError Failed to update secret")


def test__SopsSecretReconciler__status_write_failure_on_success_path_retries_quickly(
    recorder: RecordingEventRecorder,
) -> None:
    store = FailingStatusStore()
    reconciler = SopsSecretReconciler(store, FakeDecryptor(), recorder, clock=lambda: NOW)
    store.add(new_sopssecret(stringData={"test.yaml": "encrypted"}))

    assert reconciler.reconcile(KEY) == Result(requeue=True, requeue_after=timedelta(seconds=1))
    assert store.get_secret(KEY).get_data() == {"test.yaml": b"unencrypted"}
    assert recorder.pop() == "Warning ProcessingError Unable to update status"


def test__SopsSecretReconciler__writes_success_status_when_secret_was_already_up_to_date(
    store: MemoryResourceStore, recorder: RecordingEventRecorder, reconciler: SopsSecretReconciler
) -> None:
    """
    If the Secret was applied but the status write failed, the next attempt finds nothing to change. The failure
    status must not stick around in that case.
    """

    store.add(new_sopssecret(stringData={"test.yaml": "encrypted"}))
    reconciler.reconcile(KEY)
    recorder.pop()
    sopssecret = store.get_sopssecret(KEY)
    sopssecret.status = SopsSecretStatus(lastUpdate="2024-07-09T22:00:00Z", reason="boom", status="Failure")
    store.update_sopssecret_status(sopssecret)

    assert reconciler.reconcile(KEY) == Result()
    assert store.get_sopssecret(KEY).status.status == "Success"
    assert not recorder.events


class ConflictOnceStore(MemoryResourceStore):
    conflicts = 0

    def update_secret(self, secret: Secret, timeout: float | None = None) -> Secret:
        if self.conflicts == 0:
            self.conflicts += 1
            # Simulate a concurrent writer that bumps the resourceVersion.
            self.add(self.get_secret(secret.metadata.key))
            raise ConflictError("the object has been modified")
        return super().update_secret(secret, timeout)


def test__SopsSecretReconciler__retries_on_optimistic_concurrency_conflict(recorder: RecordingEventRecorder) -> None:
    store = ConflictOnceStore()
    reconciler = SopsSecretReconciler(store, FakeDecryptor(), recorder, clock=lambda: NOW)
    store.add(new_sopssecret(stringData={"test.yaml": "encrypted"}))
    reconciler.reconcile(KEY)
    recorder.pop()

    sopssecret = store.get_sopssecret(KEY)
    sopssecret.spec.metadata.labels = {"mylabel": "foo"}
    store.update_sopssecret(sopssecret)

    assert reconciler.reconcile(KEY) == Result()
    assert store.conflicts == 1
    assert store.get_secret(KEY).metadata.labels == {"mylabel": "foo"}
    assert recorder.pop() == "Normal Updated Updated secret: test-secret"


def test__SopsSecretReconciler__ignores_deleted_sopssecret(reconciler: SopsSecretReconciler) -> None:
    assert reconciler.reconcile(KEY) == Result()


def test__SopsSecretReconciler__passes_remaining_time_to_decryptor(
    store: MemoryResourceStore, decryptor: FakeDecryptor, recorder: RecordingEventRecorder
) -> None:
    reconciler = SopsSecretReconciler(store, decryptor, recorder, timeout=30.0, clock=lambda: NOW)
    store.add(new_sopssecret(stringData={"test.yaml": "encrypted"}))

    reconciler.reconcile(KEY)

    [(file_name, encrypted, timeout)] = decryptor.calls
    assert (file_name, encrypted) == ("test.yaml", "encrypted")
    assert timeout is not None and 0 < timeout <= 30.0


def test__capitalize_first() -> None:
    assert capitalize_first("") == ""
    assert capitalize_first("secret already exists") == "Secret already exists"
    assert capitalize_first("ünicode") == "Ünicode"


class SlowDecryptor(FakeDecryptor):
    def decrypt(self, file_name: str, encrypted: str, timeout: float | None = None) -> bytes:
        result = super().decrypt(file_name, encrypted, timeout)
        time.sleep(0.3)
        return result


def test__SopsSecretReconciler__expired_deadline_is_a_failure(
    store: MemoryResourceStore, recorder: RecordingEventRecorder
) -> None:
    decryptor = SlowDecryptor()
    reconciler = SopsSecretReconciler(store, decryptor, recorder, timeout=0.2, clock=lambda: NOW)
    store.add(new_sopssecret(stringData={"a.yaml": "encrypted", "b.yaml": "encrypted"}))

    result = reconciler.reconcile(KEY)

    assert result == Result(requeue=True, requeue_after=timedelta(seconds=2))
    assert [call[0] for call in decryptor.calls] == ["a.yaml"]
    with pytest.raises(NotFoundError):
        store.get_secret(KEY)
    status = store.get_sopssecret(KEY).status
    assert status.status == "Failure"
    assert status.reason == "reconcile deadline of 0.2s exceeded"
    assert recorder.pop() == "Warning ProcessingError Reconcile deadline of 0.2s exceeded"
