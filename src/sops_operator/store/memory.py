import copy
from dataclasses import dataclass, field
import threading
from typing import Any
import uuid

from sops_operator.resources import KubernetesResource, ObjectKey, format_timestamp, now
from sops_operator.resources.secret import Secret
from sops_operator.resources.sopssecret import SopsSecret
from sops_operator.store import ConflictError, NotFoundError, ResourceStore


@dataclass(frozen=True)
class Write:
    """
    Records a write to the [MemoryResourceStore].
    """

    verb: str
    kind: str
    key: ObjectKey


@dataclass
class MemoryResourceStore(ResourceStore):
    """
    A [ResourceStore] that keeps objects in memory. It assigns `uid`, `resourceVersion` and `creationTimestamp` and
    enforces optimistic concurrency the way the Kubernetes API server does, which makes it a faithful stand-in for
    running the reconciler without a cluster.
    """

    objects: dict[tuple[str, ObjectKey], KubernetesResource] = field(default_factory=dict)
    writes: list[Write] = field(default_factory=list)
    _version: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add(self, obj: KubernetesResource) -> KubernetesResource:
        """
        Add or overwrite an object without any checks and without recording a write. Missing server-side fields are
        filled in. Returns a copy of the stored object.
        """

        with self._lock:
            obj = copy.deepcopy(obj)
            metadata = obj.metadata  # type: ignore[attr-defined]
            metadata.uid = metadata.uid or str(uuid.uuid4())
            metadata.creationTimestamp = metadata.creationTimestamp or format_timestamp(now())
            metadata.resourceVersion = self._next_version()
            self.objects[(obj.KIND, metadata.key)] = obj
            return copy.deepcopy(obj)

    def delete(self, kind: str, key: ObjectKey) -> None:
        with self._lock:
            if self.objects.pop((kind, key), None) is None:
                raise NotFoundError(f'{kind.lower()}s "{key.name}" not found')
            self.writes.append(Write("delete", kind, key))

    def update_sopssecret(self, sopssecret: SopsSecret) -> SopsSecret:
        """
        Update the spec and metadata of a SopsSecret, keeping its stored status. This is what a user editing the
        SopsSecret does.
        """

        with self._lock:
            stored = self._get(SopsSecret, sopssecret.metadata.key)
            self._check_version(stored, sopssecret)
            updated = copy.deepcopy(sopssecret)
            updated.status = copy.deepcopy(stored.status)
            updated.metadata.uid = stored.metadata.uid
            updated.metadata.creationTimestamp = stored.metadata.creationTimestamp
            return self._put("update", updated)

    # ResourceStore

    def get_sopssecret(self, key: ObjectKey, timeout: float | None = None) -> SopsSecret:
        with self._lock:
            return copy.deepcopy(self._get(SopsSecret, key))

    def update_sopssecret_status(self, sopssecret: SopsSecret, timeout: float | None = None) -> SopsSecret:
        with self._lock:
            stored = self._get(SopsSecret, sopssecret.metadata.key)
            self._check_version(stored, sopssecret)
            updated = copy.deepcopy(stored)
            updated.status = copy.deepcopy(sopssecret.status)
            return self._put("update-status", updated)

    def get_secret(self, key: ObjectKey, timeout: float | None = None) -> Secret:
        with self._lock:
            return copy.deepcopy(self._get(Secret, key))

    def create_secret(self, secret: Secret, timeout: float | None = None) -> Secret:
        with self._lock:
            key = secret.metadata.key
            if (Secret.KIND, key) in self.objects:
                raise ConflictError(f'secrets "{key.name}" already exists')
            created = copy.deepcopy(secret)
            created.metadata.uid = str(uuid.uuid4())
            created.metadata.creationTimestamp = format_timestamp(now())
            created.type = created.type or "Opaque"
            return self._put("create", created)

    def update_secret(self, secret: Secret, timeout: float | None = None) -> Secret:
        with self._lock:
            stored = self._get(Secret, secret.metadata.key)
            self._check_version(stored, secret)
            updated = copy.deepcopy(secret)
            updated.metadata.uid = stored.metadata.uid
            updated.metadata.creationTimestamp = stored.metadata.creationTimestamp
            return self._put("update", updated)

    # Internal

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _get(self, kind: type, key: ObjectKey) -> Any:
        try:
            return self.objects[(kind.KIND, key)]
        except KeyError:
            raise NotFoundError(f'{kind.KIND.lower()}s "{key.name}" not found')

    def _check_version(self, stored: Any, obj: Any) -> None:
        if obj.metadata.resourceVersion != stored.metadata.resourceVersion:
            raise ConflictError(
                f'Operation cannot be fulfilled on {stored.KIND.lower()}s "{stored.metadata.name}": the object has '
                "been modified; please apply your changes to the latest version and try again"
            )

    def _put(self, verb: str, obj: Any) -> Any:
        obj.metadata.resourceVersion = self._next_version()
        self.objects[(obj.KIND, obj.metadata.key)] = obj
        self.writes.append(Write(verb, obj.KIND, obj.metadata.key))
        return copy.deepcopy(obj)
