"""
This package contains the Kubernetes resources that the SOPS operator reads and writes.
"""

from abc import ABC
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, ClassVar, NewType, cast

from databind.core.settings import ExtraKeys
from databind.json import dump as ser, load as deser
from typing_extensions import Self

Manifest = NewType("Manifest", dict[str, Any])
""" Represents a Kubernetes manifest. """


class KubernetesResource(ABC):
    """
    Base class for the typed Kubernetes resources handled by the operator. Subclasses are dataclasses that are
    (de-)serialized from and to manifests with [databind].
    """

    API_VERSION: ClassVar[str]
    """
    The API version of the resource, e.g. `v1` for core resources.
    """

    KIND: ClassVar[str]
    """
    The kind identifier of the resource. If not set, this will default to the class name.
    """

    def __init_subclass__(cls, api_version: str, kind: str | None = None) -> None:
        cls.API_VERSION = api_version
        if kind is not None or "KIND" not in vars(cls):
            cls.KIND = kind or cls.__name__

    @classmethod
    def load(cls, manifest: Manifest | dict[str, Any]) -> Self:
        """
        Load the resource from a manifest. The manifest's `apiVersion` and `kind` must match the resource class, but
        they may be omitted (as some API responses do).
        """

        if manifest.get("apiVersion", cls.API_VERSION) != cls.API_VERSION:
            raise ValueError(f"Expected apiVersion {cls.API_VERSION!r}, got {manifest['apiVersion']!r}")
        if manifest.get("kind", cls.KIND) != cls.KIND:
            raise ValueError(f"Expected kind {cls.KIND!r}, got {manifest['kind']!r}")

        manifest = Manifest(dict(manifest))
        manifest.pop("apiVersion", None)
        manifest.pop("kind", None)

        return cast(Self, deser(manifest, cls))

    def dump(self) -> Manifest:
        """
        Dump the resource to a manifest. Keys with a `None` value are omitted.
        """

        manifest = cast(dict[str, Any], ser(self, type(self)))
        manifest = _drop_none(manifest)
        manifest["apiVersion"] = self.API_VERSION
        manifest["kind"] = self.KIND
        return Manifest(manifest)


@ExtraKeys()
@dataclass(frozen=True)
class OwnerReference:
    """
    A back-reference from a dependent object to the object that owns it. Owner references are compared by value.
    """

    apiVersion: str
    kind: str
    name: str
    uid: str | None = None
    controller: bool | None = None
    blockOwnerDeletion: bool | None = None


@ExtraKeys()
@dataclass
class ObjectMetadata:
    """
    Kubernetes object metadata. Fields that the operator does not care about are ignored when loading.
    """

    name: str
    namespace: str | None = None
    uid: str | None = None
    resourceVersion: str | None = None
    generation: int | None = None
    creationTimestamp: str | None = None
    labels: dict[str, str] | None = None
    annotations: dict[str, str] | None = None
    ownerReferences: list[OwnerReference] | None = None
    finalizers: list[str] | None = None

    @property
    def key(self) -> "ObjectKey":
        return ObjectKey(self.namespace or "", self.name)

    def set_controller_reference(self, ref: OwnerReference) -> None:
        """
        Add *ref* as the controller reference, or refresh an existing reference to the same owner in place.

        Raises:
            ValueError: If the object is already controlled by a different owner.
        """

        refs = list(self.ownerReferences or [])
        for index, existing in enumerate(refs):
            if (existing.apiVersion.split("/")[0], existing.kind, existing.name) == (
                ref.apiVersion.split("/")[0],
                ref.kind,
                ref.name,
            ):
                refs[index] = ref
                break
            if existing.controller and ref.controller:
                raise ValueError(f"object is already controlled by {existing.kind} {existing.name!r}")
        else:
            refs.append(ref)
        self.ownerReferences = refs

    def get_controller(self) -> OwnerReference | None:
        """
        Return the owner reference that is marked as the controller of this object, if any.
        """

        for ref in self.ownerReferences or []:
            if ref.controller:
                return ref
        return None


@dataclass(frozen=True, order=True)
class ObjectKey:
    """
    Identifies a namespaced object.
    """

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


def now() -> datetime:
    """
    Returns the current time in UTC, truncated to full seconds (the resolution of Kubernetes timestamps).
    """

    return datetime.now(timezone.utc).replace(microsecond=0)


def format_timestamp(value: datetime) -> str:
    """
    Format a timestamp the way Kubernetes serializes `metav1.Time` (RFC 3339, second resolution, UTC).
    """

    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: str | None) -> datetime | None:
    """
    Parse a Kubernetes timestamp. Returns `None` for an empty value.
    """

    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    result = datetime.fromisoformat(value)
    if result.tzinfo is None:
        result = result.replace(tzinfo=timezone.utc)
    return result


def _drop_none(value: Any) -> Any:
    match value:
        case dict():
            return {k: _drop_none(v) for k, v in value.items() if v is not None}
        case list():
            return [_drop_none(v) for v in value]
    return value

