from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar

from databind.core.settings import ExtraKeys

from sops_operator.resources import KubernetesResource, ObjectMetadata, OwnerReference, parse_timestamp

GROUP = "craftypath.github.io"
VERSION = "v1alpha1"
PLURAL = "sopssecrets"

STATUS_SUCCESS = "Success"
STATUS_FAILURE = "Failure"


@ExtraKeys()
@dataclass
class SopsSecretObjectMeta:
    """
    Metadata that is stamped onto the generated Secret.
    """

    labels: dict[str, str] | None = None
    annotations: dict[str, str] | None = None


@ExtraKeys()
@dataclass
class SopsSecretSpec:
    metadata: SopsSecretObjectMeta = field(default_factory=SopsSecretObjectMeta)
    """
    Labels and annotations for the generated Secret. These replace the Secret's labels and annotations entirely.
    """

    stringData: dict[str, str] = field(default_factory=dict)
    """
    SOPS-encrypted data, keyed by the logical file name. The file extension determines the SOPS input format.
    """

    type: str | None = None
    """
    The type of the generated Secret. If not set, the Secret keeps its current type (`Opaque` on creation).
    """


@ExtraKeys()
@dataclass
class SopsSecretStatus:
    """
    The observed state of a SopsSecret. This is only ever written by the operator.
    """

    lastUpdate: str | None = None
    reason: str | None = None
    status: str | None = None

    @property
    def last_update_time(self) -> datetime | None:
        return parse_timestamp(self.lastUpdate)


@ExtraKeys()
@dataclass(kw_only=True)
class SopsSecret(KubernetesResource, api_version=f"{GROUP}/{VERSION}"):
    """
    Declares a Kubernetes Secret whose data is stored SOPS-encrypted. The operator decrypts the data and maintains a
    Secret of the same name in the same namespace.
    """

    metadata: ObjectMetadata
    spec: SopsSecretSpec = field(default_factory=SopsSecretSpec)
    status: SopsSecretStatus = field(default_factory=SopsSecretStatus)

    CRD: ClassVar = {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {
            "name": f"{PLURAL}.{GROUP}",
        },
        "spec": {
            "group": GROUP,
            "names": {
                "kind": "SopsSecret",
                "listKind": "SopsSecretList",
                "plural": PLURAL,
                "singular": "sopssecret",
            },
            "scope": "Namespaced",
            "versions": [
                {
                    "name": VERSION,
                    "served": True,
                    "storage": True,
                    "subresources": {"status": {}},
                    "additionalPrinterColumns": [
                        {"name": "Status", "type": "string", "jsonPath": ".status.status"},
                        {"name": "Last Update", "type": "date", "jsonPath": ".status.lastUpdate"},
                    ],
                    "schema": {
                        "openAPIV3Schema": {
                            "type": "object",
                            "description": "SopsSecret is the Schema for the sopssecrets API",
                            "properties": {
                                "apiVersion": {"type": "string"},
                                "kind": {"type": "string"},
                                "metadata": {"type": "object"},
                                "spec": {
                                    "type": "object",
                                    "description": "SopsSecretSpec defines the desired state of SopsSecret.",
                                    "properties": {
                                        "metadata": {
                                            "type": "object",
                                            "description": "Labels and annotations for the generated Secret.",
                                            "properties": {
                                                "labels": {
                                                    "type": "object",
                                                    "additionalProperties": {"type": "string"},
                                                },
                                                "annotations": {
                                                    "type": "object",
                                                    "additionalProperties": {"type": "string"},
                                                },
                                            },
                                        },
                                        "stringData": {
                                            "type": "object",
                                            "description": "SOPS-encrypted secret data in string form.",
                                            "additionalProperties": {"type": "string"},
                                        },
                                        "type": {
                                            "type": "string",
                                            "description": "The type of the generated Secret.",
                                        },
                                    },
                                },
                                "status": {
                                    "type": "object",
                                    "properties": {
                                        "lastUpdate": {"type": "string", "format": "date-time"},
                                        "reason": {"type": "string"},
                                        "status": {"type": "string"},
                                    },
                                },
                            },
                        }
                    },
                }
            ],
        },
    }

    def owner_reference(self) -> OwnerReference:
        """
        Returns the controller reference to put on objects that are generated from this SopsSecret.
        """

        return OwnerReference(
            apiVersion=self.API_VERSION,
            kind=self.KIND,
            name=self.metadata.name,
            uid=self.metadata.uid,
            controller=True,
            blockOwnerDeletion=True,
        )

    def controls(self, metadata: ObjectMetadata) -> bool:
        """
        Check if this SopsSecret is the controller of the object with the given metadata.
        """

        ref = metadata.get_controller()
        if ref is None:
            return False
        if (ref.apiVersion.split("/")[0], ref.kind, ref.name) != (GROUP, self.KIND, self.metadata.name):
            return False
        if (metadata.namespace or "") != (self.metadata.namespace or ""):
            return False
        return not (ref.uid and self.metadata.uid) or ref.uid == self.metadata.uid
