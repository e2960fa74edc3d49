import base64
from collections.abc import Mapping
from dataclasses import dataclass, field

from databind.core.settings import ExtraKeys

from sops_operator.resources import KubernetesResource, ObjectMetadata


@ExtraKeys()
@dataclass(kw_only=True)
class Secret(KubernetesResource, api_version="v1"):
    """
    A Kubernetes core/v1 Secret. The `data` values are kept base64-encoded as they appear on the wire; use
    [get_data()] and [set_data()] to work with the raw bytes.
    """

    metadata: ObjectMetadata
    data: dict[str, str] | None = None
    type: str | None = None
    immutable: bool | None = None
    stringData: dict[str, str] | None = field(default=None, repr=False)

    def get_data(self) -> dict[str, bytes]:
        """
        Return the decoded data of the Secret.
        """

        return {key: base64.b64decode(value) for key, value in (self.data or {}).items()}

    def set_data(self, data: Mapping[str, bytes]) -> None:
        """
        Replace the data of the Secret with the given raw bytes. Empty data is stored as `None`, which is how the API
        server returns a Secret without data.
        """

        self.data = {key: base64.b64encode(value).decode("ascii") for key, value in data.items()} or None
