from collections.abc import Callable, Iterator
import json
from contextlib import contextmanager
from typing import Any

from kubernetes.client import CoreV1Api, CustomObjectsApi
from kubernetes.client.api_client import ApiClient
from kubernetes.client.exceptions import ApiException
from loguru import logger
from urllib3.exceptions import HTTPError

from sops_operator.resources import ObjectKey
from sops_operator.resources.secret import Secret
from sops_operator.resources.sopssecret import GROUP, PLURAL, VERSION, SopsSecret
from sops_operator.store import ConflictError, NotFoundError, ResourceStore, StoreError


class KubernetesResourceStore(ResourceStore):
    """
    A [ResourceStore] backed by the Kubernetes API. Secrets are accessed through the core/v1 API and SopsSecrets
    through the custom objects API.
    """

    def __init__(self, client: ApiClient) -> None:
        self._client = client
        self._core = CoreV1Api(client)
        self._custom = CustomObjectsApi(client)

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        return self._client.sanitize_for_serialization(obj)  # type: ignore[no-any-return]

    # ResourceStore

    def get_sopssecret(self, key: ObjectKey, timeout: float | None = None) -> SopsSecret:
        with _translate_errors("get", SopsSecret.KIND, key):
            obj = self._custom.get_namespaced_custom_object(
                group=GROUP,
                version=VERSION,
                namespace=key.namespace,
                plural=PLURAL,
                name=key.name,
                _request_timeout=timeout,
            )
        return SopsSecret.load(obj)

    def update_sopssecret_status(self, sopssecret: SopsSecret, timeout: float | None = None) -> SopsSecret:
        key = sopssecret.metadata.key
        with _translate_errors("update status of", SopsSecret.KIND, key):
            obj = self._custom.replace_namespaced_custom_object_status(
                group=GROUP,
                version=VERSION,
                namespace=key.namespace,
                plural=PLURAL,
                name=key.name,
                body=sopssecret.dump(),
                _request_timeout=timeout,
            )
        return SopsSecret.load(obj)

    def get_secret(self, key: ObjectKey, timeout: float | None = None) -> Secret:
        with _translate_errors("get", Secret.KIND, key):
            obj = self._core.read_namespaced_secret(name=key.name, namespace=key.namespace, _request_timeout=timeout)
        return Secret.load(self._to_dict(obj))

    def create_secret(self, secret: Secret, timeout: float | None = None) -> Secret:
        key = secret.metadata.key
        logger.debug("Creating Secret {}", key)
        with _translate_errors("create", Secret.KIND, key):
            obj = self._core.create_namespaced_secret(
                namespace=key.namespace, body=secret.dump(), _request_timeout=timeout
            )
        return Secret.load(self._to_dict(obj))

    def update_secret(self, secret: Secret, timeout: float | None = None) -> Secret:
        key = secret.metadata.key
        logger.debug("Replacing Secret {} at resourceVersion {}", key, secret.metadata.resourceVersion)
        with _translate_errors("update", Secret.KIND, key):
            obj = self._core.replace_namespaced_secret(
                name=key.name, namespace=key.namespace, body=secret.dump(), _request_timeout=timeout
            )
        return Secret.load(self._to_dict(obj))


@contextmanager
def _translate_errors(verb: str, kind: str, key: ObjectKey) -> Iterator[None]:
    """
    Translate errors raised by the Kubernetes client into [StoreError]s.
    """

    try:
        yield
    except ApiException as exc:
        error_type: Callable[[str], StoreError]
        match exc.status:
            case 404:
                error_type = NotFoundError
            case 409:
                error_type = ConflictError
            case _:
                error_type = StoreError
        raise error_type(f"failed to {verb} {kind} {key}: {_describe(exc)}") from exc
    except HTTPError as exc:
        raise StoreError(f"failed to {verb} {kind} {key}: {exc}") from exc


def _describe(exc: ApiException) -> str:
    """
    Return the message from the API server's `Status` response, falling back to the HTTP status.
    """

    try:
        message = json.loads(exc.body or "")["message"]
    except (ValueError, KeyError, TypeError):
        message = None
    return str(message) if message else f"{exc.status} {exc.reason}"
