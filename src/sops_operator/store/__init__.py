"""
The store that SopsSecrets are read from and Secrets are written to.
"""

from abc import ABC, abstractmethod

from sops_operator.errors import SopsOperatorError
from sops_operator.resources import ObjectKey
from sops_operator.resources.secret import Secret
from sops_operator.resources.sopssecret import SopsSecret


class StoreError(SopsOperatorError):
    """
    Raised when a call to the store fails.
    """


class NotFoundError(StoreError):
    """
    Raised when the requested object does not exist.
    """


class ConflictError(StoreError):
    """
    Raised when an update is rejected because the object was modified since it was read (optimistic concurrency), or
    when creating an object that already exists.
    """


class ResourceStore(ABC):
    """
    Minimal interface to the objects the operator works with. Every method accepts a *timeout* in seconds that the
    implementation must respect.
    """

    @abstractmethod
    def get_sopssecret(self, key: ObjectKey, timeout: float | None = None) -> SopsSecret:
        """
        Raises:
            NotFoundError: If the SopsSecret does not exist.
        """

    @abstractmethod
    def update_sopssecret_status(self, sopssecret: SopsSecret, timeout: float | None = None) -> SopsSecret:
        """
        Write the `status` of the SopsSecret. The `metadata.resourceVersion` must match the stored object.

        Raises:
            ConflictError: If the SopsSecret was modified in the meantime.
        """

    @abstractmethod
    def get_secret(self, key: ObjectKey, timeout: float | None = None) -> Secret:
        """
        Raises:
            NotFoundError: If the Secret does not exist.
        """

    @abstractmethod
    def create_secret(self, secret: Secret, timeout: float | None = None) -> Secret:
        """
        Raises:
            ConflictError: If the Secret already exists.
        """

    @abstractmethod
    def update_secret(self, secret: Secret, timeout: float | None = None) -> Secret:
        """
        Replace the Secret. The `metadata.resourceVersion` must match the stored object.

        Raises:
            ConflictError: If the Secret was modified in the meantime.
        """
