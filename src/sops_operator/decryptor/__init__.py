"""
Decryption of SOPS-encrypted payloads.
"""

from abc import ABC, abstractmethod
from sops_operator.errors import SopsOperatorError

FILE_FORMATS = {
    ".yaml": "yaml",
    ".yml": "yaml",
    ".json": "json",
    ".ini": "ini",
    ".env": "dotenv",
}
"""
Maps file extensions to the SOPS input/output format. Any other extension is treated as `binary`.
"""


class DecryptionError(SopsOperatorError):
    """
    Raised when a payload cannot be decrypted.
    """


class Decryptor(ABC):
    """
    Decrypts a single encrypted payload. The format of the payload is derived from the logical file name.
    """

    @abstractmethod
    def decrypt(self, file_name: str, encrypted: str, timeout: float | None = None) -> bytes:
        """
        Decrypt the given payload.

        Args:
            file_name: The logical file name the payload belongs to. Its extension selects the format.
            encrypted: The SOPS-encrypted payload.
            timeout: The number of seconds after which to give up.
        Returns:
            The decrypted bytes.
        Raises:
            DecryptionError: If the payload could not be decrypted.
        """


def determine_file_format(file_name: str) -> str:
    """
    Determine the SOPS format (`yaml`, `json`, `ini`, `dotenv` or `binary`) from the extension of *file_name*. The
    extension is everything from the last dot of the base name, so a file called `.env` is a dotenv file.
    """

    base_name = file_name.rsplit("/", 1)[-1]
    index = base_name.rfind(".")
    extension = base_name[index:] if index >= 0 else ""
    return FILE_FORMATS.get(extension, "binary")
