from dataclasses import dataclass
import os
import subprocess

from loguru import logger

from sops_operator.decryptor import DecryptionError, Decryptor, determine_file_format


@dataclass
class SopsDecryptor(Decryptor):
    """
    Decrypts payloads by shelling out to the `sops` binary, passing the payload on stdin. Running the binary gives us
    the same key discovery (age, PGP, cloud KMS) and the same error messages as using SOPS on the command line.
    """

    binary: str = "sops"
    """
    The name or path of the `sops` executable.
    """

    env: dict[str, str] | None = None
    """
    Additional environment variables for the `sops` process, e.g. `SOPS_AGE_KEY_FILE`.
    """

    def command(self, file_name: str) -> list[str]:
        """
        Build the `sops` command line for decrypting a payload that belongs to *file_name*.
        """

        file_format = determine_file_format(file_name)
        return [
            self.binary,
            "--decrypt",
            "--input-type",
            file_format,
            "--output-type",
            file_format,
            "/dev/stdin",
        ]

    # Decryptor

    def decrypt(self, file_name: str, encrypted: str, timeout: float | None = None) -> bytes:
        command = self.command(file_name)
        logger.debug("Running sops for '{}': $ {}", file_name, " ".join(command))

        env = os.environ.copy()
        if self.env:
            env.update(self.env)

        try:
            return subprocess.run(
                command,
                input=encrypted.encode(),
                capture_output=True,
                check=True,
                env=env,
                timeout=timeout,
            ).stdout
        except subprocess.CalledProcessError as exc:
            stderr = exc.stderr.decode(errors="replace").strip()
            logger.error("Failed to decrypt '{}'; stderr={}", file_name, stderr)
            raise DecryptionError(f"failed to decrypt file: {stderr}") from exc
        except subprocess.TimeoutExpired as exc:
            raise DecryptionError(f"timed out decrypting {file_name!r} after {timeout}s") from exc
        except FileNotFoundError as exc:
            raise DecryptionError(f"sops executable not found: {self.binary!r}") from exc
