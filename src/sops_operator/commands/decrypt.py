from pathlib import Path
import sys

from loguru import logger
from typer import Argument, Exit, Option

from sops_operator.decryptor import DecryptionError
from sops_operator.decryptor.sops import SopsDecryptor
from . import app


@app.command()
def decrypt(
    file: Path = Argument(..., exists=True, dir_okay=False, help="The SOPS-encrypted file to decrypt."),
    name: str | None = Option(
        None,
        help="The logical file name that selects the format, as used for the keys of a SopsSecret's `stringData`. "
        "Defaults to the name of the file.",
    ),
    sops_binary: str = Option("sops", envvar="SOPS_BINARY", help="The name or path of the `sops` executable."),
    timeout: float | None = Option(None, help="Give up after this many seconds."),
) -> None:
    """
    Decrypt a file the same way the operator decrypts an entry of a SopsSecret and print the result.
    """

    decryptor = SopsDecryptor(binary=sops_binary)
    try:
        data = decryptor.decrypt(name or file.name, file.read_text(), timeout=timeout)
    except DecryptionError as exc:
        logger.error("{}", exc)
        raise Exit(1)

    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()
