import platform

from sops_operator import __version__
from . import app


def version_info() -> list[tuple[str, str]]:
    return [
        ("Operator Version", __version__),
        ("Python Version", f"{platform.python_implementation()} {platform.python_version()}"),
        ("Platform", f"{platform.system().lower()}/{platform.machine()}"),
    ]


@app.command()
def version() -> None:
    """
    Print the version of the operator and of the Python interpreter it runs on.
    """

    for label, value in version_info():
        print(f"{label}: {value}")
