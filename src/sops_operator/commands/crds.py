import yaml

from sops_operator import __version__
from sops_operator.resources.sopssecret import SopsSecret
from . import app


@app.command()
def crds() -> None:
    """
    Print the CustomResourceDefinition for `sopssecrets.craftypath.github.io` (kind `SopsSecret`, version
    `v1alpha1`). It must be installed on a cluster before running the operator, for example with
    `sops-operator crds | kubectl apply -f -`.

    The definition enables the `status` subresource, so that status writes of the operator do not bump the
    generation of a SopsSecret, and adds `Status` and `Last Update` columns to `kubectl get sopssecrets`.
    """

    print(f"# SopsSecret CustomResourceDefinition for sops-operator {__version__}")
    print("---")
    print(yaml.safe_dump(SopsSecret.CRD, sort_keys=False))
