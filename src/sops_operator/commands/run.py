from pathlib import Path
import signal
import threading

from kubernetes.client.api_client import ApiClient
from kubernetes.config.incluster_config import load_incluster_config
from kubernetes.config.kube_config import load_kube_config
from loguru import logger
from typer import Exit, Option

from sops_operator.commands.version import version_info
from sops_operator.config import ConfigError, OperatorConfig
from sops_operator.controller import Controller
from sops_operator.controller.leader import run_with_leader_election
from sops_operator.decryptor.sops import SopsDecryptor
from sops_operator.events.kube import KubernetesEventRecorder
from sops_operator.reconciler import SopsSecretReconciler
from sops_operator.store.kube import KubernetesResourceStore
from . import app


@app.command()
def run(
    config_file: Path | None = Option(
        None, "--config", exists=True, dir_okay=False, help="A YAML file with the operator configuration."
    ),
    watch_namespace: str | None = Option(
        None,
        envvar="WATCH_NAMESPACE",
        help="The namespace to watch, or a comma-separated list of namespaces. Watches all namespaces if empty.",
    ),
    in_cluster: bool | None = Option(
        None,
        "--in-cluster/--no-in-cluster",
        envvar="SOPS_OPERATOR_IN_CLUSTER",
        help="Use the in-cluster Kubernetes configuration. The --kubeconfig option is ignored.",
    ),
    kubeconfig: Path | None = Option(None, envvar="KUBECONFIG", help="The kubeconfig file to use."),
    max_concurrent_reconciles: int | None = Option(
        None, envvar="MAX_CONCURRENT_RECONCILES", help="The number of SopsSecrets that are reconciled concurrently."
    ),
    resync_period: float | None = Option(
        None, envvar="RESYNC_PERIOD", help="Seconds between two reconciliations of all SopsSecrets."
    ),
    reconcile_timeout: float | None = Option(
        None, envvar="RECONCILE_TIMEOUT", help="The time budget in seconds for applying a single Secret."
    ),
    sops_binary: str | None = Option(None, envvar="SOPS_BINARY", help="The name or path of the `sops` executable."),
    leader_election: bool | None = Option(
        None,
        "--leader-election/--no-leader-election",
        help="Enable leader election. This ensures there is only one active operator when running multiple replicas.",
    ),
    leader_election_id: str | None = Option(None, help="The name of the ConfigMap used as the leader election lock."),
    leader_election_namespace: str | None = Option(
        None, envvar="POD_NAMESPACE", help="The namespace of the leader election lock."
    ),
    lease_duration: int | None = Option(None, help="Seconds that non-leaders wait before taking over the lease."),
    renew_deadline: int | None = Option(None, help="Seconds that the leader retries renewing the lease."),
    retry_period: int | None = Option(None, help="Seconds between two attempts to acquire or renew the lease."),
) -> None:
    """
    Run the operator. Reconciles SopsSecrets until the process is terminated.
    """

    config = OperatorConfig.load(config_file).override(
        watch_namespace=watch_namespace,
        in_cluster=in_cluster,
        kubeconfig=kubeconfig,
        max_concurrent_reconciles=max_concurrent_reconciles,
        resync_period=resync_period,
        reconcile_timeout=reconcile_timeout,
        sops_binary=sops_binary,
        leader_election_enabled=leader_election,
        leader_election_id=leader_election_id,
        leader_election_namespace=leader_election_namespace,
        leader_election_lease_duration=lease_duration,
        leader_election_renew_deadline=renew_deadline,
        leader_election_retry_period=retry_period,
    )
    try:
        config.validate()
    except ConfigError as exc:
        logger.error("Invalid configuration: {}", exc)
        raise Exit(1)

    for label, value in version_info():
        logger.info("{}: {}", label, value)

    if config.in_cluster:
        logger.info("Using in-cluster configuration.")
        load_incluster_config()
    else:
        logger.info("Using kubeconfig '{}'.", config.kubeconfig or "default")
        load_kube_config(str(config.kubeconfig) if config.kubeconfig else None)

    client = ApiClient()
    reconciler = SopsSecretReconciler(
        store=KubernetesResourceStore(client),
        decryptor=SopsDecryptor(binary=config.sops_binary),
        recorder=KubernetesEventRecorder(client),
        timeout=config.reconcile_timeout,
    )
    controller = Controller(
        client,
        reconciler,
        namespaces=config.namespaces,
        workers=config.max_concurrent_reconciles,
        resync_period=config.resync_period,
    )

    stop = threading.Event()
    _stop_on_signals(stop)

    if not config.leader_election.enabled:
        controller.run(stop)
        return

    lost = threading.Event()

    def on_stopped_leading() -> None:
        lost.set()
        stop.set()

    election = threading.Thread(
        target=run_with_leader_election,
        args=(config.leader_election, lambda: controller.run(stop), on_stopped_leading),
        name="leader-election",
        daemon=True,
    )
    election.start()
    while not stop.wait(1):
        pass

    if lost.is_set():
        logger.error("Leader election lost")
        raise Exit(1)


def _stop_on_signals(stop: threading.Event) -> None:
    def handler(signum: int, frame: object) -> None:
        logger.info("Received {}, shutting down", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)
