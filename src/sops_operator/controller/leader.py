from collections.abc import Callable
import socket
import uuid

from kubernetes.leaderelection import electionconfig, leaderelection
from kubernetes.leaderelection.resourcelock.configmaplock import ConfigMapLock
from loguru import logger

from sops_operator.config import LeaderElectionConfig


def new_identity() -> str:
    """
    Returns an identity for this process that is unique among the operator replicas.
    """

    return f"{socket.gethostname()}_{uuid.uuid4()}"


def run_with_leader_election(
    config: LeaderElectionConfig,
    on_started_leading: Callable[[], None],
    on_stopped_leading: Callable[[], None],
    identity: str | None = None,
) -> None:
    """
    Compete for the ConfigMap lock described by *config*. Once the lock is acquired, *on_started_leading* is called in a
    background thread. The function returns after leadership was lost, after calling *on_stopped_leading*.

    The lock is accessed through the default Kubernetes client configuration, so it must have been loaded before.
    """

    identity = identity or new_identity()
    logger.info("Attempting to acquire leader lease {}/{} as {}", config.namespace, config.id, identity)

    election_config = electionconfig.Config(
        ConfigMapLock(config.id, config.namespace, identity),
        lease_duration=config.lease_duration,
        renew_deadline=config.renew_deadline,
        retry_period=config.retry_period,
        onstarted_leading=on_started_leading,
        onstopped_leading=on_stopped_leading,
    )
    leaderelection.LeaderElection(election_config).run()
