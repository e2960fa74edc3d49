from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from loguru import logger

from sops_operator.errors import SopsOperatorError


class ConfigError(SopsOperatorError):
    """
    Raised when the operator configuration is invalid.
    """


@dataclass
class LeaderElectionConfig:
    enabled: bool = True
    id: str = "sops-operator-lock"
    """
    The name of the ConfigMap that is used as the lock.
    """

    namespace: str = ""
    """
    The namespace of the lock. Defaults to the namespace the operator runs in (`POD_NAMESPACE`).
    """

    lease_duration: int = 15
    renew_deadline: int = 10
    retry_period: int = 2


@dataclass
class OperatorConfig:
    """
    Configuration for the `sops-operator run` command. It can be loaded from a YAML file, and every key can be
    overridden on the command-line or through an environment variable.
    """

    watch_namespace: str = ""
    """
    The namespace to watch. An empty string watches all namespaces, a comma-separated list watches each of the
    namespaces.
    """

    in_cluster: bool = False
    """
    Use the service account of the Pod the operator runs in instead of a kubeconfig file.
    """

    kubeconfig: Path | None = None
    max_concurrent_reconciles: int = 1
    resync_period: float = 600.0
    """
    Seconds between two full re-lists of all SopsSecrets.
    """

    reconcile_timeout: float = 60.0
    """
    The time budget in seconds for applying a single Secret, and separately for writing the status afterwards.
    """

    sops_binary: str = "sops"
    leader_election: LeaderElectionConfig = field(default_factory=LeaderElectionConfig)

    @property
    def namespaces(self) -> list[str]:
        """
        The namespaces to watch. A single empty string stands for all namespaces.
        """

        namespaces = [ns.strip() for ns in self.watch_namespace.split(",") if ns.strip()]
        return namespaces or [""]

    @staticmethod
    def load(file: Path | None = None, /) -> "OperatorConfig":
        """
        Load the configuration from a YAML file. Without a file, the default configuration is returned.
        """

        from databind.json import load as deser
        from yaml import safe_load

        if file is None:
            return OperatorConfig()

        logger.debug("Loading operator configuration from '{}'", file)
        return deser(safe_load(file.read_text()) or {}, OperatorConfig, filename=str(file))

    def override(self, **options: Any) -> "OperatorConfig":
        """
        Return a copy of the configuration with the given options applied. Options that are `None` are ignored, and
        options prefixed with `leader_election_` apply to [leader_election].
        """

        top_level = {f.name for f in fields(self)}
        values: dict[str, Any] = {}
        election: dict[str, Any] = {}
        for key, value in options.items():
            if value is None:
                continue
            if key in top_level:
                values[key] = value
            elif key.startswith("leader_election_"):
                election[key.removeprefix("leader_election_")] = value
            else:
                raise TypeError(f"unknown configuration option: {key!r}")
        return replace(self, **values, leader_election=replace(self.leader_election, **election))

    def validate(self) -> None:
        """
        Raises:
            ConfigError: If the configuration can not be used to run the operator.
        """

        if self.max_concurrent_reconciles < 1:
            raise ConfigError("max_concurrent_reconciles must be at least 1")
        if self.resync_period <= 0:
            raise ConfigError("resync_period must be positive")
        if self.reconcile_timeout <= 0:
            raise ConfigError("reconcile_timeout must be positive")

        election = self.leader_election
        if election.enabled:
            if not election.namespace:
                raise ConfigError("the leader election namespace must be set when leader election is enabled")
            if not election.lease_duration > election.renew_deadline > election.retry_period > 0:
                raise ConfigError("expected lease_duration > renew_deadline > retry_period > 0")
