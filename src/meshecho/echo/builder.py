"""Builder for a group of collaborating echo instances.

Once built, every instance in the group:

    1. is ready to receive traffic, and
    2. can call every other instance in the group.

A builder is an immutable value: every ``with_*`` call returns a new
builder and leaves the original untouched. Instance references handed to
``with_instance`` are filled in a separate binding step after the whole
group has converged.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import List, Optional, Protocol, Tuple

from meshecho.common.settings import settings
from meshecho.echo.call import CallOptions, ParsedResponses
from meshecho.echo.config import Config
from meshecho.echo.errors import (
    CallError,
    ConvergenceTimeoutError,
    DeploymentError,
    RetryExhaustedError,
    UnboundReferenceError,
)
from meshecho.echo.failer import Failer, or_fail
from meshecho.echo.instance import Instance, Instances
from meshecho.echo.retry import RetryPolicy, until_success
from meshecho.kube.cluster import Cluster, default_clusters

logger = logging.getLogger(__name__)


class Deployer(Protocol):
    """Materializes a config in a cluster."""

    def deploy(self, config: Config, cluster: Cluster) -> Instance:
        ...


class InstanceRef:
    """Caller-owned slot that ``Builder.build()`` fills with an instance."""

    def __init__(self) -> None:
        self._instance: Optional[Instance] = None

    @property
    def bound(self) -> bool:
        return self._instance is not None

    def get(self) -> Instance:
        """Return the bound instance.

        Raises:
            UnboundReferenceError: build() has not completed yet.
        """
        if self._instance is None:
            raise UnboundReferenceError("instance reference read before build() completed")
        return self._instance

    def bind(self, instance: Instance) -> None:
        self._instance = instance


@dataclass(frozen=True)
class Registration:
    """A config together with the clusters it was scoped to when registered."""

    config: Config
    clusters: Tuple[Cluster, ...]
    ref: Optional[InstanceRef] = None


class _PairsPending(Exception):
    """Some ordered pairs cannot reach each other yet."""


@dataclass(frozen=True)
class Builder:
    """Accumulates echo configs and builds them into a converged group."""

    deployer: Deployer
    clusters: Tuple[Cluster, ...] = field(default_factory=lambda: tuple(default_clusters()))
    registrations: Tuple[Registration, ...] = ()
    scope: Tuple[Cluster, ...] = ()
    convergence_timeout: float = field(default_factory=lambda: settings.convergence_timeout)
    convergence_concurrency: int = field(
        default_factory=lambda: settings.convergence_concurrency
    )
    check_delay: float = field(default_factory=lambda: settings.call_retry_delay)

    def _scope_for(self, cfg: Config) -> Tuple[Cluster, ...]:
        candidates = self.scope or self.clusters
        if cfg.cluster is None:
            return tuple(candidates)
        for pool in (candidates, self.clusters):
            matched = tuple(c for c in pool if c.name == cfg.cluster)
            if matched:
                return matched[:1]
        raise ValueError(f"{cfg} requests unknown cluster {cfg.cluster!r}")

    def with_instance(self, ref: InstanceRef, cfg: Config) -> "Builder":
        """Register ``cfg``; ``ref`` is bound to its instance after build().

        If the config is deployed to several clusters, the reference is
        bound to the instance in the first of them.
        """
        reg = Registration(config=cfg, clusters=self._scope_for(cfg), ref=ref)
        return replace(self, registrations=self.registrations + (reg,))

    def with_config(self, cfg: Config) -> "Builder":
        reg = Registration(config=cfg, clusters=self._scope_for(cfg))
        return replace(self, registrations=self.registrations + (reg,))

    def with_clusters(self, *clusters: Cluster) -> "Builder":
        """Scope subsequent registrations to ``clusters``.

        Configs registered earlier keep their scope. Passing no clusters
        restores the builder's default clusters.
        """
        return replace(self, scope=tuple(clusters))

    def build(self) -> Instances:
        """Deploy every registered config and wait for the mesh to converge.

        Returns:
            All instances, in registration order.

        Raises:
            DeploymentError: At least one config failed to deploy.
            ConvergenceTimeoutError: Some pairs could not reach each other in time.
        """
        targets = [(reg, cluster) for reg in self.registrations for cluster in reg.clusters]
        if not targets:
            return Instances()

        instances = self._deploy(targets)
        self._converge(instances)
        self._bind(targets, instances)
        return instances

    def build_or_fail(self, failer: Failer) -> Instances:
        return or_fail(failer, self.build)

    def _deploy(self, targets: List[Tuple[Registration, Cluster]]) -> Instances:
        logger.info(f"Deploying {len(targets)} echo instance(s)")
        workers = min(settings.deploy_concurrency, len(targets))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="echo-deploy") as pool:
            futures = [
                pool.submit(self.deployer.deploy, reg.config, cluster)
                for reg, cluster in targets
            ]

        instances = Instances()
        failures = []
        for (reg, cluster), future in zip(targets, futures):
            try:
                instances.append(future.result())
            except DeploymentError as e:
                logger.error(f"Failed to deploy {reg.config} to {cluster}: {e}")
                failures.extend(e.failures)
            except Exception as e:
                logger.error(f"Failed to deploy {reg.config} to {cluster}: {e}")
                failures.append((f"{reg.config}@{cluster}", e))
        if failures:
            raise DeploymentError(failures)
        return instances

    def _converge(self, instances: Instances) -> None:
        """Call every ordered pair until all of them succeed.

        A destination is called on its first HTTP port; destinations
        without one are skipped. Each sweep makes one call per pending
        pair, so a slow pair never holds back pairs that are already
        reachable.
        """
        pending: List[Tuple[Instance, Instance]] = [
            (src, dst)
            for src in instances
            for dst in instances
            if src is not dst and dst.config.check_port() is not None
        ]
        unchecked = [i.name for i in instances if i.config.ports and i.config.check_port() is None]
        if unchecked:
            logger.info(f"No HTTP port to check on {', '.join(unchecked)}")
        if not pending:
            return
        total = len(pending)
        logger.info(f"Waiting for {total} pair(s) to converge")

        def check_pair(pair: Tuple[Instance, Instance]) -> bool:
            src, dst = pair
            try:
                src.call(
                    CallOptions(
                        target=dst,
                        port=dst.config.check_port(),
                        check=ParsedResponses.check_ok,
                    )
                )
            except CallError as e:
                logger.debug(f"{src.name} -> {dst.name} not reachable yet: {e}")
                return False
            return True

        workers = min(self.convergence_concurrency, total)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="echo-check") as pool:

            def sweep() -> None:
                results = list(pool.map(check_pair, pending))
                pending[:] = [pair for pair, ok in zip(pending, results) if not ok]
                if pending:
                    logger.debug(f"{total - len(pending)}/{total} pairs converged")
                    raise _PairsPending()

            policy = RetryPolicy(timeout=self.convergence_timeout, delay=self.check_delay)
            try:
                until_success(sweep, policy, retry_on=(_PairsPending,))
            except RetryExhaustedError:
                raise ConvergenceTimeoutError(
                    [(src.name, dst.name) for src, dst in pending],
                    self.convergence_timeout,
                ) from None
        logger.info(f"All {total} pair(s) converged")

    @staticmethod
    def _bind(targets: List[Tuple[Registration, Cluster]], instances: Instances) -> None:
        seen = set()
        for (reg, _), instance in zip(targets, instances):
            if reg.ref is not None and id(reg) not in seen:
                reg.ref.bind(instance)
            seen.add(id(reg))
