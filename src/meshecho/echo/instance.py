"""Handle to a deployed echo service and the collection of such handles."""

import logging
import weakref
from typing import List, Optional, Protocol

from meshecho.common.settings import settings
from meshecho.echo.call import CallOptions, ParsedResponses
from meshecho.echo.config import Config
from meshecho.echo.errors import (
    CallError,
    FetchError,
    MeshEchoError,
    NoWorkloadsError,
    ResponseCheckError,
)
from meshecho.echo.retry import RetryPolicy, until_success
from meshecho.echo.workload import Workload
from meshecho.kube.cluster import Cluster

logger = logging.getLogger(__name__)


class WorkloadController(Protocol):
    """Backend that owns the replicas of deployed instances."""

    def list_workloads(self, instance: "Instance") -> List[Workload]:
        ...

    def restart(self, instance: "Instance") -> None:
        ...


class Instance:
    """A deployed echo service.

    Instances are produced by ``Builder.build()``. Every built instance has
    at least one workload.
    """

    def __init__(
        self,
        config: Config,
        cluster: Cluster,
        address: str,
        controller: WorkloadController,
    ):
        self._config = config
        self._cluster = cluster
        self._address = address
        self._controller = controller
        self._issued: "weakref.WeakSet[Workload]" = weakref.WeakSet()

    @property
    def config(self) -> Config:
        return self._config

    @property
    def cluster(self) -> Cluster:
        return self._cluster

    @property
    def address(self) -> str:
        """Service address, empty for headless services."""
        return self._address

    @property
    def name(self) -> str:
        return f"{self._config.service}@{self._cluster.name}"

    def workloads(self) -> List[Workload]:
        """Return the live workloads of this instance.

        Raises:
            NoWorkloadsError: No workload is currently live.
            FetchError: The controller could not list the workloads.
        """
        try:
            workloads = self._controller.list_workloads(self)
        except MeshEchoError:
            raise
        except Exception as e:
            raise FetchError(f"{self.name}: listing workloads failed: {e}") from e
        if not workloads:
            raise NoWorkloadsError(f"{self.name} has no live workloads")
        for w in workloads:
            self._issued.add(w)
        return workloads

    def restart(self) -> None:
        """Replace every workload of this instance.

        Workloads obtained before the restart are invalidated and must not
        be used afterwards.
        """
        logger.info(f"Restarting workloads of {self.name}")
        self._controller.restart(self)
        for w in list(self._issued):
            w.invalidate()
        self._issued = weakref.WeakSet()

    def call(self, options: CallOptions) -> ParsedResponses:
        """Make a single forward call from this instance's first workload.

        Raises:
            CallOptionsError: The options are invalid.
            CallError: The call failed.
        """
        opts = options.fill_defaults()
        try:
            source = self.workloads()[0]
        except (NoWorkloadsError, FetchError) as e:
            raise CallError(str(e)) from e

        logger.debug(f"{self.name} calling {opts.describe()} x{opts.count}")
        responses = source.forward_echo(opts.to_request())
        if opts.check is not None:
            try:
                opts.check(responses)
            except CallError:
                raise
            except Exception as e:
                raise ResponseCheckError(f"{self.name} -> {opts.describe()}: {e}") from e
        return responses

    def call_with_retry(
        self,
        options: CallOptions,
        policy: Optional[RetryPolicy] = None,
    ) -> ParsedResponses:
        """Repeat ``call`` until it succeeds or the retry budget runs out.

        The policy argument wins over ``options.retry``, which wins over the
        defaults from settings.

        Raises:
            CallOptionsError: The options are invalid; never retried.
            RetryExhaustedError: Every attempt failed.
        """
        policy = policy or options.retry or RetryPolicy(
            timeout=settings.call_retry_timeout,
            delay=settings.call_retry_delay,
        )
        opts = options.fill_defaults()
        return until_success(lambda: self.call(opts), policy, retry_on=(CallError,))

    def __repr__(self) -> str:
        return f"Instance({self.name}, address={self._address!r})"


class Instances(list):
    """Ordered collection of instances."""

    def get(self, service: str) -> Optional[Instance]:
        """First instance of the named service, if any."""
        return next((i for i in self if i.config.service == service), None)

    def matching(self, *services: str) -> "Instances":
        return Instances(i for i in self if i.config.service in services)

    def in_cluster(self, cluster_name: str) -> "Instances":
        return Instances(i for i in self if i.cluster.name == cluster_name)

    def services(self) -> List[str]:
        return sorted({i.config.service for i in self})
