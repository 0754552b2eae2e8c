"""Access to the Envoy proxy attached to a single workload."""

import logging
from typing import Any, Callable, Dict, Optional

import httpx
from prometheus_client.metrics_core import Metric
from prometheus_client.parser import text_string_to_metric_families

from meshecho.common.settings import settings
from meshecho.echo.errors import FetchError
from meshecho.echo.retry import RetryPolicy, wait_for

logger = logging.getLogger(__name__)

# Admin API payloads are consumed as decoded JSON and never modified.
ServerInfo = Dict[str, Any]
ConfigDump = Dict[str, Any]
Clusters = Dict[str, Any]
Listeners = Dict[str, Any]


class Sidecar:
    """Queries against one Envoy sidecar's admin endpoint."""

    def __init__(
        self,
        pod_name: str,
        namespace: str,
        address: str,
        log_reader: Optional[Callable[[], str]] = None,
        admin_port: Optional[int] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.pod_name = pod_name
        self.namespace = namespace
        self.address = address
        self._log_reader = log_reader
        port = admin_port or settings.admin_port
        self._client = client or httpx.Client(
            base_url=f"http://{address}:{port}",
            timeout=settings.call_timeout,
        )

    @property
    def node_id(self) -> str:
        """Identity of this proxy towards the control plane."""
        return (
            f"sidecar~{self.address}~{self.pod_name}.{self.namespace}"
            f"~{self.namespace}.svc.cluster.local"
        )

    def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> httpx.Response:
        try:
            response = self._client.get(path, params=params)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise FetchError(f"{self.node_id}: GET {path} failed: {e}") from e
        return response

    def _get_json(self, path: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        response = self._get(path, params)
        try:
            return response.json()
        except ValueError as e:
            raise FetchError(f"{self.node_id}: GET {path} returned invalid JSON: {e}") from e

    def info(self) -> ServerInfo:
        return self._get_json("/server_info")

    def config(self) -> ConfigDump:
        return self._get_json("/config_dump")

    def clusters(self) -> Clusters:
        return self._get_json("/clusters", {"format": "json"})

    def listeners(self) -> Listeners:
        return self._get_json("/listeners", {"format": "json"})

    def stats(self) -> Dict[str, Metric]:
        """Fetch proxy stats as metric families keyed by name."""
        text = self._get("/stats/prometheus").text
        try:
            return {family.name: family for family in text_string_to_metric_families(text)}
        except ValueError as e:
            raise FetchError(f"{self.node_id}: unparseable stats: {e}") from e

    def logs(self) -> str:
        if self._log_reader is None:
            raise FetchError(f"{self.node_id}: no log source available")
        return self._log_reader()

    def wait_for_config(
        self,
        accept: Callable[[ConfigDump], bool],
        policy: Optional[RetryPolicy] = None,
    ) -> ConfigDump:
        """Poll the config dump until ``accept`` approves it.

        ``accept`` returns True to finish, False to keep polling, or raises
        to abort the wait with that error.

        Returns:
            The accepted config dump.

        Raises:
            WaitTimeoutError: The config was never accepted within the budget.
        """
        policy = policy or RetryPolicy(
            timeout=settings.config_wait_timeout,
            delay=settings.config_wait_delay,
        )
        logger.debug(f"Waiting for config on {self.node_id} (timeout {policy.timeout}s)")
        return wait_for(self.config, accept, policy)

    def close(self) -> None:
        self._client.close()

    def __repr__(self) -> str:
        return f"Sidecar({self.node_id})"
