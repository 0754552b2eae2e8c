"""Deploy echo configs to Kubernetes and track their workloads."""

import logging
import threading
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from kubernetes import client
from kubernetes.client.rest import ApiException

from meshecho.common.settings import settings
from meshecho.echo.config import BindMode, Config
from meshecho.echo.errors import DeploymentError, FetchError, RetryExhaustedError
from meshecho.echo.instance import Instance
from meshecho.echo.retry import RetryPolicy, until_success
from meshecho.echo.sidecar import Sidecar
from meshecho.echo.workload import Workload
from meshecho.kube.cluster import Cluster

logger = logging.getLogger(__name__)

SIDECAR_INJECT_ANNOTATION = "sidecar.istio.io/inject"


class PodsNotReady(Exception):
    """Fewer ready pods than expected."""


# ============================================================================
# Manifests
# ============================================================================


def listen_args(cfg: Config) -> List[str]:
    """Command line of the echo server for the ports of ``cfg``."""
    args = ["serve", "--listen", f"{settings.control_port}:{BindMode.WILDCARD.value}"]
    for port in cfg.ports:
        if port.target_port == settings.control_port:
            continue
        args.extend(["--listen", f"{port.target_port}:{port.bind_mode.value}"])
    return args


def render_deployment(cfg: Config, cluster: Cluster) -> client.V1Deployment:
    """Build the Deployment running the workloads of ``cfg``."""
    labels = cfg.labels()
    env = [
        client.V1EnvVar(name="SERVICE_NAME", value=cfg.service),
        client.V1EnvVar(name="SERVICE_VERSION", value=cfg.version),
        client.V1EnvVar(name="CLUSTER_NAME", value=cluster.name),
        client.V1EnvVar(
            name="POD_IP",
            value_from=client.V1EnvVarSource(
                field_ref=client.V1ObjectFieldSelector(field_path="status.podIP")
            ),
        ),
    ]
    container = client.V1Container(
        name=settings.app_container,
        image=cfg.image or settings.image,
        args=listen_args(cfg),
        env=env,
        ports=[client.V1ContainerPort(container_port=settings.control_port, name="control")]
        + [
            client.V1ContainerPort(container_port=p.target_port)
            for p in cfg.ports
            if p.target_port != settings.control_port
        ],
        readiness_probe=client.V1Probe(
            http_get=client.V1HTTPGetAction(path="/healthz", port=settings.control_port),
            period_seconds=2,
        ),
    )
    template = client.V1PodTemplateSpec(
        metadata=client.V1ObjectMeta(
            labels=labels,
            annotations={SIDECAR_INJECT_ANNOTATION: str(cfg.inject_sidecar).lower()},
        ),
        spec=client.V1PodSpec(containers=[container]),
    )
    return client.V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=client.V1ObjectMeta(
            name=f"{cfg.service}-{cfg.version}", namespace=cfg.namespace, labels=labels
        ),
        spec=client.V1DeploymentSpec(
            replicas=cfg.replicas,
            selector=client.V1LabelSelector(
                match_labels={"app": cfg.service, "version": cfg.version}
            ),
            template=template,
        ),
    )


def render_service(cfg: Config) -> client.V1Service:
    """Build the Service fronting the workloads of ``cfg``."""
    return client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=client.V1ObjectMeta(
            name=cfg.service, namespace=cfg.namespace, labels={"app": cfg.service}
        ),
        spec=client.V1ServiceSpec(
            selector={"app": cfg.service},
            cluster_ip="None" if cfg.headless else None,
            ports=[
                client.V1ServicePort(
                    name=p.name,
                    port=p.service_port,
                    target_port=p.target_port,
                    app_protocol=p.protocol.value.lower(),
                )
                for p in cfg.ports
            ],
        ),
    )


def pod_ready(pod: Any) -> bool:
    """True if the pod is running, not terminating and reports Ready."""
    if pod.metadata.deletion_timestamp is not None:
        return False
    if pod.status.phase != "Running" or not pod.status.conditions:
        return False
    ready = next((c for c in pod.status.conditions if c.type == "Ready"), None)
    return ready is not None and ready.status == "True"


# ============================================================================
# Deployer
# ============================================================================


class KubeDeployer:
    """Deploys echo configs with the Kubernetes API and owns their workloads."""

    def __init__(
        self,
        clients: Optional[Callable[[Cluster], Dict[str, Any]]] = None,
        deploy_timeout: Optional[float] = None,
        poll_delay: float = 2.0,
    ):
        self._clients = clients or (lambda cluster: cluster.clients())
        self.deploy_timeout = deploy_timeout or settings.deploy_timeout
        self.poll_delay = poll_delay
        self._workloads: Dict[Tuple[str, str, str, str], Workload] = {}
        self._lock = threading.Lock()

    def _policy(self) -> RetryPolicy:
        return RetryPolicy(timeout=self.deploy_timeout, delay=self.poll_delay)

    def ensure_namespace(self, cluster: Cluster, name: str) -> None:
        """Create the namespace unless it already exists."""
        core = self._clients(cluster)["core"]
        namespace = client.V1Namespace(metadata=client.V1ObjectMeta(name=name))
        try:
            core.create_namespace(namespace)
        except ApiException as e:
            if e.status != 409:  # Already exists
                raise

    def deploy(self, config: Config, cluster: Cluster) -> Instance:
        """Create the Deployment and Service for ``config`` and wait for its pods.

        Raises:
            DeploymentError: The objects could not be created or the pods
                never became ready.
        """
        logger.info(f"Deploying {config} to cluster {cluster}")
        api = self._clients(cluster)
        try:
            self.ensure_namespace(cluster, config.namespace)
            self._apply(
                api["apps"].create_namespaced_deployment,
                api["apps"].patch_namespaced_deployment,
                render_deployment(config, cluster),
            )
            self._apply(
                api["core"].create_namespaced_service,
                api["core"].patch_namespaced_service,
                render_service(config),
            )
            self._wait_ready(api["core"], config)
            address = self._service_address(api["core"], config)
        except (ApiException, RetryExhaustedError) as e:
            raise DeploymentError([(f"{config}@{cluster}", e)]) from e

        logger.info(f"{config} ready in cluster {cluster} (address {address or 'headless'})")
        return Instance(config=config, cluster=cluster, address=address, controller=self)

    @staticmethod
    def _apply(create: Callable, patch: Callable, body: Any) -> None:
        namespace = body.metadata.namespace
        try:
            create(namespace=namespace, body=body)
        except ApiException as e:
            if e.status != 409:
                raise
            patch(name=body.metadata.name, namespace=namespace, body=body)

    def _ready_pods(self, core: Any, cfg: Config, exclude: Set[str]) -> List[Any]:
        pods = core.list_namespaced_pod(namespace=cfg.namespace, label_selector=cfg.selector())
        ready = [p for p in pods.items if pod_ready(p)]
        if len(ready) < cfg.replicas or any(p.metadata.name in exclude for p in ready):
            raise PodsNotReady(f"{len(ready)}/{cfg.replicas} pods of {cfg} ready")
        return ready

    def _wait_ready(self, core: Any, cfg: Config, exclude: Optional[Set[str]] = None) -> List[Any]:
        return until_success(
            lambda: self._ready_pods(core, cfg, exclude or set()),
            self._policy(),
            retry_on=(PodsNotReady,),
        )

    @staticmethod
    def _service_address(core: Any, cfg: Config) -> str:
        svc = core.read_namespaced_service(name=cfg.service, namespace=cfg.namespace)
        cluster_ip = svc.spec.cluster_ip
        if not cluster_ip or cluster_ip == "None":
            return ""
        return cluster_ip

    def _read_logs(self, cluster: Cluster, namespace: str, pod_name: str, container: str) -> str:
        core = self._clients(cluster)["core"]
        try:
            return core.read_namespaced_pod_log(
                name=pod_name, namespace=namespace, container=container
            )
        except ApiException as e:
            raise FetchError(f"logs of {namespace}/{pod_name}[{container}]: {e}") from e

    def _to_workload(self, cluster: Cluster, cfg: Config, pod: Any) -> Workload:
        name = pod.metadata.name
        ip = pod.status.pod_ip
        containers = [c.name for c in pod.spec.containers or []]
        containers += [c.name for c in pod.spec.init_containers or []]
        sidecar = None
        if settings.proxy_container in containers:
            sidecar = Sidecar(
                pod_name=name,
                namespace=cfg.namespace,
                address=ip,
                log_reader=partial(
                    self._read_logs, cluster, cfg.namespace, name, settings.proxy_container
                ),
            )
        return Workload(
            pod_name=name,
            address=ip,
            sidecar=sidecar,
            log_reader=partial(self._read_logs, cluster, cfg.namespace, name, settings.app_container),
        )

    def list_workloads(self, instance: Instance) -> List[Workload]:
        """Current ready workloads of ``instance``, reusing known handles."""
        cfg = instance.config
        cluster = instance.cluster
        core = self._clients(cluster)["core"]
        try:
            pods = core.list_namespaced_pod(namespace=cfg.namespace, label_selector=cfg.selector())
        except ApiException as e:
            raise FetchError(f"pods of {cfg} in cluster {cluster}: {e}") from e
        ready = [p for p in pods.items if pod_ready(p)]

        prefix = (cluster.name, cfg.namespace, cfg.selector())
        with self._lock:
            workloads = []
            for pod in ready:
                key = prefix + (pod.metadata.name,)
                if key not in self._workloads:
                    self._workloads[key] = self._to_workload(cluster, cfg, pod)
                workloads.append(self._workloads[key])
            live = {prefix + (p.metadata.name,) for p in ready}
            self._forget(k for k in self._workloads if k[:3] == prefix and k not in live)
        return workloads

    def _forget(self, keys: Iterable[Tuple[str, str, str, str]]) -> None:
        for key in list(keys):
            gone = self._workloads.pop(key)
            gone.invalidate()
            gone.close()

    def restart(self, instance: Instance) -> None:
        """Delete every pod of ``instance`` and wait for a fully new set."""
        cfg = instance.config
        core = self._clients(instance.cluster)["core"]
        try:
            pods = core.list_namespaced_pod(namespace=cfg.namespace, label_selector=cfg.selector())
            old = {p.metadata.name for p in pods.items}
            core.delete_collection_namespaced_pod(
                namespace=cfg.namespace, label_selector=cfg.selector()
            )
            self._wait_ready(core, cfg, exclude=old)
        except (ApiException, RetryExhaustedError) as e:
            raise DeploymentError([(f"restart {instance.name}", e)]) from e

        prefix = (instance.cluster.name, cfg.namespace, cfg.selector())
        with self._lock:
            self._forget(k for k in self._workloads if k[:3] == prefix and k[3] in old)
        logger.info(f"Restarted {instance.name}, replaced {len(old)} pod(s)")

    def delete(self, instance: Instance) -> None:
        """Remove the Deployment and Service of ``instance``."""
        cfg = instance.config
        api = self._clients(instance.cluster)
        deletions = [
            (api["apps"].delete_namespaced_deployment, f"{cfg.service}-{cfg.version}"),
            (api["core"].delete_namespaced_service, cfg.service),
        ]
        for delete, name in deletions:
            try:
                delete(name=name, namespace=cfg.namespace)
            except ApiException as e:
                if e.status != 404:  # Ignore if already gone
                    logger.warning(f"Failed to delete {cfg.namespace}/{name}: {e}")
