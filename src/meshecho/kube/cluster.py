"""Target clusters and their Kubernetes API clients."""

from typing import Any, Dict, List, Optional

from kubernetes import client, config as k8s_config
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from meshecho.common.settings import settings


class Cluster(BaseModel):
    """A cluster echo instances can be deployed to."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, description="Cluster name")
    context: Optional[str] = Field(
        default=None, description="kubeconfig context (in-cluster config when unset)"
    )
    network: str = Field(default="network-1", description="Network the cluster belongs to")

    _api: Optional[client.ApiClient] = PrivateAttr(default=None)

    def api_client(self) -> client.ApiClient:
        """Lazily build an API client for this cluster."""
        if self._api is None:
            if self.context is None and settings.kubeconfig is None:
                k8s_config.load_incluster_config()
                api = client.ApiClient()
            else:
                api = k8s_config.new_client_from_config(
                    config_file=str(settings.kubeconfig) if settings.kubeconfig else None,
                    context=self.context,
                )
            self._api = api
        return self._api

    def clients(self) -> Dict[str, Any]:
        """Typed Kubernetes API groups for this cluster."""
        api = self.api_client()
        return {
            "core": client.CoreV1Api(api),
            "apps": client.AppsV1Api(api),
        }

    def __str__(self) -> str:
        return self.name


def default_clusters() -> List[Cluster]:
    """Clusters configured in settings, or a single in-cluster default."""
    contexts = settings.cluster_contexts
    if not contexts:
        return [Cluster(name="primary")]
    return [Cluster(name=ctx, context=ctx) for ctx in contexts]
