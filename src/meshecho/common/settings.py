"""Harness settings and configuration management."""

import logging
from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Harness settings loaded from environment variables."""

    # Kubernetes configuration
    kubeconfig: Optional[Path] = Field(
        default=None,
        description="Path to kubeconfig file (in-cluster config when unset)",
    )

    clusters: str = Field(
        default="",
        description="Comma-separated kubeconfig contexts to deploy into",
    )

    namespace: str = Field(
        default="echo",
        description="Default namespace for echo deployments",
    )

    image: str = Field(
        default="ghcr.io/meshecho/echo:latest",
        description="Container image running the echo server",
    )

    # Workload ports
    echo_port: int = Field(
        default=8080,
        description="Default port the echo server listens on",
    )

    control_port: int = Field(
        default=8080,
        description="Port exposing the /forward control endpoint",
    )

    admin_port: int = Field(
        default=15000,
        description="Envoy admin port on proxied workloads",
    )

    app_container: str = Field(
        default="app",
        description="Name of the echo container",
    )

    proxy_container: str = Field(
        default="istio-proxy",
        description="Name of the injected proxy container",
    )

    # Build and convergence
    deploy_timeout: float = Field(
        default=300.0,
        gt=0,
        description="Seconds to wait for pods to become ready",
    )

    deploy_concurrency: int = Field(
        default=8,
        ge=1,
        description="Maximum parallel deployments during a build",
    )

    convergence_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Deadline in seconds for full pairwise reachability",
    )

    convergence_concurrency: int = Field(
        default=10,
        ge=1,
        description="Maximum concurrent pairwise checks",
    )

    # Calls and polling
    call_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Per-attempt forward call timeout in seconds",
    )

    call_retry_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Overall retry budget for call_with_retry",
    )

    call_retry_delay: float = Field(
        default=0.1,
        ge=0,
        description="Delay between call attempts",
    )

    config_wait_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Overall budget for sidecar config waits",
    )

    config_wait_delay: float = Field(
        default=0.5,
        ge=0,
        description="Delay between sidecar config polls",
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    @property
    def cluster_contexts(self) -> List[str]:
        """Get the configured cluster contexts as a list."""
        return [c.strip() for c in self.clusters.split(",") if c.strip()]

    class Config:
        """Pydantic settings configuration."""

        env_prefix = "MESHECHO_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for CLI and server entry points."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Global settings instance
settings = Settings()
