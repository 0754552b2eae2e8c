"""Pydantic models describing echo services and their ports."""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from meshecho.common.settings import settings


class Protocol(str, Enum):
    """Protocols an echo port can speak."""

    HTTP = "HTTP"
    HTTP2 = "HTTP2"
    HTTPS = "HTTPS"
    GRPC = "GRPC"
    TCP = "TCP"
    TLS = "TLS"
    WEBSOCKET = "WebSocket"

    def is_http(self) -> bool:
        return self in (Protocol.HTTP, Protocol.HTTP2, Protocol.HTTPS)

    @property
    def scheme(self) -> str:
        """URL scheme used when forwarding to this protocol."""
        return {
            Protocol.HTTP: "http",
            Protocol.HTTP2: "http",
            Protocol.HTTPS: "https",
            Protocol.GRPC: "grpc",
            Protocol.TCP: "tcp",
            Protocol.TLS: "tls",
            Protocol.WEBSOCKET: "ws",
        }[self]


class BindMode(str, Enum):
    """Address an echo port listens on."""

    INSTANCE_IP = "instance-ip"
    LOCALHOST = "localhost"
    WILDCARD = "wildcard"


class WorkloadPort(BaseModel):
    """Port as seen by a single running replica."""

    model_config = ConfigDict(frozen=True)

    port: int = Field(gt=0, lt=65536, description="Port number")
    protocol: Protocol = Field(default=Protocol.HTTP, description="Protocol on this port")
    tls: bool = Field(default=False, description="Serve TLS instead of plain text")
    server_first: bool = Field(default=False, description="Server sends the first byte")


class Port(BaseModel):
    """Service-facing port exposed by an echo instance."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, description="Port name, unique within a config")
    protocol: Protocol = Field(default=Protocol.HTTP, description="Protocol on this port")
    service_port: int = Field(gt=0, lt=65536, description="Port the service is reached on")
    instance_port: Optional[int] = Field(
        default=None,
        gt=0,
        lt=65536,
        description="Port the workload listens on (defaults to service_port)",
    )
    tls: bool = Field(default=False, description="Serve TLS instead of plain text")
    server_first: bool = Field(default=False, description="Server sends the first byte")
    instance_ip: bool = Field(default=False, description="Listen on the instance IP only")
    localhost_ip: bool = Field(default=False, description="Listen on localhost only")

    @model_validator(mode="after")
    def check_bind_address(self) -> "Port":
        """Reject ports that ask for two bind addresses at once."""
        if self.instance_ip and self.localhost_ip:
            raise ValueError(
                f"port {self.name}: instance_ip and localhost_ip are mutually exclusive"
            )
        return self

    @property
    def target_port(self) -> int:
        """Port the workload actually listens on."""
        return self.instance_port or self.service_port

    @property
    def bind_mode(self) -> BindMode:
        if self.instance_ip:
            return BindMode.INSTANCE_IP
        if self.localhost_ip:
            return BindMode.LOCALHOST
        return BindMode.WILDCARD

    def workload_port(self) -> WorkloadPort:
        return WorkloadPort(
            port=self.target_port,
            protocol=self.protocol,
            tls=self.tls,
            server_first=self.server_first,
        )


class Config(BaseModel):
    """Configuration of one logical echo service.

    Configs are frozen: once handed to a builder they cannot change.
    """

    model_config = ConfigDict(frozen=True)

    service: str = Field(
        min_length=1,
        pattern="^[a-z0-9]([-a-z0-9]*[a-z0-9])?$",
        description="Service name",
    )
    namespace: str = Field(
        default_factory=lambda: settings.namespace,
        pattern="^[a-z0-9-]+$",
        description="Namespace the service is deployed to",
    )
    version: str = Field(default="v1", description="Version label of the workloads")
    ports: List[Port] = Field(default_factory=list, description="Ports exposed by the service")
    cluster: Optional[str] = Field(
        default=None, description="Restrict deployment to the named cluster"
    )
    replicas: int = Field(default=1, ge=1, description="Number of workloads")
    headless: bool = Field(default=False, description="Deploy a headless service")
    inject_sidecar: bool = Field(default=True, description="Attach a proxy to each workload")
    subset_labels: Dict[str, str] = Field(
        default_factory=dict, description="Extra labels applied to the workloads"
    )
    image: Optional[str] = Field(default=None, description="Override of the echo image")

    @field_validator("ports")
    @classmethod
    def unique_port_names(cls, v: List[Port]) -> List[Port]:
        """Port names must be unique within a config."""
        seen = set()
        for port in v:
            if port.name in seen:
                raise ValueError(f"duplicate port name: {port.name}")
            seen.add(port.name)
        return v

    def port(self, name: str) -> Optional[Port]:
        """Look up a port by name."""
        return next((p for p in self.ports if p.name == name), None)

    def check_port(self) -> Optional[Port]:
        """First port the echo server can forward to, if any."""
        return next((p for p in self.ports if p.protocol.is_http()), None)

    def workload_ports(self) -> List[WorkloadPort]:
        return [p.workload_port() for p in self.ports]

    def fqdn(self, domain: str = "cluster.local") -> str:
        return f"{self.service}.{self.namespace}.svc.{domain}"

    def host_header(self) -> str:
        """Host header used when calling this service by name."""
        return f"{self.service}.{self.namespace}"

    def labels(self) -> Dict[str, str]:
        """Pod labels identifying this service's workloads."""
        return {**self.subset_labels, "app": self.service, "version": self.version}

    def selector(self) -> str:
        """Label selector matching this service's workloads."""
        return f"app={self.service},version={self.version}"

    def __str__(self) -> str:
        return f"{self.namespace}/{self.service}"
