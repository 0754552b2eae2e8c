"""Call options and the forward-call wire models."""

from collections import Counter
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from pydantic import BaseModel, Field

from meshecho.common.settings import settings
from meshecho.echo.config import Port, Protocol
from meshecho.echo.errors import CallOptionsError, ResponseCheckError
from meshecho.echo.retry import RetryPolicy

if TYPE_CHECKING:
    from meshecho.echo.instance import Instance


# ============================================================================
# Wire Models
# ============================================================================


class ForwardEchoRequest(BaseModel):
    """Request sent to a workload's control endpoint to make calls on our behalf."""

    url: str = Field(description="Target URL")
    count: int = Field(default=1, ge=1, description="Number of requests to make")
    method: str = Field(default="GET", description="HTTP method")
    headers: Dict[str, str] = Field(default_factory=dict, description="Request headers")
    message: str = Field(default="", description="Request payload")
    timeout_seconds: float = Field(default=5.0, gt=0, description="Per-request timeout")
    server_first: bool = Field(default=False, description="Target port is server-first")


class ParsedResponse(BaseModel):
    """Result of one request made by a forward call."""

    id: int = Field(default=0, description="Index of the request within the call")
    url: str = Field(default="", description="Requested URL")
    code: Optional[int] = Field(default=None, description="Status code, if any")
    protocol: str = Field(default="", description="Protocol used")
    method: str = Field(default="", description="Request method")
    host: str = Field(default="", description="Host that was requested")
    hostname: str = Field(default="", description="Hostname of the responding workload")
    version: str = Field(default="", description="Version of the responding workload")
    cluster: str = Field(default="", description="Cluster of the responding workload")
    headers: Dict[str, str] = Field(default_factory=dict, description="Echoed request headers")
    body: str = Field(default="", description="Echoed body")
    duration_ms: float = Field(default=0.0, ge=0, description="Request duration")
    error: Optional[str] = Field(default=None, description="Transport error for this request")

    @property
    def ok(self) -> bool:
        return self.error is None and self.code is not None and 200 <= self.code < 300


class ParsedResponses(list):
    """All responses returned by one forward call."""

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ParsedResponses":
        return cls(ParsedResponse(**r) for r in payload.get("responses", []))

    def check_ok(self) -> "ParsedResponses":
        """Raise unless every response succeeded."""
        if not self:
            raise ResponseCheckError("no responses received")
        failed = [r for r in self if not r.ok]
        if failed:
            first = failed[0]
            raise ResponseCheckError(
                f"{len(failed)}/{len(self)} requests failed, "
                f"first: code={first.code} error={first.error}"
            )
        return self

    def check_code(self, code: int) -> "ParsedResponses":
        """Raise unless every response has the given status code."""
        bad = [r.code for r in self if r.code != code]
        if not self or bad:
            raise ResponseCheckError(f"expected code {code}, got {bad or 'no responses'}")
        return self

    def hostnames(self) -> Counter:
        return Counter(r.hostname for r in self)

    def clusters(self) -> Counter:
        return Counter(r.cluster for r in self)


# ============================================================================
# Call Options
# ============================================================================


@dataclass
class CallOptions:
    """Options for one forward call.

    Either ``target`` or ``address`` must be given. The port is taken from
    ``port``, or looked up on the target by ``port_name``, or defaults to
    the target's first port.
    """

    target: Optional["Instance"] = None
    address: Optional[str] = None
    port_name: Optional[str] = None
    port: Optional[Port] = None
    scheme: Optional[Protocol] = None
    count: int = 0
    method: str = "GET"
    path: str = "/"
    headers: Dict[str, str] = field(default_factory=dict)
    message: str = ""
    timeout: Optional[float] = None
    retry: Optional[RetryPolicy] = None
    check: Optional[Callable[[ParsedResponses], Any]] = None

    def fill_defaults(self) -> "CallOptions":
        """Return a completed copy of these options.

        Raises:
            CallOptionsError: The options cannot describe a call.
        """
        if self.target is None and not self.address:
            raise CallOptionsError("either target or address must be set")
        if self.count < 0:
            raise CallOptionsError(f"count must not be negative, got {self.count}")

        port = self.port
        if port is None:
            if self.target is None:
                raise CallOptionsError("port is required when calling a raw address")
            cfg = self.target.config
            if self.port_name:
                port = cfg.port(self.port_name)
                if port is None:
                    raise CallOptionsError(f"{cfg} has no port named {self.port_name!r}")
            elif cfg.ports:
                port = cfg.ports[0]
            else:
                raise CallOptionsError(f"{cfg} exposes no ports")

        address = self.address or self.target.config.fqdn()
        scheme = self.scheme or port.protocol

        headers = dict(self.headers)
        if self.target is not None and scheme.is_http():
            headers.setdefault("Host", self.target.config.host_header())

        count = self.count
        if count == 0:
            count = self.target.config.replicas if self.target is not None else 1

        return replace(
            self,
            address=address,
            port=port,
            scheme=scheme,
            headers=headers,
            count=count,
            timeout=self.timeout or settings.call_timeout,
        )

    @property
    def url(self) -> str:
        if self.port is None or self.scheme is None:
            raise CallOptionsError("options are incomplete, call fill_defaults() first")
        path = self.path if self.path.startswith("/") else f"/{self.path}"
        return f"{self.scheme.scheme}://{self.address}:{self.port.service_port}{path}"

    def to_request(self) -> ForwardEchoRequest:
        return ForwardEchoRequest(
            url=self.url,
            count=self.count,
            method=self.method,
            headers=self.headers,
            message=self.message,
            timeout_seconds=self.timeout,
            server_first=self.port.server_first,
        )

    def describe(self) -> str:
        """Short human-readable form used in logs."""
        target = self.target.config.service if self.target is not None else self.address
        port = self.port.name if self.port is not None else self.port_name
        return f"{target}:{port}"
