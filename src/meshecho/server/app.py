"""Echo Server - Workload Application.

FastAPI application run inside every echo workload. It echoes incoming
requests back as JSON and, on ``/forward``, makes calls to other services
on behalf of the test harness.
"""

import socket
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

import httpx
from fastapi import FastAPI, HTTPException, Request, status
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from meshecho.echo.call import ForwardEchoRequest, ParsedResponse


class WorkloadIdentity(BaseSettings):
    """Identity of this workload, injected through the pod environment."""

    service_name: str = Field(default="echo", description="Service this workload backs")
    service_version: str = Field(default="v1", description="Workload version")
    cluster_name: str = Field(default="", description="Cluster the workload runs in")
    pod_ip: str = Field(default="", description="Pod IP from the downward API")
    hostname: str = Field(default_factory=socket.gethostname, description="Pod hostname")


class EchoResponse(BaseModel):
    """What the echo endpoint returns for every request."""

    service: str = Field(description="Service name")
    version: str = Field(description="Workload version")
    cluster: str = Field(description="Cluster name")
    hostname: str = Field(description="Hostname of the workload")
    method: str = Field(description="Request method")
    url: str = Field(description="Request URL")
    host: str = Field(default="", description="Host header")
    protocol: str = Field(default="", description="HTTP version of the request")
    headers: Dict[str, str] = Field(default_factory=dict, description="Request headers")
    body: str = Field(default="", description="Request body")


class ForwardResponse(BaseModel):
    """Results of a forward call."""

    responses: List[ParsedResponse] = Field(default_factory=list)


identity = WorkloadIdentity()
start_time = time.time()

app = FastAPI(
    title="Echo Server",
    description="Echoes requests and forwards calls for mesh connectivity tests.",
    version="1.0.0",
)


@app.get("/healthz")
async def healthz() -> Dict[str, Any]:
    """Liveness and readiness endpoint."""
    return {"status": "healthy", "uptime": time.time() - start_time}


def _parse_reply(index: int, url: str, reply: httpx.Response, duration_ms: float) -> ParsedResponse:
    """Turn a peer's HTTP reply into a ParsedResponse."""
    echoed: Dict[str, Any] = {}
    try:
        payload = reply.json()
        if isinstance(payload, dict):
            echoed = payload
    except ValueError:
        pass

    return ParsedResponse(
        id=index,
        url=url,
        code=reply.status_code,
        protocol=reply.http_version,
        method=echoed.get("method", reply.request.method),
        host=echoed.get("host", ""),
        hostname=echoed.get("hostname", ""),
        version=echoed.get("version", ""),
        cluster=echoed.get("cluster", ""),
        headers=echoed.get("headers", {}),
        body=echoed.get("body", reply.text if not echoed else ""),
        duration_ms=duration_ms,
    )


@app.post("/forward", response_model=ForwardResponse)
async def forward(request: ForwardEchoRequest) -> ForwardResponse:
    """Make ``count`` requests to ``url`` and report every result."""
    scheme = urlsplit(request.url).scheme
    if scheme not in ("http", "https"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported scheme for forwarding: {scheme}",
        )

    responses: List[ParsedResponse] = []
    async with httpx.AsyncClient(timeout=request.timeout_seconds, verify=False) as client:
        for i in range(request.count):
            started = time.perf_counter()
            try:
                reply = await client.request(
                    request.method,
                    request.url,
                    headers=request.headers,
                    content=request.message.encode() if request.message else None,
                )
            except httpx.HTTPError as e:
                responses.append(ParsedResponse(id=i, url=request.url, error=str(e) or repr(e)))
                continue
            duration_ms = (time.perf_counter() - started) * 1000
            responses.append(_parse_reply(i, request.url, reply, duration_ms))

    return ForwardResponse(responses=responses)


@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def echo(path: str, request: Request) -> EchoResponse:
    """Echo the request back, tagged with this workload's identity."""
    body = await request.body()
    return EchoResponse(
        service=identity.service_name,
        version=identity.service_version,
        cluster=identity.cluster_name,
        hostname=identity.hostname,
        method=request.method,
        url=str(request.url),
        host=request.headers.get("host", ""),
        protocol=f"HTTP/{request.scope.get('http_version', '1.1')}",
        headers=dict(request.headers),
        body=body.decode(errors="replace"),
    )


def bind_host(mode: str, pod_ip: Optional[str] = None) -> str:
    """Resolve a bind mode from the deployment args to a listen address."""
    if mode == "localhost":
        return "127.0.0.1"
    if mode == "instance-ip":
        return pod_ip or identity.pod_ip or "0.0.0.0"
    if mode == "wildcard":
        return "0.0.0.0"
    raise ValueError(f"unknown bind mode: {mode}")
