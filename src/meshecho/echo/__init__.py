"""Echo instances, the builder that converges them and the calls between them."""

from meshecho.echo.builder import Builder, Deployer, InstanceRef
from meshecho.echo.call import CallOptions, ForwardEchoRequest, ParsedResponse, ParsedResponses
from meshecho.echo.caller import Caller, Callers
from meshecho.echo.config import BindMode, Config, Port, Protocol, WorkloadPort
from meshecho.echo.errors import (
    CallError,
    CallOptionsError,
    ConvergenceTimeoutError,
    DeploymentError,
    FetchError,
    MeshEchoError,
    NoWorkloadsError,
    ResponseCheckError,
    RetryExhaustedError,
    StaleWorkloadError,
    UnboundReferenceError,
    WaitTimeoutError,
)
from meshecho.echo.failer import Failer, PytestFailer, or_fail
from meshecho.echo.instance import Instance, Instances, WorkloadController
from meshecho.echo.retry import RetryPolicy, until_success, wait_for
from meshecho.echo.sidecar import Sidecar
from meshecho.echo.workload import Workload

__all__ = [
    "BindMode",
    "Builder",
    "CallError",
    "CallOptions",
    "CallOptionsError",
    "Caller",
    "Callers",
    "Config",
    "ConvergenceTimeoutError",
    "Deployer",
    "DeploymentError",
    "Failer",
    "FetchError",
    "ForwardEchoRequest",
    "Instance",
    "InstanceRef",
    "Instances",
    "MeshEchoError",
    "NoWorkloadsError",
    "ParsedResponse",
    "ParsedResponses",
    "Port",
    "Protocol",
    "PytestFailer",
    "ResponseCheckError",
    "RetryExhaustedError",
    "RetryPolicy",
    "Sidecar",
    "StaleWorkloadError",
    "UnboundReferenceError",
    "WaitTimeoutError",
    "Workload",
    "WorkloadController",
    "WorkloadPort",
    "or_fail",
    "until_success",
    "wait_for",
]
