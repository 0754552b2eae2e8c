"""Error taxonomy for echo topologies, calls and proxy polling."""

from typing import List, Optional, Sequence, Tuple


class MeshEchoError(Exception):
    """Base class for all harness errors."""


class DeploymentError(MeshEchoError):
    """One or more configs could not be materialized."""

    def __init__(self, failures: Sequence[Tuple[str, BaseException]]):
        self.failures: List[Tuple[str, BaseException]] = list(failures)
        details = "; ".join(f"{name}: {err}" for name, err in self.failures)
        super().__init__(f"failed to deploy {len(self.failures)} config(s): {details}")


class ConvergenceTimeoutError(MeshEchoError, TimeoutError):
    """Pairwise reachability was not reached before the deadline."""

    def __init__(self, pending: Sequence[Tuple[str, str]], timeout: float):
        self.pending: List[Tuple[str, str]] = list(pending)
        self.timeout = timeout
        pairs = ", ".join(f"{src}->{dst}" for src, dst in self.pending)
        super().__init__(
            f"mesh did not converge within {timeout:.1f}s, unreachable pairs: {pairs}"
        )


class CallError(MeshEchoError):
    """A single forward call failed at the transport or protocol level."""


class ResponseCheckError(CallError):
    """Responses were received but rejected by the caller's check."""


class StaleWorkloadError(CallError):
    """The workload was replaced by a restart and is no longer live."""


class CallOptionsError(MeshEchoError, ValueError):
    """Call options are incomplete or inconsistent. Never retried."""


class RetryExhaustedError(MeshEchoError):
    """Retry budget ran out before an attempt succeeded."""

    def __init__(self, last_error: Optional[BaseException], attempts: int):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(f"giving up after {attempts} attempt(s): {last_error}")


class FetchError(MeshEchoError):
    """A single fetch against a proxy admin endpoint failed."""


class WaitTimeoutError(MeshEchoError, TimeoutError):
    """A poll never saw an accepted snapshot within its budget."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        message = f"condition not accepted after {attempts} attempt(s)"
        if last_error is not None:
            message += f", last error: {last_error}"
        super().__init__(message)


class NoWorkloadsError(MeshEchoError):
    """An instance has no live workloads."""


class UnboundReferenceError(MeshEchoError):
    """An instance reference was read before build() filled it."""
