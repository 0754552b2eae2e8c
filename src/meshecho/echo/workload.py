"""Handle to a single running echo replica."""

import logging
from typing import Callable, Optional

import httpx

from meshecho.common.settings import settings
from meshecho.echo.call import ForwardEchoRequest, ParsedResponses
from meshecho.echo.errors import CallError, FetchError, StaleWorkloadError
from meshecho.echo.sidecar import Sidecar

logger = logging.getLogger(__name__)


class Workload:
    """One live replica of an echo instance.

    A workload is invalidated when its instance restarts. Calls against an
    invalidated workload raise ``StaleWorkloadError``; callers must not race
    a restart with in-flight calls on the same workload.
    """

    def __init__(
        self,
        pod_name: str,
        address: str,
        sidecar: Optional[Sidecar] = None,
        log_reader: Optional[Callable[[], str]] = None,
        control_port: Optional[int] = None,
        client: Optional[httpx.Client] = None,
    ):
        self._pod_name = pod_name
        self._address = address
        self._sidecar = sidecar
        self._log_reader = log_reader
        self._stale = False
        port = control_port or settings.control_port
        self._client = client or httpx.Client(base_url=f"http://{address}:{port}")

    @property
    def pod_name(self) -> str:
        return self._pod_name

    @property
    def address(self) -> str:
        return self._address

    @property
    def sidecar(self) -> Optional[Sidecar]:
        return self._sidecar

    @property
    def stale(self) -> bool:
        return self._stale

    def invalidate(self) -> None:
        """Mark this workload as replaced."""
        self._stale = True

    def forward_echo(self, request: ForwardEchoRequest) -> ParsedResponses:
        """Ask this workload to make ``request.count`` calls to ``request.url``.

        Raises:
            StaleWorkloadError: The workload was replaced by a restart.
            CallError: The forward call failed.
        """
        if self._stale:
            raise StaleWorkloadError(f"workload {self._pod_name} was replaced by a restart")

        # Leave headroom over the per-request timeout for all repeats.
        timeout = request.timeout_seconds * request.count + 1.0
        try:
            response = self._client.post(
                "/forward",
                json=request.model_dump(),
                timeout=timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise CallError(f"{self._pod_name} -> {request.url}: {e}") from e
        except ValueError as e:
            raise CallError(f"{self._pod_name} -> {request.url}: invalid response: {e}") from e

        responses = ParsedResponses.from_payload(payload)
        if len(responses) != request.count:
            raise CallError(
                f"{self._pod_name} -> {request.url}: expected {request.count} "
                f"responses, got {len(responses)}"
            )
        errors = [r.error for r in responses if r.error]
        if errors:
            raise CallError(f"{self._pod_name} -> {request.url}: {errors[0]}")
        return responses

    def logs(self) -> str:
        if self._log_reader is None:
            raise FetchError(f"workload {self._pod_name}: no log source available")
        return self._log_reader()

    def close(self) -> None:
        self._client.close()
        if self._sidecar is not None:
            self._sidecar.close()

    def __repr__(self) -> str:
        return f"Workload({self._pod_name}, {self._address})"
