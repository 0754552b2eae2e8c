"""Call capability shared by instances and other callers."""

from typing import Optional, Protocol, runtime_checkable

from meshecho.echo.call import CallOptions, ParsedResponses
from meshecho.echo.instance import Instance, Instances
from meshecho.echo.retry import RetryPolicy


@runtime_checkable
class Caller(Protocol):
    """Anything that can originate forward calls."""

    def call(self, options: CallOptions) -> ParsedResponses:
        ...

    def call_with_retry(
        self,
        options: CallOptions,
        policy: Optional[RetryPolicy] = None,
    ) -> ParsedResponses:
        ...


class Callers(list):
    """Heterogeneous collection of callers."""

    def instances(self) -> Optional[Instances]:
        """Return these callers as Instances, or None if any is not an Instance.

        A partial list is never returned.
        """
        out = Instances()
        for caller in self:
            if not isinstance(caller, Instance):
                return None
            out.append(caller)
        return out
