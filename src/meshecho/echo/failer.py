"""Abort-on-error wrapper for test code."""

import logging
from typing import Any, Callable, NoReturn, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Failer(Protocol):
    """Sink that aborts the current test when notified of a failure."""

    def fail(self, message: str) -> NoReturn:
        ...


class PytestFailer:
    """Failer that aborts the running pytest test."""

    def fail(self, message: str) -> NoReturn:
        import pytest

        pytest.fail(message)


def or_fail(failer: Failer, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run ``fn`` and abort through ``failer`` if it raises.

    If the failer returns instead of aborting, the original error is
    re-raised so no usable result ever escapes.
    """
    try:
        return fn(*args, **kwargs)
    except Exception as e:
        name = getattr(fn, "__qualname__", repr(fn))
        logger.error(f"{name} failed: {e}")
        failer.fail(f"{name} failed: {e}")
        raise
