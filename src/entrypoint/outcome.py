"""Tagged stage outcomes exchanged between the stages and the orchestrator."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from .errors import EntrypointError, Stage

__all__ = ["Failure", "StageOutcome", "Success", "attempt"]

_T = TypeVar("_T")


@dataclass(frozen=True, slots=True)
class Success(Generic[_T]):
    """A stage finished and produced ``value``."""

    value: _T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Failure:
    """A stage failed; ``error`` carries the diagnostic."""

    error: EntrypointError

    @property
    def ok(self) -> bool:
        return False

    @property
    def stage(self) -> Stage:
        return self.error.stage


StageOutcome = Union[Success[_T], Failure]


def attempt(
    stage_error: type[EntrypointError],
    operation: Callable[..., _T],
    *args: Any,
    **kwargs: Any,
) -> StageOutcome[_T]:
    """Run ``operation`` and classify its result.

    Entrypoint errors pass through untouched. Any other exception is wrapped
    into ``stage_error`` with the original kept as ``__cause__`` so the cause
    chain survives. ``KeyboardInterrupt`` and ``SystemExit`` are not caught.
    """
    try:
        return Success(operation(*args, **kwargs))
    except EntrypointError as exc:
        return Failure(exc)
    except Exception as exc:
        wrapped = stage_error(f"unexpected {type(exc).__name__}")
        wrapped.__cause__ = exc
        wrapped.unexpected = True
        return Failure(wrapped)
