from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, TypeVar, Union

T = TypeVar("T")
U = TypeVar("U")


class ErrorKind(str, Enum):
    unavailable = "unavailable"
    rate_limited = "rate_limited"
    quota_exhausted = "quota_exhausted"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class StaleServed(Generic[T]):
    """
    Cached data served because the store could not be used; `age_s` is how old it is.
    """

    value: T
    age_s: float


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str = ""


Outcome = Union[Ok[T], StaleServed[T], Err]


def map_outcome(outcome: "Outcome[T]", fn: Callable[[T], U]) -> "Outcome[U]":
    if isinstance(outcome, Ok):
        return Ok(fn(outcome.value))
    if isinstance(outcome, StaleServed):
        return StaleServed(fn(outcome.value), outcome.age_s)
    return outcome
