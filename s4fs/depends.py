from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING, Annotated, Any, Callable, TypeVar

from fastapi import Depends, FastAPI

T = TypeVar("T")


@lru_cache(maxsize=None)
def _provider(tp: type) -> Callable[[], Any]:
    def provide() -> Any:
        raise RuntimeError(f"no {tp.__name__} is bound to this app")

    provide.__name__ = f"provide_{tp.__name__}"
    return provide


def bind(app: FastAPI, tp: type[T], value: T) -> None:
    """Make ``value`` available to routes as ``Injected[tp]``."""
    app.dependency_overrides[_provider(tp)] = lambda: value


if TYPE_CHECKING:
    Injected = Annotated[T, ...]
else:

    class Injected:
        def __class_getitem__(cls, tp: type) -> Any:
            return Annotated[tp, Depends(_provider(tp))]
