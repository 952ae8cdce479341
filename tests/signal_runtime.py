"""In-process stand-ins for the reactive runtime rewritten code targets.

Rewritten test modules import their listener base, signal types and hooks
from here, and ``Mono`` drives both the deprecated callback and ``tap``.
"""

from __future__ import annotations

import enum
from typing import Callable, Generic, TypeVar

T = TypeVar("T")

DISCARDED: list[tuple[object, object]] = []
DROPPED: list[tuple[BaseException, object]] = []


def reset() -> None:
    DISCARDED.clear()
    DROPPED.clear()


class SignalType(enum.Enum):
    ON_COMPLETE = "on_complete"
    ON_ERROR = "on_error"
    CANCEL = "cancel"


class Context(dict):
    pass


def on_discard(value: object, context: object) -> None:
    DISCARDED.append((value, context))


def on_error_dropped(error: BaseException, context: object) -> None:
    DROPPED.append((error, context))


class DefaultSignalListener(Generic[T]):
    def add_context(self, original_context: Context) -> Context:
        return original_context

    def on_value(self, value: T) -> None:
        pass

    def on_error(self, error: BaseException) -> None:
        pass

    def on_complete(self) -> None:
        pass

    def on_cancel(self) -> None:
        pass

    def on_final(self, signal_type: SignalType) -> None:
        pass


class Mono(Generic[T]):
    def __init__(self, value: T | None = None, error: BaseException | None = None):
        self._value = value
        self._error = error

    @classmethod
    def just(cls, value: T) -> "Mono[T]":
        return cls(value=value)

    @classmethod
    def failed(cls, error: BaseException) -> "Mono[T]":
        return cls(error=error)

    @classmethod
    def empty(cls) -> "Mono[T]":
        return cls()

    def filter(self, predicate: Callable[[T], bool]) -> "Mono[T]":
        if self._value is not None and not predicate(self._value):
            return Mono.empty()
        return self

    def map(self, mapper: Callable[[T], object]) -> "Mono[object]":
        if self._value is None:
            return Mono(error=self._error)
        return Mono.just(mapper(self._value))

    def do_after_success_or_error(
        self, callback: Callable[[T | None, BaseException | None], None]
    ) -> "Mono[T]":
        callback(self._value, self._error)
        return self

    def tap(self, factory: Callable[[], DefaultSignalListener[T]]) -> "Mono[T]":
        listener = factory()
        listener.add_context(Context(subscriber="test"))
        if self._error is not None:
            listener.on_error(self._error)
            listener.on_final(SignalType.ON_ERROR)
            return self
        if self._value is not None:
            listener.on_value(self._value)
        listener.on_complete()
        listener.on_final(SignalType.ON_COMPLETE)
        return self
