"""Clock and actor providers consulted at write time."""
from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timedelta
from typing import Protocol

from auditkit.utils.time import ensure_utc, utcnow


class Clock(Protocol):
    def now(self) -> datetime: ...


class ActorProvider(Protocol):
    def current_actor(self) -> str | None: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return utcnow()


class FixedClock:
    """Clock returning a settable instant; ``step`` is added after every read."""

    def __init__(self, start: datetime, *, step: timedelta | None = None) -> None:
        self._current = ensure_utc(start)
        self._step = step or timedelta(0)

    def now(self) -> datetime:
        current = self._current
        self._current = current + self._step
        return current

    def advance(self, delta: timedelta) -> None:
        self._current += delta

    def set(self, value: datetime) -> None:
        self._current = ensure_utc(value)


class StaticActorProvider:
    """Always reports the same actor, e.g. a service account."""

    def __init__(self, actor: str | None) -> None:
        self._actor = actor

    def current_actor(self) -> str | None:
        return self._actor


# Each thread or task sees its own actor.
_current_actor: ContextVar[str | None] = ContextVar("auditkit_current_actor", default=None)


def set_current_actor(actor: str | None) -> Token:
    """Set the actor for the current context and return the reset token."""

    return _current_actor.set(actor)


def reset_current_actor(token: Token) -> None:
    _current_actor.reset(token)


@contextmanager
def actor_context(actor: str | None) -> Iterator[None]:
    """Run a block of writes on behalf of ``actor``."""

    token = set_current_actor(actor)
    try:
        yield
    finally:
        reset_current_actor(token)


class ContextActorProvider:
    """Reads the actor set via :func:`actor_context` / :func:`set_current_actor`."""

    def current_actor(self) -> str | None:
        return _current_actor.get()


__all__ = [
    "Clock",
    "ActorProvider",
    "SystemClock",
    "FixedClock",
    "StaticActorProvider",
    "ContextActorProvider",
    "actor_context",
    "set_current_actor",
    "reset_current_actor",
]
