"""Immutable request contexts and a stashable notion of "now"."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Hashable, Optional

__all__ = ["Context", "stash_now", "retrieve_now"]


class Context:
    """An immutable chain of key/value pairs.

    Adding a value returns a new context that shadows its parent; the parent
    is never changed.
    """

    __slots__ = ("_parent", "_key", "_value", "_has_value")

    def __init__(self) -> None:
        self._parent: Optional[Context] = None
        self._key: Any = None
        self._value: Any = None
        self._has_value = False

    @classmethod
    def _child(cls, parent: "Context", key: Hashable, value: Any) -> "Context":
        ctx = cls.__new__(cls)
        ctx._parent = parent
        ctx._key = key
        ctx._value = value
        ctx._has_value = True
        return ctx

    def with_value(self, key: Hashable, value: Any) -> "Context":
        """Return a new context carrying ``value`` under ``key``."""
        if key is None:
            raise ValueError("context key must not be None")
        return Context._child(self, key, value)

    def value(self, key: Hashable) -> Any:
        """Return the nearest value stored under ``key``, or None."""
        ctx: Optional[Context] = self
        while ctx is not None:
            if ctx._has_value and ctx._key == key:
                return ctx._value
            ctx = ctx._parent
        return None


class _NowKey:
    __slots__ = ()

    def __repr__(self) -> str:
        return "<now stash key>"


_NOW_KEY = _NowKey()


def stash_now(ctx: Context, now: datetime) -> Context:
    """Stash ``now`` in the context unless a time is already stashed."""
    if ctx.value(_NOW_KEY) is not None:
        return ctx
    return ctx.with_value(_NOW_KEY, now)


def retrieve_now(ctx: Context) -> datetime:
    """Return the stashed time, or the current time if none was stashed."""
    now = ctx.value(_NOW_KEY)
    if isinstance(now, datetime):
        return now
    return datetime.now(timezone.utc)