"""Helpers shared by reconcilers."""

from __future__ import annotations

from typing import Any, List, Type, TypeVar

__all__ = ["extract_items"]

T = TypeVar("T")


def extract_items(object_list: Any, item_type: Type[T]) -> List[T]:
    """Return the items of an object list, checking each is an ``item_type``.

    The items are returned as the same objects held by the list.
    """
    try:
        items = object_list.items
    except AttributeError:
        raise TypeError(
            f"{type(object_list).__name__} has no items, expected an object list"
        ) from None
    result: List[T] = []
    for item in items:
        if not isinstance(item, item_type):
            raise TypeError(
                f"unknown type {type(item).__name__} for items, expected {item_type.__name__}"
            )
        result.append(item)
    return result