"""Round-robin interleaving across tenants."""

from collections.abc import Callable, Hashable, Iterable
from typing import TypeVar

T = TypeVar("T")


def round_robin_by(items: Iterable[T], key: Callable[[T], Hashable]) -> list[T]:
    """
    Interleave items round-robin by group.

    Groups are visited in order of first appearance and items keep their
    relative order within a group, so ``[a1, a2, a3, b1]`` becomes
    ``[a1, b1, a2, a3]``.
    """
    groups: dict[Hashable, list[T]] = {}
    for item in items:
        groups.setdefault(key(item), []).append(item)

    result: list[T] = []
    queues = list(groups.values())
    index = 0
    while queues:
        remaining = []
        for queue in queues:
            result.append(queue[index])
            if index + 1 < len(queue):
                remaining.append(queue)
        queues = remaining
        index += 1
    return result
