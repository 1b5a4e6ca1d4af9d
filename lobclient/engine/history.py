# lobclient/engine/history.py
from __future__ import annotations

from typing import Any, Callable, Generic, Iterable, List, Sequence, Tuple, TypeVar

T = TypeVar("T")


def append_with_limit(buffer: Sequence[T], entry: T, capacity: int) -> List[T]:
    """
    Ritorna una nuova lista con entry in coda; se si supera capacity
    scarta dalla testa (i piu' vecchi), mantenendo l'ordine di arrivo.
    """
    nxt = list(buffer)
    nxt.append(entry)
    if len(nxt) > capacity:
        nxt = nxt[len(nxt) - capacity:]
    return nxt


def extend_with_limit(buffer: Sequence[T], entries: Iterable[T], capacity: int) -> List[T]:
    nxt = list(buffer)
    nxt.extend(entries)
    if len(nxt) > capacity:
        nxt = nxt[len(nxt) - capacity:]
    return nxt


def prepend_unique_with_limit(
    buffer: Sequence[T],
    entry: T,
    capacity: int,
    key: Callable[[T], Any],
) -> List[T]:
    """
    Variante newest-first usata per i fill: toglie un eventuale duplicato
    (stessa key) e mette entry in testa, poi tronca a capacity.
    """
    entry_key = key(entry)
    nxt = [entry]
    nxt.extend(item for item in buffer if key(item) != entry_key)
    return nxt[:capacity]


class BoundedLog(Generic[T]):
    """
    Log append-only a capacita' fissa (eventi ordine, price history, trade).

    Le letture passano da snapshot(): tupla immutabile, i consumer non
    possono modificare lo stato.
    """

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._items: List[T] = []

    def append(self, entry: T) -> None:
        self._items = append_with_limit(self._items, entry, self.capacity)

    def extend(self, entries: Iterable[T]) -> None:
        self._items = extend_with_limit(self._items, entries, self.capacity)

    def clear(self) -> None:
        self._items = []

    def snapshot(self) -> Tuple[T, ...]:
        return tuple(self._items)

    def __len__(self) -> int:
        return len(self._items)
