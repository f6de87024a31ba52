"""Dense ID-indexed storage used by every registry in the simulation.

Values live in a growable list indexed directly by their ID. Removing a value
leaves a tombstone in its slot. Freed IDs are handed out again only after
``collect()`` has been called, so an ID named by a message still in flight or
an occupancy record from the same step never points at a different entity.
"""
from collections import deque
from typing import Deque, Generic, Iterator, List, Optional, Tuple, TypeVar

T = TypeVar("T")

_TOMBSTONE = object()


class IndexedStore(Generic[T]):
    """Append-optimized container mapping small integer IDs to values.

    Attributes:
        reuse_ids: Whether collected tombstone IDs may be assigned again.
        first_id: Smallest ID ``insert`` will ever assign.
    """

    def __init__(self, reuse_ids: bool = True, first_id: int = 1) -> None:
        self.reuse_ids = reuse_ids
        self.first_id = first_id
        self._slots: List[object] = []
        self._live = 0
        self._pending_free: List[int] = []
        self._free: Deque[int] = deque()

    def __len__(self) -> int:
        return self._live

    def __contains__(self, item_id: object) -> bool:
        return isinstance(item_id, int) and self._lookup(item_id) is not _TOMBSTONE

    def __iter__(self) -> Iterator[T]:
        return self.values()

    def _lookup(self, item_id: int) -> object:
        if 0 <= item_id < len(self._slots):
            return self._slots[item_id]
        return _TOMBSTONE

    def _grow_to(self, item_id: int) -> None:
        if item_id >= len(self._slots):
            self._slots.extend([_TOMBSTONE] * (item_id + 1 - len(self._slots)))

    @property
    def next_id(self) -> int:
        """ID the next ``insert`` call will assign."""
        if self.reuse_ids and self._free:
            return self._free[0]
        return max(len(self._slots), self.first_id)

    def insert(self, value: T) -> int:
        """Store a value under the next unused ID and return that ID."""
        item_id = self.next_id
        if self.reuse_ids and self._free:
            self._free.popleft()
        self._grow_to(item_id)
        self._slots[item_id] = value
        self._live += 1
        return item_id

    def insert_at(self, item_id: int, value: T) -> None:
        """Store a value under an explicit ID.

        Raises:
            ValueError: If the ID is negative or already holds a value.
        """
        if item_id < 0:
            raise ValueError(f"ID {item_id} must not be negative.")
        if item_id in self:
            raise ValueError(f"ID {item_id} is already in use.")
        if item_id in self._free:
            self._free.remove(item_id)
        if item_id in self._pending_free:
            self._pending_free.remove(item_id)
        self._grow_to(item_id)
        self._slots[item_id] = value
        self._live += 1

    def get(self, item_id: int) -> Optional[T]:
        """Return the value stored under ``item_id``, or None if absent."""
        value = self._lookup(item_id)
        if value is _TOMBSTONE:
            return None
        return value  # type: ignore[return-value]

    def __getitem__(self, item_id: int) -> T:
        value = self._lookup(item_id)
        if value is _TOMBSTONE:
            raise KeyError(item_id)
        return value  # type: ignore[return-value]

    def remove(self, item_id: int) -> T:
        """Tombstone the slot and return the value it held.

        Raises:
            KeyError: If the ID holds no value.
        """
        value = self[item_id]
        self._slots[item_id] = _TOMBSTONE
        self._live -= 1
        self._pending_free.append(item_id)
        return value

    def collect(self) -> None:
        """Make IDs removed since the last call available for reuse."""
        if self.reuse_ids:
            self._free.extend(sorted(self._pending_free))
        self._pending_free.clear()

    def ids(self) -> Iterator[int]:
        for item_id, value in enumerate(self._slots):
            if value is not _TOMBSTONE:
                yield item_id

    def values(self) -> Iterator[T]:
        for value in self._slots:
            if value is not _TOMBSTONE:
                yield value  # type: ignore[misc]

    def items(self) -> Iterator[Tuple[int, T]]:
        for item_id, value in enumerate(self._slots):
            if value is not _TOMBSTONE:
                yield item_id, value  # type: ignore[misc]
