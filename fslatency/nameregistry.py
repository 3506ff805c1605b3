"""Fixed-capacity registry mapping fixed-length names to small integer ids."""

from __future__ import annotations

import threading
from itertools import islice
from typing import Optional

MAX_SIZE = 1048573


class RegistryFullError(Exception):
    """Raised when a name is added to a registry that has no free slot."""


class NameRegistry:
    """Assigns each registered name an id in ``range(size)``.

    Freed ids are handed out again, the most recently freed one first.
    All operations are guarded by an internal lock.
    """

    def __init__(self, size: int, namelen: int) -> None:
        if size > MAX_SIZE:
            raise ValueError(f"registry size {size} exceeds the maximum of {MAX_SIZE}")
        if size < 0 or namelen < 0:
            raise ValueError("size and namelen must not be negative")
        self._size = size
        self._namelen = namelen
        self._lock = threading.Lock()
        self._reset()

    def _reset(self) -> None:
        # _order[:_used] holds the used ids, _order[_used:] the free ones.
        self._order = list(range(self._size))
        self._names: list[Optional[bytes]] = [None] * self._size
        self._used = 0

    @property
    def size(self) -> int:
        return self._size

    @property
    def used(self) -> int:
        return self._used

    @property
    def namelen(self) -> int:
        return self._namelen

    @property
    def free(self) -> int:
        return self._size - self._used

    def __len__(self) -> int:
        return self._used

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, (bytes, bytearray, memoryview)):
            return False
        return self.find(name) is not None

    def _key(self, name: bytes) -> bytes:
        key = bytes(name)
        if len(key) != self._namelen:
            raise ValueError(f"name must be {self._namelen} bytes, got {len(key)}")
        return key

    def _used_ids(self):
        return islice(self._order, self._used)

    def _find_locked(self, key: bytes) -> Optional[int]:
        for ident in self._used_ids():
            if self._names[ident] == key:
                return ident
        return None

    def _add_locked(self, key: bytes) -> int:
        if self._used == self._size:
            raise RegistryFullError(f"registry of {self._size} names is full")
        ident = self._order[self._used]
        self._names[ident] = key
        self._used += 1
        return ident

    def _release(self, position: int) -> int:
        ident = self._order[position]
        self._names[ident] = None
        self._used -= 1
        self._order[position] = self._order[self._used]
        self._order[self._used] = ident
        return ident

    def _position_of(self, ident: int) -> int:
        try:
            return self._order.index(ident, 0, self._used)
        except ValueError:
            raise KeyError(ident) from None

    def find(self, name: bytes) -> Optional[int]:
        """Return the id of ``name``, or None if it is not registered."""
        key = self._key(name)
        with self._lock:
            return self._find_locked(key)

    def add(self, name: bytes) -> int:
        """Register ``name`` without checking for duplicates and return its id."""
        key = self._key(name)
        with self._lock:
            return self._add_locked(key)

    def find_or_add(self, name: bytes) -> int:
        """Return the id of ``name``, registering it first if needed."""
        key = self._key(name)
        with self._lock:
            ident = self._find_locked(key)
            return ident if ident is not None else self._add_locked(key)

    def remove(self, name: bytes) -> Optional[int]:
        """Unregister ``name``; return its former id, or None if it was absent."""
        key = self._key(name)
        with self._lock:
            for position, ident in enumerate(self._used_ids()):
                if self._names[ident] == key:
                    return self._release(position)
            return None

    def remove_by_id(self, ident: int) -> int:
        """Unregister the name held under ``ident``; KeyError if the id is unused."""
        with self._lock:
            return self._release(self._position_of(ident))

    def get_by_id(self, ident: int) -> bytes:
        """Return the name held under ``ident``; KeyError if the id is unused."""
        with self._lock:
            self._position_of(ident)
            name = self._names[ident]
            assert name is not None
            return name

    def clear(self) -> None:
        """Forget every registered name."""
        with self._lock:
            self._reset()