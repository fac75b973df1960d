"""A 64-way bit tree that tracks allocated ids inside a caller-supplied buffer.

Buffer format (all integers little endian)::

    height: u32
    layer_ends: (height - 1) x u32, byte offset where each non-root layer ends
    root: u64
    subtree layers ...
    leaf layer

Bits are inverted: a 0 bit means the id is set (allocated), a 1 bit means it
is free. This lets a freshly zeroed buffer represent a fully allocated tree.
"""

from __future__ import annotations

import struct

from pagestore.errors import OutOfSpaceError, StorageError

_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")

_HEIGHT_OFFSET = 0
_END_OFFSETS = _HEIGHT_OFFSET + _U32.size
_GROUP_BITS = 64
_GROUP_BYTES = 8
_ALL_ONES = (1 << 64) - 1


def _required_bytes(elements: int) -> int:
    return (elements + 63) // 64 * _GROUP_BYTES


def _trailing_zeros(value: int) -> int:
    return (value & -value).bit_length() - 1


class _GroupedLevel:
    """One layer of the tree: a bitmap stored as consecutive u64 groups."""

    __slots__ = ("_view",)

    def __init__(self, view: memoryview) -> None:
        if len(view) % _GROUP_BYTES:
            raise StorageError("bitmap level is not a multiple of 8 bytes")
        self._view = view

    def _group_at(self, bit: int) -> tuple[int, int, int]:
        if bit < 0 or bit >= len(self._view) * 8:
            raise IndexError(f"bit {bit} out of range")
        index = bit // _GROUP_BITS * _GROUP_BYTES
        (group,) = _U64.unpack_from(self._view, index)
        return index, bit % _GROUP_BITS, group

    def count_unset(self) -> int:
        return int.from_bytes(self._view, "little").bit_count()

    def any_unset(self) -> bool:
        return any(self._view)

    def __len__(self) -> int:
        return len(self._view) * 8

    def first_unset(self, start_bit: int) -> int | None:
        """First free bit in the group holding start_bit, at or after start_bit."""
        _, bit, group = self._group_at(start_bit)
        group &= ~((1 << bit) - 1) & _ALL_ONES
        if group == 0:
            return None
        return start_bit + _trailing_zeros(group) - bit

    def get(self, bit: int) -> bool:
        _, bit_index, group = self._group_at(bit)
        return group & (1 << bit_index) == 0

    def set(self, bit: int) -> bool:
        """Mark bit as set; return True if its whole group is now set."""
        index, bit_index, group = self._group_at(bit)
        group &= ~(1 << bit_index) & _ALL_ONES
        _U64.pack_into(self._view, index, group)
        return group == 0

    def clear(self, bit: int) -> None:
        index, bit_index, group = self._group_at(bit)
        group |= 1 << bit_index
        _U64.pack_into(self._view, index, group)


class BtreeBitmap:
    """A 64-way bit tree of allocated ids stored in a writable buffer.

    The buffer must have been initialised with :meth:`init_new`.
    """

    def __init__(self, data) -> None:
        self._data = memoryview(data).cast("B") if not isinstance(data, memoryview) else data

    @classmethod
    def init_new(cls, data, elements: int) -> BtreeBitmap:
        """Initialise data as a tree of ``elements`` ids, all of them set."""
        required = cls.required_space(elements)
        if len(data) < required:
            raise ValueError(
                f"buffer of {len(data)} bytes is smaller than the {required} required"
            )
        view = memoryview(data)
        height = _tree_height(elements)
        _U32.pack_into(view, _HEIGHT_OFFSET, height)
        start = _tree_data_start(elements)
        view[start:] = bytes(len(view) - start)

        level_ends: list[int] = []
        offset = start + _GROUP_BYTES  # root level, its end is implied
        if height > 2:
            subtrees = _required_subtrees(elements)
            for level in range(1, height - 1):
                length = subtrees * _GROUP_BITS**level // 8
                offset += length
                level_ends.append(offset)
        if height > 1:
            offset += _required_bytes(elements)
            level_ends.append(offset)

        if len(level_ends) != height - 1 or offset != required:
            raise StorageError("inconsistent bitmap layout")

        for position, end in enumerate(level_ends):
            _U32.pack_into(view, _END_OFFSETS + position * _U32.size, end)

        return cls(view)

    @staticmethod
    def required_space(capacity: int) -> int:
        """Number of bytes needed to track ``capacity`` ids."""
        height = _tree_height(capacity)
        if height == 1:
            tree_space = _GROUP_BYTES
        elif height == 2:
            tree_space = _GROUP_BYTES + _required_bytes(capacity)
        else:
            tree_space = (
                _GROUP_BYTES
                + _required_subtrees(capacity) * _interior_bytes_per_subtree(capacity)
                + _required_bytes(capacity)
            )
        return _tree_data_start(capacity) + tree_space

    @property
    def _height(self) -> int:
        return _U32.unpack_from(self._data, _HEIGHT_OFFSET)[0]

    def _data_start(self) -> int:
        return _END_OFFSETS + (self._height - 1) * _U32.size

    def _level_end(self, level: int) -> int:
        if level == 0:
            return self._data_start() + _GROUP_BYTES
        return _U32.unpack_from(self._data, _END_OFFSETS + (level - 1) * _U32.size)[0]

    def _level(self, level: int) -> _GroupedLevel:
        if not 0 <= level < self._height:
            raise IndexError(f"level {level} out of range")
        start = self._data_start() if level == 0 else self._level_end(level - 1)
        return _GroupedLevel(self._data[start : self._level_end(level)])

    def _leaves(self) -> _GroupedLevel:
        return self._level(self._height - 1)

    def count_unset(self) -> int:
        """Number of free ids."""
        return self._leaves().count_unset()

    def has_unset(self) -> bool:
        """Whether any id is free."""
        return self._leaves().any_unset()

    def get(self, i: int) -> bool:
        """Whether id ``i`` is set (allocated)."""
        return self._leaves().get(i)

    def __len__(self) -> int:
        return len(self._leaves())

    def find_first_unset(self) -> int:
        """Lowest free id; raises OutOfSpaceError if none is free."""
        entry = self._level(0).first_unset(0)
        if entry is None:
            raise OutOfSpaceError()
        for level in range(1, self._height):
            entry = self._level(level).first_unset(entry * _GROUP_BITS)
            if entry is None:
                raise StorageError("bitmap tree is inconsistent")
        return entry

    def alloc(self) -> int:
        """Set the lowest free id and return it."""
        entry = self.find_first_unset()
        self.set(entry)
        return entry

    def set(self, i: int) -> None:
        """Mark id ``i`` as allocated."""
        full = self._leaves().set(i)
        self._update_to_root(i, full)

    def clear(self, i: int) -> None:
        """Mark id ``i`` as free."""
        self._leaves().clear(i)
        self._update_to_root(i, False)

    def _update_to_root(self, i: int, full: bool) -> None:
        height = self._height
        if height == 1:
            return
        entry = i // _GROUP_BITS
        for level in range(height - 2, -1, -1):
            parent = self._level(level)
            if full:
                full = parent.set(entry)
            else:
                parent.clear(entry)
            entry //= _GROUP_BITS


def _tree_height(capacity: int) -> int:
    height = 1
    storable = _GROUP_BITS
    while capacity > storable:
        storable *= _GROUP_BITS
        height += 1
    return height


def _tree_data_start(capacity: int) -> int:
    return _END_OFFSETS + (_tree_height(capacity) - 1) * _U32.size


def _interior_bytes_per_subtree(capacity: int) -> int:
    subtree_height = _tree_height(capacity) - 1
    return sum(_GROUP_BITS**i for i in range(1, subtree_height)) // 8


def _required_subtrees(capacity: int) -> int:
    values_per_subtree = _GROUP_BITS ** (_tree_height(capacity) - 1)
    return (capacity + values_per_subtree - 1) // values_per_subtree