"""Buddy allocator for dynamically sized pages, stored in a caller-supplied buffer.

Pages of up to ``2 ** max_order`` base pages are handed out. A page is marked
free at exactly one order, always the largest one it can be merged into.

Buffer format (all integers little endian)::

    max_order: u8
    padding: 3 bytes
    num_pages: u32
    order_ends: (max_order + 1) x u32, end offset of each order's bitmap
    ... one BtreeBitmap per order
"""

from __future__ import annotations

import struct

from pagestore.bitmap import BtreeBitmap
from pagestore.errors import OutOfSpaceError, StorageError

MAX_MAX_PAGE_ORDER = 20

_U32 = struct.Struct("<I")

_MAX_ORDER_OFFSET = 0
_PADDING = 3
_NUM_PAGES_OFFSET = _MAX_ORDER_OFFSET + 1 + _PADDING
_END_OFFSETS = _NUM_PAGES_OFFSET + _U32.size


def calculate_usable_order(pages: int) -> int:
    """Largest order usable for a region of ``pages`` base pages."""
    if pages <= 0:
        raise ValueError("page count must be positive")
    return min(MAX_MAX_PAGE_ORDER, pages.bit_length() - 1)


def _trailing_zeros(value: int) -> int:
    return (value & -value).bit_length() - 1


class BuddyAllocator:
    """Buddy allocator over a writable buffer initialised by :meth:`init_new`."""

    def __init__(self, data) -> None:
        self._data = data if isinstance(data, memoryview) else memoryview(data).cast("B")

    @classmethod
    def init_new(cls, data, num_pages: int, max_page_capacity: int) -> BuddyAllocator:
        """Initialise data for ``max_page_capacity`` pages, of which the first
        ``num_pages`` are free."""
        required = cls.required_space(max_page_capacity)
        if len(data) < required:
            raise ValueError(
                f"buffer of {len(data)} bytes is smaller than the {required} required"
            )
        if num_pages > max_page_capacity:
            raise ValueError("num_pages exceeds max_page_capacity")
        view = data if isinstance(data, memoryview) else memoryview(data).cast("B")
        max_order = calculate_usable_order(max_page_capacity)
        view[_MAX_ORDER_OFFSET] = max_order
        _U32.pack_into(view, _NUM_PAGES_OFFSET, num_pages)

        allocator = cls(view)
        data_offset = allocator._data_start()
        pages_for_order = max_page_capacity
        for order in range(max_order + 1):
            data_offset += BtreeBitmap.required_space(pages_for_order)
            _U32.pack_into(view, _END_OFFSETS + order * _U32.size, data_offset)
            start, end = allocator._order_range(order)
            BtreeBitmap.init_new(view[start:end], pages_for_order)
            pages_for_order //= 2

        accounted = 0
        for order in range(max_order, -1, -1):
            bitmap = allocator._order(order)
            order_size = 1 << order
            while accounted + order_size <= num_pages:
                bitmap.clear(accounted // order_size)
                accounted += order_size
        if accounted != num_pages:
            raise StorageError("failed to account for all pages")
        return allocator

    @staticmethod
    def required_space(capacity: int) -> int:
        """Number of bytes needed for an allocator of ``capacity`` pages."""
        max_order = calculate_usable_order(capacity)
        required = _END_OFFSETS + (max_order + 1) * _U32.size
        for _ in range(max_order + 1):
            required += BtreeBitmap.required_space(capacity)
            capacity //= 2
        return required

    def max_order(self) -> int:
        """Largest order this allocator hands out."""
        return self._data[_MAX_ORDER_OFFSET]

    def capacity(self) -> int:
        """Number of base pages the allocator can track."""
        return len(self._order(0))

    def __len__(self) -> int:
        return _U32.unpack_from(self._data, _NUM_PAGES_OFFSET)[0]

    def _data_start(self) -> int:
        return _END_OFFSETS + (self.max_order() + 1) * _U32.size

    def _order_end(self, order: int) -> int:
        return _U32.unpack_from(self._data, _END_OFFSETS + order * _U32.size)[0]

    def _order_range(self, order: int) -> tuple[int, int]:
        start = self._data_start() if order == 0 else self._order_end(order - 1)
        return start, self._order_end(order)

    def _order(self, order: int) -> BtreeBitmap:
        if not 0 <= order <= self.max_order():
            raise ValueError(f"order {order} out of range")
        start, end = self._order_range(order)
        return BtreeBitmap(self._data[start:end])

    def highest_free_order(self) -> int | None:
        """Largest order that has a free page, or None if nothing is free."""
        for order in range(self.max_order(), -1, -1):
            if self._order(order).has_unset():
                return order
        return None

    def count_free_pages(self) -> int:
        """Total number of free base pages."""
        return sum(
            self._order(order).count_unset() << order
            for order in range(self.max_order() + 1)
        )

    def _find_free_order(self, page: int) -> int | None:
        for order in range(self.max_order() + 1):
            if not self._order(order).get(page):
                return order
            page //= 2
        return None

    def trailing_free_pages(self) -> int:
        """Number of free base pages at the end of the allocated range."""
        if len(self) == 0:
            return 0
        free_pages = 0
        next_page = len(self) - 1
        while (order := self._find_free_order(next_page)) is not None:
            order_size = 1 << order
            free_pages += order_size
            if order_size > next_page:
                break
            next_page -= order_size
        return free_pages

    def resize(self, new_size: int) -> None:
        """Grow or shrink the number of usable pages to ``new_size``."""
        self.check_consistency()
        if new_size > self.capacity():
            raise ValueError(f"size {new_size} exceeds capacity {self.capacity()}")
        max_order = self.max_order()
        current = len(self)
        if new_size > current:
            processed = self._walk(current, new_size, self.free, max_order)
            if processed != new_size:
                raise StorageError("resize did not cover the requested pages")
            self.check_consistency()
        else:
            processed = self._walk(new_size, current, self.record_alloc, max_order)
            if processed != current:
                raise StorageError("resize did not cover the released pages")
        _U32.pack_into(self._data, _NUM_PAGES_OFFSET, new_size)

    @staticmethod
    def _walk(processed: int, end: int, action, max_order: int) -> int:
        # Align to the highest order possible
        while processed < end:
            if processed == 0:
                break
            order = _trailing_zeros(processed)
            order_size = 1 << order
            if order >= max_order or processed + order_size > end:
                break
            action(processed // order_size, order)
            processed += order_size
        # Cover the remaining space, at the highest order
        for order in range(max_order, -1, -1):
            order_size = 1 << order
            while processed + order_size <= end:
                action(processed // order_size, order)
                processed += order_size
        return processed

    def check_consistency(self) -> None:
        """Raise StorageError if a page is free at several orders or buddies are unmerged."""
        max_order = self.max_order()
        bitmaps = [self._order(order) for order in range(max_order + 1)]
        for base_page in range(len(self)):
            page = base_page
            found = False
            for bitmap in bitmaps:
                if not bitmap.get(page):
                    if found:
                        raise StorageError(f"page {base_page} is free at several orders")
                    found = True
                page //= 2

        for order in range(max_order - 1, -1, -1):
            bitmap = bitmaps[order]
            for page in range(len(self) >> order):
                if not bitmap.get(page) and not bitmap.get(page ^ 1):
                    raise StorageError(
                        f"order={order} page={page} buddy={page ^ 1} are both free"
                    )

    def alloc(self, order: int) -> int:
        """Allocate a page of the given order and return its number within that order."""
        if order > self.max_order():
            raise OutOfSpaceError()
        try:
            return self._order(order).alloc()
        except OutOfSpaceError:
            upper_page = self.alloc(order + 1)
            self._order(order).clear(upper_page * 2 + 1)
            return upper_page * 2

    def record_alloc(self, page_number: int, order: int) -> None:
        """Mark a specific free page of the given order as allocated."""
        if order > self.max_order():
            raise ValueError(f"page {page_number} is not free")
        bitmap = self._order(order)
        if bitmap.get(page_number):
            upper_page = page_number // 2
            self.record_alloc(upper_page, order + 1)
            bitmap.clear(page_number ^ 1)
        else:
            bitmap.set(page_number)

    def free(self, page_number: int, order: int) -> None:
        """Release an allocated page, merging it with its buddy where possible."""
        bitmap = self._order(order)
        if not bitmap.get(page_number):
            raise ValueError(f"page {page_number} of order {order} is already free")
        if order == self.max_order():
            bitmap.clear(page_number)
            return
        buddy = page_number ^ 1
        if bitmap.get(buddy):
            bitmap.clear(page_number)
        else:
            bitmap.set(buddy)
            self.free(page_number // 2, order + 1)