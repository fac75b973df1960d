# pagestore

Low-level building blocks for a page-based storage engine. The allocators
keep their whole state inside a caller-supplied writable buffer (a
`bytearray`, or a writable view of a memory map), in a fixed little-endian
layout, so the state can be written to disk and used again as it is.

## What is inside

- `pagestore.bitmap.BtreeBitmap`: a 64-way bit tree that tracks which ids
  are in use. `init_new(data, elements)` lays out the tree with every id
  allocated; `clear(i)` frees an id, `set(i)` allocates it, `get(i)` tells
  whether it is allocated, `find_first_unset()` and `alloc()` find (and
  take) the lowest free id. `count_unset()`, `has_unset()` and `len()` report
  on the leaves. `required_space(capacity)` gives the buffer size needed.
- `pagestore.buddy_allocator.BuddyAllocator`: a buddy allocator for blocks of
  `2 ** order` pages, up to `max_order()` (at most `MAX_MAX_PAGE_ORDER`, 20).
  `alloc(order)` splits larger blocks when needed, `free(page, order)` merges
  buddies back, `record_alloc(page, order)` takes a specific free block.
  `resize(new_size)` grows or shrinks the number of usable pages up to
  `capacity()`. `count_free_pages()`, `highest_free_order()` and
  `trailing_free_pages()` report on free space, and `check_consistency()`
  raises `StorageError` if a page is free at several orders or two buddies
  are both free. `calculate_usable_order(pages)` gives the largest order for
  a number of pages.
- `pagestore.layout.RegionLayout`: a frozen dataclass describing a region as
  `header_pages` of allocator state followed by `num_pages` data pages of
  `page_size` bytes. `RegionLayout.calculate(...)` returns `None` when the
  space is too small for `MIN_USABLE_PAGES` (10) data pages;
  `full_region_layout(page_capacity, page_size)` gives the layout of a full
  region. `data_section()` is the `range` of data bytes, `len()` the region
  size, `usable_bytes()` the data size. `round_up_to_multiple_of` is also
  provided.
- `pagestore.mmap_file.MemoryMap`: memory-maps a whole file and holds an
  exclusive, non-blocking lock on it (`flock` on POSIX, `portalocker`
  elsewhere). It can be resized up to the `max_capacity` given when it is
  opened, flushed with `flush()` (msync plus fsync) or `eventual_flush()`,
  and hands out views with `get_memory(start, end)` (read-only) and
  `get_memory_mut(start, end)`. After a failed flush every later flush,
  resize or view request raises `StorageError`. A file longer than
  `max_capacity` is refused with `OSError` (`EFBIG`). It is a context
  manager; `close()` unmaps, unlocks and closes the file.
- `pagestore.errors`: `StorageError`, and its subclasses `OutOfSpaceError`
  and `DatabaseAlreadyOpenError`.

## Installation

```
pip install .
```

## Example

```python
from pagestore.bitmap import BtreeBitmap
from pagestore.buddy_allocator import BuddyAllocator
from pagestore.errors import OutOfSpaceError

# A bit tree for 100 ids. Every id starts out allocated.
data = bytearray(BtreeBitmap.required_space(100))
ids = BtreeBitmap.init_new(data, 100)
ids.clear(7)
assert ids.alloc() == 7

# A buddy allocator for 256 pages, all of them free.
pages = 256
buf = bytearray(BuddyAllocator.required_space(pages))
allocator = BuddyAllocator.init_new(buf, pages, pages)
page = allocator.alloc(3)          # a block of 8 pages
allocator.free(page, 3)
assert allocator.count_free_pages() == pages

try:
    allocator.alloc(allocator.max_order() + 1)
except OutOfSpaceError:
    pass
```

Opening a file as a memory map:

```python
from pagestore.mmap_file import MemoryMap

with open("data.db", "w+b") as f, MemoryMap(f, 1024 * 1024) as mapping:
    mapping.resize(4096)
    with mapping.get_memory_mut(0, 16) as view:
        view[:5] = b"hello"
    mapping.flush()
```

Views must be released before the map is resized or closed; otherwise
`StorageError` is raised. While one `MemoryMap` holds a file, a second
attempt to open the same file raises `DatabaseAlreadyOpenError`.

## What this package does not do

It provides only the allocation, layout and file-mapping pieces. There are
no tables, keys or values, no B-trees, no transactions, no on-disk database
header and no layout spanning several regions; nothing here ties a
`RegionLayout` to a `MemoryMap` for you.

## Running the tests

```
pip install .[test]
pytest
```