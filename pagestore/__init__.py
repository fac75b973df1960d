"""Page storage primitives: bit-tree and buddy allocators, region layouts and a locked memory-mapped file."""

__version__ = "0.1.0"
__all__ = ["bitmap", "buddy_allocator", "errors", "layout", "mmap_file"]