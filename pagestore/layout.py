"""Layout of a region: an allocator header followed by page-aligned data pages."""

from __future__ import annotations

from dataclasses import dataclass

from pagestore.buddy_allocator import BuddyAllocator

MIN_USABLE_PAGES = 10


def round_up_to_multiple_of(value: int, multiple: int) -> int:
    """Smallest multiple of ``multiple`` that is not below ``value``."""
    if multiple <= 0:
        raise ValueError("multiple must be positive")
    remainder = value % multiple
    return value if remainder == 0 else value + multiple - remainder


@dataclass(frozen=True)
class RegionLayout:
    """A region holds ``header_pages`` of allocator state, then ``num_pages`` data pages."""

    num_pages: int
    header_pages: int
    page_size: int

    @staticmethod
    def header_pages_for(page_capacity: int, page_size: int) -> int:
        """Pages needed to hold the allocator state of a region of ``page_capacity`` pages."""
        header_size = round_up_to_multiple_of(
            BuddyAllocator.required_space(page_capacity), page_size
        )
        return header_size // page_size

    @staticmethod
    def calculate_usable_pages(space: int, page_capacity: int, page_size: int) -> int:
        """Whole data pages that fit in ``space`` bytes after the header."""
        header_bytes = RegionLayout.header_pages_for(page_capacity, page_size) * page_size
        if header_bytes >= space:
            raise ValueError(
                f"space of {space} bytes does not exceed the {header_bytes} byte header"
            )
        return (space - header_bytes) // page_size

    @classmethod
    def calculate(
        cls,
        available_space: int,
        desired_usable_bytes: int,
        page_capacity: int,
        page_size: int,
    ) -> RegionLayout | None:
        """Layout using at most ``available_space`` bytes, or None if too small."""
        header_pages = cls.header_pages_for(page_capacity, page_size)
        required_header_bytes = header_pages * page_size
        if desired_usable_bytes // page_size < MIN_USABLE_PAGES:
            return None
        if available_space < required_header_bytes + MIN_USABLE_PAGES * page_size:
            return None
        max_region_size = desired_usable_bytes + required_header_bytes
        used_space = min(max_region_size, available_space)

        num_pages = cls.calculate_usable_pages(used_space, page_capacity, page_size)
        if num_pages < MIN_USABLE_PAGES:
            return None
        return cls(num_pages=num_pages, header_pages=header_pages, page_size=page_size)

    @classmethod
    def full_region_layout(cls, page_capacity: int, page_size: int) -> RegionLayout:
        """Layout of a region filled to its full ``page_capacity``."""
        max_usable_bytes = page_capacity * page_size
        header_bytes = cls.header_pages_for(page_capacity, page_size) * page_size
        layout = cls.calculate(
            max_usable_bytes + header_bytes, max_usable_bytes, page_capacity, page_size
        )
        if layout is None:
            raise ValueError(
                f"a region of {page_capacity} pages of {page_size} bytes is too small"
            )
        return layout

    def data_section(self) -> range:
        """Byte offsets, relative to the region start, of the data pages."""
        header_bytes = self.header_pages * self.page_size
        return range(header_bytes, header_bytes + self.usable_bytes())

    def __len__(self) -> int:
        return self.header_pages * self.page_size + self.usable_bytes()

    def usable_bytes(self) -> int:
        """Bytes available for data pages."""
        return self.page_size * self.num_pages