import random

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from pagestore.bitmap import BtreeBitmap
from pagestore.errors import OutOfSpaceError, StorageError


def make(num_pages):
    data = bytearray(BtreeBitmap.required_space(num_pages))
    return data, BtreeBitmap.init_new(data, num_pages)


def test_alloc():
    num_pages = 2
    _, allocator = make(num_pages)
    for i in range(num_pages):
        allocator.clear(i)
    for i in range(num_pages):
        assert allocator.alloc() == i
    with pytest.raises(OutOfSpaceError):
        allocator.alloc()


def test_record_alloc():
    _, allocator = make(2)
    allocator.clear(0)
    allocator.clear(1)
    allocator.set(0)
    assert allocator.alloc() == 1
    with pytest.raises(OutOfSpaceError):
        allocator.alloc()


def test_free():
    _, allocator = make(1)
    allocator.clear(0)
    assert allocator.alloc() == 0
    with pytest.raises(OutOfSpaceError):
        allocator.alloc()
    allocator.clear(0)
    assert allocator.alloc() == 0


def test_reuse_lowest():
    num_pages = 65
    _, allocator = make(num_pages)
    for i in range(num_pages):
        allocator.clear(i)
    for i in range(num_pages):
        assert allocator.alloc() == i
    allocator.clear(5)
    allocator.clear(15)
    assert allocator.alloc() == 5
    assert allocator.alloc() == 15
    with pytest.raises(OutOfSpaceError):
        allocator.alloc()


def test_all_space_used():
    num_pages = 65
    data, allocator = make(num_pages)
    for i in range(num_pages):
        allocator.clear(i)
    while True:
        try:
            allocator.alloc()
        except OutOfSpaceError:
            break
    last = int.from_bytes(data[-8:], "little")
    assert last != (1 << 64) - 1
    assert allocator.count_unset() == 0


def test_find_free():
    num_pages = 129
    _, allocator = make(num_pages)
    with pytest.raises(OutOfSpaceError):
        allocator.find_first_unset()
    allocator.clear(128)
    assert allocator.find_first_unset() == 128
    allocator.clear(65)
    assert allocator.find_first_unset() == 65
    allocator.clear(8)
    assert allocator.find_first_unset() == 8
    allocator.clear(0)
    assert allocator.find_first_unset() == 0


@pytest.mark.parametrize("seed", [0, 1, 7, 42, 2024])
def test_random_pattern(seed):
    rng = random.Random(seed)
    num_pages = rng.randrange(2, 10000)
    _, allocator = make(num_pages)
    for i in range(num_pages):
        allocator.clear(i)

    allocated_list = []
    allocated = set()
    for _ in range(num_pages * 2):
        if rng.random() < 0.75:
            try:
                page = allocator.alloc()
            except OutOfSpaceError:
                assert len(allocated) == num_pages
            else:
                assert page not in allocated
                allocated.add(page)
                allocated_list.append(page)
        elif allocated_list:
            index = rng.randrange(len(allocated_list))
            allocated_list[index], allocated_list[-1] = allocated_list[-1], allocated_list[index]
            to_free = allocated_list.pop()
            allocator.clear(to_free)
            allocated.remove(to_free)

    for _ in range(len(allocated), num_pages):
        allocator.alloc()
    with pytest.raises(OutOfSpaceError):
        allocator.alloc()

    for i in range(num_pages):
        allocator.clear(i)
    for _ in range(num_pages):
        allocator.alloc()
    with pytest.raises(OutOfSpaceError):
        allocator.alloc()


def test_new_tree_is_fully_allocated():
    _, allocator = make(300)
    assert not allocator.has_unset()
    assert allocator.count_unset() == 0
    assert all(allocator.get(i) for i in range(300))


def test_get_tracks_set_and_clear():
    _, allocator = make(200)
    allocator.clear(150)
    assert allocator.get(150) is False
    assert allocator.has_unset()
    assert allocator.count_unset() == 1
    allocator.set(150)
    assert allocator.get(150) is True
    assert not allocator.has_unset()


def test_len_rounds_leaves_to_groups():
    _, small = make(10)
    _, medium = make(65)
    assert len(small) == 64
    assert len(medium) == 128


def test_required_space_for_single_level():
    assert BtreeBitmap.required_space(1) == 12
    assert BtreeBitmap.required_space(64) == 12


def test_required_space_grows_with_capacity():
    sizes = [BtreeBitmap.required_space(n) for n in (64, 65, 4096, 4097, 100000)]
    assert sizes == sorted(sizes)
    assert sizes[0] < sizes[1] < sizes[3]


def test_init_new_rejects_small_buffer():
    data = bytearray(BtreeBitmap.required_space(100) - 1)
    with pytest.raises(ValueError):
        BtreeBitmap.init_new(data, 100)


def test_reopen_existing_buffer():
    data, allocator = make(5000)
    allocator.clear(4321)
    allocator.clear(17)
    reopened = BtreeBitmap(data)
    assert reopened.alloc() == 17
    assert reopened.alloc() == 4321
    with pytest.raises(OutOfSpaceError):
        reopened.alloc()


def test_three_level_tree():
    num_pages = 64 * 64 + 10
    _, allocator = make(num_pages)
    allocator.clear(num_pages - 1)
    allocator.clear(64 * 64)
    assert allocator.find_first_unset() == 64 * 64
    assert allocator.alloc() == 64 * 64
    assert allocator.alloc() == num_pages - 1
    with pytest.raises(OutOfSpaceError):
        allocator.alloc()


def test_out_of_range_index():
    _, allocator = make(10)
    with pytest.raises(IndexError):
        allocator.get(64)


def test_out_of_space_is_storage_error():
    _, allocator = make(3)
    with pytest.raises(StorageError):
        allocator.alloc()


@settings(max_examples=40, deadline=None)
@given(
    num_pages=st.integers(min_value=1, max_value=5000),
    data=st.data(),
)
def test_alloc_returns_lowest_cleared(num_pages, data):
    _, allocator = make(num_pages)
    cleared = data.draw(
        st.sets(st.integers(min_value=0, max_value=num_pages - 1), max_size=50)
    )
    for i in cleared:
        allocator.clear(i)
    assert allocator.count_unset() == len(cleared)
    result = []
    while True:
        try:
            result.append(allocator.alloc())
        except OutOfSpaceError:
            break
    assert result == sorted(cleared)