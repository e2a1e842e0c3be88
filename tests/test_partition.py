import pytest

from aevon.partition import PARTITION_COUNT, partition_for


def test_determinism():
    first = partition_for("tenant-abc")
    assert all(partition_for("tenant-abc") == first for _ in range(100))


@pytest.mark.parametrize(
    "tenant",
    ["", "a", "tenant-1", "tenant-2", "very-long-tenant-id-that-should-still-hash-correctly"],
)
def test_range(tenant):
    assert 0 <= partition_for(tenant) < PARTITION_COUNT


def test_distribution():
    seen = {partition_for(f"tenant-{i}") for i in range(1000)}
    assert len(seen) >= 100


def test_known_fnv_vector():
    # FNV-1a 32 of "a" is 0xE40C292C.
    assert partition_for("a") == 0x2C